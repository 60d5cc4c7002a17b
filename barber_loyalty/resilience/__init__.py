"""Resilience patterns for upstream reads

This module provides retry logic with exponential backoff for the visit
ledger and catalog HTTP clients.
"""

from barber_loyalty.resilience.retry import (
    calculate_backoff,
    is_retryable_error,
    retry_with_backoff,
)

__all__ = [
    "calculate_backoff",
    "is_retryable_error",
    "retry_with_backoff",
]
