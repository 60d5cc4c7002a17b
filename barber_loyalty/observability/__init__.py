"""
Observability module for the loyalty engine.

This module provides:
- Metrics collection with Prometheus
"""

from barber_loyalty.observability import metrics

__all__ = ["metrics"]
