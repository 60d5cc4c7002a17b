"""
Service Layer Package

Business logic services between the HTTP layer and the engine:
- LoyaltyService: progress summaries, leaderboards, batch aggregation, redemptions
- ServiceContainer: lazy dependency wiring
"""

from barber_loyalty.services.container import ServiceContainer, get_container, init_container, reset_container
from barber_loyalty.services.loyalty_service import LoyaltyService, prerequisite_order

__all__ = [
    "ServiceContainer",
    "get_container",
    "init_container",
    "reset_container",
    "LoyaltyService",
    "prerequisite_order",
]
