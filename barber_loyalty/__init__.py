"""Loyalty & Performance Engine for barbershop achievements, rewards and leaderboards"""

__version__ = "1.0.0"
