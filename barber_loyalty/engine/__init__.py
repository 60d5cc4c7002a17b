"""
Loyalty engine core

- catalog: definition loading and validation, CatalogStore
- progress_calculator: pure progress from visit history
- redemption_engine: per (subject, achievement) state machine
- leaderboard: metrics aggregation and ranking
"""

from barber_loyalty.engine.catalog import (
    CatalogLoadResult,
    CatalogStore,
    InMemoryCatalogStore,
    find_prerequisite_cycles,
    load_definitions,
)
from barber_loyalty.engine.leaderboard import compute_subject_metrics, rank_subjects, weights_from_config
from barber_loyalty.engine.progress_calculator import calculate_progress, format_duration, progress_percentage
from barber_loyalty.engine.redemption_engine import RedemptionEngine
from barber_loyalty.engine.redemption_store import InMemoryRedemptionStore, RedemptionStore

__all__ = [
    "CatalogLoadResult",
    "CatalogStore",
    "InMemoryCatalogStore",
    "find_prerequisite_cycles",
    "load_definitions",
    "compute_subject_metrics",
    "rank_subjects",
    "weights_from_config",
    "calculate_progress",
    "format_duration",
    "progress_percentage",
    "RedemptionEngine",
    "InMemoryRedemptionStore",
    "RedemptionStore",
]
