"""
Prometheus metrics definitions for the loyalty engine.

This module defines all metrics collected by the application, organized by category:
- Progress metrics: Evaluations per requirement type
- Redemption metrics: State transitions and rejected transitions
- Aggregation metrics: Omitted subjects, upstream reads and stale catalog serves
- Leaderboard metrics: Ranking requests

Metrics are exposed at the /metrics endpoint for Prometheus scraping.
"""

import logging
from prometheus_client import Counter, Histogram, Info

logger = logging.getLogger(__name__)

# =============================================================================
# Progress Metrics
# =============================================================================

progress_evaluations_total = Counter(
    "loyalty_progress_evaluations_total",
    "Total achievement progress evaluations",
    ["requirement_type"],  # count/days/streak/percentage/milestone
)

# =============================================================================
# Redemption Metrics
# =============================================================================

redemption_transitions_total = Counter(
    "loyalty_redemption_transitions_total",
    "Total redemption state transitions",
    ["from_state", "to_state"],
)

redemption_rejections_total = Counter(
    "loyalty_redemption_rejections_total",
    "Total rejected redemption transitions",
    ["reason"],  # invalid_state/completion_limit/handoff_required
)

# =============================================================================
# Aggregation Metrics
# =============================================================================

subjects_omitted_total = Counter(
    "loyalty_subjects_omitted_total",
    "Subjects omitted from batch results",
    ["reason"],  # data_unavailable/timeout/not_found/store_error
)

upstream_read_duration_seconds = Histogram(
    "loyalty_upstream_read_duration_seconds",
    "Visit ledger / catalog read duration in seconds",
    ["source"],  # ledger/catalog
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0],
)

catalog_stale_serves_total = Counter(
    "loyalty_catalog_stale_serves_total",
    "Failed catalog refreshes answered from the cached copy",
)

# =============================================================================
# Leaderboard Metrics
# =============================================================================

leaderboard_requests_total = Counter(
    "loyalty_leaderboard_requests_total",
    "Total leaderboard rankings computed",
    ["metric", "window"],
)

# =============================================================================
# Application Info
# =============================================================================

app_info = Info(
    "loyalty_app",
    "Application information",
)


def init_metrics(version: str = "dev") -> None:
    """
    Initialize metrics with application information.

    This should be called once at application startup to set
    static metadata about the application.
    """
    import sys

    app_info.info(
        {
            "version": version,
            "python_version": f"{sys.version_info.major}.{sys.version_info.minor}",
        }
    )

    logger.info("Prometheus metrics initialized")
