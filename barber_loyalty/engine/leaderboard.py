"""
Leaderboard Ranker

Ranks barbers (or any subject set) by a single metric or by a weighted
composite score.

Composite ("overall") score:
    score = sum(weight[m] * value[m] / max(value[m] over the set))
A metric whose maximum over the set is 0 contributes 0.

Ordering is total and deterministic:
    score (6 decimals) desc -> total visits desc -> started_at asc
    (unknown start sorts last) -> subject ID asc
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from pydantic import ValidationError as PydanticValidationError

from barber_loyalty import config
from barber_loyalty.engine.progress_calculator import (
    measure_metric,
    normalize_history,
    retention_rate,
    window_start,
)
from barber_loyalty.exceptions import ConfigurationError
from barber_loyalty.models.achievement import ProgressMetric, Timeframe
from barber_loyalty.models.leaderboard import (
    LeaderboardBadge,
    LeaderboardEntry,
    LeaderboardMetric,
    LeaderboardWeights,
    SubjectMetrics,
    TimeWindow,
)
from barber_loyalty.models.visit import Subject, as_utc

logger = logging.getLogger(__name__)

SCORE_PRECISION = 6

WINDOW_TIMEFRAMES = {
    TimeWindow.ALL_TIME: Timeframe.ALL_TIME,
    TimeWindow.THIS_YEAR: Timeframe.YEARLY,
    TimeWindow.THIS_MONTH: Timeframe.MONTHLY,
    TimeWindow.THIS_WEEK: Timeframe.WEEKLY,
}

BADGES = (LeaderboardBadge.FIRST, LeaderboardBadge.SECOND, LeaderboardBadge.THIRD)

_LATEST = datetime.max.replace(tzinfo=timezone.utc)


def compute_subject_metrics(
    subject: Subject,
    history: Optional[Iterable],
    window: TimeWindow = TimeWindow.ALL_TIME,
    now: Optional[datetime] = None,
    earned_rewards: int = 0,
) -> SubjectMetrics:
    """
    Aggregate one subject's ledger into leaderboard metrics

    Args:
        subject: Subject being ranked
        history: Subject's ledger entries (any order, dicts accepted)
        window: Time window the metrics cover
        now: Evaluation instant (defaults to current UTC time)
        earned_rewards: Earned or redeemed achievements, from the redemption store

    Returns:
        SubjectMetrics; efficiency is visits per active day in the window
    """
    now = as_utc(now) or datetime.now(timezone.utc)

    start = window_start(now, WINDOW_TIMEFRAMES[window])
    # window_start is inclusive, normalize_history's since is exclusive
    entries = normalize_history(history, until=now)
    if start is not None:
        entries = [e for e in entries if e.timestamp >= start]

    total_visits = measure_metric(ProgressMetric.VISITS, entries)
    rate, _ = retention_rate(entries)

    return SubjectMetrics(
        subject_id=subject.id,
        name=subject.name,
        started_at=subject.started_at,
        total_visits=total_visits,
        unique_clients=measure_metric(ProgressMetric.UNIQUE_CLIENTS, entries),
        client_retention_rate=round(rate, 2),
        efficiency=round(total_visits / _active_days(subject, entries, start, now), 4),
        earned_rewards=max(0, earned_rewards),
    )


def rank_subjects(
    metrics: Iterable[SubjectMetrics],
    metric: LeaderboardMetric = LeaderboardMetric.OVERALL,
    weights: Optional[LeaderboardWeights] = None,
    limit: Optional[int] = None,
) -> list[LeaderboardEntry]:
    """
    Rank subjects into a leaderboard

    Args:
        metrics: One SubjectMetrics per subject
        metric: Ranking criterion
        weights: Composite weights (overall only; defaults when omitted)
        limit: Keep only the first N entries

    Returns:
        Entries with ranks 1..n (no shared ranks) and top-3 badges
    """
    metrics = list(metrics)
    if not metrics:
        return []

    weights = weights or LeaderboardWeights()
    if metric == LeaderboardMetric.OVERALL:
        scores = _composite_scores(metrics, weights)
    else:
        scores = [float(_metric_value(m, metric)) for m in metrics]

    ranked = sorted(
        zip(metrics, scores),
        key=lambda pair: (
            -round(pair[1], SCORE_PRECISION),
            -pair[0].total_visits,
            _started_key(pair[0].started_at),
            pair[0].subject_id,
        ),
    )
    if limit is not None:
        ranked = ranked[:max(0, limit)]

    return [
        LeaderboardEntry(
            subject_id=m.subject_id,
            name=m.name,
            rank=position,
            score=round(score, SCORE_PRECISION),
            metrics=m,
            badges=[BADGES[position - 1]] if position <= len(BADGES) else [],
        )
        for position, (m, score) in enumerate(ranked, start=1)
    ]


def weights_from_config(raw: Optional[str] = None) -> LeaderboardWeights:
    """
    Build LeaderboardWeights from a "name=value,..." string

    Args:
        raw: Weight string (defaults to LEADERBOARD_WEIGHTS)

    Raises:
        ConfigurationError: Malformed weights or all weights zero
    """
    overrides = config.parse_leaderboard_weights(config.LEADERBOARD_WEIGHTS if raw is None else raw)
    try:
        return LeaderboardWeights(**overrides)
    except PydanticValidationError as e:
        raise ConfigurationError(
            message=f"Invalid leaderboard weights: {e.errors()[0]['msg']}",
            config_key="LEADERBOARD_WEIGHTS",
            cause=e,
        )


# ============================================
# Helper Functions
# ============================================

def _metric_value(metrics: SubjectMetrics, metric: LeaderboardMetric) -> float:
    if metric == LeaderboardMetric.VISITS:
        return metrics.total_visits
    if metric == LeaderboardMetric.CLIENTS:
        return metrics.unique_clients
    if metric == LeaderboardMetric.EFFICIENCY:
        return metrics.efficiency
    if metric == LeaderboardMetric.RETENTION:
        return metrics.client_retention_rate
    if metric == LeaderboardMetric.REWARDS:
        return metrics.earned_rewards
    raise ValueError(f"No single value for metric {metric}")


def _composite_scores(metrics: list[SubjectMetrics], weights: LeaderboardWeights) -> list[float]:
    """Weighted sum of max-normalized components"""
    components = {
        LeaderboardMetric.VISITS: weights.visits,
        LeaderboardMetric.CLIENTS: weights.clients,
        LeaderboardMetric.RETENTION: weights.retention,
        LeaderboardMetric.EFFICIENCY: weights.efficiency,
        LeaderboardMetric.REWARDS: weights.rewards,
    }
    maxima = {
        component: max(_metric_value(m, component) for m in metrics)
        for component in components
    }

    scores = []
    for m in metrics:
        score = 0.0
        for component, weight in components.items():
            if weight and maxima[component] > 0:
                score += weight * _metric_value(m, component) / maxima[component]
        scores.append(score)
    return scores


def _started_key(started_at: Optional[datetime]) -> datetime:
    """Earlier start ranks first; unknown start ranks last"""
    if started_at is None:
        return _LATEST
    return as_utc(started_at)


def _active_days(subject: Subject, entries: list, start: Optional[datetime], now: datetime) -> int:
    """Days between the later of window start / join date and now, at least 1"""
    begin = start
    if subject.started_at is not None and (begin is None or subject.started_at > begin):
        begin = subject.started_at
    if begin is None and entries:
        begin = entries[0].timestamp
    if begin is None:
        return 1
    return max(1, (now.date() - begin.date()).days)
