"""
Progress Calculator

Turns a subject's raw visit history into progress toward one achievement:
- count: matching ledger entries inside the current timeframe window
- days: elapsed whole days since the subject's start reference
- streak: consecutive qualifying periods (current or best historical run)
- percentage: ratio metrics such as client retention
- milestone: pass-through flag recorded in the ledger

Every function here is pure and total: malformed or missing history never
raises, it simply yields a current value of 0.
"""

import logging
import math
from collections import Counter, defaultdict
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from pydantic import ValidationError as PydanticValidationError

from barber_loyalty.models.achievement import (
    AchievementDefinition,
    ProgressMetric,
    RequirementType,
    Timeframe,
)
from barber_loyalty.models.progress import DurationProgress, SubjectProgress
from barber_loyalty.models.visit import LedgerEntry, LedgerEntryKind, Subject, as_utc

logger = logging.getLogger(__name__)

DAYS_PER_MONTH = 30
MONTHS_PER_YEAR = 12


# ============================================
# Public API
# ============================================

def calculate_progress(
    subject: Subject,
    definition: AchievementDefinition,
    history: Optional[Iterable],
    *,
    now: Optional[datetime] = None,
    satisfied_prerequisites: Iterable[str] = (),
    since: Optional[datetime] = None,
) -> SubjectProgress:
    """
    Calculate progress of a subject toward an achievement

    Args:
        subject: The barber or client being evaluated
        definition: Achievement definition (already validated by the catalog)
        history: Subject's ledger entries, any order; dicts are accepted
        now: Evaluation instant (defaults to current UTC time)
        satisfied_prerequisites: Achievement IDs this subject has satisfied
        since: Cycle start; entries at or before it are ignored

    Returns:
        SubjectProgress with current value, clamped percentage and eligibility
    """
    now = as_utc(now) or datetime.now(timezone.utc)
    since = as_utc(since)
    entries = normalize_history(history, since=since, until=now)

    current_value: float = 0
    duration: Optional[DurationProgress] = None
    insufficient_sample = False

    try:
        requirement_type = definition.requirement_type

        if requirement_type == RequirementType.COUNT:
            current_value = _count_progress(definition, entries, now)

        elif requirement_type == RequirementType.DAYS:
            duration = _duration_progress(subject, now, since)
            current_value = duration.total_days

        elif requirement_type == RequirementType.STREAK:
            current_value = _streak_progress(definition, entries, now)

        elif requirement_type == RequirementType.PERCENTAGE:
            current_value, insufficient_sample = _percentage_progress(definition, entries, now)

        elif requirement_type == RequirementType.MILESTONE:
            current_value = _milestone_progress(definition, entries)

    except (ValueError, TypeError, KeyError, AttributeError, OverflowError) as e:
        logger.warning(
            f"Progress for subject {subject.id} on {definition.id} fell back to 0: "
            f"{type(e).__name__}: {e}"
        )
        current_value = 0
        duration = None

    percentage = progress_percentage(current_value, definition.requirement_value)
    prerequisites_met = definition.prerequisites <= frozenset(satisfied_prerequisites)
    within_window = definition.is_within_validity(now.date())

    is_earned = (
        current_value >= definition.requirement_value
        and prerequisites_met
        and within_window
        and definition.is_active
        and not insufficient_sample
    )
    if definition.requirement_type == RequirementType.PERCENTAGE:
        # Earned is decided on the unrounded rate
        current_value = round(current_value, 2)

    return SubjectProgress(
        subject_id=subject.id,
        achievement_id=definition.id,
        current_value=current_value,
        requirement_value=definition.requirement_value,
        progress_percentage=percentage,
        is_earned=is_earned,
        duration_progress=duration,
        within_validity_window=within_window,
        prerequisites_met=prerequisites_met,
        insufficient_sample=insufficient_sample,
    )


def progress_percentage(current_value: float, requirement_value: float) -> int:
    """
    Clamp current/requirement into a 0-100 integer (half-up rounding)

    100 is reserved for a met requirement: 99.6% of the way reports 99.
    """
    if requirement_value <= 0:
        return 0
    raw = current_value / requirement_value * 100
    if not math.isfinite(raw):
        return 0
    percentage = max(0, min(100, int(math.floor(raw + 0.5))))
    if percentage == 100 and current_value < requirement_value:
        return 99
    return percentage


def normalize_history(
    history: Optional[Iterable],
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> list[LedgerEntry]:
    """
    Coerce raw history into time-ordered LedgerEntry objects

    Malformed entries are dropped rather than failing the calculation.
    """
    if not history:
        return []

    entries = []
    try:
        items = list(history)
    except TypeError:
        logger.warning(f"Ignoring non-iterable history of type {type(history).__name__}")
        return []

    for item in items:
        if isinstance(item, LedgerEntry):
            entry = item
        else:
            try:
                entry = LedgerEntry.model_validate(item)
            except PydanticValidationError:
                logger.debug(f"Dropping malformed ledger entry: {item!r}")
                continue
        if since is not None and entry.timestamp <= since:
            continue
        if until is not None and entry.timestamp > until:
            continue
        entries.append(entry)

    entries.sort(key=lambda e: e.timestamp)
    return entries


def window_start(moment: datetime, timeframe: Timeframe) -> Optional[datetime]:
    """Start of the current instance of a timeframe, None for all-time"""
    day_start = moment.replace(hour=0, minute=0, second=0, microsecond=0)

    if timeframe == Timeframe.DAILY:
        return day_start
    if timeframe == Timeframe.WEEKLY:
        # Weeks start on Monday
        return day_start - timedelta(days=day_start.weekday())
    if timeframe == Timeframe.MONTHLY:
        return day_start.replace(day=1)
    if timeframe == Timeframe.YEARLY:
        return day_start.replace(month=1, day=1)
    return None


def period_index(moment: datetime, timeframe: Timeframe) -> int:
    """Consecutive integer index of the period containing a moment"""
    day = moment.date()
    if timeframe == Timeframe.WEEKLY:
        # date(1, 1, 1) is a Monday
        return (day.toordinal() - 1) // 7
    if timeframe == Timeframe.MONTHLY:
        return day.year * MONTHS_PER_YEAR + (day.month - 1)
    if timeframe == Timeframe.YEARLY:
        return day.year
    return day.toordinal()


def entries_in_window(entries: list[LedgerEntry], timeframe: Timeframe, now: datetime) -> list[LedgerEntry]:
    """Entries inside the current instance of the timeframe"""
    start = window_start(now, timeframe)
    if start is None:
        return entries
    return [e for e in entries if e.timestamp >= start]


def client_visit_counts(entries: list[LedgerEntry]) -> Counter:
    """Visits per related client"""
    return Counter(
        e.related_client_id
        for e in entries
        if e.kind == LedgerEntryKind.VISIT and e.related_client_id
    )


def measure_metric(metric: ProgressMetric, entries: list[LedgerEntry]) -> int:
    """Count entries matching a (non-ratio) metric"""
    if metric == ProgressMetric.VISITS:
        return sum(1 for e in entries if e.kind == LedgerEntryKind.VISIT)

    if metric == ProgressMetric.UNIQUE_CLIENTS:
        return len(client_visit_counts(entries))

    if metric == ProgressMetric.RETURNING_CLIENTS:
        return sum(1 for count in client_visit_counts(entries).values() if count > 1)

    if metric == ProgressMetric.REWARDS_REDEEMED:
        return sum(1 for e in entries if e.reward_redeemed)

    if metric == ProgressMetric.SERVICES:
        services = set()
        for e in entries:
            if e.kind != LedgerEntryKind.VISIT:
                continue
            service_ids = e.metadata.get("service_ids") or []
            if e.metadata.get("service_id"):
                service_ids = list(service_ids) + [e.metadata["service_id"]]
            services.update(str(s) for s in service_ids)
        return len(services)

    return 0


def retention_rate(entries: list[LedgerEntry], max_clients: Optional[int] = None) -> tuple[float, int]:
    """
    Returning clients / unique clients * 100

    Args:
        entries: Ledger entries
        max_clients: Only consider the most recently seen N clients

    Returns:
        (rate, number of clients in the denominator)
    """
    counts = client_visit_counts(entries)
    clients = list(counts)

    if max_clients is not None and len(clients) > max_clients:
        last_seen = {}
        for e in entries:
            if e.kind == LedgerEntryKind.VISIT and e.related_client_id:
                last_seen[e.related_client_id] = e.timestamp
        clients = sorted(clients, key=lambda c: (last_seen[c], c), reverse=True)[:max_clients]

    if not clients:
        return 0.0, 0

    returning = sum(1 for c in clients if counts[c] > 1)
    return returning / len(clients) * 100, len(clients)


def format_duration(duration: DurationProgress) -> str:
    """
    Compose "X years, Y months, Z days" text (30-day months)

    Example:
        format_duration(DurationProgress(total_days=400, months=13, remaining_days=10))
        -> "1 year, 1 month, 10 days"
    """
    years, months = divmod(duration.months, MONTHS_PER_YEAR)
    days = duration.remaining_days

    parts = []
    if years:
        parts.append(f"{years} year{'s' if years > 1 else ''}")
    if months:
        parts.append(f"{months} month{'s' if months > 1 else ''}")
    if days or not parts:
        parts.append(f"{days} day{'s' if days != 1 else ''}")

    return ", ".join(parts)


# ============================================
# Helper Functions per Requirement Type
# ============================================

def _count_progress(definition: AchievementDefinition, entries: list[LedgerEntry], now: datetime) -> int:
    """Matching entries in the current timeframe window"""
    details = definition.requirement_details
    window = entries_in_window(entries, details.timeframe, now)

    if details.maximum_value is not None:
        window = _cap_per_day(window, int(details.maximum_value))

    return measure_metric(definition.effective_metric, window)


def _cap_per_day(entries: list[LedgerEntry], cap: int) -> list[LedgerEntry]:
    """Keep at most `cap` entries per calendar day"""
    kept = []
    per_day = defaultdict(int)
    for e in entries:
        day = e.timestamp.date()
        if per_day[day] < cap:
            per_day[day] += 1
            kept.append(e)
    return kept


def _duration_progress(subject: Subject, now: datetime, since: Optional[datetime]) -> DurationProgress:
    """Whole days since the start reference"""
    start = as_utc(subject.started_at)
    if since is not None and (start is None or since > start):
        start = since
    if start is None:
        return DurationProgress()

    total_days = max(0, (now.date() - start.date()).days)
    return DurationProgress(
        total_days=total_days,
        months=total_days // DAYS_PER_MONTH,
        remaining_days=total_days % DAYS_PER_MONTH,
    )


def _streak_progress(definition: AchievementDefinition, entries: list[LedgerEntry], now: datetime) -> int:
    """
    Run of consecutive qualifying periods

    A period qualifies when it holds at least minimum_value matching entries
    (default 1). With consecutive_required only the active run counts; the
    current period may still be empty without breaking it.
    """
    details = definition.requirement_details
    timeframe = details.timeframe
    if timeframe == Timeframe.ALL_TIME:
        timeframe = Timeframe.DAILY

    threshold = details.minimum_value if details.minimum_value is not None else 1
    metric = definition.effective_metric

    by_period = defaultdict(list)
    for e in entries:
        by_period[period_index(e.timestamp, timeframe)].append(e)

    qualifying = {
        period for period, period_entries in by_period.items()
        if measure_metric(metric, period_entries) >= max(threshold, 1)
    }
    if not qualifying:
        return 0

    if details.consecutive_required:
        current = period_index(now, timeframe)
        if current not in qualifying:
            current -= 1
        run = 0
        while current in qualifying:
            run += 1
            current -= 1
        return run

    best = 0
    for period in qualifying:
        # Only start counting at the beginning of a run
        if period - 1 in qualifying:
            continue
        run = 1
        while period + run in qualifying:
            run += 1
        best = max(best, run)
    return best


def _percentage_progress(
    definition: AchievementDefinition,
    entries: list[LedgerEntry],
    now: datetime,
) -> tuple[float, bool]:
    """
    Ratio metric over the timeframe window

    Returns:
        (current value in percent, insufficient_sample)
    """
    details = definition.requirement_details
    window = entries_in_window(entries, details.timeframe, now)
    max_size = int(details.maximum_value) if details.maximum_value is not None else None

    if definition.effective_metric == ProgressMetric.REDEMPTION_RATE:
        visits = [e for e in window if e.kind == LedgerEntryKind.VISIT]
        if max_size is not None:
            visits = visits[-max_size:] if max_size > 0 else []
        denominator = len(visits)
        numerator = sum(1 for e in visits if e.reward_redeemed)
        rate = numerator / denominator * 100 if denominator else 0.0
    else:
        rate, denominator = retention_rate(window, max_clients=max_size)

    if details.minimum_value is not None and denominator < details.minimum_value:
        return 0, True

    return rate, False


def _milestone_progress(definition: AchievementDefinition, entries: list[LedgerEntry]) -> float:
    """Binary: requirement value once the named milestone is recorded"""
    key = definition.requirement_details.milestone_key
    for e in entries:
        if e.kind != LedgerEntryKind.MILESTONE:
            continue
        if e.metadata.get("milestone_key", e.metadata.get("key")) == key:
            return definition.requirement_value
    return 0
