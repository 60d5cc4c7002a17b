"""
LoyaltyService - Aggregation Facade

Composes ledger, catalog, redemption engine and leaderboard ranker into the
operations consumers call:
- get_progress: per-subject achievement summary
- get_leaderboard: ranked subjects of a kind
- summarize_batch: many subjects at once, partial failures annotated
- request_redemption / confirm_redemption: actor-driven transitions
- get_redemption_statistics: catalog-wide redemption figures

Per-subject reads run concurrently (asyncio.gather keeps input order) and
are bounded by SUBJECT_TIMEOUT_SECONDS. A subject whose reads time out or fail
is omitted with an annotation naming the reason; the rest of the batch still
completes.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Union

from barber_loyalty import config
from barber_loyalty.engine.catalog import CatalogStore
from barber_loyalty.engine.leaderboard import compute_subject_metrics, rank_subjects
from barber_loyalty.engine.redemption_engine import RedemptionEngine
from barber_loyalty.exceptions import DatabaseError, DataUnavailable, RecordNotFoundError
from barber_loyalty.integrations.ledger import VisitLedger
from barber_loyalty.models.achievement import AchievementDefinition
from barber_loyalty.models.leaderboard import (
    LeaderboardEntry,
    LeaderboardMetric,
    LeaderboardWeights,
    SubjectMetrics,
    TimeWindow,
)
from barber_loyalty.models.progress import (
    AchievementStatus,
    BatchReport,
    OmittedSubject,
    SubjectAchievementSummary,
)
from barber_loyalty.models.redemption import (
    RedemptionRecord,
    RedemptionState,
    RedemptionStatistics,
    RedemptionTransition,
    RewardPopularity,
)
from barber_loyalty.models.visit import LedgerEntry, Subject, SubjectKind
from barber_loyalty.observability import metrics

logger = logging.getLogger(__name__)


class LoyaltyService:
    """
    Service for loyalty progress, redemptions and rankings.

    Responsibilities:
    - Evaluate every active achievement for a subject
    - Build leaderboards over a subject kind
    - Fan out batch summaries with timeouts and omission annotations
    - Delegate redemption transitions to the engine
    """

    def __init__(
        self,
        ledger: VisitLedger,
        catalog: CatalogStore,
        engine: RedemptionEngine,
        weights: Optional[LeaderboardWeights] = None,
        subject_timeout: float = config.SUBJECT_TIMEOUT_SECONDS,
        leaderboard_limit: int = config.LEADERBOARD_LIMIT,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize LoyaltyService.

        Args:
            ledger: Visit ledger reader
            catalog: Achievement catalog
            engine: Redemption engine (owns the redemption store)
            weights: Composite leaderboard weights (defaults when omitted)
            subject_timeout: Per-subject read budget in seconds
            leaderboard_limit: Default number of leaderboard entries
            clock: Source of "now" (tests)
        """
        self.ledger = ledger
        self.catalog = catalog
        self.engine = engine
        self.weights = weights or LeaderboardWeights()
        self.subject_timeout = subject_timeout
        self.leaderboard_limit = leaderboard_limit
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        logger.debug("LoyaltyService initialized")

    # ============================================
    # Progress
    # ============================================

    async def get_progress(self, subject_id: str, now: Optional[datetime] = None) -> SubjectAchievementSummary:
        """
        Evaluate all active achievements for one subject

        Raises:
            RecordNotFoundError: Unknown subject
            DataUnavailable: Ledger read failed
        """
        now = now or self._clock()
        subject = await self._require_subject(subject_id)
        definitions, catalog_error = await self._load_definitions(now)
        history = await self.ledger.get_history(subject.id)
        return await self._summarize(subject, history, definitions, now, catalog_error)

    # ============================================
    # Leaderboard
    # ============================================

    async def get_leaderboard(
        self,
        metric: LeaderboardMetric = LeaderboardMetric.OVERALL,
        window: TimeWindow = TimeWindow.ALL_TIME,
        kind: SubjectKind = SubjectKind.BARBER,
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> list[LeaderboardEntry]:
        """
        Rank all active subjects of a kind

        Subjects whose data cannot be read in time are left out of the
        ranking (and counted in subjects_omitted_total).

        Raises:
            DataUnavailable: The subject list itself could not be read
        """
        now = now or self._clock()
        subjects = await self.ledger.list_subjects(kind)

        async def collect(subject: Subject) -> SubjectMetrics:
            history = await self.ledger.get_history(subject.id)
            return await self._subject_metrics(subject, history, window, now)

        results = await asyncio.gather(*(self._bounded(s.id, collect(s)) for s in subjects))
        collected = [r for r in results if isinstance(r, SubjectMetrics)]

        metrics.leaderboard_requests_total.labels(metric=metric.value, window=window.value).inc()
        entries = rank_subjects(
            collected,
            metric=metric,
            weights=self.weights,
            limit=limit if limit is not None else self.leaderboard_limit,
        )
        logger.info(
            f"Leaderboard {metric.value}/{window.value} for {kind.value}: "
            f"{len(entries)} ranked, {len(subjects) - len(collected)} omitted"
        )
        return entries

    # ============================================
    # Batch aggregation
    # ============================================

    async def summarize_batch(
        self,
        subject_ids: Iterable[str],
        metric: Optional[LeaderboardMetric] = None,
        window: TimeWindow = TimeWindow.ALL_TIME,
        now: Optional[datetime] = None,
    ) -> BatchReport:
        """
        Summarize many subjects concurrently

        Args:
            subject_ids: Subjects to summarize (result keeps this order)
            metric: Also rank the summarized subjects by this metric
            window: Leaderboard window (with metric)
            now: Evaluation instant

        Returns:
            BatchReport with summaries, omitted subjects and the optional leaderboard
        """
        now = now or self._clock()
        subject_ids = list(subject_ids)
        definitions, catalog_error = await self._load_definitions(now)

        async def collect(subject_id: str) -> tuple[SubjectAchievementSummary, Optional[SubjectMetrics]]:
            subject = await self.ledger.get_subject(subject_id)
            if subject is None:
                raise RecordNotFoundError(
                    message=f"Subject {subject_id} not found in ledger",
                    record_type="Subject",
                    record_id=subject_id,
                    subject_id=subject_id,
                    operation="summarize_batch",
                )
            history = await self.ledger.get_history(subject.id)
            summary = await self._summarize(subject, history, definitions, now, catalog_error)
            subject_metrics = None
            if metric is not None:
                subject_metrics = await self._subject_metrics(subject, history, window, now)
            return summary, subject_metrics

        results = await asyncio.gather(
            *(self._bounded(subject_id, collect(subject_id)) for subject_id in subject_ids)
        )

        report = BatchReport()
        ranked_metrics = []
        for result in results:
            if isinstance(result, OmittedSubject):
                report.omitted.append(result)
                continue
            summary, subject_metrics = result
            report.summaries.append(summary)
            if subject_metrics is not None:
                ranked_metrics.append(subject_metrics)

        if metric is not None:
            metrics.leaderboard_requests_total.labels(metric=metric.value, window=window.value).inc()
            report.leaderboard = rank_subjects(ranked_metrics, metric=metric, weights=self.weights)

        logger.info(
            f"Batch summary: {len(report.summaries)} subjects summarized, "
            f"{len(report.omitted)} omitted"
        )
        return report

    # ============================================
    # Redemptions
    # ============================================

    async def request_redemption(
        self,
        subject_id: str,
        achievement_id: str,
        actor: str,
        notes: Optional[str] = None,
        authorized_by: Optional[str] = None,
    ) -> RedemptionRecord:
        await self._require_definition(achievement_id, subject_id, "request_redemption")
        return await self.engine.request_redemption(
            subject_id, achievement_id, actor, notes, authorized_by=authorized_by,
        )

    async def confirm_redemption(
        self,
        subject_id: str,
        achievement_id: str,
        actor: str,
        notes: Optional[str] = None,
        authorized_by: Optional[str] = None,
    ) -> RedemptionRecord:
        return await self.engine.confirm_redemption(
            subject_id, achievement_id, actor, notes, authorized_by=authorized_by,
        )

    async def get_redemption(
        self,
        subject_id: str,
        achievement_id: str,
    ) -> tuple[RedemptionRecord, list[RedemptionTransition]]:
        """
        Redemption record with its audit history

        Raises:
            RecordNotFoundError: No record yet (achievement never evaluated)
        """
        record = await self.engine.get_record(subject_id, achievement_id)
        if record is None:
            raise RecordNotFoundError(
                message=f"No redemption record for {subject_id}/{achievement_id}",
                record_type="RedemptionRecord",
                record_id=f"{subject_id}/{achievement_id}",
                subject_id=subject_id,
                operation="get_redemption",
            )
        history = await self.engine.get_history(subject_id, achievement_id)
        return record, history

    async def get_redemption_statistics(
        self,
        kind: SubjectKind = SubjectKind.BARBER,
        popular_limit: int = 5,
        now: Optional[datetime] = None,
    ) -> RedemptionStatistics:
        """
        Redemption figures across the active catalog for one subject kind

        Only records of active subjects of `kind` are counted. Popular
        rewards are achievements with a reward attached, most redeemed first.

        Args:
            kind: Subjects to aggregate over
            popular_limit: Number of popular rewards to return
            now: Evaluation instant (selects the active catalog)

        Returns:
            RedemptionStatistics

        Raises:
            DataUnavailable: Catalog or subject list could not be read
        """
        now = now or self._clock()
        definitions = await self.catalog.list_active_definitions(now.date())
        subject_ids = {s.id for s in await self.ledger.list_subjects(kind)}
        record_lists = await asyncio.gather(
            *(self.engine.list_records_for_achievement(d.id) for d in definitions)
        )

        stats = RedemptionStatistics(
            kind=kind.value,
            active_achievements=len(definitions),
            active_subjects=len(subject_ids),
            generated_at=now,
        )
        popular = []
        for definition, records in zip(definitions, record_lists):
            records = [r for r in records if r.subject_id in subject_ids]
            redeemed = sum(r.completion_count for r in records)

            category = definition.category.value
            stats.achievements_by_category[category] = stats.achievements_by_category.get(category, 0) + 1
            stats.total_redemptions += redeemed
            stats.awaiting_redemption += sum(1 for r in records if r.state == RedemptionState.EARNED)
            stats.pending_redemptions += sum(1 for r in records if r.state == RedemptionState.PENDING_REDEMPTION)

            if definition.reward is None or not redeemed:
                continue
            reward_type = definition.reward.type.value
            stats.redemptions_by_reward_type[reward_type] = (
                stats.redemptions_by_reward_type.get(reward_type, 0) + redeemed
            )
            popular.append(RewardPopularity(
                achievement_id=definition.id,
                title=definition.title,
                redemptions=redeemed,
            ))

        popular.sort(key=lambda p: (-p.redemptions, p.achievement_id))
        stats.popular_rewards = popular[:popular_limit]
        if subject_ids:
            stats.redemption_rate = round(stats.total_redemptions / len(subject_ids), 2)

        logger.info(
            f"Redemption statistics for {kind.value}: {stats.total_redemptions} redeemed, "
            f"{stats.pending_redemptions} pending across {len(subject_ids)} subjects"
        )
        return stats

    # ============================================
    # Helper Functions
    # ============================================

    async def _bounded(self, subject_id: str, coro) -> Union[object, OmittedSubject]:
        """Run one subject's work under the timeout; annotate recoverable failures"""
        try:
            return await asyncio.wait_for(coro, timeout=self.subject_timeout)
        except asyncio.TimeoutError:
            return self._omit(subject_id, "timeout", f"No response within {self.subject_timeout}s")
        except DataUnavailable as e:
            return self._omit(subject_id, "data_unavailable", e.message)
        except RecordNotFoundError as e:
            return self._omit(subject_id, "not_found", e.message)
        except DatabaseError as e:
            return self._omit(subject_id, "store_error", e.message)

    @staticmethod
    def _omit(subject_id: str, reason: str, error: str) -> OmittedSubject:
        metrics.subjects_omitted_total.labels(reason=reason).inc()
        logger.warning(f"Omitting subject {subject_id} ({reason}): {error}")
        return OmittedSubject(subject_id=subject_id, reason=reason, error=error)

    async def _require_subject(self, subject_id: str) -> Subject:
        subject = await self.ledger.get_subject(subject_id)
        if subject is None:
            raise RecordNotFoundError(
                message=f"Subject {subject_id} not found in ledger",
                record_type="Subject",
                record_id=subject_id,
                subject_id=subject_id,
                operation="get_progress",
            )
        return subject

    async def _require_definition(self, achievement_id: str, subject_id: str, operation: str) -> AchievementDefinition:
        definition = await self.catalog.get_definition(achievement_id)
        if definition is None:
            raise RecordNotFoundError(
                message=f"Achievement {achievement_id} not found",
                record_type="Achievement",
                record_id=achievement_id,
                subject_id=subject_id,
                operation=operation,
            )
        return definition

    async def _load_definitions(self, now: datetime) -> tuple[list[AchievementDefinition], Optional[str]]:
        """Active definitions, or an empty list plus the error when the catalog is down"""
        try:
            return await self.catalog.list_active_definitions(now.date()), None
        except DataUnavailable as e:
            return [], e.message

    async def _summarize(
        self,
        subject: Subject,
        history: list[LedgerEntry],
        definitions: list[AchievementDefinition],
        now: datetime,
        catalog_error: Optional[str] = None,
    ) -> SubjectAchievementSummary:
        satisfied = await self.engine.satisfied_achievements(subject.id)

        progress_by_id = {}
        for definition in prerequisite_order(definitions):
            progress = await self.engine.evaluate(
                subject, definition, history,
                now=now,
                satisfied_prerequisites=satisfied,
            )
            if progress.is_earned:
                # Unlocks dependents later in the same pass
                satisfied.add(definition.id)
            progress_by_id[definition.id] = progress

        records = {r.achievement_id: r for r in await self.engine.list_records(subject.id)}

        statuses = []
        for definition in definitions:
            record = records.get(definition.id)
            statuses.append(AchievementStatus(
                achievement_id=definition.id,
                title=definition.title,
                category=definition.category.value,
                tier=definition.tier.value,
                points=definition.points,
                icon=definition.icon,
                progress=progress_by_id[definition.id],
                record=record,
            ))

        satisfied_statuses = [s for s in statuses if s.record is not None and s.record.is_satisfied]
        percentages = [s.progress.progress_percentage for s in statuses]

        return SubjectAchievementSummary(
            subject_id=subject.id,
            name=subject.name,
            achievements=statuses,
            earned_count=len(satisfied_statuses),
            redeemed_count=sum(1 for s in statuses if s.record and s.record.state == RedemptionState.REDEEMED),
            total_count=len(statuses),
            overall_percentage=round(sum(percentages) / len(percentages), 2) if percentages else 0.0,
            total_points=sum(s.points for s in satisfied_statuses),
            catalog_error=catalog_error,
        )

    async def _subject_metrics(
        self,
        subject: Subject,
        history: list[LedgerEntry],
        window: TimeWindow,
        now: datetime,
    ) -> SubjectMetrics:
        records = await self.engine.list_records(subject.id)
        return compute_subject_metrics(
            subject,
            history,
            window=window,
            now=now,
            earned_rewards=sum(1 for r in records if r.is_satisfied),
        )


def prerequisite_order(definitions: list[AchievementDefinition]) -> list[AchievementDefinition]:
    """
    Order definitions so prerequisites come before their dependents

    Prerequisites outside the given list are ignored. The catalog loader
    already rejected cycles; any leftover is appended in input order.
    """
    by_id = {d.id: d for d in definitions}
    ordered: list[AchievementDefinition] = []
    placed: set[str] = set()

    remaining = list(definitions)
    while remaining:
        ready = [
            d for d in remaining
            if all(p in placed or p not in by_id for p in d.prerequisites)
        ]
        if not ready:
            ordered.extend(remaining)
            break
        for d in ready:
            ordered.append(d)
            placed.add(d.id)
        remaining = [d for d in remaining if d.id not in placed]

    return ordered
