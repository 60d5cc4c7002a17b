"""
Eligibility & Redemption Engine

Per (subject, achievement) state machine:

    locked -> earned -> pending_redemption -> redeemed [-> earned]

- locked -> earned: automatic, the first time progress reports is_earned
- earned -> pending_redemption: an actor flags a manual handoff
- earned/pending_redemption -> redeemed: an actor confirms the redemption
- redeemed -> earned: automatic new cycle, repeatable achievements only,
  while completions remain and progress since the last redemption is earned

All transitions for one key are serialized; every transition is appended
to the record's audit history.
"""

import asyncio
import logging
import weakref
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from barber_loyalty.engine.catalog import CatalogStore
from barber_loyalty.engine.progress_calculator import calculate_progress
from barber_loyalty.engine.redemption_store import RedemptionStore
from barber_loyalty.exceptions import (
    CompletionLimitExceeded,
    InvalidStateError,
    RecordNotFoundError,
    StaleRecordError,
    ValidationError,
)
from barber_loyalty.models.achievement import AchievementDefinition
from barber_loyalty.models.progress import SubjectProgress
from barber_loyalty.models.redemption import (
    RedemptionRecord,
    RedemptionState,
    RedemptionTransition,
)
from barber_loyalty.models.visit import Subject
from barber_loyalty.observability import metrics

logger = logging.getLogger(__name__)

CONFIRMABLE_STATES = (RedemptionState.EARNED, RedemptionState.PENDING_REDEMPTION)


class RedemptionEngine:
    """
    Stateful engine over a RedemptionStore.

    Responsibilities:
    - Evaluate progress and apply the automatic transitions
    - Request and confirm redemptions on behalf of an actor
    - Enforce repeatability and completion limits
    - Serialize transitions per (subject, achievement)
    """

    def __init__(
        self,
        store: RedemptionStore,
        catalog: CatalogStore,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.catalog = catalog
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        # Entries vanish once no transition holds or awaits the lock
        self._locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()

    def _lock_for(self, subject_id: str, achievement_id: str) -> asyncio.Lock:
        key = (subject_id, achievement_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    # ============================================
    # Evaluation (automatic transitions)
    # ============================================

    async def evaluate(
        self,
        subject: Subject,
        definition: AchievementDefinition,
        history: Optional[Iterable],
        *,
        now: Optional[datetime] = None,
        satisfied_prerequisites: Optional[Iterable[str]] = None,
    ) -> SubjectProgress:
        """
        Compute progress and apply locked -> earned / redeemed -> earned

        Args:
            subject: Subject being evaluated
            definition: Achievement definition
            history: Subject's visit history
            now: Evaluation instant (defaults to the engine clock)
            satisfied_prerequisites: Pre-loaded satisfied achievement IDs;
                read from the store when omitted

        Returns:
            SubjectProgress for the current cycle
        """
        now = now or self._clock()

        async with self._lock_for(subject.id, definition.id):
            record = await self.store.get(subject.id, definition.id)
            if satisfied_prerequisites is None:
                satisfied_prerequisites = await self.satisfied_achievements(subject.id)

            since = None
            if record and record.last_redeemed_at and self._can_start_new_cycle(record, definition):
                since = record.last_redeemed_at

            progress = calculate_progress(
                subject,
                definition,
                history,
                now=now,
                satisfied_prerequisites=satisfied_prerequisites,
                since=since,
            )
            metrics.progress_evaluations_total.labels(
                requirement_type=definition.requirement_type.value
            ).inc()

            is_new = record is None
            if record is None:
                record = RedemptionRecord(subject_id=subject.id, achievement_id=definition.id)

            transitions: list[RedemptionTransition] = []
            if progress.is_earned:
                if record.state == RedemptionState.LOCKED:
                    record, transition = self._transition(
                        record, RedemptionState.EARNED, now,
                        earned_at=now,
                    )
                    transitions.append(transition)

                elif record.state == RedemptionState.REDEEMED and self._can_start_new_cycle(record, definition):
                    record, transition = self._transition(
                        record, RedemptionState.EARNED, now,
                        audit_notes="new cycle",
                        earned_at=now,
                        redeemed_at=None,
                        redeemed_by=None,
                        requested_at=None,
                        requested_by=None,
                        notes=None,
                    )
                    transitions.append(transition)

            if is_new or transitions:
                try:
                    await self.store.save(record, transitions)
                except StaleRecordError:
                    # Another process moved the record first; its state wins
                    logger.info(
                        f"Skipped automatic transition for {subject.id}/{definition.id}: "
                        f"record changed concurrently"
                    )
                else:
                    for transition in transitions:
                        _count_transition(transition)
                        logger.info(
                            f"Subject {subject.id} {transition.from_state.value} -> "
                            f"{transition.to_state.value} on {definition.id} ({definition.title})"
                        )

            return progress

    async def satisfied_achievements(self, subject_id: str) -> set[str]:
        """Achievement IDs whose record counts as satisfied (prerequisite checks)"""
        records = await self.store.list_for_subject(subject_id)
        return {r.achievement_id for r in records if r.is_satisfied}

    # ============================================
    # Actor-driven transitions
    # ============================================

    async def request_redemption(
        self,
        subject_id: str,
        achievement_id: str,
        actor: str,
        notes: Optional[str] = None,
        authorized_by: Optional[str] = None,
    ) -> RedemptionRecord:
        """
        earned -> pending_redemption

        Raises:
            ValidationError: Missing actor
            InvalidStateError: Record is not earned
        """
        self._require_actor(actor)

        async with self._lock_for(subject_id, achievement_id):
            record = await self.store.get(subject_id, achievement_id)
            self._require_state(record, (RedemptionState.EARNED,), subject_id, achievement_id, "request_redemption")

            now = self._clock()
            record, transition = self._transition(
                record, RedemptionState.PENDING_REDEMPTION, now,
                actor=actor,
                authorized_by=authorized_by,
                audit_notes=notes,
                requested_at=now,
                requested_by=actor,
            )
            saved = await self._save_actor_transition(record, transition, "request_redemption")

        logger.info(f"Redemption requested by {actor} for {subject_id}/{achievement_id}")
        return saved

    async def confirm_redemption(
        self,
        subject_id: str,
        achievement_id: str,
        actor: str,
        notes: Optional[str] = None,
        authorized_by: Optional[str] = None,
    ) -> RedemptionRecord:
        """
        earned/pending_redemption -> redeemed

        Raises:
            ValidationError: Missing actor
            RecordNotFoundError: Unknown achievement
            InvalidStateError: Record is not earned or pending, or the reward
                needs a handoff request first
            CompletionLimitExceeded: All completions already used
        """
        self._require_actor(actor)

        definition = await self.catalog.get_definition(achievement_id)
        if definition is None:
            raise RecordNotFoundError(
                message=f"Achievement {achievement_id} not found",
                record_type="Achievement",
                record_id=achievement_id,
                subject_id=subject_id,
                operation="confirm_redemption",
            )

        async with self._lock_for(subject_id, achievement_id):
            record = await self.store.get(subject_id, achievement_id)
            self._require_state(record, CONFIRMABLE_STATES, subject_id, achievement_id, "confirm_redemption")

            if (
                record.state == RedemptionState.EARNED
                and definition.reward is not None
                and definition.reward.requires_handoff
            ):
                metrics.redemption_rejections_total.labels(reason="handoff_required").inc()
                raise InvalidStateError(
                    message=f"Reward for {achievement_id} requires a redemption request before confirmation",
                    current_state=record.state.value,
                    allowed_states=[RedemptionState.PENDING_REDEMPTION.value],
                    achievement_id=achievement_id,
                    subject_id=subject_id,
                    operation="confirm_redemption",
                )

            limit = definition.completion_limit
            if limit is not None and record.completion_count >= limit:
                metrics.redemption_rejections_total.labels(reason="completion_limit").inc()
                raise CompletionLimitExceeded(
                    message=f"{subject_id} already completed {achievement_id} {record.completion_count}/{limit} times",
                    completion_count=record.completion_count,
                    max_completions=limit,
                    achievement_id=achievement_id,
                    subject_id=subject_id,
                    operation="confirm_redemption",
                )

            now = self._clock()
            record, transition = self._transition(
                record, RedemptionState.REDEEMED, now,
                actor=actor,
                authorized_by=authorized_by,
                audit_notes=notes,
                redeemed_at=now,
                redeemed_by=actor,
                last_redeemed_at=now,
                notes=notes,
                completion_count=record.completion_count + 1,
            )
            saved = await self._save_actor_transition(record, transition, "confirm_redemption")

        logger.info(
            f"Redemption confirmed by {actor} for {subject_id}/{achievement_id} "
            f"(completion {saved.completion_count}{f'/{limit}' if limit else ''})"
        )
        return saved

    # ============================================
    # Reads
    # ============================================

    async def get_record(self, subject_id: str, achievement_id: str) -> Optional[RedemptionRecord]:
        return await self.store.get(subject_id, achievement_id)

    async def list_records(self, subject_id: str) -> list[RedemptionRecord]:
        return await self.store.list_for_subject(subject_id)

    async def list_records_for_achievement(self, achievement_id: str) -> list[RedemptionRecord]:
        return await self.store.list_for_achievement(achievement_id)

    async def get_history(self, subject_id: str, achievement_id: str) -> list[RedemptionTransition]:
        return await self.store.get_history(subject_id, achievement_id)

    # ============================================
    # Helper Functions
    # ============================================

    @staticmethod
    def _can_start_new_cycle(record: RedemptionRecord, definition: AchievementDefinition) -> bool:
        if not definition.is_repeatable:
            return False
        limit = definition.completion_limit
        return limit is None or record.completion_count < limit

    @staticmethod
    def _transition(
        record: RedemptionRecord,
        to_state: RedemptionState,
        now: datetime,
        actor: Optional[str] = None,
        authorized_by: Optional[str] = None,
        audit_notes: Optional[str] = None,
        **updates,
    ) -> tuple[RedemptionRecord, RedemptionTransition]:
        """Build the next record and its audit entry"""
        transition = RedemptionTransition(
            subject_id=record.subject_id,
            achievement_id=record.achievement_id,
            from_state=record.state,
            to_state=to_state,
            actor=actor,
            authorized_by=authorized_by,
            notes=audit_notes,
            occurred_at=now,
        )
        return record.model_copy(update={"state": to_state, **updates}), transition

    async def _save_actor_transition(
        self,
        record: RedemptionRecord,
        transition: RedemptionTransition,
        operation: str,
    ) -> RedemptionRecord:
        try:
            saved = await self.store.save(record, [transition])
        except StaleRecordError as e:
            raise InvalidStateError(
                message=f"Redemption record {record.subject_id}/{record.achievement_id} changed concurrently",
                current_state=None,
                allowed_states=[transition.from_state.value],
                achievement_id=record.achievement_id,
                subject_id=record.subject_id,
                operation=operation,
                cause=e,
            )
        _count_transition(transition)
        return saved

    @staticmethod
    def _require_state(
        record: Optional[RedemptionRecord],
        allowed: tuple[RedemptionState, ...],
        subject_id: str,
        achievement_id: str,
        operation: str,
    ) -> None:
        current = record.state if record else RedemptionState.LOCKED
        if record is None or current not in allowed:
            metrics.redemption_rejections_total.labels(reason="invalid_state").inc()
            raise InvalidStateError(
                message=f"Cannot {operation.replace('_', ' ')} for {subject_id}/{achievement_id} "
                        f"in state {current.value}",
                current_state=current.value,
                allowed_states=[s.value for s in allowed],
                achievement_id=achievement_id,
                subject_id=subject_id,
                operation=operation,
            )

    @staticmethod
    def _require_actor(actor: str) -> None:
        if not actor or not actor.strip():
            raise ValidationError(
                message="Actor identity is required",
                field="actor",
                value=actor,
                operation="redemption",
            )


def _count_transition(transition: RedemptionTransition) -> None:
    metrics.redemption_transitions_total.labels(
        from_state=transition.from_state.value,
        to_state=transition.to_state.value,
    ).inc()
