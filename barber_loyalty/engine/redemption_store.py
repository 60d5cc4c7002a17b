"""
Redemption record storage

RedemptionRecord is the one piece of engine-owned persistent state. Stores
write with an optimistic version check so two writers racing on the same
(subject, achievement) key cannot both succeed.
"""

import logging
from typing import Optional, Protocol

from barber_loyalty.exceptions import StaleRecordError
from barber_loyalty.models.redemption import RedemptionRecord, RedemptionTransition

logger = logging.getLogger(__name__)


class RedemptionStore(Protocol):
    """Persistence contract for redemption records"""

    async def get(self, subject_id: str, achievement_id: str) -> Optional[RedemptionRecord]:
        ...

    async def list_for_subject(self, subject_id: str) -> list[RedemptionRecord]:
        ...

    async def list_for_achievement(self, achievement_id: str) -> list[RedemptionRecord]:
        ...

    async def save(
        self,
        record: RedemptionRecord,
        transitions: list[RedemptionTransition],
    ) -> RedemptionRecord:
        """
        Persist a record and append its transitions atomically

        record.version must equal the stored version (0 for a new record).
        Returns the stored record with its version incremented.

        Raises:
            StaleRecordError: The stored version differs
        """
        ...

    async def get_history(self, subject_id: str, achievement_id: str) -> list[RedemptionTransition]:
        ...


class InMemoryRedemptionStore:
    """In-process store; records do not survive a restart"""

    def __init__(self):
        self._records: dict[tuple[str, str], RedemptionRecord] = {}
        self._history: dict[tuple[str, str], list[RedemptionTransition]] = {}

    async def get(self, subject_id: str, achievement_id: str) -> Optional[RedemptionRecord]:
        record = self._records.get((subject_id, achievement_id))
        return record.model_copy() if record else None

    async def list_for_subject(self, subject_id: str) -> list[RedemptionRecord]:
        return [
            r.model_copy() for (sid, _), r in sorted(self._records.items())
            if sid == subject_id
        ]

    async def list_for_achievement(self, achievement_id: str) -> list[RedemptionRecord]:
        return [
            r.model_copy() for (_, aid), r in sorted(self._records.items())
            if aid == achievement_id
        ]

    async def save(
        self,
        record: RedemptionRecord,
        transitions: list[RedemptionTransition],
    ) -> RedemptionRecord:
        key = record.key
        stored = self._records.get(key)
        stored_version = stored.version if stored else 0

        if record.version != stored_version:
            raise StaleRecordError(
                message=f"Redemption record {key} changed concurrently "
                        f"(expected v{record.version}, found v{stored_version})",
                expected_version=record.version,
                subject_id=record.subject_id,
                operation="save_redemption_record",
            )

        saved = record.model_copy(update={"version": stored_version + 1})
        self._records[key] = saved
        self._history.setdefault(key, []).extend(t.model_copy() for t in transitions)
        logger.debug(f"Saved redemption record {key} v{saved.version} (NOT PERSISTED)")
        return saved.model_copy()

    async def get_history(self, subject_id: str, achievement_id: str) -> list[RedemptionTransition]:
        return [t.model_copy() for t in self._history.get((subject_id, achievement_id), [])]

    def clear(self) -> None:
        """Drop everything (tests)"""
        self._records.clear()
        self._history.clear()
