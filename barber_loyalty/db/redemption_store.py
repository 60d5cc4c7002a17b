"""
PostgreSQL redemption store

Tables:
- redemption_records: one row per (subject_id, achievement_id), versioned
- redemption_transitions: append-only audit log

Writes use the record version as an optimistic lock: an INSERT only
succeeds when no row exists yet, an UPDATE only when the stored version
still matches. Either failing raises StaleRecordError.
"""
import logging
from typing import Optional

import psycopg

from barber_loyalty.db.connection import Database, db as default_db
from barber_loyalty.exceptions import StaleRecordError, wrap_external_exception
from barber_loyalty.models.redemption import RedemptionRecord, RedemptionTransition

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS redemption_records (
    subject_id VARCHAR(255) NOT NULL,
    achievement_id VARCHAR(255) NOT NULL,
    state VARCHAR(32) NOT NULL DEFAULT 'locked',
    earned_at TIMESTAMPTZ,
    requested_at TIMESTAMPTZ,
    requested_by VARCHAR(255),
    redeemed_at TIMESTAMPTZ,
    redeemed_by VARCHAR(255),
    last_redeemed_at TIMESTAMPTZ,
    notes TEXT,
    completion_count INTEGER NOT NULL DEFAULT 0 CHECK (completion_count >= 0),
    version INTEGER NOT NULL DEFAULT 1,
    created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (subject_id, achievement_id),
    CHECK ((state = 'redeemed') = (redeemed_at IS NOT NULL))
);

CREATE INDEX IF NOT EXISTS idx_redemption_records_achievement
    ON redemption_records (achievement_id);

CREATE TABLE IF NOT EXISTS redemption_transitions (
    id BIGSERIAL PRIMARY KEY,
    subject_id VARCHAR(255) NOT NULL,
    achievement_id VARCHAR(255) NOT NULL,
    from_state VARCHAR(32) NOT NULL,
    to_state VARCHAR(32) NOT NULL,
    actor VARCHAR(255),
    authorized_by VARCHAR(255),
    notes TEXT,
    occurred_at TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_redemption_transitions_key
    ON redemption_transitions (subject_id, achievement_id, occurred_at);
"""

_RECORD_COLUMNS = """
    subject_id, achievement_id, state, earned_at, requested_at, requested_by,
    redeemed_at, redeemed_by, last_redeemed_at, notes, completion_count, version
"""


class PostgresRedemptionStore:
    """RedemptionStore backed by PostgreSQL (psycopg 3 async pool)"""

    def __init__(self, database: Optional[Database] = None):
        self.db = database or default_db

    async def ensure_schema(self) -> None:
        """Create tables and indexes if they do not exist"""
        try:
            async with self.db.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(SCHEMA_SQL)
                await conn.commit()
        except psycopg.Error as e:
            raise wrap_external_exception(e, operation="ensure_schema")
        logger.info("Redemption schema ready")

    async def get(self, subject_id: str, achievement_id: str) -> Optional[RedemptionRecord]:
        row = await self._fetch_one(
            f"""
            SELECT {_RECORD_COLUMNS}
            FROM redemption_records
            WHERE subject_id = %s AND achievement_id = %s
            """,
            (subject_id, achievement_id),
            operation="get_redemption_record",
            subject_id=subject_id,
        )
        return RedemptionRecord.model_validate(row) if row else None

    async def list_for_subject(self, subject_id: str) -> list[RedemptionRecord]:
        rows = await self._fetch_all(
            f"""
            SELECT {_RECORD_COLUMNS}
            FROM redemption_records
            WHERE subject_id = %s
            ORDER BY achievement_id
            """,
            (subject_id,),
            operation="list_redemption_records",
            subject_id=subject_id,
        )
        return [RedemptionRecord.model_validate(row) for row in rows]

    async def list_for_achievement(self, achievement_id: str) -> list[RedemptionRecord]:
        rows = await self._fetch_all(
            f"""
            SELECT {_RECORD_COLUMNS}
            FROM redemption_records
            WHERE achievement_id = %s
            ORDER BY subject_id
            """,
            (achievement_id,),
            operation="list_redemption_records_for_achievement",
        )
        return [RedemptionRecord.model_validate(row) for row in rows]

    async def get_history(self, subject_id: str, achievement_id: str) -> list[RedemptionTransition]:
        rows = await self._fetch_all(
            """
            SELECT subject_id, achievement_id, from_state, to_state, actor, authorized_by, notes, occurred_at
            FROM redemption_transitions
            WHERE subject_id = %s AND achievement_id = %s
            ORDER BY occurred_at, id
            """,
            (subject_id, achievement_id),
            operation="get_redemption_history",
            subject_id=subject_id,
        )
        return [RedemptionTransition.model_validate(row) for row in rows]

    async def save(
        self,
        record: RedemptionRecord,
        transitions: list[RedemptionTransition],
    ) -> RedemptionRecord:
        """
        Persist a record and append its transitions in one transaction

        Raises:
            StaleRecordError: Stored version differs from record.version
            QueryError: Database failure
        """
        new_version = record.version + 1
        values = (
            record.state.value,
            record.earned_at,
            record.requested_at,
            record.requested_by,
            record.redeemed_at,
            record.redeemed_by,
            record.last_redeemed_at,
            record.notes,
            record.completion_count,
            new_version,
        )

        try:
            async with self.db.connection() as conn:
                async with conn.transaction():
                    async with conn.cursor() as cur:
                        if record.version == 0:
                            await cur.execute(
                                """
                                INSERT INTO redemption_records
                                    (subject_id, achievement_id, state, earned_at, requested_at,
                                     requested_by, redeemed_at, redeemed_by, last_redeemed_at,
                                     notes, completion_count, version)
                                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                                ON CONFLICT (subject_id, achievement_id) DO NOTHING
                                """,
                                (record.subject_id, record.achievement_id, *values)
                            )
                        else:
                            await cur.execute(
                                """
                                UPDATE redemption_records
                                SET state = %s,
                                    earned_at = %s,
                                    requested_at = %s,
                                    requested_by = %s,
                                    redeemed_at = %s,
                                    redeemed_by = %s,
                                    last_redeemed_at = %s,
                                    notes = %s,
                                    completion_count = %s,
                                    version = %s,
                                    updated_at = CURRENT_TIMESTAMP
                                WHERE subject_id = %s AND achievement_id = %s AND version = %s
                                """,
                                (*values, record.subject_id, record.achievement_id, record.version)
                            )

                        if cur.rowcount == 0:
                            raise StaleRecordError(
                                message=f"Redemption record {record.key} changed concurrently "
                                        f"(expected v{record.version})",
                                expected_version=record.version,
                                subject_id=record.subject_id,
                                operation="save_redemption_record",
                            )

                        if transitions:
                            await cur.executemany(
                                """
                                INSERT INTO redemption_transitions
                                    (subject_id, achievement_id, from_state, to_state, actor, authorized_by, notes, occurred_at)
                                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                                """,
                                [
                                    (
                                        t.subject_id,
                                        t.achievement_id,
                                        t.from_state.value,
                                        t.to_state.value,
                                        t.actor,
                                        t.authorized_by,
                                        t.notes,
                                        t.occurred_at,
                                    )
                                    for t in transitions
                                ]
                            )
        except psycopg.Error as e:
            raise wrap_external_exception(
                e,
                operation="save_redemption_record",
                subject_id=record.subject_id,
                context={"achievement_id": record.achievement_id},
            )

        logger.debug(f"Saved redemption record {record.key} v{new_version}")
        return record.model_copy(update={"version": new_version})

    # ============================================
    # Helper Functions
    # ============================================

    async def _fetch_one(self, query: str, params: tuple, operation: str, subject_id: Optional[str] = None):
        try:
            async with self.db.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(query, params)
                    return await cur.fetchone()
        except psycopg.Error as e:
            raise wrap_external_exception(e, operation=operation, subject_id=subject_id)

    async def _fetch_all(self, query: str, params: tuple, operation: str, subject_id: Optional[str] = None):
        try:
            async with self.db.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(query, params)
                    return await cur.fetchall()
        except psycopg.Error as e:
            raise wrap_external_exception(e, operation=operation, subject_id=subject_id)
