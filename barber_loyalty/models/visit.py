"""Subjects and visit ledger entries"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to UTC; naive datetimes are taken to be UTC already"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SubjectKind(str, Enum):
    """Who is being evaluated"""
    BARBER = "barber"
    CLIENT = "client"


class Subject(BaseModel):
    """A barber or client"""
    id: str = Field(..., min_length=1)
    kind: SubjectKind = SubjectKind.BARBER
    name: str = ""
    # Join date: start reference for tenure and the seniority tie-break
    started_at: Optional[datetime] = None
    is_active: bool = True

    @field_validator("started_at")
    @classmethod
    def _normalize_started_at(cls, value):
        return as_utc(value)


class LedgerEntryKind(str, Enum):
    """Kinds of entries recorded in the visit ledger"""
    VISIT = "visit"
    REWARD_REDEMPTION = "reward_redemption"
    MILESTONE = "milestone"


class LedgerEntry(BaseModel):
    """One recorded event in a subject's history"""
    timestamp: datetime
    kind: LedgerEntryKind = LedgerEntryKind.VISIT
    related_client_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value):
        return as_utc(value)

    @property
    def reward_redeemed(self) -> bool:
        """Visits can carry a redemption flag instead of a separate entry"""
        if self.kind == LedgerEntryKind.REWARD_REDEMPTION:
            return True
        return bool(self.metadata.get("reward_redeemed"))
