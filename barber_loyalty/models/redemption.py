"""Redemption state machine models"""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class RedemptionState(str, Enum):
    """Per (subject, achievement) lifecycle"""
    LOCKED = "locked"
    EARNED = "earned"
    PENDING_REDEMPTION = "pending_redemption"
    REDEEMED = "redeemed"


# States in which the achievement counts as satisfied (for prerequisites)
SATISFIED_STATES = frozenset({
    RedemptionState.EARNED,
    RedemptionState.PENDING_REDEMPTION,
    RedemptionState.REDEEMED,
})


class RedemptionTransition(BaseModel):
    """Append-only audit entry"""
    subject_id: str
    achievement_id: str
    from_state: RedemptionState
    to_state: RedemptionState
    actor: Optional[str] = None
    # API client whose key authorized the call, None for automatic transitions
    authorized_by: Optional[str] = None
    notes: Optional[str] = None
    occurred_at: datetime


class RedemptionRecord(BaseModel):
    """The single source of truth for completion/redemption of an achievement"""
    subject_id: str
    achievement_id: str
    state: RedemptionState = RedemptionState.LOCKED
    earned_at: Optional[datetime] = None
    requested_at: Optional[datetime] = None
    requested_by: Optional[str] = None
    redeemed_at: Optional[datetime] = None
    redeemed_by: Optional[str] = None
    # Start of the current cycle for repeatable achievements
    last_redeemed_at: Optional[datetime] = None
    notes: Optional[str] = None
    completion_count: int = Field(default=0, ge=0)
    # Optimistic concurrency token, 0 = never persisted
    version: int = 0

    @property
    def key(self) -> tuple[str, str]:
        return (self.subject_id, self.achievement_id)

    @property
    def is_satisfied(self) -> bool:
        return self.state in SATISFIED_STATES or self.completion_count > 0


class RewardPopularity(BaseModel):
    """Completed redemptions of one achievement's reward"""
    achievement_id: str
    title: str
    redemptions: int = 0


class RedemptionStatistics(BaseModel):
    """Catalog-wide redemption figures for one subject kind"""
    kind: str
    active_achievements: int = 0
    active_subjects: int = 0
    # Completed redemptions, repeat cycles included
    total_redemptions: int = 0
    # Earned and not yet redeemed
    awaiting_redemption: int = 0
    pending_redemptions: int = 0
    achievements_by_category: dict[str, int] = Field(default_factory=dict)
    redemptions_by_reward_type: dict[str, int] = Field(default_factory=dict)
    popular_rewards: list[RewardPopularity] = Field(default_factory=list)
    # Completed redemptions per active subject
    redemption_rate: float = 0.0
    generated_at: datetime
