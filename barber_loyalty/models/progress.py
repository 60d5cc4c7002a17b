"""Derived progress models (recomputed from the ledger, never a source of truth)"""
from typing import Optional

from pydantic import BaseModel, Field

from barber_loyalty.models.leaderboard import LeaderboardEntry
from barber_loyalty.models.redemption import RedemptionRecord


class DurationProgress(BaseModel):
    """Breakdown for duration-based requirements (30-day months)"""
    total_days: int = 0
    months: int = 0
    remaining_days: int = 0


class SubjectProgress(BaseModel):
    """Progress of one subject toward one achievement"""
    subject_id: str
    achievement_id: str
    current_value: float = 0
    requirement_value: float
    progress_percentage: int = Field(default=0, ge=0, le=100)
    is_earned: bool = False
    duration_progress: Optional[DurationProgress] = None
    within_validity_window: bool = True
    prerequisites_met: bool = True
    insufficient_sample: bool = False


class AchievementStatus(BaseModel):
    """Progress plus redemption state for one achievement"""
    achievement_id: str
    title: str
    category: str
    tier: str
    points: int
    icon: str
    progress: SubjectProgress
    record: Optional[RedemptionRecord] = None

    @property
    def state(self) -> str:
        return self.record.state.value if self.record else "locked"


class SubjectAchievementSummary(BaseModel):
    """Per-subject achievement overview"""
    subject_id: str
    name: str = ""
    achievements: list[AchievementStatus] = Field(default_factory=list)
    earned_count: int = 0
    redeemed_count: int = 0
    total_count: int = 0
    overall_percentage: float = 0.0
    total_points: int = 0
    catalog_error: Optional[str] = None


class OmittedSubject(BaseModel):
    """A subject left out of a batch, with the reason"""
    subject_id: str
    reason: str  # data_unavailable / timeout / not_found / store_error
    error: str = ""


class BatchReport(BaseModel):
    """Result of a multi-subject summary; partial failures are annotated, not raised"""
    summaries: list[SubjectAchievementSummary] = Field(default_factory=list)
    omitted: list[OmittedSubject] = Field(default_factory=list)
    leaderboard: Optional[list[LeaderboardEntry]] = None
