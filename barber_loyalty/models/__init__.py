"""Pydantic models for the loyalty engine"""
from barber_loyalty.models.achievement import (
    AchievementCategory,
    AchievementDefinition,
    AchievementReward,
    AchievementTier,
    ProgressMetric,
    RequirementDetails,
    RequirementType,
    RewardType,
    Timeframe,
)
from barber_loyalty.models.visit import LedgerEntry, LedgerEntryKind, Subject, SubjectKind
from barber_loyalty.models.redemption import (
    RedemptionRecord,
    RedemptionState,
    RedemptionStatistics,
    RedemptionTransition,
    RewardPopularity,
)
from barber_loyalty.models.progress import (
    AchievementStatus,
    BatchReport,
    DurationProgress,
    OmittedSubject,
    SubjectAchievementSummary,
    SubjectProgress,
)
from barber_loyalty.models.leaderboard import (
    LeaderboardBadge,
    LeaderboardEntry,
    LeaderboardMetric,
    LeaderboardWeights,
    SubjectMetrics,
    TimeWindow,
)

__all__ = [
    "AchievementCategory",
    "AchievementDefinition",
    "AchievementReward",
    "AchievementTier",
    "ProgressMetric",
    "RequirementDetails",
    "RequirementType",
    "RewardType",
    "Timeframe",
    "LedgerEntry",
    "LedgerEntryKind",
    "Subject",
    "SubjectKind",
    "RedemptionRecord",
    "RedemptionState",
    "RedemptionStatistics",
    "RedemptionTransition",
    "RewardPopularity",
    "AchievementStatus",
    "BatchReport",
    "DurationProgress",
    "OmittedSubject",
    "SubjectAchievementSummary",
    "SubjectProgress",
    "LeaderboardBadge",
    "LeaderboardEntry",
    "LeaderboardMetric",
    "LeaderboardWeights",
    "SubjectMetrics",
    "TimeWindow",
]
