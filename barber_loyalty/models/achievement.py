"""Achievement and reward catalog models"""
from datetime import date
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class AchievementCategory(str, Enum):
    """Achievement categories"""
    TENURE = "tenure"
    VISITS = "visits"
    CLIENTS = "clients"
    CONSISTENCY = "consistency"
    QUALITY = "quality"
    TEAMWORK = "teamwork"
    LEARNING = "learning"
    MILESTONE = "milestone"


class RequirementType(str, Enum):
    """How the requirement value is measured"""
    COUNT = "count"
    DAYS = "days"
    STREAK = "streak"
    PERCENTAGE = "percentage"
    MILESTONE = "milestone"


class Timeframe(str, Enum):
    """Window a requirement is measured over"""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    ALL_TIME = "all-time"


class ProgressMetric(str, Enum):
    """What a requirement counts in the visit ledger"""
    VISITS = "visits"
    UNIQUE_CLIENTS = "unique_clients"
    RETURNING_CLIENTS = "returning_clients"
    REWARDS_REDEEMED = "rewards_redeemed"
    SERVICES = "services"
    # Ratio metrics, used by percentage requirements
    CLIENT_RETENTION = "client_retention"
    REDEMPTION_RATE = "redemption_rate"


RATIO_METRICS = frozenset({ProgressMetric.CLIENT_RETENTION, ProgressMetric.REDEMPTION_RATE})

DEFAULT_METRIC_BY_CATEGORY = {
    AchievementCategory.VISITS: ProgressMetric.VISITS,
    AchievementCategory.CLIENTS: ProgressMetric.UNIQUE_CLIENTS,
    AchievementCategory.QUALITY: ProgressMetric.CLIENT_RETENTION,
}


class AchievementTier(str, Enum):
    """Achievement tiers/difficulty levels"""
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"
    DIAMOND = "diamond"

    @property
    def rank(self) -> int:
        """bronze=0 ... diamond=4"""
        return list(AchievementTier).index(self)


class RewardType(str, Enum):
    """Tangible reward attached to an achievement"""
    MONETARY = "monetary"
    GIFT = "gift"
    TIME_OFF = "time_off"
    RECOGNITION = "recognition"
    PRIVILEGES = "privileges"
    TRAINING = "training"
    DISCOUNT = "discount"
    FREE_SERVICE = "free_service"


class AchievementReward(BaseModel):
    """Reward handed out when an achievement is redeemed"""
    type: RewardType
    value: str
    description: str = ""
    # Physical handoff rewards go through pending_redemption first
    requires_handoff: bool = False


class RequirementDetails(BaseModel):
    """Optional refinements of a requirement"""
    timeframe: Timeframe = Timeframe.ALL_TIME
    consecutive_required: bool = False
    minimum_value: Optional[float] = Field(default=None, ge=0)
    maximum_value: Optional[float] = Field(default=None, ge=0)
    milestone_key: Optional[str] = None

    @model_validator(mode="after")
    def _check_bounds(self) -> "RequirementDetails":
        if (
            self.minimum_value is not None
            and self.maximum_value is not None
            and self.minimum_value > self.maximum_value
        ):
            raise ValueError("minimum_value must not exceed maximum_value")
        return self


class AchievementDefinition(BaseModel):
    """Achievement definition, owned by catalog administration"""
    id: str = Field(..., min_length=1)
    title: str
    description: str = ""
    category: AchievementCategory
    requirement_type: RequirementType
    requirement_value: float = Field(..., gt=0)
    metric: Optional[ProgressMetric] = None
    requirement_details: RequirementDetails = Field(default_factory=RequirementDetails)
    tier: AchievementTier = AchievementTier.BRONZE
    points: int = Field(default=0, ge=0)
    reward: Optional[AchievementReward] = None
    prerequisites: frozenset[str] = frozenset()
    is_repeatable: bool = False
    max_completions: Optional[int] = Field(default=None, gt=0)
    is_active: bool = True
    valid_from: Optional[date] = None
    valid_until: Optional[date] = None

    # Display fields
    badge: str = ""
    icon: str = "🏆"
    color: str = ""
    priority: int = 0

    model_config = {"frozen": True}

    @field_validator("prerequisites", mode="before")
    @classmethod
    def _coerce_prerequisites(cls, value):
        if value is None:
            return frozenset()
        return frozenset(value)

    @model_validator(mode="after")
    def _check_invariants(self) -> "AchievementDefinition":
        if not self.is_repeatable and self.max_completions not in (None, 1):
            raise ValueError("non-repeatable achievements allow at most one completion")
        if self.valid_from and self.valid_until and self.valid_from > self.valid_until:
            raise ValueError("valid_from must not be after valid_until")
        if self.id in self.prerequisites:
            raise ValueError("an achievement cannot be its own prerequisite")
        metric = self.effective_metric
        if self.requirement_type == RequirementType.PERCENTAGE and metric not in RATIO_METRICS:
            raise ValueError(f"percentage requirements need a ratio metric, got {metric.value}")
        if self.requirement_type == RequirementType.COUNT and metric in RATIO_METRICS:
            raise ValueError(f"count requirements cannot use ratio metric {metric.value}")
        if self.requirement_type == RequirementType.MILESTONE and not self.requirement_details.milestone_key:
            raise ValueError("milestone requirements need requirement_details.milestone_key")
        return self

    @property
    def effective_metric(self) -> ProgressMetric:
        """Explicit metric, or the category default"""
        if self.metric is not None:
            return self.metric
        if self.requirement_type == RequirementType.PERCENTAGE:
            return ProgressMetric.CLIENT_RETENTION
        return DEFAULT_METRIC_BY_CATEGORY.get(self.category, ProgressMetric.VISITS)

    @property
    def completion_limit(self) -> Optional[int]:
        """Maximum number of redemptions, None when unbounded"""
        if not self.is_repeatable:
            return 1
        return self.max_completions

    def is_within_validity(self, as_of: date) -> bool:
        """Check validFrom/validUntil bounds (inclusive)"""
        if self.valid_from and as_of < self.valid_from:
            return False
        if self.valid_until and as_of > self.valid_until:
            return False
        return True
