"""Leaderboard models"""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class LeaderboardMetric(str, Enum):
    """Ranking criteria"""
    OVERALL = "overall"
    VISITS = "visits"
    CLIENTS = "clients"
    EFFICIENCY = "efficiency"
    RETENTION = "retention"
    REWARDS = "rewards"


class TimeWindow(str, Enum):
    """Period the leaderboard metrics are computed over"""
    ALL_TIME = "all-time"
    THIS_YEAR = "this-year"
    THIS_MONTH = "this-month"
    THIS_WEEK = "this-week"


class LeaderboardBadge(str, Enum):
    """Top-3 decorations"""
    FIRST = "first"
    SECOND = "second"
    THIRD = "third"


class SubjectMetrics(BaseModel):
    """Aggregate metrics for one subject over a time window"""
    subject_id: str
    name: str = ""
    started_at: Optional[datetime] = None
    total_visits: int = 0
    unique_clients: int = 0
    client_retention_rate: float = 0.0
    efficiency: float = 0.0
    earned_rewards: int = 0


class LeaderboardWeights(BaseModel):
    """Weight vector for the composite score"""
    visits: float = Field(default=0.4, ge=0)
    clients: float = Field(default=0.25, ge=0)
    retention: float = Field(default=0.15, ge=0)
    efficiency: float = Field(default=0.1, ge=0)
    rewards: float = Field(default=0.1, ge=0)

    @model_validator(mode="after")
    def _check_not_all_zero(self) -> "LeaderboardWeights":
        if self.visits + self.clients + self.retention + self.efficiency + self.rewards <= 0:
            raise ValueError("at least one leaderboard weight must be positive")
        return self


class LeaderboardEntry(BaseModel):
    """One ranked subject"""
    subject_id: str
    name: str = ""
    rank: int
    score: float
    metrics: SubjectMetrics
    badges: list[LeaderboardBadge] = Field(default_factory=list)
