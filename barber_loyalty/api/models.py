"""Pydantic models for API request/response validation"""
from typing import Optional, List
from pydantic import BaseModel, Field
from datetime import datetime

from barber_loyalty.models import (
    LeaderboardEntry,
    LeaderboardMetric,
    RedemptionRecord,
    RedemptionTransition,
    SubjectKind,
    TimeWindow,
)


class RedemptionActionRequest(BaseModel):
    """Request to flag or confirm a redemption"""
    actor: str = Field(..., min_length=1, description="Identity of the staff member acting")
    notes: Optional[str] = Field(default=None, description="Free-form notes stored with the transition")


class RedemptionResponse(BaseModel):
    """Redemption record with its audit history"""
    record: RedemptionRecord
    history: List[RedemptionTransition] = Field(default_factory=list)


class LeaderboardResponse(BaseModel):
    """Ranked subjects"""
    metric: LeaderboardMetric
    window: TimeWindow
    kind: SubjectKind
    entries: List[LeaderboardEntry]
    generated_at: datetime


class HealthCheckResponse(BaseModel):
    """Health check response"""
    status: str = Field(..., description="Service status")
    database: str = Field(..., description="Database connection status")
    timestamp: datetime = Field(..., description="Check timestamp")


class ErrorResponse(BaseModel):
    """Error response model"""
    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error details")
    user_message: str = Field(..., description="Message safe to show to end users")
    request_id: str = Field(..., description="Correlation ID for logs")
    timestamp: str = Field(..., description="When the error occurred")
