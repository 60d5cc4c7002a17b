"""API routes for the loyalty engine"""
import logging
from datetime import datetime, timezone
from typing import Optional
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from barber_loyalty.api.auth import verify_api_key
from barber_loyalty.api.middleware import limiter
from barber_loyalty.api.models import (
    ErrorResponse,
    HealthCheckResponse,
    LeaderboardResponse,
    RedemptionActionRequest,
    RedemptionResponse,
)
from barber_loyalty.models import (
    LeaderboardMetric,
    RedemptionRecord,
    RedemptionStatistics,
    SubjectAchievementSummary,
    SubjectKind,
    TimeWindow,
)
from barber_loyalty.services.container import get_container
from barber_loyalty.services.loyalty_service import LoyaltyService

logger = logging.getLogger(__name__)

router = APIRouter()

# Engine errors share one body shape (LoyaltyEngineError.to_dict)
NOT_FOUND = {404: {"model": ErrorResponse}}
UNAVAILABLE = {503: {"model": ErrorResponse}}
CONFLICT = {409: {"model": ErrorResponse}}


def get_loyalty_service() -> LoyaltyService:
    """Resolve the LoyaltyService from the global container"""
    return get_container().loyalty_service


# ==========================================
# Progress
# ==========================================

@router.get(
    "/api/v1/subjects/{subject_id}/progress",
    response_model=SubjectAchievementSummary,
    responses={**NOT_FOUND, **UNAVAILABLE},
)
@limiter.limit("60/minute")
async def get_subject_progress(
    request: Request,
    subject_id: str,
    service: LoyaltyService = Depends(get_loyalty_service),
    api_client: str = Depends(verify_api_key)
):
    """Achievement progress and redemption state for one subject (Rate limit: 60/minute)"""
    return await service.get_progress(subject_id)


# ==========================================
# Leaderboard
# ==========================================

@router.get("/api/v1/leaderboard", response_model=LeaderboardResponse, responses=UNAVAILABLE)
@limiter.limit("30/minute")
async def get_leaderboard(
    request: Request,
    metric: LeaderboardMetric = LeaderboardMetric.OVERALL,
    window: TimeWindow = TimeWindow.ALL_TIME,
    kind: SubjectKind = SubjectKind.BARBER,
    limit: Optional[int] = Query(default=None, ge=1, le=100),
    service: LoyaltyService = Depends(get_loyalty_service),
    api_client: str = Depends(verify_api_key)
):
    """Ranked subjects (Rate limit: 30/minute, rankings fan out over the ledger)"""
    entries = await service.get_leaderboard(metric=metric, window=window, kind=kind, limit=limit)
    return LeaderboardResponse(
        metric=metric,
        window=window,
        kind=kind,
        entries=entries,
        generated_at=datetime.now(timezone.utc),
    )


# ==========================================
# Redemptions
# ==========================================

@router.post(
    "/api/v1/subjects/{subject_id}/achievements/{achievement_id}/redemption-request",
    response_model=RedemptionRecord,
    responses={**NOT_FOUND, **CONFLICT},
)
@limiter.limit("20/minute")
async def request_redemption(
    request: Request,
    subject_id: str,
    achievement_id: str,
    payload: RedemptionActionRequest,
    service: LoyaltyService = Depends(get_loyalty_service),
    api_client: str = Depends(verify_api_key)
):
    """Flag an earned reward for manual handoff (earned -> pending_redemption)"""
    record = await service.request_redemption(
        subject_id, achievement_id, payload.actor, payload.notes,
        authorized_by=api_client,
    )
    logger.info(f"Redemption requested via API: {subject_id}/{achievement_id} by {payload.actor} ({api_client})")
    return record


@router.post(
    "/api/v1/subjects/{subject_id}/achievements/{achievement_id}/redemption",
    response_model=RedemptionRecord,
    responses={**NOT_FOUND, **CONFLICT},
)
@limiter.limit("20/minute")
async def confirm_redemption(
    request: Request,
    subject_id: str,
    achievement_id: str,
    payload: RedemptionActionRequest,
    service: LoyaltyService = Depends(get_loyalty_service),
    api_client: str = Depends(verify_api_key)
):
    """Confirm a redemption (earned/pending_redemption -> redeemed)"""
    record = await service.confirm_redemption(
        subject_id, achievement_id, payload.actor, payload.notes,
        authorized_by=api_client,
    )
    logger.info(f"Redemption confirmed via API: {subject_id}/{achievement_id} by {payload.actor} ({api_client})")
    return record


@router.get(
    "/api/v1/subjects/{subject_id}/achievements/{achievement_id}/redemption",
    response_model=RedemptionResponse,
    responses=NOT_FOUND,
)
@limiter.limit("60/minute")
async def get_redemption(
    request: Request,
    subject_id: str,
    achievement_id: str,
    service: LoyaltyService = Depends(get_loyalty_service),
    api_client: str = Depends(verify_api_key)
):
    """Redemption record with its audit history"""
    record, history = await service.get_redemption(subject_id, achievement_id)
    return RedemptionResponse(record=record, history=history)


@router.get(
    "/api/v1/redemptions/statistics",
    response_model=RedemptionStatistics,
    responses=UNAVAILABLE,
)
@limiter.limit("30/minute")
async def get_redemption_statistics(
    request: Request,
    kind: SubjectKind = SubjectKind.BARBER,
    service: LoyaltyService = Depends(get_loyalty_service),
    api_client: str = Depends(verify_api_key)
):
    """Redemption totals, pending handoffs and popular rewards (Rate limit: 30/minute)"""
    return await service.get_redemption_statistics(kind=kind)


# ==========================================
# Operations
# ==========================================

@router.get("/api/health", response_model=HealthCheckResponse)
@limiter.limit("60/minute")
async def health_check(request: Request):
    """Health check endpoint (Rate limit: 60/minute for monitoring systems)"""
    container = get_container()
    db_status = "not_used"

    if container.uses_database:
        try:
            async with container.db.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute("SELECT 1")
                    await cur.fetchone()
            db_status = "connected"
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            db_status = "disconnected"

    return HealthCheckResponse(
        status="degraded" if db_status == "disconnected" else "healthy",
        database=db_status,
        timestamp=datetime.now(timezone.utc),
    )


@router.get("/metrics")
async def metrics_endpoint():
    """Expose Prometheus metrics"""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )
