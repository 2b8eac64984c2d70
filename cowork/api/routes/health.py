"""
Health check endpoint for Cowork API.
"""
from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from ...services.session_runner import SessionRunner
from ..deps import get_runner
from ..models import HealthResponse

router = APIRouter(tags=["health"])

API_VERSION = "1.0.0"


@router.get("/health", response_model=HealthResponse)
async def health_check(runner: SessionRunner = Depends(get_runner)) -> HealthResponse:
    """
    Check API health status.

    Returns version, timestamp and the runner's queue counters.
    """
    stats = runner.stats()
    return HealthResponse(
        status="ok",
        version=API_VERSION,
        timestamp=datetime.now(timezone.utc),
        active_sessions=stats["active_sessions"],
        queued_prompts=stats["queued_prompts"],
    )
