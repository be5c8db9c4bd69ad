"""
Health Routes - System Health Check

Provides health check endpoint for monitoring server status.
Reports whether a capture session is currently running and how often
snapshots have been throttled.
"""

from fastapi import APIRouter
import logging
from routes import get_deps

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["health"])


@router.api_route("/health", methods=["GET", "HEAD"])
async def health_check():
    """
    Health check endpoint

    Returns server status, version, the current capture phase and
    snapshot rate limiter statistics.
    Supports both GET and HEAD methods for Docker health checks.
    """
    deps = get_deps()

    capture_phase = "unavailable"
    rate_limiter = None
    if deps.orchestrator:
        capture_phase = deps.orchestrator.get_progress().phase.value
        rate_limiter = deps.orchestrator.rate_limiter.get_stats()

    return {
        "status": "ok",
        "version": deps.version,
        "message": "Page Gobbler is running",
        "capture_phase": capture_phase,
        "rate_limiter": rate_limiter
    }
