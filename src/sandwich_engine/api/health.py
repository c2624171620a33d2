"""Health and statistics endpoints for monitoring."""
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Request, Response, status

from sandwich_engine.cache import health_check as redis_health_check

logger = logging.getLogger(__name__)

router = APIRouter()


def _engine(request: Request):
    return getattr(request.app.state, "engine", None)


@router.get("/health")
def basic_health_check() -> Dict[str, Any]:
    """Basic health check that returns process status."""
    return {
        "status": "healthy",
        "message": "Service is operational",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.get("/health/live")
def liveness_probe() -> Dict[str, Any]:
    return {
        "status": "alive",
        "message": "Application is responsive"
    }


@router.get("/health/ready")
async def readiness_probe(request: Request, response: Response) -> Dict[str, Any]:
    """Ready once the engine is running and its feed is connected."""
    engine = _engine(request)
    if engine is None or not engine.is_ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        reason = "Engine not started"
        if engine is not None and engine.ingestor is not None and engine.ingestor.fatal_error is not None:
            reason = f"Feed lost: {engine.ingestor.fatal_error}"
        return {
            "status": "not_ready",
            "message": reason,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    return {
        "status": "ready",
        "message": "Engine is processing pending transactions",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "redis": {"status": "healthy" if await redis_health_check() else "unavailable"}
        }
    }


@router.get("/stats")
def engine_stats(request: Request) -> Dict[str, Any]:
    """Pipeline, cache, screening and execution counters."""
    engine = _engine(request)
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "engine": engine.get_stats() if engine is not None else None
    }
