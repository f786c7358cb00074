"""
TradeInbox Backend — Health Check Route
=========================================

What:  Health check endpoint for monitoring and load balancer probes.
Why:   The service is only useful if it can persist items and classify them.
How:   Checks the database, the classifier and the transcription chain, and
       returns an aggregate status.
Who:   Docker health checks, load balancers, monitoring.

Status levels:
    healthy:   everything operational (HTTP 200)
    degraded:  classifier unavailable/circuit open, or no transcription
               provider configured (HTTP 200; items still land in the inbox)
    unhealthy: database unreachable (HTTP 503)
"""

import logging
import time

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text

from tradeinbox import __version__
from tradeinbox.dependencies import ServiceContainer, get_services
from tradeinbox.schemas.inbox import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
)
async def health_check(services: ServiceContainer = Depends(get_services)):
    """
    Lightweight probes only: SELECT 1 on the database, list_models() on the
    classifier (skipped while its circuit breaker is open).
    """
    db_status = "connected"
    classifier_status = "available"
    overall = "healthy"

    # ── Check Database ────────────────────────────────────────────────────
    try:
        async with services.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        db_status = "disconnected"
        overall = "unhealthy"
        logger.warning("Health check: database unreachable: %s", str(e))

    # ── Check Classifier ──────────────────────────────────────────────────
    breaker = getattr(services.classifier, "circuit_breaker", None)
    if breaker is not None and breaker.state == "open":
        classifier_status = "circuit_open"
    else:
        try:
            if not await services.classifier.health_check():
                classifier_status = "unavailable"
        except Exception as e:
            classifier_status = "unavailable"
            logger.warning("Health check: classifier unreachable: %s", str(e))
    if classifier_status != "available" and overall != "unhealthy":
        overall = "degraded"

    # ── Check Transcription chain ─────────────────────────────────────────
    providers = services.transcription.provider_names
    if not providers and overall != "unhealthy":
        overall = "degraded"

    response = HealthResponse(
        status=overall,
        version=__version__,
        database=db_status,
        classifier=classifier_status,
        transcription_providers=providers,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
    if overall == "unhealthy":
        return JSONResponse(status_code=503, content=response.model_dump())
    return response
