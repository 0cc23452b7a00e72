"""Health check endpoints for SafeMap API v1.

Provides liveness and readiness probes.  The readiness check verifies
that the emergency orchestrator and its collaborators were wired up at
startup.
"""

from __future__ import annotations

import time

import structlog
from fastapi import APIRouter, Request
from pydantic import BaseModel

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Basic health check response."""

    status: str
    version: str
    uptime_seconds: float


class ReadinessResponse(BaseModel):
    """Readiness check response with individual service statuses."""

    status: str
    checks: dict[str, str]


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Liveness probe.

    Returns 200 if the application process is running and able to
    handle requests.  Does *not* check the orchestrator.
    """
    start_time: float = getattr(request.app.state, "start_time", time.time())
    uptime = time.time() - start_time

    return HealthResponse(
        status="healthy",
        version=request.app.version,
        uptime_seconds=round(uptime, 2),
    )


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request) -> ReadinessResponse:
    """Readiness probe.

    Reports whether the orchestrator, location provider and trigger
    adapters are available so traffic is only routed to fully
    initialised instances.
    """
    checks: dict[str, str] = {}
    all_ok = True

    # -- Orchestrator ------------------------------------------------------
    machine = getattr(request.app.state, "emergency", None)
    if machine is not None:
        checks["emergency"] = f"ok ({machine.status})"
    else:
        checks["emergency"] = "not_initialised"
        all_ok = False

    # -- Location provider -------------------------------------------------
    provider = getattr(request.app.state, "location_provider", None)
    if provider is None:
        checks["location"] = "not_initialised"
        all_ok = False
    elif provider.permission_denied:
        checks["location"] = "permission_denied"
    elif provider.latest is None:
        checks["location"] = "no_fix"
    else:
        checks["location"] = "ok"

    # -- Trigger adapters --------------------------------------------------
    triggers = getattr(request.app.state, "triggers", None) or {}
    if triggers:
        checks["triggers"] = ", ".join(sorted(triggers))
    else:
        checks["triggers"] = "none"
        all_ok = False

    status = "ready" if all_ok else "degraded"

    logger.info("health.readiness_check", status=status, checks=checks)

    return ReadinessResponse(status=status, checks=checks)
