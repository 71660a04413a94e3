"""Health and readiness endpoints.

  /health (liveness): the process answers.  Always 200; the body says
    whether a dependency is degraded.  Progress keeps working without
    Redis or the dashboard backend, so neither is fatal.

  /ready (readiness): 200 once the lifespan hook has built the session
    registry, 503 before that.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, Response

from app.db.redis import ping

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> dict:
    state = request.app.state
    redis_status = await ping(getattr(state, "redis", None))
    checks = {
        "redis": redis_status,
        "dashboard_api": "configured" if state.settings.dashboard_api_url else "not_configured",
    }
    sessions = getattr(state, "sessions", None)
    return {
        "status": "degraded" if redis_status == "degraded" else "ok",
        "checks": checks,
        "active_sessions": len(sessions) if sessions is not None else 0,
    }


@router.get("/ready")
async def ready(request: Request) -> Response:
    if getattr(request.app.state, "sessions", None) is None:
        return Response(status_code=503)
    return Response(status_code=200)
