"""Liveness and readiness endpoints for the experiments service."""

from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from uplift.api.v1.dependencies import HealthChecks
from uplift.core.health import HealthCheckResult, HealthStatus

router = APIRouter(prefix="/health", tags=["health"])


def _respond(result: HealthCheckResult) -> JSONResponse:
    status_code = 503 if result.status == HealthStatus.UNHEALTHY else 200
    return JSONResponse(content=result.to_dict(), status_code=status_code)


@router.get("")
@router.get("/live")
async def liveness() -> dict[str, str]:
    """The process is up; dependencies are not checked."""
    return {"status": HealthStatus.HEALTHY.value}


@router.get("/ready")
async def readiness(checks: HealthChecks) -> JSONResponse:
    """200 while the experiment store and its tables are reachable, 503 otherwise."""
    return _respond(await checks.check_readiness())


@router.get("/detailed")
async def detailed(checks: HealthChecks) -> dict[str, Any]:
    """Store and results cache status. Always 200 so dashboards can read it."""
    return (await checks.check_all()).to_dict()
