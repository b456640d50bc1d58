"""Readiness of the experiment store and the results cache."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from uplift import __version__
from uplift.models.db.experiment import Assignment, Experiment, ExperimentEvent, Variant

if TYPE_CHECKING:
    from uplift.services.results_cache import ResultsCache

logger = logging.getLogger(__name__)

STORE_TABLES: tuple[str, ...] = tuple(
    model.__tablename__ for model in (Experiment, Variant, Assignment, ExperimentEvent)
)


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    DEGRADED = "degraded"


@dataclass
class ComponentHealth:
    """Health of one dependency.

    A failing critical component makes the whole service unhealthy; any
    other failure only degrades it.
    """

    name: str
    status: HealthStatus
    message: str | None = None
    latency_ms: float | None = None
    critical: bool = False


@dataclass
class HealthCheckResult:
    status: HealthStatus
    components: list[ComponentHealth]
    version: str = __version__

    @classmethod
    def from_components(cls, components: list[ComponentHealth]) -> HealthCheckResult:
        failing = [c for c in components if c.status != HealthStatus.HEALTHY]
        if not failing:
            overall = HealthStatus.HEALTHY
        elif any(c.critical for c in failing):
            overall = HealthStatus.UNHEALTHY
        else:
            overall = HealthStatus.DEGRADED
        return cls(status=overall, components=components)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "components": {
                c.name: {
                    "status": c.status.value,
                    "message": c.message,
                    "latency_ms": c.latency_ms,
                }
                for c in self.components
            },
        }


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


async def _table_exists(session: AsyncSession, name: str) -> bool:
    result = await session.execute(text("SELECT to_regclass(:name) IS NOT NULL"), {"name": name})
    return bool(result.scalar())


class HealthCheckService:
    """Checks that experiments can be served and reported on.

    The store is critical: bucketing and tracking need every ``ab_*``
    table. The results cache only speeds up reporting, so losing it
    degrades the service.
    """

    def __init__(
        self,
        db_session: AsyncSession | None,
        cache: ResultsCache | None = None,
    ) -> None:
        self.db_session = db_session
        self.cache = cache

    async def check_store(self) -> ComponentHealth:
        """Confirm the store answers and that each experiment table exists."""
        if self.db_session is None:
            return ComponentHealth(
                name="store",
                status=HealthStatus.UNHEALTHY,
                message="No database session available",
                critical=True,
            )

        started = time.perf_counter()
        try:
            missing = [
                name for name in STORE_TABLES if not await _table_exists(self.db_session, name)
            ]
        except Exception as e:
            logger.warning("Experiment store health check failed: %s", e)
            return ComponentHealth(
                name="store", status=HealthStatus.UNHEALTHY, message=str(e), critical=True
            )

        if missing:
            return ComponentHealth(
                name="store",
                status=HealthStatus.UNHEALTHY,
                message=f"Missing tables: {', '.join(missing)}",
                latency_ms=_elapsed_ms(started),
                critical=True,
            )
        return ComponentHealth(
            name="store",
            status=HealthStatus.HEALTHY,
            message=f"{len(STORE_TABLES)} tables reachable",
            latency_ms=_elapsed_ms(started),
            critical=True,
        )

    async def check_cache(self) -> ComponentHealth | None:
        """Ping the results cache. None when caching is disabled."""
        if self.cache is None or not self.cache.enabled:
            return None

        started = time.perf_counter()
        try:
            self.cache.redis.ping()
        except Exception as e:
            logger.warning("Results cache health check failed: %s", e)
            return ComponentHealth(
                name="results_cache", status=HealthStatus.UNHEALTHY, message=str(e)
            )
        return ComponentHealth(
            name="results_cache",
            status=HealthStatus.HEALTHY,
            latency_ms=_elapsed_ms(started),
        )

    async def check_readiness(self) -> HealthCheckResult:
        """Ready once the store is; the cache is not consulted."""
        return HealthCheckResult.from_components([await self.check_store()])

    async def check_all(self) -> HealthCheckResult:
        components = [await self.check_store()]
        cache_health = await self.check_cache()
        if cache_health is not None:
            components.append(cache_health)
        return HealthCheckResult.from_components(components)
