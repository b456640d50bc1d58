"""Redis-backed cache for computed experiment results."""

import logging
import uuid

import pydantic
from redis import Redis, RedisError

from uplift.core.config import Settings, get_settings
from uplift.models.domain.experiment import ExperimentResults, ReportingWindow

logger = logging.getLogger(__name__)


class ResultsCache:
    """Best-effort cache of results payloads keyed by experiment and window.

    Cache failures are logged and treated as misses; they never fail the
    results computation.
    """

    KEY_PREFIX = "ab_results"

    def __init__(
        self,
        redis_client: Redis | None = None,  # type: ignore[type-arg]
        settings: Settings | None = None,
        ttl_seconds: int | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._redis: Redis | None = redis_client  # type: ignore[type-arg]
        self.ttl_seconds = ttl_seconds or self.settings.results_cache_ttl_seconds

    @property
    def enabled(self) -> bool:
        return self._redis is not None or self.settings.redis_url is not None

    @property
    def redis(self) -> Redis:  # type: ignore[type-arg]
        """Get or create Redis client (lazy initialization)."""
        if self._redis is None:
            self._redis = Redis.from_url(str(self.settings.redis_url), socket_timeout=1)
        return self._redis

    def _make_key(self, experiment_id: uuid.UUID, window: ReportingWindow | None) -> str:
        token = window.cache_token() if window is not None else "all"
        return f"{self.KEY_PREFIX}:{experiment_id}:{token}"

    async def get(
        self, experiment_id: uuid.UUID, window: ReportingWindow | None = None
    ) -> ExperimentResults | None:
        """Return the cached payload, or None on miss or cache failure."""
        if not self.enabled:
            return None
        key = self._make_key(experiment_id, window)
        try:
            raw = self.redis.get(key)
        except RedisError:
            logger.warning("Results cache read failed", extra={"key": key}, exc_info=True)
            return None
        if raw is None:
            return None
        try:
            return ExperimentResults.model_validate_json(raw)
        except pydantic.ValidationError:
            logger.warning("Discarding unreadable cached results", extra={"key": key})
            return None

    async def set(
        self, results: ExperimentResults, window: ReportingWindow | None = None
    ) -> None:
        """Store a payload with the configured TTL."""
        if not self.enabled:
            return
        key = self._make_key(results.experiment_id, window)
        try:
            self.redis.setex(key, self.ttl_seconds, results.model_dump_json())
        except RedisError:
            logger.warning("Results cache write failed", extra={"key": key}, exc_info=True)

    async def invalidate(self, experiment_id: uuid.UUID) -> None:
        """Drop every cached window for an experiment."""
        if not self.enabled:
            return
        pattern = f"{self.KEY_PREFIX}:{experiment_id}:*"
        try:
            keys = list(self.redis.scan_iter(match=pattern))
            if keys:
                self.redis.delete(*keys)
        except RedisError:
            logger.warning(
                "Results cache invalidation failed",
                extra={"experiment_id": str(experiment_id)},
                exc_info=True,
            )
