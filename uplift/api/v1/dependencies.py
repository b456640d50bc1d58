"""FastAPI dependencies for API v1."""

from functools import lru_cache
from typing import Annotated

from fastapi import Depends

from uplift.core.config import get_settings
from uplift.core.database import DbSession
from uplift.core.health import HealthCheckService
from uplift.services.bucketing import BucketingService
from uplift.services.event_recorder import EventRecorder
from uplift.services.experiment_service import ExperimentService
from uplift.services.offer_applier import OfferApplier, build_offer_applier
from uplift.services.results_cache import ResultsCache
from uplift.services.statistics import StatisticsService


@lru_cache
def get_results_cache() -> ResultsCache:
    """Process-wide results cache (disabled when REDIS_URL is unset)."""
    return ResultsCache(settings=get_settings())


@lru_cache
def get_offer_applier() -> OfferApplier:
    """Process-wide offer applier sink."""
    return build_offer_applier(get_settings())


Cache = Annotated[ResultsCache, Depends(get_results_cache)]
Applier = Annotated[OfferApplier, Depends(get_offer_applier)]


def get_experiment_service(
    session: DbSession, cache: Cache, applier: Applier
) -> ExperimentService:
    """Get experiment lifecycle service instance."""
    return ExperimentService(session, offer_applier=applier, cache=cache)


def get_statistics_service(session: DbSession, cache: Cache) -> StatisticsService:
    """Get statistics service instance."""
    return StatisticsService(session, cache=cache)


def get_event_recorder(session: DbSession, cache: Cache) -> EventRecorder:
    """Get event recorder instance."""
    return EventRecorder(session, cache=cache)


def get_bucketing_service(session: DbSession) -> BucketingService:
    """Get bucketing service instance."""
    return BucketingService(session)


def get_health_service(session: DbSession, cache: Cache) -> HealthCheckService:
    """Get store and cache health checks."""
    return HealthCheckService(session, cache=cache)


ExperimentSvc = Annotated[ExperimentService, Depends(get_experiment_service)]
StatisticsSvc = Annotated[StatisticsService, Depends(get_statistics_service)]
Recorder = Annotated[EventRecorder, Depends(get_event_recorder)]
Bucketing = Annotated[BucketingService, Depends(get_bucketing_service)]
HealthChecks = Annotated[HealthCheckService, Depends(get_health_service)]
