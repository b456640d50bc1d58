"""Event recorder: validates and appends events, maintains variant counters."""

from __future__ import annotations

import logging
import math
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from uplift.core.config import Settings, get_settings
from uplift.core.exceptions import ExperimentInactiveError, NotFoundError, ValidationError
from uplift.core.logging import bind_log_context
from uplift.models.db.experiment import (
    Assignment,
    EventType,
    Experiment,
    ExperimentEvent,
    ExperimentStatus,
)
from uplift.models.domain.experiment import EventRead, ExperimentRead
from uplift.repositories.experiment_repo import ExperimentRepository
from uplift.services.results_cache import ResultsCache

logger = logging.getLogger(__name__)

# Paused experiments keep taking events from visitors assigned before the pause
ACCEPTING_STATUSES = frozenset({ExperimentStatus.RUNNING, ExperimentStatus.PAUSED})


class EventRecorder:
    """Appends exposure/click/conversion events against assignments.

    Conversions move the owning variant's conversion and revenue counters
    in the same savepoint as the event insert.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        settings: Settings | None = None,
        cache: ResultsCache | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repo = ExperimentRepository(db_session, self._settings)
        self._cache = cache

    async def track(
        self,
        assignment_id: uuid.UUID | None,
        event_type: EventType | str | None,
        event_value: float | None = None,
        event_data: dict[str, Any] | None = None,
        *,
        occurred_at: datetime | None = None,
    ) -> EventRead:
        """Record an event for an assignment.

        Raises:
            ValidationError: Malformed input.
            NotFoundError: Unknown assignment.
            ExperimentInactiveError: Experiment is not running or paused.
        """
        if assignment_id is None:
            raise ValidationError(
                "assignment_id is required",
                errors=[{"field": "assignment_id", "message": "required"}],
            )
        parsed_type = _parse_event_type(event_type)
        value = _parse_event_value(event_value)
        if event_data is not None and not isinstance(event_data, dict):
            raise ValidationError(
                "event_data must be an object",
                errors=[{"field": "event_data", "message": "must be an object"}],
            )

        assignment = await self._repo.get_assignment_by_id(assignment_id)
        if assignment is None:
            raise NotFoundError("Assignment", str(assignment_id))
        if assignment.experiment_id is None or assignment.variant_id is None:
            raise ValidationError("Assignment is missing its experiment or variant")
        bind_log_context(experiment_id=assignment.experiment_id, assignment_id=assignment.id)

        experiment = await self._repo.get_by_id(assignment.experiment_id)
        if experiment is None:
            raise NotFoundError("Experiment", str(assignment.experiment_id))
        if experiment.status not in ACCEPTING_STATUSES:
            raise ExperimentInactiveError(
                f"Experiment {experiment.id} is {experiment.status.value} "
                "and no longer accepts events"
            )

        now = occurred_at or datetime.now(UTC)
        attributed = True
        if parsed_type == EventType.CONVERSION:
            attributed = _within_attribution_window(experiment, assignment, now)

        async with self._repo.savepoint():
            event = await self._repo.add_event(
                ExperimentEvent(
                    experiment_id=assignment.experiment_id,
                    variant_id=assignment.variant_id,
                    assignment_id=assignment.id,
                    event_type=parsed_type,
                    visitor_identifier=assignment.visitor_identifier,
                    event_value=value,
                    event_data=event_data,
                    attributed=attributed,
                )
            )
            if parsed_type == EventType.CONVERSION and attributed:
                await self._repo.increment_counters(
                    assignment.variant_id,
                    conversions=1,
                    revenue=value or 0.0,
                )

        if not attributed:
            logger.info("Conversion outside attribution window recorded without counting")
        return EventRead.model_validate(event)

    async def reconcile_counters(self, experiment_id: uuid.UUID) -> ExperimentRead:
        """Rebuild every variant's counters from a full scan of the store.

        Visitors come from the assignments table; conversions and revenue
        from attributed conversion events. Meant for audits and repairs, not
        the request hot path.
        """
        bind_log_context(experiment_id=experiment_id)
        experiment = await self._repo.get_by_id(experiment_id, for_update=True)
        if experiment is None:
            raise NotFoundError("Experiment", str(experiment_id))

        visitors_by_variant = dict(await self._repo.count_assignments_by_variant(experiment_id))
        events_by_variant = {
            variant_id: (conversions, revenue)
            for variant_id, _, conversions, revenue in await self._repo.aggregate_events(
                experiment_id
            )
        }

        async with self._repo.savepoint():
            for variant in experiment.variants:
                conversions, revenue = events_by_variant.get(variant.id, (0, 0.0))
                await self._repo.overwrite_counters(
                    variant.id,
                    visitors=visitors_by_variant.get(variant.id, 0),
                    conversions=conversions,
                    revenue=revenue,
                )

        logger.info("Reconciled variant counters")
        if self._cache is not None:
            await self._cache.invalidate(experiment_id)

        refreshed = await self._repo.get_by_id(experiment_id)
        return ExperimentRead.model_validate(refreshed)


def _parse_event_type(event_type: EventType | str | None) -> EventType:
    if event_type is None or event_type == "":
        raise ValidationError(
            "event_type is required",
            errors=[{"field": "event_type", "message": "required"}],
        )
    try:
        return EventType(event_type)
    except ValueError as e:
        allowed = ", ".join(t.value for t in EventType)
        raise ValidationError(
            f"Unknown event_type '{event_type}'; expected one of: {allowed}",
            errors=[{"field": "event_type", "message": "unknown value"}],
        ) from e


def _parse_event_value(event_value: float | None) -> float | None:
    if event_value is None:
        return None
    if isinstance(event_value, bool) or not isinstance(event_value, int | float):
        raise ValidationError(
            "event_value must be a number",
            errors=[{"field": "event_value", "message": "not a number"}],
        )
    value = float(event_value)
    if not math.isfinite(value) or value < 0:
        raise ValidationError(
            "event_value must be a finite, non-negative number",
            errors=[{"field": "event_value", "message": "out of range"}],
        )
    return value


def _within_attribution_window(
    experiment: Experiment, assignment: Assignment, now: datetime
) -> bool:
    hours = experiment.attribution_window_hours
    if hours is None or assignment.created_at is None:
        return True
    return now <= assignment.created_at + timedelta(hours=hours)
