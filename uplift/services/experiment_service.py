"""Experiment service for A/B testing lifecycle management."""

from __future__ import annotations

import logging
import math
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from uplift.core.config import Settings, get_settings
from uplift.core.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from uplift.core.logging import bind_log_context
from uplift.models.db.experiment import Experiment, ExperimentStatus, ValueKind, Variant
from uplift.models.domain.experiment import (
    AmountValue,
    ExperimentCreate,
    ExperimentRead,
    ExperimentUpdate,
    VariantCreate,
)
from uplift.repositories.experiment_repo import ExperimentRepository
from uplift.services.offer_applier import OfferApplier
from uplift.services.results_cache import ResultsCache
from uplift.services.rollout import RolloutCoordinator

logger = logging.getLogger(__name__)

TRAFFIC_TOLERANCE = 1e-6

START_FROM = frozenset({ExperimentStatus.DRAFT, ExperimentStatus.PAUSED})
COMPLETE_FROM = frozenset({ExperimentStatus.RUNNING, ExperimentStatus.PAUSED})
# Columns that are NOT NULL; an explicit null in an update leaves them unchanged
NON_NULLABLE_SETTINGS = frozenset(
    {"primary_metric", "confidence_level", "min_sample_size", "traffic_allocation"}
)


class ExperimentService:
    """Manages experiment lifecycle: create, edit, start, pause, complete, cancel.

    draft -> running -> {paused, completed, cancelled}; paused -> running
    again. completed and cancelled are terminal.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        offer_applier: OfferApplier | None = None,
        settings: Settings | None = None,
        cache: ResultsCache | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repo = ExperimentRepository(db_session, self._settings)
        self._cache = cache
        self._rollout = RolloutCoordinator(
            db_session, offer_applier=offer_applier, settings=self._settings, cache=cache
        )

    async def create_experiment(self, data: ExperimentCreate) -> ExperimentRead:
        """Create a draft experiment together with its variants.

        Raises:
            ValidationError: Blank name, fewer than two variants, traffic
                shares not summing to 1, or not exactly one control.
        """
        self._validate_create(data)

        experiment = Experiment(
            shop_id=data.shop_id.strip(),
            name=data.name.strip(),
            description=data.description,
            experiment_type=data.experiment_type.strip(),
            status=ExperimentStatus.DRAFT,
            traffic_allocation=data.traffic_allocation,
            primary_metric=data.primary_metric,
            confidence_level=(
                data.confidence_level
                if data.confidence_level is not None
                else self._settings.default_confidence_level
            ),
            min_sample_size=(
                data.min_sample_size
                if data.min_sample_size is not None
                else self._settings.default_min_sample_size
            ),
            attribution_window_hours=data.attribution_window_hours,
            variants=_build_variants(data.variants),
        )
        created = await self._repo.create(experiment)
        bind_log_context(experiment_id=created.id)
        logger.info("Experiment created", extra={"shop_id": created.shop_id})
        return ExperimentRead.model_validate(created)

    async def get_experiment(self, experiment_id: uuid.UUID) -> ExperimentRead:
        """Get experiment by ID."""
        experiment = await self._get_or_raise(experiment_id)
        return ExperimentRead.model_validate(experiment)

    async def list_experiments(
        self,
        shop_id: str,
        status: ExperimentStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ExperimentRead]:
        """List experiments for a shop."""
        experiments = await self._repo.list_by_shop(
            shop_id, status=status, limit=limit, offset=offset
        )
        return [ExperimentRead.model_validate(e) for e in experiments]

    async def update_experiment(
        self,
        experiment_id: uuid.UUID,
        data: ExperimentUpdate,
    ) -> ExperimentRead:
        """Update experiment settings (only DRAFT experiments)."""
        experiment = await self._get_or_raise(experiment_id, for_update=True)
        if experiment.status != ExperimentStatus.DRAFT:
            raise InvalidTransitionError("Can only update DRAFT experiments")

        changes = data.model_dump(exclude_unset=True)
        errors = _validate_settings(changes)
        if "name" in changes and (changes["name"] is None or not changes["name"].strip()):
            errors.append({"field": "name", "message": "must not be blank"})
        if errors:
            raise ValidationError(_summarize(errors), errors=errors)

        for field, value in changes.items():
            if field in NON_NULLABLE_SETTINGS and value is None:
                continue
            setattr(experiment, field, value.strip() if field == "name" else value)

        experiment = await self._repo.save(experiment)
        await self._invalidate(experiment_id)
        return ExperimentRead.model_validate(experiment)

    async def start_experiment(self, experiment_id: uuid.UUID) -> ExperimentRead:
        """Start a DRAFT experiment or resume a PAUSED one."""
        experiment = await self._get_or_raise(experiment_id, for_update=True)
        if experiment.status not in START_FROM:
            raise InvalidTransitionError(
                f"Cannot start a {experiment.status.value} experiment"
            )

        total = math.fsum(v.traffic_pct for v in experiment.variants)
        if len(experiment.variants) < 2 or abs(total - 1.0) > TRAFFIC_TOLERANCE:
            raise ValidationError(
                f"Variant traffic must cover two or more variants and sum to 1 (got {total})"
            )

        experiment.status = ExperimentStatus.RUNNING
        if experiment.start_date is None:
            experiment.start_date = datetime.now(UTC)
        return await self._commit_transition(experiment, "started")

    async def pause_experiment(self, experiment_id: uuid.UUID) -> ExperimentRead:
        """Pause a RUNNING experiment. Stops new assignments only."""
        experiment = await self._get_or_raise(experiment_id, for_update=True)
        if experiment.status != ExperimentStatus.RUNNING:
            raise InvalidTransitionError("Can only pause RUNNING experiments")

        experiment.status = ExperimentStatus.PAUSED
        return await self._commit_transition(experiment, "paused")

    async def complete_experiment(
        self,
        experiment_id: uuid.UUID,
        winning_variant_id: uuid.UUID | None = None,
    ) -> ExperimentRead:
        """Complete a RUNNING or PAUSED experiment.

        With a winner the rollout coordinator takes over and informs the
        offer applier.
        """
        if winning_variant_id is not None:
            return await self._rollout.rollout(experiment_id, winning_variant_id)

        experiment = await self._get_or_raise(experiment_id, for_update=True)
        if experiment.status not in COMPLETE_FROM:
            raise InvalidTransitionError(
                f"Cannot complete a {experiment.status.value} experiment"
            )

        experiment.status = ExperimentStatus.COMPLETED
        experiment.end_date = datetime.now(UTC)
        return await self._commit_transition(experiment, "completed")

    async def cancel_experiment(self, experiment_id: uuid.UUID) -> ExperimentRead:
        """Cancel a non-terminal experiment. Its data is kept for audit."""
        experiment = await self._get_or_raise(experiment_id, for_update=True)
        if experiment.status.is_terminal:
            raise InvalidTransitionError(
                f"Cannot cancel a {experiment.status.value} experiment"
            )

        experiment.status = ExperimentStatus.CANCELLED
        return await self._commit_transition(experiment, "cancelled")

    async def rollout(
        self, experiment_id: uuid.UUID, winning_variant_id: uuid.UUID
    ) -> ExperimentRead:
        """Roll out a winner through the rollout coordinator."""
        return await self._rollout.rollout(experiment_id, winning_variant_id)

    async def _get_or_raise(
        self, experiment_id: uuid.UUID, *, for_update: bool = False
    ) -> Experiment:
        bind_log_context(experiment_id=experiment_id)
        experiment = await self._repo.get_by_id(experiment_id, for_update=for_update)
        if experiment is None:
            raise NotFoundError("Experiment", str(experiment_id))
        return experiment

    async def _commit_transition(self, experiment: Experiment, action: str) -> ExperimentRead:
        experiment = await self._repo.save(experiment)
        logger.info("Experiment %s", action, extra={"status": experiment.status.value})
        await self._invalidate(experiment.id)
        return ExperimentRead.model_validate(experiment)

    async def _invalidate(self, experiment_id: uuid.UUID) -> None:
        if self._cache is not None:
            await self._cache.invalidate(experiment_id)

    @staticmethod
    def _validate_create(data: ExperimentCreate) -> None:
        errors: list[dict[str, Any]] = []

        if not data.name or not data.name.strip():
            errors.append({"field": "name", "message": "must not be blank"})
        if not data.shop_id or not data.shop_id.strip():
            errors.append({"field": "shop_id", "message": "must not be blank"})
        if not data.experiment_type or not data.experiment_type.strip():
            errors.append({"field": "experiment_type", "message": "must not be blank"})

        errors.extend(
            _validate_settings(
                {
                    "traffic_allocation": data.traffic_allocation,
                    "confidence_level": data.confidence_level,
                    "min_sample_size": data.min_sample_size,
                    "attribution_window_hours": data.attribution_window_hours,
                }
            )
        )

        variants = data.variants or []
        if len(variants) < 2:
            errors.append(
                {"field": "variants", "message": "Experiment must have at least 2 variants"}
            )
        else:
            for index, variant in enumerate(variants):
                if not variant.name or not variant.name.strip():
                    errors.append(
                        {"field": f"variants[{index}].name", "message": "must not be blank"}
                    )
                if not (0 < variant.traffic_pct <= 1):
                    errors.append(
                        {"field": f"variants[{index}].traffic_pct", "message": "must be in (0, 1]"}
                    )

            total = math.fsum(v.traffic_pct for v in variants)
            if abs(total - 1.0) > TRAFFIC_TOLERANCE:
                errors.append(
                    {
                        "field": "variants",
                        "message": f"traffic percentages must sum to 1, got {total}",
                    }
                )

            controls = sum(1 for v in variants if v.is_control)
            if controls != 1:
                errors.append(
                    {
                        "field": "variants",
                        "message": f"exactly one control variant required, got {controls}",
                    }
                )

            names = [v.name.strip() for v in variants if v.name]
            if len(names) != len(set(names)):
                errors.append({"field": "variants", "message": "variant names must be unique"})

        if errors:
            raise ValidationError(_summarize(errors), errors=errors)


def _validate_settings(values: dict[str, Any]) -> list[dict[str, Any]]:
    """Range checks shared by create and draft edits. None means 'use default'."""
    errors: list[dict[str, Any]] = []
    allocation = values.get("traffic_allocation")
    if allocation is not None and not (0 < allocation <= 1):
        errors.append({"field": "traffic_allocation", "message": "must be in (0, 1]"})
    confidence = values.get("confidence_level")
    if confidence is not None and not (0 < confidence < 1):
        errors.append({"field": "confidence_level", "message": "must be in (0, 1)"})
    min_sample = values.get("min_sample_size")
    if min_sample is not None and min_sample < 1:
        errors.append({"field": "min_sample_size", "message": "must be at least 1"})
    window = values.get("attribution_window_hours")
    if window is not None and window < 1:
        errors.append({"field": "attribution_window_hours", "message": "must be at least 1"})
    return errors


def _summarize(errors: list[dict[str, Any]]) -> str:
    return "; ".join(f"{e['field']}: {e['message']}" for e in errors)


def _build_variants(variants: list[VariantCreate]) -> list[Variant]:
    """Build variant rows with the control at position 0, others in declaration order."""
    ordered = sorted(variants, key=lambda v: not v.is_control)
    rows = []
    for position, item in enumerate(ordered):
        row = Variant(
            name=item.name.strip(),
            description=item.description,
            is_control=item.is_control,
            position=position,
            traffic_pct=item.traffic_pct,
            total_visitors=0,
            total_conversions=0,
            total_revenue=0.0,
        )
        if isinstance(item.value, AmountValue):
            row.value_kind = ValueKind.AMOUNT
            row.value_amount_minor = item.value.minor_units
        else:
            row.value_kind = ValueKind.PERCENT
            row.value_percent = item.value.percent
        rows.append(row)
    return rows
