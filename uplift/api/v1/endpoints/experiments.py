"""Experiment API endpoints for A/B testing management."""

import uuid
from datetime import datetime

import pydantic
from fastapi import APIRouter, Query

from uplift.api.v1.dependencies import ExperimentSvc, Recorder, StatisticsSvc
from uplift.core.exceptions import ValidationError
from uplift.models.db.experiment import ExperimentStatus
from uplift.models.domain.experiment import (
    CompleteRequest,
    ExperimentCreate,
    ExperimentRead,
    ExperimentResults,
    ExperimentUpdate,
    ReportingWindow,
    RolloutRequest,
)

router = APIRouter()


@router.post("", response_model=ExperimentRead, status_code=201)
async def create_experiment(
    service: ExperimentSvc,
    data: ExperimentCreate,
) -> ExperimentRead:
    """Create a new draft experiment with its variants."""
    return await service.create_experiment(data)


@router.get("", response_model=list[ExperimentRead])
async def list_experiments(
    service: ExperimentSvc,
    shop_id: str = Query(..., description="Storefront to list experiments for"),
    status: ExperimentStatus | None = Query(None, description="Filter by status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
) -> list[ExperimentRead]:
    """List experiments for a shop, newest first."""
    return await service.list_experiments(shop_id, status=status, limit=limit, offset=offset)


@router.get("/{experiment_id}", response_model=ExperimentRead)
async def get_experiment(
    service: ExperimentSvc,
    experiment_id: uuid.UUID,
) -> ExperimentRead:
    """Get experiment by ID."""
    return await service.get_experiment(experiment_id)


@router.patch("/{experiment_id}", response_model=ExperimentRead)
async def update_experiment(
    service: ExperimentSvc,
    experiment_id: uuid.UUID,
    data: ExperimentUpdate,
) -> ExperimentRead:
    """Update experiment settings (DRAFT only)."""
    return await service.update_experiment(experiment_id, data)


@router.post("/{experiment_id}/start", response_model=ExperimentRead)
async def start_experiment(
    service: ExperimentSvc,
    experiment_id: uuid.UUID,
) -> ExperimentRead:
    """Start a DRAFT experiment or resume a PAUSED one."""
    return await service.start_experiment(experiment_id)


@router.post("/{experiment_id}/pause", response_model=ExperimentRead)
async def pause_experiment(
    service: ExperimentSvc,
    experiment_id: uuid.UUID,
) -> ExperimentRead:
    """Pause a RUNNING experiment."""
    return await service.pause_experiment(experiment_id)


@router.post("/{experiment_id}/complete", response_model=ExperimentRead)
async def complete_experiment(
    service: ExperimentSvc,
    experiment_id: uuid.UUID,
    data: CompleteRequest | None = None,
) -> ExperimentRead:
    """Complete an experiment, optionally rolling out a winner."""
    winning_variant_id = data.winning_variant_id if data is not None else None
    return await service.complete_experiment(experiment_id, winning_variant_id)


@router.post("/{experiment_id}/cancel", response_model=ExperimentRead)
async def cancel_experiment(
    service: ExperimentSvc,
    experiment_id: uuid.UUID,
) -> ExperimentRead:
    """Cancel a non-terminal experiment."""
    return await service.cancel_experiment(experiment_id)


@router.post("/{experiment_id}/rollout", response_model=ExperimentRead)
async def rollout_winner(
    service: ExperimentSvc,
    experiment_id: uuid.UUID,
    data: RolloutRequest,
) -> ExperimentRead:
    """Complete the experiment on a winner and hand it to the offer applier."""
    return await service.rollout(experiment_id, data.variant_id)


@router.get("/{experiment_id}/results", response_model=ExperimentResults)
async def get_results(
    service: StatisticsSvc,
    experiment_id: uuid.UUID,
    start: datetime | None = Query(None, description="Window start, inclusive"),
    end: datetime | None = Query(None, description="Window end, exclusive"),
) -> ExperimentResults:
    """Get experiment results with statistical significance."""
    try:
        window = ReportingWindow(start=start, end=end)
    except pydantic.ValidationError as e:
        raise ValidationError(
            "Invalid reporting window",
            errors=[{"field": "window", "message": err["msg"]} for err in e.errors()],
        ) from e
    return await service.compute_results(experiment_id, window)


@router.post("/{experiment_id}/reconcile", response_model=ExperimentRead)
async def reconcile_counters(
    recorder: Recorder,
    experiment_id: uuid.UUID,
) -> ExperimentRead:
    """Rebuild variant counters from the assignment and event log."""
    return await recorder.reconcile_counters(experiment_id)
