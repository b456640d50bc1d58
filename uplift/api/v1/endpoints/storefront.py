"""Storefront-facing endpoints: bucketing and event tracking."""

import logging
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from uplift.api.v1.dependencies import Bucketing, Recorder
from uplift.core.exceptions import StoreUnavailableError
from uplift.models.domain.experiment import (
    AssignmentRead,
    AssignRequest,
    EventRead,
    TrackRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/assign", response_model=AssignmentRead)
async def assign_visitor(
    service: Bucketing,
    data: AssignRequest,
) -> AssignmentRead:
    """Bucket a visitor into a variant. Never fails on store outages."""
    return await service.assign(data.experiment_id, data.visitor_identifier, data.identifier_type)


@router.post("/track", response_model=EventRead, status_code=201)
async def track_event(
    recorder: Recorder,
    data: TrackRequest,
) -> Any:
    """Record an event against an assignment.

    Store outages are answered with 202 so checkout is never blocked.
    """
    try:
        return await recorder.track(
            data.assignment_id,
            data.event_type,
            event_value=data.event_value,
            event_data=data.event_data,
        )
    except StoreUnavailableError:
        logger.warning(
            "Event deferred, store unavailable",
            extra={"assignment_id": str(data.assignment_id), "event_type": data.event_type},
            exc_info=True,
        )
        return JSONResponse(status_code=202, content={"status": "deferred"})
