"""Bucketing engine: deterministic, idempotent visitor-to-variant assignment.

Draws come from a SHA-256 hash of (experiment id, visitor identifier), so
retries, restarts and separate service instances all agree without
coordination. The store's unique index makes the first assignment sticky.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from collections.abc import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from uplift.core.config import Settings, get_settings
from uplift.core.exceptions import NotFoundError, StoreUnavailableError
from uplift.core.logging import bind_log_context
from uplift.models.db.experiment import (
    Assignment,
    EventType,
    ExperimentEvent,
    ExperimentStatus,
    IdentifierType,
    Variant,
)
from uplift.models.domain.experiment import AssignmentRead
from uplift.repositories.experiment_repo import ExperimentRepository

logger = logging.getLogger(__name__)

_HASH_SPACE = 2**64

# Existing assignments stay visible while paused; new ones need RUNNING
LOOKUP_STATUSES = frozenset({ExperimentStatus.RUNNING, ExperimentStatus.PAUSED})


def bucket_value(experiment_id: uuid.UUID, visitor_identifier: str, salt: str = "variant") -> float:
    """Map (experiment, visitor) to a stable value in [0, 1).

    The first 8 bytes of the digest are read as an unsigned integer and
    divided by the size of that space. ``salt`` separates independent draws
    (traffic gate vs. variant choice) for the same visitor.
    """
    key = f"{salt}:{experiment_id}:{visitor_identifier}"
    digest = hashlib.sha256(key.encode()).digest()
    return int.from_bytes(digest[:8], "big") / _HASH_SPACE


def ordered_variants(variants: Sequence[Variant]) -> list[Variant]:
    """Stable walk order: control first, then declaration order."""
    return sorted(variants, key=lambda v: (not v.is_control, v.position))


def select_variant(variants: Sequence[Variant], draw: float) -> Variant:
    """Pick the first variant whose cumulative traffic share exceeds ``draw``.

    Falls back to the last variant when rounding leaves the cumulative sum
    just short of the draw, so a selection always happens.
    """
    if not variants:
        raise ValueError("Cannot select from an empty variant list")
    cumulative = 0.0
    for variant in variants:
        cumulative += variant.traffic_pct
        if draw < cumulative:
            return variant
    return variants[-1]


def in_traffic(experiment_id: uuid.UUID, visitor_identifier: str, allocation: float) -> bool:
    """Check if a visitor falls inside the experiment's traffic allocation."""
    if allocation >= 1.0:
        return True
    return bucket_value(experiment_id, visitor_identifier, salt="traffic") < allocation


class BucketingService:
    """Assigns storefront visitors to experiment variants.

    Fails open: when the store is unavailable the visitor gets a
    non-persisted control assignment and the failure is logged for
    reconciliation.
    """

    def __init__(self, db_session: AsyncSession, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._repo = ExperimentRepository(db_session, self._settings)

    async def assign(
        self,
        experiment_id: uuid.UUID,
        visitor_identifier: str,
        identifier_type: IdentifierType = IdentifierType.SESSION,
    ) -> AssignmentRead:
        """Return the visitor's assignment, creating it on first visit.

        Repeated and concurrent calls for the same visitor return the same
        variant; only the call that actually inserted the assignment emits
        the exposure event and bumps the visitor counter. While paused,
        visitors keep an existing assignment and everyone else gets the
        control without one.

        Raises:
            NotFoundError: If the experiment does not exist.
        """
        bind_log_context(experiment_id=experiment_id)
        try:
            experiment = await self._repo.get_by_id(experiment_id)
        except StoreUnavailableError:
            logger.warning(
                "Store unavailable, serving default experience",
                extra={"visitor": visitor_identifier},
                exc_info=True,
            )
            return _fallback(experiment_id, visitor_identifier, identifier_type, None)

        if experiment is None:
            raise NotFoundError("Experiment", str(experiment_id))

        variants = ordered_variants(experiment.variants)
        control = variants[0] if variants else None

        if experiment.status not in LOOKUP_STATUSES:
            return _fallback(experiment_id, visitor_identifier, identifier_type, control)

        try:
            existing = await self._repo.get_assignment(experiment_id, visitor_identifier)
            if existing is not None:
                bind_log_context(assignment_id=existing.id)
                return _to_read(existing, control)

            if experiment.status != ExperimentStatus.RUNNING or not in_traffic(
                experiment_id, visitor_identifier, experiment.traffic_allocation
            ):
                return _fallback(experiment_id, visitor_identifier, identifier_type, control)

            chosen = select_variant(variants, bucket_value(experiment_id, visitor_identifier))
            async with self._repo.savepoint():
                assignment, created = await self._repo.insert_assignment_if_absent(
                    experiment_id, chosen.id, visitor_identifier, identifier_type
                )
                if created:
                    await self._repo.add_event(
                        ExperimentEvent(
                            experiment_id=experiment_id,
                            variant_id=assignment.variant_id,
                            assignment_id=assignment.id,
                            event_type=EventType.EXPOSURE,
                            visitor_identifier=visitor_identifier,
                        )
                    )
                    await self._repo.increment_counters(assignment.variant_id, visitors=1)
        except StoreUnavailableError:
            logger.warning(
                "Store unavailable during assignment, serving control",
                extra={"visitor": visitor_identifier},
                exc_info=True,
            )
            return _fallback(experiment_id, visitor_identifier, identifier_type, control)

        bind_log_context(assignment_id=assignment.id)
        if created:
            logger.debug("Assigned visitor", extra={"variant_id": str(assignment.variant_id)})
        return _to_read(assignment, control)


def _to_read(assignment: Assignment, control: Variant | None) -> AssignmentRead:
    return AssignmentRead(
        id=assignment.id,
        experiment_id=assignment.experiment_id,
        variant_id=assignment.variant_id,
        visitor_identifier=assignment.visitor_identifier,
        identifier_type=assignment.identifier_type,
        is_control=control is not None and assignment.variant_id == control.id,
        participating=True,
        persisted=True,
        created_at=assignment.created_at,
    )


def _fallback(
    experiment_id: uuid.UUID,
    visitor_identifier: str,
    identifier_type: IdentifierType,
    control: Variant | None,
) -> AssignmentRead:
    """Synthetic, non-persisted control result."""
    return AssignmentRead(
        id=None,
        experiment_id=experiment_id,
        variant_id=control.id if control is not None else None,
        visitor_identifier=visitor_identifier,
        identifier_type=identifier_type,
        is_control=True,
        participating=False,
        persisted=False,
    )
