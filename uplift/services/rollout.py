"""Rollout coordinator: ends an experiment on its winner and informs the offer applier."""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from uplift.core.config import Settings, get_settings
from uplift.core.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from uplift.core.logging import bind_log_context
from uplift.models.db.experiment import ExperimentStatus
from uplift.models.domain.experiment import ExperimentRead
from uplift.repositories.experiment_repo import ExperimentRepository
from uplift.services.offer_applier import LoggingOfferApplier, OfferApplier, WinningOffer
from uplift.services.results_cache import ResultsCache

logger = logging.getLogger(__name__)

ROLLOUT_FROM = frozenset({ExperimentStatus.RUNNING, ExperimentStatus.PAUSED})


class RolloutCoordinator:
    """Completes an experiment with a winner and hands the winner's offer on."""

    def __init__(
        self,
        db_session: AsyncSession,
        offer_applier: OfferApplier | None = None,
        settings: Settings | None = None,
        cache: ResultsCache | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repo = ExperimentRepository(db_session, self._settings)
        self._applier = offer_applier or LoggingOfferApplier()
        self._cache = cache

    async def rollout(
        self, experiment_id: uuid.UUID, winning_variant_id: uuid.UUID
    ) -> ExperimentRead:
        """Mark the experiment completed with ``winning_variant_id``.

        Repeating a rollout with the same winner is a no-op. The applier is
        called before the request's transaction commits, so an applier
        failure leaves the experiment unchanged.

        Raises:
            NotFoundError: Unknown experiment.
            ValidationError: Variant does not belong to the experiment.
            InvalidTransitionError: Experiment cannot be rolled out, or was
                already completed with a different (or no) winner.
        """
        bind_log_context(experiment_id=experiment_id)
        experiment = await self._repo.get_by_id(experiment_id, for_update=True)
        if experiment is None:
            raise NotFoundError("Experiment", str(experiment_id))

        if experiment.status == ExperimentStatus.COMPLETED:
            if experiment.winning_variant_id == winning_variant_id:
                logger.info(
                    "Rollout already applied", extra={"variant_id": str(winning_variant_id)}
                )
                return ExperimentRead.model_validate(experiment)
            raise InvalidTransitionError(
                f"Experiment {experiment_id} was already completed with a different winner"
            )

        if experiment.status not in ROLLOUT_FROM:
            raise InvalidTransitionError(
                f"Cannot roll out a {experiment.status.value} experiment"
            )

        winner = next((v for v in experiment.variants if v.id == winning_variant_id), None)
        if winner is None:
            raise ValidationError(
                f"Variant {winning_variant_id} does not belong to experiment {experiment_id}",
                errors=[{"field": "variant_id", "message": "not part of this experiment"}],
            )

        experiment.status = ExperimentStatus.COMPLETED
        experiment.end_date = datetime.now(UTC)
        experiment.winning_variant_id = winner.id
        experiment = await self._repo.save(experiment)

        await self._applier.apply(
            WinningOffer(
                experiment_id=experiment.id,
                variant_id=winner.id,
                experiment_type=experiment.experiment_type,
                value=winner.value,
            )
        )
        logger.info("Experiment rolled out", extra={"variant_id": str(winner.id)})

        if self._cache is not None:
            await self._cache.invalidate(experiment_id)
        return ExperimentRead.model_validate(experiment)
