"""Repository for experiments, variants, assignments and events."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import and_, distinct, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, AsyncSessionTransaction

from uplift.core.config import Settings, get_settings
from uplift.core.database import store_call
from uplift.core.exceptions import StoreUnavailableError
from uplift.models.db.experiment import (
    Assignment,
    EventType,
    Experiment,
    ExperimentEvent,
    ExperimentStatus,
    IdentifierType,
    Variant,
)


class ExperimentRepository:
    """Database operations backing the experimentation engine.

    Every call is bounded by ``store_timeout_seconds`` and raises
    StoreUnavailableError instead of driver exceptions.
    """

    def __init__(self, session: AsyncSession, settings: Settings | None = None) -> None:
        self.session = session
        self._timeout = (settings or get_settings()).store_timeout_seconds

    def savepoint(self) -> AsyncSessionTransaction:
        """Nested transaction grouping writes that must land together."""
        return self.session.begin_nested()

    # --- Experiments ---

    async def create(self, experiment: Experiment) -> Experiment:
        """Insert an experiment and its variants in one flush."""
        async with store_call("create experiment", self._timeout):
            self.session.add(experiment)
            await self.session.flush()
        # Re-read so server-side defaults on the experiment and its variants are loaded
        created = await self.get_by_id(experiment.id)
        if created is None:
            raise StoreUnavailableError("Experiment vanished after insert")
        return created

    async def get_by_id(
        self, experiment_id: uuid.UUID, *, for_update: bool = False
    ) -> Experiment | None:
        """Get experiment by ID, optionally locking the row."""
        stmt = (
            select(Experiment)
            .where(Experiment.id == experiment_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        async with store_call("get experiment", self._timeout):
            result = await self.session.execute(stmt)
            return result.scalar_one_or_none()

    async def list_by_shop(
        self,
        shop_id: str,
        status: ExperimentStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Experiment]:
        """List experiments for a shop, newest first."""
        conditions: list[Any] = [Experiment.shop_id == shop_id]
        if status is not None:
            conditions.append(Experiment.status == status)

        stmt = (
            select(Experiment)
            .where(and_(*conditions))
            .order_by(Experiment.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        async with store_call("list experiments", self._timeout):
            result = await self.session.execute(stmt)
            return list(result.scalars().all())

    async def save(self, experiment: Experiment) -> Experiment:
        """Flush pending attribute changes on an experiment."""
        async with store_call("save experiment", self._timeout):
            await self.session.flush()
            await self.session.refresh(experiment)
        return experiment

    # --- Variants ---

    async def get_variants(self, experiment_id: uuid.UUID) -> list[Variant]:
        """Fresh read of an experiment's variants in declaration order."""
        stmt = (
            select(Variant)
            .where(Variant.experiment_id == experiment_id)
            .order_by(Variant.position)
            .execution_options(populate_existing=True)
        )
        async with store_call("get variants", self._timeout):
            result = await self.session.execute(stmt)
            return list(result.scalars().all())

    async def increment_counters(
        self,
        variant_id: uuid.UUID,
        *,
        visitors: int = 0,
        conversions: int = 0,
        revenue: float = 0.0,
    ) -> None:
        """Atomically add deltas to a variant's counters in the database."""
        values: dict[str, Any] = {}
        if visitors:
            values["total_visitors"] = Variant.total_visitors + visitors
        if conversions:
            values["total_conversions"] = Variant.total_conversions + conversions
        if revenue:
            values["total_revenue"] = Variant.total_revenue + revenue
        if not values:
            return

        stmt = (
            update(Variant)
            .where(Variant.id == variant_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with store_call("increment counters", self._timeout):
            await self.session.execute(stmt)

    async def overwrite_counters(
        self,
        variant_id: uuid.UUID,
        *,
        visitors: int,
        conversions: int,
        revenue: float,
    ) -> None:
        """Replace a variant's counters. Repair path only."""
        stmt = (
            update(Variant)
            .where(Variant.id == variant_id)
            .values(
                total_visitors=visitors,
                total_conversions=conversions,
                total_revenue=revenue,
            )
            .execution_options(synchronize_session=False)
        )
        async with store_call("overwrite counters", self._timeout):
            await self.session.execute(stmt)

    # --- Assignments ---

    async def get_assignment(
        self, experiment_id: uuid.UUID, visitor_identifier: str
    ) -> Assignment | None:
        """Get the assignment for a visitor in an experiment."""
        async with store_call("get assignment", self._timeout):
            result = await self.session.execute(
                select(Assignment).where(
                    and_(
                        Assignment.experiment_id == experiment_id,
                        Assignment.visitor_identifier == visitor_identifier,
                    )
                )
            )
            return result.scalar_one_or_none()

    async def get_assignment_by_id(self, assignment_id: uuid.UUID) -> Assignment | None:
        """Get an assignment by ID."""
        async with store_call("get assignment", self._timeout):
            result = await self.session.execute(
                select(Assignment).where(Assignment.id == assignment_id)
            )
            return result.scalar_one_or_none()

    async def insert_assignment_if_absent(
        self,
        experiment_id: uuid.UUID,
        variant_id: uuid.UUID,
        visitor_identifier: str,
        identifier_type: IdentifierType = IdentifierType.SESSION,
    ) -> tuple[Assignment, bool]:
        """Insert an assignment unless one already exists for the visitor.

        Relies on the unique (experiment_id, visitor_identifier) index. When
        a concurrent request won the race the existing row is re-read.

        Returns:
            (assignment, created) where created is False if the row existed.
        """
        stmt = (
            pg_insert(Assignment)
            .values(
                id=uuid.uuid4(),
                experiment_id=experiment_id,
                variant_id=variant_id,
                visitor_identifier=visitor_identifier,
                identifier_type=identifier_type,
            )
            .on_conflict_do_nothing(
                index_elements=[Assignment.experiment_id, Assignment.visitor_identifier]
            )
            .returning(Assignment)
        )
        async with store_call("insert assignment", self._timeout):
            result = await self.session.execute(stmt)
            created = result.scalar_one_or_none()
        if created is not None:
            return created, True

        existing = await self.get_assignment(experiment_id, visitor_identifier)
        if existing is None:
            raise StoreUnavailableError(
                "Assignment conflict reported but no existing row was found"
            )
        return existing, False

    async def count_assignments_by_variant(
        self, experiment_id: uuid.UUID
    ) -> list[tuple[uuid.UUID, int]]:
        """Count assignments per variant for an experiment."""
        stmt = (
            select(Assignment.variant_id, func.count().label("count"))
            .where(Assignment.experiment_id == experiment_id)
            .group_by(Assignment.variant_id)
        )
        async with store_call("count assignments", self._timeout):
            result = await self.session.execute(stmt)
            return [(row[0], row[1]) for row in result.all()]

    # --- Events ---

    async def add_event(self, event: ExperimentEvent) -> ExperimentEvent:
        """Append an event."""
        async with store_call("insert event", self._timeout):
            self.session.add(event)
            await self.session.flush()
            await self.session.refresh(event)
        return event

    async def aggregate_events(
        self,
        experiment_id: uuid.UUID,
        from_timestamp: datetime | None = None,
        to_timestamp: datetime | None = None,
    ) -> list[tuple[uuid.UUID, int, int, float]]:
        """Recompute per-variant aggregates from the event log.

        Visitors are distinct exposed assignments; conversions and revenue
        count only attributed conversion events.

        Returns: list of (variant_id, visitors, conversions, revenue) tuples.
        """
        conditions: list[Any] = [ExperimentEvent.experiment_id == experiment_id]
        if from_timestamp is not None:
            conditions.append(ExperimentEvent.created_at >= from_timestamp)
        if to_timestamp is not None:
            conditions.append(ExperimentEvent.created_at < to_timestamp)

        is_exposure = ExperimentEvent.event_type == EventType.EXPOSURE
        is_counted_conversion = and_(
            ExperimentEvent.event_type == EventType.CONVERSION,
            ExperimentEvent.attributed.is_(True),
        )
        stmt = (
            select(
                ExperimentEvent.variant_id,
                func.count(distinct(ExperimentEvent.assignment_id))
                .filter(is_exposure)
                .label("visitors"),
                func.count(ExperimentEvent.id).filter(is_counted_conversion).label("conversions"),
                func.coalesce(
                    func.sum(ExperimentEvent.event_value).filter(is_counted_conversion), 0
                ).label("revenue"),
            )
            .where(and_(*conditions))
            .group_by(ExperimentEvent.variant_id)
        )
        async with store_call("aggregate events", self._timeout):
            result = await self.session.execute(stmt)
            return [
                (row[0], int(row[1]), int(row[2]), float(row[3]))
                for row in result.all()
            ]
