"""Experiment database models: experiments, variants, assignments and events."""

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from uplift.models.db.base import Base, TimestampMixin

# Money columns: exact in the database, floats in Python
MONEY = Numeric(18, 4, asdecimal=False)


class ExperimentStatus(enum.StrEnum):
    """Lifecycle status of an experiment."""

    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExperimentStatus.COMPLETED, ExperimentStatus.CANCELLED)


class PrimaryMetric(enum.StrEnum):
    """Aggregate that an experiment is judged on."""

    CONVERSION_RATE = "conversion_rate"
    REVENUE_PER_VISITOR = "revenue_per_visitor"


class ValueKind(enum.StrEnum):
    """Tag of a variant's offer value."""

    PERCENT = "percent"
    AMOUNT = "amount"


class EventType(enum.StrEnum):
    """Kinds of event recorded against an assignment."""

    EXPOSURE = "exposure"
    CLICK = "click"
    CONVERSION = "conversion"


class IdentifierType(enum.StrEnum):
    """Scope of a visitor identifier."""

    SESSION = "session"
    CUSTOMER = "customer"


class Experiment(Base, TimestampMixin):
    """A/B test definition for a single shop.

    Owns its variants; counters live on the variants.
    """

    __tablename__ = "ab_experiments"

    shop_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    description: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    experiment_type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    status: Mapped[ExperimentStatus] = mapped_column(
        Enum(ExperimentStatus, name="ab_experiment_status"),
        nullable=False,
        default=ExperimentStatus.DRAFT,
    )
    traffic_allocation: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=1.0,
    )
    primary_metric: Mapped[PrimaryMetric] = mapped_column(
        Enum(PrimaryMetric, name="ab_primary_metric"),
        nullable=False,
        default=PrimaryMetric.CONVERSION_RATE,
    )
    confidence_level: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=0.95,
    )
    min_sample_size: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=30,
    )
    # NULL means same-session attribution with no time bound
    attribution_window_hours: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )
    start_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    end_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    winning_variant_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )

    variants: Mapped[list["Variant"]] = relationship(
        back_populates="experiment",
        order_by="Variant.position",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint(
            "traffic_allocation > 0 AND traffic_allocation <= 1",
            name="ck_ab_experiments_traffic_allocation",
        ),
        CheckConstraint(
            "confidence_level > 0 AND confidence_level < 1",
            name="ck_ab_experiments_confidence_level",
        ),
        Index("ix_ab_experiments_shop_status", "shop_id", "status"),
    )


class Variant(Base, TimestampMixin):
    """One arm of an experiment, including the control.

    The offer value is a tagged union: ``value_kind`` says which of
    ``value_percent`` / ``value_amount_minor`` is populated.
    """

    __tablename__ = "ab_variants"

    experiment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("ab_experiments.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    description: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    is_control: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    position: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    traffic_pct: Mapped[float] = mapped_column(
        Float,
        nullable=False,
    )
    value_kind: Mapped[ValueKind] = mapped_column(
        Enum(ValueKind, name="ab_value_kind"),
        nullable=False,
    )
    value_percent: Mapped[float | None] = mapped_column(
        Float,
        nullable=True,
    )
    value_amount_minor: Mapped[int | None] = mapped_column(
        BigInteger,
        nullable=True,
    )
    total_visitors: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
        server_default="0",
    )
    total_conversions: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
        server_default="0",
    )
    total_revenue: Mapped[float] = mapped_column(
        MONEY,
        nullable=False,
        default=0.0,
        server_default="0",
    )

    experiment: Mapped[Experiment] = relationship(back_populates="variants")

    @property
    def value(self) -> dict[str, Any]:
        """Tagged offer value as a plain mapping."""
        if self.value_kind == ValueKind.AMOUNT:
            return {"kind": "amount", "minor_units": self.value_amount_minor}
        return {"kind": "percent", "percent": self.value_percent}

    __table_args__ = (
        CheckConstraint(
            "traffic_pct > 0 AND traffic_pct <= 1",
            name="ck_ab_variants_traffic_pct",
        ),
        CheckConstraint(
            "(value_kind = 'PERCENT' AND value_percent IS NOT NULL"
            " AND value_amount_minor IS NULL)"
            " OR (value_kind = 'AMOUNT' AND value_amount_minor IS NOT NULL"
            " AND value_percent IS NULL)",
            name="ck_ab_variants_value_union",
        ),
        Index("ix_ab_variants_experiment_position", "experiment_id", "position", unique=True),
    )


class Assignment(Base):
    """Sticky mapping of a visitor to a variant.

    At most one row per (experiment, visitor); the unique index is what
    makes concurrent first visits collapse to a single assignment.
    """

    __tablename__ = "ab_assignments"

    experiment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("ab_experiments.id", ondelete="CASCADE"),
        nullable=False,
    )
    variant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("ab_variants.id", ondelete="CASCADE"),
        nullable=False,
    )
    visitor_identifier: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    identifier_type: Mapped[IdentifierType] = mapped_column(
        Enum(IdentifierType, name="ab_identifier_type"),
        nullable=False,
        default=IdentifierType.SESSION,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        Index(
            "ux_ab_assignments_experiment_visitor",
            "experiment_id",
            "visitor_identifier",
            unique=True,
        ),
        Index("ix_ab_assignments_variant", "variant_id"),
    )


class ExperimentEvent(Base):
    """Append-only event logged against an assignment."""

    __tablename__ = "ab_events"

    experiment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("ab_experiments.id", ondelete="CASCADE"),
        nullable=False,
    )
    variant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("ab_variants.id", ondelete="CASCADE"),
        nullable=False,
    )
    assignment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("ab_assignments.id", ondelete="CASCADE"),
        nullable=False,
    )
    event_type: Mapped[EventType] = mapped_column(
        Enum(EventType, name="ab_event_type"),
        nullable=False,
    )
    visitor_identifier: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    event_value: Mapped[float | None] = mapped_column(
        MONEY,
        nullable=True,
    )
    event_data: Mapped[dict[str, Any] | None] = mapped_column(
        JSONB,
        nullable=True,
    )
    # False for conversions that arrived outside the attribution window
    attributed: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default="true",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_ab_events_experiment_created", "experiment_id", "created_at"),
        Index("ix_ab_events_variant_type", "variant_id", "event_type"),
        Index("ix_ab_events_assignment", "assignment_id"),
    )
