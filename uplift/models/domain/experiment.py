"""Experiment Pydantic schemas for A/B testing."""

from datetime import UTC, datetime
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from uplift.models.db.experiment import (
    EventType,
    ExperimentStatus,
    IdentifierType,
    PrimaryMetric,
)


class PercentValue(BaseModel):
    """Offer value expressed as a percentage (e.g. a 15% discount)."""

    kind: Literal["percent"] = "percent"
    percent: float = Field(..., ge=0, le=100, description="Percentage, 0-100")


class AmountValue(BaseModel):
    """Offer value expressed as a currency amount in minor units (cents)."""

    kind: Literal["amount"] = "amount"
    minor_units: int = Field(..., ge=0, description="Amount in minor currency units")


VariantValue = Annotated[PercentValue | AmountValue, Field(discriminator="kind")]


class VariantCreate(BaseModel):
    """Schema for one variant in an experiment creation request."""

    name: str = Field(..., max_length=255)
    description: str | None = None
    is_control: bool = False
    traffic_pct: float = Field(..., description="Share of allocated traffic, (0, 1]")
    value: VariantValue


class ExperimentCreate(BaseModel):
    """Schema for creating an experiment together with its variants."""

    shop_id: str = Field(..., max_length=255, description="Storefront the experiment runs on")
    name: str = Field(..., max_length=255)
    description: str | None = None
    experiment_type: str = Field(
        ...,
        max_length=100,
        description="Offer classification, e.g. 'discount', 'shipping-threshold', 'bundle'",
    )
    traffic_allocation: float = Field(
        1.0, description="Fraction of eligible visitors who participate, (0, 1]"
    )
    primary_metric: PrimaryMetric = PrimaryMetric.CONVERSION_RATE
    confidence_level: float | None = Field(None, description="Defaults from settings")
    min_sample_size: int | None = Field(None, description="Defaults from settings")
    attribution_window_hours: int | None = Field(
        None, description="Hours after assignment a conversion still counts; null = session"
    )
    variants: list[VariantCreate]


class ExperimentUpdate(BaseModel):
    """Schema for editing a draft experiment."""

    name: str | None = Field(None, max_length=255)
    description: str | None = None
    traffic_allocation: float | None = None
    primary_metric: PrimaryMetric | None = None
    confidence_level: float | None = None
    min_sample_size: int | None = None
    attribution_window_hours: int | None = None


class VariantRead(BaseModel):
    """Schema for reading a variant with its counters."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    experiment_id: UUID
    name: str
    description: str | None
    is_control: bool
    position: int
    traffic_pct: float
    value: VariantValue
    total_visitors: int
    total_conversions: int
    total_revenue: float


class ExperimentRead(BaseModel):
    """Schema for reading an experiment."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    shop_id: str
    name: str
    description: str | None
    experiment_type: str
    status: ExperimentStatus
    traffic_allocation: float
    primary_metric: PrimaryMetric
    confidence_level: float
    min_sample_size: int
    attribution_window_hours: int | None
    start_date: datetime | None
    end_date: datetime | None
    winning_variant_id: UUID | None
    variants: list[VariantRead]
    created_at: datetime
    updated_at: datetime


class AssignRequest(BaseModel):
    """Schema for a storefront bucketing request."""

    experiment_id: UUID
    visitor_identifier: str = Field(..., min_length=1, max_length=255)
    identifier_type: IdentifierType = IdentifierType.SESSION


class AssignmentRead(BaseModel):
    """Bucketing result.

    ``persisted`` is False for synthetic fallbacks (experiment not running,
    visitor outside the traffic allocation, store unavailable); those carry
    no id and point at the control variant when it is known.
    """

    model_config = ConfigDict(from_attributes=True)

    id: UUID | None = None
    experiment_id: UUID
    variant_id: UUID | None
    visitor_identifier: str
    identifier_type: IdentifierType = IdentifierType.SESSION
    is_control: bool = True
    participating: bool = True
    persisted: bool = True
    created_at: datetime | None = None


class TrackRequest(BaseModel):
    """Schema for tracking an event against an assignment."""

    assignment_id: UUID
    event_type: str = Field(..., description="exposure, click or conversion")
    event_value: float | None = Field(None, description="Order revenue for conversions")
    event_data: dict[str, Any] | None = None


class EventRead(BaseModel):
    """Schema for reading a recorded event."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    experiment_id: UUID
    variant_id: UUID
    assignment_id: UUID
    event_type: EventType
    visitor_identifier: str
    event_value: float | None
    event_data: dict[str, Any] | None
    attributed: bool
    created_at: datetime


class CompleteRequest(BaseModel):
    """Schema for completing an experiment, optionally naming a winner."""

    winning_variant_id: UUID | None = None


class RolloutRequest(BaseModel):
    """Schema for rolling out a winning variant."""

    variant_id: UUID


class ReportingWindow(BaseModel):
    """Half-open ``[start, end)`` reporting range; either bound may be open."""

    start: datetime | None = None
    end: datetime | None = None

    @field_validator("start", "end")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        """Naive bounds are read as UTC so both bounds are comparable."""
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @model_validator(mode="after")
    def _check_order(self) -> "ReportingWindow":
        if self.start is not None and self.end is not None and self.end <= self.start:
            raise ValueError("window end must be after window start")
        return self

    @property
    def is_unbounded(self) -> bool:
        return self.start is None and self.end is None

    def cache_token(self) -> str:
        """Stable string form used in cache keys."""
        start = self.start.isoformat() if self.start else "-"
        end = self.end.isoformat() if self.end else "-"
        return f"{start}:{end}"


class VariantResult(BaseModel):
    """Aggregates and derived rates for one variant."""

    variant_id: UUID
    name: str
    is_control: bool
    visitors: int
    conversions: int
    revenue: float
    conversion_rate: float
    revenue_per_visitor: float


class ComparisonResult(BaseModel):
    """Control-vs-challenger significance test outcome.

    Interval bounds and lifts are in percent; ``p_value`` and ``z_score``
    are None when the test was skipped.
    """

    control_variant_id: UUID
    variant_id: UUID
    z_score: float | None
    p_value: float | None
    is_significant: bool
    confidence_interval_lower: float
    confidence_interval_upper: float
    conversion_rate_lift: float
    revenue_lift: float


class ExperimentResults(BaseModel):
    """Statistical analysis results for an experiment."""

    experiment_id: UUID
    experiment_name: str
    status: ExperimentStatus
    primary_metric: PrimaryMetric
    confidence_level: float
    min_sample_size: int
    source: Literal["counters", "events"]
    window: ReportingWindow | None = None
    variants: list[VariantResult]
    comparisons: list[ComparisonResult]
    leader_variant_id: UUID | None
