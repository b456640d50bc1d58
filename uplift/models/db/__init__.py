"""Database models package."""

from uplift.models.db.base import Base, TimestampMixin
from uplift.models.db.experiment import (
    Assignment,
    EventType,
    Experiment,
    ExperimentEvent,
    ExperimentStatus,
    IdentifierType,
    PrimaryMetric,
    ValueKind,
    Variant,
)

__all__ = [
    "Assignment",
    "Base",
    "EventType",
    "Experiment",
    "ExperimentEvent",
    "ExperimentStatus",
    "IdentifierType",
    "PrimaryMetric",
    "TimestampMixin",
    "ValueKind",
    "Variant",
]
