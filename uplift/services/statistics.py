"""Statistics engine: per-variant rates, two-proportion z-test and leader selection.

All functions here are pure and deterministic: identical aggregate inputs
give bit-identical outputs.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from statistics import NormalDist

from sqlalchemy.ext.asyncio import AsyncSession

from uplift.core.config import Settings, get_settings
from uplift.core.exceptions import NotFoundError
from uplift.core.logging import bind_log_context
from uplift.models.db.experiment import Experiment, Variant
from uplift.models.domain.experiment import (
    ComparisonResult,
    ExperimentResults,
    ReportingWindow,
    VariantResult,
)
from uplift.repositories.experiment_repo import ExperimentRepository
from uplift.services.bucketing import ordered_variants
from uplift.services.results_cache import ResultsCache

logger = logging.getLogger(__name__)

DEFAULT_MIN_SAMPLE_SIZE = 30

# Abramowitz & Stegun 7.1.26
_ERF_A1 = 0.254829592
_ERF_A2 = -0.284496736
_ERF_A3 = 1.421413741
_ERF_A4 = -1.453152027
_ERF_A5 = 1.061405429
_ERF_P = 0.3275911

# Two-sided critical values for the usual confidence levels
_Z_CRITICAL = {
    0.90: 1.645,
    0.95: 1.96,
    0.99: 2.576,
}


def erf(x: float) -> float:
    """Approximate the error function (max abs error ~1.5e-7)."""
    sign = -1.0 if x < 0 else 1.0
    abs_x = abs(x)
    t = 1.0 / (1.0 + _ERF_P * abs_x)
    y = 1.0 - (
        ((((_ERF_A5 * t + _ERF_A4) * t + _ERF_A3) * t + _ERF_A2) * t + _ERF_A1)
        * t
        * math.exp(-abs_x * abs_x)
    )
    return sign * y


def normal_cdf(x: float) -> float:
    """Standard normal CDF built on the approximated erf."""
    return 0.5 * (1.0 + erf(x / math.sqrt(2.0)))


def z_critical(confidence_level: float) -> float:
    """Two-sided critical z for a confidence level (1.96 for 0.95)."""
    for level, z in _Z_CRITICAL.items():
        if math.isclose(level, confidence_level, abs_tol=1e-9):
            return z
    return NormalDist().inv_cdf(1.0 - (1.0 - confidence_level) / 2.0)


def conversion_rate(conversions: int, visitors: int) -> float:
    """Conversions per visitor as a fraction; 0 with no visitors."""
    if visitors <= 0:
        return 0.0
    return conversions / visitors


def revenue_per_visitor(revenue: float, visitors: int) -> float:
    """Revenue per visitor; 0 with no visitors."""
    if visitors <= 0:
        return 0.0
    return revenue / visitors


def relative_lift(control: float, challenger: float) -> float:
    """Challenger change relative to control, in percent; 0 when control is 0."""
    if control <= 0:
        return 0.0
    return (challenger - control) / control * 100.0


@dataclass(frozen=True)
class SignificanceResult:
    """Outcome of a two-proportion z-test.

    Interval bounds are on the rate difference, in percentage points.
    """

    z_score: float | None
    p_value: float | None
    is_significant: bool
    ci_lower: float
    ci_upper: float

    @classmethod
    def skipped(cls) -> SignificanceResult:
        return cls(z_score=None, p_value=None, is_significant=False, ci_lower=0.0, ci_upper=0.0)


def two_proportion_z_test(
    control_conversions: int,
    control_visitors: int,
    challenger_conversions: int,
    challenger_visitors: int,
    confidence_level: float = 0.95,
    min_sample_size: int = DEFAULT_MIN_SAMPLE_SIZE,
) -> SignificanceResult:
    """Compare two conversion rates with a pooled two-proportion z-test.

    Skipped (not significant, no p-value) when either arm is below
    ``min_sample_size`` or the pooled standard error is zero/non-finite.
    """
    n1, n2 = control_visitors, challenger_visitors
    conv1, conv2 = control_conversions, challenger_conversions
    if n1 < min_sample_size or n2 < min_sample_size:
        return SignificanceResult.skipped()

    p1 = conversion_rate(conv1, n1)
    p2 = conversion_rate(conv2, n2)
    pooled = (conv1 + conv2) / (n1 + n2)
    std_err = math.sqrt(pooled * (1 - pooled) * (1 / n1 + 1 / n2))
    if not math.isfinite(std_err) or std_err == 0:
        return SignificanceResult.skipped()

    z_score = (p2 - p1) / std_err
    p_value = 2 * (1 - normal_cdf(abs(z_score)))

    diff = p2 - p1
    se_diff = math.sqrt(p1 * (1 - p1) / n1 + p2 * (1 - p2) / n2)
    margin = z_critical(confidence_level) * se_diff

    return SignificanceResult(
        z_score=z_score,
        p_value=p_value,
        is_significant=p_value < (1 - confidence_level),
        ci_lower=(diff - margin) * 100,
        ci_upper=(diff + margin) * 100,
    )


@dataclass(frozen=True)
class VariantAggregate:
    """Raw counters for one variant, from counters or from an event scan."""

    variant_id: uuid.UUID
    name: str
    is_control: bool
    visitors: int
    conversions: int
    revenue: float

    @classmethod
    def from_variant(cls, variant: Variant) -> VariantAggregate:
        return cls(
            variant_id=variant.id,
            name=variant.name,
            is_control=variant.is_control,
            visitors=int(variant.total_visitors or 0),
            conversions=int(variant.total_conversions or 0),
            revenue=float(variant.total_revenue or 0.0),
        )


def analyze(
    aggregates: list[VariantAggregate],
    confidence_level: float,
    min_sample_size: int,
) -> tuple[list[VariantResult], list[ComparisonResult], uuid.UUID | None]:
    """Compute per-variant rates, control comparisons and the leader.

    ``aggregates`` must be in bucketing order (control first). The leader is
    the significantly-better challenger with the highest revenue per
    visitor, then highest conversion rate, then lowest variant id.
    """
    if not aggregates:
        return [], [], None

    variant_results = [
        VariantResult(
            variant_id=agg.variant_id,
            name=agg.name,
            is_control=agg.is_control,
            visitors=agg.visitors,
            conversions=agg.conversions,
            revenue=agg.revenue,
            conversion_rate=conversion_rate(agg.conversions, agg.visitors),
            revenue_per_visitor=revenue_per_visitor(agg.revenue, agg.visitors),
        )
        for agg in aggregates
    ]

    control = next((v for v in variant_results if v.is_control), variant_results[0])
    comparisons: list[ComparisonResult] = []
    winners: list[VariantResult] = []

    for challenger in variant_results:
        if challenger.variant_id == control.variant_id:
            continue
        test = two_proportion_z_test(
            control.conversions,
            control.visitors,
            challenger.conversions,
            challenger.visitors,
            confidence_level=confidence_level,
            min_sample_size=min_sample_size,
        )
        comparisons.append(
            ComparisonResult(
                control_variant_id=control.variant_id,
                variant_id=challenger.variant_id,
                z_score=test.z_score,
                p_value=test.p_value,
                is_significant=test.is_significant,
                confidence_interval_lower=test.ci_lower,
                confidence_interval_upper=test.ci_upper,
                conversion_rate_lift=relative_lift(
                    control.conversion_rate, challenger.conversion_rate
                ),
                revenue_lift=relative_lift(
                    control.revenue_per_visitor, challenger.revenue_per_visitor
                ),
            )
        )
        if test.is_significant and challenger.conversion_rate > control.conversion_rate:
            winners.append(challenger)

    leader_id: uuid.UUID | None = None
    if winners:
        leader = min(
            winners,
            key=lambda v: (-v.revenue_per_visitor, -v.conversion_rate, v.variant_id),
        )
        leader_id = leader.variant_id

    return variant_results, comparisons, leader_id


class StatisticsService:
    """Read-only results computation for an experiment.

    Reads tolerate concurrent counter updates: a result computed mid-update
    is a consistent snapshot of whatever the store returned.
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

    async def compute_results(
        self,
        experiment_id: uuid.UUID,
        window: ReportingWindow | None = None,
        *,
        use_cache: bool = True,
    ) -> ExperimentResults:
        """Compute current results.

        Without a window (or with an unbounded one) the incremental
        counters are used. A bounded window recomputes aggregates from the
        attributed events created inside it.
        """
        bind_log_context(experiment_id=experiment_id)
        experiment = await self._repo.get_by_id(experiment_id)
        if experiment is None:
            raise NotFoundError("Experiment", str(experiment_id))

        if window is not None and window.is_unbounded:
            window = None

        if use_cache and self._cache is not None:
            cached = await self._cache.get(experiment_id, window)
            if cached is not None:
                return cached

        variants = ordered_variants(await self._repo.get_variants(experiment_id))
        if window is None:
            aggregates = [VariantAggregate.from_variant(v) for v in variants]
            source = "counters"
        else:
            aggregates = await self._aggregate_window(experiment_id, variants, window)
            source = "events"

        results = self._build_results(experiment, aggregates, source, window)

        if self._cache is not None:
            await self._cache.set(results, window)
        return results

    async def _aggregate_window(
        self,
        experiment_id: uuid.UUID,
        variants: list[Variant],
        window: ReportingWindow,
    ) -> list[VariantAggregate]:
        rows = await self._repo.aggregate_events(experiment_id, window.start, window.end)
        by_variant = {variant_id: (vis, conv, rev) for variant_id, vis, conv, rev in rows}
        aggregates = []
        for variant in variants:
            visitors, conversions, revenue = by_variant.get(variant.id, (0, 0, 0.0))
            aggregates.append(
                VariantAggregate(
                    variant_id=variant.id,
                    name=variant.name,
                    is_control=variant.is_control,
                    visitors=visitors,
                    conversions=conversions,
                    revenue=revenue,
                )
            )
        return aggregates

    def _build_results(
        self,
        experiment: Experiment,
        aggregates: list[VariantAggregate],
        source: str,
        window: ReportingWindow | None,
    ) -> ExperimentResults:
        confidence_level = experiment.confidence_level or self._settings.default_confidence_level
        min_sample_size = experiment.min_sample_size or self._settings.default_min_sample_size

        variant_results, comparisons, leader_id = analyze(
            aggregates, confidence_level, min_sample_size
        )
        logger.debug(
            "Computed experiment results",
            extra={
                "source": source,
                "leader_variant_id": str(leader_id) if leader_id else None,
            },
        )
        return ExperimentResults(
            experiment_id=experiment.id,
            experiment_name=experiment.name,
            status=experiment.status,
            primary_metric=experiment.primary_metric,
            confidence_level=confidence_level,
            min_sample_size=min_sample_size,
            source=source,
            window=window,
            variants=variant_results,
            comparisons=comparisons,
            leader_variant_id=leader_id,
        )
