"""Unit tests for the statistics engine."""

import math
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from uplift.core.config import Settings
from uplift.core.exceptions import NotFoundError
from uplift.models.db.experiment import Experiment
from uplift.models.domain.experiment import ReportingWindow
from uplift.services.statistics import (
    StatisticsService,
    VariantAggregate,
    analyze,
    erf,
    normal_cdf,
    relative_lift,
    two_proportion_z_test,
    z_critical,
)


def _agg(
    visitors: int,
    conversions: int,
    revenue: float = 0.0,
    *,
    is_control: bool = False,
    variant_id: uuid.UUID | None = None,
    name: str = "arm",
) -> VariantAggregate:
    return VariantAggregate(
        variant_id=variant_id or uuid.uuid4(),
        name=name,
        is_control=is_control,
        visitors=visitors,
        conversions=conversions,
        revenue=revenue,
    )


class TestNormalApproximation:
    """Tests for erf / normal CDF / critical values."""

    def test_erf_known_values(self) -> None:
        assert erf(0.0) == pytest.approx(0.0, abs=1e-7)
        assert erf(1.0) == pytest.approx(0.8427007929, abs=1e-6)
        assert erf(-1.0) == pytest.approx(-erf(1.0))

    def test_normal_cdf(self) -> None:
        assert normal_cdf(0.0) == pytest.approx(0.5, abs=1e-7)
        assert normal_cdf(1.96) == pytest.approx(0.975, abs=1e-4)

    def test_z_critical_table_and_fallback(self) -> None:
        assert z_critical(0.95) == 1.96
        assert z_critical(0.99) == 2.576
        assert z_critical(0.80) == pytest.approx(1.2816, abs=1e-3)

    def test_relative_lift_zero_control(self) -> None:
        assert relative_lift(0.0, 0.5) == 0.0
        assert relative_lift(0.05, 0.07) == pytest.approx(40.0)


class TestTwoProportionZTest:
    """Tests for the two-proportion z-test."""

    def test_five_vs_seven_percent_at_thousand_visitors(self) -> None:
        # 5% vs 7% on 1000 visitors each gives z ~ 1.88, p ~ 0.06
        result = two_proportion_z_test(50, 1000, 70, 1000, confidence_level=0.95)

        assert result.z_score == pytest.approx(1.8831, abs=1e-3)
        assert result.p_value == pytest.approx(0.0597, abs=1e-3)
        assert result.is_significant is False
        assert result.ci_lower < 0 < result.ci_upper
        assert (result.ci_lower + result.ci_upper) / 2 == pytest.approx(2.0)

    def test_five_vs_seven_percent_significant_at_ninety(self) -> None:
        result = two_proportion_z_test(50, 1000, 70, 1000, confidence_level=0.90)

        assert result.is_significant is True

    def test_five_vs_seven_percent_significant_with_larger_sample(self) -> None:
        result = two_proportion_z_test(100, 2000, 140, 2000, confidence_level=0.95)

        assert result.p_value is not None
        assert result.p_value < 0.05
        assert result.is_significant is True
        assert result.ci_lower > 0

    def test_below_min_sample_size_is_skipped(self) -> None:
        result = two_proportion_z_test(2, 20, 4, 20, min_sample_size=30)

        assert result.is_significant is False
        assert result.p_value is None
        assert result.z_score is None
        assert (result.ci_lower, result.ci_upper) == (0.0, 0.0)

    def test_zero_standard_error_is_skipped(self) -> None:
        result = two_proportion_z_test(0, 500, 0, 500)

        assert result.p_value is None
        assert result.is_significant is False

    def test_all_converted_is_skipped(self) -> None:
        result = two_proportion_z_test(100, 100, 100, 100)

        assert result.p_value is None

    def test_results_are_finite(self) -> None:
        result = two_proportion_z_test(1, 10_000, 9_999, 10_000)

        assert result.p_value is not None
        assert math.isfinite(result.z_score)
        assert 0.0 <= result.p_value <= 1.0


class TestAnalyze:
    """Tests for per-variant rates, comparisons and leader selection."""

    def test_significant_challenger_leads(self) -> None:
        control = _agg(1000, 50, is_control=True, name="control")
        challenger = _agg(1000, 70, name="challenger")

        variants, comparisons, leader = analyze([control, challenger], 0.90, 30)

        assert variants[0].conversion_rate == pytest.approx(0.05)
        assert variants[1].conversion_rate == pytest.approx(0.07)
        assert comparisons[0].is_significant is True
        assert comparisons[0].conversion_rate_lift == pytest.approx(40.0)
        assert leader == challenger.variant_id

    def test_small_samples_have_no_leader(self) -> None:
        control = _agg(20, 2, is_control=True)
        challenger = _agg(20, 4)

        _, comparisons, leader = analyze([control, challenger], 0.95, 30)

        assert comparisons[0].is_significant is False
        assert comparisons[0].p_value is None
        assert leader is None

    def test_significantly_worse_challenger_is_not_leader(self) -> None:
        control = _agg(1000, 100, is_control=True)
        challenger = _agg(1000, 50)

        _, comparisons, leader = analyze([control, challenger], 0.95, 30)

        assert comparisons[0].is_significant is True
        assert leader is None

    def test_leader_prefers_revenue_per_visitor(self) -> None:
        control = _agg(1000, 50, 500.0, is_control=True)
        high_revenue = _agg(1000, 100, 2000.0, name="high-revenue")
        high_conversion = _agg(1000, 120, 1500.0, name="high-conversion")

        _, _, leader = analyze([control, high_revenue, high_conversion], 0.95, 30)

        assert leader == high_revenue.variant_id

    def test_leader_tie_breaks_on_conversion_then_id(self) -> None:
        control = _agg(1000, 50, 500.0, is_control=True)
        higher_cr = _agg(1000, 110, 1000.0, name="higher-cr")
        lower_cr = _agg(1000, 100, 1000.0, name="lower-cr")
        assert analyze([control, lower_cr, higher_cr], 0.95, 30)[2] == higher_cr.variant_id

        first = _agg(1000, 100, 1000.0, variant_id=uuid.UUID(int=1))
        second = _agg(1000, 100, 1000.0, variant_id=uuid.UUID(int=2))
        assert analyze([control, second, first], 0.95, 30)[2] == uuid.UUID(int=1)

    def test_output_is_deterministic(self) -> None:
        aggregates = [
            _agg(1234, 61, 4321.5, is_control=True, variant_id=uuid.UUID(int=10)),
            _agg(1301, 88, 5012.25, variant_id=uuid.UUID(int=11)),
        ]

        first = analyze(aggregates, 0.95, 30)
        second = analyze(list(aggregates), 0.95, 30)

        assert first == second

    def test_empty_input(self) -> None:
        assert analyze([], 0.95, 30) == ([], [], None)


class TestStatisticsService:
    """Tests for StatisticsService.compute_results."""

    @pytest.fixture
    def experiment(self, make_experiment: Callable[..., Experiment]) -> Experiment:
        return make_experiment(
            arms=[
                {"name": "control", "traffic_pct": 0.5, "visitors": 2000, "conversions": 100},
                {"name": "treatment", "traffic_pct": 0.5, "visitors": 2000, "conversions": 140},
            ]
        )

    @pytest.fixture
    def service(
        self, mock_session: AsyncMock, mock_repo: AsyncMock, settings: Settings
    ) -> StatisticsService:
        service = StatisticsService(mock_session, settings=settings)
        service._repo = mock_repo
        return service

    @pytest.mark.asyncio
    async def test_counters_path(
        self, service: StatisticsService, mock_repo: AsyncMock, experiment: Experiment
    ) -> None:
        mock_repo.get_by_id.return_value = experiment
        mock_repo.get_variants.return_value = list(reversed(experiment.variants))

        results = await service.compute_results(experiment.id)

        assert results.source == "counters"
        assert results.variants[0].is_control is True
        assert results.leader_variant_id == experiment.variants[1].id
        mock_repo.aggregate_events.assert_not_called()

    @pytest.mark.asyncio
    async def test_unbounded_window_uses_counters(
        self, service: StatisticsService, mock_repo: AsyncMock, experiment: Experiment
    ) -> None:
        mock_repo.get_by_id.return_value = experiment
        mock_repo.get_variants.return_value = experiment.variants

        results = await service.compute_results(experiment.id, ReportingWindow())

        assert results.source == "counters"
        assert results.window is None

    @pytest.mark.asyncio
    async def test_bounded_window_scans_events(
        self, service: StatisticsService, mock_repo: AsyncMock, experiment: Experiment
    ) -> None:
        control, treatment = experiment.variants
        start = datetime(2026, 1, 1, tzinfo=UTC)
        window = ReportingWindow(start=start, end=start + timedelta(days=7))
        mock_repo.get_by_id.return_value = experiment
        mock_repo.get_variants.return_value = experiment.variants
        mock_repo.aggregate_events.return_value = [(treatment.id, 40, 4, 120.0)]

        results = await service.compute_results(experiment.id, window)

        mock_repo.aggregate_events.assert_awaited_once_with(
            experiment.id, window.start, window.end
        )
        assert results.source == "events"
        assert results.variants[0].visitors == 0
        assert results.variants[1].visitors == 40
        assert results.variants[1].revenue_per_visitor == pytest.approx(3.0)
        assert results.comparisons[0].p_value is None

    @pytest.mark.asyncio
    async def test_unknown_experiment(
        self, service: StatisticsService, mock_repo: AsyncMock
    ) -> None:
        mock_repo.get_by_id.return_value = None

        with pytest.raises(NotFoundError):
            await service.compute_results(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_cache_hit_skips_store(
        self,
        mock_session: AsyncMock,
        mock_repo: AsyncMock,
        settings: Settings,
        experiment: Experiment,
    ) -> None:
        cache = AsyncMock()
        service = StatisticsService(mock_session, settings=settings, cache=cache)
        service._repo = mock_repo
        mock_repo.get_by_id.return_value = experiment
        mock_repo.get_variants.return_value = experiment.variants
        cache.get.return_value = None

        fresh = await service.compute_results(experiment.id)
        cache.set.assert_awaited_once_with(fresh, None)

        cache.get.return_value = fresh
        mock_repo.get_variants.reset_mock()
        cached = await service.compute_results(experiment.id)

        assert cached == fresh
        mock_repo.get_variants.assert_not_called()
