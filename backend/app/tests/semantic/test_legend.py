"""Unit tests for the quantile legend builder.

WHAT: Bucket semantics, legend statements, SQL/in-memory sources, fan-out
WHY: Bucket counts must add up to stats.count (closed last bucket), and a
     failing bucket query must fail the legend instead of reporting 0

REFERENCES:
    app/semantic/legend.py
    app/semantic/statistics.py
"""

import asyncio
import random
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from app.semantic.errors import DataAccessError, InvalidParameter, UnknownField
from app.semantic.legend import (
    InMemoryLegendSource,
    LegendScope,
    LegendSource,
    LegendStats,
    QuantileLegendBuilder,
    SqlLegendSource,
    bucket_ranges,
    build_bucket_count_statement,
    build_legend_stats_statement,
    format_bucket_label,
    value_in_bucket,
)
from app.semantic.query import FilterState


def _commune_rows(values, year=2024, field="avg_price_m2"):
    return [{"insee_code": f"{75100 + i}", "year": year, field: v} for i, v in enumerate(values)]


# Skewed distribution with a repeated maximum
PRICES = [1200.0, 1500.0, 1800.0, 2100.0, 2500.0, 3000.0, 3400.0, 4100.0, 5200.0, 7800.0, 9900.0, 9900.0]


# =============================================================================
# BUCKET SEMANTICS
# =============================================================================

class TestBucketSemantics:
    """Half-open buckets, closed last bucket."""

    def test_ranges_mark_only_last(self):
        assert bucket_ranges([0, 10, 20, 30]) == [(0, 10, False), (10, 20, False), (20, 30, True)]

    def test_boundary_value_goes_to_upper_bucket(self):
        assert not value_in_bucket(10, 0, 10, False)
        assert value_in_bucket(10, 10, 20, False)

    def test_last_bucket_includes_max(self):
        assert value_in_bucket(30, 20, 30, True)
        assert not value_in_bucket(30.5, 20, 30, True)

    @pytest.mark.parametrize(
        "lower,upper,expected",
        [
            (1000, 2500.5, "1,000 - 2,500.5"),
            (None, 5, "≤ 5"),
            (5, None, "> 5"),
            (None, None, "No data"),
            (0.1234, 0.5, "0.123 - 0.5"),
        ],
    )
    def test_labels(self, lower, upper, expected):
        assert format_bucket_label(lower, upper) == expected


class TestLegendScope:
    def test_bbox_must_have_four_numbers(self):
        with pytest.raises(InvalidParameter):
            LegendScope(bbox=(2.2, 48.8, 2.4))

    def test_from_filter_state(self):
        state = FilterState(level="section", property_type="house", year=2022, month=5)
        scope = LegendScope.from_filter_state(state, bbox=[2.2, 48.8, 2.4, 48.9], insee_code="75112")
        assert scope.level.value == "section"
        assert scope.property_type.value == "house"
        assert scope.time_grain.value == "month"
        assert scope.bbox == (2.2, 48.8, 2.4, 48.9)
        assert scope.insee_code == "75112"


# =============================================================================
# STATEMENTS
# =============================================================================

class TestLegendStatements:
    def test_stats_statement(self, render_pg):
        sql = render_pg(build_legend_stats_statement(LegendScope(year=2023), "avg_price_m2", [0.25, 0.5, 0.75]))
        assert "percentile_cont(0.5) WITHIN GROUP (ORDER BY apartments_by_insee_code_year.avg_price_m2) AS median" in sql
        assert "AS break_3" in sql
        assert "AS break_4" not in sql
        assert "apartments_by_insee_code_year.year = 2023" in sql
        assert "apartments_by_insee_code_year.avg_price_m2 IS NOT NULL" in sql

    def test_month_scope_uses_monthly_rollup(self, render_pg):
        sql = render_pg(build_legend_stats_statement(LegendScope(month=4), "total_sales", []))
        assert "FROM apartments_by_insee_code_month" in sql
        assert "apartments_by_insee_code_month.month = 4" in sql

    def test_insee_code_applies_at_section_level(self, render_pg):
        section = render_pg(build_legend_stats_statement(LegendScope(level="section", insee_code="75112"), "total_sales", []))
        commune = render_pg(build_legend_stats_statement(LegendScope(insee_code="75112"), "total_sales", []))
        assert "apartments_by_section_year.insee_code = '75112'" in section
        assert "'75112'" not in commune

    def test_bbox_joins_geometry(self, render_pg):
        scope = LegendScope(bbox=(2.2, 48.8, 2.4, 48.9))
        sql = render_pg(build_legend_stats_statement(scope, "avg_price_m2", [0.5]))
        assert "JOIN communes_geom ON" in sql
        assert "ST_Intersects(communes_geom.geom, ST_MakeEnvelope(2.2, 48.8, 2.4, 48.9, 4326))" in sql

    def test_bucket_statement_bounds(self, render_pg):
        inner = render_pg(build_bucket_count_statement(LegendScope(), "avg_price_m2", 1000, 2000, False))
        last = render_pg(build_bucket_count_statement(LegendScope(), "avg_price_m2", 1000, 2000, True))
        assert "AS NUMERIC) >= 1000" in inner
        assert "AS NUMERIC) < 2000" in inner
        assert "AS NUMERIC) <= 2000" in last

    def test_non_metric_field(self):
        with pytest.raises(UnknownField):
            build_legend_stats_statement(LegendScope(), "year", [0.5])


# =============================================================================
# BUILDER
# =============================================================================

class TestQuantileLegendBuilder:
    """End-to-end over the in-memory source."""

    @pytest.mark.asyncio
    async def test_counts_add_up(self):
        builder = QuantileLegendBuilder(InMemoryLegendSource(_commune_rows(PRICES)))
        legend = await builder.compute("avg_price_m2", 4)

        assert len(legend.breaks) == 3
        assert legend.breaks == sorted(legend.breaks)
        assert len(legend.buckets) == 4
        assert sum(b.count for b in legend.buckets) == legend.stats.count == len(PRICES)
        assert legend.buckets[-1].max == 9900.0
        assert legend.buckets[-1].count >= 2
        assert legend.stats.min == 1200.0
        assert legend.stats.median == pytest.approx(3200.0)

    @pytest.mark.asyncio
    async def test_payload_shape(self):
        builder = QuantileLegendBuilder(InMemoryLegendSource(_commune_rows(PRICES)))
        payload = (await builder.compute("avg_price_m2", 3)).to_dict()
        assert set(payload) == {"field", "method", "buckets", "breaks", "stats"}
        assert payload["method"] == "quantile"
        assert set(payload["buckets"][0]) == {"min", "max", "label", "count"}

    @pytest.mark.asyncio
    async def test_scope_filters_rows(self):
        rows = _commune_rows([100.0, 200.0], year=2023) + _commune_rows([5.0, 6.0, 7.0], year=2024)
        legend = await QuantileLegendBuilder(InMemoryLegendSource(rows)).compute(
            "avg_price_m2", 2, LegendScope(year=2023)
        )
        assert legend.stats.count == 2
        assert legend.stats.max == 200.0

    @pytest.mark.asyncio
    async def test_empty_scope(self):
        legend = await QuantileLegendBuilder(InMemoryLegendSource([])).compute("avg_price_m2", 5)
        assert legend.stats.count == 0
        assert legend.breaks == []
        assert [b.to_dict() for b in legend.buckets] == [{"min": None, "max": None, "label": "No data", "count": 0}]

    @pytest.mark.asyncio
    async def test_single_distinct_value(self):
        legend = await QuantileLegendBuilder(InMemoryLegendSource(_commune_rows([50.0] * 4))).compute("avg_price_m2", 3)
        assert sum(b.count for b in legend.buckets) == 4
        assert legend.buckets[-1].count == 4

    @pytest.mark.asyncio
    async def test_default_bucket_count(self):
        legend = await QuantileLegendBuilder(InMemoryLegendSource(_commune_rows(PRICES))).compute("avg_price_m2")
        assert len(legend.buckets) == 10

    @pytest.mark.asyncio
    @pytest.mark.parametrize("buckets_count", [1, 51, "5", 2.5])
    async def test_invalid_bucket_count(self, buckets_count):
        builder = QuantileLegendBuilder(InMemoryLegendSource(_commune_rows(PRICES)))
        with pytest.raises(InvalidParameter):
            await builder.compute("avg_price_m2", buckets_count)

    @pytest.mark.asyncio
    async def test_unknown_field(self):
        builder = QuantileLegendBuilder(InMemoryLegendSource(_commune_rows(PRICES)))
        with pytest.raises(UnknownField):
            await builder.compute("price", 4)

    @pytest.mark.asyncio
    async def test_bbox_rejected_in_memory(self):
        builder = QuantileLegendBuilder(InMemoryLegendSource(_commune_rows(PRICES)))
        with pytest.raises(InvalidParameter):
            await builder.compute("avg_price_m2", 4, LegendScope(bbox=(0, 0, 1, 1)))


def _dataset(seed):
    """Values drawn from a small pool so ties and a repeated maximum are common."""
    rng = random.Random(seed)
    pool = [rng.choice([500.0, 1250.5, 3000.0, 3000.0, 7200.25, 12000.0]) for _ in range(rng.randint(1, 40))]
    return pool + [rng.uniform(100, 15000) for _ in range(rng.randint(0, 40))]


class TestLegendInvariants:
    """Every bucket count from 2 to 50 over datasets with ties."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("buckets_count", range(2, 51))
    async def test_breaks_and_counts(self, buckets_count):
        for seed in range(5):
            values = _dataset(seed * 100 + buckets_count)
            legend = await QuantileLegendBuilder(InMemoryLegendSource(_commune_rows(values))).compute(
                "avg_price_m2", buckets_count
            )
            assert len(legend.breaks) == buckets_count - 1
            assert all(a <= b for a, b in zip(legend.breaks, legend.breaks[1:]))
            assert sum(b.count for b in legend.buckets) == legend.stats.count == len(values)
            assert legend.buckets[-1].max == max(values)
            assert legend.buckets[-1].count >= values.count(max(values))


class _TrackingSource(LegendSource):
    """Fixed stats; records how many bucket counts run at once."""

    def __init__(self, fail_on=None):
        self.in_flight = 0
        self.peak = 0
        self.completed = 0
        self.fail_on = fail_on

    async def fetch_stats(self, scope, field, fractions):
        breaks = [float(i) for i in range(1, len(fractions) + 1)]
        return LegendStats(min=0.0, max=float(len(fractions) + 1), median=1.0, count=100), breaks

    async def count_bucket(self, scope, field, lower, upper, is_last):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            if lower == self.fail_on:
                raise DataAccessError(message="bucket query failed")
            await asyncio.sleep(0.01)
            self.completed += 1
            return 10
        finally:
            self.in_flight -= 1


class TestBucketFanOut:
    """Bounded concurrency and first-error propagation."""

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        source = _TrackingSource()
        legend = await QuantileLegendBuilder(source, max_concurrency=3).compute("avg_price_m2", 10)
        assert [b.count for b in legend.buckets] == [10] * 10
        assert 1 < source.peak <= 3

    @pytest.mark.asyncio
    async def test_failure_propagates_and_cancels(self):
        source = _TrackingSource(fail_on=0.0)
        with pytest.raises(DataAccessError):
            await QuantileLegendBuilder(source, max_concurrency=2).compute("avg_price_m2", 10)
        assert source.completed < 10
        assert source.in_flight == 0


# =============================================================================
# SQL SOURCE
# =============================================================================

def _session_factory(session):
    factory = MagicMock()
    factory.return_value.__aenter__ = AsyncMock(return_value=session)
    factory.return_value.__aexit__ = AsyncMock(return_value=False)
    return factory


def _result(row):
    result = MagicMock()
    result.mappings.return_value.one.return_value = row
    return result


class TestSqlLegendSource:
    @pytest.mark.asyncio
    async def test_stats_convert_decimals(self):
        session = AsyncMock()
        session.execute.return_value = _result({
            "min": Decimal("10"), "max": Decimal("90"), "median": Decimal("50.5"), "count": 9,
            "break_1": Decimal("30"), "break_2": None,
        })
        stats, breaks = await SqlLegendSource(_session_factory(session)).fetch_stats(
            LegendScope(), "avg_price_m2", [1 / 3, 2 / 3]
        )
        assert stats.to_dict() == {"min": 10.0, "max": 90.0, "median": 50.5, "count": 9}
        assert breaks == [30.0]

    @pytest.mark.asyncio
    async def test_count_bucket(self):
        session = AsyncMock()
        session.execute.return_value = _result({"count": 7})
        count = await SqlLegendSource(_session_factory(session)).count_bucket(
            LegendScope(), "avg_price_m2", 1.0, 2.0, False
        )
        assert count == 7
        session.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_store_error_becomes_data_access_error(self):
        session = AsyncMock()
        session.execute.side_effect = OperationalError("SELECT 1", {}, Exception("connection lost"))
        source = SqlLegendSource(_session_factory(session))
        with pytest.raises(DataAccessError) as exc_info:
            await source.count_bucket(LegendScope(), "avg_price_m2", 1.0, 2.0, True)
        assert isinstance(exc_info.value.__cause__, OperationalError)
