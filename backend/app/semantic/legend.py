"""
Quantile Legend Builder
=======================

Choropleth legend for one metric: percentile breakpoints plus the number of
locations falling in each bucket.

ALGORITHM
---------
1. One statistics query over the scope (non-null metric values only):
   min, max, median, count, and percentile_cont(i/N) for i = 1..N-1.
2. boundaries = [min, break_1, ..., break_{N-1}, max]
3. One count query per bucket [boundaries[i], boundaries[i+1]]:

       value >= lower AND value <  upper     (every bucket but the last)
       value >= lower AND value <= upper     (last bucket)

   The last bucket is closed so the maximum observed value is counted;
   with this rule the bucket counts always add up to stats.count.

The bucket queries are independent reads; they run concurrently, bounded by
an asyncio.Semaphore (LEGEND_MAX_CONCURRENCY). The first failing bucket
cancels the others and its error propagates: a bucket is never reported as
0 because its query failed.

DATA SOURCES
------------
- SqlLegendSource: PostgreSQL rollups, native percentile_cont, PostGIS bbox
- InMemoryLegendSource: rows already loaded, manual percentile equivalent

RELATED FILES
-------------
- app/semantic/statistics.py: percentile_cont, quantile_fractions
- app/semantic/rollups.py: select_rollup
- app/config.py: LEGEND_MAX_CONCURRENCY, LEGEND_DEFAULT_BUCKETS
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field as dataclass_field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import Integer, Numeric, cast, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.sql.expression import ColumnElement, Select

from app.config import get_settings
from app.models import GEOMETRY_TABLES, LevelEnum, PropertyTypeEnum, RelationFamily, TimeGrainEnum
from app.semantic.errors import DataAccessError, InvalidParameter, UnknownField
from app.semantic.model import LATEST_YEAR
from app.semantic.query import FilterState
from app.semantic.registry import REGISTRY
from app.semantic.rollups import Relation, select_rollup
from app.semantic.statistics import percentile_cont, quantile_fractions

logger = logging.getLogger(__name__)

MIN_BUCKETS = 2
MAX_BUCKETS = 50
SRID = 4326


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass
class LegendScope:
    """
    Where the legend is computed.

    PARAMETERS:
        level / property_type: Select the rollup
        year: Year filter
        month: Optional month; month grain iff set
        insee_code: Restricts a section-level legend to one commune
        bbox: (min_lng, min_lat, max_lng, max_lat) in EPSG:4326
    """
    level: LevelEnum = LevelEnum.commune
    property_type: PropertyTypeEnum = PropertyTypeEnum.apartment
    year: int = LATEST_YEAR
    month: Optional[int] = None
    insee_code: Optional[str] = None
    bbox: Optional[Tuple[float, float, float, float]] = None

    def __post_init__(self):
        self.level = LevelEnum(self.level)
        self.property_type = PropertyTypeEnum(self.property_type)
        if self.bbox is not None:
            if len(self.bbox) != 4:
                raise InvalidParameter(
                    message="bbox must be [minLng, minLat, maxLng, maxLat]",
                    field_name="bbox",
                )
            self.bbox = tuple(float(v) for v in self.bbox)

    @property
    def time_grain(self) -> TimeGrainEnum:
        return TimeGrainEnum.month if self.month is not None else TimeGrainEnum.year

    @classmethod
    def from_filter_state(
        cls,
        state: FilterState,
        bbox: Optional[Sequence[float]] = None,
        insee_code: Optional[str] = None,
    ) -> "LegendScope":
        return cls(
            level=state.level,
            property_type=state.property_type,
            year=state.year,
            month=state.month,
            insee_code=insee_code,
            bbox=tuple(bbox) if bbox is not None else None,
        )


@dataclass
class LegendStats:
    min: Optional[float]
    max: Optional[float]
    median: Optional[float]
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return {"min": self.min, "max": self.max, "median": self.median, "count": self.count}


@dataclass
class LegendBucket:
    min: Optional[float]
    max: Optional[float]
    label: str
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return {"min": self.min, "max": self.max, "label": self.label, "count": self.count}


@dataclass
class Legend:
    """Legend response: `{field, method, buckets, breaks, stats}`."""
    field: str
    stats: LegendStats
    breaks: List[float] = dataclass_field(default_factory=list)
    buckets: List[LegendBucket] = dataclass_field(default_factory=list)
    method: str = "quantile"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "method": self.method,
            "buckets": [b.to_dict() for b in self.buckets],
            "breaks": list(self.breaks),
            "stats": self.stats.to_dict(),
        }


# =============================================================================
# BUCKET SEMANTICS
# =============================================================================

def _format_number(value: float) -> str:
    if float(value).is_integer():
        return f"{int(value):,}"
    return f"{value:,.3f}".rstrip("0").rstrip(".")


def format_bucket_label(lower: Optional[float], upper: Optional[float]) -> str:
    """'min - max', '≤ max' without a lower bound, '> min' without an upper bound."""
    if lower is None and upper is None:
        return "No data"
    if lower is None:
        return f"≤ {_format_number(upper)}"
    if upper is None:
        return f"> {_format_number(lower)}"
    return f"{_format_number(lower)} - {_format_number(upper)}"


def bucket_ranges(boundaries: Sequence[Optional[float]]) -> List[Tuple[Optional[float], Optional[float], bool]]:
    """(lower, upper, is_last) for each consecutive pair of boundaries."""
    last_index = len(boundaries) - 2
    return [(boundaries[i], boundaries[i + 1], i == last_index) for i in range(len(boundaries) - 1)]


def value_in_bucket(value: float, lower: Optional[float], upper: Optional[float], is_last: bool) -> bool:
    """Bucket membership; only the last bucket includes its upper bound."""
    if lower is not None and value < lower:
        return False
    if upper is not None:
        return value <= upper if is_last else value < upper
    return True


def bucket_predicate(
    column: ColumnElement,
    lower: Optional[float],
    upper: Optional[float],
    is_last: bool,
) -> List[ColumnElement]:
    """SQL form of value_in_bucket; compared as numeric so integer columns match float bounds."""
    value = cast(column, Numeric)
    clauses = []
    if lower is not None:
        clauses.append(value >= lower)
    if upper is not None:
        clauses.append(value <= upper if is_last else value < upper)
    return clauses


def _to_number(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return float(value)
    return value


# =============================================================================
# DATA SOURCES
# =============================================================================

class LegendSource(ABC):
    """Read-only access to the metric values of a scope."""

    @abstractmethod
    async def fetch_stats(
        self, scope: LegendScope, field: str, fractions: Sequence[float]
    ) -> Tuple[LegendStats, List[float]]:
        """Return stats and the non-null percentile breaks at fractions."""

    @abstractmethod
    async def count_bucket(
        self,
        scope: LegendScope,
        field: str,
        lower: Optional[float],
        upper: Optional[float],
        is_last: bool,
    ) -> int:
        """Count non-null values of field falling in one bucket."""


def _metric_column(relation: Relation, field: str) -> ColumnElement:
    descriptor = REGISTRY.resolve(field, RelationFamily.rollup)
    if descriptor.kind not in ("metric", "composition"):
        raise UnknownField(
            message=f"Legend requires a metric field, got {field!r}",
            field_name=field,
        )
    return REGISTRY.column(relation.table, field, RelationFamily.rollup)


def _scope(scope: LegendScope, field: str) -> Tuple[Any, List[ColumnElement], ColumnElement]:
    """(from clause, WHERE conditions, metric column) for a scope."""
    relation = select_rollup(scope.level, scope.property_type, scope.time_grain)
    table = relation.table
    metric = _metric_column(relation, field)

    conditions = [REGISTRY.column(table, "year") == scope.year, metric.is_not(None)]
    if scope.month is not None:
        conditions.append(REGISTRY.column(table, "month") == scope.month)
    if scope.level == LevelEnum.section and scope.insee_code:
        conditions.append(REGISTRY.column(table, "inseeCode") == scope.insee_code)

    source = table
    if scope.bbox is not None:
        geometry = GEOMETRY_TABLES[scope.level]
        key = "section" if scope.level == LevelEnum.section else "insee_code"
        source = table.join(geometry, geometry.c[key] == table.c[key])
        envelope = func.ST_MakeEnvelope(*scope.bbox, SRID)
        conditions.append(func.ST_Intersects(geometry.c.geom, envelope))

    return source, conditions, metric


def build_legend_stats_statement(scope: LegendScope, field: str, fractions: Sequence[float]) -> Select:
    """min, max, median, count and one percentile_cont per fraction."""
    source, conditions, metric = _scope(scope, field)
    columns = [
        func.min(metric).label("min"),
        func.max(metric).label("max"),
        func.percentile_cont(0.5).within_group(metric).label("median"),
        cast(func.count(metric), Integer).label("count"),
    ]
    columns += [
        func.percentile_cont(fraction).within_group(metric).label(f"break_{i}")
        for i, fraction in enumerate(fractions, start=1)
    ]
    return select(*columns).select_from(source).where(*conditions)


def build_bucket_count_statement(
    scope: LegendScope,
    field: str,
    lower: Optional[float],
    upper: Optional[float],
    is_last: bool,
) -> Select:
    """count(metric) over the scope restricted to one bucket."""
    source, conditions, metric = _scope(scope, field)
    conditions += bucket_predicate(metric, lower, upper, is_last)
    return select(cast(func.count(metric), Integer).label("count")).select_from(source).where(*conditions)


class SqlLegendSource(LegendSource):
    """
    Legend source backed by the async engine.

    Each query opens its own AsyncSession so bucket counts can run
    concurrently; SQLAlchemy errors become DataAccessError.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def _execute(self, statement: Select):
        try:
            async with self._session_factory() as session:
                result = await session.execute(statement)
                return result.mappings().one()
        except SQLAlchemyError as e:
            logger.error(f"[LEGEND] Query failed: {e}")
            raise DataAccessError(message=f"Legend query failed: {e}") from e

    async def fetch_stats(self, scope, field, fractions):
        row = await self._execute(build_legend_stats_statement(scope, field, fractions))
        stats = LegendStats(
            min=_to_number(row["min"]),
            max=_to_number(row["max"]),
            median=_to_number(row["median"]),
            count=row["count"] or 0,
        )
        breaks = [_to_number(row[f"break_{i}"]) for i in range(1, len(fractions) + 1)]
        return stats, [b for b in breaks if b is not None]

    async def count_bucket(self, scope, field, lower, upper, is_last):
        row = await self._execute(build_bucket_count_statement(scope, field, lower, upper, is_last))
        return row["count"] or 0


class InMemoryLegendSource(LegendSource):
    """
    Legend source over already-loaded rollup rows (mappings keyed by column).

    Applies the same scope filters as the SQL source; bbox scoping needs a
    spatial store and is rejected.
    """

    def __init__(self, rows: Iterable[Mapping[str, Any]]):
        self._rows = list(rows)

    def _values(self, scope: LegendScope, field: str) -> List[float]:
        if scope.bbox is not None:
            raise InvalidParameter(
                message="bbox scoping requires a spatial store",
                field_name="bbox",
            )
        relation = select_rollup(scope.level, scope.property_type, scope.time_grain)
        column = _metric_column(relation, field).name
        values = []
        for row in self._rows:
            if row.get("year") != scope.year:
                continue
            if scope.month is not None and row.get("month") != scope.month:
                continue
            if scope.level == LevelEnum.section and scope.insee_code and row.get("insee_code") != scope.insee_code:
                continue
            value = row.get(column)
            if value is not None:
                values.append(_to_number(value))
        return values

    async def fetch_stats(self, scope, field, fractions):
        values = self._values(scope, field)
        stats = LegendStats(
            min=min(values) if values else None,
            max=max(values) if values else None,
            median=percentile_cont(values, 0.5),
            count=len(values),
        )
        breaks = [percentile_cont(values, fraction) for fraction in fractions]
        return stats, [b for b in breaks if b is not None]

    async def count_bucket(self, scope, field, lower, upper, is_last):
        return sum(1 for v in self._values(scope, field) if value_in_bucket(v, lower, upper, is_last))


# =============================================================================
# BUILDER
# =============================================================================

class QuantileLegendBuilder:
    """
    Computes quantile legends against a LegendSource.

    USAGE:
        builder = QuantileLegendBuilder(SqlLegendSource(AsyncSessionLocal))
        legend = await builder.compute("avg_price_m2", 10, LegendScope(year=2024))
        legend.to_dict()
    """

    def __init__(self, source: LegendSource, max_concurrency: Optional[int] = None):
        settings = get_settings()
        self._source = source
        self._max_concurrency = max_concurrency or settings.LEGEND_MAX_CONCURRENCY
        self._default_buckets = settings.LEGEND_DEFAULT_BUCKETS

    async def compute(
        self,
        field: str,
        buckets_count: Optional[int] = None,
        scope: Optional[LegendScope] = None,
    ) -> Legend:
        buckets_count = buckets_count if buckets_count is not None else self._default_buckets
        if not isinstance(buckets_count, int) or not MIN_BUCKETS <= buckets_count <= MAX_BUCKETS:
            raise InvalidParameter(
                message=f"bucketsCount must be an integer within [{MIN_BUCKETS}, {MAX_BUCKETS}]",
                field_name="bucketsCount",
                details={"value": repr(buckets_count)},
            )
        scope = scope or LegendScope()

        stats, breaks = await self._source.fetch_stats(scope, field, quantile_fractions(buckets_count))
        boundaries = [stats.min, *breaks, stats.max]
        ranges = bucket_ranges(boundaries)
        counts = await self._count_buckets(scope, field, ranges)

        buckets = [
            LegendBucket(min=lower, max=upper, label=format_bucket_label(lower, upper), count=count)
            for (lower, upper, _), count in zip(ranges, counts)
        ]
        logger.info(
            f"[LEGEND] {field} {scope.level.value}/{scope.property_type.value} {scope.year}: "
            f"{len(buckets)} bucket(s), {stats.count} value(s)"
        )
        return Legend(field=field, stats=stats, breaks=breaks, buckets=buckets)

    async def _count_buckets(
        self,
        scope: LegendScope,
        field: str,
        ranges: Sequence[Tuple[Optional[float], Optional[float], bool]],
    ) -> List[int]:
        """Fan out one count per bucket under the semaphore; first error wins."""
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def count_one(lower, upper, is_last) -> int:
            async with semaphore:
                return await self._source.count_bucket(scope, field, lower, upper, is_last)

        tasks = [asyncio.ensure_future(count_one(*r)) for r in ranges]
        try:
            return list(await asyncio.gather(*tasks))
        except Exception:
            for task in tasks:
                task.cancel()
            # Wait for cancelled tasks to unwind before re-raising
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
