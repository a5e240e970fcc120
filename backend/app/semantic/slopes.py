"""
Slope Window Builder
====================

Per-location regression slope of every metric over the latest calendar year.

WINDOW SEMANTICS
----------------
For each location (commune, or commune + section), keep only the monthly
rows whose `year` equals the maximum year observed for that location, and
regress each metric against the time ordinal `year * 12 + month` over
exactly those rows:

    window_months      = number of rows kept (1..12)
    window_start_year  = that maximum year
    window_start_month = earliest month kept
    year / month       = latest row kept
    {m}_slope          = OLS slope rounded to 6 decimals,
                         NULL when undefined (single point, zero variance)

This is a latest-calendar-year window, NOT a rolling 12-month window: a
location whose latest year has only January data gets window_months = 1
and null slopes even if the previous December exists.

RELATED FILES
-------------
- app/semantic/statistics.py: ols_slope
- app/semantic/rollups.py: select_rollup, select_slope_relation
- app/semantic/executor.py: fetch_slopes
"""

import logging
from dataclasses import dataclass, field as dataclass_field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import Float, Integer, Numeric, and_, cast, func, select
from sqlalchemy.sql.expression import Select

from app.models import LevelEnum, RelationFamily, TimeGrainEnum
from app.semantic.compiler import compile_filters, compile_sort
from app.semantic.errors import UnsupportedCombination
from app.semantic.model import DIMENSIONS, METRIC_FIELDS
from app.semantic.query import FilterPredicate, SlopeParams, SortSpec
from app.semantic.rollups import Relation, select_slope_relation
from app.semantic.statistics import ols_slope

logger = logging.getLogger(__name__)

SLOPE_PRECISION = 6


def time_ordinal(year: int, month: int) -> int:
    """Monthly time axis used as the regression's x."""
    return year * 12 + month


# =============================================================================
# RESULT DATA STRUCTURES
# =============================================================================

@dataclass
class SlopeRow:
    """One location's latest-year window and per-metric slopes."""
    insee_code: str
    year: Optional[int]
    month: Optional[int]
    window_months: int
    window_start_year: Optional[int]
    window_start_month: Optional[int]
    section: Optional[str] = None
    slopes: Dict[str, Optional[float]] = dataclass_field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"inseeCode": self.insee_code}
        if self.section is not None:
            result["section"] = self.section
        result.update(
            year=self.year,
            month=self.month,
            window_months=self.window_months,
            window_start_year=self.window_start_year,
            window_start_month=self.window_start_month,
        )
        for name, slope in self.slopes.items():
            result[f"{name}_slope"] = slope
        return result


def slope_row_from_mapping(row: Mapping[str, Any], relation: Relation) -> SlopeRow:
    """Build a SlopeRow from a row of a slope relation."""
    fields = METRIC_FIELDS + relation.composition_fields
    return SlopeRow(
        insee_code=row["insee_code"],
        section=row.get("section") if relation.level == LevelEnum.section else None,
        year=row["year"],
        month=row["month"],
        window_months=row["window_months"],
        window_start_year=row["window_start_year"],
        window_start_month=row["window_start_month"],
        slopes={name: row.get(f"{name}_slope") for name in fields if f"{name}_slope" in row},
    )


# =============================================================================
# MANUAL BUILDER
# =============================================================================

def compute_slope_rows(
    rows: Iterable[Mapping[str, Any]],
    level: LevelEnum = LevelEnum.commune,
    fields: Sequence[str] = METRIC_FIELDS,
) -> List[SlopeRow]:
    """
    Compute slope rows from monthly rollup rows, in Python.

    Reproduces build_slope_statement exactly for stores without regr_slope.
    Output is ordered by location key.
    """
    level = LevelEnum(level)
    key_columns: Tuple[str, ...] = ("insee_code", "section") if level == LevelEnum.section else ("insee_code",)

    groups: Dict[Tuple[Any, ...], List[Mapping[str, Any]]] = {}
    for row in rows:
        groups.setdefault(tuple(row[k] for k in key_columns), []).append(row)

    results = []
    for key in sorted(groups):
        group = groups[key]
        latest_year = max(r["year"] for r in group)
        window = [r for r in group if r["year"] == latest_year]
        months = [r["month"] for r in window]
        slopes = {}
        for name in fields:
            slope = ols_slope([(time_ordinal(r["year"], r["month"]), r.get(name)) for r in window])
            slopes[name] = round(slope, SLOPE_PRECISION) if slope is not None else None
        results.append(
            SlopeRow(
                insee_code=key[0],
                section=key[1] if level == LevelEnum.section else None,
                year=latest_year,
                month=max(months),
                window_months=len(window),
                window_start_year=latest_year,
                window_start_month=min(months),
                slopes=slopes,
            )
        )
    logger.debug(f"[SLOPES] {len(results)} location(s) from monthly rows")
    return results


# =============================================================================
# STATEMENTS
# =============================================================================

def build_slope_statement(monthly: Relation) -> Select:
    """
    SQL equivalent of the slope relation, derived from a monthly rollup.

    The latest year is taken per location (joined subquery), then
    `regr_slope(metric, year * 12 + month)` runs over that year's rows only.
    """
    if monthly.family != RelationFamily.rollup or monthly.grain != TimeGrainEnum.month:
        raise UnsupportedCombination(
            message=f"Slopes are derived from a monthly rollup, got {monthly.name}",
            details={"relation": monthly.name},
        )
    table = monthly.table
    keys = [table.c[DIMENSIONS[f].column] for f in monthly.key_fields]

    latest = (
        select(*keys, func.max(table.c.year).label("latest_year"))
        .group_by(*keys)
        .subquery("latest")
    )
    join_on = and_(*[key == latest.c[key.name] for key in keys])
    ordinal = cast(table.c.year * 12 + table.c.month, Float)

    columns = list(keys)
    columns += [
        func.max(table.c.year).label("year"),
        func.max(table.c.month).label("month"),
        cast(func.count(), Integer).label("window_months"),
        func.max(latest.c.latest_year).label("window_start_year"),
        func.min(table.c.month).label("window_start_month"),
    ]
    for name in METRIC_FIELDS + monthly.composition_fields:
        slope = func.regr_slope(cast(table.c[name], Float), ordinal)
        columns.append(
            cast(func.round(cast(slope, Numeric), SLOPE_PRECISION), Float).label(f"{name}_slope")
        )

    return (
        select(*columns)
        .select_from(table.join(latest, join_on))
        .where(table.c.year == latest.c.latest_year)
        .group_by(*keys)
    )


def build_slope_select(params: SlopeParams) -> Select:
    """Filtered, sorted, paginated read of the slope relation for params."""
    relation = select_slope_relation(params.level, params.property_type)
    table = relation.table

    predicates: List[FilterPredicate] = []
    if params.insee_codes:
        predicates.append(FilterPredicate(field="inseeCode", operator="in", value=params.insee_codes))
    if params.sections:
        predicates.append(FilterPredicate(field="section", operator="in", value=params.sections))

    ordering = compile_sort(
        [SortSpec(field=params.sort_by, direction=params.sort_order), SortSpec(field=relation.location_field)],
        table,
        RelationFamily.slope,
    )
    statement = select(table)
    where = compile_filters(predicates, table, RelationFamily.slope)
    if where is not None:
        statement = statement.where(where)
    logger.debug(f"[SLOPES] Read {relation.name} sorted by {params.sort_by} {params.sort_order}")
    return statement.order_by(*ordering).limit(params.limit).offset(params.offset)
