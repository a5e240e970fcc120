"""
Delta Transformer (year-over-year)
==================================

Reshapes flat delta rows into nested per-metric records, and builds the
statements that read or derive them.

YOY SEMANTICS
-------------
For every metric `m` a delta relation stores `m_base, m_current, m_delta,
m_pct_change`:

    delta      = current - base
    pct_change = NULL                                   if base is NULL or 0
               = round(100 * (current - base) / base, 2) otherwise

Rows are produced by an INNER self join of the yearly rollup on the
location key with `current.year = base.year + 1`. A location without a
row for the previous year has no delta row at all (never null-padded).

ENTRY POINTS
------------
- transform_delta_row:    flat row -> DeltaRow (nested MetricDelta per metric)
- compute_yoy_deltas:     yearly rollup rows -> flat delta rows, in Python
- build_delta_statement:  the same join expressed in SQL, for stores that
                          do not materialize the delta relation
- build_delta_select:     filtered / sorted read of the delta relation

RELATED FILES
-------------
- app/semantic/statistics.py: delta / pct_change
- app/semantic/rollups.py: select_delta_relation, select_rollup
- app/semantic/executor.py: fetch_deltas
"""

import logging
from dataclasses import dataclass, field as dataclass_field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import Float, Numeric, and_, case, cast, func, or_, select
from sqlalchemy.sql.expression import Select

from app.models import LevelEnum, RelationFamily, TimeGrainEnum
from app.semantic.compiler import compile_filters, compile_sort
from app.semantic.errors import UnsupportedCombination
from app.semantic.model import DIMENSIONS, METRIC_FIELDS
from app.semantic.query import DeltaParams, FilterPredicate, SortSpec
from app.semantic.rollups import Relation, select_delta_relation
from app.semantic.statistics import delta, pct_change

logger = logging.getLogger(__name__)

# sortBy -> column suffix; rank has no stored column and ranks by pct_change
DELTA_SORT_SUFFIX: Dict[str, str] = {
    "pct_change": "pct_change",
    "delta": "delta",
    "current": "current",
    "base": "base",
    "rank": "pct_change",
}

# DeltaParams attribute -> (suffix, operator)
DELTA_FILTERS: Tuple[Tuple[str, str, str], ...] = (
    ("min_current", "current", "gte"),
    ("max_current", "current", "lte"),
    ("min_base", "base", "gte"),
    ("min_delta", "delta", "gte"),
    ("min_pct_change", "pct_change", "gte"),
)


# =============================================================================
# RESULT DATA STRUCTURES
# =============================================================================

@dataclass
class MetricDelta:
    """Year-over-year comparison of one metric. All values nullable."""
    base: Optional[float] = None
    current: Optional[float] = None
    delta: Optional[float] = None
    pct_change: Optional[float] = None

    def to_dict(self) -> Dict[str, Optional[float]]:
        return {
            "base": self.base,
            "current": self.current,
            "delta": self.delta,
            "pct_change": self.pct_change,
        }


@dataclass
class DeltaRow:
    """
    One location's deltas between base_year and year.

    EXAMPLE (to_dict):
        {"inseeCode": "75112", "year": 2024, "base_year": 2023,
         "total_sales": {"base": 100, "current": 120, "delta": 20, "pct_change": 20.0},
         ...,
         "apartments": {"total_apartments": {...}, ...}}
    """
    insee_code: str
    year: int
    base_year: int
    section: Optional[str] = None
    metrics: Dict[str, MetricDelta] = dataclass_field(default_factory=dict)
    composition_key: Optional[str] = None
    composition: Dict[str, MetricDelta] = dataclass_field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "inseeCode": self.insee_code,
            "year": self.year,
            "base_year": self.base_year,
        }
        if self.section is not None:
            result["section"] = self.section
        for name, metric_delta in self.metrics.items():
            result[name] = metric_delta.to_dict()
        if self.composition_key:
            result[self.composition_key] = {
                name: metric_delta.to_dict() for name, metric_delta in self.composition.items()
            }
        return result


# =============================================================================
# TRANSFORMER
# =============================================================================

def _metric_delta(row: Mapping[str, Any], name: str) -> MetricDelta:
    return MetricDelta(
        base=row.get(f"{name}_base"),
        current=row.get(f"{name}_current"),
        delta=row.get(f"{name}_delta"),
        pct_change=row.get(f"{name}_pct_change"),
    )


def transform_delta_row(row: Mapping[str, Any], relation: Relation) -> DeltaRow:
    """
    Reshape a flat `{m}_base|current|delta|pct_change` row into a DeltaRow.

    Composition deltas are nested under relation.composition_key when the
    row carries them.
    """
    carries_composition = any(f"{name}_current" in row for name in relation.composition_fields)
    return DeltaRow(
        insee_code=row["insee_code"],
        year=row["year"],
        base_year=row["base_year"],
        section=row.get("section") if relation.level == LevelEnum.section else None,
        metrics={name: _metric_delta(row, name) for name in METRIC_FIELDS},
        composition_key=relation.composition_key if carries_composition else None,
        composition={
            name: _metric_delta(row, name) for name in relation.composition_fields
        } if carries_composition else {},
    )


def compute_yoy_deltas(
    rows: Iterable[Mapping[str, Any]],
    key_columns: Sequence[str] = ("insee_code",),
    fields: Sequence[str] = METRIC_FIELDS,
) -> List[Dict[str, Any]]:
    """
    Derive flat delta rows from yearly rollup rows.

    Inner join on the key with a strict one-year lag: a (key, year) row
    yields a delta row only if (key, year - 1) exists. Output is ordered by
    key then year.
    """
    by_key_year: Dict[Tuple[Any, ...], Mapping[str, Any]] = {}
    for row in rows:
        by_key_year[tuple(row[k] for k in key_columns) + (row["year"],)] = row

    results = []
    for composite in sorted(by_key_year):
        *key, year = composite
        base_row = by_key_year.get(tuple(key) + (year - 1,))
        if base_row is None:
            continue
        current_row = by_key_year[composite]
        flat: Dict[str, Any] = dict(zip(key_columns, key))
        flat["year"] = year
        flat["base_year"] = year - 1
        for name in fields:
            base, current = base_row.get(name), current_row.get(name)
            flat[f"{name}_base"] = base
            flat[f"{name}_current"] = current
            flat[f"{name}_delta"] = delta(current, base)
            flat[f"{name}_pct_change"] = pct_change(current, base)
        results.append(flat)
    logger.debug(f"[DELTAS] {len(results)} delta row(s) from yearly rows")
    return results


# =============================================================================
# STATEMENTS
# =============================================================================

def build_delta_statement(yearly: Relation) -> Select:
    """
    SQL equivalent of the delta relation, derived from a yearly rollup.

    Columns: location keys, year, base_year, and for every metric and
    composition field `{m}_base`, `{m}_current`, `{m}_delta`, `{m}_pct_change`.
    """
    if yearly.family != RelationFamily.rollup or yearly.grain != TimeGrainEnum.year:
        raise UnsupportedCombination(
            message=f"Deltas are derived from a yearly rollup, got {yearly.name}",
            details={"relation": yearly.name},
        )
    current = yearly.table.alias("current")
    base = yearly.table.alias("base")
    key_columns = [DIMENSIONS[f].column for f in yearly.key_fields]

    join_on = and_(
        *[current.c[k] == base.c[k] for k in key_columns],
        current.c.year == base.c.year + 1,
    )
    columns = [current.c[k] for k in key_columns]
    columns += [current.c.year.label("year"), base.c.year.label("base_year")]
    for name in METRIC_FIELDS + yearly.composition_fields:
        base_value, current_value = base.c[name], current.c[name]
        difference = current_value - base_value
        columns += [
            base_value.label(f"{name}_base"),
            current_value.label(f"{name}_current"),
            difference.label(f"{name}_delta"),
            case(
                (or_(base_value.is_(None), base_value == 0), None),
                else_=cast(
                    func.round(cast(difference, Numeric) * 100 / cast(base_value, Numeric), 2),
                    Float,
                ),
            ).label(f"{name}_pct_change"),
        ]
    return select(*columns).select_from(current.join(base, join_on))


def build_delta_select(params: DeltaParams) -> Select:
    """Filtered, sorted, paginated read of the delta relation for params."""
    relation = select_delta_relation(params.level, params.property_type)
    table = relation.table

    predicates: List[FilterPredicate] = []
    if params.insee_codes:
        predicates.append(FilterPredicate(field="inseeCode", operator="in", value=params.insee_codes))
    if params.sections:
        predicates.append(FilterPredicate(field="section", operator="in", value=params.sections))
    if params.year is not None:
        predicates.append(FilterPredicate(field="year", operator="=", value=params.year))
    if params.base_year is not None:
        predicates.append(FilterPredicate(field="base_year", operator="=", value=params.base_year))
    for attribute, suffix, operator in DELTA_FILTERS:
        value = getattr(params, attribute)
        if value is not None:
            predicates.append(
                FilterPredicate(field=f"{params.metric}_{suffix}", operator=operator, value=value)
            )

    sort_field = f"{params.metric}_{DELTA_SORT_SUFFIX[params.sort_by]}"
    ordering = compile_sort(
        [SortSpec(field=sort_field, direction=params.sort_order), SortSpec(field=relation.location_field)],
        table,
        RelationFamily.delta,
    )
    statement = select(table)
    where = compile_filters(predicates, table, RelationFamily.delta)
    if where is not None:
        statement = statement.where(where)
    logger.debug(f"[DELTAS] Read {relation.name} sorted by {sort_field} {params.sort_order}")
    return statement.order_by(*ordering).limit(params.limit).offset(params.offset)

