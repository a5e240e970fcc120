"""
Semantic Query Compiler
=======================

Turns DSL fragments into SQLAlchemy expressions and statements.

WHY THIS FILE EXISTS
--------------------
The DSL models (app/semantic/query.py) define WHAT to query. This module
turns them into parameterized statements without ever building SQL text:

- Column identifiers come exclusively from the field registry
- Values are always bound parameters (SQLAlchemy binds every literal
  compared to a Column)
- Each operator / aggregate / computation is one entry of a dispatch table;
  anything else raises UnsupportedOperator

All functions are pure and stateless; they never touch the store.

COMPILERS
---------
1. compile_filters:      FilterPredicate[]       -> AND predicate tree
2. compile_sort:         SortSpec[]              -> ORDER BY list (asc default)
3. compile_metrics:      MetricSpec[]            -> labelled aggregates
4. compile_computations: Computation[]           -> labelled computations
5. compile_group_by:     field names             -> GROUP BY columns

STATEMENT BUILDERS
------------------
- build_rollup_select:       FilterState     -> select on the chosen rollup
- build_query_select:        QueryArgs       -> projection over transactions
- build_aggregation_select:  AggregationArgs -> grouped aggregates
- build_computation_select:  ComputationArgs -> grouped computations

RELATED FILES
-------------
- app/semantic/registry.py: Identifier allow-lists
- app/semantic/rollups.py: Relation selection
- app/semantic/executor.py: Runs the statements
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import Integer, Table, and_, case, cast, func, select
from sqlalchemy.sql.expression import ColumnElement, Select

from app.config import get_settings
from app.models import PropertySale, RelationFamily
from app.semantic.errors import InvalidOperatorValue, UnknownField, UnsupportedOperator
from app.semantic.query import (
    AggregationArgs,
    AvgPricePerM2Computation,
    ComputationArgs,
    FilterPredicate,
    FilterState,
    MetricSpec,
    PercentileComputation,
    QueryArgs,
    SortSpec,
)
from app.semantic.registry import DEFAULT_TRANSACTION_SELECT, REGISTRY
from app.semantic.rollups import select_rollup

logger = logging.getLogger(__name__)


TRANSACTIONS: Table = PropertySale.__table__


# =============================================================================
# FILTER COMPILER
# =============================================================================

def _is_scalar(value: Any) -> bool:
    return value is not None and not isinstance(value, (list, tuple, set, dict))


def _scalar(predicate: FilterPredicate) -> Any:
    if not _is_scalar(predicate.value):
        raise InvalidOperatorValue(
            message=f"Operator {predicate.operator!r} requires a single value",
            field_name=predicate.field,
            details={"value": repr(predicate.value)},
        )
    return predicate.value


def _between(column: ColumnElement, predicate: FilterPredicate) -> ColumnElement:
    value = predicate.value
    if not isinstance(value, (list, tuple)) or len(value) != 2 or not all(_is_scalar(v) for v in value):
        raise InvalidOperatorValue(
            message="between requires exactly two values",
            field_name=predicate.field,
            details={"value": repr(value)},
        )
    low, high = value
    return column.between(low, high)


def _in(column: ColumnElement, predicate: FilterPredicate) -> ColumnElement:
    value = predicate.value
    if not isinstance(value, (list, tuple)) or not value or not all(_is_scalar(v) for v in value):
        raise InvalidOperatorValue(
            message="in requires a non-empty array of values",
            field_name=predicate.field,
            details={"value": repr(value)},
        )
    return column.in_(list(value))


def _ilike(column: ColumnElement, predicate: FilterPredicate) -> ColumnElement:
    if not isinstance(predicate.value, str):
        raise InvalidOperatorValue(
            message="ilike requires a pattern string",
            field_name=predicate.field,
        )
    return column.ilike(predicate.value)


def _is_null(column: ColumnElement, predicate: FilterPredicate) -> ColumnElement:
    if not isinstance(predicate.value, bool):
        raise InvalidOperatorValue(
            message="is_null requires a boolean",
            field_name=predicate.field,
        )
    return column.is_(None) if predicate.value else column.is_not(None)


FilterCompiler = Callable[[ColumnElement, FilterPredicate], ColumnElement]

OPERATORS: Mapping[str, FilterCompiler] = {
    "=": lambda c, p: c == _scalar(p),
    "!=": lambda c, p: c != _scalar(p),
    ">": lambda c, p: c > _scalar(p),
    ">=": lambda c, p: c >= _scalar(p),
    "<": lambda c, p: c < _scalar(p),
    "<=": lambda c, p: c <= _scalar(p),
    "gte": lambda c, p: c >= _scalar(p),
    "lte": lambda c, p: c <= _scalar(p),
    "between": _between,
    "in": _in,
    "ilike": _ilike,
    "is_null": _is_null,
}


def compile_predicate(
    predicate: FilterPredicate,
    table: Table,
    family: RelationFamily = RelationFamily.rollup,
) -> ColumnElement:
    """Compile one predicate; field through the registry, value bound."""
    handler = OPERATORS.get(predicate.operator)
    if handler is None:
        logger.warning(f"[COMPILER] Unsupported operator {predicate.operator!r}")
        raise UnsupportedOperator(
            message=f"Unsupported operator {predicate.operator!r}",
            field_name=predicate.field,
            suggestion=f"Use one of: {', '.join(OPERATORS)}",
        )
    column = REGISTRY.column(table, predicate.field, family)
    return handler(column, predicate)


def compile_filters(
    predicates: Sequence[FilterPredicate],
    table: Table,
    family: RelationFamily = RelationFamily.rollup,
) -> Optional[ColumnElement]:
    """
    Compile predicates into an AND tree, or None when there are none.

    The order of the two `between` bounds is the caller's responsibility.
    """
    clauses = [compile_predicate(p, table, family) for p in predicates]
    logger.debug(f"[COMPILER] {len(clauses)} filter(s) on {table.name}")
    if not clauses:
        return None
    return and_(*clauses)


# =============================================================================
# SORT COMPILER
# =============================================================================

def compile_sort(
    sort_specs: Sequence[SortSpec],
    table: Table,
    family: RelationFamily = RelationFamily.rollup,
    labels: Optional[Mapping[str, ColumnElement]] = None,
) -> List[ColumnElement]:
    """
    Compile ordered sort keys. Missing direction sorts ascending.

    `labels` lets aggregations sort by the expressions they produce; any
    other field goes through the registry.
    """
    ordering = []
    for spec in sort_specs:
        if labels and spec.field in labels:
            target = labels[spec.field]
        else:
            target = REGISTRY.column(table, spec.field, family)
        ordering.append(target.desc() if spec.direction == "desc" else target.asc())
    return ordering


# =============================================================================
# METRIC / COMPUTATION COMPILER
# =============================================================================

def _numeric_column(table: Table, field: str, family: RelationFamily, operation: str) -> ColumnElement:
    descriptor = REGISTRY.resolve(field, family)
    if not descriptor.numeric:
        raise InvalidOperatorValue(
            message=f"{operation} requires a numeric field",
            field_name=field,
        )
    return REGISTRY.column(table, field, family)


AGGREGATES: Mapping[str, Callable[[ColumnElement], ColumnElement]] = {
    "count": lambda c: cast(func.count(c), Integer),
    "sum": lambda c: func.coalesce(func.sum(c), 0),
    "avg": lambda c: func.coalesce(func.avg(c), 0),
    "min": lambda c: func.coalesce(func.min(c), 0),
    "max": lambda c: func.coalesce(func.max(c), 0),
}


def compile_metrics(
    metrics: Sequence[MetricSpec],
    table: Table = TRANSACTIONS,
    family: RelationFamily = RelationFamily.transactions,
) -> List[ColumnElement]:
    """
    Aggregates labelled `{metric}_{field}`.

    count is exact; sum/avg/min/max coalesce to 0 over an empty group.
    """
    labelled = []
    for spec in metrics:
        aggregate = AGGREGATES.get(spec.metric)
        if aggregate is None:
            raise UnsupportedOperator(
                message=f"Unsupported aggregate {spec.metric!r}",
                field_name=spec.field,
                suggestion=f"Use one of: {', '.join(AGGREGATES)}",
            )
        if spec.metric == "count":
            column = REGISTRY.column(table, spec.field, family)
        else:
            column = _numeric_column(table, spec.field, family, spec.metric)
        labelled.append(aggregate(column).label(f"{spec.metric}_{spec.field}"))
    return labelled


def _format_percentile(p: float) -> str:
    return str(int(p)) if float(p).is_integer() else str(p).replace(".", "_")


def percentile_label(field: str, p: float) -> str:
    """e.g. percentile_price_50"""
    return f"percentile_{field}_{_format_percentile(p)}"


def _percentile(computation: PercentileComputation, table: Table, family: RelationFamily) -> ColumnElement:
    column = _numeric_column(table, computation.field, family, "percentile")
    expression = func.percentile_cont(computation.p / 100).within_group(column)
    return expression.label(percentile_label(computation.field, computation.p))


def _avg_price_per_m2(computation: AvgPricePerM2Computation, table: Table, family: RelationFamily) -> ColumnElement:
    numerator = func.sum(REGISTRY.column(table, "price", family))
    denominator = func.sum(REGISTRY.column(table, "floorArea", family))
    # NULL > 0 is NULL, so a null denominator also falls through to else_
    return case((denominator > 0, numerator / denominator), else_=None).label("avgPricePerM2")


COMPUTATIONS: Mapping[str, Callable[[Any, Table, RelationFamily], ColumnElement]] = {
    "percentile": _percentile,
    "avgPricePerM2": _avg_price_per_m2,
}


def compile_computations(
    computations: Sequence[Any],
    table: Table = TRANSACTIONS,
    family: RelationFamily = RelationFamily.transactions,
) -> List[ColumnElement]:
    """Named computations (percentile, avgPricePerM2), labelled."""
    labelled = []
    for computation in computations:
        handler = COMPUTATIONS.get(getattr(computation, "name", None))
        if handler is None:
            raise UnsupportedOperator(message=f"Unsupported computation {computation!r}")
        labelled.append(handler(computation, table, family))
    return labelled


# =============================================================================
# GROUP BY / PAGINATION
# =============================================================================

def compile_group_by(
    fields: Sequence[str],
    table: Table = TRANSACTIONS,
    family: RelationFamily = RelationFamily.transactions,
) -> List[ColumnElement]:
    """Group-by columns; only fields flagged groupable are accepted."""
    columns = []
    for field in fields:
        descriptor = REGISTRY.resolve(field, family)
        if not descriptor.groupable:
            raise UnknownField(
                message=f"Field {field!r} cannot be used in group by",
                field_name=field,
                suggestion=f"Group by one of: {', '.join(sorted(REGISTRY.groupable_fields(family)))}",
            )
        columns.append(REGISTRY.column(table, field, family).label(field))
    return columns


def normalize_pagination(
    limit: Optional[int] = None,
    offset: Optional[int] = None,
    default_limit: Optional[int] = None,
    max_limit: Optional[int] = None,
) -> Tuple[int, int]:
    """Positive limit capped at max_limit (else default_limit); offset floored at 0."""
    settings = get_settings()
    default_limit = default_limit or settings.QUERY_DEFAULT_LIMIT
    max_limit = max_limit or settings.QUERY_MAX_LIMIT
    safe_limit = min(limit, max_limit) if limit and limit > 0 else default_limit
    safe_offset = max(offset or 0, 0)
    return safe_limit, safe_offset


# =============================================================================
# STATEMENT BUILDERS
# =============================================================================

def _apply_where(statement: Select, where: Optional[ColumnElement]) -> Select:
    return statement.where(where) if where is not None else statement


def build_rollup_select(state: FilterState) -> Select:
    """
    Select rows of the rollup chosen for the state.

    Month grain iff state.month is set. Location lists filter by membership,
    metric filters are compiled against the rollup family, and the location
    key breaks ties in the ordering.
    """
    relation = select_rollup(state.level, state.property_type, state.time_grain)
    table = relation.table

    predicates = [FilterPredicate(field="year", operator="=", value=state.year)]
    if state.month is not None:
        predicates.append(FilterPredicate(field="month", operator="=", value=state.month))
    if state.insee_codes:
        predicates.append(FilterPredicate(field="inseeCode", operator="in", value=state.insee_codes))
    if state.sections:
        predicates.append(FilterPredicate(field="section", operator="in", value=state.sections))
    predicates += state.predicates()

    ordering = compile_sort(
        [SortSpec(field=state.sort_by, direction=state.sort_order), SortSpec(field=relation.location_field)],
        table,
    )
    statement = _apply_where(select(table), compile_filters(predicates, table))
    logger.debug(f"[COMPILER] Rollup select on {relation.name}")
    return statement.order_by(*ordering).limit(state.limit).offset(state.offset)


def build_query_select(args: QueryArgs) -> Select:
    """Projection over raw transactions, columns labelled by DSL name."""
    fields = args.select or list(DEFAULT_TRANSACTION_SELECT)
    columns = [REGISTRY.column(TRANSACTIONS, f, RelationFamily.transactions).label(f) for f in fields]
    limit, offset = normalize_pagination(args.limit, args.offset)
    statement = _apply_where(
        select(*columns),
        compile_filters(args.filters, TRANSACTIONS, RelationFamily.transactions),
    )
    ordering = compile_sort(args.sort, TRANSACTIONS, RelationFamily.transactions)
    return statement.order_by(*ordering).limit(limit).offset(offset)


def _grouped_select(
    group_by: Sequence[str],
    produced: List[ColumnElement],
    filters: Sequence[FilterPredicate],
    sort: Sequence[SortSpec],
    limit: Optional[int],
) -> Select:
    groups = compile_group_by(group_by)
    labels: Dict[str, ColumnElement] = {c.name: c for c in groups + produced}
    statement = _apply_where(
        select(*groups, *produced),
        compile_filters(filters, TRANSACTIONS, RelationFamily.transactions),
    )
    if groups:
        statement = statement.group_by(*groups)
    ordering = compile_sort(sort, TRANSACTIONS, RelationFamily.transactions, labels=labels)
    safe_limit, _ = normalize_pagination(limit)
    return statement.order_by(*ordering).limit(safe_limit)


def build_aggregation_select(args: AggregationArgs) -> Select:
    """Grouped `{metric}_{field}` aggregates over raw transactions."""
    return _grouped_select(args.group_by, compile_metrics(args.metrics), args.filters, args.sort, args.limit)


def build_computation_select(args: ComputationArgs) -> Select:
    """Grouped named computations over raw transactions."""
    return _grouped_select(
        args.group_by, compile_computations(args.computations), args.filters, args.sort, args.limit
    )
