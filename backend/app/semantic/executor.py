"""
Statement Executor
==================

Runs compiled statements on a sync Session and shapes the rows.

WHY separate executor?
- Compilers stay pure (no Session, no I/O) and unit-testable
- One place where store errors become DataAccessError
- Result shaping (delta nesting, slope rows) happens next to the read

Related files:
- app/semantic/compiler.py: Rollup / transactions statements
- app/semantic/deltas.py: build_delta_select, transform_delta_row
- app/semantic/slopes.py: build_slope_select, slope_row_from_mapping
- app/database.py: get_sync_session

Design:
- Every function takes the Session first and never commits
- SQLAlchemy errors are logged and re-raised as DataAccessError
- Rows are returned as plain dicts keyed by label / column name
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.sql.expression import Select

from app.semantic.compiler import (
    build_aggregation_select,
    build_computation_select,
    build_query_select,
    build_rollup_select,
)
from app.semantic.deltas import DeltaRow, build_delta_select, transform_delta_row
from app.semantic.errors import DataAccessError, UnsupportedOperator
from app.semantic.query import (
    AggregationArgs,
    ComputationArgs,
    DeltaParams,
    FilterState,
    IntentCategory,
    QueryArgs,
    SlopeParams,
)
from app.semantic.rollups import select_delta_relation, select_slope_relation
from app.semantic.slopes import SlopeRow, build_slope_select, slope_row_from_mapping

logger = logging.getLogger(__name__)


def _rows(db: Session, statement: Select, label: str) -> List[Dict[str, Any]]:
    try:
        result = db.execute(statement)
        rows = [dict(row) for row in result.mappings().all()]
    except SQLAlchemyError as e:
        logger.error(f"[EXECUTOR] {label} failed: {e}")
        raise DataAccessError(message=f"{label} failed: {e}", details={"statement": label}) from e
    logger.info(f"[EXECUTOR] {label}: {len(rows)} row(s)")
    return rows


# =====================================================================
# Precomputed relations
# =====================================================================

def fetch_rollup(db: Session, state: FilterState) -> List[Dict[str, Any]]:
    """Rows of the rollup selected by state, filtered, sorted and paginated."""
    return _rows(db, build_rollup_select(state), "rollup read")


def fetch_deltas(db: Session, params: DeltaParams) -> List[DeltaRow]:
    """Delta rows reshaped into nested per-metric records."""
    relation = select_delta_relation(params.level, params.property_type)
    return [transform_delta_row(row, relation) for row in _rows(db, build_delta_select(params), "delta read")]


def fetch_slopes(db: Session, params: SlopeParams) -> List[SlopeRow]:
    relation = select_slope_relation(params.level, params.property_type)
    return [slope_row_from_mapping(row, relation) for row in _rows(db, build_slope_select(params), "slope read")]


# =====================================================================
# Raw transactions
# =====================================================================

def run_query(db: Session, args: QueryArgs) -> List[Dict[str, Any]]:
    return _rows(db, build_query_select(args), "transactions query")


def run_aggregation(db: Session, args: AggregationArgs) -> List[Dict[str, Any]]:
    return _rows(db, build_aggregation_select(args), "transactions aggregation")


def run_computation(db: Session, args: ComputationArgs) -> List[Dict[str, Any]]:
    return _rows(db, build_computation_select(args), "transactions computation")


_RUNNERS = {
    IntentCategory.query: (QueryArgs, run_query),
    IntentCategory.aggregate: (AggregationArgs, run_aggregation),
    IntentCategory.calculate: (ComputationArgs, run_computation),
}


def execute(
    db: Session,
    category: Union[IntentCategory, str],
    args: Union[Dict[str, Any], QueryArgs, AggregationArgs, ComputationArgs],
) -> List[Dict[str, Any]]:
    """
    Dispatch transactions arguments by intent category.

    Only query / aggregate / calculate have an executable shape; the other
    categories raise UnsupportedOperator.
    """
    category = IntentCategory(category)
    if category not in _RUNNERS:
        raise UnsupportedOperator(
            message=f"Intent category {category.value!r} has no executable query",
            field_name="intent",
            suggestion=f"Use one of: {', '.join(c.value for c in _RUNNERS)}",
        )
    model, runner = _RUNNERS[category]
    if isinstance(args, dict):
        args = model.model_validate(args)
    return runner(db, args)
