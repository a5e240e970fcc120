"""
Semantic Layer for Transaction Analytics
========================================

Query compilation and statistics core over precomputed real-estate rollups.

ARCHITECTURE OVERVIEW
---------------------
```
Loose intent (nlp/translator.py or caller)
    |
    v
Intent Normalizer (nlp/intent.py) -> FilterState (semantic/query.py)
    |
    v
Rollup Selector (semantic/rollups.py)
    |
    v
Filter / Sort / Metric compilers (semantic/compiler.py)
    |   every identifier resolved through semantic/registry.py
    v
Executor (semantic/executor.py)
    |
    v
Delta / Slope reshaping (semantic/deltas.py, semantic/slopes.py)
```

Legend flow: FilterState + bbox -> semantic/legend.py -> stats query ->
bounded concurrent per-bucket counts.

MODULE MAP
----------
- model.py: Metric/dimension catalog and constants
- registry.py: Field allow-lists per relation family
- errors.py: Error taxonomy
- query.py: DSL models (pydantic)
- compiler.py: Filter/sort/metric/computation compilers
- rollups.py: Relation selection
- statistics.py: Manual percentile / regression / pct change
- deltas.py: Year-over-year deltas
- slopes.py: Latest-year regression slopes
- legend.py: Quantile legend builder
- executor.py: Statement execution against the store
"""

from app.semantic.errors import (
    DataAccessError,
    InvalidOperatorValue,
    InvalidParameter,
    QueryError,
    UnknownField,
    UnsupportedCombination,
    UnsupportedOperator,
)
from app.semantic.model import (
    FEATURE_YEARS,
    LATEST_YEAR,
    METRIC_FIELDS,
    METRICS,
    SORTABLE_METRICS,
)

__all__ = [
    "DataAccessError",
    "InvalidOperatorValue",
    "InvalidParameter",
    "QueryError",
    "UnknownField",
    "UnsupportedCombination",
    "UnsupportedOperator",
    "FEATURE_YEARS",
    "LATEST_YEAR",
    "METRIC_FIELDS",
    "METRICS",
    "SORTABLE_METRICS",
]
