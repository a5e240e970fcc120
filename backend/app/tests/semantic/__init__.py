"""
Semantic Layer Tests
====================

Unit and integration tests for the analytics query core.

Test files:
- test_statistics.py: Percentile / regression / pct change
- test_registry.py: Field allow-lists per relation family
- test_rollups.py: Relation selection
- test_compiler.py: Filter, sort, metric and computation compilation
- test_deltas.py: Year-over-year deltas
- test_slopes.py: Latest-year slope window
- test_legend.py: Quantile legend builder (async)
- test_executor.py: Statements run against SQLite
"""
