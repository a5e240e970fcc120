"""Manual equivalents of the store's aggregate primitives.

Used where the store lacks native `percentile_cont` / `regr_slope`, and by
the in-memory legend source. Each function reproduces the SQL semantics:

- percentile_cont: linear interpolation between order statistics, nulls ignored
- regr_slope: closed-form least squares, null when x has zero variance
- pct_change: null when base is null or 0
"""

from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np


def percentile_cont(values: Iterable[Optional[float]], fraction: float) -> Optional[float]:
    """
    Continuous percentile of the non-null values, fraction in [0, 1].

    Returns None for an empty input, like percentile_cont over no rows.
    """
    if not 0 <= fraction <= 1:
        raise ValueError(f"fraction must be within [0, 1], got {fraction}")
    array = np.array([v for v in values if v is not None], dtype=float)
    if array.size == 0:
        return None
    return float(np.quantile(array, fraction, method="linear"))


def ols_slope(points: Sequence[Tuple[float, Optional[float]]]) -> Optional[float]:
    """
    Least-squares slope of y against x: Σ(x-x̄)(y-ȳ) / Σ(x-x̄)².

    Pairs with a null y are skipped. Returns None when fewer than two
    pairs remain or when x has zero variance (regression undefined).
    """
    pairs = np.array([(x, y) for x, y in points if x is not None and y is not None], dtype=float)
    if len(pairs) < 2:
        return None
    dx = pairs[:, 0] - pairs[:, 0].mean()
    dy = pairs[:, 1] - pairs[:, 1].mean()
    sxx = float(np.dot(dx, dx))
    if sxx == 0:
        return None
    return float(np.dot(dx, dy)) / sxx


def pct_change(current: Optional[float], base: Optional[float]) -> Optional[float]:
    """Percent change rounded to 2 decimals; None if base is None or 0."""
    if base is None or base == 0 or current is None:
        return None
    return round(100 * (current - base) / base, 2)


def delta(current: Optional[float], base: Optional[float]) -> Optional[float]:
    """current - base, None if either side is None."""
    if current is None or base is None:
        return None
    return current - base


def quantile_fractions(buckets_count: int) -> List[float]:
    """Cut points i/N for i = 1..N-1."""
    return [i / buckets_count for i in range(1, buckets_count)]
