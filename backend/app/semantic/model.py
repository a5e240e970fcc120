"""
Semantic Model Definition
=========================

Single source of truth for metrics and dimensions of the transaction
analytics core. This model defines WHAT can be queried, not HOW.

WHY THIS FILE EXISTS
--------------------
Every relation the core reads (rollups, delta relations, slope relations,
the raw transactions table) is shaped by the same metric catalog. Keeping the
catalog here means:
- The field registry derives its allow-lists from one place
- Relation tables in app/models.py get the same columns in the same order
- The intent normalizer and the NL prompt agree on metric names

DESIGN PRINCIPLES
-----------------
1. **Declarative**: Metrics and dimensions are frozen dataclasses
2. **Immutable**: Collections are tuples and frozen sets, never mutated
3. **Ordered**: METRIC_FIELDS preserves catalog order (used for columns)

RELATED FILES
-------------
- app/semantic/registry.py: Allow-lists built from these definitions
- app/models.py: Relation tables built from METRIC_FIELDS
- app/nlp/intent.py: Intent normalizer defaults
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple


# =============================================================================
# ENUMS: Type-safe classifications
# =============================================================================

class MetricType(Enum):
    """
    How a metric is aggregated in the rollups.

    COUNT metrics are exact integer counts, MEASURE metrics are sums,
    averages or distribution statistics of price/area.
    """
    COUNT = "count"
    MEASURE = "measure"


class MetricGroup(Enum):
    """Semantic grouping used for display and prompt building."""
    VOLUME = "volume"
    PRICING = "pricing"
    AREA = "area"


class DimensionType(Enum):
    """
    Type of dimension.

    - SPATIAL: location keys (commune INSEE code, cadastral section)
    - TEMPORAL: time buckets (year, month, ISO year/week)
    """
    SPATIAL = "spatial"
    TEMPORAL = "temporal"


# =============================================================================
# DATA CLASSES: Structured definitions
# =============================================================================

@dataclass(frozen=True)
class Metric:
    """
    Definition of a single rollup metric.

    PARAMETERS:
        name: Column and DSL identifier (e.g., "avg_price_m2")
        label: Human-readable label (e.g., "Avg price/m²")
        group: Semantic grouping (volume, pricing, area)
        type: COUNT or MEASURE
        unit: Display unit ("€", "m²", "€/m²") or None for counts
        double_precision: True if stored as double precision, else integer

    EXAMPLES:
        >>> METRICS["avg_price_m2"].unit
        '€/m²'
    """
    name: str
    label: str
    group: MetricGroup
    type: MetricType
    unit: Optional[str] = None
    double_precision: bool = False


@dataclass(frozen=True)
class Dimension:
    """
    Definition of a dimension key.

    PARAMETERS:
        name: DSL identifier (e.g., "inseeCode")
        column: Storage column (e.g., "insee_code")
        label: Human-readable label
        type: SPATIAL or TEMPORAL
    """
    name: str
    column: str
    label: str
    type: DimensionType


# =============================================================================
# METRIC DEFINITIONS
# =============================================================================

_METRIC_DEFINITIONS: Tuple[Metric, ...] = (
    Metric("total_sales", "N° Sales", MetricGroup.VOLUME, MetricType.COUNT),
    Metric("total_price", "Total price", MetricGroup.VOLUME, MetricType.MEASURE, "€", True),
    Metric("avg_price", "Avg price", MetricGroup.PRICING, MetricType.MEASURE, "€", True),
    Metric("total_area", "Total area", MetricGroup.AREA, MetricType.MEASURE, "m²"),
    Metric("avg_area", "Avg area", MetricGroup.AREA, MetricType.MEASURE, "m²"),
    Metric("avg_price_m2", "Avg price/m²", MetricGroup.PRICING, MetricType.MEASURE, "€/m²", True),
    Metric("min_price", "Min price", MetricGroup.PRICING, MetricType.MEASURE, "€"),
    Metric("max_price", "Max price", MetricGroup.PRICING, MetricType.MEASURE, "€"),
    Metric("median_price", "Median price", MetricGroup.PRICING, MetricType.MEASURE, "€", True),
    Metric("median_area", "Median area", MetricGroup.AREA, MetricType.MEASURE, "m²"),
    Metric("min_price_m2", "Min price/m²", MetricGroup.PRICING, MetricType.MEASURE, "€/m²"),
    Metric("max_price_m2", "Max price/m²", MetricGroup.PRICING, MetricType.MEASURE, "€/m²"),
    Metric("price_m2_p25", "Price/m² P25", MetricGroup.PRICING, MetricType.MEASURE, "€/m²", True),
    Metric("price_m2_p75", "Price/m² P75", MetricGroup.PRICING, MetricType.MEASURE, "€/m²", True),
    Metric("price_m2_iqr", "Price/m² IQR", MetricGroup.PRICING, MetricType.MEASURE, "€/m²", True),
    Metric("price_m2_stddev", "Price/m² std dev", MetricGroup.PRICING, MetricType.MEASURE, "€/m²", True),
)

METRICS: Dict[str, Metric] = {metric.name: metric for metric in _METRIC_DEFINITIONS}

# Catalog order, used wherever columns are laid out
METRIC_FIELDS: Tuple[str, ...] = tuple(metric.name for metric in _METRIC_DEFINITIONS)

DOUBLE_PRECISION_METRICS: FrozenSet[str] = frozenset(
    metric.name for metric in _METRIC_DEFINITIONS if metric.double_precision
)

# Composition counts carried by apartment / house relations
APARTMENT_COMPOSITION_FIELDS: Tuple[str, ...] = (
    "total_apartments",
    "apartment_1_room",
    "apartment_2_room",
    "apartment_3_room",
    "apartment_4_room",
    "apartment_5_room",
)
HOUSE_COMPOSITION_FIELDS: Tuple[str, ...] = (
    "total_houses",
    "house_1_room",
    "house_2_room",
    "house_3_room",
    "house_4_room",
    "house_5_room",
)

# property type -> (nested key in responses, composition fields)
COMPOSITION: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    "apartment": ("apartments", APARTMENT_COMPOSITION_FIELDS),
    "house": ("houses", HOUSE_COMPOSITION_FIELDS),
}


# =============================================================================
# DIMENSION DEFINITIONS
# =============================================================================

DIMENSIONS: Dict[str, Dimension] = {
    "inseeCode": Dimension("inseeCode", "insee_code", "Commune", DimensionType.SPATIAL),
    "section": Dimension("section", "section", "Section", DimensionType.SPATIAL),
    "year": Dimension("year", "year", "Year", DimensionType.TEMPORAL),
    "month": Dimension("month", "month", "Month", DimensionType.TEMPORAL),
    "iso_year": Dimension("iso_year", "iso_year", "ISO year", DimensionType.TEMPORAL),
    "iso_week": Dimension("iso_week", "iso_week", "ISO week", DimensionType.TEMPORAL),
}


# =============================================================================
# CONSTANTS AND FROZEN SETS FOR VALIDATION
# =============================================================================

FEATURE_YEARS: Tuple[int, ...] = tuple(range(2014, 2025))
LATEST_YEAR: int = FEATURE_YEARS[-1]
MONTHS: Tuple[int, ...] = tuple(range(1, 13))
ISO_WEEKS: Tuple[int, ...] = tuple(range(1, 54))

ALLOWED_METRICS: FrozenSet[str] = frozenset(METRICS.keys())
ALLOWED_DIMENSIONS: FrozenSet[str] = frozenset(DIMENSIONS.keys())
ALLOWED_LEVELS: FrozenSet[str] = frozenset(["commune", "section"])
ALLOWED_PROPERTY_TYPES: FrozenSet[str] = frozenset(["apartment", "house"])
ALLOWED_TIME_GRAINS: FrozenSet[str] = frozenset(["month", "year", "week"])

# Metrics exposed as rollup / intent sort keys
SORTABLE_METRICS: FrozenSet[str] = frozenset(
    ["total_sales", "avg_price_m2", "total_price", "avg_price"]
)

# Column suffixes of a delta relation, per metric
DELTA_SUFFIXES: Tuple[str, ...] = ("base", "current", "delta", "pct_change")

# Window metadata columns of a slope relation
SLOPE_WINDOW_FIELDS: Tuple[str, ...] = (
    "window_months",
    "window_start_year",
    "window_start_month",
)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def get_metric(name: str) -> Optional[Metric]:
    """Get metric definition by name, None if unknown."""
    return METRICS.get(name)


def get_dimension(name: str) -> Optional[Dimension]:
    """Get dimension definition by name, None if unknown."""
    return DIMENSIONS.get(name)


def is_feature_year(value: object) -> bool:
    """True if value is an int year covered by the rollups."""
    return isinstance(value, int) and not isinstance(value, bool) and value in FEATURE_YEARS


def is_month(value: object) -> bool:
    """True if value is an int month in 1..12."""
    return isinstance(value, int) and not isinstance(value, bool) and value in MONTHS
