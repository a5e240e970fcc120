"""
Query DSL Models
================

Pydantic models for the canonical, JSON-shaped query DSL.

Two flavours of input reach the compilers:

- FilterState: canonical rollup query, produced by the intent normalizer
  or sent explicitly by a caller.
- QueryArgs / AggregationArgs / ComputationArgs: argument shapes for
  queries over the raw transactions relation.

Field names are NOT validated here beyond their type: every field is
resolved by the registry at compile time, which is the single place where
identifiers are allow-listed. Models serialize with camelCase aliases
(`model_dump(by_alias=True)`) and accept both alias and attribute names.

RELATED FILES
-------------
- app/semantic/compiler.py: Compiles these models into statements
- app/nlp/intent.py: Produces FilterState from a loose intent
"""

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictFloat,
    StrictInt,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from app.models import LevelEnum, PropertyTypeEnum, TimeGrainEnum
from app.semantic.model import ALLOWED_METRICS, LATEST_YEAR


SortOrder = Literal["asc", "desc"]
Number = Union[StrictInt, StrictFloat]


class DSLModel(BaseModel):
    """Base config: camelCase aliases, attribute names also accepted."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# LOW-LEVEL DSL FRAGMENTS
# =============================================================================

class FilterPredicate(DSLModel):
    """
    One `{field, operator, value}` predicate.

    The operator is kept as a plain string so the compiler, not pydantic,
    decides whether it is supported (UnsupportedOperator).
    """
    field: str = Field(..., description="DSL field name, resolved by the registry")
    operator: str = Field(..., description="gte|lte|between|=|!=|>|>=|<|<=|in|ilike|is_null")
    value: Any = Field(None, description="Scalar, [low, high] pair, array, pattern or bool")


class SortSpec(DSLModel):
    """Ordered sort key. A missing direction sorts ascending."""
    field: str
    direction: Optional[SortOrder] = None


class MetricSpec(DSLModel):
    """Aggregate `metric(field)`, labelled `{metric}_{field}`."""
    metric: str = Field(..., description="count|sum|avg|min|max")
    field: str


class PercentileComputation(DSLModel):
    """Continuous percentile of field, labelled `percentile_{field}_{p}`."""
    name: Literal["percentile"]
    field: str
    p: float = Field(..., ge=0, le=100, description="Percentile in [0, 100]")


class AvgPricePerM2Computation(DSLModel):
    """Σprice / ΣfloorArea over the group, null when the area sum is null or 0."""
    name: Literal["avgPricePerM2"]


Computation = Annotated[
    Union[PercentileComputation, AvgPricePerM2Computation],
    Field(discriminator="name"),
]


class IntentCategory(str, Enum):
    """What kind of question the NL extractor thinks it received."""
    query = "query"
    aggregate = "aggregate"
    calculate = "calculate"
    schema = "schema"
    explain = "explain"
    compare = "compare"
    unknown = "unknown"


# =============================================================================
# TRANSACTIONS ARGUMENTS
# =============================================================================

class QueryArgs(DSLModel):
    """Plain projection over raw transactions."""
    select: Optional[List[str]] = None
    filters: List[FilterPredicate] = Field(default_factory=list)
    sort: List[SortSpec] = Field(default_factory=list)
    limit: Optional[int] = None
    offset: Optional[int] = None


class AggregationArgs(DSLModel):
    """Grouped aggregates over raw transactions."""
    group_by: List[str] = Field(default_factory=list)
    metrics: List[MetricSpec] = Field(..., min_length=1)
    filters: List[FilterPredicate] = Field(default_factory=list)
    sort: List[SortSpec] = Field(default_factory=list)
    limit: Optional[int] = None


class ComputationArgs(DSLModel):
    """Grouped named computations over raw transactions."""
    group_by: List[str] = Field(default_factory=list)
    computations: List[Computation] = Field(..., min_length=1)
    filters: List[FilterPredicate] = Field(default_factory=list)
    sort: List[SortSpec] = Field(default_factory=list)
    limit: Optional[int] = None


# =============================================================================
# CANONICAL ROLLUP QUERY
# =============================================================================

class NumericFilter(DSLModel):
    """
    Metric filter attached to a FilterState, e.g. `{operation: gte, value: 10}`.

    Values must be real numbers; `between` takes exactly two of them.
    """
    operation: Literal["gte", "lte", "between"]
    value: Union[Number, List[Number]]

    @model_validator(mode="after")
    def check_arity(self) -> "NumericFilter":
        if self.operation == "between":
            if not isinstance(self.value, list) or len(self.value) != 2:
                raise ValueError("between requires exactly two numbers")
        elif isinstance(self.value, list):
            raise ValueError(f"{self.operation} requires a single number")
        return self

    def to_predicate(self, field: str) -> FilterPredicate:
        return FilterPredicate(field=field, operator=self.operation, value=self.value)


class FilterState(DSLModel):
    """
    Canonical rollup query.

    EXAMPLE (by alias):
        {"level": "commune", "propertyType": "apartment", "field": "avg_price_m2",
         "year": 2024, "inseeCodes": [], "sections": [], "sortBy": "avg_price_m2",
         "sortOrder": "desc", "limit": 200, "offset": 0}
    """
    level: LevelEnum = LevelEnum.commune
    property_type: PropertyTypeEnum = PropertyTypeEnum.apartment
    field: str = "avg_price_m2"
    year: int = LATEST_YEAR
    month: Optional[int] = Field(None, ge=1, le=12)
    insee_codes: List[str] = Field(default_factory=list)
    sections: List[str] = Field(default_factory=list)
    filters: Optional[Dict[str, NumericFilter]] = None
    sort_by: str = "avg_price_m2"
    sort_order: SortOrder = "desc"
    limit: int = Field(200, ge=1, le=500)
    offset: int = Field(0, ge=0)

    @field_validator("field")
    @classmethod
    def check_metric(cls, value: str) -> str:
        if value not in ALLOWED_METRICS:
            raise ValueError(f"unknown metric field {value!r}")
        return value

    @property
    def time_grain(self) -> TimeGrainEnum:
        """Month grain iff a month is requested, yearly otherwise."""
        return TimeGrainEnum.month if self.month is not None else TimeGrainEnum.year

    def predicates(self) -> List[FilterPredicate]:
        """Metric filters as compiler predicates, in key order."""
        if not self.filters:
            return []
        return [condition.to_predicate(field) for field, condition in self.filters.items()]


class DeltaParams(DSLModel):
    """Year-over-year delta read."""
    level: LevelEnum = LevelEnum.commune
    property_type: PropertyTypeEnum = PropertyTypeEnum.apartment
    year: Optional[int] = None
    base_year: Optional[int] = None
    insee_codes: List[str] = Field(default_factory=list)
    sections: List[str] = Field(default_factory=list)
    metric: str = "total_sales"
    sort_by: Literal["pct_change", "delta", "current", "base", "rank"] = "current"
    sort_order: SortOrder = "desc"
    min_current: Optional[float] = None
    max_current: Optional[float] = None
    min_base: Optional[float] = None
    min_delta: Optional[float] = None
    min_pct_change: Optional[float] = None
    limit: int = Field(200, ge=1, le=500)
    offset: int = Field(0, ge=0)


class SlopeParams(DSLModel):
    """Latest-year slope read."""
    level: LevelEnum = LevelEnum.commune
    property_type: PropertyTypeEnum = PropertyTypeEnum.apartment
    insee_codes: List[str] = Field(default_factory=list)
    sections: List[str] = Field(default_factory=list)
    sort_by: str = "inseeCode"
    sort_order: SortOrder = "asc"
    limit: int = Field(200, ge=1, le=500)
    offset: int = Field(0, ge=0)
