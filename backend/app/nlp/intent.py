"""
Intent Normalizer
=================

Maps a loosely-populated user intent (typically JSON produced by the NL
extractor in app/nlp/translator.py) to the canonical FilterState.

VALIDATION POLICY
-----------------
The intent is untrusted. Two kinds of problems are treated differently:

- Optional / inferred fields that are ambiguous or out of range
  (primaryDimension, metric, propertyType, sortOrder, year, month, limit)
  are dropped with an INFO log, and the default applies.
- Structurally invalid input fails with pydantic.ValidationError:
  negative or non-integer minSales, filters that are not a
  `{metric: {operation, value}}` map, filter keys outside the metric
  catalog, non-numeric filter values, malformed location codes.

DEFAULTS
--------
    level        section iff primaryDimension == "section" or sections given
    propertyType apartment
    field        avg_price_m2
    year         latest feature year
    sortBy       primaryDimension, else metric if sortable, else avg_price_m2
    sortOrder    desc
    limit        200
    offset       0

minSales > 0 merges `filters.total_sales = {operation: gte, value: minSales}`;
an empty filters map normalizes to None.

RELATED FILES
-------------
- app/semantic/query.py: FilterState, NumericFilter
- app/semantic/model.py: Catalog and allow-lists
- app/nlp/translator.py: Produces the raw intent
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import Field, StrictInt, field_validator

from app.semantic.model import (
    ALLOWED_DIMENSIONS,
    ALLOWED_METRICS,
    ALLOWED_PROPERTY_TYPES,
    LATEST_YEAR,
    METRIC_FIELDS,
    SORTABLE_METRICS,
    is_feature_year,
    is_month,
)
from app.semantic.query import DSLModel, FilterState, NumericFilter

logger = logging.getLogger(__name__)

DEFAULT_FIELD = "avg_price_m2"
DEFAULT_SORT_BY = "avg_price_m2"
DEFAULT_LIMIT = 200
MAX_LOCATIONS = 100
INSEE_CODE_LENGTH = 5
SECTION_LENGTHS = (10, 11)


def _omit(field: str, value: Any) -> None:
    logger.info(f"[INTENT] Ignoring {field}={value!r}")
    return None


def _one_of(field: str, value: Any, allowed) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str) and value in allowed:
        return value
    return _omit(field, value)


def _as_list(value: Any) -> Any:
    """A single code is accepted where a list is expected."""
    if isinstance(value, str):
        return [value]
    return value


class UserIntent(DSLModel):
    """
    Loose intent shape.

    EXAMPLE:
        {"primaryDimension": "inseeCode", "metric": "total_sales",
         "propertyType": "house", "year": 2023, "minSales": 10,
         "inseeCodes": ["75112"], "sortOrder": "asc"}
    """
    primary_dimension: Optional[str] = None
    metric: Optional[str] = None
    property_type: Optional[str] = None
    year: Optional[int] = None
    month: Optional[int] = None
    insee_codes: List[str] = Field(default_factory=list, max_length=MAX_LOCATIONS)
    sections: List[str] = Field(default_factory=list, max_length=MAX_LOCATIONS)
    filters: Optional[Dict[str, NumericFilter]] = None
    min_sales: Optional[StrictInt] = Field(None, ge=0)
    limit: Optional[int] = None
    sort_order: Optional[str] = None

    # ---- lenient: dropped when outside the vocabulary ----

    @field_validator("primary_dimension", mode="before")
    @classmethod
    def lenient_dimension(cls, value: Any) -> Optional[str]:
        return _one_of("primaryDimension", value, ALLOWED_DIMENSIONS)

    @field_validator("metric", mode="before")
    @classmethod
    def lenient_metric(cls, value: Any) -> Optional[str]:
        return _one_of("metric", value, ALLOWED_METRICS)

    @field_validator("property_type", mode="before")
    @classmethod
    def lenient_property_type(cls, value: Any) -> Optional[str]:
        return _one_of("propertyType", value, ALLOWED_PROPERTY_TYPES)

    @field_validator("sort_order", mode="before")
    @classmethod
    def lenient_sort_order(cls, value: Any) -> Optional[str]:
        return _one_of("sortOrder", value, ("asc", "desc"))

    @field_validator("year", mode="before")
    @classmethod
    def lenient_year(cls, value: Any) -> Optional[int]:
        if value is None or is_feature_year(value):
            return value
        return _omit("year", value)

    @field_validator("month", mode="before")
    @classmethod
    def lenient_month(cls, value: Any) -> Optional[int]:
        if value is None or is_month(value):
            return value
        return _omit("month", value)

    @field_validator("limit", mode="before")
    @classmethod
    def lenient_limit(cls, value: Any) -> Optional[int]:
        if value is None:
            return None
        if isinstance(value, int) and not isinstance(value, bool) and 1 <= value <= 500:
            return value
        return _omit("limit", value)

    # ---- strict: structural problems fail validation ----

    @field_validator("insee_codes", "sections", mode="before")
    @classmethod
    def accept_single_code(cls, value: Any) -> Any:
        return _as_list(value) if value is not None else []

    @field_validator("insee_codes")
    @classmethod
    def check_insee_codes(cls, value: List[str]) -> List[str]:
        for code in value:
            if len(code) != INSEE_CODE_LENGTH:
                raise ValueError(f"INSEE code must have {INSEE_CODE_LENGTH} characters, got {code!r}")
        return value

    @field_validator("sections")
    @classmethod
    def check_sections(cls, value: List[str]) -> List[str]:
        for section in value:
            if len(section) not in SECTION_LENGTHS:
                raise ValueError(f"section identifier must have 10 or 11 characters, got {section!r}")
        return value

    @field_validator("filters")
    @classmethod
    def check_filter_keys(cls, value: Optional[Dict[str, NumericFilter]]) -> Optional[Dict[str, NumericFilter]]:
        if value:
            unknown = sorted(set(value) - set(METRIC_FIELDS))
            if unknown:
                raise ValueError(f"filter keys must be metric fields, got {unknown}")
        return value


def _apply_min_sales(
    filters: Optional[Dict[str, NumericFilter]],
    min_sales: Optional[int],
) -> Optional[Dict[str, NumericFilter]]:
    if not min_sales or min_sales <= 0:
        return filters
    merged = dict(filters or {})
    merged["total_sales"] = NumericFilter(operation="gte", value=min_sales)
    return merged


def _infer_sort_by(primary_dimension: Optional[str], metric: Optional[str]) -> str:
    if primary_dimension:
        return primary_dimension
    if metric and metric in SORTABLE_METRICS:
        return metric
    return DEFAULT_SORT_BY


def translate_intent(intent: Union[UserIntent, Mapping[str, Any]]) -> FilterState:
    """
    Normalize a loose intent into a FilterState.

    Args:
        intent: UserIntent or its raw mapping (camelCase or snake_case keys)

    Returns:
        FilterState with every default applied

    Raises:
        pydantic.ValidationError: Structurally invalid intent

    Example:
        >>> translate_intent({"minSales": 10}).filters["total_sales"].value
        10
    """
    parsed = intent if isinstance(intent, UserIntent) else UserIntent.model_validate(intent)

    filters = _apply_min_sales(dict(parsed.filters) if parsed.filters else None, parsed.min_sales)
    if not filters:
        filters = None

    level = "section" if parsed.primary_dimension == "section" or parsed.sections else "commune"
    state = FilterState(
        level=level,
        property_type=parsed.property_type or "apartment",
        field=parsed.metric or DEFAULT_FIELD,
        year=parsed.year if parsed.year is not None else LATEST_YEAR,
        month=parsed.month,
        insee_codes=list(parsed.insee_codes),
        sections=list(parsed.sections),
        filters=filters,
        sort_by=_infer_sort_by(parsed.primary_dimension, parsed.metric),
        sort_order=parsed.sort_order or "desc",
        limit=parsed.limit if parsed.limit is not None else DEFAULT_LIMIT,
        offset=0,
    )
    logger.debug(
        f"[INTENT] level={state.level.value} type={state.property_type.value} "
        f"field={state.field} year={state.year} sortBy={state.sort_by}"
    )
    return state
