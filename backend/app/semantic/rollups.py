"""
Rollup Selector
===============

Pure functions `(level, property type, time grain) -> relation handle`.

Relations are declared once in app/models.py (RELATION_TABLES). Selection
never builds names from caller input: it looks the combination up, and a
combination without a relation (ISO week at section level) raises
UnsupportedCombination.

RELATED FILES
-------------
- app/models.py: Relation tables and naming
- app/semantic/compiler.py: build_rollup_select
- app/semantic/deltas.py, app/semantic/slopes.py: Delta / slope reads
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple, Union

from sqlalchemy import Table

from app.models import (
    RELATION_TABLES,
    LevelEnum,
    PropertyTypeEnum,
    RelationFamily,
    TimeGrainEnum,
)
from app.semantic.errors import UnsupportedCombination
from app.semantic.model import COMPOSITION

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Relation:
    """
    Handle on one precomputed relation.

    PARAMETERS:
        name: Storage name (e.g., "houses_by_insee_code_year")
        family: rollup, delta or slope
        level / property_type / grain: The combination it was selected for
        table: SQLAlchemy Table to select from
        composition_key: Nested key for composition counts ("apartments"/"houses")
        composition_fields: Composition columns carried by the relation
    """
    name: str
    family: RelationFamily
    level: LevelEnum
    property_type: PropertyTypeEnum
    grain: TimeGrainEnum
    table: Table
    composition_key: str
    composition_fields: Tuple[str, ...]

    @property
    def location_field(self) -> str:
        """DSL field of the finest location key."""
        return "section" if self.level == LevelEnum.section else "inseeCode"

    @property
    def key_fields(self) -> Tuple[str, ...]:
        """DSL fields identifying a location."""
        if self.level == LevelEnum.section:
            return ("inseeCode", "section")
        return ("inseeCode",)


def _coerce(enum_cls, value, label: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise UnsupportedCombination(
            message=f"Unknown {label} {value!r}",
            field_name=label,
            suggestion=f"Use one of: {', '.join(e.value for e in enum_cls)}",
        ) from None


def _select(
    family: RelationFamily,
    level: Union[LevelEnum, str],
    property_type: Union[PropertyTypeEnum, str],
    grain: Union[TimeGrainEnum, str],
) -> Relation:
    level = _coerce(LevelEnum, level, "level")
    property_type = _coerce(PropertyTypeEnum, property_type, "propertyType")
    grain = _coerce(TimeGrainEnum, grain, "timeGrain")

    table: Optional[Table] = RELATION_TABLES.get((family, level, property_type, grain))
    if table is None:
        logger.warning(
            f"[ROLLUPS] No {family.value} relation for {level.value}/{property_type.value}/{grain.value}"
        )
        raise UnsupportedCombination(
            message=f"No {family.value} relation for level={level.value}, grain={grain.value}",
            details={"level": level.value, "propertyType": property_type.value, "grain": grain.value},
            suggestion="ISO week rollups only exist at commune level",
        )
    composition_key, composition_fields = COMPOSITION[property_type.value]
    return Relation(
        name=table.name,
        family=family,
        level=level,
        property_type=property_type,
        grain=grain,
        table=table,
        composition_key=composition_key,
        composition_fields=composition_fields,
    )


def select_rollup(
    level: Union[LevelEnum, str],
    property_type: Union[PropertyTypeEnum, str],
    grain: Union[TimeGrainEnum, str],
) -> Relation:
    """
    Select the rollup for a combination.

    EXAMPLES:
        >>> select_rollup("commune", "house", "year").name
        'houses_by_insee_code_year'
        >>> select_rollup("section", "apartment", "week")
        Traceback (most recent call last):
        UnsupportedCombination: ...
    """
    return _select(RelationFamily.rollup, level, property_type, grain)


def select_delta_relation(
    level: Union[LevelEnum, str],
    property_type: Union[PropertyTypeEnum, str],
) -> Relation:
    """Year-over-year delta relation for a level/property type."""
    return _select(RelationFamily.delta, level, property_type, TimeGrainEnum.year)


def select_slope_relation(
    level: Union[LevelEnum, str],
    property_type: Union[PropertyTypeEnum, str],
) -> Relation:
    """Latest-year slope relation for a level/property type."""
    return _select(RelationFamily.slope, level, property_type, TimeGrainEnum.month)
