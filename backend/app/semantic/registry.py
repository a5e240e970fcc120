"""
Field Registry
==============

Immutable allow-list mapping DSL field names to storage columns, one
authoritative table per relation family.

WHY THIS FILE EXISTS
--------------------
Every compiler (filters, sorts, metrics, group-by) turns a DSL field name into
a column through this registry and nowhere else. A field that is not in the
table for the relation family being queried raises UnknownField, so a user
value can never become a SQL identifier.

The registry is built once at import time (REGISTRY) and exposes only
read-only views. Lookups are pure functions over it.

FAMILIES
--------
- rollup:        dimension keys + metric catalog + composition counts
- delta:         dimension keys + base_year + {field}_{base|current|delta|pct_change}
- slope:         dimension keys + window metadata + {field}_slope
- transactions:  camelCase fields over the raw property_sales columns

RELATED FILES
-------------
- app/semantic/model.py: Catalog the tables are derived from
- app/models.py: Table objects whose columns descriptors point at
- app/semantic/compiler.py: Main consumer
"""

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, Mapping, Tuple

from sqlalchemy import Column, Table

from app.models import RelationFamily
from app.semantic.errors import UnknownField
from app.semantic.model import (
    APARTMENT_COMPOSITION_FIELDS,
    DELTA_SUFFIXES,
    DIMENSIONS,
    HOUSE_COMPOSITION_FIELDS,
    METRIC_FIELDS,
    SLOPE_WINDOW_FIELDS,
)

logger = logging.getLogger(__name__)


# =============================================================================
# DESCRIPTORS
# =============================================================================

@dataclass(frozen=True)
class ColumnDescriptor:
    """
    Resolved storage column for a DSL field.

    PARAMETERS:
        field: DSL name (e.g., "inseeCode", "avg_price_m2_pct_change")
        column: Storage column name (e.g., "insee_code")
        family: Relation family this descriptor belongs to
        kind: "dimension", "metric", "composition", "window" or "attribute"
        numeric: True if numeric comparisons/aggregates make sense
        groupable: True if allowed in a group-by clause
    """
    field: str
    column: str
    family: RelationFamily
    kind: str
    numeric: bool = True
    groupable: bool = False


COMPOSITION_FIELDS: Tuple[str, ...] = APARTMENT_COMPOSITION_FIELDS + HOUSE_COMPOSITION_FIELDS

# Raw transaction fields: DSL name -> (column, numeric, groupable)
TRANSACTION_FIELDS: Dict[str, Tuple[str, bool, bool]] = {
    "id": ("id", True, False),
    "date": ("datemut", False, True),
    "year": ("anneemut", True, True),
    "month": ("moismut", True, True),
    "primaryInseeCode": ("primary_insee_code", False, True),
    "primarySection": ("primary_section", False, True),
    "price": ("valeurfonc", True, False),
    "nbProperties": ("nblocmut", True, False),
    "nbHouses": ("nblocmai", True, False),
    "nbApartments": ("nblocapt", True, False),
    "nbSecondaryUnits": ("nblocdep", True, False),
    "nbWorkspaces": ("nblocact", True, False),
    "nbApt1Room": ("nbapt1pp", True, False),
    "nbApt2Room": ("nbapt2pp", True, False),
    "nbApt3Room": ("nbapt3pp", True, False),
    "nbApt4Room": ("nbapt4pp", True, False),
    "nbApt5Room": ("nbapt5pp", True, False),
    "nbHouse1Room": ("nbmai1pp", True, False),
    "nbHouse2Room": ("nbmai2pp", True, False),
    "nbHouse3Room": ("nbmai3pp", True, False),
    "nbHouse4Room": ("nbmai4pp", True, False),
    "nbHouse5Room": ("nbmai5pp", True, False),
    "floorArea": ("sbati", True, False),
    "houseFloorArea": ("sbatmai", True, False),
    "apartmentFloorArea": ("sbatapt", True, False),
    "workspaceFloorArea": ("sbatact", True, False),
    "apt1RoomArea": ("sapt1pp", True, False),
    "apt2RoomArea": ("sapt2pp", True, False),
    "apt3RoomArea": ("sapt3pp", True, False),
    "apt4RoomArea": ("sapt4pp", True, False),
    "apt5RoomArea": ("sapt5pp", True, False),
    "house1RoomArea": ("smai1pp", True, False),
    "house2RoomArea": ("smai2pp", True, False),
    "house3RoomArea": ("smai3pp", True, False),
    "house4RoomArea": ("smai4pp", True, False),
    "house5RoomArea": ("smai5pp", True, False),
    "propertyTypeCode": ("codtypbien", False, True),
    "propertyTypeLabel": ("libtypbien", False, True),
}

# Default projection of a transactions query
DEFAULT_TRANSACTION_SELECT: Tuple[str, ...] = (
    "id",
    "date",
    "primaryInseeCode",
    "primarySection",
    "price",
    "nbProperties",
    "nbHouses",
    "nbApartments",
    "floorArea",
    "apartmentFloorArea",
    "houseFloorArea",
    "propertyTypeCode",
    "propertyTypeLabel",
)


# =============================================================================
# REGISTRY
# =============================================================================

class FieldRegistry:
    """
    Read-only field tables, one per relation family.

    USAGE:
        descriptor = REGISTRY.resolve("avg_price_m2", RelationFamily.rollup)
        column = REGISTRY.column(table, "avg_price_m2", RelationFamily.rollup)
    """

    def __init__(self, tables: Mapping[RelationFamily, Iterable[ColumnDescriptor]]):
        frozen = {}
        for family, descriptors in tables.items():
            frozen[family] = MappingProxyType({d.field: d for d in descriptors})
        self._tables = MappingProxyType(frozen)

    def resolve(self, field: str, family: RelationFamily = RelationFamily.rollup) -> ColumnDescriptor:
        """Return the descriptor for field, raising UnknownField if not allow-listed."""
        table = self._tables.get(family, MappingProxyType({}))
        descriptor = table.get(field) if isinstance(field, str) else None
        if descriptor is None:
            logger.warning(f"[REGISTRY] Rejected field {field!r} for family {family.value}")
            raise UnknownField(
                message=f"Unknown field {field!r}",
                field_name=str(field),
                details={"family": family.value},
            )
        return descriptor

    def column(self, table: Table, field: str, family: RelationFamily = RelationFamily.rollup) -> Column:
        """
        Resolve field to a Column of a concrete relation.

        A field that is allow-listed for the family but absent from this
        relation (e.g. month on a yearly rollup) is also rejected.
        """
        descriptor = self.resolve(field, family)
        column = table.c.get(descriptor.column)
        if column is None:
            logger.warning(f"[REGISTRY] Field {field!r} not available on {table.name}")
            raise UnknownField(
                message=f"Field {field!r} is not available on relation {table.name}",
                field_name=field,
                details={"family": family.value, "relation": table.name},
            )
        return column

    def is_allowed(self, field: str, family: RelationFamily = RelationFamily.rollup) -> bool:
        return isinstance(field, str) and field in self._tables.get(family, {})

    def fields(self, family: RelationFamily) -> Tuple[str, ...]:
        return tuple(self._tables.get(family, {}).keys())

    def groupable_fields(self, family: RelationFamily) -> FrozenSet[str]:
        return frozenset(f for f, d in self._tables.get(family, {}).items() if d.groupable)


def _dimension_descriptors(family: RelationFamily, names: Iterable[str]):
    for name in names:
        dimension = DIMENSIONS[name]
        yield ColumnDescriptor(
            field=name,
            column=dimension.column,
            family=family,
            kind="dimension",
            numeric=dimension.column not in ("insee_code", "section"),
            groupable=True,
        )


def build_registry() -> FieldRegistry:
    """Build the process-wide registry from the catalog."""
    rollup = list(_dimension_descriptors(RelationFamily.rollup, DIMENSIONS.keys()))
    rollup += [ColumnDescriptor(m, m, RelationFamily.rollup, "metric") for m in METRIC_FIELDS]
    rollup += [ColumnDescriptor(c, c, RelationFamily.rollup, "composition") for c in COMPOSITION_FIELDS]

    delta = list(_dimension_descriptors(RelationFamily.delta, ("inseeCode", "section", "year")))
    delta.append(ColumnDescriptor("base_year", "base_year", RelationFamily.delta, "dimension", groupable=True))
    for name in METRIC_FIELDS + COMPOSITION_FIELDS:
        kind = "metric" if name in METRIC_FIELDS else "composition"
        for suffix in DELTA_SUFFIXES:
            delta.append(ColumnDescriptor(f"{name}_{suffix}", f"{name}_{suffix}", RelationFamily.delta, kind))

    slope = list(_dimension_descriptors(RelationFamily.slope, ("inseeCode", "section", "year", "month")))
    slope += [ColumnDescriptor(w, w, RelationFamily.slope, "window") for w in SLOPE_WINDOW_FIELDS]
    for name in METRIC_FIELDS + COMPOSITION_FIELDS:
        kind = "metric" if name in METRIC_FIELDS else "composition"
        slope.append(ColumnDescriptor(f"{name}_slope", f"{name}_slope", RelationFamily.slope, kind))

    transactions = [
        ColumnDescriptor(name, column, RelationFamily.transactions, "attribute", numeric, groupable)
        for name, (column, numeric, groupable) in TRANSACTION_FIELDS.items()
    ]

    return FieldRegistry(
        {
            RelationFamily.rollup: rollup,
            RelationFamily.delta: delta,
            RelationFamily.slope: slope,
            RelationFamily.transactions: transactions,
        }
    )


REGISTRY = build_registry()


def resolve(field: str, family: RelationFamily = RelationFamily.rollup) -> ColumnDescriptor:
    """Module-level shortcut for REGISTRY.resolve."""
    return REGISTRY.resolve(field, family)
