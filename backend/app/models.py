"""SQLAlchemy models, relation tables and enums.

The raw `property_sales` table is mapped with the declarative Base. The
rollup, delta and slope relations are materialized views refreshed by an
external process; they are declared here as Core tables on the same
metadata so the compilers can reference real Column objects. Column layout
follows the metric catalog in app/semantic/model.py.
"""

import enum
from typing import Dict, List, Tuple

from sqlalchemy import Column, Date, Float, Integer, Numeric, String, Table
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import UserDefinedType

from app.semantic.model import (
    COMPOSITION,
    DELTA_SUFFIXES,
    DOUBLE_PRECISION_METRICS,
    METRIC_FIELDS,
)


# Single Base used by the entire application
Base = declarative_base()
metadata = Base.metadata


# Enums ---------------------------------------------------------

class LevelEnum(str, enum.Enum):
    commune = "commune"
    section = "section"


class PropertyTypeEnum(str, enum.Enum):
    apartment = "apartment"
    house = "house"


class TimeGrainEnum(str, enum.Enum):
    month = "month"
    year = "year"
    week = "week"


class RelationFamily(str, enum.Enum):
    """Families of relations; each has one authoritative field table."""
    rollup = "rollup"
    delta = "delta"
    slope = "slope"
    transactions = "transactions"


class Geometry(UserDefinedType):
    """PostGIS geometry column (SRID 4326). Only referenced in spatial predicates."""

    cache_ok = True

    def get_col_spec(self, **kw):
        return "geometry(MultiPolygon, 4326)"


# Raw transactions ---------------------------------------------

class PropertySale(Base):
    """One land-registry mutation (a sale), as published in the open data set."""

    __tablename__ = "property_sales"

    id = Column(Integer, primary_key=True)
    datemut = Column(Date, nullable=False)
    anneemut = Column(Integer, nullable=False, index=True)
    moismut = Column(Integer, nullable=False)
    primary_insee_code = Column(String(5), index=True)
    primary_section = Column(String(11), index=True)
    valeurfonc = Column(Numeric(14, 2))

    # Unit counts
    nblocmut = Column(Integer)
    nblocmai = Column(Integer)
    nblocapt = Column(Integer)
    nblocdep = Column(Integer)
    nblocact = Column(Integer)
    nbapt1pp = Column(Integer)
    nbapt2pp = Column(Integer)
    nbapt3pp = Column(Integer)
    nbapt4pp = Column(Integer)
    nbapt5pp = Column(Integer)
    nbmai1pp = Column(Integer)
    nbmai2pp = Column(Integer)
    nbmai3pp = Column(Integer)
    nbmai4pp = Column(Integer)
    nbmai5pp = Column(Integer)

    # Floor areas (m²)
    sbati = Column(Numeric(12, 2))
    sbatmai = Column(Numeric(12, 2))
    sbatapt = Column(Numeric(12, 2))
    sbatact = Column(Numeric(12, 2))
    sapt1pp = Column(Numeric(12, 2))
    sapt2pp = Column(Numeric(12, 2))
    sapt3pp = Column(Numeric(12, 2))
    sapt4pp = Column(Numeric(12, 2))
    sapt5pp = Column(Numeric(12, 2))
    smai1pp = Column(Numeric(12, 2))
    smai2pp = Column(Numeric(12, 2))
    smai3pp = Column(Numeric(12, 2))
    smai4pp = Column(Numeric(12, 2))
    smai5pp = Column(Numeric(12, 2))

    codtypbien = Column(String(16))
    libtypbien = Column(String(255))


# Geometry relations (bounding-box scoping) ---------------------

communes_geom = Table(
    "communes_geom",
    metadata,
    Column("insee_code", String(5), primary_key=True),
    Column("name", String(255)),
    Column("geom", Geometry()),
)

sections_geom = Table(
    "sections_geom",
    metadata,
    Column("section", String(11), primary_key=True),
    Column("insee_code", String(5), index=True),
    Column("geom", Geometry()),
)

GEOMETRY_TABLES: Dict[LevelEnum, Table] = {
    LevelEnum.commune: communes_geom,
    LevelEnum.section: sections_geom,
}


# Rollup / delta / slope relations ------------------------------

_PLURAL = {
    PropertyTypeEnum.apartment: "apartments",
    PropertyTypeEnum.house: "houses",
}
_LEVEL_KEY = {
    LevelEnum.commune: "insee_code",
    LevelEnum.section: "section",
}


def relation_name(
    family: RelationFamily,
    level: LevelEnum,
    property_type: PropertyTypeEnum,
    grain: TimeGrainEnum = TimeGrainEnum.year,
) -> str:
    """Storage name of a relation, e.g. houses_by_insee_code_year."""
    base = f"{_PLURAL[property_type]}_by_{_LEVEL_KEY[level]}"
    if family == RelationFamily.delta:
        return f"{base}_year_deltas"
    if family == RelationFamily.slope:
        return f"{base}_month_slopes"
    return f"{base}_{grain.value}"


def _metric_type(name: str):
    return Float if name in DOUBLE_PRECISION_METRICS else Integer


def _location_columns(level: LevelEnum) -> List[Column]:
    columns = [Column("insee_code", String(5), nullable=False)]
    if level == LevelEnum.section:
        columns.append(Column("section", String(11), nullable=False))
    return columns


def _rollup_table(level: LevelEnum, property_type: PropertyTypeEnum, grain: TimeGrainEnum) -> Table:
    columns = _location_columns(level)
    if grain == TimeGrainEnum.week:
        columns += [Column("iso_year", Integer, nullable=False), Column("iso_week", Integer, nullable=False)]
    else:
        columns.append(Column("year", Integer, nullable=False))
        if grain == TimeGrainEnum.month:
            columns.append(Column("month", Integer, nullable=False))
    columns += [Column(name, _metric_type(name), nullable=False) for name in METRIC_FIELDS]
    _, composition = COMPOSITION[property_type.value]
    columns += [Column(name, Integer, nullable=False) for name in composition]
    return Table(relation_name(RelationFamily.rollup, level, property_type, grain), metadata, *columns)


def _delta_table(level: LevelEnum, property_type: PropertyTypeEnum) -> Table:
    columns = _location_columns(level)
    columns += [Column("year", Integer, nullable=False), Column("base_year", Integer, nullable=False)]
    _, composition = COMPOSITION[property_type.value]
    for name in METRIC_FIELDS + composition:
        for suffix in DELTA_SUFFIXES:
            column_type = Float if suffix == "pct_change" else _metric_type(name)
            columns.append(Column(f"{name}_{suffix}", column_type))
    return Table(relation_name(RelationFamily.delta, level, property_type), metadata, *columns)


def _slope_table(level: LevelEnum, property_type: PropertyTypeEnum) -> Table:
    columns = _location_columns(level)
    columns += [
        Column("year", Integer),
        Column("month", Integer),
        Column("window_months", Integer),
        Column("window_start_year", Integer),
        Column("window_start_month", Integer),
    ]
    _, composition = COMPOSITION[property_type.value]
    columns += [Column(f"{name}_slope", Float) for name in METRIC_FIELDS + composition]
    return Table(relation_name(RelationFamily.slope, level, property_type), metadata, *columns)


def _build_relation_tables() -> Dict[Tuple[RelationFamily, LevelEnum, PropertyTypeEnum, TimeGrainEnum], Table]:
    tables = {}
    for level in LevelEnum:
        for property_type in PropertyTypeEnum:
            for grain in TimeGrainEnum:
                # ISO week rollups only exist per commune
                if level == LevelEnum.section and grain == TimeGrainEnum.week:
                    continue
                tables[(RelationFamily.rollup, level, property_type, grain)] = _rollup_table(
                    level, property_type, grain
                )
            tables[(RelationFamily.delta, level, property_type, TimeGrainEnum.year)] = _delta_table(
                level, property_type
            )
            tables[(RelationFamily.slope, level, property_type, TimeGrainEnum.month)] = _slope_table(
                level, property_type
            )
    return tables


# Built once at import; keyed by (family, level, property type, grain)
RELATION_TABLES = _build_relation_tables()
