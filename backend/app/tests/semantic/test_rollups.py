"""Unit tests for the rollup selector.

REFERENCES:
    app/semantic/rollups.py
    app/models.py (RELATION_TABLES, relation_name)
"""

import pytest

from app.models import LevelEnum, PropertyTypeEnum, RelationFamily, TimeGrainEnum
from app.semantic.errors import ErrorCode, UnsupportedCombination
from app.semantic.rollups import select_delta_relation, select_rollup, select_slope_relation


class TestSelectRollup:
    """(level, propertyType, timeGrain) -> Relation."""

    def test_commune_house_year(self):
        relation = select_rollup("commune", "house", "year")
        assert relation.name == "houses_by_insee_code_year"
        assert relation.family == RelationFamily.rollup
        assert relation.composition_key == "houses"
        assert "total_houses" in relation.composition_fields

    def test_is_deterministic(self):
        assert select_rollup("commune", "house", "year") == select_rollup(
            LevelEnum.commune, PropertyTypeEnum.house, TimeGrainEnum.year
        )

    @pytest.mark.parametrize(
        "level,ptype,grain,expected",
        [
            ("commune", "apartment", "month", "apartments_by_insee_code_month"),
            ("commune", "apartment", "week", "apartments_by_insee_code_week"),
            ("section", "apartment", "year", "apartments_by_section_year"),
            ("section", "house", "month", "houses_by_section_month"),
        ],
    )
    def test_names(self, level, ptype, grain, expected):
        assert select_rollup(level, ptype, grain).name == expected

    def test_section_week_is_unsupported(self):
        with pytest.raises(UnsupportedCombination) as exc:
            select_rollup("section", "apartment", "week")
        assert exc.value.code == ErrorCode.UNSUPPORTED_COMBINATION

    @pytest.mark.parametrize(
        "level,ptype,grain",
        [("district", "house", "year"), ("commune", "castle", "year"), ("commune", "house", "day")],
    )
    def test_unknown_values(self, level, ptype, grain):
        with pytest.raises(UnsupportedCombination):
            select_rollup(level, ptype, grain)

    def test_location_keys(self):
        assert select_rollup("section", "house", "year").key_fields == ("inseeCode", "section")
        assert select_rollup("commune", "house", "year").location_field == "inseeCode"


class TestDerivedRelations:
    def test_delta_relation(self):
        relation = select_delta_relation("section", "apartment")
        assert relation.name == "apartments_by_section_year_deltas"
        assert relation.family == RelationFamily.delta

    def test_slope_relation(self):
        relation = select_slope_relation("commune", "house")
        assert relation.name == "houses_by_insee_code_month_slopes"
        assert "window_months" in relation.table.c
