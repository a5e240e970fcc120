"""Unit tests for the filter / sort / metric / computation compilers.

WHAT: DSL fragments -> SQLAlchemy expressions, statement builders
WHY: Identifiers must only come from the registry and values must always
     be bound parameters; invalid shapes must be rejected, never guessed

REFERENCES:
    app/semantic/compiler.py
    app/semantic/query.py
"""

from datetime import date

import pytest
from sqlalchemy import func, select

from app.models import RELATION_TABLES, LevelEnum, PropertySale, PropertyTypeEnum, RelationFamily, TimeGrainEnum
from app.semantic.compiler import (
    TRANSACTIONS,
    build_aggregation_select,
    build_computation_select,
    build_query_select,
    build_rollup_select,
    compile_computations,
    compile_filters,
    compile_group_by,
    compile_metrics,
    compile_predicate,
    compile_sort,
    normalize_pagination,
    percentile_label,
)
from app.semantic.errors import InvalidOperatorValue, UnknownField, UnsupportedCombination, UnsupportedOperator
from app.semantic.query import (
    AggregationArgs,
    ComputationArgs,
    FilterPredicate,
    FilterState,
    MetricSpec,
    PercentileComputation,
    QueryArgs,
    SortSpec,
)

YEARLY = RELATION_TABLES[(RelationFamily.rollup, LevelEnum.commune, PropertyTypeEnum.apartment, TimeGrainEnum.year)]


def _predicate(field, operator, value):
    return FilterPredicate(field=field, operator=operator, value=value)


# ============================================================================
# Filter compiler
# ============================================================================

class TestFilterCompiler:
    """compile_predicate / compile_filters."""

    @pytest.mark.parametrize("operator,sql_op", [("=", "="), ("!=", "!="), (">", ">"), (">=", ">="),
                                                 ("<", "<"), ("<=", "<="), ("gte", ">="), ("lte", "<=")])
    def test_comparison_binds_value(self, compile_pg, operator, sql_op):
        compiled = compile_pg(compile_predicate(_predicate("avg_price_m2", operator, 4200), YEARLY))
        sql = str(compiled)
        assert f"apartments_by_insee_code_year.avg_price_m2 {sql_op} %(" in sql
        assert "4200" not in sql
        assert 4200 in compiled.params.values()

    def test_values_are_never_identifiers(self, compile_pg):
        hostile = "0; DROP TABLE property_sales"
        compiled = compile_pg(compile_predicate(_predicate("inseeCode", "=", hostile), YEARLY))
        assert "DROP" not in str(compiled)
        assert hostile in compiled.params.values()

    def test_between_is_inclusive_range(self, render_pg):
        sql = render_pg(select(YEARLY.c.insee_code).where(
            compile_predicate(_predicate("avg_price_m2", "between", [3000, 5000]), YEARLY)
        ))
        assert "apartments_by_insee_code_year.avg_price_m2 BETWEEN 3000 AND 5000" in sql

    def test_between_bound_order_is_not_enforced(self, render_pg):
        sql = render_pg(select(YEARLY.c.insee_code).where(
            compile_predicate(_predicate("avg_price_m2", "between", [5000, 3000]), YEARLY)
        ))
        assert "BETWEEN 5000 AND 3000" in sql

    @pytest.mark.parametrize("value", [[1], [1, 2, 3], 5, None, [1, None]])
    def test_between_requires_exactly_two_values(self, value):
        with pytest.raises(InvalidOperatorValue):
            compile_predicate(_predicate("avg_price_m2", "between", value), YEARLY)

    def test_in_requires_non_empty_array(self):
        with pytest.raises(InvalidOperatorValue):
            compile_predicate(_predicate("inseeCode", "in", []), YEARLY)
        with pytest.raises(InvalidOperatorValue):
            compile_predicate(_predicate("inseeCode", "in", "75112"), YEARLY)

    def test_in_binds_every_value(self, compile_pg):
        compiled = compile_pg(select(YEARLY.c.insee_code).where(
            compile_predicate(_predicate("inseeCode", "in", ["75112", "75113"]), YEARLY)
        ))
        assert "POSTCOMPILE_insee_code_1" in str(compiled)
        assert ["75112", "75113"] in compiled.params.values()

    def test_ilike_requires_pattern_string(self):
        with pytest.raises(InvalidOperatorValue):
            compile_predicate(_predicate("inseeCode", "ilike", 75), YEARLY)

    def test_ilike(self, compile_pg):
        compiled = compile_pg(select(YEARLY.c.insee_code).where(
            compile_predicate(_predicate("inseeCode", "ilike", "75%"), YEARLY)
        ))
        assert "insee_code ILIKE %(insee_code_1)s" in str(compiled)
        assert compiled.params == {"insee_code_1": "75%"}

    def test_is_null_requires_boolean(self):
        with pytest.raises(InvalidOperatorValue):
            compile_predicate(_predicate("avg_price_m2", "is_null", "true"), YEARLY)

    def test_is_null_true_and_false(self, render_pg):
        is_null = render_pg(select(YEARLY.c.insee_code).where(
            compile_predicate(_predicate("avg_price_m2", "is_null", True), YEARLY)
        ))
        is_not_null = render_pg(select(YEARLY.c.insee_code).where(
            compile_predicate(_predicate("avg_price_m2", "is_null", False), YEARLY)
        ))
        assert "avg_price_m2 IS NULL" in is_null
        assert "avg_price_m2 IS NOT NULL" in is_not_null

    @pytest.mark.parametrize("operator", ["=", "gte", "<"])
    def test_scalar_operators_reject_arrays(self, operator):
        with pytest.raises(InvalidOperatorValue):
            compile_predicate(_predicate("avg_price_m2", operator, [1, 2]), YEARLY)

    def test_unsupported_operator(self):
        with pytest.raises(UnsupportedOperator):
            compile_predicate(_predicate("avg_price_m2", "LIKE", "x"), YEARLY)

    def test_operator_checked_before_field(self):
        with pytest.raises(UnsupportedOperator):
            compile_predicate(_predicate("not_a_field", "~", 1), YEARLY)

    def test_unknown_field(self):
        with pytest.raises(UnknownField):
            compile_predicate(_predicate("avg_price_m2; --", "=", 1), YEARLY)

    def test_compile_filters_empty(self):
        assert compile_filters([], YEARLY) is None

    def test_compile_filters_and_tree(self, render_pg):
        where = compile_filters(
            [_predicate("year", "=", 2023), _predicate("total_sales", "gte", 10)],
            YEARLY,
        )
        sql = render_pg(select(YEARLY.c.insee_code).where(where))
        assert "year = 2023 AND apartments_by_insee_code_year.total_sales >= 10" in sql


class TestIsNullPartition:
    """is_null true / false split any row set exactly."""

    def test_counts_sum_to_total(self, test_db_session):
        for i, area in enumerate([None, 45.5, None, 80, 120]):
            test_db_session.add(PropertySale(
                id=i + 1, datemut=date(2023, 1, 1), anneemut=2023, moismut=1,
                primary_insee_code="75112", valeurfonc=100000, sbati=area,
            ))
        test_db_session.flush()

        def count(where=None):
            statement = select(func.count()).select_from(TRANSACTIONS)
            if where is not None:
                statement = statement.where(where)
            return test_db_session.execute(statement).scalar_one()

        family = RelationFamily.transactions
        nulls = count(compile_filters([_predicate("floorArea", "is_null", True)], TRANSACTIONS, family))
        not_nulls = count(compile_filters([_predicate("floorArea", "is_null", False)], TRANSACTIONS, family))
        assert nulls == 2
        assert not_nulls == 3
        assert nulls + not_nulls == count()


# ============================================================================
# Sort compiler
# ============================================================================

class TestSortCompiler:
    def test_missing_direction_defaults_to_ascending(self):
        ordering = compile_sort([SortSpec(field="year")], YEARLY)
        assert str(ordering[0]) == "apartments_by_insee_code_year.year ASC"

    def test_order_is_preserved(self):
        ordering = compile_sort(
            [SortSpec(field="total_sales", direction="desc"), SortSpec(field="inseeCode", direction="asc")],
            YEARLY,
        )
        assert [str(o) for o in ordering] == [
            "apartments_by_insee_code_year.total_sales DESC",
            "apartments_by_insee_code_year.insee_code ASC",
        ]

    def test_unknown_field_fails(self):
        with pytest.raises(UnknownField):
            compile_sort([SortSpec(field="random()")], YEARLY)

    def test_labels_take_precedence(self):
        label = func.count(TRANSACTIONS.c.id).label("count_id")
        ordering = compile_sort([SortSpec(field="count_id", direction="desc")], TRANSACTIONS,
                                RelationFamily.transactions, labels={"count_id": label})
        assert len(ordering) == 1


# ============================================================================
# Metric / computation compiler
# ============================================================================

class TestMetricCompiler:
    def test_labels(self):
        columns = compile_metrics([MetricSpec(metric="count", field="id"), MetricSpec(metric="avg", field="price")])
        assert [c.name for c in columns] == ["count_id", "avg_price"]

    def test_sum_defaults_to_zero(self, render_pg):
        sql = render_pg(select(*compile_metrics([MetricSpec(metric="sum", field="price")])))
        assert "coalesce(sum(property_sales.valeurfonc), 0) AS sum_price" in sql

    def test_count_is_exact(self, render_pg):
        sql = render_pg(select(*compile_metrics([MetricSpec(metric="count", field="propertyTypeLabel")])))
        assert 'CAST(count(property_sales.libtypbien) AS INTEGER) AS "count_propertyTypeLabel"' in sql

    def test_unknown_aggregate(self):
        with pytest.raises(UnsupportedOperator):
            compile_metrics([MetricSpec(metric="median", field="price")])

    def test_numeric_aggregate_on_text_field(self):
        with pytest.raises(InvalidOperatorValue):
            compile_metrics([MetricSpec(metric="sum", field="propertyTypeLabel")])

    def test_unknown_field(self):
        with pytest.raises(UnknownField):
            compile_metrics([MetricSpec(metric="sum", field="anneemut")])


class TestComputationCompiler:
    def test_percentile_label(self):
        assert percentile_label("price", 50) == "percentile_price_50"
        assert percentile_label("price", 50.0) == "percentile_price_50"
        assert percentile_label("price", 12.5) == "percentile_price_12_5"

    def test_percentile_uses_continuous_percentile(self, render_pg):
        columns = compile_computations([PercentileComputation(name="percentile", field="price", p=90)])
        sql = render_pg(select(*columns))
        assert "percentile_cont(0.9) WITHIN GROUP (ORDER BY property_sales.valeurfonc)" in sql
        assert "AS percentile_price_90" in sql

    def test_avg_price_per_m2_guards_denominator(self, render_pg):
        args = ComputationArgs.model_validate({"computations": [{"name": "avgPricePerM2"}]})
        sql = render_pg(select(*compile_computations(args.computations)))
        assert "sum(property_sales.sbati) > 0" in sql
        assert 'END AS "avgPricePerM2"' in sql

    def test_avg_price_per_m2_null_on_empty_group(self, test_db_session):
        args = ComputationArgs.model_validate({"computations": [{"name": "avgPricePerM2"}]})
        value = test_db_session.execute(select(*compile_computations(args.computations))).scalar_one()
        assert value is None

    def test_unknown_computation_rejected_by_model(self):
        with pytest.raises(ValueError):
            ComputationArgs.model_validate({"computations": [{"name": "stddev"}]})


class TestGroupByAndPagination:
    def test_group_by_labels(self):
        columns = compile_group_by(["year", "primaryInseeCode"])
        assert [c.name for c in columns] == ["year", "primaryInseeCode"]

    def test_group_by_non_groupable(self):
        with pytest.raises(UnknownField):
            compile_group_by(["price"])

    @pytest.mark.parametrize(
        "limit,offset,expected",
        [(None, None, (50, 0)), (0, 0, (50, 0)), (-3, -5, (50, 0)), (20, 10, (20, 10)), (1000, 0, (500, 0))],
    )
    def test_normalize_pagination(self, limit, offset, expected):
        assert normalize_pagination(limit, offset) == expected


# ============================================================================
# Statement builders
# ============================================================================

class TestRollupSelect:
    def test_defaults(self, render_pg):
        sql = render_pg(build_rollup_select(FilterState()))
        assert "FROM apartments_by_insee_code_year" in sql
        assert "apartments_by_insee_code_year.year = 2024" in sql
        assert (
            "ORDER BY apartments_by_insee_code_year.avg_price_m2 DESC, "
            "apartments_by_insee_code_year.insee_code ASC"
        ) in sql
        assert "LIMIT 200" in sql

    def test_month_selects_monthly_rollup(self, render_pg):
        sql = render_pg(build_rollup_select(FilterState(year=2023, month=5, property_type="house")))
        assert "FROM houses_by_insee_code_month" in sql
        assert "houses_by_insee_code_month.month = 5" in sql

    def test_locations_and_metric_filters(self, render_pg):
        state = FilterState.model_validate({
            "level": "section",
            "sections": ["75112000BZ"],
            "inseeCodes": ["75112"],
            "filters": {"total_sales": {"operation": "gte", "value": 10},
                        "avg_price_m2": {"operation": "between", "value": [3000, 9000]}},
            "sortBy": "total_sales",
            "sortOrder": "asc",
            "offset": 20,
        })
        sql = render_pg(build_rollup_select(state))
        assert "FROM apartments_by_section_year" in sql
        assert "apartments_by_section_year.section IN ('75112000BZ')" in sql
        assert "apartments_by_section_year.total_sales >= 10" in sql
        assert "apartments_by_section_year.avg_price_m2 BETWEEN 3000 AND 9000" in sql
        assert "ORDER BY apartments_by_section_year.total_sales ASC, apartments_by_section_year.section ASC" in sql
        assert "OFFSET 20" in sql

    def test_sections_at_commune_level_rejected(self):
        with pytest.raises(UnknownField):
            build_rollup_select(FilterState(sections=["75112000BZ"]))

    def test_sort_by_unknown_field(self):
        with pytest.raises(UnknownField):
            build_rollup_select(FilterState(sort_by="insee_code"))


class TestTransactionsSelects:
    def test_query_defaults(self, render_pg):
        sql = render_pg(build_query_select(QueryArgs()))
        assert "property_sales.valeurfonc AS price" in sql
        assert "LIMIT 50" in sql

    def test_query_limit_capped(self, render_pg):
        sql = render_pg(build_query_select(QueryArgs(select=["price"], limit=10000)))
        assert "LIMIT 500" in sql

    def test_aggregation_sorts_by_produced_label(self, render_pg):
        args = AggregationArgs.model_validate({
            "groupBy": ["year"],
            "metrics": [{"metric": "avg", "field": "price"}],
            "filters": [{"field": "primaryInseeCode", "operator": "=", "value": "75112"}],
            "sort": [{"field": "avg_price", "direction": "desc"}],
        })
        sql = render_pg(build_aggregation_select(args))
        assert "property_sales.anneemut AS" in sql
        assert "GROUP BY" in sql
        assert "property_sales.primary_insee_code = '75112'" in sql
        assert "ORDER BY avg_price DESC" in sql

    def test_aggregation_requires_metrics(self):
        with pytest.raises(ValueError):
            AggregationArgs.model_validate({"groupBy": ["year"], "metrics": []})

    def test_computation_select(self, render_pg):
        args = ComputationArgs.model_validate({
            "groupBy": ["primaryInseeCode"],
            "computations": [{"name": "percentile", "field": "price", "p": 50}],
        })
        sql = render_pg(build_computation_select(args))
        assert "AS percentile_price_50" in sql
        assert "GROUP BY" in sql


def test_week_rollup_requires_commune_level():
    from app.semantic.rollups import select_rollup
    with pytest.raises(UnsupportedCombination):
        select_rollup(LevelEnum.section, PropertyTypeEnum.house, TimeGrainEnum.week)
