from __future__ import annotations

import pytest

from fieldops.meta_engine.models.entity import DefaultSort
from fieldops.meta_engine.schemas.access import QueryOptions, SortOrder
from fieldops.meta_engine.services.query_service import (
    Clause,
    build_filter_clause,
    build_query,
    build_search_clause,
    build_sort_clause,
    combine_params,
    combine_where_clauses,
    normalize_filters,
    parse_query_params,
)


class TestSearch:
    def test_empty_term_or_fields(self):
        assert build_search_clause("", ["a", "b"]) == Clause(None, (), 0)
        assert build_search_clause("   ", ["a"]) == Clause(None, (), 0)
        assert build_search_clause("term", []) == Clause(None, (), 0)
        assert build_search_clause(None, ["a"]) == Clause(None, (), 0)

    def test_one_placeholder_per_field(self):
        result = build_search_clause("  john ", ["first_name", "last_name"])
        assert result.clause == "(first_name ILIKE $1 OR last_name ILIKE $2)"
        assert result.params == ("%john%", "%john%")
        assert result.param_offset == 2

    def test_offset_and_prefix(self):
        result = build_search_clause("x", ["name"], param_offset=3, table_prefix="c")
        assert result.clause == "(c.name ILIKE $4)"
        assert result.param_offset == 4


class TestFilter:
    def test_unknown_field_dropped(self):
        assert build_filter_clause({"unknownField": "x"}, ["known"], 0) == Clause(None, (), 0)

    def test_unknown_field_keeps_offset(self):
        assert build_filter_clause({"secret": 1}, ["known"], 5).param_offset == 5

    def test_exact_match(self):
        result = build_filter_clause({"status": "active", "role_id": 2}, ["status", "role_id"], 0)
        assert result.clause == "status = $1 AND role_id = $2"
        assert result.params == ("active", 2)
        assert result.param_offset == 2

    @pytest.mark.parametrize(
        "op,sql",
        [("gt", ">"), ("gte", ">="), ("lt", "<"), ("lte", "<="), ("not", "!=")],
    )
    def test_comparison_operators(self, op, sql):
        result = build_filter_clause({"priority": {op: 3}}, ["priority"], 1)
        assert result.clause == f"priority {sql} $2"
        assert result.params == (3,)

    def test_in_expands_placeholders_and_offset(self):
        result = build_filter_clause(
            {"status": {"in": ["a", "b", "c"]}, "priority": "high"},
            ["status", "priority"],
            2,
        )
        assert result.clause == "status IN ($3, $4, $5) AND priority = $6"
        assert result.params == ("a", "b", "c", "high")
        assert result.param_offset == 6

    def test_in_accepts_comma_separated_string(self):
        result = build_filter_clause({"status": {"in": "open, closed"}}, ["status"], 0)
        assert result.clause == "status IN ($1, $2)"
        assert result.params == ("open", "closed")

    def test_list_value_is_in(self):
        result = build_filter_clause({"id": [4, 5]}, ["id"], 0)
        assert result.clause == "id IN ($1, $2)"

    def test_empty_in_list_dropped(self):
        assert build_filter_clause({"status": {"in": []}}, ["status"], 0).clause is None

    def test_unknown_operator_dropped(self):
        result = build_filter_clause({"priority": {"like": "%x%", "gt": 1}}, ["priority"], 0)
        assert result.clause == "priority > $1"
        assert result.params == (1,)

    def test_null_values_use_no_placeholder(self):
        result = build_filter_clause(
            {"completed_at": None, "assigned_technician_id": {"not": None}, "status": "open"},
            ["completed_at", "assigned_technician_id", "status"],
            0,
        )
        assert result.clause == (
            "completed_at IS NULL AND assigned_technician_id IS NOT NULL AND status = $1"
        )
        assert result.params == ("open",)

    def test_table_prefix(self):
        result = build_filter_clause({"status": "x"}, ["status"], 0, table_prefix="wo")
        assert result.clause == "wo.status = $1"


class TestSort:
    def test_invalid_field_uses_default_pair(self):
        sort = build_sort_clause("bad_field", "desc", ["name", "id"], {"field": "id", "order": "ASC"})
        assert sort == "id ASC"

    def test_invalid_order_uses_default_order(self):
        sort = build_sort_clause("name", "bogus", ["name", "id"], {"field": "id", "order": "DESC"})
        assert sort == "name DESC"

    def test_valid_field_and_order(self):
        assert build_sort_clause("name", "asc", ["name"], DefaultSort("id", SortOrder.desc)) == (
            "name ASC"
        )

    def test_missing_order_uses_default_order(self):
        assert build_sort_clause("name", None, ["name"], {"field": "id", "order": "desc"}) == (
            "name DESC"
        )

    def test_no_default_field_falls_back_to_first_sortable(self):
        assert build_sort_clause(None, "desc", ["name", "id"], None) == "name ASC"
        assert build_sort_clause(None, None, [], None) == "id ASC"

    def test_prefix(self):
        assert build_sort_clause("name", "desc", ["name"], None, table_prefix="t") == "t.name DESC"


class TestCombine:
    def test_combine_where_clauses(self):
        assert combine_where_clauses([None, "", "a = $1", Clause("b = $2", (1,), 2)]) == (
            "a = $1 AND b = $2"
        )
        assert combine_where_clauses([None, "  "]) is None

    def test_combine_params_preserves_order(self):
        assert combine_params([1, None], None, (2,), []) == [1, None, 2]

    def test_round_trip_placeholder_alignment(self):
        search = build_search_clause("john", ["a", "b"])
        filters = build_filter_clause({"c": "1"}, ["c"], search.param_offset)
        params = combine_params(search.params, filters.params)
        assert len(params) == 3
        assert filters.clause == "c = $3"
        assert params[2] == "1"


class TestNormalize:
    def test_suffix_keys(self):
        assert normalize_filters(
            {"priority[gt]": "2", "priority[lte]": "5", "status": "open"}
        ) == {"priority": {"gt": "2", "lte": "5"}, "status": "open"}

    def test_exact_and_suffix_on_same_field(self):
        filters = normalize_filters({"status": "open", "status[not]": "closed"})
        assert filters == {"status": {"eq": "open", "not": "closed"}}
        result = build_filter_clause(filters, ["status"], 0)
        assert result.clause == "status = $1 AND status != $2"

    def test_parse_query_params(self):
        options = parse_query_params(
            {
                "search": "pump",
                "sortBy": "name",
                "sortOrder": "desc",
                "page": "2",
                "limit": "10",
                "includeInactive": "true",
                "status[in]": "pending,assigned",
            }
        )
        assert options.search == "pump"
        assert options.sort_by == "name"
        assert options.sort_order == "desc"
        assert options.page == 2
        assert options.limit == 10
        assert options.include_inactive is True
        assert options.filters == {"status": {"in": "pending,assigned"}}


class TestPagination:
    def test_clamps(self):
        assert QueryOptions(page=0, limit=5000).page_window(default_limit=50, max_limit=200) == (
            200,
            0,
        )
        assert QueryOptions(page="3", limit="-4").page_window(default_limit=50, max_limit=200) == (
            1,
            2,
        )
        assert QueryOptions(page="x").page_window(default_limit=25, max_limit=200) == (25, 0)


class TestBuildQuery:
    def test_full_composition(self, registry):
        meta = registry.get("work_order")
        options = QueryOptions(
            search="leak",
            filters={"status": "pending", "secret_column": "x", "priority": {"in": ["high", "urgent"]}},
            sort_by="priority",
            sort_order="asc",
        )
        built = build_query(options, meta)
        assert built.where_clause == (
            "(work_order_number ILIKE $1 OR name ILIKE $2 OR summary ILIKE $3)"
            " AND status = $4 AND priority IN ($5, $6)"
            " AND is_active = $7"
        )
        assert built.params == ("%leak%", "%leak%", "%leak%", "pending", "high", "urgent", True)
        assert built.param_offset == 7
        assert built.order_by == "priority ASC"

    def test_include_inactive_and_default_sort(self, registry):
        built = build_query(QueryOptions(include_inactive=True, sort_by="password"), registry.get("invoice"))
        assert built.where_clause is None
        assert built.params == ()
        assert built.order_by == "created_at DESC"

    def test_explicit_is_active_filter_wins(self, registry):
        built = build_query(QueryOptions(filters={"is_active": False}), registry.get("customer"))
        assert built.where_clause == "is_active = $1"
        assert built.params == (False,)


class TestMalformedListParams:
    def test_unparseable_values_fall_back_to_defaults(self):
        options = parse_query_params(
            {
                "includeInactive": "maybe",
                "search": ["a", "b"],
                "sortBy": 5,
                "sortOrder": {"x": 1},
                "page": float("inf"),
                "limit": "ten",
            }
        )
        assert options.include_inactive is False
        assert options.search is None
        assert options.sort_by is None
        assert options.sort_order is None
        assert options.page == 1
        assert options.limit is None

    @pytest.mark.parametrize("raw,expected", [("TRUE", True), ("on", True), ("0", False), (1, True)])
    def test_include_inactive_flag(self, raw, expected):
        assert parse_query_params({"includeInactive": raw}).include_inactive is expected

    def test_non_mapping_filters_are_ignored(self):
        assert QueryOptions(filters="status=open").filters == {}

    def test_non_string_keys_are_skipped(self):
        assert normalize_filters({1: "x", "status": "open"}) == {"status": "open"}
