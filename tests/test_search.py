"""
Tests for row search: the SQL query and the in-memory filter must agree.
"""
import pytest

from opsgrid.errors import ValidationError
from opsgrid.grid import add_row, delete_row, get_sheet_rows, update_cell
from opsgrid.search import filter_rows, row_matches, search_sheet_data


@pytest.fixture
def populated(conn, owner, sheet):
    """Sheet with three live rows and one deleted row."""
    sheet_id = sheet["sheet"]["id"]
    cols = {c["name"]: c["id"] for c in sheet["columns"]}
    rows = [sheet["rows"][0]["id"]] + [add_row(conn, sheet_id, owner["id"])["id"] for _ in range(3)]
    values = [
        {"Site ID": "ST-1", "Notes": "FOOBAR tower", "Region": "North"},
        {"Site ID": "ST-2", "Notes": "bar only", "Region": "South"},
        {"Site ID": "ST-3", "Notes": "100% done_now", "Region": "north-east"},
        {"Site ID": "ST-4", "Notes": "foo but deleted", "Region": "North"},
    ]
    for row_id, row_values in zip(rows, values):
        for name, value in row_values.items():
            update_cell(conn, row_id, cols[name], value, owner["id"])
    delete_row(conn, rows[3], owner["id"])
    conn.commit()
    return {"sheet_id": sheet_id, "rows": rows, "cols": cols}


class TestSearchSheetData:
    def test_empty_query_returns_all_live_rows(self, conn, populated):
        assert search_sheet_data(conn, populated["sheet_id"], "", {}) == populated["rows"][:3]

    def test_term_is_case_insensitive_substring(self, conn, populated):
        assert search_sheet_data(conn, populated["sheet_id"], "foo") == [populated["rows"][0]]
        assert search_sheet_data(conn, populated["sheet_id"], "BAR") == populated["rows"][:2]

    def test_column_filters_combine_with_term(self, conn, populated):
        region = populated["cols"]["Region"]
        assert search_sheet_data(conn, populated["sheet_id"], "", {region: "north"}) == [
            populated["rows"][0],
            populated["rows"][2],
        ]
        assert search_sheet_data(conn, populated["sheet_id"], "tower", {str(region): "north"}) == [populated["rows"][0]]

    def test_blank_filter_values_are_ignored(self, conn, populated):
        region = populated["cols"]["Region"]
        assert search_sheet_data(conn, populated["sheet_id"], "", {region: "  "}) == populated["rows"][:3]

    def test_like_wildcards_are_literal(self, conn, populated):
        assert search_sheet_data(conn, populated["sheet_id"], "100%") == [populated["rows"][2]]
        assert search_sheet_data(conn, populated["sheet_id"], "e_n") == [populated["rows"][2]]
        assert search_sheet_data(conn, populated["sheet_id"], "0%x") == []

    def test_invalid_filter_key(self, conn, populated):
        with pytest.raises(ValidationError):
            search_sheet_data(conn, populated["sheet_id"], "", {"region": "north"})


class TestFilterRows:
    """The in-memory filter mirrors the SQL search."""

    @pytest.mark.parametrize(
        "term,filters",
        [
            ("", {}),
            ("foo", {}),
            ("BAR", {}),
            ("100%", {}),
            ("st-", {"Region": "NORTH"}),
            ("nothing-matches", {}),
        ],
    )
    def test_matches_sql(self, conn, populated, term, filters):
        by_id = {populated["cols"][name]: value for name, value in filters.items()}
        rows = get_sheet_rows(conn, populated["sheet_id"])
        expected = search_sheet_data(conn, populated["sheet_id"], term, by_id)
        assert [r["id"] for r in filter_rows(rows, term, by_id)] == expected

    def test_row_matches_requires_filtered_cell(self):
        row = {"cells": {"1": "alpha"}}
        assert row_matches(row, "alp", {})
        assert not row_matches(row, "", {2: "alp"})

    @pytest.mark.parametrize("term", ["élan", "Élan", "ÉLAN", "straße"])
    def test_non_ascii_terms_fold_like_the_sql_search(self, conn, owner, populated, term):
        row_id = populated["rows"][1]
        update_cell(conn, row_id, populated["cols"]["Notes"], "ÉLAN Site STRAßE", owner["id"])
        conn.commit()

        expected = search_sheet_data(conn, populated["sheet_id"], term)
        rows = get_sheet_rows(conn, populated["sheet_id"])
        assert expected == [row_id]
        assert [r["id"] for r in filter_rows(rows, term)] == expected
