"""Row search over sheet cells.

`search_sheet_data` runs in the database; `filter_rows` applies the same
predicate to rows that are already loaded.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from opsgrid.cell_types import encode_cell_value
from opsgrid.errors import ValidationError
from opsgrid.util import to_int


def _like_pattern(term: str) -> str:
    escaped = term.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def normalize_filters(column_filters: Optional[Dict[Any, Any]]) -> Dict[int, str]:
    """Column id -> non-empty filter text. Blank filter values are dropped."""
    if not column_filters:
        return {}
    if not isinstance(column_filters, dict):
        raise ValidationError("columnFilters must be an object")
    out: Dict[int, str] = {}
    for key, value in column_filters.items():
        column_id = to_int(key)
        if column_id is None:
            raise ValidationError(f"Invalid column id in filters: {key}")
        text = "" if value is None else str(value).strip()
        if text:
            out[column_id] = text
    return out


def search_sheet_data(
    conn,
    sheet_id: int,
    search_term: str = "",
    column_filters: Optional[Dict[Any, Any]] = None,
) -> List[int]:
    """Ids of live rows matching the term and every column filter, in position order.

    The term matches when any cell of the row contains it; each filter
    requires its column's cell to contain the filter text. Matching is a
    case-insensitive substring test.
    """
    term = str(search_term or "").strip()
    filters = normalize_filters(column_filters)
    clauses = ["r.sheet_id = ?", "r.is_deleted = 0"]
    params: List[object] = [sheet_id]
    if term:
        clauses.append(
            """EXISTS (
                SELECT 1 FROM sheet_cells c
                WHERE c.row_id = r.id AND LOWER(COALESCE(c.value, '')) LIKE ? ESCAPE '\\'
            )"""
        )
        params.append(_like_pattern(term))
    for column_id, text in filters.items():
        clauses.append(
            """EXISTS (
                SELECT 1 FROM sheet_cells c
                WHERE c.row_id = r.id AND c.column_id = ? AND LOWER(COALESCE(c.value, '')) LIKE ? ESCAPE '\\'
            )"""
        )
        params.extend([column_id, _like_pattern(text)])
    rows = conn.execute(
        f"SELECT r.id FROM sheet_rows r WHERE {' AND '.join(clauses)} ORDER BY r.position, r.id",
        tuple(params),
    ).fetchall()
    return [int(row["id"]) for row in rows]


def _cell_text(value: Any) -> str:
    return (encode_cell_value(value) or "").lower()


def row_matches(row: Dict[str, Any], search_term: str = "", column_filters: Optional[Dict[Any, Any]] = None) -> bool:
    cells = row.get("cells") or {}
    term = str(search_term or "").strip().lower()
    if term and not any(term in _cell_text(value) for value in cells.values()):
        return False
    for column_id, text in normalize_filters(column_filters).items():
        if str(column_id) not in cells or text.lower() not in _cell_text(cells[str(column_id)]):
            return False
    return True


def filter_rows(rows: List[Dict[str, Any]], search_term: str = "", column_filters: Optional[Dict[Any, Any]] = None) -> List[Dict[str, Any]]:
    return [row for row in rows if not row.get("is_deleted") and row_matches(row, search_term, column_filters)]
