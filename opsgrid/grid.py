"""Column, row and cell stores for sheets.

Functions take an open connection and leave committing to the caller, except
`bulk_update_cells`, which owns its transaction.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from opsgrid.audit import log_sheet_action
from opsgrid.cell_types import (
    check_column_settings,
    coerce_cell_value,
    decode_cell_value,
    default_cell_value,
    encode_cell_value,
    format_cell_value,
    missing_cell_value,
    normalize_column_type,
    validate_cell_value,
)
from opsgrid.errors import ConflictError, NotFoundError, ValidationError
from opsgrid.util import dump_json, iso, parse_json_field, to_bool, to_int, utcnow

logger = logging.getLogger(__name__)

DEFAULT_COLUMN_WIDTH = 120
PURGE_CHUNK = 200


def serialize_column(row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "sheet_id": row["sheet_id"],
        "name": row["name"],
        "type": row["type"],
        "position": row["position"],
        "width": row["width"],
        "is_required": bool(row["is_required"]),
        "is_unique": bool(row["is_unique"]),
        "default_value": row["default_value"],
        "validation_rules": parse_json_field(row["validation_rules_json"]),
        "format_options": parse_json_field(row["format_options_json"]),
    }


def _require_sheet(conn, sheet_id: int):
    sheet = conn.execute("SELECT id, column_position_seq FROM sheets WHERE id = ?", (sheet_id,)).fetchone()
    if not sheet:
        raise NotFoundError("Sheet not found")
    return sheet


def get_columns(conn, sheet_id: int) -> List[Dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM sheet_columns WHERE sheet_id = ? ORDER BY position, id",
        (sheet_id,),
    ).fetchall()
    return [serialize_column(row) for row in rows]


def get_column(conn, column_id: int) -> Optional[Dict[str, Any]]:
    row = conn.execute("SELECT * FROM sheet_columns WHERE id = ?", (column_id,)).fetchone()
    return serialize_column(row) if row else None


def column_fields(spec: Dict[str, Any], current: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Validated column attributes from a request payload, layered over `current`."""
    current = current or {}
    name = str(spec.get("name", current.get("name", "")) or "").strip()
    if not name:
        raise ValidationError("Column name is required")
    ctype = normalize_column_type(spec.get("type", current.get("type", "text")))
    rules = spec.get("validation_rules", current.get("validation_rules", {})) or {}
    options = spec.get("format_options", current.get("format_options", {})) or {}
    if not isinstance(rules, dict) or not isinstance(options, dict):
        raise ValidationError("validation_rules and format_options must be objects")
    check_column_settings(rules, options)
    default_value = spec.get("default_value", current.get("default_value"))
    if default_value not in (None, ""):
        try:
            coerce_cell_value({"type": ctype}, default_value)
        except ValidationError as exc:
            raise ValidationError(f"default_value: {exc.message}") from exc
    return {
        "name": name,
        "type": ctype,
        "width": to_int(spec.get("width"), current.get("width", DEFAULT_COLUMN_WIDTH)),
        "is_required": to_bool(spec.get("is_required"), bool(current.get("is_required", False))),
        "is_unique": to_bool(spec.get("is_unique"), bool(current.get("is_unique", False))),
        "default_value": None if default_value in (None, "") else str(default_value),
        "validation_rules": rules,
        "format_options": options,
    }


def insert_column(conn, sheet_id: int, fields: Dict[str, Any], position: int) -> int:
    now = iso()
    cur = conn.execute(
        """
        INSERT INTO sheet_columns
        (sheet_id, name, type, position, width, is_required, is_unique, default_value,
         validation_rules_json, format_options_json, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            sheet_id,
            fields["name"],
            fields["type"],
            position,
            fields["width"],
            1 if fields["is_required"] else 0,
            1 if fields["is_unique"] else 0,
            fields["default_value"],
            dump_json(fields["validation_rules"]),
            dump_json(fields["format_options"]),
            now,
            now,
        ),
    )
    return int(cur.lastrowid)


def _advance_position_seq(conn, sheet_id: int, next_position: int) -> None:
    conn.execute(
        """
        UPDATE sheets
        SET column_position_seq = CASE WHEN column_position_seq > ? THEN column_position_seq ELSE ? END,
            updated_at = ?
        WHERE id = ?
        """,
        (next_position, next_position, iso(), sheet_id),
    )


def next_column_position(conn, sheet_id: int) -> int:
    """Max existing position + 1, never below the sheet's position high-water mark."""
    sheet = _require_sheet(conn, sheet_id)
    last = conn.execute("SELECT MAX(position) AS p FROM sheet_columns WHERE sheet_id = ?", (sheet_id,)).fetchone()
    candidate = 0 if last is None or last["p"] is None else int(last["p"]) + 1
    return max(candidate, int(sheet["column_position_seq"] or 0))


def add_column(conn, sheet_id: int, spec: Dict[str, Any], actor_id: Optional[int]) -> Dict[str, Any]:
    fields = column_fields(spec)
    position = next_column_position(conn, sheet_id)
    column_id = insert_column(conn, sheet_id, fields, position)
    _advance_position_seq(conn, sheet_id, position + 1)
    log_sheet_action(
        conn,
        sheet_id,
        actor_id,
        "add_column",
        {"column_name": fields["name"], "column_type": fields["type"]},
    )
    return get_column(conn, column_id)


def _delete_column_rows(conn, column_id: int) -> None:
    conn.execute("DELETE FROM sheet_cells WHERE column_id = ?", (column_id,))
    conn.execute("DELETE FROM sheet_columns WHERE id = ?", (column_id,))


def delete_column(conn, sheet_id: int, column_id: int, actor_id: Optional[int]) -> None:
    column = get_column(conn, column_id)
    if not column or column["sheet_id"] != sheet_id:
        raise NotFoundError("Column not found")
    _delete_column_rows(conn, column_id)
    log_sheet_action(conn, sheet_id, actor_id, "delete_column", {"column_name": column["name"]})


def update_columns(conn, sheet_id: int, desired: List[Dict[str, Any]], actor_id: Optional[int]) -> List[Dict[str, Any]]:
    """Reconcile the sheet's columns against the complete desired list.

    Existing columns missing from `desired` are deleted together with their
    cells, known ids are updated in place and everything else is inserted.
    """
    sheet = _require_sheet(conn, sheet_id)
    if not isinstance(desired, list):
        raise ValidationError("columns must be a list")
    existing = {column["id"]: column for column in get_columns(conn, sheet_id)}

    plan = []
    for item in desired:
        if not isinstance(item, dict):
            raise ValidationError("Each column must be an object")
        column_id = to_int(item.get("id"))
        current = existing.get(column_id) if column_id is not None else None
        fields = column_fields(item, current)
        position = to_int(item.get("position"), current["position"] if current else None)
        plan.append((current, fields, position))

    keep_ids = {current["id"] for current, _, _ in plan if current}
    deleted = [column_id for column_id in existing if column_id not in keep_ids]
    for column_id in deleted:
        _delete_column_rows(conn, column_id)

    next_position = int(sheet["column_position_seq"] or 0)
    for current, _, position in plan:
        if position is not None:
            next_position = max(next_position, position + 1)
    for column_id in keep_ids:
        next_position = max(next_position, existing[column_id]["position"] + 1)

    added = 0
    updated = 0
    for current, fields, position in plan:
        if current:
            conn.execute(
                """
                UPDATE sheet_columns
                SET name = ?, type = ?, position = ?, width = ?, is_required = ?, is_unique = ?,
                    default_value = ?, validation_rules_json = ?, format_options_json = ?, updated_at = ?
                WHERE id = ? AND sheet_id = ?
                """,
                (
                    fields["name"],
                    fields["type"],
                    position,
                    fields["width"],
                    1 if fields["is_required"] else 0,
                    1 if fields["is_unique"] else 0,
                    fields["default_value"],
                    dump_json(fields["validation_rules"]),
                    dump_json(fields["format_options"]),
                    iso(),
                    current["id"],
                    sheet_id,
                ),
            )
            updated += 1
            continue
        if position is None:
            position = next_position
            next_position += 1
        insert_column(conn, sheet_id, fields, position)
        added += 1

    _advance_position_seq(conn, sheet_id, next_position)
    log_sheet_action(
        conn,
        sheet_id,
        actor_id,
        "update_columns",
        {"added": added, "updated": updated, "deleted": len(deleted)},
    )
    return get_columns(conn, sheet_id)


def get_row(conn, row_id: int):
    return conn.execute("SELECT * FROM sheet_rows WHERE id = ?", (row_id,)).fetchone()


def _require_live_row(conn, row_id: Optional[int]):
    row = get_row(conn, row_id) if row_id is not None else None
    if not row or row["is_deleted"]:
        raise NotFoundError("Row not found")
    return row


def serialize_row(row, cells: Optional[Dict[str, Any]] = None, cell_meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "sheet_id": row["sheet_id"],
        "position": row["position"],
        "is_deleted": bool(row["is_deleted"]),
        "metadata": parse_json_field(row["metadata_json"]),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
        "cells": cells or {},
        "cell_meta": cell_meta or {},
    }


def _insert_cell(conn, row_id: int, column: Dict[str, Any], value: Any, status: str = "valid", message: Optional[str] = None, formatted_value: Optional[str] = None) -> None:
    now = iso()
    display = formatted_value if formatted_value is not None else format_cell_value(column, value)
    conn.execute(
        """
        INSERT INTO sheet_cells
        (row_id, column_id, value, formatted_value, validation_status, validation_message, version, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
        """,
        (row_id, column["id"], encode_cell_value(value), display, status, message, now, now),
    )


def add_row(conn, sheet_id: int, actor_id: Optional[int]) -> Dict[str, Any]:
    """Append a row after the last live row and fill one default cell per column."""
    _require_sheet(conn, sheet_id)
    last = conn.execute(
        "SELECT MAX(position) AS p FROM sheet_rows WHERE sheet_id = ? AND is_deleted = 0",
        (sheet_id,),
    ).fetchone()
    position = 0 if last is None or last["p"] is None else int(last["p"]) + 1
    now = iso()
    cur = conn.execute(
        """
        INSERT INTO sheet_rows (sheet_id, position, is_deleted, metadata_json, created_at, updated_at)
        VALUES (?, ?, 0, ?, ?, ?)
        """,
        (sheet_id, position, dump_json({"created_by": actor_id}), now, now),
    )
    row_id = int(cur.lastrowid)

    cells: Dict[str, Any] = {}
    for column in get_columns(conn, sheet_id):
        value = default_cell_value(column)
        status, message = _cell_status(conn, row_id, column, value)
        _insert_cell(conn, row_id, column, value, status, message)
        cells[str(column["id"])] = value

    log_sheet_action(conn, sheet_id, actor_id, "add_row", {"row_id": row_id, "position": position})
    return serialize_row(get_row(conn, row_id), cells)


def delete_row(conn, row_id: int, actor_id: Optional[int]) -> Dict[str, Any]:
    """Soft delete: the row is hidden from reads, its cells stay in storage."""
    row = get_row(conn, row_id)
    if not row:
        raise NotFoundError("Row not found")
    now = iso()
    conn.execute(
        "UPDATE sheet_rows SET is_deleted = 1, deleted_at = ?, deleted_by = ?, updated_at = ? WHERE id = ?",
        (now, actor_id, now, row_id),
    )
    log_sheet_action(conn, row["sheet_id"], actor_id, "delete_row", {"row_id": row_id})
    return {"id": row_id, "sheet_id": row["sheet_id"], "is_deleted": True}


def restore_row(conn, row_id: int, actor_id: Optional[int]) -> Dict[str, Any]:
    row = get_row(conn, row_id)
    if not row:
        raise NotFoundError("Row not found")
    if not row["is_deleted"]:
        raise ConflictError("Row is not deleted")
    conn.execute(
        "UPDATE sheet_rows SET is_deleted = 0, deleted_at = NULL, deleted_by = NULL, updated_at = ? WHERE id = ?",
        (iso(), row_id),
    )
    log_sheet_action(conn, row["sheet_id"], actor_id, "restore_row", {"row_id": row_id})
    return {"id": row_id, "sheet_id": row["sheet_id"], "is_deleted": False}


def _chunks(values: List[int], size: int) -> Iterable[List[int]]:
    for start in range(0, len(values), size):
        yield values[start:start + size]


def purge_deleted_rows(
    conn,
    sheet_id: Optional[int] = None,
    older_than_days: Optional[int] = None,
    actor_id: Optional[int] = None,
) -> int:
    """Hard-delete soft-deleted rows and their cells. Returns the number of rows removed.

    With `older_than_days`, only rows deleted at least that long ago are purged.
    """
    where = ["is_deleted = 1"]
    params: List[object] = []
    if sheet_id is not None:
        where.append("sheet_id = ?")
        params.append(sheet_id)
    if older_than_days is not None:
        cutoff = iso(utcnow() - dt.timedelta(days=max(0, int(older_than_days))))
        where.append("deleted_at IS NOT NULL AND deleted_at <= ?")
        params.append(cutoff)
    rows = conn.execute(
        f"SELECT id, sheet_id FROM sheet_rows WHERE {' AND '.join(where)} ORDER BY id",
        tuple(params),
    ).fetchall()

    per_sheet: Dict[int, int] = {}
    row_ids = []
    for row in rows:
        row_ids.append(int(row["id"]))
        per_sheet[int(row["sheet_id"])] = per_sheet.get(int(row["sheet_id"]), 0) + 1
    for chunk in _chunks(row_ids, PURGE_CHUNK):
        placeholders = ", ".join(["?"] * len(chunk))
        conn.execute(f"DELETE FROM sheet_cells WHERE row_id IN ({placeholders})", tuple(chunk))
        conn.execute(f"DELETE FROM sheet_rows WHERE id IN ({placeholders})", tuple(chunk))
    for purged_sheet_id, count in per_sheet.items():
        log_sheet_action(conn, purged_sheet_id, actor_id, "purge_rows", {"count": count})
    return len(row_ids)


def get_sheet_rows(conn, sheet_id: int) -> List[Dict[str, Any]]:
    """Live rows ordered by position, each with the cells actually stored for it."""
    columns = {column["id"]: column for column in get_columns(conn, sheet_id)}
    rows = conn.execute(
        "SELECT * FROM sheet_rows WHERE sheet_id = ? AND is_deleted = 0 ORDER BY position, id",
        (sheet_id,),
    ).fetchall()
    cell_rows = conn.execute(
        """
        SELECT c.row_id, c.column_id, c.value, c.formatted_value, c.validation_status, c.validation_message, c.version
        FROM sheet_cells c
        JOIN sheet_rows r ON r.id = c.row_id
        WHERE r.sheet_id = ? AND r.is_deleted = 0
        """,
        (sheet_id,),
    ).fetchall()

    values: Dict[int, Dict[str, Any]] = {}
    meta: Dict[int, Dict[str, Any]] = {}
    for cell in cell_rows:
        column = columns.get(cell["column_id"])
        if column is None:
            continue
        key = str(cell["column_id"])
        values.setdefault(cell["row_id"], {})[key] = decode_cell_value(column, cell["value"])
        meta.setdefault(cell["row_id"], {})[key] = {
            "formatted_value": cell["formatted_value"],
            "validation_status": cell["validation_status"],
            "validation_message": cell["validation_message"],
            "version": cell["version"],
        }
    return [serialize_row(row, values.get(row["id"]), meta.get(row["id"])) for row in rows]


def _cell_status(conn, row_id: int, column: Dict[str, Any], typed: Any) -> Tuple[str, Optional[str]]:
    """Validation status for a coerced value, including the uniqueness check across live rows."""
    status, message = validate_cell_value(column, typed)
    encoded = encode_cell_value(typed)
    if status == "valid" and column["is_unique"] and encoded not in (None, ""):
        duplicate = conn.execute(
            """
            SELECT c.id FROM sheet_cells c
            JOIN sheet_rows r ON r.id = c.row_id
            WHERE c.column_id = ? AND c.row_id <> ? AND r.is_deleted = 0 AND c.value = ?
            LIMIT 1
            """,
            (column["id"], row_id, encoded),
        ).fetchone()
        if duplicate:
            status, message = "invalid", "Duplicate value"
    return status, message


def _write_cell(
    conn,
    row_id: int,
    column: Dict[str, Any],
    value: Any,
    formatted_value: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> Dict[str, Any]:
    typed = coerce_cell_value(column, value)
    status, message = _cell_status(conn, row_id, column, typed)
    encoded = encode_cell_value(typed)
    display = formatted_value if formatted_value is not None else format_cell_value(column, typed)

    existing = conn.execute(
        "SELECT id, value, formatted_value, validation_status, version FROM sheet_cells WHERE row_id = ? AND column_id = ?",
        (row_id, column["id"]),
    ).fetchone()
    current_version = int(existing["version"]) if existing else 0
    if expected_version is not None and int(expected_version) != current_version:
        raise ConflictError(
            "Cell was changed by someone else",
            {"current_version": current_version},
        )

    if existing is None:
        _insert_cell(conn, row_id, column, typed, status, message, display)
        version = 1
    elif (existing["value"], existing["formatted_value"], existing["validation_status"]) == (encoded, display, status):
        version = current_version
    else:
        conn.execute(
            """
            UPDATE sheet_cells
            SET value = ?, formatted_value = ?, validation_status = ?, validation_message = ?,
                version = version + 1, updated_at = ?
            WHERE id = ?
            """,
            (encoded, display, status, message, iso(), existing["id"]),
        )
        version = current_version + 1
    return {
        "row_id": row_id,
        "column_id": column["id"],
        "value": typed,
        "formatted_value": display,
        "validation_status": status,
        "validation_message": message,
        "version": version,
    }


def update_cell(
    conn,
    row_id: int,
    column_id: int,
    value: Any,
    actor_id: Optional[int] = None,
    formatted_value: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> Dict[str, Any]:
    """Upsert the cell at (row, column).

    Without `expected_version` concurrent writers follow last-write-wins.
    """
    row = _require_live_row(conn, row_id)
    column = get_column(conn, column_id)
    if not column:
        raise NotFoundError("Column not found")
    if column["sheet_id"] != row["sheet_id"]:
        raise ValidationError("Column does not belong to this row's sheet")
    return _write_cell(conn, row["id"], column, value, formatted_value, expected_version)


def read_cell(conn, row_id: int, column_id: int):
    column = get_column(conn, column_id)
    if not column:
        raise NotFoundError("Column not found")
    cell = conn.execute(
        "SELECT value FROM sheet_cells WHERE row_id = ? AND column_id = ?",
        (row_id, column_id),
    ).fetchone()
    if cell is None:
        return missing_cell_value(column)
    return decode_cell_value(column, cell["value"])


def check_cell_updates(conn, sheet_id: int, updates: Any) -> List[Dict[str, Any]]:
    """Validate a batch of cell writes for one sheet without writing anything."""
    if not isinstance(updates, list) or not updates:
        raise ValidationError("Updates array is required")
    columns = {column["id"]: column for column in get_columns(conn, sheet_id)}
    live_rows = {
        int(row["id"])
        for row in conn.execute(
            "SELECT id FROM sheet_rows WHERE sheet_id = ? AND is_deleted = 0",
            (sheet_id,),
        ).fetchall()
    }
    normalized = []
    for index, item in enumerate(updates, start=1):
        if not isinstance(item, dict):
            raise ValidationError(f"Update #{index} must be an object")
        row_id = to_int(item.get("row_id"))
        column_id = to_int(item.get("column_id"))
        if row_id is None or column_id is None:
            raise ValidationError(f"Update #{index} needs row_id and column_id")
        if row_id not in live_rows:
            raise ValidationError(f"Update #{index}: row {row_id} is not a live row of this sheet")
        column = columns.get(column_id)
        if column is None:
            raise ValidationError(f"Update #{index}: column {column_id} does not belong to this sheet")
        try:
            coerce_cell_value(column, item.get("value"))
        except ValidationError as exc:
            raise ValidationError(f"Update #{index}: {exc.message}") from exc
        normalized.append(
            {
                "row_id": row_id,
                "column_id": column_id,
                "value": item.get("value"),
                "formatted_value": item.get("formatted_value"),
            }
        )
    return normalized


def bulk_update_cells(conn, updates: List[Dict[str, Any]], actor_id: Optional[int] = None) -> bool:
    """Apply every cell write in one transaction.

    Either all writes are committed or none are; the caller only learns
    success or failure.
    """
    try:
        touched: Dict[int, int] = {}
        for item in updates:
            row = _require_live_row(conn, to_int(item.get("row_id")))
            column = get_column(conn, to_int(item.get("column_id")))
            if not column or column["sheet_id"] != row["sheet_id"]:
                raise ValidationError("Column does not belong to this row's sheet")
            _write_cell(conn, row["id"], column, item.get("value"), item.get("formatted_value"))
            touched[int(row["sheet_id"])] = touched.get(int(row["sheet_id"]), 0) + 1
        for sheet_id, count in touched.items():
            log_sheet_action(conn, sheet_id, actor_id, "bulk_update_cells", {"count": count})
        conn.commit()
        return True
    except Exception:
        conn.rollback()
        logger.warning("Bulk update of %d cells failed; batch rolled back", len(updates), exc_info=True)
        return False
