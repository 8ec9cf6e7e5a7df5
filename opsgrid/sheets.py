"""Sheet aggregate: sheet records, default layout, stats, public links and export."""

from __future__ import annotations

import csv
import io
import secrets
import string
import time
from typing import Any, Dict, List, Optional

from opsgrid.audit import log_action, log_sheet_action
from opsgrid.cell_types import encode_cell_value
from opsgrid.errors import NotFoundError, ValidationError
from opsgrid.grid import column_fields, add_row, get_columns, get_sheet_rows, insert_column
from opsgrid.util import dump_json, iso, parse_iso_datetime, parse_json_field, to_bool, utcnow

DEFAULT_COLUMNS = [
    {"name": "Site ID", "type": "text"},
    {"name": "Scenario", "type": "text"},
    {"name": "MR Number", "type": "text"},
    {"name": "IQF Number", "type": "text"},
    {"name": "Status", "type": "select", "validation_rules": {"options": ["Pending", "Done", "Problem"]}},
    {"name": "Date", "type": "date"},
    {"name": "Contractor", "type": "text"},
    {"name": "Region", "type": "text"},
    {"name": "Notes", "type": "text"},
]

BASE36 = string.digits + string.ascii_lowercase
ACCESS_KEY_RANDOM_CHARS = 13


def serialize_sheet(row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "name": row["name"],
        "description": row["description"],
        "owner_id": row["owner_id"],
        "is_active": bool(row["is_active"]),
        "settings": parse_json_field(row["settings_json"]),
        "metadata": parse_json_field(row["metadata_json"]),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def get_sheet(conn, sheet_id: int) -> Optional[Dict[str, Any]]:
    row = conn.execute("SELECT * FROM sheets WHERE id = ?", (sheet_id,)).fetchone()
    return serialize_sheet(row) if row else None


def require_sheet(conn, sheet_id: int) -> Dict[str, Any]:
    sheet = get_sheet(conn, sheet_id)
    if not sheet:
        raise NotFoundError("Sheet not found")
    return sheet


def create_sheet(
    conn,
    name: str,
    description: str,
    owner_id: int,
    settings: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Create a sheet with the default column layout and one empty row.

    Nothing is rolled back here: a failure after the sheet insert leaves the
    partial sheet in the caller's transaction.
    """
    name = str(name or "").strip()
    if not name:
        raise ValidationError("Sheet name is required")
    if settings is not None and not isinstance(settings, dict):
        raise ValidationError("settings must be an object")
    now = iso()
    cur = conn.execute(
        """
        INSERT INTO sheets (name, description, owner_id, is_active, settings_json, metadata_json, column_position_seq, created_at, updated_at)
        VALUES (?, ?, ?, 1, ?, ?, 0, ?, ?)
        """,
        (name, str(description or "").strip(), owner_id, dump_json(settings), dump_json({"created_by": owner_id}), now, now),
    )
    sheet_id = int(cur.lastrowid)

    for position, spec in enumerate(DEFAULT_COLUMNS):
        insert_column(conn, sheet_id, column_fields(spec), position)
    conn.execute("UPDATE sheets SET column_position_seq = ? WHERE id = ?", (len(DEFAULT_COLUMNS), sheet_id))
    add_row(conn, sheet_id, owner_id)

    log_sheet_action(
        conn,
        sheet_id,
        owner_id,
        "create_sheet",
        {"sheet_name": name, "columns_count": len(DEFAULT_COLUMNS)},
    )
    log_action(conn, owner_id, "sheet_created", "sheets", sheet_id, {"name": name})
    return require_sheet(conn, sheet_id)


def list_sheets_for_user(conn, user: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Sheets the user owns or holds a grant on; administrators see every sheet."""
    if user.get("is_admin"):
        rows = conn.execute(
            """
            SELECT s.*, p.permission_level
            FROM sheets s
            LEFT JOIN sheet_permissions p ON p.sheet_id = s.id AND p.user_id = ?
            ORDER BY s.updated_at DESC, s.id DESC
            """,
            (user["id"],),
        ).fetchall()
    else:
        rows = conn.execute(
            """
            SELECT s.*, p.permission_level
            FROM sheets s
            LEFT JOIN sheet_permissions p ON p.sheet_id = s.id AND p.user_id = ?
            WHERE s.owner_id = ? OR p.id IS NOT NULL
            ORDER BY s.updated_at DESC, s.id DESC
            """,
            (user["id"], user["id"]),
        ).fetchall()
    out = []
    for row in rows:
        item = serialize_sheet(row)
        if row["owner_id"] == user["id"]:
            item["access"] = "owner"
        else:
            item["access"] = row["permission_level"] or "admin"
        out.append(item)
    return out


def update_sheet(
    conn,
    sheet_id: int,
    actor_id: Optional[int],
    name: Optional[str] = None,
    description: Optional[str] = None,
    settings: Optional[Dict[str, Any]] = None,
    is_active: Optional[bool] = None,
) -> Dict[str, Any]:
    sheet = require_sheet(conn, sheet_id)
    assignments: List[str] = []
    params: List[object] = []
    if name is not None:
        name = str(name).strip()
        if not name:
            raise ValidationError("Sheet name is required")
        assignments.append("name = ?")
        params.append(name)
    if description is not None:
        assignments.append("description = ?")
        params.append(str(description).strip())
    if settings is not None:
        if not isinstance(settings, dict):
            raise ValidationError("settings must be an object")
        assignments.append("settings_json = ?")
        params.append(dump_json(settings))
    if is_active is not None:
        assignments.append("is_active = ?")
        params.append(1 if to_bool(is_active) else 0)
    if not assignments:
        return sheet

    assignments.append("updated_at = ?")
    params.append(iso())
    conn.execute(f"UPDATE sheets SET {', '.join(assignments)} WHERE id = ?", tuple(params + [sheet_id]))
    if name is not None and name != sheet["name"]:
        log_sheet_action(conn, sheet_id, actor_id, "rename_sheet", {"from": sheet["name"], "to": name})
    else:
        log_sheet_action(conn, sheet_id, actor_id, "update_sheet", {"fields": len(assignments) - 1})
    return require_sheet(conn, sheet_id)


def delete_sheet(conn, sheet_id: int, actor_id: Optional[int]) -> None:
    sheet = require_sheet(conn, sheet_id)
    conn.execute("DELETE FROM sheets WHERE id = ?", (sheet_id,))
    log_action(conn, actor_id, "sheet_deleted", "sheets", sheet_id, {"name": sheet["name"]})


def get_sheet_data(conn, sheet_id: int) -> Dict[str, Any]:
    sheet = require_sheet(conn, sheet_id)
    return {
        "sheet": sheet,
        "columns": get_columns(conn, sheet_id),
        "rows": get_sheet_rows(conn, sheet_id),
    }


def get_sheet_stats(conn, sheet_id: int) -> Optional[Dict[str, Any]]:
    row = conn.execute("SELECT * FROM sheet_stats WHERE sheet_id = ?", (sheet_id,)).fetchone()
    if not row:
        return None
    return {key: row[key] for key in row.keys()}


def _base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(BASE36[rem])
    return "".join(reversed(digits))


def generate_access_key() -> str:
    stamp = _base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(BASE36) for _ in range(ACCESS_KEY_RANDOM_CHARS))
    return f"{stamp}-{suffix}"


def serialize_public_link(row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "sheet_id": row["sheet_id"],
        "access_key": row["access_key"],
        "created_by": row["created_by"],
        "permissions": {
            "can_view": bool(row["can_view"]),
            "can_edit": bool(row["can_edit"]),
            "can_download": bool(row["can_download"]),
        },
        "is_active": bool(row["is_active"]),
        "expires_at": row["expires_at"],
        "created_at": row["created_at"],
    }


def create_public_link(
    conn,
    sheet_id: int,
    owner_id: Optional[int],
    permissions: Optional[Dict[str, Any]] = None,
    expires_at: Optional[str] = None,
) -> str:
    """Create an anonymous access link and return its key. Links are view-only unless widened."""
    require_sheet(conn, sheet_id)
    permissions = permissions or {}
    if not isinstance(permissions, dict):
        raise ValidationError("permissions must be an object")
    expiry = None
    if expires_at not in (None, ""):
        parsed = parse_iso_datetime(expires_at)
        if parsed is None:
            raise ValidationError("expires_at must be an ISO-8601 timestamp")
        expiry = iso(parsed)

    access_key = generate_access_key()
    now = iso()
    conn.execute(
        """
        INSERT INTO public_links
        (sheet_id, access_key, created_by, can_view, can_edit, can_download, is_active, expires_at, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?, ?)
        """,
        (
            sheet_id,
            access_key,
            owner_id,
            1 if to_bool(permissions.get("can_view"), True) else 0,
            1 if to_bool(permissions.get("can_edit"), False) else 0,
            1 if to_bool(permissions.get("can_download"), False) else 0,
            expiry,
            now,
            now,
        ),
    )
    log_sheet_action(conn, sheet_id, owner_id, "create_public_link", {"expires_at": expiry})
    return access_key


def list_public_links(conn, sheet_id: int) -> List[Dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM public_links WHERE sheet_id = ? ORDER BY id DESC",
        (sheet_id,),
    ).fetchall()
    return [serialize_public_link(row) for row in rows]


def set_public_link_active(conn, sheet_id: int, is_active: bool, link_id: Optional[int] = None, actor_id: Optional[int] = None) -> int:
    """Toggle one link, or every link of the sheet when `link_id` is omitted."""
    params: List[object] = [1 if is_active else 0, iso(), sheet_id]
    sql = "UPDATE public_links SET is_active = ?, updated_at = ? WHERE sheet_id = ?"
    if link_id is not None:
        sql += " AND id = ?"
        params.append(link_id)
    cur = conn.execute(sql, tuple(params))
    if link_id is not None and cur.rowcount == 0:
        raise NotFoundError("Public link not found")
    log_sheet_action(
        conn,
        sheet_id,
        actor_id,
        "enable_public_link" if is_active else "disable_public_link",
        {"link_id": link_id, "count": cur.rowcount},
    )
    return cur.rowcount


def delete_public_link(conn, sheet_id: int, link_id: int, actor_id: Optional[int] = None) -> None:
    cur = conn.execute("DELETE FROM public_links WHERE id = ? AND sheet_id = ?", (link_id, sheet_id))
    if cur.rowcount == 0:
        raise NotFoundError("Public link not found")
    log_sheet_action(conn, sheet_id, actor_id, "delete_public_link", {"link_id": link_id})


def resolve_public_link(conn, access_key: str) -> Optional[Dict[str, Any]]:
    if not access_key:
        return None
    row = conn.execute(
        "SELECT * FROM public_links WHERE access_key = ? AND is_active = 1",
        (str(access_key),),
    ).fetchone()
    if not row:
        return None
    expires = parse_iso_datetime(row["expires_at"])
    if expires is not None and expires <= utcnow():
        return None
    return serialize_public_link(row)


def export_sheet_csv(conn, sheet_id: int) -> str:
    require_sheet(conn, sheet_id)
    columns = get_columns(conn, sheet_id)
    header = [column["name"] for column in columns]
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(header)
    for row in get_sheet_rows(conn, sheet_id):
        cells = row["cells"]
        writer.writerow([encode_cell_value(cells.get(str(column["id"]))) or "" for column in columns])
    return buf.getvalue()

