"""MR-number item boards: the shared settlement board and per-user reserve boards.

Both boards hold one item per MR number with a status and notes. The
settlement board is a single shared list. Reserve boards belong to a user
(`owner_id`), add priority, category and due date, and are shared through
reserve grants. MR numbers are unique within a board.
"""

from __future__ import annotations

import csv
import io
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from opsgrid.audit import log_action
from opsgrid.errors import ConflictError, NotFoundError, ValidationError
from opsgrid.util import iso, parse_date, to_int

ITEM_STATUSES = ("none", "problem", "done")
PRIORITIES = ("low", "medium", "high")
STATUS_LABELS = {"none": "Pending", "problem": "Problem", "done": "Done"}


@dataclass(frozen=True)
class ItemBoard:
    name: str
    table: str
    owned: bool = False
    extra_fields: Tuple[str, ...] = ()

    def scope(self, owner_id: Optional[int]) -> Tuple[str, Tuple[Any, ...]]:
        if not self.owned:
            return "", ()
        if owner_id is None:
            raise ValidationError(f"{self.name} items need an owner")
        return " AND user_id = ?", (owner_id,)


BOARDS: Dict[str, ItemBoard] = {
    "settlement": ItemBoard(name="settlement", table="settlement_items"),
    "reserve": ItemBoard(
        name="reserve",
        table="reserve_items",
        owned=True,
        extra_fields=("priority", "category", "due_date"),
    ),
}


def serialize_item(board: ItemBoard, row) -> Dict[str, Any]:
    item = {
        "id": row["id"],
        "mr_number": row["mr_number"],
        "status": row["status"],
        "notes": row["notes"],
        "created_by": row["created_by"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }
    if board.owned:
        item["owner_id"] = row["user_id"]
    for field in board.extra_fields:
        item[field] = row[field]
    return item


def _status(value: Any) -> str:
    status = str(value or "").strip().lower()
    if status not in ITEM_STATUSES:
        raise ValidationError("Invalid status", {"allowed": list(ITEM_STATUSES)})
    return status


def _priority(value: Any) -> str:
    priority = str(value or "").strip().lower()
    if priority not in PRIORITIES:
        raise ValidationError("Invalid priority", {"allowed": list(PRIORITIES)})
    return priority


def _due_date(value: Any) -> Optional[str]:
    if value in (None, ""):
        return None
    parsed = parse_date(str(value))
    if parsed is None:
        raise ValidationError("due_date must be a date (YYYY-MM-DD)")
    return parsed


FIELD_PARSERS = {
    "status": _status,
    "notes": lambda value: str(value or "").strip(),
    "priority": _priority,
    "category": lambda value: str(value or "").strip(),
    "due_date": _due_date,
}


def _mr_number(value: Any) -> str:
    mr_number = str(value or "").strip()
    if not mr_number:
        raise ValidationError("MR Number is required")
    return mr_number


def list_items(conn, board: ItemBoard, owner_id: Optional[int] = None) -> List[Dict[str, Any]]:
    clause, params = board.scope(owner_id)
    rows = conn.execute(
        f"SELECT * FROM {board.table} WHERE 1 = 1{clause} ORDER BY created_at DESC, id DESC",
        params,
    ).fetchall()
    return [serialize_item(board, row) for row in rows]


def get_item(conn, board: ItemBoard, item_id: int, owner_id: Optional[int] = None) -> Dict[str, Any]:
    clause, params = board.scope(owner_id)
    row = conn.execute(f"SELECT * FROM {board.table} WHERE id = ?{clause}", (item_id, *params)).fetchone()
    if not row:
        raise NotFoundError("Item not found")
    return serialize_item(board, row)


def _existing_mr_numbers(conn, board: ItemBoard, owner_id: Optional[int]) -> set:
    clause, params = board.scope(owner_id)
    rows = conn.execute(f"SELECT mr_number FROM {board.table} WHERE 1 = 1{clause}", params).fetchall()
    return {row["mr_number"] for row in rows}


def _insert(conn, board: ItemBoard, owner_id: Optional[int], mr_number: str, fields: Dict[str, Any], actor_id: Optional[int]) -> int:
    values = {"mr_number": mr_number, "status": "none", "notes": ""}
    if board.owned:
        values.update({"user_id": owner_id, "priority": "medium", "category": ""})
    values.update(fields)
    now = iso()
    columns = list(values)
    try:
        cur = conn.execute(
            f"""
            INSERT INTO {board.table} ({', '.join(columns)}, created_by, created_at, updated_at)
            VALUES ({', '.join(['?'] * len(columns))}, ?, ?, ?)
            """,
            (*values.values(), actor_id, now, now),
        )
    except sqlite3.IntegrityError as exc:
        raise ConflictError("MR Number already exists") from exc
    return int(cur.lastrowid)


def _fields(board: ItemBoard, data: Dict[str, Any]) -> Dict[str, Any]:
    allowed = ("status", "notes") + board.extra_fields
    return {field: FIELD_PARSERS[field](data[field]) for field in allowed if field in data}


def add_item(conn, board: ItemBoard, data: Dict[str, Any], actor_id: Optional[int], owner_id: Optional[int] = None) -> Dict[str, Any]:
    mr_number = _mr_number(data.get("mr_number", data.get("mrNumber")))
    if mr_number in _existing_mr_numbers(conn, board, owner_id):
        raise ConflictError("MR Number already exists")
    item_id = _insert(conn, board, owner_id, mr_number, _fields(board, data), actor_id)
    log_action(conn, actor_id, f"{board.name}_item_added", board.table, item_id, {"mr_number": mr_number})
    return get_item(conn, board, item_id, owner_id)


def update_item(
    conn,
    board: ItemBoard,
    item_id: int,
    data: Dict[str, Any],
    actor_id: Optional[int],
    owner_id: Optional[int] = None,
) -> Dict[str, Any]:
    get_item(conn, board, item_id, owner_id)
    fields = _fields(board, data)
    if not fields:
        raise ValidationError("Nothing to update")
    assignments = ", ".join(f"{column} = ?" for column in fields)
    conn.execute(
        f"UPDATE {board.table} SET {assignments}, updated_at = ? WHERE id = ?",
        (*fields.values(), iso(), item_id),
    )
    log_action(conn, actor_id, f"{board.name}_item_updated", board.table, item_id, fields)
    return get_item(conn, board, item_id, owner_id)


def delete_item(conn, board: ItemBoard, item_id: int, actor_id: Optional[int], owner_id: Optional[int] = None) -> None:
    item = get_item(conn, board, item_id, owner_id)
    conn.execute(f"DELETE FROM {board.table} WHERE id = ?", (item_id,))
    log_action(conn, actor_id, f"{board.name}_item_deleted", board.table, item_id, {"mr_number": item["mr_number"]})


def import_items(conn, board: ItemBoard, mr_numbers: Any, actor_id: Optional[int], owner_id: Optional[int] = None) -> Dict[str, Any]:
    """Add an item per new MR number.

    Numbers already on the board, or repeated within `mr_numbers`, are
    skipped and counted as duplicates.
    """
    if not isinstance(mr_numbers, list) or not mr_numbers:
        raise ValidationError("MR Numbers are required")
    existing = _existing_mr_numbers(conn, board, owner_id)
    fresh: List[str] = []
    duplicates: List[str] = []
    for raw in mr_numbers:
        mr_number = str(raw or "").strip()
        if not mr_number:
            continue
        if mr_number in existing:
            duplicates.append(mr_number)
        else:
            fresh.append(mr_number)
            existing.add(mr_number)
    if not fresh and not duplicates:
        raise ValidationError("MR Numbers are required")

    items = [get_item(conn, board, _insert(conn, board, owner_id, mr_number, {}, actor_id), owner_id) for mr_number in fresh]
    if items:
        log_action(conn, actor_id, f"{board.name}_items_imported", board.table, None, {"count": len(items)})
    result: Dict[str, Any] = {"data": items, "duplicatesCount": len(duplicates), "duplicates": duplicates}
    if not items:
        result["message"] = "All MR Numbers already exist"
    return result


def _ids(value: Any) -> List[int]:
    if not isinstance(value, list) or not value:
        raise ValidationError("Item IDs are required")
    ids = [to_int(item) for item in value]
    if any(item_id is None for item_id in ids):
        raise ValidationError("Item IDs must be integers")
    return ids


BULK_FIELD_ACTIONS = {
    "update_status": "status",
    "update_priority": "priority",
    "update_category": "category",
}


def bulk_action(conn, board: ItemBoard, data: Dict[str, Any], actor_id: Optional[int], owner_id: Optional[int] = None) -> Dict[str, Any]:
    """Apply one bulk action: update a field, delete, or import by MR number."""
    action = str(data.get("action") or "").strip()
    if not action:
        raise ValidationError("Action is required")
    if action == "import":
        return import_items(conn, board, data.get("mrNumbers", data.get("mr_numbers")), actor_id, owner_id)

    field = BULK_FIELD_ACTIONS.get(action)
    if action != "delete" and (field is None or (field != "status" and field not in board.extra_fields)):
        raise ValidationError(f"Unknown action: {action}")
    ids = _ids(data.get("ids"))
    clause, params = board.scope(owner_id)
    placeholders = ", ".join(["?"] * len(ids))

    if action == "delete":
        removed = conn.execute(f"DELETE FROM {board.table} WHERE id IN ({placeholders}){clause}", (*ids, *params)).rowcount
        log_action(conn, actor_id, f"{board.name}_items_deleted", board.table, None, {"count": removed})
        return {"deleted": removed}

    if field not in data or (field == "status" and not data.get(field)):
        raise ValidationError(f"{field.capitalize()} is required")
    value = FIELD_PARSERS[field](data[field])
    conn.execute(
        f"UPDATE {board.table} SET {field} = ?, updated_at = ? WHERE id IN ({placeholders}){clause}",
        (value, iso(), *ids, *params),
    )
    rows = conn.execute(
        f"SELECT * FROM {board.table} WHERE id IN ({placeholders}){clause} ORDER BY created_at DESC, id DESC",
        (*ids, *params),
    ).fetchall()
    log_action(conn, actor_id, f"{board.name}_items_updated", board.table, None, {field: value, "count": len(rows)})
    return {"data": [serialize_item(board, row) for row in rows]}


def list_item_categories(conn, board: ItemBoard, owner_id: Optional[int] = None) -> List[str]:
    if "category" not in board.extra_fields:
        return []
    clause, params = board.scope(owner_id)
    rows = conn.execute(
        f"SELECT DISTINCT category FROM {board.table} WHERE category <> ''{clause} ORDER BY category",
        params,
    ).fetchall()
    return [row["category"] for row in rows]


def export_items_csv(conn, board: ItemBoard, owner_id: Optional[int] = None) -> str:
    header = ["MR Number", "Status"]
    if board.owned:
        header += ["Priority", "Category", "Due Date"]
    header += ["Notes", "Created", "Updated"]
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(header)
    for item in list_items(conn, board, owner_id):
        line = [item["mr_number"], STATUS_LABELS.get(item["status"], item["status"])]
        if board.owned:
            line += [item["priority"].capitalize(), item["category"], item["due_date"] or ""]
        line += [item["notes"], item["created_at"][:10], item["updated_at"][:10]]
        writer.writerow(line)
    return buf.getvalue()


def list_reserve_boards(conn, user: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Reserve boards the user may open: their own, granted ones, or all for admins."""
    if user.get("is_admin"):
        rows = conn.execute(
            """
            SELECT u.id, u.email, u.full_name, NULL AS permission_level
            FROM users u
            WHERE u.id = ? OR EXISTS (SELECT 1 FROM reserve_items r WHERE r.user_id = u.id)
            ORDER BY u.email
            """,
            (user["id"],),
        ).fetchall()
    else:
        rows = conn.execute(
            """
            SELECT u.id, u.email, u.full_name, p.permission_level
            FROM users u
            LEFT JOIN reserve_permissions p ON p.owner_id = u.id AND p.user_id = ?
            WHERE u.id = ? OR p.id IS NOT NULL
            ORDER BY u.email
            """,
            (user["id"], user["id"]),
        ).fetchall()
    boards = []
    for row in rows:
        is_owner = int(row["id"]) == int(user["id"])
        boards.append(
            {
                "owner_id": row["id"],
                "owner_email": row["email"],
                "owner_name": row["full_name"],
                "is_owner": is_owner,
                "permission_level": "admin" if is_owner or user.get("is_admin") else row["permission_level"],
            }
        )
    return boards
