"""Habit and goal trackers with dated progress logs."""

from __future__ import annotations

import math
from typing import Any, Dict, List, Optional

from opsgrid.audit import log_action
from opsgrid.errors import NotFoundError, ValidationError
from opsgrid.util import iso, parse_date, today_iso

TRACKER_TYPES = ("habit", "goal")


def _to_number(value: Any, field: str, default: float = 0.0) -> float:
    if value in (None, ""):
        return default
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number") from None
    if not math.isfinite(number):
        raise ValidationError(f"{field} must be a finite number")
    return number


def _date_or_none(value: Any, field: str) -> Optional[str]:
    if value in (None, ""):
        return None
    parsed = parse_date(str(value))
    if parsed is None:
        raise ValidationError(f"{field} must be a date (YYYY-MM-DD)")
    return parsed


def serialize_tracker(row, logs: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    target = float(row["target"] or 0)
    progress = float(row["progress"] or 0)
    item = {
        "id": row["id"],
        "owner_id": row["owner_id"],
        "title": row["title"],
        "description": row["description"],
        "type": row["type"],
        "target": target,
        "unit": row["unit"],
        "start_date": row["start_date"],
        "progress": progress,
        "percent_complete": round(min(100.0, progress / target * 100.0), 1) if target > 0 else None,
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }
    if logs is not None:
        item["logs"] = logs
    return item


def _fields(data: Dict[str, Any], current: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    current = current or {}
    title = str(data.get("title", current.get("title", "")) or "").strip()
    if not title:
        raise ValidationError("Tracker title is required")
    tracker_type = str(data.get("type", current.get("type", "goal")) or "goal").strip().lower()
    if tracker_type not in TRACKER_TYPES:
        raise ValidationError("Invalid tracker type", {"allowed": list(TRACKER_TYPES)})
    target = _to_number(data.get("target", current.get("target")), "target")
    if target < 0:
        raise ValidationError("target must not be negative")
    return {
        "title": title,
        "description": str(data.get("description", current.get("description", "")) or "").strip(),
        "type": tracker_type,
        "target": target,
        "unit": str(data.get("unit", current.get("unit", "")) or "").strip(),
        "start_date": _date_or_none(data.get("start_date", current.get("start_date")), "start_date"),
    }


def create_tracker(conn, owner_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
    fields = _fields(data)
    now = iso()
    cur = conn.execute(
        """
        INSERT INTO trackers (owner_id, title, description, type, target, unit, start_date, progress, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
        """,
        (owner_id, fields["title"], fields["description"], fields["type"], fields["target"], fields["unit"], fields["start_date"], now, now),
    )
    tracker_id = int(cur.lastrowid)
    log_action(conn, owner_id, "tracker_created", "trackers", tracker_id, {"title": fields["title"]})
    return get_tracker(conn, tracker_id, with_logs=False)


def get_tracker_logs(conn, tracker_id: int) -> List[Dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM tracker_logs WHERE tracker_id = ? ORDER BY date DESC, id DESC",
        (tracker_id,),
    ).fetchall()
    return [
        {
            "id": row["id"],
            "date": row["date"],
            "amount": float(row["amount"]),
            "note": row["note"],
            "created_by": row["created_by"],
            "created_at": row["created_at"],
        }
        for row in rows
    ]


def get_tracker(conn, tracker_id: int, with_logs: bool = True) -> Dict[str, Any]:
    row = conn.execute("SELECT * FROM trackers WHERE id = ?", (tracker_id,)).fetchone()
    if not row:
        raise NotFoundError("Tracker not found")
    return serialize_tracker(row, get_tracker_logs(conn, tracker_id) if with_logs else None)


def list_trackers_for_user(conn, user: Dict[str, Any]) -> List[Dict[str, Any]]:
    if user.get("is_admin"):
        rows = conn.execute("SELECT * FROM trackers ORDER BY updated_at DESC, id DESC").fetchall()
    else:
        rows = conn.execute(
            """
            SELECT t.* FROM trackers t
            WHERE t.owner_id = ?
               OR EXISTS (
                   SELECT 1 FROM tracker_permissions p
                   WHERE p.tracker_id = t.id AND p.user_id = ? AND p.can_view = 1
               )
            ORDER BY t.updated_at DESC, t.id DESC
            """,
            (user["id"], user["id"]),
        ).fetchall()
    return [serialize_tracker(row) for row in rows]


def update_tracker(conn, tracker_id: int, data: Dict[str, Any], actor_id: Optional[int]) -> Dict[str, Any]:
    current = get_tracker(conn, tracker_id, with_logs=False)
    fields = _fields(data, current)
    conn.execute(
        """
        UPDATE trackers
        SET title = ?, description = ?, type = ?, target = ?, unit = ?, start_date = ?, updated_at = ?
        WHERE id = ?
        """,
        (fields["title"], fields["description"], fields["type"], fields["target"], fields["unit"], fields["start_date"], iso(), tracker_id),
    )
    log_action(conn, actor_id, "tracker_updated", "trackers", tracker_id)
    return get_tracker(conn, tracker_id, with_logs=False)


def delete_tracker(conn, tracker_id: int, actor_id: Optional[int]) -> None:
    tracker = get_tracker(conn, tracker_id, with_logs=False)
    conn.execute("DELETE FROM trackers WHERE id = ?", (tracker_id,))
    log_action(conn, actor_id, "tracker_deleted", "trackers", tracker_id, {"title": tracker["title"]})


def add_tracker_log(
    conn,
    tracker_id: int,
    amount: Any,
    note: str = "",
    date: Optional[str] = None,
    actor_id: Optional[int] = None,
) -> Dict[str, Any]:
    """Record progress and recompute the tracker's total from all of its logs."""
    get_tracker(conn, tracker_id, with_logs=False)
    if amount in (None, ""):
        raise ValidationError("amount is required")
    value = _to_number(amount, "amount")
    log_date = _date_or_none(date, "date") or today_iso()
    conn.execute(
        "INSERT INTO tracker_logs (tracker_id, date, amount, note, created_by, created_at) VALUES (?, ?, ?, ?, ?, ?)",
        (tracker_id, log_date, value, str(note or "").strip(), actor_id, iso()),
    )
    total = conn.execute(
        "SELECT COALESCE(SUM(amount), 0) AS total FROM tracker_logs WHERE tracker_id = ?",
        (tracker_id,),
    ).fetchone()["total"]
    conn.execute(
        "UPDATE trackers SET progress = ?, updated_at = ? WHERE id = ?",
        (float(total), iso(), tracker_id),
    )
    return get_tracker(conn, tracker_id)
