"""Append-only activity logs."""

from __future__ import annotations

import json
import logging
from typing import Dict, List, Optional

from opsgrid.util import dump_json, iso, parse_json_field

logger = logging.getLogger(__name__)


def log_action(
    conn,
    user_id: Optional[int],
    action: str,
    entity: Optional[str] = None,
    entity_id: Optional[object] = None,
    details: Optional[Dict[str, object]] = None,
) -> None:
    conn.execute(
        "INSERT INTO audit_log (user_id, action, entity, entity_id, details, created_at) VALUES (?, ?, ?, ?, ?, ?)",
        (
            user_id,
            action,
            entity,
            None if entity_id is None else str(entity_id),
            json.dumps(details, ensure_ascii=False)[:14000] if details else None,
            iso(),
        ),
    )


def log_sheet_action(conn, sheet_id: int, user_id: Optional[int], action: str, details: Optional[Dict[str, object]] = None) -> None:
    """Append a sheet history entry.

    History is best effort: a failed insert is logged and never fails the
    surrounding operation. The insert runs under a savepoint so a failure
    leaves the caller's transaction usable on PostgreSQL as well.
    """
    conn.execute("SAVEPOINT sheet_history")
    try:
        conn.execute(
            "INSERT INTO sheet_history (sheet_id, user_id, action, details_json, created_at) VALUES (?, ?, ?, ?, ?)",
            (sheet_id, user_id, action, dump_json(details), iso()),
        )
    except Exception:
        conn.execute("ROLLBACK TO SAVEPOINT sheet_history")
        logger.warning("Could not record %s for sheet %s", action, sheet_id, exc_info=True)
    conn.execute("RELEASE SAVEPOINT sheet_history")


def get_sheet_history(conn, sheet_id: int, limit: int = 100) -> List[Dict[str, object]]:
    rows = conn.execute(
        """
        SELECT h.id, h.user_id, h.action, h.details_json, h.created_at, u.email AS user_email
        FROM sheet_history h
        LEFT JOIN users u ON u.id = h.user_id
        WHERE h.sheet_id = ?
        ORDER BY h.id DESC
        LIMIT ?
        """,
        (sheet_id, limit),
    ).fetchall()
    return [
        {
            "id": row["id"],
            "user_id": row["user_id"],
            "user_email": row["user_email"],
            "action": row["action"],
            "details": parse_json_field(row["details_json"]),
            "created_at": row["created_at"],
        }
        for row in rows
    ]
