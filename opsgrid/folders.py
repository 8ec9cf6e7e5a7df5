"""Site folders: named groupings of field sites, shared through folder grants."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from opsgrid.audit import log_action
from opsgrid.errors import NotFoundError, ValidationError
from opsgrid.util import iso

SITE_TYPES = ("relocation", "new_site", "maintenance", "other")


def serialize_folder(row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "name": row["name"],
        "site_type": row["site_type"],
        "description": row["description"],
        "created_by": row["created_by"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def _site_type(value: Any) -> str:
    site_type = str(value or "other").strip().lower()
    if site_type not in SITE_TYPES:
        raise ValidationError("Invalid site type", {"allowed": list(SITE_TYPES)})
    return site_type


def create_folder(conn, name: str, site_type: str, description: str, actor_id: int) -> Dict[str, Any]:
    name = str(name or "").strip()
    if not name:
        raise ValidationError("Folder name is required")
    now = iso()
    cur = conn.execute(
        """
        INSERT INTO site_folders (name, site_type, description, created_by, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (name, _site_type(site_type), str(description or "").strip(), actor_id, now, now),
    )
    folder_id = int(cur.lastrowid)
    log_action(conn, actor_id, "folder_created", "site_folders", folder_id, {"name": name})
    return get_folder(conn, folder_id)


def get_folder(conn, folder_id: int) -> Dict[str, Any]:
    row = conn.execute("SELECT * FROM site_folders WHERE id = ?", (folder_id,)).fetchone()
    if not row:
        raise NotFoundError("Folder not found")
    return serialize_folder(row)


def list_folders_for_user(conn, user: Dict[str, Any]) -> List[Dict[str, Any]]:
    if user.get("is_admin"):
        rows = conn.execute("SELECT * FROM site_folders ORDER BY name, id").fetchall()
    else:
        rows = conn.execute(
            """
            SELECT f.* FROM site_folders f
            WHERE f.created_by = ?
               OR EXISTS (
                   SELECT 1 FROM folder_permissions p
                   WHERE p.folder_id = f.id AND p.user_id = ? AND p.can_view = 1
               )
            ORDER BY f.name, f.id
            """,
            (user["id"], user["id"]),
        ).fetchall()
    return [serialize_folder(row) for row in rows]


def update_folder(conn, folder_id: int, data: Dict[str, Any], actor_id: Optional[int]) -> Dict[str, Any]:
    current = get_folder(conn, folder_id)
    name = str(data.get("name", current["name"]) or "").strip()
    if not name:
        raise ValidationError("Folder name is required")
    conn.execute(
        "UPDATE site_folders SET name = ?, site_type = ?, description = ?, updated_at = ? WHERE id = ?",
        (
            name,
            _site_type(data.get("site_type", current["site_type"])),
            str(data.get("description", current["description"]) or "").strip(),
            iso(),
            folder_id,
        ),
    )
    log_action(conn, actor_id, "folder_updated", "site_folders", folder_id)
    return get_folder(conn, folder_id)


def delete_folder(conn, folder_id: int, actor_id: Optional[int]) -> None:
    folder = get_folder(conn, folder_id)
    conn.execute("DELETE FROM site_folders WHERE id = ?", (folder_id,))
    log_action(conn, actor_id, "folder_deleted", "site_folders", folder_id, {"name": folder["name"]})
