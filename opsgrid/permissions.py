"""Per-resource permission grants.

One implementation serves every resource family. A family is described by a
`PermissionFamily`: where its grants live, which table owns the resource,
and whether a grant carries an ordered level or a set of boolean flags.
Owners and administrators always hold every capability; everyone else gets
what their grant maps to.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from opsgrid.audit import log_action
from opsgrid.auth import find_user_by_email, normalize_email
from opsgrid.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from opsgrid.util import iso, to_bool

CAPABILITIES = ("view", "edit", "delete", "manage")
LEVEL_CAPABILITIES = {
    "read": {"view"},
    "write": {"view", "edit"},
    "admin": {"view", "edit", "delete", "manage"},
}
FLAG_CAPABILITIES = {
    "can_view": "view",
    "can_edit": "edit",
    "can_delete": "delete",
    "can_manage": "manage",
}
USER_SEARCH_MIN_CHARS = 2
USER_SEARCH_LIMIT = 10


@dataclass(frozen=True)
class PermissionFamily:
    name: str
    label: str
    grant_table: str
    resource_table: str
    resource_key: str
    owner_column: str
    levels: Tuple[str, ...] = ()
    flags: Tuple[str, ...] = ()

    @property
    def uses_levels(self) -> bool:
        return bool(self.levels)

    @property
    def access_columns(self) -> Tuple[str, ...]:
        return ("permission_level",) if self.uses_levels else self.flags


FAMILIES: Dict[str, PermissionFamily] = {
    "sheets": PermissionFamily(
        name="sheets",
        label="Sheet",
        grant_table="sheet_permissions",
        resource_table="sheets",
        resource_key="sheet_id",
        owner_column="owner_id",
        levels=("read", "write", "admin"),
    ),
    "folders": PermissionFamily(
        name="folders",
        label="Folder",
        grant_table="folder_permissions",
        resource_table="site_folders",
        resource_key="folder_id",
        owner_column="created_by",
        flags=("can_view", "can_edit", "can_delete"),
    ),
    "trackers": PermissionFamily(
        name="trackers",
        label="Tracker",
        grant_table="tracker_permissions",
        resource_table="trackers",
        resource_key="tracker_id",
        owner_column="owner_id",
        flags=("can_view", "can_edit", "can_delete", "can_manage"),
    ),
    "reserve": PermissionFamily(
        name="reserve",
        label="Reserve tracker",
        grant_table="reserve_permissions",
        resource_table="users",
        resource_key="owner_id",
        owner_column="id",
        levels=("read", "write", "admin"),
    ),
}


def get_family(name: str) -> PermissionFamily:
    try:
        return FAMILIES[name]
    except KeyError:
        raise ValidationError(f"Unknown permission family '{name}'") from None


def normalize_access(family: PermissionFamily, access: Any, current: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Validated access columns for a grant.

    Level families accept a level name (or `{"permission_level": ...}`).
    Flag families accept a flag bag; omitted flags keep their `current` value
    and any granted flag implies `can_view`.
    """
    if family.uses_levels:
        if isinstance(access, dict):
            access = access.get("permission_level")
        level = str(access or "").strip().lower()
        if level not in family.levels:
            raise ValidationError("Invalid permission level", {"allowed": list(family.levels)})
        return {"permission_level": level}

    if not isinstance(access, dict):
        raise ValidationError("Permissions must be an object of flags", {"allowed": list(family.flags)})
    unknown = [key for key in access if key not in family.flags]
    if unknown:
        raise ValidationError(f"Unknown permission flags: {', '.join(sorted(unknown))}", {"allowed": list(family.flags)})
    base = current or {"can_view": True}
    values = {flag: to_bool(access.get(flag), bool(base.get(flag, False))) for flag in family.flags}
    if any(values.values()):
        values["can_view"] = True
    else:
        raise ValidationError("At least one permission must be granted")
    return values


def _access_values(family: PermissionFamily, row) -> Dict[str, Any]:
    if family.uses_levels:
        return {"permission_level": row["permission_level"]}
    return {flag: bool(row[flag]) for flag in family.flags}


def serialize_grant(family: PermissionFamily, row) -> Dict[str, Any]:
    item = {
        "id": row["id"],
        "resource_id": row[family.resource_key],
        "user_id": row["user_id"],
        "granted_by": row["granted_by"],
        "granted_at": row["granted_at"],
        "updated_at": row["updated_at"],
        "user": {
            "id": row["user_id"],
            "email": row["email"],
            "full_name": row["full_name"],
            "avatar_url": row["avatar_url"],
        },
    }
    item.update(_access_values(family, row))
    return item


def resource_owner(conn, family: PermissionFamily, resource_id: int) -> int:
    row = conn.execute(
        f"SELECT {family.owner_column} AS owner_id FROM {family.resource_table} WHERE id = ?",
        (resource_id,),
    ).fetchone()
    if not row:
        raise NotFoundError(f"{family.label} not found")
    return int(row["owner_id"])


def _grant_query(family: PermissionFamily) -> str:
    return f"""
        SELECT g.*, u.email, u.full_name, u.avatar_url
        FROM {family.grant_table} g
        JOIN users u ON u.id = g.user_id
        WHERE g.{family.resource_key} = ?
    """


def list_grants(conn, family: PermissionFamily, resource_id: int) -> List[Dict[str, Any]]:
    resource_owner(conn, family, resource_id)
    rows = conn.execute(
        _grant_query(family) + " ORDER BY g.granted_at DESC, g.id DESC",
        (resource_id,),
    ).fetchall()
    return [serialize_grant(family, row) for row in rows]


def get_grant(conn, family: PermissionFamily, resource_id: int, grant_id: int) -> Dict[str, Any]:
    row = conn.execute(_grant_query(family) + " AND g.id = ?", (resource_id, grant_id)).fetchone()
    if not row:
        raise NotFoundError("Permission not found")
    return serialize_grant(family, row)


def grant(
    conn,
    family: PermissionFamily,
    resource_id: int,
    subject_email: str,
    access: Any,
    actor_id: Optional[int],
) -> Dict[str, Any]:
    owner_id = resource_owner(conn, family, resource_id)
    email = normalize_email(subject_email)
    if not email:
        raise ValidationError("Email and permission level are required")
    values = normalize_access(family, access)
    user = find_user_by_email(conn, email)
    if not user:
        raise NotFoundError("User not found. Make sure the user has signed up and has a profile.")
    if int(user["id"]) == owner_id:
        raise ConflictError(f"User already owns this {family.label.lower()}")
    existing = conn.execute(
        f"SELECT id FROM {family.grant_table} WHERE {family.resource_key} = ? AND user_id = ?",
        (resource_id, user["id"]),
    ).fetchone()
    if existing:
        raise ConflictError(f"User already has access to this {family.label.lower()}")

    columns = list(values.keys())
    now = iso()
    try:
        cur = conn.execute(
            f"""
            INSERT INTO {family.grant_table}
            ({family.resource_key}, user_id, {', '.join(columns)}, granted_by, granted_at, updated_at)
            VALUES (?, ?, {', '.join(['?'] * len(columns))}, ?, ?, ?)
            """,
            (resource_id, user["id"], *[_db_value(values[column]) for column in columns], actor_id, now, now),
        )
    except sqlite3.IntegrityError as exc:
        raise ConflictError(f"User already has access to this {family.label.lower()}") from exc
    grant_id = int(cur.lastrowid)
    log_action(
        conn,
        actor_id,
        "permission_granted",
        family.grant_table,
        grant_id,
        {"resource_id": resource_id, "user_id": user["id"], **values},
    )
    return get_grant(conn, family, resource_id, grant_id)


def _db_value(value: Any) -> Any:
    if isinstance(value, bool):
        return 1 if value else 0
    return value


def update_grant(
    conn,
    family: PermissionFamily,
    resource_id: int,
    grant_id: int,
    access: Any,
    actor_id: Optional[int] = None,
) -> Dict[str, Any]:
    """Change a grant in place. Prior levels are not kept."""
    current = get_grant(conn, family, resource_id, grant_id)
    values = normalize_access(family, access, current)
    assignments = ", ".join(f"{column} = ?" for column in values)
    conn.execute(
        f"UPDATE {family.grant_table} SET {assignments}, updated_at = ? WHERE id = ? AND {family.resource_key} = ?",
        (*[_db_value(value) for value in values.values()], iso(), grant_id, resource_id),
    )
    log_action(conn, actor_id, "permission_updated", family.grant_table, grant_id, values)
    return get_grant(conn, family, resource_id, grant_id)


def revoke(conn, family: PermissionFamily, resource_id: int, grant_id: int, actor_id: Optional[int] = None) -> None:
    cur = conn.execute(
        f"DELETE FROM {family.grant_table} WHERE id = ? AND {family.resource_key} = ?",
        (grant_id, resource_id),
    )
    if cur.rowcount == 0:
        raise NotFoundError("Permission not found")
    log_action(conn, actor_id, "permission_revoked", family.grant_table, grant_id, {"resource_id": resource_id})


def search_grantable_users(conn, family: PermissionFamily, resource_id: int, query: str, limit: int = USER_SEARCH_LIMIT) -> List[Dict[str, Any]]:
    """Users matching `query` by email who are neither the owner nor already granted."""
    owner_id = resource_owner(conn, family, resource_id)
    text = str(query or "").strip().lower()
    if len(text) < USER_SEARCH_MIN_CHARS:
        return []
    pattern = "%" + text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"
    rows = conn.execute(
        f"""
        SELECT id, email, full_name, avatar_url
        FROM users
        WHERE is_active = 1
          AND LOWER(email) LIKE ? ESCAPE '\\'
          AND id <> ?
          AND id NOT IN (SELECT user_id FROM {family.grant_table} WHERE {family.resource_key} = ?)
        ORDER BY email
        LIMIT ?
        """,
        (pattern, owner_id, resource_id, max(1, min(int(limit), USER_SEARCH_LIMIT))),
    ).fetchall()
    return [
        {"id": row["id"], "email": row["email"], "full_name": row["full_name"], "avatar_url": row["avatar_url"]}
        for row in rows
    ]


def resolve_access(conn, family: PermissionFamily, resource_id: int, user: Dict[str, Any]) -> Dict[str, bool]:
    owner_id = resource_owner(conn, family, resource_id)
    if user.get("is_admin") or int(user["id"]) == owner_id:
        return {capability: True for capability in CAPABILITIES}
    row = conn.execute(
        f"SELECT * FROM {family.grant_table} WHERE {family.resource_key} = ? AND user_id = ?",
        (resource_id, user["id"]),
    ).fetchone()
    if not row:
        return {capability: False for capability in CAPABILITIES}
    if family.uses_levels:
        granted = LEVEL_CAPABILITIES.get(str(row["permission_level"]), set())
    else:
        granted = {FLAG_CAPABILITIES[flag] for flag in family.flags if row[flag]}
    return {capability: capability in granted for capability in CAPABILITIES}


def require_access(conn, family: PermissionFamily, resource_id: int, user: Dict[str, Any], capability: str) -> Dict[str, bool]:
    """Raise unless `user` holds `capability`. Callers without view access get a 404."""
    access = resolve_access(conn, family, resource_id, user)
    if not access["view"]:
        raise NotFoundError(f"{family.label} not found or access denied")
    if not access.get(capability):
        raise ForbiddenError("Insufficient permissions")
    return access
