"""JSON route handlers.

Dispatch is explicit: each area matches its paths and methods in order and
returns a `Response`, or None when nothing matched. Handlers own the unit of
work and commit before answering; errors propagate to `opsgrid.server.app`,
which rolls back and renders the error payload.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Optional

from opsgrid import folders as folder_store
from opsgrid import material as material_store
from opsgrid import mr_items
from opsgrid import trackers as tracker_store
from opsgrid.audit import get_sheet_history
from opsgrid.auth import (
    SESSION_COOKIE,
    SESSION_DAYS,
    authenticate,
    create_session,
    create_user,
    delete_session,
    user_for_session,
)
from opsgrid.db import existing_tables
from opsgrid.errors import ForbiddenError, NotFoundError, UnauthorizedError, ValidationError
from opsgrid.grid import (
    add_column,
    add_row,
    bulk_update_cells,
    check_cell_updates,
    delete_column,
    delete_row,
    get_columns,
    get_row,
    get_sheet_rows,
    purge_deleted_rows,
    restore_row,
    update_cell,
    update_columns,
)
from opsgrid.permissions import (
    FAMILIES,
    PermissionFamily,
    get_grant,
    grant,
    list_grants,
    require_access,
    revoke,
    search_grantable_users,
    update_grant,
)
from opsgrid.search import search_sheet_data
from opsgrid.server import Request, Response, clear_cookie, csv_response, json_response, set_cookie
from opsgrid.sheets import (
    create_public_link,
    create_sheet,
    delete_public_link,
    delete_sheet,
    export_sheet_csv,
    get_sheet_data,
    get_sheet_stats,
    list_public_links,
    list_sheets_for_user,
    resolve_public_link,
    set_public_link_active,
    update_sheet,
)
from opsgrid.util import to_bool, to_int

SHEET_PATH_RE = re.compile(r"^/api/sheets-new/(\d+)(/[a-z/-]*)?$")
SHEET_GRANTS_RE = re.compile(r"^/api/sheets/(\d+)(/.*)$")
FOLDER_PATH_RE = re.compile(r"^/api/folders/(\d+)(/.*)?$")
TRACKER_PATH_RE = re.compile(r"^/api/trackers/(\d+)(/.*)?$")
GRANT_PATH_RE = re.compile(r"^/permissions/(\d+)$")
MATERIAL_PATH_RE = re.compile(r"^/api/material/(brands|categories|items)(?:/([^/]+))?/?$")
SETTLEMENT_PATH_RE = re.compile(r"^/api/settlement(?:/(\d+|bulk|export))?/?$")
RESERVE_PATH_RE = re.compile(r"^/api/reserve/(\d+)(/.*)?$")
RESERVE_ITEM_RE = re.compile(r"^/items/(\d+)$")
PUBLIC_PATH_RE = re.compile(r"^/api/public/sheets/([0-9a-z-]+)(/export|/rows)?$")
HISTORY_MAX_LIMIT = 500


def ok(payload: Optional[Dict[str, Any]] = None, status: str = "200 OK", cookies=None) -> Response:
    body: Dict[str, Any] = {"success": True}
    body.update(payload or {})
    return json_response(body, status, cookies)


def current_user(conn, req: Request) -> Dict[str, Any]:
    user = user_for_session(conn, req.cookies.get(SESSION_COOKIE))
    if not user:
        raise UnauthorizedError()
    conn.commit()
    return user


def required_int(data: Dict[str, Any], key: str) -> int:
    value = to_int(data.get(key))
    if value is None:
        raise ValidationError(f"{key} is required")
    return value


def dispatch(conn, req: Request) -> Optional[Response]:
    if req.path == "/api/setup/status" and req.method == "GET":
        tables = existing_tables(conn)
        return ok({"tables": tables, "ready": all(tables.values())})
    if req.path.startswith("/api/auth/"):
        return auth_routes(conn, req)
    if req.path.startswith("/api/public/"):
        return public_routes(conn, req)
    if not req.path.startswith("/api/"):
        return None

    user = current_user(conn, req)
    if req.path == "/api/sheets-new" or req.path.startswith("/api/sheets-new/"):
        return sheet_routes(conn, req, user)
    if req.path.startswith("/api/sheets/"):
        m = SHEET_GRANTS_RE.match(req.path)
        if not m:
            return None
        return grant_routes(conn, req, user, FAMILIES["sheets"], int(m.group(1)), m.group(2))
    if req.path == "/api/folders" or req.path.startswith("/api/folders/"):
        return folder_routes(conn, req, user)
    if req.path == "/api/trackers" or req.path.startswith("/api/trackers/"):
        return tracker_routes(conn, req, user)
    if req.path.startswith("/api/material/"):
        return material_routes(conn, req, user)
    if req.path == "/api/settlement" or req.path.startswith("/api/settlement/"):
        return settlement_routes(conn, req, user)
    if req.path == "/api/reserve" or req.path.startswith("/api/reserve/"):
        return reserve_routes(conn, req, user)
    return None


def auth_routes(conn, req: Request) -> Optional[Response]:
    if req.path == "/api/auth/signup" and req.method == "POST":
        data = req.json
        user = create_user(conn, data.get("email", ""), data.get("password", ""), data.get("full_name", ""))
        raw_session = create_session(conn, user["id"], req.remote_addr, req.user_agent)
        conn.commit()
        cookie = set_cookie(SESSION_COOKIE, raw_session, max_age=SESSION_DAYS * 24 * 3600)
        return ok({"user": user}, "201 Created", [cookie])

    if req.path == "/api/auth/login" and req.method == "POST":
        data = req.json
        user = authenticate(conn, data.get("email", ""), data.get("password", ""))
        if not user:
            raise UnauthorizedError("Invalid credentials")
        raw_session = create_session(conn, user["id"], req.remote_addr, req.user_agent)
        conn.commit()
        cookie = set_cookie(SESSION_COOKIE, raw_session, max_age=SESSION_DAYS * 24 * 3600)
        return ok({"user": user}, cookies=[cookie])

    if req.path == "/api/auth/logout" and req.method == "POST":
        delete_session(conn, req.cookies.get(SESSION_COOKIE, ""))
        conn.commit()
        return ok(cookies=[clear_cookie(SESSION_COOKIE)])

    if req.path == "/api/auth/me" and req.method == "GET":
        return ok({"user": current_user(conn, req)})
    return None


def public_routes(conn, req: Request) -> Optional[Response]:
    m = PUBLIC_PATH_RE.match(req.path)
    if not m:
        return None
    sub = m.group(2) or ""
    if (sub, req.method) not in {("", "GET"), ("/export", "GET"), ("/rows", "PATCH")}:
        return None
    link = resolve_public_link(conn, m.group(1))
    if not link:
        raise NotFoundError("Link not found or expired")
    perms = link["permissions"]
    if sub == "/export":
        if not perms["can_download"]:
            raise ForbiddenError("This link does not allow downloads")
        return csv_response(export_sheet_csv(conn, link["sheet_id"]), f"sheet-{link['sheet_id']}.csv")
    if sub == "/rows":
        if not perms["can_edit"]:
            raise ForbiddenError("This link does not allow editing")
        data = req.json
        row_id = required_int(data, "row_id")
        _require_sheet_row(conn, link["sheet_id"], row_id)
        cell = update_cell(
            conn,
            row_id,
            required_int(data, "column_id"),
            data.get("value"),
            formatted_value=data.get("formatted_value"),
            expected_version=to_int(data.get("expected_version")),
        )
        conn.commit()
        return ok({"cell": cell})
    if not perms["can_view"]:
        raise ForbiddenError("This link does not allow viewing")
    data = get_sheet_data(conn, link["sheet_id"])
    return ok({**data, "permissions": perms})


def sheet_routes(conn, req: Request, user: Dict[str, Any]) -> Optional[Response]:
    family = FAMILIES["sheets"]

    if req.path == "/api/sheets-new" and req.method == "GET":
        return ok({"sheets": list_sheets_for_user(conn, user)})

    if req.path == "/api/sheets-new/create" and req.method == "POST":
        data = req.json
        sheet = create_sheet(conn, data.get("name", ""), data.get("description", ""), user["id"], data.get("settings"))
        conn.commit()
        return ok(get_sheet_data(conn, sheet["id"]), "201 Created")

    m = SHEET_PATH_RE.match(req.path)
    if not m:
        return None
    sheet_id = int(m.group(1))
    sub = (m.group(2) or "").rstrip("/")

    if sub == "":
        if req.method == "GET":
            access = require_access(conn, family, sheet_id, user, "view")
            return ok({**get_sheet_data(conn, sheet_id), "access": access})
        if req.method == "PATCH":
            require_access(conn, family, sheet_id, user, "edit")
            data = req.json
            sheet = update_sheet(
                conn,
                sheet_id,
                user["id"],
                name=data.get("name"),
                description=data.get("description"),
                settings=data.get("settings"),
                is_active=data.get("is_active"),
            )
            conn.commit()
            return ok({"sheet": sheet})
        if req.method == "PUT":
            require_access(conn, family, sheet_id, user, "edit")
            updates = check_cell_updates(conn, sheet_id, req.json.get("updates"))
            if not bulk_update_cells(conn, updates, user["id"]):
                return json_response(
                    {"success": False, "error": "Failed to update cells", "code": "BULK_UPDATE_FAILED"},
                    "500 Internal Server Error",
                )
            return ok({"updated": len(updates)})
        if req.method == "DELETE":
            require_access(conn, family, sheet_id, user, "delete")
            delete_sheet(conn, sheet_id, user["id"])
            conn.commit()
            return ok()
        return None

    if sub == "/columns":
        if req.method == "GET":
            require_access(conn, family, sheet_id, user, "view")
            return ok({"columns": get_columns(conn, sheet_id)})
        require_access(conn, family, sheet_id, user, "edit")
        if req.method == "POST":
            data = req.json
            if not str(data.get("name") or "").strip() or not data.get("type"):
                raise ValidationError("Column name and type are required")
            column = add_column(conn, sheet_id, data, user["id"])
            conn.commit()
            return ok({"column": column}, "201 Created")
        if req.method == "PUT":
            columns = update_columns(conn, sheet_id, req.json.get("columns"), user["id"])
            conn.commit()
            return ok({"columns": columns})
        if req.method == "DELETE":
            column_id = to_int(req.query.get("column_id")) or required_int(req.json, "column_id")
            delete_column(conn, sheet_id, column_id, user["id"])
            conn.commit()
            return ok()
        return None

    if sub == "/rows":
        if req.method == "GET":
            require_access(conn, family, sheet_id, user, "view")
            return ok({"rows": get_sheet_rows(conn, sheet_id)})
        require_access(conn, family, sheet_id, user, "edit")
        if req.method == "POST":
            row = add_row(conn, sheet_id, user["id"])
            conn.commit()
            return ok({"row": row}, "201 Created")
        if req.method == "PATCH":
            data = req.json
            row_id = required_int(data, "row_id")
            column_id = required_int(data, "column_id")
            _require_sheet_row(conn, sheet_id, row_id)
            cell = update_cell(
                conn,
                row_id,
                column_id,
                data.get("value"),
                user["id"],
                formatted_value=data.get("formatted_value"),
                expected_version=to_int(data.get("expected_version")),
            )
            conn.commit()
            return ok({"cell": cell})
        if req.method == "DELETE":
            row_id = to_int(req.query.get("row_id")) or required_int(req.json, "row_id")
            _require_sheet_row(conn, sheet_id, row_id)
            result = delete_row(conn, row_id, user["id"])
            conn.commit()
            return ok({"row": result})
        return None

    if sub == "/rows/restore" and req.method == "POST":
        require_access(conn, family, sheet_id, user, "edit")
        row_id = required_int(req.json, "row_id")
        _require_sheet_row(conn, sheet_id, row_id)
        result = restore_row(conn, row_id, user["id"])
        conn.commit()
        return ok({"row": result})

    if sub == "/rows/purge" and req.method == "POST":
        require_access(conn, family, sheet_id, user, "manage")
        older_than_days = to_int(req.json.get("older_than_days"))
        purged = purge_deleted_rows(conn, sheet_id=sheet_id, older_than_days=older_than_days, actor_id=user["id"])
        conn.commit()
        return ok({"purged": purged})

    if sub == "/search" and req.method == "POST":
        require_access(conn, family, sheet_id, user, "view")
        data = req.json
        row_ids = search_sheet_data(
            conn,
            sheet_id,
            data.get("searchTerm", data.get("search_term", "")),
            data.get("columnFilters", data.get("column_filters")),
        )
        return ok({"rowIds": row_ids})

    if sub == "/stats" and req.method == "GET":
        require_access(conn, family, sheet_id, user, "view")
        return ok({"stats": get_sheet_stats(conn, sheet_id)})

    if sub == "/history" and req.method == "GET":
        require_access(conn, family, sheet_id, user, "view")
        limit = max(1, min(to_int(req.query.get("limit"), 100), HISTORY_MAX_LIMIT))
        return ok({"history": get_sheet_history(conn, sheet_id, limit)})

    if sub == "/export" and req.method == "GET":
        require_access(conn, family, sheet_id, user, "view")
        return csv_response(export_sheet_csv(conn, sheet_id), f"sheet-{sheet_id}.csv")

    if sub == "/public-link":
        require_access(conn, family, sheet_id, user, "manage")
        if req.method == "GET":
            return ok({"links": list_public_links(conn, sheet_id)})
        if req.method == "POST":
            data = req.json
            key = create_public_link(conn, sheet_id, user["id"], data.get("permissions"), data.get("expires_at"))
            conn.commit()
            return ok({"accessKey": key, "url": f"/api/public/sheets/{key}"}, "201 Created")
        if req.method == "PATCH":
            data = req.json
            if "is_active" not in data:
                raise ValidationError("is_active is required")
            count = set_public_link_active(conn, sheet_id, to_bool(data.get("is_active")), to_int(data.get("link_id")), user["id"])
            conn.commit()
            return ok({"updated": count})
        if req.method == "DELETE":
            link_id = to_int(req.query.get("link_id")) or required_int(req.json, "link_id")
            delete_public_link(conn, sheet_id, link_id, user["id"])
            conn.commit()
            return ok()
    return None


def _require_sheet_row(conn, sheet_id: int, row_id: int) -> None:
    row = get_row(conn, row_id)
    if not row or int(row["sheet_id"]) != sheet_id:
        raise NotFoundError("Row not found")


def _access_payload(family: PermissionFamily, data: Dict[str, Any]) -> Any:
    if family.uses_levels:
        return data.get("permission_level")
    flags = data.get("permissions")
    if isinstance(flags, dict):
        return flags
    return {flag: data[flag] for flag in family.flags if flag in data}


def grant_routes(
    conn,
    req: Request,
    user: Dict[str, Any],
    family: PermissionFamily,
    resource_id: int,
    tail: str,
) -> Optional[Response]:
    """Grant management under `/<resource>/<id>`: `/permissions[/<grant id>]` and `/users/search`."""
    tail = tail.rstrip("/")
    if tail == "/users/search" and req.method == "GET":
        require_access(conn, family, resource_id, user, "manage")
        return ok({"users": search_grantable_users(conn, family, resource_id, req.query.get("q", ""))})

    if tail == "/permissions":
        require_access(conn, family, resource_id, user, "manage")
        if req.method == "GET":
            return ok({"permissions": list_grants(conn, family, resource_id)})
        if req.method == "POST":
            data = req.json
            created = grant(conn, family, resource_id, data.get("email", ""), _access_payload(family, data), user["id"])
            conn.commit()
            return ok({"permission": created}, "201 Created")
        return None

    m = GRANT_PATH_RE.match(tail)
    if not m:
        return None
    grant_id = int(m.group(1))
    require_access(conn, family, resource_id, user, "manage")
    if req.method == "GET":
        return ok({"permission": get_grant(conn, family, resource_id, grant_id)})
    if req.method == "PATCH":
        updated = update_grant(conn, family, resource_id, grant_id, _access_payload(family, req.json), user["id"])
        conn.commit()
        return ok({"permission": updated})
    if req.method == "DELETE":
        if not family.uses_levels:
            current = get_grant(conn, family, resource_id, grant_id)
            if int(current["user_id"]) == int(user["id"]):
                raise ForbiddenError("You cannot revoke your own access")
        revoke(conn, family, resource_id, grant_id, user["id"])
        conn.commit()
        return ok()
    return None


def folder_routes(conn, req: Request, user: Dict[str, Any]) -> Optional[Response]:
    family = FAMILIES["folders"]
    if req.path == "/api/folders":
        if req.method == "GET":
            return ok({"folders": folder_store.list_folders_for_user(conn, user)})
        if req.method == "POST":
            data = req.json
            folder = folder_store.create_folder(conn, data.get("name", ""), data.get("site_type", "other"), data.get("description", ""), user["id"])
            conn.commit()
            return ok({"folder": folder}, "201 Created")
        return None

    m = FOLDER_PATH_RE.match(req.path)
    if not m:
        return None
    folder_id = int(m.group(1))
    tail = (m.group(2) or "").rstrip("/")
    if tail:
        return grant_routes(conn, req, user, family, folder_id, tail)
    if req.method == "GET":
        access = require_access(conn, family, folder_id, user, "view")
        return ok({"folder": folder_store.get_folder(conn, folder_id), "access": access})
    if req.method == "PATCH":
        require_access(conn, family, folder_id, user, "edit")
        folder = folder_store.update_folder(conn, folder_id, req.json, user["id"])
        conn.commit()
        return ok({"folder": folder})
    if req.method == "DELETE":
        require_access(conn, family, folder_id, user, "delete")
        folder_store.delete_folder(conn, folder_id, user["id"])
        conn.commit()
        return ok()
    return None


def tracker_routes(conn, req: Request, user: Dict[str, Any]) -> Optional[Response]:
    family = FAMILIES["trackers"]
    if req.path == "/api/trackers":
        if req.method == "GET":
            return ok({"trackers": tracker_store.list_trackers_for_user(conn, user)})
        if req.method == "POST":
            tracker = tracker_store.create_tracker(conn, user["id"], req.json)
            conn.commit()
            return ok({"tracker": tracker}, "201 Created")
        return None

    m = TRACKER_PATH_RE.match(req.path)
    if not m:
        return None
    tracker_id = int(m.group(1))
    tail = (m.group(2) or "").rstrip("/")
    if tail == "/logs":
        if req.method != "POST":
            return None
        require_access(conn, family, tracker_id, user, "edit")
        data = req.json
        tracker = tracker_store.add_tracker_log(
            conn,
            tracker_id,
            data.get("amount"),
            data.get("note", ""),
            data.get("date"),
            user["id"],
        )
        conn.commit()
        return ok({"tracker": tracker}, "201 Created")
    if tail:
        return grant_routes(conn, req, user, family, tracker_id, tail)
    if req.method == "GET":
        access = require_access(conn, family, tracker_id, user, "view")
        return ok({"tracker": tracker_store.get_tracker(conn, tracker_id), "access": access})
    if req.method == "PATCH":
        require_access(conn, family, tracker_id, user, "edit")
        tracker = tracker_store.update_tracker(conn, tracker_id, req.json, user["id"])
        conn.commit()
        return ok({"tracker": tracker})
    if req.method == "DELETE":
        require_access(conn, family, tracker_id, user, "delete")
        tracker_store.delete_tracker(conn, tracker_id, user["id"])
        conn.commit()
        return ok()
    return None


def material_routes(conn, req: Request, user: Dict[str, Any]) -> Optional[Response]:
    m = MATERIAL_PATH_RE.match(req.path)
    if not m:
        return None
    area, key = m.group(1), m.group(2)

    if area == "brands":
        if key is None and req.method == "GET":
            return ok({"brands": material_store.list_brands(conn)})
        if key is None and req.method == "POST":
            brand = material_store.create_brand(conn, req.json, user["id"])
            conn.commit()
            return ok({"brand": brand}, "201 Created")
        if key is not None and req.method == "GET":
            return ok({"brand": material_store.get_brand(conn, key)})
        return None

    if key is None:
        if area == "categories" and req.method == "GET":
            return ok({"categories": material_store.list_categories(conn, req.query.get("brand"))})
        if area == "categories" and req.method == "POST":
            category = material_store.create_category(conn, req.json, user["id"])
            conn.commit()
            return ok({"category": category}, "201 Created")
        if area == "items" and req.method == "GET":
            items = material_store.list_items(conn, req.query.get("category_id"), req.query.get("brand"))
            return ok({"items": items})
        if area == "items" and req.method == "POST":
            item = material_store.create_item(conn, req.json, user["id"])
            conn.commit()
            return ok({"item": item}, "201 Created")
        return None

    resource_id = to_int(key)
    if resource_id is None:
        return None
    if area == "categories":
        if req.method == "GET":
            return ok({"category": material_store.get_category(conn, resource_id)})
        if req.method in {"PUT", "PATCH"}:
            category = material_store.update_category(conn, resource_id, req.json, user["id"])
            conn.commit()
            return ok({"category": category})
        if req.method == "DELETE":
            removed = material_store.delete_category(conn, resource_id, user["id"])
            conn.commit()
            return ok({"items_removed": removed})
        return None
    if req.method == "GET":
        return ok({"item": material_store.get_item(conn, resource_id)})
    if req.method in {"PUT", "PATCH"}:
        item = material_store.update_item(conn, resource_id, req.json, user)
        conn.commit()
        return ok({"item": item})
    if req.method == "DELETE":
        material_store.delete_item(conn, resource_id, user)
        conn.commit()
        return ok()
    return None


def settlement_routes(conn, req: Request, user: Dict[str, Any]) -> Optional[Response]:
    m = SETTLEMENT_PATH_RE.match(req.path)
    if not m:
        return None
    board = mr_items.BOARDS["settlement"]
    key = m.group(1)

    if key is None:
        if req.method == "GET":
            return ok({"items": mr_items.list_items(conn, board)})
        if req.method == "POST":
            item = mr_items.add_item(conn, board, req.json, user["id"])
            conn.commit()
            return ok({"item": item}, "201 Created")
        return None
    if key == "bulk":
        if req.method != "POST":
            return None
        result = mr_items.bulk_action(conn, board, req.json, user["id"])
        conn.commit()
        return ok(result)
    if key == "export":
        if req.method != "GET":
            return None
        return csv_response(mr_items.export_items_csv(conn, board), "settlement-items.csv")

    item_id = int(key)
    if req.method == "GET":
        return ok({"item": mr_items.get_item(conn, board, item_id)})
    if req.method == "PATCH":
        item = mr_items.update_item(conn, board, item_id, req.json, user["id"])
        conn.commit()
        return ok({"item": item})
    if req.method == "DELETE":
        mr_items.delete_item(conn, board, item_id, user["id"])
        conn.commit()
        return ok()
    return None


def reserve_routes(conn, req: Request, user: Dict[str, Any]) -> Optional[Response]:
    family = FAMILIES["reserve"]
    board = mr_items.BOARDS["reserve"]
    if req.path.rstrip("/") == "/api/reserve":
        if req.method != "GET":
            return None
        return ok({"boards": mr_items.list_reserve_boards(conn, user)})

    m = RESERVE_PATH_RE.match(req.path)
    if not m:
        return None
    owner_id = int(m.group(1))
    tail = (m.group(2) or "").rstrip("/")

    if tail == "/items":
        if req.method == "GET":
            access = require_access(conn, family, owner_id, user, "view")
            return ok({"items": mr_items.list_items(conn, board, owner_id), "access": access})
        if req.method == "POST":
            require_access(conn, family, owner_id, user, "edit")
            item = mr_items.add_item(conn, board, req.json, user["id"], owner_id)
            conn.commit()
            return ok({"item": item}, "201 Created")
        return None

    item_match = RESERVE_ITEM_RE.match(tail)
    if item_match:
        item_id = int(item_match.group(1))
        if req.method == "GET":
            require_access(conn, family, owner_id, user, "view")
            return ok({"item": mr_items.get_item(conn, board, item_id, owner_id)})
        if req.method == "PATCH":
            require_access(conn, family, owner_id, user, "edit")
            item = mr_items.update_item(conn, board, item_id, req.json, user["id"], owner_id)
            conn.commit()
            return ok({"item": item})
        if req.method == "DELETE":
            require_access(conn, family, owner_id, user, "delete")
            mr_items.delete_item(conn, board, item_id, user["id"], owner_id)
            conn.commit()
            return ok()
        return None

    if tail == "/bulk" and req.method == "POST":
        data = req.json
        require_access(conn, family, owner_id, user, "delete" if data.get("action") == "delete" else "edit")
        result = mr_items.bulk_action(conn, board, data, user["id"], owner_id)
        conn.commit()
        return ok(result)
    if tail == "/categories" and req.method == "GET":
        require_access(conn, family, owner_id, user, "view")
        return ok({"categories": mr_items.list_item_categories(conn, board, owner_id)})
    if tail == "/export" and req.method == "GET":
        require_access(conn, family, owner_id, user, "view")
        return csv_response(mr_items.export_items_csv(conn, board, owner_id), f"reserve-items-{owner_id}.csv")
    if tail:
        return grant_routes(conn, req, user, family, owner_id, tail)
    return None
