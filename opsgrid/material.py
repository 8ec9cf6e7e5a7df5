"""Material inventory: brands, per-brand categories and stocked items.

Brands are addressed by slug. Categories belong to a brand slug and are
unique by name within it; deleting a category removes its items. Items may
only be changed or removed by the user who created them, or an admin.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from typing import Any, Dict, List, Optional

from opsgrid.audit import log_action
from opsgrid.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from opsgrid.util import iso, to_int

logger = logging.getLogger(__name__)

DEFAULT_COLOR = "#3B82F6"
ALT_COLOR = "#DC2626"
DEFAULT_BRANDS = (
    ("Ericsson", DEFAULT_COLOR),
    ("Huawei", ALT_COLOR),
)
MATERIAL_STATUSES = ("available", "out_of_stock", "discontinued", "reserved")
DEFAULT_UNIT = "pcs"
COLOR_RE = re.compile(r"^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")
SLUG_STRIP_RE = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    return SLUG_STRIP_RE.sub("-", str(name or "").lower()).strip("-")


def _text(value: Any) -> str:
    return str(value or "").strip()


def _color(value: Any, default: str) -> str:
    color = _text(value) or default
    if not COLOR_RE.match(color):
        raise ValidationError("color must be a hex value like #3B82F6")
    return color


def serialize_brand(row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "name": row["name"],
        "slug": row["slug"],
        "description": row["description"],
        "color": row["color"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def list_brands(conn) -> List[Dict[str, Any]]:
    rows = conn.execute("SELECT * FROM material_brands ORDER BY name, id").fetchall()
    return [serialize_brand(row) for row in rows]


def get_brand(conn, slug: str) -> Dict[str, Any]:
    """Brand by slug; unknown slugs get a placeholder so brand pages still render."""
    row = conn.execute("SELECT * FROM material_brands WHERE slug = ?", (_text(slug).lower(),)).fetchone()
    if row:
        return serialize_brand(row)
    slug = _text(slug).lower()
    return {"id": None, "name": slug.capitalize(), "slug": slug, "description": "", "color": DEFAULT_COLOR}


def create_brand(conn, data: Dict[str, Any], actor_id: Optional[int] = None) -> Dict[str, Any]:
    name = _text(data.get("name"))
    if not name:
        raise ValidationError("Brand name is required")
    slug = slugify(name)
    if not slug:
        raise ValidationError("Brand name must contain letters or digits")
    if conn.execute("SELECT 1 FROM material_brands WHERE slug = ?", (slug,)).fetchone():
        raise ConflictError(f"Brand '{slug}' already exists")
    now = iso()
    try:
        cur = conn.execute(
            """
            INSERT INTO material_brands (name, slug, description, color, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                name,
                slug,
                _text(data.get("description")) or f"{name} equipment and materials",
                _color(data.get("color"), DEFAULT_COLOR),
                now,
                now,
            ),
        )
    except sqlite3.IntegrityError as exc:
        raise ConflictError(f"Brand '{slug}' already exists") from exc
    log_action(conn, actor_id, "brand_created", "material_brands", int(cur.lastrowid), {"slug": slug})
    return get_brand(conn, slug)


def seed_default_brands(conn) -> None:
    for name, color in DEFAULT_BRANDS:
        if conn.execute("SELECT 1 FROM material_brands WHERE slug = ?", (slugify(name),)).fetchone():
            continue
        create_brand(conn, {"name": name, "color": color})
        logger.info("Seeded material brand %s", name)


def serialize_category(row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "name": row["name"],
        "description": row["description"],
        "brand": row["brand"],
        "color": row["color"],
        "created_by": row["created_by"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def list_categories(conn, brand: Any) -> List[Dict[str, Any]]:
    brand = _text(brand).lower()
    if not brand:
        raise ValidationError("brand is required")
    rows = conn.execute("SELECT * FROM material_categories WHERE brand = ? ORDER BY name, id", (brand,)).fetchall()
    return [serialize_category(row) for row in rows]


def get_category(conn, category_id: int) -> Dict[str, Any]:
    row = conn.execute("SELECT * FROM material_categories WHERE id = ?", (category_id,)).fetchone()
    if not row:
        raise NotFoundError("Category not found")
    return serialize_category(row)


def _category_fields(data: Dict[str, Any], current: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    current = current or {}
    name = _text(data.get("name", current.get("name")))
    brand = _text(data.get("brand", current.get("brand"))).lower()
    if not name or not brand:
        raise ValidationError("Category name and brand are required")
    default_color = DEFAULT_COLOR if brand == "ericsson" else ALT_COLOR
    return {
        "name": name,
        "brand": brand,
        "description": _text(data.get("description", current.get("description"))),
        "color": _color(data.get("color", current.get("color")), default_color),
    }


def _require_unique_category(conn, name: str, brand: str, exclude_id: Optional[int] = None) -> None:
    row = conn.execute(
        "SELECT id FROM material_categories WHERE name = ? AND brand = ?",
        (name, brand),
    ).fetchone()
    if row and row["id"] != exclude_id:
        raise ConflictError(f"Category '{name}' already exists for {brand}")


def create_category(conn, data: Dict[str, Any], actor_id: Optional[int]) -> Dict[str, Any]:
    fields = _category_fields(data)
    _require_unique_category(conn, fields["name"], fields["brand"])
    now = iso()
    try:
        cur = conn.execute(
            """
            INSERT INTO material_categories (name, description, brand, color, created_by, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (fields["name"], fields["description"], fields["brand"], fields["color"], actor_id, now, now),
        )
    except sqlite3.IntegrityError as exc:
        raise ConflictError(f"Category '{fields['name']}' already exists for {fields['brand']}") from exc
    category_id = int(cur.lastrowid)
    log_action(conn, actor_id, "category_created", "material_categories", category_id, {"name": fields["name"], "brand": fields["brand"]})
    return get_category(conn, category_id)


def update_category(conn, category_id: int, data: Dict[str, Any], actor_id: Optional[int]) -> Dict[str, Any]:
    current = get_category(conn, category_id)
    fields = _category_fields(data, current)
    _require_unique_category(conn, fields["name"], fields["brand"], exclude_id=category_id)
    conn.execute(
        "UPDATE material_categories SET name = ?, description = ?, brand = ?, color = ?, updated_at = ? WHERE id = ?",
        (fields["name"], fields["description"], fields["brand"], fields["color"], iso(), category_id),
    )
    log_action(conn, actor_id, "category_updated", "material_categories", category_id)
    return get_category(conn, category_id)


def delete_category(conn, category_id: int, actor_id: Optional[int]) -> int:
    """Delete a category and its items. Returns the number of items removed."""
    category = get_category(conn, category_id)
    removed = conn.execute("DELETE FROM materials WHERE category_id = ?", (category_id,)).rowcount
    conn.execute("DELETE FROM material_categories WHERE id = ?", (category_id,))
    log_action(
        conn,
        actor_id,
        "category_deleted",
        "material_categories",
        category_id,
        {"name": category["name"], "items_removed": removed},
    )
    return removed


def serialize_item(row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "name": row["name"],
        "description": row["description"],
        "notes": row["notes"],
        "part_number": row["part_number"],
        "category_id": row["category_id"],
        "category": {"name": row["category_name"], "color": row["category_color"]},
        "brand": row["brand"],
        "quantity": row["quantity"],
        "unit": row["unit"],
        "location": row["location"],
        "status": row["status"],
        "created_by": row["created_by"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


ITEM_SELECT = """
    SELECT m.*, c.name AS category_name, c.color AS category_color
    FROM materials m
    JOIN material_categories c ON c.id = m.category_id
"""


def list_items(conn, category_id: Any = None, brand: Any = None) -> List[Dict[str, Any]]:
    where: List[str] = []
    params: List[Any] = []
    if category_id not in (None, ""):
        parsed = to_int(category_id)
        if parsed is None:
            raise ValidationError("category_id must be an integer")
        where.append("m.category_id = ?")
        params.append(parsed)
    if _text(brand):
        where.append("m.brand = ?")
        params.append(_text(brand).lower())
    clause = f" WHERE {' AND '.join(where)}" if where else ""
    rows = conn.execute(ITEM_SELECT + clause + " ORDER BY m.created_at DESC, m.id DESC", tuple(params)).fetchall()
    return [serialize_item(row) for row in rows]


def get_item(conn, item_id: int) -> Dict[str, Any]:
    row = conn.execute(ITEM_SELECT + " WHERE m.id = ?", (item_id,)).fetchone()
    if not row:
        raise NotFoundError("Material not found")
    return serialize_item(row)


def _item_fields(conn, data: Dict[str, Any], current: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    current = current or {}
    name = _text(data.get("name", current.get("name")))
    if not name:
        raise ValidationError("Material name is required")
    category_id = to_int(data.get("category_id", current.get("category_id")))
    if category_id is None:
        raise ValidationError("category_id is required")
    category = get_category(conn, category_id)

    raw_quantity = data.get("quantity", current.get("quantity", 0))
    quantity = None if isinstance(raw_quantity, float) and not raw_quantity.is_integer() else to_int(raw_quantity)
    if quantity is None and raw_quantity in (None, ""):
        quantity = 0
    if quantity is None or quantity < 0:
        raise ValidationError("quantity must be a non-negative integer")

    status = _text(data.get("status", current.get("status"))).lower() or "available"
    if status not in MATERIAL_STATUSES:
        raise ValidationError("Invalid material status", {"allowed": list(MATERIAL_STATUSES)})

    return {
        "name": name,
        "description": _text(data.get("description", current.get("description"))),
        "notes": _text(data.get("notes", current.get("notes"))),
        "part_number": _text(data.get("part_number", current.get("part_number"))),
        "category_id": category_id,
        "brand": _text(data.get("brand", current.get("brand"))).lower() or category["brand"],
        "quantity": quantity,
        "unit": _text(data.get("unit", current.get("unit"))) or DEFAULT_UNIT,
        "location": _text(data.get("location", current.get("location"))),
        "status": status,
    }


def create_item(conn, data: Dict[str, Any], actor_id: Optional[int]) -> Dict[str, Any]:
    fields = _item_fields(conn, data)
    now = iso()
    columns = list(fields)
    cur = conn.execute(
        f"""
        INSERT INTO materials ({', '.join(columns)}, created_by, created_at, updated_at)
        VALUES ({', '.join(['?'] * len(columns))}, ?, ?, ?)
        """,
        (*fields.values(), actor_id, now, now),
    )
    item_id = int(cur.lastrowid)
    log_action(conn, actor_id, "material_created", "materials", item_id, {"name": fields["name"]})
    return get_item(conn, item_id)


def _require_creator(item: Dict[str, Any], user: Dict[str, Any]) -> None:
    if user.get("is_admin") or item["created_by"] == user["id"]:
        return
    raise ForbiddenError("Only the user who added this material can change it")


def update_item(conn, item_id: int, data: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
    current = get_item(conn, item_id)
    _require_creator(current, user)
    fields = _item_fields(conn, data, current)
    assignments = ", ".join(f"{column} = ?" for column in fields)
    conn.execute(
        f"UPDATE materials SET {assignments}, updated_at = ? WHERE id = ?",
        (*fields.values(), iso(), item_id),
    )
    log_action(conn, user["id"], "material_updated", "materials", item_id)
    return get_item(conn, item_id)


def delete_item(conn, item_id: int, user: Dict[str, Any]) -> None:
    item = get_item(conn, item_id)
    _require_creator(item, user)
    conn.execute("DELETE FROM materials WHERE id = ?", (item_id,))
    log_action(conn, user["id"], "material_deleted", "materials", item_id, {"name": item["name"]})
