"""
Tests for the material inventory and the MR-number item boards.
"""
import pytest

from opsgrid import material
from opsgrid.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from opsgrid.mr_items import (
    BOARDS,
    add_item,
    bulk_action,
    export_items_csv,
    import_items,
    list_item_categories,
    list_items,
    list_reserve_boards,
    update_item,
)
from opsgrid.permissions import FAMILIES, grant, resolve_access

SETTLEMENT = BOARDS["settlement"]
RESERVE = BOARDS["reserve"]


@pytest.fixture
def category(conn, owner):
    created = material.create_category(conn, {"name": "Antennas", "brand": "ericsson"}, owner["id"])
    conn.commit()
    return created


class TestBrands:
    def test_default_brands_are_seeded(self, conn):
        assert [b["slug"] for b in material.list_brands(conn)] == ["ericsson", "huawei"]

    def test_slug_and_duplicates(self, conn, owner):
        brand = material.create_brand(conn, {"name": "  Nokia Networks! "}, owner["id"])
        assert brand["slug"] == "nokia-networks"
        assert brand["description"] == "Nokia Networks! equipment and materials"
        assert brand["color"] == material.DEFAULT_COLOR
        with pytest.raises(ConflictError):
            material.create_brand(conn, {"name": "nokia networks"}, owner["id"])
        with pytest.raises(ValidationError):
            material.create_brand(conn, {"name": "Zte", "color": "blue"}, owner["id"])

    def test_unknown_slug_gets_placeholder(self, conn):
        assert material.get_brand(conn, "zte") == {
            "id": None,
            "name": "Zte",
            "slug": "zte",
            "description": "",
            "color": material.DEFAULT_COLOR,
        }


class TestCategories:
    def test_brand_is_required_to_list(self, conn):
        with pytest.raises(ValidationError):
            material.list_categories(conn, "")

    def test_color_defaults_by_brand(self, conn, owner, category):
        huawei = material.create_category(conn, {"name": "Antennas", "brand": "Huawei"}, owner["id"])
        assert category["color"] == "#3B82F6"
        assert huawei["color"] == "#DC2626"
        assert [c["name"] for c in material.list_categories(conn, "huawei")] == ["Antennas"]

    def test_name_unique_within_brand(self, conn, owner, category):
        with pytest.raises(ConflictError):
            material.create_category(conn, {"name": "Antennas", "brand": "ericsson"}, owner["id"])
        other = material.create_category(conn, {"name": "Cables", "brand": "ericsson"}, owner["id"])
        with pytest.raises(ConflictError):
            material.update_category(conn, other["id"], {"name": "Antennas"}, owner["id"])

    def test_delete_removes_items(self, conn, owner, category):
        material.create_item(conn, {"name": "AIR 3268", "category_id": category["id"]}, owner["id"])
        material.create_item(conn, {"name": "AIR 6449", "category_id": category["id"]}, owner["id"])
        assert material.delete_category(conn, category["id"], owner["id"]) == 2
        assert material.list_items(conn) == []
        with pytest.raises(NotFoundError):
            material.get_category(conn, category["id"])


class TestMaterialItems:
    def test_defaults_and_category_join(self, conn, owner, category):
        item = material.create_item(conn, {"name": "AIR 3268", "category_id": category["id"]}, owner["id"])
        assert item["brand"] == "ericsson"
        assert item["quantity"] == 0
        assert item["unit"] == "pcs"
        assert item["status"] == "available"
        assert item["category"] == {"name": "Antennas", "color": "#3B82F6"}

    @pytest.mark.parametrize(
        "data",
        [
            {"name": ""},
            {"category_id": None},
            {"quantity": -1},
            {"quantity": 2.5},
            {"quantity": "lots"},
            {"status": "lost"},
        ],
    )
    def test_invalid_fields(self, conn, owner, category, data):
        payload = {"name": "AIR 3268", "category_id": category["id"], **data}
        with pytest.raises(ValidationError):
            material.create_item(conn, payload, owner["id"])

    def test_unknown_category(self, conn, owner):
        with pytest.raises(NotFoundError):
            material.create_item(conn, {"name": "AIR 3268", "category_id": 999}, owner["id"])

    def test_filters_newest_first(self, conn, owner, category):
        cables = material.create_category(conn, {"name": "Cables", "brand": "huawei"}, owner["id"])
        first = material.create_item(conn, {"name": "AIR 3268", "category_id": category["id"]}, owner["id"])
        second = material.create_item(conn, {"name": "AIR 6449", "category_id": category["id"]}, owner["id"])
        material.create_item(conn, {"name": "Jumper", "category_id": cables["id"]}, owner["id"])

        assert [i["id"] for i in material.list_items(conn, category_id=category["id"])] == [second["id"], first["id"]]
        assert [i["name"] for i in material.list_items(conn, brand="HUAWEI")] == ["Jumper"]
        with pytest.raises(ValidationError):
            material.list_items(conn, category_id="abc")

    def test_only_creator_or_admin_changes(self, conn, owner, make_user, category):
        item = material.create_item(conn, {"name": "AIR 3268", "category_id": category["id"]}, owner["id"])
        other = make_user("other@example.com")
        admin = make_user("admin@example.com", is_admin=True)
        with pytest.raises(ForbiddenError):
            material.update_item(conn, item["id"], {"quantity": 5}, other)
        with pytest.raises(ForbiddenError):
            material.delete_item(conn, item["id"], other)

        updated = material.update_item(conn, item["id"], {"quantity": 5, "status": "reserved"}, owner)
        assert (updated["quantity"], updated["status"], updated["name"]) == (5, "reserved", "AIR 3268")
        material.delete_item(conn, item["id"], admin)
        with pytest.raises(NotFoundError):
            material.get_item(conn, item["id"])


class TestSettlementBoard:
    def test_add_requires_unique_mr_number(self, conn, owner):
        item = add_item(conn, SETTLEMENT, {"mr_number": " MR-100 "}, owner["id"])
        assert (item["mr_number"], item["status"], item["notes"]) == ("MR-100", "none", "")
        with pytest.raises(ConflictError):
            add_item(conn, SETTLEMENT, {"mr_number": "MR-100"}, owner["id"])
        with pytest.raises(ValidationError):
            add_item(conn, SETTLEMENT, {"mr_number": "  "}, owner["id"])

    def test_update_rejects_unknown_status(self, conn, owner):
        item = add_item(conn, SETTLEMENT, {"mr_number": "MR-1"}, owner["id"])
        updated = update_item(conn, SETTLEMENT, item["id"], {"status": "Done", "notes": "signed"}, owner["id"])
        assert (updated["status"], updated["notes"]) == ("done", "signed")
        with pytest.raises(ValidationError):
            update_item(conn, SETTLEMENT, item["id"], {"status": "archived"}, owner["id"])
        with pytest.raises(ValidationError):
            update_item(conn, SETTLEMENT, item["id"], {"priority": "high"}, owner["id"])

    def test_import_skips_existing_and_repeated_numbers(self, conn, owner):
        add_item(conn, SETTLEMENT, {"mr_number": "MR-1"}, owner["id"])
        result = import_items(conn, SETTLEMENT, ["MR-1", "MR-2", "MR-3", "MR-2", ""], owner["id"])

        assert [i["mr_number"] for i in result["data"]] == ["MR-2", "MR-3"]
        assert result["duplicatesCount"] == 2
        assert [i["mr_number"] for i in list_items(conn, SETTLEMENT)] == ["MR-3", "MR-2", "MR-1"]

        again = import_items(conn, SETTLEMENT, ["MR-1", "MR-2"], owner["id"])
        assert again["data"] == []
        assert again["duplicatesCount"] == 2
        assert again["message"] == "All MR Numbers already exist"

    def test_bulk_status_and_delete(self, conn, owner):
        ids = [add_item(conn, SETTLEMENT, {"mr_number": f"MR-{n}"}, owner["id"])["id"] for n in range(3)]
        result = bulk_action(conn, SETTLEMENT, {"action": "update_status", "ids": ids[:2], "status": "problem"}, owner["id"])
        assert sorted(i["id"] for i in result["data"]) == ids[:2]
        assert {i["status"] for i in result["data"]} == {"problem"}

        assert bulk_action(conn, SETTLEMENT, {"action": "delete", "ids": ids[1:]}, owner["id"]) == {"deleted": 2}
        assert [i["id"] for i in list_items(conn, SETTLEMENT)] == ids[:1]

    @pytest.mark.parametrize(
        "data",
        [
            {},
            {"action": "archive", "ids": [1]},
            {"action": "update_priority", "ids": [1], "priority": "high"},
            {"action": "update_status", "ids": [], "status": "done"},
            {"action": "update_status", "ids": [1]},
            {"action": "delete", "ids": ["x"]},
            {"action": "import", "mrNumbers": []},
        ],
    )
    def test_bulk_rejects_bad_requests(self, conn, owner, data):
        with pytest.raises(ValidationError):
            bulk_action(conn, SETTLEMENT, data, owner["id"])

    def test_export_labels_statuses(self, conn, owner):
        item = add_item(conn, SETTLEMENT, {"mr_number": "MR-9", "notes": "check"}, owner["id"])
        update_item(conn, SETTLEMENT, item["id"], {"status": "problem"}, owner["id"])
        lines = export_items_csv(conn, SETTLEMENT).splitlines()
        assert lines[0] == "MR Number,Status,Notes,Created,Updated"
        assert lines[1].startswith("MR-9,Problem,check,")


class TestReserveBoard:
    def test_items_are_scoped_to_their_owner(self, conn, owner, make_user):
        other = make_user("other@example.com")
        mine = add_item(conn, RESERVE, {"mr_number": "MR-1", "priority": "high", "due_date": "03/15/2026"}, owner["id"], owner["id"])
        add_item(conn, RESERVE, {"mr_number": "MR-1"}, other["id"], other["id"])

        assert (mine["priority"], mine["due_date"], mine["category"]) == ("high", "2026-03-15", "")
        assert [i["owner_id"] for i in list_items(conn, RESERVE, owner["id"])] == [owner["id"]]
        with pytest.raises(NotFoundError):
            update_item(conn, RESERVE, mine["id"], {"notes": "x"}, other["id"], other["id"])
        with pytest.raises(ValidationError):
            list_items(conn, RESERVE)

    def test_bulk_priority_and_category(self, conn, owner):
        ids = [add_item(conn, RESERVE, {"mr_number": f"MR-{n}"}, owner["id"], owner["id"])["id"] for n in range(2)]
        bulk_action(conn, RESERVE, {"action": "update_priority", "ids": ids, "priority": "low"}, owner["id"], owner["id"])
        bulk_action(conn, RESERVE, {"action": "update_category", "ids": ids[:1], "category": "Tower"}, owner["id"], owner["id"])
        items = {i["id"]: i for i in list_items(conn, RESERVE, owner["id"])}

        assert {i["priority"] for i in items.values()} == {"low"}
        assert items[ids[0]]["category"] == "Tower"
        assert list_item_categories(conn, RESERVE, owner["id"]) == ["Tower"]
        with pytest.raises(ValidationError):
            bulk_action(conn, RESERVE, {"action": "update_priority", "ids": ids, "priority": "urgent"}, owner["id"], owner["id"])

    def test_grants_open_another_users_board(self, conn, owner, make_user):
        helper = make_user("helper@example.com")
        family = FAMILIES["reserve"]
        assert resolve_access(conn, family, owner["id"], helper)["view"] is False

        grant(conn, family, owner["id"], "helper@example.com", "write", owner["id"])
        access = resolve_access(conn, family, owner["id"], helper)
        assert (access["view"], access["edit"], access["delete"]) == (True, True, False)

        boards = {b["owner_id"]: b for b in list_reserve_boards(conn, helper)}
        assert boards[helper["id"]]["is_owner"] is True
        assert boards[owner["id"]]["permission_level"] == "write"

    def test_owner_cannot_be_granted_own_board(self, conn, owner):
        with pytest.raises(ConflictError):
            grant(conn, FAMILIES["reserve"], owner["id"], "owner@example.com", "read", owner["id"])


class TestRoutes:
    def test_material_flow(self, signed_in):
        client = signed_in("owner@example.com")
        assert client.get("/api/material/categories").status_code == 400
        category = client.post("/api/material/categories", json={"name": "Antennas", "brand": "ericsson"})
        assert category.status_code == 201
        category_id = category.get_json()["category"]["id"]

        created = client.post("/api/material/items", json={"name": "AIR 3268", "category_id": category_id, "quantity": 4})
        assert created.status_code == 201
        item_id = created.get_json()["item"]["id"]

        items = client.get(f"/api/material/items?category_id={category_id}").get_json()["items"]
        assert [i["id"] for i in items] == [item_id]
        assert client.get("/api/material/brands/ericsson").get_json()["brand"]["name"] == "Ericsson"

        other = signed_in("other@example.com")
        assert other.patch(f"/api/material/items/{item_id}", json={"quantity": 1}).status_code == 403
        assert client.patch(f"/api/material/items/{item_id}", json={"quantity": 1}).get_json()["item"]["quantity"] == 1
        assert client.delete(f"/api/material/categories/{category_id}").get_json()["items_removed"] == 1

    def test_settlement_bulk_import(self, signed_in):
        client = signed_in("owner@example.com")
        assert client.post("/api/settlement", json={"mr_number": "MR-1"}).status_code == 201
        assert client.post("/api/settlement", json={"mr_number": "MR-1"}).status_code == 409

        imported = client.post("/api/settlement/bulk", json={"action": "import", "mrNumbers": ["MR-1", "MR-2"]})
        assert imported.status_code == 200
        assert imported.get_json()["duplicatesCount"] == 1

        ids = [i["id"] for i in client.get("/api/settlement").get_json()["items"]]
        done = client.post("/api/settlement/bulk", json={"action": "update_status", "ids": ids, "status": "done"})
        assert {i["status"] for i in done.get_json()["data"]} == {"done"}
        assert client.post("/api/settlement/bulk", json={"action": "shred", "ids": ids}).status_code == 400
        assert client.post("/api/settlement/bulk", json={"action": "delete", "ids": ids}).get_json()["deleted"] == 2

        export = client.get("/api/settlement/export")
        assert export.status_code == 200
        assert export.data.decode().startswith("MR Number,Status")

    def test_reserve_sharing(self, signed_in):
        owner = signed_in("owner@example.com")
        helper = signed_in("helper@example.com")
        owner_id = owner.get("/api/reserve").get_json()["boards"][0]["owner_id"]

        created = owner.post(f"/api/reserve/{owner_id}/items", json={"mr_number": "MR-1"})
        assert created.status_code == 201
        item_id = created.get_json()["item"]["id"]
        assert helper.get(f"/api/reserve/{owner_id}/items").status_code == 404

        granted = owner.post(f"/api/reserve/{owner_id}/permissions", json={"email": "helper@example.com", "permission_level": "write"})
        assert granted.status_code == 201

        assert helper.get(f"/api/reserve/{owner_id}/items").status_code == 200
        patched = helper.patch(f"/api/reserve/{owner_id}/items/{item_id}", json={"priority": "high"})
        assert patched.get_json()["item"]["priority"] == "high"
        assert helper.delete(f"/api/reserve/{owner_id}/items/{item_id}").status_code == 403
        bulk_delete = helper.post(f"/api/reserve/{owner_id}/bulk", json={"action": "delete", "ids": [item_id]})
        assert bulk_delete.status_code == 403
        assert helper.get(f"/api/reserve/{owner_id}/permissions").status_code == 403
        assert owner.delete(f"/api/reserve/{owner_id}/items/{item_id}").status_code == 200
