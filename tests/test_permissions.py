"""
Tests for the generic permission grant service across resource families.
"""
import pytest

from opsgrid.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from opsgrid.folders import create_folder
from opsgrid.permissions import (
    FAMILIES,
    get_family,
    grant,
    list_grants,
    require_access,
    resolve_access,
    revoke,
    search_grantable_users,
    update_grant,
)
from opsgrid.trackers import create_tracker

SHEETS = FAMILIES["sheets"]
FOLDERS = FAMILIES["folders"]
TRACKERS = FAMILIES["trackers"]


@pytest.fixture
def member(make_user):
    return make_user("member@example.com", "Team Member")


@pytest.fixture
def folder(conn, owner):
    created = create_folder(conn, "North relocations", "relocation", "", owner["id"])
    conn.commit()
    return created


class TestGrantLifecycle:
    def test_grant_twice_conflicts_and_regrant_after_revoke(self, conn, owner, member, sheet):
        sheet_id = sheet["sheet"]["id"]
        first = grant(conn, SHEETS, sheet_id, "member@example.com", "read", owner["id"])
        assert first["permission_level"] == "read"
        assert first["user"]["email"] == "member@example.com"

        with pytest.raises(ConflictError):
            grant(conn, SHEETS, sheet_id, "member@example.com", "write", owner["id"])

        revoke(conn, SHEETS, sheet_id, first["id"], owner["id"])
        again = grant(conn, SHEETS, sheet_id, "MEMBER@example.com ", "write", owner["id"])
        assert again["permission_level"] == "write"

    def test_unknown_user_and_resource(self, conn, owner, sheet):
        with pytest.raises(NotFoundError):
            grant(conn, SHEETS, sheet["sheet"]["id"], "ghost@example.com", "read", owner["id"])
        with pytest.raises(NotFoundError):
            grant(conn, SHEETS, 9999, "owner@example.com", "read", owner["id"])

    def test_invalid_level(self, conn, owner, member, sheet):
        with pytest.raises(ValidationError):
            grant(conn, SHEETS, sheet["sheet"]["id"], "member@example.com", "superuser", owner["id"])

    def test_owner_cannot_be_granted(self, conn, owner, sheet):
        with pytest.raises(ConflictError):
            grant(conn, SHEETS, sheet["sheet"]["id"], "owner@example.com", "read", owner["id"])

    def test_update_in_place(self, conn, owner, member, sheet):
        sheet_id = sheet["sheet"]["id"]
        created = grant(conn, SHEETS, sheet_id, "member@example.com", "read", owner["id"])
        updated = update_grant(conn, SHEETS, sheet_id, created["id"], "admin", owner["id"])
        assert updated["id"] == created["id"]
        assert [g["permission_level"] for g in list_grants(conn, SHEETS, sheet_id)] == ["admin"]

    def test_revoke_missing_grant(self, conn, owner, sheet):
        with pytest.raises(NotFoundError):
            revoke(conn, SHEETS, sheet["sheet"]["id"], 12345)

    def test_unknown_family(self):
        with pytest.raises(ValidationError):
            get_family("reserves")


class TestFlagFamilies:
    def test_folder_flags_imply_view(self, conn, owner, member, folder):
        created = grant(conn, FOLDERS, folder["id"], "member@example.com", {"can_edit": True}, owner["id"])
        assert created["can_view"] is True
        assert created["can_edit"] is True
        assert created["can_delete"] is False

    def test_partial_update_keeps_other_flags(self, conn, owner, member, folder):
        created = grant(conn, FOLDERS, folder["id"], "member@example.com", {"can_edit": True}, owner["id"])
        updated = update_grant(conn, FOLDERS, folder["id"], created["id"], {"can_delete": True}, owner["id"])
        assert updated["can_edit"] is True
        assert updated["can_delete"] is True

    def test_unknown_flag_rejected(self, conn, owner, member, folder):
        with pytest.raises(ValidationError):
            grant(conn, FOLDERS, folder["id"], "member@example.com", {"can_manage": True}, owner["id"])

    def test_tracker_manage_flag(self, conn, owner, member):
        tracker = create_tracker(conn, owner["id"], {"title": "Sites energised", "target": 10})
        grant(conn, TRACKERS, tracker["id"], "member@example.com", {"can_manage": True}, owner["id"])
        access = resolve_access(conn, TRACKERS, tracker["id"], member)
        assert access == {"view": True, "edit": False, "delete": False, "manage": True}


class TestAccessResolution:
    @pytest.mark.parametrize(
        "level,expected",
        [
            ("read", {"view": True, "edit": False, "delete": False, "manage": False}),
            ("write", {"view": True, "edit": True, "delete": False, "manage": False}),
            ("admin", {"view": True, "edit": True, "delete": True, "manage": True}),
        ],
    )
    def test_levels_map_to_capabilities(self, conn, owner, member, sheet, level, expected):
        grant(conn, SHEETS, sheet["sheet"]["id"], "member@example.com", level, owner["id"])
        assert resolve_access(conn, SHEETS, sheet["sheet"]["id"], member) == expected

    def test_owner_and_admin_hold_everything(self, conn, owner, make_user, sheet):
        admin = make_user("root@example.com", is_admin=True)
        full = {"view": True, "edit": True, "delete": True, "manage": True}
        assert resolve_access(conn, SHEETS, sheet["sheet"]["id"], owner) == full
        assert resolve_access(conn, SHEETS, sheet["sheet"]["id"], admin) == full

    def test_require_access(self, conn, owner, member, sheet):
        sheet_id = sheet["sheet"]["id"]
        with pytest.raises(NotFoundError):
            require_access(conn, SHEETS, sheet_id, member, "view")
        grant(conn, SHEETS, sheet_id, "member@example.com", "read", owner["id"])
        assert require_access(conn, SHEETS, sheet_id, member, "view")["view"] is True
        with pytest.raises(ForbiddenError):
            require_access(conn, SHEETS, sheet_id, member, "edit")


class TestUserSearch:
    def test_excludes_owner_and_existing_grantees(self, conn, owner, make_user, sheet):
        sheet_id = sheet["sheet"]["id"]
        make_user("alpha@example.com")
        make_user("beta@example.com")
        grant(conn, SHEETS, sheet_id, "beta@example.com", "read", owner["id"])

        emails = [u["email"] for u in search_grantable_users(conn, SHEETS, sheet_id, "example")]
        assert emails == ["alpha@example.com"]
        assert search_grantable_users(conn, SHEETS, sheet_id, "a") == []
