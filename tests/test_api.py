"""
HTTP tests through the Flask test client.
"""
from opsgrid import db

PASSWORD = "correct-horse-1"


def create_sheet(client, name="Q1 Tracking"):
    response = client.post("/api/sheets-new/create", json={"name": name, "description": "rollout"})
    assert response.status_code == 201, response.get_json()
    return response.get_json()


def column_id(data, name):
    return next(c["id"] for c in data["columns"] if c["name"] == name)


class TestHealthAndAuth:
    def test_health_probes(self, flask_client):
        client = flask_client()
        assert client.get("/healthz").data == b"ok"
        assert client.get("/readyz").status_code == 200

    def test_setup_status_reports_tables(self, flask_client):
        body = flask_client().get("/api/setup/status").get_json()
        assert body["success"] is True
        assert body["ready"] is True
        assert body["tables"]["sheet_cells"] is True

    def test_unauthenticated_request(self, flask_client):
        response = flask_client().get("/api/sheets-new")
        assert response.status_code == 401
        assert response.get_json() == {"error": "Unauthorized"}

    def test_signup_rules(self, flask_client, signed_in):
        signed_in("ops@example.com")
        client = flask_client()
        duplicate = client.post("/api/auth/signup", json={"email": " OPS@example.com", "password": PASSWORD})
        assert duplicate.status_code == 409
        short = client.post("/api/auth/signup", json={"email": "new@example.com", "password": "short"})
        assert short.status_code == 400
        assert short.get_json()["code"] == "BAD_REQUEST"

    def test_login_logout(self, flask_client, signed_in):
        signed_in("ops@example.com")
        client = flask_client()
        assert client.post("/api/auth/login", json={"email": "ops@example.com", "password": "wrong-pass"}).status_code == 401
        assert client.post("/api/auth/login", json={"email": "ops@example.com", "password": PASSWORD}).status_code == 200
        assert client.get("/api/auth/me").get_json()["user"]["email"] == "ops@example.com"
        client.post("/api/auth/logout")
        assert client.get("/api/auth/me").status_code == 401

    def test_invalid_json_body(self, signed_in):
        client = signed_in("ops@example.com")
        response = client.post("/api/sheets-new/create", data="{not json", content_type="application/json")
        assert response.status_code == 400


class TestSheetRoutes:
    def test_create_edit_search_flow(self, signed_in):
        client = signed_in("owner@example.com")
        data = create_sheet(client)
        sheet_id = data["sheet"]["id"]
        row_id = data["rows"][0]["id"]
        assert len(data["columns"]) == 9

        patched = client.patch(
            f"/api/sheets-new/{sheet_id}/rows",
            json={"row_id": row_id, "column_id": column_id(data, "Notes"), "value": "FOOBAR"},
        )
        assert patched.status_code == 200
        assert patched.get_json()["cell"]["value"] == "FOOBAR"

        new_row = client.post(f"/api/sheets-new/{sheet_id}/rows").get_json()["row"]
        search = client.post(f"/api/sheets-new/{sheet_id}/search", json={"searchTerm": "foo", "columnFilters": {}})
        assert search.get_json()["rowIds"] == [row_id]
        everything = client.post(f"/api/sheets-new/{sheet_id}/search", json={})
        assert everything.get_json()["rowIds"] == [row_id, new_row["id"]]

    def test_columns_routes(self, signed_in):
        client = signed_in("owner@example.com")
        sheet_id = create_sheet(client)["sheet"]["id"]
        missing = client.post(f"/api/sheets-new/{sheet_id}/columns", json={"name": "Severity"})
        assert missing.status_code == 400
        added = client.post(f"/api/sheets-new/{sheet_id}/columns", json={"name": "Severity", "type": "text"})
        assert added.status_code == 201
        assert added.get_json()["column"]["position"] == 9
        deleted = client.delete(f"/api/sheets-new/{sheet_id}/columns?column_id={added.get_json()['column']['id']}")
        assert deleted.status_code == 200
        assert len(client.get(f"/api/sheets-new/{sheet_id}/columns").get_json()["columns"]) == 9

    def test_bulk_update(self, signed_in):
        client = signed_in("owner@example.com")
        data = create_sheet(client)
        sheet_id = data["sheet"]["id"]
        row_id = data["rows"][0]["id"]
        updates = [
            {"row_id": row_id, "column_id": column_id(data, "Site ID"), "value": "ST-1"},
            {"row_id": row_id, "column_id": column_id(data, "Status"), "value": "Done"},
        ]
        response = client.put(f"/api/sheets-new/{sheet_id}", json={"updates": updates})
        assert response.get_json() == {"success": True, "updated": 2}

        bad = client.put(
            f"/api/sheets-new/{sheet_id}",
            json={"updates": [{"row_id": row_id, "column_id": column_id(data, "Date"), "value": "someday"}]},
        )
        assert bad.status_code == 400
        rows = client.get(f"/api/sheets-new/{sheet_id}/rows").get_json()["rows"]
        assert rows[0]["cells"][str(column_id(data, "Site ID"))] == "ST-1"

    def test_row_delete_restore_purge(self, signed_in):
        client = signed_in("owner@example.com")
        data = create_sheet(client)
        sheet_id = data["sheet"]["id"]
        row_id = data["rows"][0]["id"]

        assert client.delete(f"/api/sheets-new/{sheet_id}/rows", json={"row_id": row_id}).status_code == 200
        assert client.get(f"/api/sheets-new/{sheet_id}/rows").get_json()["rows"] == []
        assert client.post(f"/api/sheets-new/{sheet_id}/rows/restore", json={"row_id": row_id}).status_code == 200
        client.delete(f"/api/sheets-new/{sheet_id}/rows?row_id={row_id}")
        purged = client.post(f"/api/sheets-new/{sheet_id}/rows/purge", json={})
        assert purged.get_json()["purged"] == 1

    def test_stale_cell_version_conflicts(self, signed_in):
        client = signed_in("owner@example.com")
        data = create_sheet(client)
        sheet_id = data["sheet"]["id"]
        payload = {"row_id": data["rows"][0]["id"], "column_id": column_id(data, "Region"), "value": "North"}
        first = client.patch(f"/api/sheets-new/{sheet_id}/rows", json={**payload, "expected_version": 1})
        assert first.status_code == 200
        stale = client.patch(f"/api/sheets-new/{sheet_id}/rows", json={**payload, "value": "South", "expected_version": 1})
        assert stale.status_code == 409
        assert stale.get_json()["details"]["current_version"] == 2

    def test_stats_history_export(self, signed_in):
        client = signed_in("owner@example.com")
        data = create_sheet(client)
        sheet_id = data["sheet"]["id"]
        assert client.get(f"/api/sheets-new/{sheet_id}/stats").get_json()["stats"]["column_count"] == 9
        actions = [h["action"] for h in client.get(f"/api/sheets-new/{sheet_id}/history").get_json()["history"]]
        assert "create_sheet" in actions
        export = client.get(f"/api/sheets-new/{sheet_id}/export")
        assert export.headers["Content-Type"].startswith("text/csv")
        assert export.data.decode("utf-8").splitlines()[0].startswith("Site ID,Scenario,MR Number")

    def test_unknown_sheet(self, signed_in):
        client = signed_in("owner@example.com")
        assert client.get("/api/sheets-new/9999").status_code == 404

    def test_schema_drift_sentinel(self, signed_in, db_path):
        client = signed_in("owner@example.com")
        sheet_id = create_sheet(client)["sheet"]["id"]
        conn = db.db_connect()
        conn.execute("DROP VIEW sheet_stats")
        conn.commit()
        conn.close()
        response = client.get(f"/api/sheets-new/{sheet_id}/stats")
        assert response.status_code == 200
        assert response.get_json()["tableExists"] is False


class TestSharing:
    def test_grant_levels_gate_routes(self, signed_in):
        owner = signed_in("owner@example.com")
        reader = signed_in("reader@example.com")
        stranger = signed_in("stranger@example.com")
        data = create_sheet(owner)
        sheet_id = data["sheet"]["id"]

        created = owner.post(f"/api/sheets/{sheet_id}/permissions", json={"email": "reader@example.com", "permission_level": "read"})
        assert created.status_code == 201
        again = owner.post(f"/api/sheets/{sheet_id}/permissions", json={"email": "reader@example.com", "permission_level": "read"})
        assert again.status_code == 409

        assert reader.get(f"/api/sheets-new/{sheet_id}").status_code == 200
        assert reader.post(f"/api/sheets-new/{sheet_id}/rows").status_code == 403
        assert stranger.get(f"/api/sheets-new/{sheet_id}").status_code == 404
        assert [s["id"] for s in reader.get("/api/sheets-new").get_json()["sheets"]] == [sheet_id]

        grant_id = created.get_json()["permission"]["id"]
        upgraded = owner.patch(f"/api/sheets/{sheet_id}/permissions/{grant_id}", json={"permission_level": "write"})
        assert upgraded.get_json()["permission"]["permission_level"] == "write"
        assert reader.post(f"/api/sheets-new/{sheet_id}/rows").status_code == 201

        assert owner.delete(f"/api/sheets/{sheet_id}/permissions/{grant_id}").status_code == 200
        assert reader.get(f"/api/sheets-new/{sheet_id}").status_code == 404

    def test_user_search_route(self, signed_in):
        owner = signed_in("owner@example.com")
        signed_in("crew@example.com")
        sheet_id = create_sheet(owner)["sheet"]["id"]
        users = owner.get(f"/api/sheets/{sheet_id}/users/search?q=crew").get_json()["users"]
        assert [u["email"] for u in users] == ["crew@example.com"]

    def test_public_link(self, signed_in, flask_client):
        owner = signed_in("owner@example.com")
        sheet_id = create_sheet(owner)["sheet"]["id"]
        link = owner.post(f"/api/sheets-new/{sheet_id}/public-link", json={"permissions": {"can_view": True}})
        assert link.status_code == 201
        key = link.get_json()["accessKey"]

        anonymous = flask_client()
        view = anonymous.get(f"/api/public/sheets/{key}")
        assert view.status_code == 200
        assert view.get_json()["sheet"]["id"] == sheet_id
        assert anonymous.get(f"/api/public/sheets/{key}/export").status_code == 403

        owner.patch(f"/api/sheets-new/{sheet_id}/public-link", json={"is_active": False})
        assert anonymous.get(f"/api/public/sheets/{key}").status_code == 404

    def test_expired_public_link(self, signed_in, flask_client):
        owner = signed_in("owner@example.com")
        sheet_id = create_sheet(owner)["sheet"]["id"]
        link = owner.post(
            f"/api/sheets-new/{sheet_id}/public-link",
            json={"permissions": {"can_download": True}, "expires_at": "2000-01-01T00:00:00Z"},
        )
        key = link.get_json()["accessKey"]
        assert flask_client().get(f"/api/public/sheets/{key}").status_code == 404

    def test_public_link_edits_need_can_edit(self, signed_in, flask_client):
        owner = signed_in("owner@example.com")
        data = create_sheet(owner)
        sheet_id = data["sheet"]["id"]
        row_id = data["rows"][0]["id"]
        site = column_id(data, "Site ID")
        viewer_key = owner.post(
            f"/api/sheets-new/{sheet_id}/public-link", json={"permissions": {"can_view": True}}
        ).get_json()["accessKey"]
        editor_key = owner.post(
            f"/api/sheets-new/{sheet_id}/public-link", json={"permissions": {"can_view": True, "can_edit": True}}
        ).get_json()["accessKey"]

        anonymous = flask_client()
        change = {"row_id": row_id, "column_id": site, "value": "ST-PUB"}
        assert anonymous.patch(f"/api/public/sheets/{viewer_key}/rows", json=change).status_code == 403

        edited = anonymous.patch(f"/api/public/sheets/{editor_key}/rows", json=change)
        assert edited.status_code == 200
        assert edited.get_json()["cell"]["value"] == "ST-PUB"
        rows = owner.get(f"/api/sheets-new/{sheet_id}/rows").get_json()["rows"]
        assert rows[0]["cells"][str(site)] == "ST-PUB"

        other = create_sheet(owner, "Other")
        foreign = {"row_id": other["rows"][0]["id"], "column_id": column_id(other, "Site ID"), "value": "x"}
        assert anonymous.patch(f"/api/public/sheets/{editor_key}/rows", json=foreign).status_code == 404
