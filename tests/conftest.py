"""
Pytest configuration and fixtures for OpsGrid tests.

Every test gets its own SQLite file under tmp_path; the bootstrap flag is
reset so the schema is created fresh.
"""
import pytest

from opsgrid import db
from opsgrid.auth import create_user
from opsgrid.sheets import create_sheet, get_sheet_data

PASSWORD = "correct-horse-1"


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    """Point the connection factory at a throwaway SQLite database."""
    path = tmp_path / "opsgrid-test.db"
    monkeypatch.setattr(db, "DB_PATH", path)
    monkeypatch.setattr(db, "DB_BACKEND", "sqlite")
    monkeypatch.setattr(db, "BOOTSTRAPPED", False)
    monkeypatch.setattr(db, "ADMIN_EMAIL", "")
    monkeypatch.setattr(db, "ADMIN_PASSWORD", "")
    return path


@pytest.fixture
def conn(db_path):
    db.init_db()
    connection = db.db_connect()
    yield connection
    connection.close()


@pytest.fixture
def make_user(conn):
    """Factory creating committed users: make_user("a@example.com", is_admin=False)."""

    def _make(email, full_name="", is_admin=False):
        user = create_user(conn, email, PASSWORD, full_name or email.split("@")[0], is_admin=is_admin)
        conn.commit()
        return user

    return _make


@pytest.fixture
def owner(make_user):
    return make_user("owner@example.com", "Sheet Owner")


@pytest.fixture
def sheet(conn, owner):
    """A committed sheet with the default layout, as returned by get_sheet_data."""
    created = create_sheet(conn, "Q1 Tracking", "Quarterly rollout", owner["id"])
    conn.commit()
    return get_sheet_data(conn, created["id"])


@pytest.fixture
def flask_client(db_path):
    from opsgrid.flask_app import flask_app

    flask_app.config["TESTING"] = True

    def _client():
        return flask_app.test_client()

    return _client


@pytest.fixture
def signed_in(flask_client):
    """Factory returning a test client with a fresh signed-up session."""

    def _signed_in(email, full_name=""):
        client = flask_client()
        response = client.post(
            "/api/auth/signup",
            json={"email": email, "password": PASSWORD, "full_name": full_name},
        )
        assert response.status_code == 201, response.get_json()
        return client

    return _signed_in
