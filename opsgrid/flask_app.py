#!/usr/bin/env python3
"""OpsGrid - Flask application.

Wraps the WSGI callable in `opsgrid.server` with Flask so the service can be
deployed behind gunicorn or waitress and managed through the Flask CLI.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict

import click
from flask import Flask, request

from opsgrid import db
from opsgrid.db import db_connect, ensure_bootstrap, init_db, table_counts
from opsgrid.grid import purge_deleted_rows
from opsgrid.server import COOKIE_SECURE, HOST, PORT, SECRET_KEY, app as wsgi_app, configure_logging

logger = logging.getLogger(__name__)

ROW_RETENTION_DAYS = int(os.environ.get("OPSGRID_ROW_RETENTION_DAYS", "30"))

flask_app = Flask(__name__, static_folder=None, template_folder=None)

flask_app.config["SECRET_KEY"] = SECRET_KEY
flask_app.config["SESSION_COOKIE_SECURE"] = COOKIE_SECURE
flask_app.config["SESSION_COOKIE_HTTPONLY"] = True
flask_app.config["SESSION_COOKIE_SAMESITE"] = "Lax"

configure_logging()


@flask_app.before_request
def setup_request():
    """Bootstrap the schema before the first real request."""
    # Probes answer without touching the database bootstrap.
    if request.path in {"/healthz", "/readyz"}:
        return None
    ensure_bootstrap()
    return None


@flask_app.route("/", defaults={"path": ""}, methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
@flask_app.route("/<path:path>", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
def catch_all(path):
    """Delegate every route to the WSGI application."""
    response_data: Dict[str, Any] = {}

    def start_response(status, headers, exc_info=None):
        response_data["status"] = status
        response_data["headers"] = headers
        return lambda s: None

    response_body = wsgi_app(request.environ, start_response)
    body = b"".join(response_body)
    status_code = int(response_data.get("status", "200 OK").split()[0])

    response = flask_app.make_response((body, status_code))
    for header_name, header_value in response_data.get("headers", []):
        if header_name.lower() == "set-cookie":
            response.headers.add(header_name, header_value)
        else:
            response.headers[header_name] = header_value
    return response


@flask_app.cli.command("init-db")
def init_db_command():
    """Create or upgrade the database schema and print row counts per table."""
    init_db()
    conn = db_connect()
    try:
        counts = table_counts(conn)
    finally:
        conn.close()
    click.echo("Database initialized successfully!")
    click.echo(f"backend: {db.DB_BACKEND}")
    if db.DB_BACKEND != "postgres":
        click.echo(f"db_path: {db.DB_PATH}")
    for table, count in counts.items():
        click.echo(f"{table}: {count}")


@flask_app.cli.command("purge-deleted-rows")
@click.option("--older-than-days", type=int, default=ROW_RETENTION_DAYS, show_default=True, help="Only purge rows deleted at least this many days ago.")
@click.option("--sheet-id", type=int, default=None, help="Limit the purge to one sheet.")
def purge_deleted_rows_command(older_than_days, sheet_id):
    """Hard-delete soft-deleted rows and their cells."""
    ensure_bootstrap()
    conn = db_connect()
    try:
        purged = purge_deleted_rows(conn, sheet_id=sheet_id, older_than_days=older_than_days)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
    logger.info("Purged %d soft-deleted rows", purged)
    click.echo(f"Purged {purged} rows")


if __name__ == "__main__":
    flask_app.run(
        host=HOST,
        port=PORT,
        debug=os.environ.get("FLASK_DEBUG", "0") == "1",
        threaded=True,
    )
