#!/usr/bin/env python3
"""OpsGrid WSGI application.

A JSON backend for shared operational sheets. Requests are served by a plain
WSGI callable over stdlib `sqlite3` (or PostgreSQL through psycopg); the Flask
app in `opsgrid.flask_app` wraps this callable for deployment.
"""

from __future__ import annotations

import json
import logging
import os
from socketserver import ThreadingMixIn
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, quote, unquote
from wsgiref.simple_server import WSGIServer, make_server

from opsgrid import __version__
from opsgrid.db import DB_BACKEND, DB_JOURNAL_MODE, DB_PATH, db_connect, ensure_bootstrap
from opsgrid.errors import AppError, SchemaDriftError, ValidationError, is_schema_drift

logger = logging.getLogger(__name__)

APP_NAME = "OpsGrid"
SECRET_KEY = os.environ.get("OPSGRID_SECRET_KEY", "change-this-secret-in-production")
COOKIE_SECURE = os.environ.get("OPSGRID_COOKIE_SECURE", "0") == "1"
HOST = os.environ.get("OPSGRID_HOST", os.environ.get("HOST", "127.0.0.1"))
PORT = int(os.environ.get("OPSGRID_PORT", os.environ.get("PORT", "8080")))
WSGI_THREADED = os.environ.get("OPSGRID_WSGI_THREADED", "1") == "1"
APP_ENV = os.environ.get("OPSGRID_ENV", "development").strip().lower()
LOG_LEVEL = os.environ.get("OPSGRID_LOG_LEVEL", "INFO").strip().upper()
MAX_BODY_BYTES = 5 * 1024 * 1024


class Request:
    """Thin wrapper over the WSGI environ with lazy JSON body parsing."""

    def __init__(self, environ: dict):
        self.environ = environ
        self.method = environ.get("REQUEST_METHOD", "GET").upper()
        self.path = environ.get("PATH_INFO", "/") or "/"
        self.query = {k: v[0] for k, v in parse_qs(environ.get("QUERY_STRING", "")).items()}
        self.cookies = self._parse_cookies(environ.get("HTTP_COOKIE", ""))
        self._body: Optional[bytes] = None
        self._json: Any = None
        self._json_loaded = False

    def _parse_cookies(self, raw_cookie: str) -> Dict[str, str]:
        cookies: Dict[str, str] = {}
        if not raw_cookie:
            return cookies
        for token in raw_cookie.split(";"):
            if "=" not in token:
                continue
            key, value = token.split("=", 1)
            cookies[key.strip()] = unquote(value.strip())
        return cookies

    @property
    def body(self) -> bytes:
        if self._body is None:
            try:
                length = int(self.environ.get("CONTENT_LENGTH") or 0)
            except ValueError:
                length = 0
            if length > MAX_BODY_BYTES:
                raise ValidationError("Request body too large")
            self._body = self.environ["wsgi.input"].read(length) if length > 0 else b""
        return self._body

    @property
    def json(self) -> Dict[str, Any]:
        """Decoded JSON object body; an empty body reads as `{}`."""
        if not self._json_loaded:
            raw = self.body
            if not raw.strip():
                self._json = {}
            else:
                try:
                    self._json = json.loads(raw.decode("utf-8"))
                except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                    raise ValidationError("Request body must be valid JSON") from exc
            self._json_loaded = True
        if not isinstance(self._json, dict):
            raise ValidationError("Request body must be a JSON object")
        return self._json

    @property
    def remote_addr(self) -> str:
        return self.environ.get("REMOTE_ADDR", "")

    @property
    def user_agent(self) -> str:
        return self.environ.get("HTTP_USER_AGENT", "")


class Response:
    """Simple response object that centralizes security headers."""

    def __init__(
        self,
        body: Any = "",
        status: str = "200 OK",
        content_type: str = "application/json; charset=utf-8",
        headers: Optional[List[Tuple[str, str]]] = None,
    ):
        self.body = body.encode("utf-8") if isinstance(body, str) else body
        self.status = status
        self.content_type = content_type
        self.headers = headers or []

    @property
    def status_code(self) -> int:
        return int(self.status.split()[0])

    def wsgi(self, start_response):
        sec_headers = [
            ("Content-Type", self.content_type),
            ("X-Frame-Options", "DENY"),
            ("X-Content-Type-Options", "nosniff"),
            ("Referrer-Policy", "strict-origin-when-cross-origin"),
            ("Cache-Control", "no-store"),
        ]
        start_response(self.status, sec_headers + self.headers)
        return [self.body]


def json_response(payload: object, status: str = "200 OK", cookies: Optional[List[str]] = None) -> Response:
    headers = [("Set-Cookie", cookie) for cookie in cookies or []]
    return Response(json.dumps(payload, default=str), status=status, headers=headers)


def csv_response(body: str, filename: str) -> Response:
    headers = [("Content-Disposition", f'attachment; filename="{filename}"')]
    return Response(body, content_type="text/csv; charset=utf-8", headers=headers)


def set_cookie(name: str, value: str, max_age: Optional[int] = None, path: str = "/") -> str:
    parts = [f"{name}={quote(value)}", f"Path={path}", "HttpOnly", "SameSite=Lax"]
    if COOKIE_SECURE:
        parts.append("Secure")
    if max_age is not None:
        parts.append(f"Max-Age={max_age}")
    return "; ".join(parts)


def clear_cookie(name: str, path: str = "/") -> str:
    parts = [f"{name}=", "Max-Age=0", f"Path={path}", "HttpOnly", "SameSite=Lax"]
    if COOKIE_SECURE:
        parts.append("Secure")
    return "; ".join(parts)


def error_response(req: Request, exc: BaseException) -> Response:
    """Convert an exception raised under a route into its JSON payload."""
    if isinstance(exc, AppError) and not isinstance(exc, SchemaDriftError):
        return json_response(exc.payload(), exc.status)
    if is_schema_drift(exc):
        drift = exc if isinstance(exc, SchemaDriftError) else SchemaDriftError("Required table is not set up", {"reason": str(exc)})
        logger.warning("Schema drift on %s %s: %s", req.method, req.path, exc)
        status = "200 OK" if req.method == "GET" else "500 Internal Server Error"
        payload = drift.payload()
        if APP_ENV != "production":
            payload["details"] = str(exc)
        return json_response(payload, status)
    logger.exception("Unhandled error on %s %s", req.method, req.path)
    body: Dict[str, object] = {"success": False, "error": "Internal server error", "code": "INTERNAL_ERROR"}
    if APP_ENV != "production":
        body["details"] = str(exc)
    return json_response(body, "500 Internal Server Error")


def app(environ, start_response):
    """WSGI entrypoint.

    Health probes are answered before bootstrap; every other request gets its
    own connection, which is rolled back on error and closed afterwards.
    """
    from opsgrid.api import dispatch

    req = Request(environ)

    if req.path == "/healthz":
        return Response("ok", content_type="text/plain").wsgi(start_response)
    if req.path == "/readyz":
        try:
            ensure_bootstrap()
            probe = db_connect()
            try:
                probe.execute("SELECT 1").fetchone()
            finally:
                probe.close()
            return Response("ready", content_type="text/plain").wsgi(start_response)
        except Exception as exc:
            logger.warning("Readiness probe failed: %s", exc)
            return Response(f"not-ready: {exc}", status="503 Service Unavailable", content_type="text/plain").wsgi(start_response)

    try:
        ensure_bootstrap()
    except Exception as exc:
        payload = {"success": False, "error": "Database bootstrap failed", "code": "BOOTSTRAP_FAILED"}
        if APP_ENV != "production":
            payload["details"] = str(exc)
        return json_response(payload, "503 Service Unavailable").wsgi(start_response)

    conn = db_connect()
    try:
        response = dispatch(conn, req)
        if response is None:
            response = json_response({"success": False, "error": "Not found", "code": "NOT_FOUND"}, "404 Not Found")
        return response.wsgi(start_response)
    except Exception as exc:
        conn.rollback()
        return error_response(req, exc).wsgi(start_response)
    finally:
        conn.close()


class ThreadedWSGIServer(ThreadingMixIn, WSGIServer):
    """Thread-per-request WSGI server for the development entrypoint."""

    daemon_threads = True


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def run() -> None:
    configure_logging()
    ensure_bootstrap()
    server_mode = "threaded" if WSGI_THREADED else "single-threaded"
    location = "postgres" if DB_BACKEND == "postgres" else str(DB_PATH)
    logger.info(
        "%s %s running on http://%s:%s (db=%s, mode=%s, journal=%s)",
        APP_NAME,
        __version__,
        HOST,
        PORT,
        location,
        server_mode,
        DB_JOURNAL_MODE,
    )
    if WSGI_THREADED:
        server = make_server(HOST, PORT, app, server_class=ThreadedWSGIServer)
    else:
        server = make_server(HOST, PORT, app)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down")


if __name__ == "__main__":
    run()
