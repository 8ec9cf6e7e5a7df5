"""Error taxonomy shared by the stores and the JSON route boundary.

Stores raise these; `opsgrid.server` turns them into JSON payloads with the
matching HTTP status. Anything that is not an `AppError` is reported as an
internal error.
"""

from __future__ import annotations

import sqlite3
from typing import Dict, Optional


class AppError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status = "500 Internal Server Error"
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, object]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def payload(self) -> Dict[str, object]:
        body: Dict[str, object] = {"success": False, "error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class UnauthorizedError(AppError):
    status = "401 Unauthorized"
    code = "UNAUTHORIZED"

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)

    def payload(self) -> Dict[str, object]:
        return {"error": self.message}


class ForbiddenError(AppError):
    status = "403 Forbidden"
    code = "FORBIDDEN"


class NotFoundError(AppError):
    status = "404 Not Found"
    code = "NOT_FOUND"


class ConflictError(AppError):
    status = "409 Conflict"
    code = "CONFLICT"


class ValidationError(AppError):
    status = "400 Bad Request"
    code = "BAD_REQUEST"


class SchemaDriftError(AppError):
    """An expected table or column is missing from the datastore."""

    code = "SCHEMA_DRIFT"

    def payload(self) -> Dict[str, object]:
        return {"success": False, "tableExists": False, "error": self.message, "code": self.code}


SCHEMA_DRIFT_SQLSTATES = {"42P01", "42703"}
SCHEMA_DRIFT_MARKERS = ("no such table", "no such column", "does not exist")


def is_schema_drift(exc: BaseException) -> bool:
    if isinstance(exc, SchemaDriftError):
        return True
    sqlstate = str(getattr(exc, "sqlstate", "") or "")
    if sqlstate in SCHEMA_DRIFT_SQLSTATES:
        return True
    if isinstance(exc, sqlite3.OperationalError) or sqlstate.startswith("42"):
        message = str(exc).lower()
        return any(marker in message for marker in SCHEMA_DRIFT_MARKERS)
    return False
