"""Accounts and cookie sessions."""

from __future__ import annotations

import base64
import datetime as dt
import hashlib
import hmac
import os
import re
import secrets
import sqlite3
from typing import Dict, Optional, Tuple

from opsgrid.errors import ConflictError, ValidationError
from opsgrid.util import iso, parse_iso_datetime, utcnow

SESSION_DAYS = int(os.environ.get("OPSGRID_SESSION_DAYS", "14"))
SESSION_COOKIE = "session_token"
MIN_PASSWORD_LENGTH = 8
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def hash_password(password: str, salt_b64: Optional[str] = None) -> Tuple[str, str]:
    salt = base64.b64decode(salt_b64) if salt_b64 else secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, 310_000)
    return base64.b64encode(digest).decode("utf-8"), base64.b64encode(salt).decode("utf-8")


def verify_password(password: str, expected_hash: str, salt_b64: str) -> bool:
    computed, _ = hash_password(password, salt_b64)
    return hmac.compare_digest(computed, expected_hash)


def token_hash(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def normalize_email(value: object) -> str:
    return str(value or "").strip().lower()


def public_user(row) -> Dict[str, object]:
    return {
        "id": row["id"],
        "email": row["email"],
        "full_name": row["full_name"],
        "avatar_url": row["avatar_url"],
        "is_admin": bool(row["is_admin"]),
    }


def create_user(conn, email: str, password: str, full_name: str = "", is_admin: bool = False) -> Dict[str, object]:
    email = normalize_email(email)
    if not EMAIL_RE.match(email):
        raise ValidationError("A valid email is required")
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if conn.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone():
        raise ConflictError("An account with this email already exists")
    pw_hash, pw_salt = hash_password(password)
    try:
        cur = conn.execute(
            """
            INSERT INTO users (email, full_name, password_hash, password_salt, is_active, is_admin, created_at)
            VALUES (?, ?, ?, ?, 1, ?, ?)
            """,
            (email, str(full_name or "").strip(), pw_hash, pw_salt, 1 if is_admin else 0, iso()),
        )
    except sqlite3.IntegrityError as exc:
        raise ConflictError("An account with this email already exists") from exc
    row = conn.execute("SELECT * FROM users WHERE id = ?", (cur.lastrowid,)).fetchone()
    return public_user(row)


def authenticate(conn, email: str, password: str) -> Optional[Dict[str, object]]:
    row = conn.execute(
        "SELECT * FROM users WHERE email = ? AND is_active = 1",
        (normalize_email(email),),
    ).fetchone()
    if not row:
        return None
    try:
        valid = verify_password(password or "", str(row["password_hash"] or ""), str(row["password_salt"] or ""))
    except (ValueError, TypeError):
        valid = False
    return public_user(row) if valid else None


def create_session(conn, user_id: int, ip: str = "", user_agent: str = "") -> str:
    raw_token = secrets.token_urlsafe(32)
    expires = utcnow() + dt.timedelta(days=SESSION_DAYS)
    conn.execute(
        """
        INSERT INTO sessions (user_id, token_hash, expires_at, created_at, last_seen_at, ip_address, user_agent)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (user_id, token_hash(raw_token), expires.isoformat(), iso(), iso(), ip, (user_agent or "")[:200]),
    )
    return raw_token


def delete_session(conn, raw_token: str) -> None:
    if raw_token:
        conn.execute("DELETE FROM sessions WHERE token_hash = ?", (token_hash(raw_token),))


def user_for_session(conn, raw_token: Optional[str]) -> Optional[Dict[str, object]]:
    """Resolve a session cookie to the active user, dropping stale sessions."""
    if not raw_token:
        return None
    session = conn.execute(
        """
        SELECT s.id AS session_id, s.expires_at, u.*
        FROM sessions s
        JOIN users u ON u.id = s.user_id
        WHERE s.token_hash = ?
        """,
        (token_hash(raw_token),),
    ).fetchone()
    if not session:
        return None
    expires_at = parse_iso_datetime(session["expires_at"]) or (utcnow() - dt.timedelta(days=1))
    if expires_at < utcnow() or not session["is_active"]:
        conn.execute("DELETE FROM sessions WHERE id = ?", (session["session_id"],))
        conn.commit()
        return None
    conn.execute("UPDATE sessions SET last_seen_at = ? WHERE id = ?", (iso(), session["session_id"]))
    return public_user(session)


def find_user_by_email(conn, email: str):
    return conn.execute(
        "SELECT * FROM users WHERE email = ? AND is_active = 1",
        (normalize_email(email),),
    ).fetchone()
