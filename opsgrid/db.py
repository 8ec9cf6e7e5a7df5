"""Database access: connection factory, SQLite/PostgreSQL compatibility and schema bootstrap.

All SQL in the project is written in SQLite dialect with qmark parameters.
When a postgres URL is configured, `PostgresCompatConnection` adapts each
statement before handing it to psycopg.
"""

from __future__ import annotations

import logging
import os
import re
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

try:
    import psycopg
    from psycopg.rows import dict_row
except ImportError:  # pragma: no cover - postgres backend is optional
    psycopg = None
    dict_row = None

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = BASE_DIR / "data"
DB_PATH = Path(os.environ.get("OPSGRID_DB_PATH", str(DATA_DIR / "opsgrid.db")))
DATABASE_URL = os.environ.get("OPSGRID_DATABASE_URL", os.environ.get("DATABASE_URL", "")).strip()
DB_BACKEND = "postgres" if DATABASE_URL.startswith(("postgres://", "postgresql://")) else "sqlite"
DB_BUSY_TIMEOUT_MS = max(1000, int(os.environ.get("OPSGRID_DB_BUSY_TIMEOUT_MS", "6000")))
DB_JOURNAL_MODE = os.environ.get("OPSGRID_DB_JOURNAL_MODE", "WAL").strip().upper()
ADMIN_EMAIL = os.environ.get("OPSGRID_ADMIN_EMAIL", "").strip().lower()
ADMIN_PASSWORD = os.environ.get("OPSGRID_ADMIN_PASSWORD", "")

BOOTSTRAPPED = False
BOOTSTRAP_LOCK = threading.Lock()
BOOTSTRAP_ERROR = ""

CORE_TABLES = (
    "users",
    "sessions",
    "audit_log",
    "sheets",
    "sheet_columns",
    "sheet_rows",
    "sheet_cells",
    "sheet_history",
    "public_links",
    "sheet_permissions",
    "site_folders",
    "folder_permissions",
    "trackers",
    "tracker_logs",
    "tracker_permissions",
    "material_brands",
    "material_categories",
    "materials",
    "settlement_items",
    "reserve_items",
    "reserve_permissions",
)


class CompatRow(dict):
    """Row mapping that also supports numeric index access like sqlite3.Row."""

    def __init__(self, data: Dict[str, Any], order: List[str]):
        super().__init__(data)
        self._order = order

    def __getitem__(self, key: object) -> Any:  # type: ignore[override]
        if isinstance(key, int):
            return super().__getitem__(self._order[key])
        return super().__getitem__(str(key))


class CompatCursor:
    """Cursor wrapper with sqlite-like row behavior for PostgreSQL."""

    def __init__(self, cursor: Any, order: Optional[List[str]] = None, lastrowid: Optional[int] = None):
        self._cursor = cursor
        self._order = order or []
        self.lastrowid = lastrowid

    @property
    def rowcount(self) -> int:
        return int(getattr(self._cursor, "rowcount", -1))

    def _wrap(self, row: Any) -> Any:
        if isinstance(row, dict):
            return CompatRow(row, self._order)
        if isinstance(row, tuple):
            mapped = {self._order[idx]: row[idx] for idx in range(min(len(self._order), len(row)))}
            return CompatRow(mapped, self._order)
        return row

    def fetchone(self):
        row = self._cursor.fetchone()
        if row is None:
            return None
        return self._wrap(row)

    def fetchall(self):
        return [self._wrap(row) for row in self._cursor.fetchall()]


def _split_sql_script(script: str) -> List[str]:
    chunks = []
    buf: List[str] = []
    in_single = False
    in_double = False
    for ch in script:
        if ch == "'" and not in_double:
            in_single = not in_single
        elif ch == '"' and not in_single:
            in_double = not in_double
        if ch == ";" and not in_single and not in_double:
            stmt = "".join(buf).strip()
            if stmt:
                chunks.append(stmt)
            buf = []
        else:
            buf.append(ch)
    tail = "".join(buf).strip()
    if tail:
        chunks.append(tail)
    return chunks


def _replace_qmark_params(sql: str) -> str:
    out: List[str] = []
    in_single = False
    in_double = False
    for ch in sql:
        if ch == "'" and not in_double:
            in_single = not in_single
        elif ch == '"' and not in_single:
            in_double = not in_double
        if ch == "?" and not in_single and not in_double:
            out.append("%s")
        else:
            out.append(ch)
    return "".join(out)


def _adapt_sql_for_postgres(sql: str) -> str:
    text = sql.strip()
    pragma_match = re.match(r"PRAGMA\s+table_info\(([^)]+)\)", text, flags=re.IGNORECASE)
    if pragma_match:
        return (
            "SELECT column_name AS name, data_type AS type, "
            "CASE WHEN is_nullable = 'NO' THEN 1 ELSE 0 END AS notnull, "
            "column_default AS dflt_value "
            "FROM information_schema.columns "
            "WHERE table_schema = current_schema() AND table_name = %s "
            "ORDER BY ordinal_position"
        )
    text = re.sub(r"INTEGER\s+PRIMARY\s+KEY\s+AUTOINCREMENT", "BIGSERIAL PRIMARY KEY", text, flags=re.IGNORECASE)
    text = re.sub(r"\bAUTOINCREMENT\b", "", text, flags=re.IGNORECASE)
    text = re.sub(r"CREATE\s+VIEW\s+IF\s+NOT\s+EXISTS", "CREATE OR REPLACE VIEW", text, flags=re.IGNORECASE)
    return _replace_qmark_params(text)


class PostgresCompatConnection:
    """Small DB-API compatibility layer so sqlite-style calls work against PostgreSQL."""

    def __init__(self, conn: Any):
        self._conn = conn

    def execute(self, sql: str, params: Tuple[Any, ...] = ()):
        pg_sql = _adapt_sql_for_postgres(sql)
        use_params = tuple(params)
        pragma_match = re.match(r"PRAGMA\s+table_info\(([^)]+)\)", sql.strip(), flags=re.IGNORECASE)
        if pragma_match:
            use_params = (pragma_match.group(1).strip().strip('"'),)
        cur = self._conn.cursor()
        try:
            cur.execute(pg_sql, use_params)
        except Exception as exc:
            # Unique/foreign-key violations surface as sqlite3.IntegrityError for the stores.
            if str(getattr(exc, "sqlstate", "") or "").startswith("23"):
                raise sqlite3.IntegrityError(str(exc)) from exc
            raise
        order = [d.name for d in (cur.description or [])]
        last_id = None
        if pg_sql.upper().startswith("INSERT"):
            with self._conn.cursor() as c2:
                c2.execute("SELECT LASTVAL() AS id")
                row = c2.fetchone()
                if isinstance(row, dict) and row.get("id") is not None:
                    last_id = int(row["id"])
                elif isinstance(row, tuple) and row:
                    last_id = int(row[0])
        return CompatCursor(cur, order=order, lastrowid=last_id)

    def executescript(self, script: str):
        for stmt in _split_sql_script(script):
            self.execute(stmt)

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def _unicode_lower(value):
    return value.lower() if isinstance(value, str) else value


def db_connect():
    if DB_BACKEND == "postgres":
        if psycopg is None:
            raise RuntimeError("PostgreSQL backend requested but psycopg is not installed.")
        raw = psycopg.connect(DATABASE_URL, row_factory=dict_row, autocommit=False)
        return PostgresCompatConnection(raw)

    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(DB_PATH), timeout=DB_BUSY_TIMEOUT_MS / 1000.0)
    conn.row_factory = sqlite3.Row
    # SQLite's built-in LOWER folds ASCII only; search needs Unicode folding like Postgres.
    conn.create_function("LOWER", 1, _unicode_lower, deterministic=True)
    conn.execute(f"PRAGMA busy_timeout = {DB_BUSY_TIMEOUT_MS}")
    conn.execute("PRAGMA foreign_keys = ON")
    safe_journal_mode = DB_JOURNAL_MODE if DB_JOURNAL_MODE in {"DELETE", "TRUNCATE", "PERSIST", "MEMORY", "WAL", "OFF"} else "WAL"
    conn.execute(f"PRAGMA journal_mode = {safe_journal_mode}")
    return conn


def table_columns(conn, table: str) -> List[str]:
    names = []
    for row in conn.execute(f"PRAGMA table_info({table})").fetchall():
        names.append(str(row["name"] or "").lower())
    return names


def ensure_column(conn, table: str, column: str, ddl: str) -> None:
    if column.lower() in set(table_columns(conn, table)):
        return
    try:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
    except Exception as exc:
        msg = str(exc).lower()
        if "duplicate column name" not in msg and "already exists" not in msg:
            raise


def existing_tables(conn) -> Dict[str, bool]:
    """Report which of the core tables are present."""
    return {table: bool(table_columns(conn, table)) for table in CORE_TABLES}


def table_counts(conn) -> Dict[str, int]:
    return {table: int(conn.execute(f"SELECT COUNT(*) AS c FROM {table}").fetchone()["c"]) for table in CORE_TABLES}


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT NOT NULL UNIQUE,
    full_name TEXT NOT NULL DEFAULT '',
    avatar_url TEXT,
    password_hash TEXT NOT NULL,
    password_salt TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    is_admin INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    token_hash TEXT NOT NULL UNIQUE,
    expires_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    last_seen_at TEXT,
    ip_address TEXT,
    user_agent TEXT,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER,
    action TEXT NOT NULL,
    entity TEXT,
    entity_id TEXT,
    details TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS sheets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    owner_id INTEGER NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    settings_json TEXT NOT NULL DEFAULT '{}',
    metadata_json TEXT NOT NULL DEFAULT '{}',
    column_position_seq INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (owner_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS sheet_columns (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    sheet_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT 'text',
    position INTEGER NOT NULL,
    width INTEGER NOT NULL DEFAULT 120,
    is_required INTEGER NOT NULL DEFAULT 0,
    is_unique INTEGER NOT NULL DEFAULT 0,
    default_value TEXT,
    validation_rules_json TEXT NOT NULL DEFAULT '{}',
    format_options_json TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (sheet_id) REFERENCES sheets(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS sheet_rows (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    sheet_id INTEGER NOT NULL,
    position INTEGER NOT NULL,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    deleted_at TEXT,
    deleted_by INTEGER,
    metadata_json TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (sheet_id) REFERENCES sheets(id) ON DELETE CASCADE,
    FOREIGN KEY (deleted_by) REFERENCES users(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS sheet_cells (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    row_id INTEGER NOT NULL,
    column_id INTEGER NOT NULL,
    value TEXT,
    formatted_value TEXT,
    validation_status TEXT NOT NULL DEFAULT 'valid',
    validation_message TEXT,
    version INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (row_id, column_id),
    FOREIGN KEY (row_id) REFERENCES sheet_rows(id) ON DELETE CASCADE,
    FOREIGN KEY (column_id) REFERENCES sheet_columns(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS sheet_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    sheet_id INTEGER NOT NULL,
    user_id INTEGER,
    action TEXT NOT NULL,
    details_json TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    FOREIGN KEY (sheet_id) REFERENCES sheets(id) ON DELETE CASCADE,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS public_links (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    sheet_id INTEGER NOT NULL,
    access_key TEXT NOT NULL UNIQUE,
    created_by INTEGER,
    can_view INTEGER NOT NULL DEFAULT 1,
    can_edit INTEGER NOT NULL DEFAULT 0,
    can_download INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1,
    expires_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (sheet_id) REFERENCES sheets(id) ON DELETE CASCADE,
    FOREIGN KEY (created_by) REFERENCES users(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS sheet_permissions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    sheet_id INTEGER NOT NULL,
    user_id INTEGER NOT NULL,
    permission_level TEXT NOT NULL,
    granted_by INTEGER,
    granted_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (sheet_id, user_id),
    FOREIGN KEY (sheet_id) REFERENCES sheets(id) ON DELETE CASCADE,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
    FOREIGN KEY (granted_by) REFERENCES users(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS site_folders (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    site_type TEXT NOT NULL DEFAULT 'other',
    description TEXT NOT NULL DEFAULT '',
    created_by INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (created_by) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS folder_permissions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    folder_id INTEGER NOT NULL,
    user_id INTEGER NOT NULL,
    can_view INTEGER NOT NULL DEFAULT 1,
    can_edit INTEGER NOT NULL DEFAULT 0,
    can_delete INTEGER NOT NULL DEFAULT 0,
    granted_by INTEGER,
    granted_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (folder_id, user_id),
    FOREIGN KEY (folder_id) REFERENCES site_folders(id) ON DELETE CASCADE,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
    FOREIGN KEY (granted_by) REFERENCES users(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS trackers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id INTEGER NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    type TEXT NOT NULL DEFAULT 'goal',
    target REAL NOT NULL DEFAULT 0,
    unit TEXT NOT NULL DEFAULT '',
    start_date TEXT,
    progress REAL NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (owner_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS tracker_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tracker_id INTEGER NOT NULL,
    date TEXT NOT NULL,
    amount REAL NOT NULL,
    note TEXT NOT NULL DEFAULT '',
    created_by INTEGER,
    created_at TEXT NOT NULL,
    FOREIGN KEY (tracker_id) REFERENCES trackers(id) ON DELETE CASCADE,
    FOREIGN KEY (created_by) REFERENCES users(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS tracker_permissions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tracker_id INTEGER NOT NULL,
    user_id INTEGER NOT NULL,
    can_view INTEGER NOT NULL DEFAULT 1,
    can_edit INTEGER NOT NULL DEFAULT 0,
    can_delete INTEGER NOT NULL DEFAULT 0,
    can_manage INTEGER NOT NULL DEFAULT 0,
    granted_by INTEGER,
    granted_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (tracker_id, user_id),
    FOREIGN KEY (tracker_id) REFERENCES trackers(id) ON DELETE CASCADE,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
    FOREIGN KEY (granted_by) REFERENCES users(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS material_brands (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    slug TEXT NOT NULL UNIQUE,
    description TEXT NOT NULL DEFAULT '',
    color TEXT NOT NULL DEFAULT '#3B82F6',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS material_categories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    brand TEXT NOT NULL,
    color TEXT NOT NULL DEFAULT '#3B82F6',
    created_by INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (name, brand),
    FOREIGN KEY (created_by) REFERENCES users(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS materials (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    notes TEXT NOT NULL DEFAULT '',
    part_number TEXT NOT NULL DEFAULT '',
    category_id INTEGER NOT NULL,
    brand TEXT NOT NULL,
    quantity INTEGER NOT NULL DEFAULT 0,
    unit TEXT NOT NULL DEFAULT 'pcs',
    location TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'available',
    created_by INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (category_id) REFERENCES material_categories(id) ON DELETE CASCADE,
    FOREIGN KEY (created_by) REFERENCES users(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS settlement_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    mr_number TEXT NOT NULL UNIQUE,
    status TEXT NOT NULL DEFAULT 'none',
    notes TEXT NOT NULL DEFAULT '',
    created_by INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (created_by) REFERENCES users(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS reserve_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    mr_number TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'none',
    notes TEXT NOT NULL DEFAULT '',
    priority TEXT NOT NULL DEFAULT 'medium',
    category TEXT NOT NULL DEFAULT '',
    due_date TEXT,
    created_by INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (user_id, mr_number),
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
    FOREIGN KEY (created_by) REFERENCES users(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS reserve_permissions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id INTEGER NOT NULL,
    user_id INTEGER NOT NULL,
    permission_level TEXT NOT NULL,
    granted_by INTEGER,
    granted_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (owner_id, user_id),
    FOREIGN KEY (owner_id) REFERENCES users(id) ON DELETE CASCADE,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
    FOREIGN KEY (granted_by) REFERENCES users(id) ON DELETE SET NULL
)
"""

SHEET_STATS_VIEW_SQL = """
CREATE VIEW IF NOT EXISTS sheet_stats AS
SELECT
    s.id AS sheet_id,
    (SELECT COUNT(*) FROM sheet_rows r WHERE r.sheet_id = s.id AND r.is_deleted = 0) AS row_count,
    (SELECT COUNT(*) FROM sheet_rows r WHERE r.sheet_id = s.id AND r.is_deleted = 1) AS deleted_row_count,
    (SELECT COUNT(*) FROM sheet_columns c WHERE c.sheet_id = s.id) AS column_count,
    (SELECT COUNT(*) FROM sheet_cells c JOIN sheet_rows r ON r.id = c.row_id
        WHERE r.sheet_id = s.id AND r.is_deleted = 0) AS cell_count,
    (SELECT COUNT(*) FROM sheet_cells c JOIN sheet_rows r ON r.id = c.row_id
        WHERE r.sheet_id = s.id AND r.is_deleted = 0 AND c.value IS NOT NULL AND c.value <> '') AS filled_cell_count,
    (SELECT MAX(h.created_at) FROM sheet_history h WHERE h.sheet_id = s.id) AS last_activity_at
FROM sheets s
"""


def run_schema_upgrades(conn) -> None:
    """Apply additive, idempotent upgrades on top of the baseline schema."""
    ensure_column(conn, "users", "avatar_url", "TEXT")
    ensure_column(conn, "sheets", "column_position_seq", "INTEGER NOT NULL DEFAULT 0")
    ensure_column(conn, "sheet_rows", "deleted_at", "TEXT")
    ensure_column(conn, "sheet_rows", "deleted_by", "INTEGER")
    ensure_column(conn, "sheet_cells", "version", "INTEGER NOT NULL DEFAULT 1")

    conn.execute("CREATE INDEX IF NOT EXISTS idx_sheet_columns_sheet ON sheet_columns (sheet_id, position)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_sheet_rows_sheet ON sheet_rows (sheet_id, is_deleted, position)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_sheet_cells_column ON sheet_cells (column_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_sheet_history_sheet ON sheet_history (sheet_id, created_at)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_tracker_logs_tracker ON tracker_logs (tracker_id, date)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions (user_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_materials_category ON materials (category_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_reserve_items_user ON reserve_items (user_id, created_at)")


def seed_admin(conn) -> None:
    if not ADMIN_EMAIL or not ADMIN_PASSWORD:
        return
    from opsgrid.auth import create_user

    existing = conn.execute("SELECT id, is_admin FROM users WHERE email = ?", (ADMIN_EMAIL,)).fetchone()
    if existing:
        if not existing["is_admin"]:
            conn.execute("UPDATE users SET is_admin = 1 WHERE id = ?", (existing["id"],))
        return
    create_user(conn, ADMIN_EMAIL, ADMIN_PASSWORD, "Administrator", is_admin=True)
    logger.info("Seeded admin account %s", ADMIN_EMAIL)


def init_db() -> None:
    """Create the schema and seed the admin account and default brands.

    Safe to call repeatedly: every statement is guarded by IF NOT EXISTS or a
    duplicate check.
    """
    from opsgrid.material import seed_default_brands

    conn = db_connect()
    try:
        conn.executescript(SCHEMA_SQL)
        run_schema_upgrades(conn)
        conn.execute(SHEET_STATS_VIEW_SQL)
        seed_admin(conn)
        seed_default_brands(conn)
        conn.commit()
    finally:
        conn.close()


def ensure_bootstrap() -> None:
    """Initialize the database once per process."""
    global BOOTSTRAPPED, BOOTSTRAP_ERROR
    if BOOTSTRAPPED:
        return
    with BOOTSTRAP_LOCK:
        if BOOTSTRAPPED:
            return
        try:
            init_db()
            BOOTSTRAPPED = True
            BOOTSTRAP_ERROR = ""
        except Exception as exc:
            BOOTSTRAP_ERROR = str(exc)
            logger.exception("Database bootstrap failed")
            raise
