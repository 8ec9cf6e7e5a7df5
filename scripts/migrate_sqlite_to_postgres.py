#!/usr/bin/env python3
"""Copy an OpsGrid SQLite database into PostgreSQL.

Usage:
  OPSGRID_DATABASE_URL=postgresql://... python3 scripts/migrate_sqlite_to_postgres.py
  python3 scripts/migrate_sqlite_to_postgres.py --source /path/to/opsgrid.db --truncate

The destination schema is created first through the normal bootstrap, so the
script only moves rows. Tables are copied parent-first so foreign keys hold.
"""

from __future__ import annotations

import argparse
import sqlite3
import sys
from pathlib import Path
from typing import Dict, List

import psycopg

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from opsgrid import db


def sqlite_columns(conn: sqlite3.Connection, table: str) -> List[str]:
    rows = conn.execute(f'PRAGMA table_info("{table}")').fetchall()
    return [str(r[1]) for r in rows]


def pg_columns(cur, table: str) -> List[str]:
    rows = cur.execute(
        """
        SELECT column_name
        FROM information_schema.columns
        WHERE table_schema = current_schema() AND table_name = %s
        ORDER BY ordinal_position
        """,
        (table,),
    ).fetchall()
    return [str(r[0]) for r in rows]


def reset_sequence(cur, table: str) -> None:
    cur.execute(
        f"""
        SELECT setval(pg_get_serial_sequence('"{table}"', 'id'),
                      COALESCE((SELECT MAX(id) FROM "{table}"), 0) + 1, false)
        """
    )


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--source", default=str(db.DB_PATH))
    parser.add_argument("--truncate", action="store_true", help="truncate destination tables before import")
    args = parser.parse_args()

    if db.DB_BACKEND != "postgres":
        raise SystemExit("Set OPSGRID_DATABASE_URL (or DATABASE_URL) to a postgresql:// URL first.")

    source_path = Path(args.source)
    if not source_path.exists():
        raise SystemExit(f"SQLite source not found: {source_path}")

    db.init_db()

    src = sqlite3.connect(str(source_path))
    src.row_factory = sqlite3.Row
    dst = psycopg.connect(db.DATABASE_URL, autocommit=False)

    source_tables = {
        str(r[0])
        for r in src.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    }

    migrated: Dict[str, int] = {}
    try:
        with dst.cursor() as dcur:
            if args.truncate:
                joined = ", ".join(f'"{t}"' for t in db.CORE_TABLES)
                dcur.execute(f"TRUNCATE TABLE {joined} RESTART IDENTITY CASCADE")

            for table in db.CORE_TABLES:
                if table not in source_tables:
                    continue
                dst_cols = set(pg_columns(dcur, table))
                cols = [c for c in sqlite_columns(src, table) if c in dst_cols]
                if not cols:
                    continue

                qcols = ", ".join(f'"{c}"' for c in cols)
                ph = ", ".join(["%s"] * len(cols))
                rows = src.execute(f'SELECT {qcols} FROM "{table}"').fetchall()
                migrated[table] = len(rows)
                if rows:
                    dcur.executemany(
                        f'INSERT INTO "{table}" ({qcols}) VALUES ({ph}) ON CONFLICT DO NOTHING',
                        [tuple(row[c] for c in cols) for row in rows],
                    )
                if "id" in cols:
                    reset_sequence(dcur, table)

        dst.commit()
    finally:
        src.close()
        dst.close()

    total = sum(migrated.values())
    print(f"MIGRATION_COMPLETE tables={len(migrated)} rows={total}")
    for table, count in migrated.items():
        print(f"- {table}: {count}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
