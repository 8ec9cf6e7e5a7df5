#!/usr/bin/env python3
"""Reap soft-deleted sheet rows (and their cells) older than the retention window."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from opsgrid.db import db_connect, ensure_bootstrap
from opsgrid.grid import purge_deleted_rows
from opsgrid.server import configure_logging

logger = logging.getLogger("opsgrid.scripts.purge_deleted_rows")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--older-than-days",
        type=int,
        default=int(os.environ.get("OPSGRID_ROW_RETENTION_DAYS", "30")),
        help="only purge rows deleted at least this many days ago (default: OPSGRID_ROW_RETENTION_DAYS or 30)",
    )
    parser.add_argument("--sheet-id", type=int, default=None, help="limit the purge to one sheet")
    parser.add_argument("--dry-run", action="store_true", help="report the count and roll back")
    args = parser.parse_args(argv)

    configure_logging()
    ensure_bootstrap()
    conn = db_connect()
    try:
        purged = purge_deleted_rows(conn, sheet_id=args.sheet_id, older_than_days=args.older_than_days)
        if args.dry_run:
            conn.rollback()
        else:
            conn.commit()
    finally:
        conn.close()

    logger.info("%s %d soft-deleted rows", "Would purge" if args.dry_run else "Purged", purged)
    print("PURGE_OK", purged)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
