#!/usr/bin/env python3
"""Load deterministic sample data: a few users, a tracking sheet, a folder and a tracker."""

import argparse
import datetime as dt
import random
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from opsgrid.auth import create_user, find_user_by_email
from opsgrid.db import db_connect, ensure_bootstrap
from opsgrid.folders import create_folder
from opsgrid.grid import add_row, get_columns, update_cell
from opsgrid.permissions import FAMILIES, grant
from opsgrid.sheets import create_sheet
from opsgrid.trackers import add_tracker_log, create_tracker

RANDOM_SEED = 20260216
SAMPLE_PASSWORD = "sample-pass-123"

NAMES = [
    "Alex Rivera",
    "Priya Shah",
    "Jordan Lee",
    "Maya Thompson",
    "Samir Patel",
    "Elena Garcia",
]
SCENARIOS = ["Relocation", "New build", "Upgrade", "Decommission"]
STATUSES = ["Pending", "Done", "Problem"]
CONTRACTORS = ["Northline Towers", "Apex Field Services", "Crestview Civil"]
REGIONS = ["North", "South", "East", "West", "Central"]


def rand_date(days_back: int = 60, days_forward: int = 30) -> str:
    today = dt.date.today()
    return (today + dt.timedelta(days=random.randint(-days_back, days_forward))).isoformat()


def upsert_sample_users(conn):
    user_ids = []
    for idx, name in enumerate(NAMES, start=1):
        email = f"sample{idx}@opsgrid.local"
        row = find_user_by_email(conn, email)
        if row:
            user_ids.append(int(row["id"]))
            continue
        user_ids.append(int(create_user(conn, email, SAMPLE_PASSWORD, name)["id"]))
    return user_ids


def load_sheet(conn, owner_id: int, rows: int) -> int:
    sheet = create_sheet(conn, "Q1 Site Tracking", "Sample site rollout tracker", owner_id)
    columns = {column["name"]: column["id"] for column in get_columns(conn, sheet["id"])}
    for idx in range(rows):
        row = add_row(conn, sheet["id"], owner_id)
        values = {
            "Site ID": f"ST-{1000 + idx}",
            "Scenario": random.choice(SCENARIOS),
            "MR Number": f"MR-{random.randint(10000, 99999)}",
            "IQF Number": f"IQF-{random.randint(100, 999)}",
            "Status": random.choice(STATUSES),
            "Date": rand_date(),
            "Contractor": random.choice(CONTRACTORS),
            "Region": random.choice(REGIONS),
        }
        for name, value in values.items():
            update_cell(conn, row["id"], columns[name], value, owner_id)
    return int(sheet["id"])


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--rows", type=int, default=25, help="rows to add to the sample sheet")
    args = parser.parse_args(argv)

    random.seed(RANDOM_SEED)
    ensure_bootstrap()
    conn = db_connect()
    try:
        user_ids = upsert_sample_users(conn)
        owner_id = user_ids[0]
        sheet_id = load_sheet(conn, owner_id, max(0, args.rows))
        grant(conn, FAMILIES["sheets"], sheet_id, "sample2@opsgrid.local", "write", owner_id)
        grant(conn, FAMILIES["sheets"], sheet_id, "sample3@opsgrid.local", "read", owner_id)

        folder = create_folder(conn, "Northern relocations", "relocation", "Sites moving this quarter", owner_id)
        grant(conn, FAMILIES["folders"], folder["id"], "sample2@opsgrid.local", {"can_edit": True}, owner_id)

        tracker = create_tracker(conn, owner_id, {"title": "Sites energised", "type": "goal", "target": 40, "unit": "sites"})
        for _ in range(5):
            add_tracker_log(conn, tracker["id"], random.randint(1, 4), "weekly update", rand_date(30, 0), owner_id)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()

    print("SAMPLE_DATA_OK")
    print("sheet_id:", sheet_id)
    print("login:", "sample1@opsgrid.local", SAMPLE_PASSWORD)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
