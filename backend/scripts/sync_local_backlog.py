"""Push rows written to the local JSON store up to Supabase.

Run once after configuring SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY on a
deployment that previously ran without them. Rows keep their ids, so the
push can be repeated after a partial failure.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import List, Optional

from evergreen_core.errors import StoreError
from evergreen_core.loader import DataStore

SECTIONS = (("leaderboard", "Leaderboard"), ("raceSettings", "Race settings"))


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Push local leaderboard and race settings rows to Supabase")
    parser.add_argument("--data-dir", type=Path, default=None, help="local JSON store (default: EVERGREEN_DATA_DIR)")
    parser.add_argument("--check", action="store_true", help="only count the local rows waiting to be pushed")
    args = parser.parse_args(argv)

    store = DataStore(data_dir=args.data_dir)

    if args.check:
        pending = store.local_backlog()
        for key, label in SECTIONS:
            print(f"{label}: {pending[key]} local row(s)")
        return 0

    try:
        summary = store.sync_local_backlog()
    except StoreError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    failures = 0
    for key, label in SECTIONS:
        stats = summary[key]
        print(f"{label}: {stats['synced']} synced, {stats['remaining']} left locally")
        for error in stats["errors"]:
            print(f"  ! {error}")
        failures += len(stats["errors"])

    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
