#!/usr/bin/env python3
"""Delete expired persistent sessions.

Usage:
    DATABASE_URL=postgresql://... python scripts/purge_sessions.py

    # Count what would be removed without deleting:
    python scripts/purge_sessions.py --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: set to true to run against the in-process store
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def purge_sessions(dry_run: bool = False) -> dict:
    """Remove every session whose expiry has passed.

    Returns:
        dict with ``expired`` (count found) and ``deleted`` (count removed)
    """
    # Import here to avoid loading config before env vars are set
    from happyjourney.service.runtime import get_runtime
    from happyjourney.storage.models import utcnow

    store = get_runtime().store
    now = utcnow()
    if dry_run:
        return {"expired": store.count_expired_sessions(now), "deleted": 0}
    deleted = store.delete_expired_sessions(now)
    return {"expired": deleted, "deleted": deleted}


def main():
    parser = argparse.ArgumentParser(
        description="Purge expired Happiness Journey sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report expired sessions without deleting them",
    )
    args = parser.parse_args()

    try:
        result = purge_sessions(args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.dry_run:
        print(f"[DRY RUN] {result['expired']} expired session(s) found")
    else:
        print(f"Deleted {result['deleted']} expired session(s)")


if __name__ == "__main__":
    main()
