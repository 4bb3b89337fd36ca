#!/usr/bin/env python3
"""Revoke every session whose expiry has passed.

Meant for cron when the API process does not run its own sweep
(SESSION_CLEANUP_INTERVAL_SECONDS=0), e.g. nightly:

    0 3 * * * cd /srv/hydration-tracker && python scripts/cleanup_sessions.py

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    REDIS_URL: Redis URL; cached session entries are dropped too
    USE_MEMORY_STORE: sweep the JSON-backed dev store under SHARED_FS_ROOT instead
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def sweep() -> int:
    # Import here so configuration is read after argument parsing
    from hydration_tracker.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        return await runtime.sessions.cleanup_expired_sessions()
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Revoke expired hydration-tracker sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Only print on failure",
    )
    args = parser.parse_args()

    try:
        revoked = asyncio.run(sweep())
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if not args.quiet:
        print(f"Revoked {revoked} expired session(s)")


if __name__ == "__main__":
    main()
