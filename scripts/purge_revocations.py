#!/usr/bin/env python3
"""Drop revocation entries older than the longest token lifetime.

The service runs the same purge on a timer; this script is for cron-driven
deployments or a one-off cleanup.

Usage:
    DATABASE_URL=postgresql://... python scripts/purge_revocations.py
    python scripts/purge_revocations.py --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: purge the file-backed memory store under SHARED_FS_ROOT instead
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def purge(dry_run: bool = False) -> int:
    # Import here so settings are read after argument parsing
    from usersvc.config import Settings
    from usersvc.service.runtime import Runtime

    runtime = Runtime(Settings.from_env())
    try:
        if runtime.cache is not None:
            print("Revocations live in Redis and expire on their own; nothing to purge")
            return 0
        if dry_run:
            cutoff = runtime.registry.clock() - runtime.registry.max_token_lifetime
            print(f"[DRY RUN] Would purge revocations recorded before {cutoff.isoformat()}")
            return 0
        purged = await runtime.registry.purge_expired()
        print(f"Purged {purged} revocation entries")
        return purged
    finally:
        await runtime.close()


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show the cutoff without deleting anything",
    )
    args = parser.parse_args()
    try:
        asyncio.run(purge(dry_run=args.dry_run))
    except RuntimeError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
