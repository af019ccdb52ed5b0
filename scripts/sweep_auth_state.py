#!/usr/bin/env python3
"""Purge revoked/expired sessions and expired one-time codes from the auth store.

Expiry is always enforced at read time, so this only reclaims storage.

Usage:
    SHARED_FS_ROOT=/srv/profileauth python scripts/sweep_auth_state.py
    python scripts/sweep_auth_state.py --dry-run

Environment Variables:
    SHARED_FS_ROOT: Directory holding state/auth_store.json
    JWT_SECRET / MFA_SECRET_KEY: Needed to open the store
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def sweep(dry_run: bool = False) -> dict:
    """Return counts of purged (or purgeable, under ``dry_run``) records."""
    # Import here to avoid loading config before env vars are set
    from profileauth.service.runtime import get_runtime

    runtime = get_runtime()
    if dry_run:
        sessions, otps = runtime.store.count_purgeable(runtime.clock.now())
        return {"sessions": sessions, "otps": otps, "dry_run": True}

    return {
        "sessions": runtime.sessions.sweep(),
        "otps": runtime.otp.sweep(),
        "dry_run": False,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Sweep stale auth state",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Count stale records without deleting them",
    )
    args = parser.parse_args()

    if not os.environ.get("JWT_SECRET") and not os.environ.get("SHARED_FS_ROOT"):
        print("Error: set SHARED_FS_ROOT (and JWT_SECRET or MFA_SECRET_KEY) to locate the store")
        sys.exit(1)

    # The sweep only touches the in-process store
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = sweep(args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    prefix = "[DRY RUN] Would purge" if result["dry_run"] else "Purged"
    print(f"{prefix} {result['sessions']} session(s) and {result['otps']} one-time code(s)")


if __name__ == "__main__":
    main()
