#!/usr/bin/env python3
"""Force logout of a user on every device.

Every session listed in the user's index gets its version bumped, so each
outstanding access token for those sessions is rejected on its next use.

Usage:
    python scripts/revoke_user_sessions.py --user-id alice@example.com
    python scripts/revoke_user_sessions.py --user-id alice@example.com --dry-run

Environment Variables:
    REDIS_URL: Redis connection string holding the session records
    JWT_SECRET: required by the runtime configuration (not used for revocation)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def revoke(user_id: str, dry_run: bool = False) -> dict:
    # Import here to avoid loading config before env vars are set
    from sessionguard.service.auth import revoke_user_sessions
    from sessionguard.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        session_ids = await runtime.sessions.list_user_sessions(user_id)
        if dry_run:
            for session_id in session_ids:
                version = await runtime.sessions.get_version(session_id)
                print(f"[DRY RUN] Would revoke session {session_id} (version {version})")
            return {"user_id": user_id, "status": "dry_run", "sessions": session_ids}

        revoked = await revoke_user_sessions(runtime.sessions, user_id)
        for session_id, version in revoked.items():
            print(f"Revoked session {session_id} (now version {version})")
        return {"user_id": user_id, "status": "revoked", "sessions": sorted(revoked)}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Revoke every session of a user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--user-id",
        default=os.environ.get("REVOKE_USER_ID"),
        help="User id as stored in the session index (or set REVOKE_USER_ID env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.user_id:
        print("Error: --user-id or REVOKE_USER_ID environment variable required")
        sys.exit(1)

    try:
        result = asyncio.run(revoke(args.user_id, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if not result["sessions"]:
        print(f"\nNo live sessions for {args.user_id}.")
    elif result["status"] == "revoked":
        print(f"\nRevoked {len(result['sessions'])} session(s) for {args.user_id}.")


if __name__ == "__main__":
    main()
