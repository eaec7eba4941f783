#!/usr/bin/env python3
"""Sign a user out of every device.

Revokes the refresh token of every live session the subject holds and
deletes the session records. Access tokens already issued stay valid until
they expire.

Usage:
    python scripts/revoke_sessions.py --subject-id 3f2a...
    python scripts/revoke_sessions.py --subject-id 3f2a... --dry-run

Environment Variables:
    REDIS_URL: Redis connection string holding sessions and revocations
    JWT_ACCESS_SECRET / JWT_REFRESH_SECRET: required by the service settings
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def revoke_sessions(subject_id: str, dry_run: bool = False) -> dict:
    """Revoke all sessions for one subject.

    Returns:
        dict with subject_id, the listed sessions and how many were revoked
    """
    # Import here to avoid loading config before env vars are set
    from authgate.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        sessions = await runtime.auth.list_sessions(subject_id)
        for record in sessions:
            print(
                f"  {record.refresh_token_id}  created {record.created_at.isoformat()}"
                f"  last active {record.last_activity.isoformat()}"
                f"  {record.device_info or '-'}"
            )
        if dry_run:
            print(f"[DRY RUN] Would revoke {len(sessions)} session(s) for {subject_id}")
            return {"subject_id": subject_id, "sessions": len(sessions), "revoked": 0}
        revoked = await runtime.auth.logout_all(subject_id)
        return {"subject_id": subject_id, "sessions": len(sessions), "revoked": revoked}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Revoke every session of a user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--subject-id", required=True, help="Subject (user) id")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List sessions without revoking them",
    )
    args = parser.parse_args()

    try:
        result = asyncio.run(revoke_sessions(args.subject_id, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    if not args.dry_run:
        print(f"\nRevoked {result['revoked']} session(s) for {result['subject_id']}.")


if __name__ == "__main__":
    main()
