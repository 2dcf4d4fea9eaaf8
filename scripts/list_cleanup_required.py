from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timedelta, timezone
import sys

from tenantforge.persistence.db import SessionLocal
from tenantforge.persistence.repos import audit as audit_repo


def _build_parser() -> argparse.ArgumentParser:
    # Orphaned identities are never deleted automatically in flag_only mode; operators work this list.
    parser = argparse.ArgumentParser(description="List identities flagged for manual cleanup")
    parser.add_argument("--days", type=int, default=30, help="Look back this many days")
    parser.add_argument("--limit", type=int, default=200, help="Maximum rows to print")
    return parser


async def _list_flagged(args: argparse.Namespace) -> int:
    since = datetime.now(timezone.utc) - timedelta(days=max(1, int(args.days)))
    async with SessionLocal() as session:
        entries = await audit_repo.list_entries(
            session,
            manual_cleanup_required=True,
            occurred_from=since,
            limit=max(1, int(args.limit)),
        )

    print("created_at\trequest_id\tstage\towner_identity_id\terror_code\tcleanup")
    for entry in entries:
        snapshot = entry.payload_snapshot or {}
        print(
            f"{entry.created_at.isoformat()}\t{entry.request_id}\t{entry.stage}\t"
            f"{snapshot.get('owner_identity_id') or ''}\t{entry.error_code or ''}\t"
            f"{snapshot.get('cleanup') or ''}"
        )
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_list_flagged(args))
    except Exception as exc:  # noqa: BLE001 - show full operator-facing error context.
        print(f"list_cleanup_required failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
