from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timedelta, timezone
import logging

from tenantvault.core.config import get_settings
from tenantvault.persistence.db import SessionLocal
from tenantvault.services.archival import archive_old_records, get_archive_stats, restore_from_archive


async def _run_archive(tenant_id: str, entity_type: str, older_than_days: int, actor_id: str | None) -> None:
    # Move records older than the window into cold storage.
    cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
    async with SessionLocal() as session:
        result = await archive_old_records(
            session,
            tenant_id=tenant_id,
            entity_type=entity_type,
            cutoff_date=cutoff,
            actor_id=actor_id,
        )
        print(f"archived_{result.entity_type}={result.record_count}")
        print(f"cutoff_date={result.cutoff_date.isoformat()}")
        for stat in await get_archive_stats(session, tenant_id):
            print(f"total_archived.{stat.entity_type}={stat.total_archived}")


async def _run_unarchive(tenant_id: str, entity_type: str, ids: list[str], actor_id: str | None) -> None:
    async with SessionLocal() as session:
        result = await restore_from_archive(
            session,
            tenant_id=tenant_id,
            entity_type=entity_type,
            ids=ids,
            actor_id=actor_id,
        )
    print(f"restored_{result.entity_type}={result.record_count}")
    if result.missing_ids:
        print(f"missing_ids={','.join(result.missing_ids)}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Archive aged tenant records or bring them back")
    parser.add_argument("--tenant-id", required=True)
    parser.add_argument(
        "--entity-type",
        required=True,
        choices=["stock_transactions", "sales_orders", "purchase_orders"],
    )
    parser.add_argument("--older-than-days", type=int, default=365)
    parser.add_argument("--restore-ids", default="", help="Comma-separated ids to move back out of the archive")
    parser.add_argument("--actor-id", default=None)
    args = parser.parse_args()

    logging.basicConfig(level=get_settings().log_level)
    ids = [item.strip() for item in args.restore_ids.split(",") if item.strip()]
    if ids:
        asyncio.run(_run_unarchive(args.tenant_id, args.entity_type, ids, args.actor_id))
    else:
        asyncio.run(_run_archive(args.tenant_id, args.entity_type, args.older_than_days, args.actor_id))


if __name__ == "__main__":
    main()
