from __future__ import annotations

import argparse
import asyncio
import logging

from tenantvault.core.config import get_settings
from tenantvault.persistence.db import SessionLocal
from tenantvault.services.integrity import cleanup_orphans


async def _run_cleanup(tenant_id: str, execute: bool, actor_id: str | None) -> None:
    # Report orphaned records; delete them only when --execute is given.
    async with SessionLocal() as session:
        result = await cleanup_orphans(
            session,
            tenant_id=tenant_id,
            dry_run=not execute,
            actor_id=actor_id,
        )
    print(f"dry_run={str(result.dry_run).lower()}")
    for entity_type, count in result.report.counts().items():
        print(f"orphans.{entity_type}={count}")
    print(f"deleted={result.total_deleted}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Find and clean orphaned tenant records")
    parser.add_argument("--tenant-id", required=True)
    parser.add_argument("--execute", action="store_true")
    parser.add_argument("--actor-id", default=None)
    args = parser.parse_args()

    logging.basicConfig(level=get_settings().log_level)
    asyncio.run(_run_cleanup(args.tenant_id, args.execute, args.actor_id))


if __name__ == "__main__":
    main()
