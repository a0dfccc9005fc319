from __future__ import annotations

import argparse
import asyncio
import logging

from tenantvault.core.config import get_settings
from tenantvault.domain.registry import default_registry
from tenantvault.persistence.db import SessionLocal
from tenantvault.services.integrity import find_duplicates, optimize_database


async def _run_report(tenant_id: str, optimize: bool, actor_id: str | None) -> None:
    # Duplicate groups per dedupable type, then optional table maintenance.
    async with SessionLocal() as session:
        for spec in default_registry().dedupable():
            groups = await find_duplicates(session, tenant_id=tenant_id, entity_type=spec.entity_type)
            print(f"duplicate_groups.{spec.key}={len(groups)}")
            for group in groups:
                print(f"  {group.key!r} count={group.count} ids={','.join(group.ids)}")
        if optimize:
            report = await optimize_database(session, tenant_id=tenant_id, actor_id=actor_id)
            for stat in report.tables:
                status = f"error={stat.error}" if stat.error else f"rows={stat.rows} indexes={stat.indexes}"
                print(f"table.{stat.table} {status}")
            print(f"optimize_failed={len(report.failed)}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Report duplicate records and optionally optimize tables")
    parser.add_argument("--tenant-id", required=True)
    parser.add_argument("--optimize", action="store_true")
    parser.add_argument("--actor-id", default=None)
    args = parser.parse_args()

    logging.basicConfig(level=get_settings().log_level)
    asyncio.run(_run_report(args.tenant_id, args.optimize, args.actor_id))


if __name__ == "__main__":
    main()
