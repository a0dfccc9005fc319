from __future__ import annotations

import argparse
import asyncio
import logging

from tenantvault.core.config import get_settings
from tenantvault.persistence.db import SessionLocal
from tenantvault.services.maintenance import cleanup_old_backups


async def _run_prune(retention_days: int) -> None:
    # Prune tenant backups beyond retention.
    async with SessionLocal() as session:
        pruned = await cleanup_old_backups(session, retention_days=retention_days)
        print(f"pruned_backups={pruned}")


def main() -> None:
    # Parse CLI flags for backup retention pruning.
    parser = argparse.ArgumentParser(description="Prune tenant backups beyond retention")
    parser.add_argument("--retention-days", type=int, default=None)
    args = parser.parse_args()

    settings = get_settings()
    logging.basicConfig(level=settings.log_level)
    retention = args.retention_days or settings.backup_retention_days
    asyncio.run(_run_prune(retention))


if __name__ == "__main__":
    main()
