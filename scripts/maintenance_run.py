from __future__ import annotations

import argparse
import asyncio
import logging

from tenantvault.core.config import get_settings
from tenantvault.persistence.db import SessionLocal
from tenantvault.services.maintenance import run_maintenance_task


async def _run(task: str) -> None:
    async with SessionLocal() as session:
        result = await run_maintenance_task(session, task)
        print(f"{task}={result}")


def main() -> None:
    # Entry point for cron-style schedulers.
    parser = argparse.ArgumentParser(description="Run a tenantvault maintenance task")
    parser.add_argument("task", choices=["backup_prune_retention", "backup_create_scheduled"])
    args = parser.parse_args()

    logging.basicConfig(level=get_settings().log_level)
    asyncio.run(_run(args.task))


if __name__ == "__main__":
    main()
