from __future__ import annotations

import argparse
import asyncio
import logging

from tenantvault.core.config import get_settings
from tenantvault.persistence.db import SessionLocal
from tenantvault.services.snapshot import create_backup


async def _run_backup(tenant_id: str, output: str | None, actor_id: str | None) -> None:
    # Write a zipped tenant snapshot from the CLI for operator workflows.
    async with SessionLocal() as session:
        record = await create_backup(
            session,
            tenant_id=tenant_id,
            actor_id=actor_id,
            backup_dir=output,
        )
        print(f"snapshot_id={record.snapshot_id}")
        print(f"file_path={record.file_path}")
        print(f"sha256={record.sha256}")


def main() -> None:
    # Parse CLI flags for tenant backup creation.
    parser = argparse.ArgumentParser(description="Create a tenant snapshot backup")
    parser.add_argument("--tenant-id", required=True)
    parser.add_argument("--output", default=None)
    parser.add_argument("--actor-id", default=None)
    args = parser.parse_args()

    logging.basicConfig(level=get_settings().log_level)
    asyncio.run(_run_backup(args.tenant_id, args.output, args.actor_id))


if __name__ == "__main__":
    main()
