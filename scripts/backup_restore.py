from __future__ import annotations

import argparse
import asyncio
from dataclasses import asdict
import json
import logging
import sys

from tenantvault.core.config import get_settings
from tenantvault.core.errors import TenantVaultError
from tenantvault.persistence.db import SessionLocal
from tenantvault.services.restore import restore_backup


async def _run_restore(tenant_id: str, snapshot_id: str, modules: list[str], actor_id: str | None) -> int:
    async with SessionLocal() as session:
        try:
            result = await restore_backup(
                session,
                tenant_id=tenant_id,
                snapshot_id=snapshot_id,
                actor_id=actor_id,
                modules=modules or None,
            )
        except TenantVaultError as exc:
            print(f"error={exc}")
            return 1
    print(json.dumps(asdict(result), indent=2))
    return 0


def main() -> None:
    # Restore a stored tenant backup, fully or for selected modules.
    parser = argparse.ArgumentParser(description="Restore a tenant from a stored backup")
    parser.add_argument("--tenant-id", required=True)
    parser.add_argument("--snapshot-id", required=True)
    parser.add_argument("--modules", default="", help="Comma-separated modules; empty restores everything")
    parser.add_argument("--actor-id", default=None)
    args = parser.parse_args()

    logging.basicConfig(level=get_settings().log_level)
    modules = [item.strip() for item in args.modules.split(",") if item.strip()]
    sys.exit(asyncio.run(_run_restore(args.tenant_id, args.snapshot_id, modules, args.actor_id)))


if __name__ == "__main__":
    main()
