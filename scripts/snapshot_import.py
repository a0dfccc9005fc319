from __future__ import annotations

import argparse
import asyncio
import logging

from tenantvault.core.config import get_settings
from tenantvault.persistence.db import SessionLocal
from tenantvault.services.tenant_import import import_snapshot_file


async def _run_import(path: str, actor_id: str) -> None:
    # Clone a snapshot file into a new tenant owned by the given actor.
    async with SessionLocal() as session:
        result = await import_snapshot_file(session, path=path, importing_actor_id=actor_id)
    print(f"new_tenant_id={result.new_tenant_id}")
    print(f"source_tenant_id={result.source_metadata.tenant_id}")
    for entity_type, count in result.imported_counts.items():
        print(f"imported.{entity_type}={count}")
    print(f"unresolved_references={len(result.unresolved_references)}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Import a snapshot file into a new tenant")
    parser.add_argument("--file", required=True)
    parser.add_argument("--actor-id", required=True)
    args = parser.parse_args()

    logging.basicConfig(level=get_settings().log_level)
    asyncio.run(_run_import(args.file, args.actor_id))


if __name__ == "__main__":
    main()
