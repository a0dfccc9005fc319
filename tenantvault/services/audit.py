from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from tenantvault.domain.models import ArchiveMetadata, BackupRecord, CleanupLog, RestoreLog


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def record_backup(
    session: AsyncSession,
    *,
    snapshot_id: str,
    tenant_id: str,
    schema_version: str,
    record_counts: dict[str, int],
    actor_id: str | None,
    file_name: str | None = None,
    file_path: str | None = None,
    file_size: int | None = None,
    sha256: str | None = None,
) -> BackupRecord:
    # Audit rows join the caller's transaction; the caller owns commit/rollback.
    row = BackupRecord(
        snapshot_id=snapshot_id,
        tenant_id=tenant_id,
        file_name=file_name,
        file_path=file_path,
        file_size=file_size,
        sha256=sha256,
        record_counts_json=dict(record_counts),
        schema_version=schema_version,
        status="completed",
        downloaded=False,
        created_by=actor_id,
        created_at=_utc_now(),
    )
    session.add(row)
    await session.flush()
    logger.info("backup_recorded tenant_id=%s snapshot_id=%s", tenant_id, snapshot_id)
    return row


async def record_restore(
    session: AsyncSession,
    *,
    tenant_id: str,
    snapshot_id: str,
    restore_type: str,
    modules: list[str],
    records_restored: dict[str, int],
    actor_id: str | None,
    status: str = "success",
) -> RestoreLog:
    row = RestoreLog(
        tenant_id=tenant_id,
        snapshot_id=snapshot_id,
        restore_type=restore_type,
        modules_json=list(modules),
        records_restored_json=dict(records_restored),
        status=status,
        restored_by=actor_id,
        restored_at=_utc_now(),
    )
    session.add(row)
    await session.flush()
    return row


async def record_archive(
    session: AsyncSession,
    *,
    tenant_id: str,
    entity_type: str,
    record_count: int,
    cutoff_date: datetime,
    actor_id: str | None,
) -> ArchiveMetadata:
    row = ArchiveMetadata(
        tenant_id=tenant_id,
        entity_type=entity_type,
        record_count=record_count,
        cutoff_date=cutoff_date,
        archived_by=actor_id,
        created_at=_utc_now(),
    )
    session.add(row)
    await session.flush()
    return row


async def record_cleanup(
    session: AsyncSession,
    *,
    tenant_id: str,
    cleanup_type: str,
    records_affected: int,
    details: dict[str, Any] | None,
    actor_id: str | None,
) -> CleanupLog:
    row = CleanupLog(
        tenant_id=tenant_id,
        cleanup_type=cleanup_type,
        records_affected=records_affected,
        details_json=details or {},
        executed_by=actor_id,
        created_at=_utc_now(),
    )
    session.add(row)
    await session.flush()
    return row
