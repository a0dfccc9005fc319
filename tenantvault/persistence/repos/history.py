from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantvault.domain.models import BackupRecord, CleanupLog, RestoreLog
from tenantvault.persistence.guards import tenant_predicate


async def list_backup_records(
    session: AsyncSession,
    *,
    tenant_id: str,
    offset: int = 0,
    limit: int | None = None,
) -> list[BackupRecord]:
    # Scope all history queries to a tenant to prevent cross-tenant leakage.
    stmt = (
        select(BackupRecord)
        .where(tenant_predicate(BackupRecord, tenant_id))
        .order_by(BackupRecord.created_at.desc(), BackupRecord.id.desc())
        .offset(offset)
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_backup_record(
    session: AsyncSession,
    *,
    tenant_id: str,
    snapshot_id: str,
) -> BackupRecord | None:
    result = await session.execute(
        select(BackupRecord)
        .where(
            tenant_predicate(BackupRecord, tenant_id),
            BackupRecord.snapshot_id == snapshot_id,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_expired_backup_records(
    session: AsyncSession,
    *,
    older_than: datetime,
) -> list[BackupRecord]:
    # Retention sweeps run across tenants, oldest first; refresh rows this session already holds.
    result = await session.execute(
        select(BackupRecord)
        .where(BackupRecord.created_at < older_than)
        .order_by(BackupRecord.created_at.asc(), BackupRecord.id.asc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def list_restore_logs(
    session: AsyncSession,
    *,
    tenant_id: str,
    limit: int = 50,
) -> list[RestoreLog]:
    result = await session.execute(
        select(RestoreLog)
        .where(tenant_predicate(RestoreLog, tenant_id))
        .order_by(RestoreLog.restored_at.desc(), RestoreLog.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_cleanup_logs(
    session: AsyncSession,
    *,
    tenant_id: str,
    limit: int = 20,
) -> list[CleanupLog]:
    result = await session.execute(
        select(CleanupLog)
        .where(tenant_predicate(CleanupLog, tenant_id))
        .order_by(CleanupLog.created_at.desc(), CleanupLog.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
