from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from pathlib import Path
from typing import Awaitable, Callable, Literal

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantvault.core.config import get_settings
from tenantvault.core.errors import TenantVaultError
from tenantvault.domain.models import BackupRecord, Tenant
from tenantvault.persistence.db import transaction_scope
from tenantvault.persistence.repos.history import list_expired_backup_records
from tenantvault.services.snapshot import create_backup


logger = logging.getLogger(__name__)

MaintenanceTask = Literal[
    "backup_prune_retention",
    "backup_create_scheduled",
]


async def cleanup_old_backups(session: AsyncSession, *, retention_days: int | None = None) -> int:
    """Delete backup files and audit rows older than the retention window.

    Each audit row is deleted in its own transaction and its file after the
    commit. A failure is logged and the sweep moves on to the next backup;
    the return value counts deleted rows.
    """
    settings = get_settings()
    days = settings.backup_retention_days if retention_days is None else retention_days
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)
    # Copy the fields out first; a rollback below expires every loaded row.
    expired = [
        (record.id, record.snapshot_id, record.file_path)
        for record in await list_expired_backup_records(session, older_than=cutoff)
    ]
    deleted = 0
    for record_id, snapshot_id, file_path in expired:
        try:
            async with transaction_scope(session):
                await session.execute(delete(BackupRecord).where(BackupRecord.id == record_id))
        except SQLAlchemyError as exc:
            logger.warning(
                "backup_retention_delete_failed snapshot_id=%s path=%s",
                snapshot_id,
                file_path,
                exc_info=exc,
            )
            continue
        deleted += 1
        # Remove the file only once its row is committed away.
        if file_path:
            try:
                Path(file_path).unlink(missing_ok=True)
            except OSError as exc:
                logger.warning(
                    "backup_retention_file_delete_failed snapshot_id=%s path=%s",
                    snapshot_id,
                    file_path,
                    exc_info=exc,
                )
    if expired:
        logger.info(
            "backup_retention_completed deleted=%s skipped=%s retention_days=%s",
            deleted,
            len(expired) - deleted,
            days,
        )
    return deleted


async def backup_prune_retention(session: AsyncSession) -> int:
    return await cleanup_old_backups(session)


async def backup_create_scheduled(session: AsyncSession) -> int:
    # Back up every tenant; one tenant failing does not stop the others.
    tenant_ids = list((await session.execute(select(Tenant.id).order_by(Tenant.id))).scalars().all())
    created = 0
    for tenant_id in tenant_ids:
        try:
            await create_backup(session, tenant_id=tenant_id, actor_id=None)
        except TenantVaultError as exc:
            logger.warning("backup_scheduled_failed tenant_id=%s", tenant_id, exc_info=exc)
            continue
        created += 1
    return created


_TASKS: dict[str, Callable[[AsyncSession], Awaitable[int]]] = {
    "backup_prune_retention": backup_prune_retention,
    "backup_create_scheduled": backup_create_scheduled,
}


async def run_maintenance_task(session: AsyncSession, task: MaintenanceTask) -> int:
    # Dispatch named tasks for schedulers and operator scripts.
    handler = _TASKS.get(task)
    if handler is None:
        raise ValueError(f"unknown maintenance task: {task}")
    result = await handler(session)
    logger.info("maintenance_task_completed task=%s result=%s", task, result)
    return result
