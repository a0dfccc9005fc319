from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import math
from typing import Any, Iterable

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantvault.core.config import get_settings
from tenantvault.core.errors import (
    ArchiveConflictError,
    InvalidFilterError,
    TransactionAbortedError,
    UnsupportedEntityTypeError,
)
from tenantvault.domain.models import ArchiveMetadata
from tenantvault.domain.registry import EntityRegistry, EntitySpec, EntityType, default_registry
from tenantvault.persistence.db import transaction_scope
from tenantvault.persistence.guards import tenant_predicate
from tenantvault.persistence.records import chunks, copy_columns, row_to_dict, to_utc
from tenantvault.persistence.repos.entities import delete_records_by_id, insert_records
from tenantvault.services.audit import record_archive
from tenantvault.services.locks import tenant_lock


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArchiveResult:
    entity_type: str
    record_count: int
    cutoff_date: datetime


@dataclass(frozen=True)
class ArchiveRestoreResult:
    entity_type: str
    record_count: int
    missing_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ArchivedPage:
    entity_type: str
    records: list[dict[str, Any]]
    total: int
    page: int
    limit: int
    pages: int


@dataclass(frozen=True)
class ArchiveStat:
    entity_type: str
    total_archived: int
    batches: int
    last_archived: datetime | None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def archivable_spec(registry: EntityRegistry, entity_type: EntityType | str) -> EntitySpec:
    spec = registry.get(entity_type)
    if not spec.archivable:
        raise UnsupportedEntityTypeError(f"entity type {spec.key} cannot be archived")
    return spec


async def archive_old_records(
    session: AsyncSession,
    *,
    tenant_id: str,
    entity_type: EntityType | str,
    cutoff_date: datetime,
    actor_id: str | None,
    registry: EntityRegistry | None = None,
) -> ArchiveResult:
    """Move live records dated before ``cutoff_date`` into the cold store.

    Copy, delete and metadata row commit together. When nothing matches the
    call succeeds with a zero count and writes no metadata row.
    """
    registry = registry or default_registry()
    spec = archivable_spec(registry, entity_type)
    cutoff = to_utc(cutoff_date)
    date_column = getattr(spec.model, spec.date_field)
    batch_size = get_settings().archive_batch_size

    try:
        async with tenant_lock(session, tenant_id):
            async with transaction_scope(session):
                result = await session.execute(
                    select(spec.model)
                    .where(tenant_predicate(spec.model, tenant_id), date_column < cutoff)
                    .order_by(spec.model.id)
                    .execution_options(populate_existing=True)
                )
                live_rows = list(result.scalars().all())
                if not live_rows:
                    logger.info(
                        "archive_nothing_to_move tenant_id=%s entity_type=%s cutoff=%s",
                        tenant_id,
                        spec.key,
                        cutoff.isoformat(),
                    )
                    return ArchiveResult(entity_type=spec.key, record_count=0, cutoff_date=cutoff)

                archived_at = _utc_now()
                archived = []
                for row in live_rows:
                    values = copy_columns(row, spec.archive_model)
                    values["archived_at"] = archived_at
                    values["archived_by"] = actor_id
                    archived.append(values)
                ids = [row.id for row in live_rows]
                for batch in chunks(archived, batch_size):
                    await insert_records(session, spec.archive_model, list(batch))
                for batch in chunks(ids, batch_size):
                    await delete_records_by_id(session, spec.model, tenant_id, batch)
                await record_archive(
                    session,
                    tenant_id=tenant_id,
                    entity_type=spec.key,
                    record_count=len(ids),
                    cutoff_date=cutoff,
                    actor_id=actor_id,
                )
    except SQLAlchemyError as exc:
        logger.error("archive_aborted tenant_id=%s entity_type=%s", tenant_id, spec.key, exc_info=exc)
        raise TransactionAbortedError(
            f"archiving {spec.key} for tenant {tenant_id} failed; no records were moved"
        ) from exc

    logger.info(
        "archive_completed tenant_id=%s entity_type=%s records=%s cutoff=%s",
        tenant_id,
        spec.key,
        len(ids),
        cutoff.isoformat(),
    )
    return ArchiveResult(entity_type=spec.key, record_count=len(ids), cutoff_date=cutoff)


async def _load_by_ids(
    session: AsyncSession,
    model: Any,
    tenant_id: str,
    ids: list[str],
    batch_size: int,
) -> list[Any]:
    found: list[Any] = []
    for batch in chunks(ids, batch_size):
        result = await session.execute(
            select(model)
            .where(tenant_predicate(model, tenant_id), model.id.in_(list(batch)))
            .execution_options(populate_existing=True)
        )
        found.extend(result.scalars().all())
    return found


async def restore_from_archive(
    session: AsyncSession,
    *,
    tenant_id: str,
    entity_type: EntityType | str,
    ids: Iterable[str],
    actor_id: str | None = None,
    registry: EntityRegistry | None = None,
) -> ArchiveRestoreResult:
    # Reverse an archive move for explicit ids; archive-only tags are dropped on the way back.
    registry = registry or default_registry()
    spec = archivable_spec(registry, entity_type)
    requested = list(dict.fromkeys(str(record_id) for record_id in ids))
    if not requested:
        return ArchiveRestoreResult(entity_type=spec.key, record_count=0)
    batch_size = get_settings().archive_batch_size

    try:
        async with tenant_lock(session, tenant_id):
            async with transaction_scope(session):
                live = await _load_by_ids(session, spec.model, tenant_id, requested, batch_size)
                if live:
                    conflicts = sorted(row.id for row in live)
                    raise ArchiveConflictError(
                        f"{spec.key} records are already live and cannot be restored: {', '.join(conflicts)}"
                    )
                archived_rows = await _load_by_ids(
                    session, spec.archive_model, tenant_id, requested, batch_size
                )
                restored_rows = [copy_columns(row, spec.model) for row in archived_rows]
                found = [row.id for row in archived_rows]
                for batch in chunks(restored_rows, batch_size):
                    await insert_records(session, spec.model, list(batch))
                for batch in chunks(found, batch_size):
                    await delete_records_by_id(session, spec.archive_model, tenant_id, batch)
    except SQLAlchemyError as exc:
        logger.error(
            "archive_restore_aborted tenant_id=%s entity_type=%s", tenant_id, spec.key, exc_info=exc
        )
        raise TransactionAbortedError(
            f"restoring archived {spec.key} for tenant {tenant_id} failed; no records were moved"
        ) from exc

    found_ids = set(found)
    missing = [record_id for record_id in requested if record_id not in found_ids]
    if missing:
        logger.warning(
            "archive_restore_missing tenant_id=%s entity_type=%s missing=%s",
            tenant_id,
            spec.key,
            len(missing),
        )
    logger.info(
        "archive_restore_completed tenant_id=%s entity_type=%s records=%s actor_id=%s",
        tenant_id,
        spec.key,
        len(found),
        actor_id,
    )
    return ArchiveRestoreResult(entity_type=spec.key, record_count=len(found), missing_ids=missing)


def _filter_conditions(model: Any, filters: dict[str, Any] | None) -> list[Any]:
    if not filters:
        return []
    columns = model.__table__.columns
    unknown = sorted(name for name in filters if name not in columns or name == "tenant_id")
    if unknown:
        raise InvalidFilterError(
            f"cannot filter {model.__tablename__} by: {', '.join(unknown)}"
        )
    return [columns[name] == value for name, value in filters.items()]


async def get_archived_records(
    session: AsyncSession,
    *,
    tenant_id: str,
    entity_type: EntityType | str,
    filters: dict[str, Any] | None = None,
    page: int = 1,
    limit: int = 50,
    registry: EntityRegistry | None = None,
) -> ArchivedPage:
    """Page through a tenant's archived rows, most recently archived first.

    ``filters`` maps archive column names to values matched by equality.
    The tenant scope always applies and cannot be overridden by a filter.
    """
    registry = registry or default_registry()
    spec = archivable_spec(registry, entity_type)
    model = spec.archive_model
    page = max(1, int(page))
    limit = max(1, int(limit))
    conditions = [tenant_predicate(model, tenant_id), *_filter_conditions(model, filters)]

    total = await session.scalar(select(func.count()).select_from(model).where(*conditions))
    result = await session.execute(
        select(model)
        .where(*conditions)
        .order_by(model.archived_at.desc(), model.id)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    records = [row_to_dict(row) for row in result.scalars().all()]
    total = int(total or 0)
    return ArchivedPage(
        entity_type=spec.key,
        records=records,
        total=total,
        page=page,
        limit=limit,
        pages=math.ceil(total / limit) if total else 0,
    )


async def get_archive_stats(session: AsyncSession, tenant_id: str) -> list[ArchiveStat]:
    # Read-only aggregation over archive metadata rows.
    result = await session.execute(
        select(
            ArchiveMetadata.entity_type,
            func.sum(ArchiveMetadata.record_count),
            func.count(ArchiveMetadata.id),
            func.max(ArchiveMetadata.created_at),
        )
        .where(tenant_predicate(ArchiveMetadata, tenant_id))
        .group_by(ArchiveMetadata.entity_type)
        .order_by(ArchiveMetadata.entity_type)
    )
    return [
        ArchiveStat(
            entity_type=entity_type,
            total_archived=int(total or 0),
            batches=int(batches or 0),
            last_archived=last_archived,
        )
        for entity_type, total, batches, last_archived in result.all()
    ]
