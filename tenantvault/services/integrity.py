from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any

from sqlalchemy import func, inspect, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantvault.core.config import get_settings
from tenantvault.core.errors import TransactionAbortedError, UnsupportedEntityTypeError
from tenantvault.domain.models import CleanupLog
from tenantvault.domain.registry import EntityRegistry, EntityType, default_registry
from tenantvault.persistence.db import dialect_name, transaction_scope
from tenantvault.persistence.guards import tenant_predicate
from tenantvault.persistence.records import chunks
from tenantvault.persistence.repos.entities import delete_records_by_id, fetch_ids, fetch_records
from tenantvault.persistence.repos.history import list_cleanup_logs
from tenantvault.services.audit import record_cleanup
from tenantvault.services.locks import tenant_lock


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrphanRecord:
    entity_type: str
    record_id: str
    # Required reference fields that are empty or point at a missing parent.
    broken_fields: list[str]
    label: str | None = None


@dataclass(frozen=True)
class OrphanReport:
    details: dict[str, list[OrphanRecord]]
    total: int

    def counts(self) -> dict[str, int]:
        return {entity_type: len(records) for entity_type, records in self.details.items()}

    def ids(self, entity_type: str) -> list[str]:
        return [record.record_id for record in self.details.get(entity_type, [])]


@dataclass(frozen=True)
class DuplicateGroup:
    key: str
    count: int
    ids: list[str]


@dataclass(frozen=True)
class CleanupResult:
    dry_run: bool
    report: OrphanReport
    deleted: dict[str, int] = field(default_factory=dict)

    @property
    def total_deleted(self) -> int:
        return sum(self.deleted.values())


@dataclass(frozen=True)
class TableStat:
    table: str
    rows: int | None = None
    indexes: int | None = None
    analyzed: bool = False
    reindexed: bool = False
    error: str | None = None


@dataclass(frozen=True)
class OptimizeReport:
    tables: list[TableStat]

    @property
    def failed(self) -> list[TableStat]:
        return [stat for stat in self.tables if stat.error]


async def analyze_orphaned_records(
    session: AsyncSession,
    tenant_id: str,
    *,
    registry: EntityRegistry | None = None,
) -> OrphanReport:
    """Flag records whose required references do not resolve inside the tenant.

    Optional references are never inspected. The report is a single pass, so
    deleting an orphan never turns its children into orphans within one run.
    """
    registry = registry or default_registry()
    parent_ids: dict[EntityType, set[str]] = {}
    details: dict[str, list[OrphanRecord]] = {}

    for spec in registry.with_required_references():
        for ref in spec.required_references:
            if ref.target not in parent_ids:
                target = registry.get(ref.target)
                parent_ids[ref.target] = await fetch_ids(session, target.model, tenant_id)
        orphans: list[OrphanRecord] = []
        for row in await fetch_records(session, spec.model, tenant_id):
            broken = [
                ref.name
                for ref in spec.required_references
                if not getattr(row, ref.name) or getattr(row, ref.name) not in parent_ids[ref.target]
            ]
            if broken:
                label = getattr(row, spec.label_field, None) if spec.label_field else None
                orphans.append(OrphanRecord(spec.key, row.id, broken, label))
        if orphans:
            details[spec.key] = orphans

    total = sum(len(records) for records in details.values())
    logger.info("orphan_analysis tenant_id=%s total=%s types=%s", tenant_id, total, len(details))
    return OrphanReport(details=details, total=total)


async def find_duplicates(
    session: AsyncSession,
    *,
    tenant_id: str,
    entity_type: EntityType | str,
    registry: EntityRegistry | None = None,
) -> list[DuplicateGroup]:
    # Pure detection: group by the natural key and keep groups with more than one member.
    registry = registry or default_registry()
    spec = registry.get(entity_type)
    if not spec.natural_key:
        raise UnsupportedEntityTypeError(f"entity type {spec.key} has no natural key for duplicate detection")
    key_column = getattr(spec.model, spec.natural_key)
    result = await session.execute(
        select(key_column, spec.model.id)
        .where(tenant_predicate(spec.model, tenant_id), key_column.is_not(None))
        .order_by(key_column, spec.model.id)
    )
    groups: dict[str, list[str]] = {}
    for key, record_id in result.all():
        groups.setdefault(key, []).append(record_id)
    duplicates = [
        DuplicateGroup(key=key, count=len(ids), ids=ids) for key, ids in groups.items() if len(ids) > 1
    ]
    duplicates.sort(key=lambda group: (-group.count, group.key))
    return duplicates


async def cleanup_orphans(
    session: AsyncSession,
    *,
    tenant_id: str,
    dry_run: bool = True,
    actor_id: str | None = None,
    registry: EntityRegistry | None = None,
) -> CleanupResult:
    """Report orphans, and unless ``dry_run`` delete them in one transaction.

    The analysis is repeated under the tenant lock so the rows deleted are
    exactly the rows that are orphaned at commit time.
    """
    registry = registry or default_registry()
    if dry_run:
        report = await analyze_orphaned_records(session, tenant_id, registry=registry)
        return CleanupResult(dry_run=True, report=report)

    batch_size = get_settings().archive_batch_size
    deleted: dict[str, int] = {}
    try:
        async with tenant_lock(session, tenant_id):
            async with transaction_scope(session):
                report = await analyze_orphaned_records(session, tenant_id, registry=registry)
                for entity_type, records in report.details.items():
                    spec = registry.get(entity_type)
                    ids = [record.record_id for record in records]
                    count = 0
                    for batch in chunks(ids, batch_size):
                        count += await delete_records_by_id(session, spec.model, tenant_id, batch)
                    deleted[entity_type] = count
                await record_cleanup(
                    session,
                    tenant_id=tenant_id,
                    cleanup_type="orphans",
                    records_affected=sum(deleted.values()),
                    details={"deleted": deleted, "orphans": report.counts()},
                    actor_id=actor_id,
                )
    except SQLAlchemyError as exc:
        logger.error("orphan_cleanup_aborted tenant_id=%s", tenant_id, exc_info=exc)
        raise TransactionAbortedError(
            f"orphan cleanup for tenant {tenant_id} failed; no records were deleted"
        ) from exc

    logger.info("orphan_cleanup_completed tenant_id=%s deleted=%s", tenant_id, sum(deleted.values()))
    return CleanupResult(dry_run=False, report=report, deleted=deleted)


def _maintenance_tables(registry: EntityRegistry) -> list[Any]:
    models: list[Any] = []
    for spec in registry.dependency_order():
        models.append(spec.model)
        if spec.archive_model is not None:
            models.append(spec.archive_model)
    return models


async def _optimize_table(session: AsyncSession, model: Any, tenant_id: str) -> TableStat:
    table = model.__tablename__
    dialect = session.get_bind().dialect
    quoted = dialect.identifier_preparer.quote(table)
    reindex = f"REINDEX TABLE {quoted}" if dialect.name == "postgresql" else f"REINDEX {quoted}"
    async with transaction_scope(session):
        await session.execute(text(f"ANALYZE {quoted}"))
        await session.execute(text(reindex))
        rows = await session.scalar(
            select(func.count()).select_from(model).where(tenant_predicate(model, tenant_id))
        )
        connection = await session.connection()
        indexes = await connection.run_sync(lambda sync_conn: inspect(sync_conn).get_indexes(table))
    return TableStat(
        table=table,
        rows=int(rows or 0),
        indexes=len(indexes),
        analyzed=True,
        reindexed=True,
    )


async def optimize_database(
    session: AsyncSession,
    *,
    tenant_id: str,
    actor_id: str | None = None,
    registry: EntityRegistry | None = None,
) -> OptimizeReport:
    # Each table runs in its own transaction so one failure does not hide the rest.
    registry = registry or default_registry()
    stats: list[TableStat] = []
    for model in _maintenance_tables(registry):
        try:
            stats.append(await _optimize_table(session, model, tenant_id))
        except SQLAlchemyError as exc:
            logger.warning(
                "optimize_table_failed tenant_id=%s table=%s dialect=%s",
                tenant_id,
                model.__tablename__,
                dialect_name(session),
                exc_info=exc,
            )
            stats.append(TableStat(table=model.__tablename__, error=type(exc).__name__))

    report = OptimizeReport(tables=stats)
    async with transaction_scope(session):
        await record_cleanup(
            session,
            tenant_id=tenant_id,
            cleanup_type="optimize",
            records_affected=0,
            details={
                "tables": {
                    stat.table: {"rows": stat.rows, "indexes": stat.indexes, "error": stat.error}
                    for stat in stats
                }
            },
            actor_id=actor_id,
        )
    logger.info(
        "optimize_completed tenant_id=%s tables=%s failed=%s",
        tenant_id,
        len(stats),
        len(report.failed),
    )
    return report


async def get_cleanup_history(
    session: AsyncSession,
    tenant_id: str,
    limit: int | None = None,
) -> list[CleanupLog]:
    resolved = limit if limit is not None else get_settings().cleanup_history_limit
    return await list_cleanup_logs(session, tenant_id=tenant_id, limit=resolved)
