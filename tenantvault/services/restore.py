from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Iterable, Literal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantvault.core.config import get_settings
from tenantvault.core.errors import (
    BackupNotFoundError,
    SnapshotValidationError,
    TransactionAbortedError,
)
from tenantvault.domain.models import RestoreLog, Tenant
from tenantvault.domain.registry import (
    PROFILE_FIELDS,
    EntityRegistry,
    EntitySpec,
    EntityType,
    default_registry,
)
from tenantvault.persistence.db import transaction_scope
from tenantvault.persistence.records import coerce_record
from tenantvault.persistence.repos.entities import delete_tenant_records, insert_records
from tenantvault.persistence.repos.history import get_backup_record, list_restore_logs
from tenantvault.services.audit import record_restore
from tenantvault.services.locks import tenant_lock
from tenantvault.services.snapshot import (
    Snapshot,
    load_tenant,
    parse_snapshot,
    read_snapshot_file,
    validate_snapshot,
)


logger = logging.getLogger(__name__)

RestoreType = Literal["partial", "full"]


@dataclass(frozen=True)
class RestoreResult:
    snapshot_id: str
    restore_type: RestoreType
    restored: dict[str, int]
    skipped_modules: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _validated(
    snapshot: Snapshot | dict[str, Any],
    tenant_id: str,
    registry: EntityRegistry,
) -> tuple[Snapshot, list[str]]:
    # Reject foreign or malformed snapshots before any lock or transaction is taken.
    result = validate_snapshot(snapshot, tenant_id, registry=registry)
    if not result.valid:
        raise SnapshotValidationError(result.error or "snapshot failed validation")
    for warning in result.warnings:
        logger.warning("restore_validation_warning tenant_id=%s warning=%s", tenant_id, warning)
    return _parsed(snapshot), list(result.warnings)


def _parsed(snapshot: Snapshot | dict[str, Any]) -> Snapshot:
    return snapshot if isinstance(snapshot, Snapshot) else parse_snapshot(snapshot)


def prepare_rows(
    spec: EntitySpec,
    tenant_id: str,
    records: Iterable[dict[str, Any]],
) -> list[dict[str, Any]]:
    # Re-stamp every row with the destination tenant; the snapshot's own stamp is never trusted.
    rows: list[dict[str, Any]] = []
    for record in records:
        try:
            row = coerce_record(spec.model, record)
        except ValueError as exc:
            raise SnapshotValidationError(
                f"section {spec.key!r} has a record with an unreadable timestamp: {exc}"
            ) from exc
        if not row.get("id"):
            raise SnapshotValidationError(f"section {spec.key!r} has a record without an id")
        row["tenant_id"] = tenant_id
        rows.append(row)
    return rows


def _apply_profile(tenant: Tenant, profile: dict[str, Any]) -> list[str]:
    # Profile fields present in the snapshot replace the live values whole, settings included;
    # identity and ownership stay with the live tenant.
    changed: list[str] = []
    for name in PROFILE_FIELDS:
        if name not in profile:
            continue
        setattr(tenant, name, profile[name])
        changed.append(name)
    return changed


async def restore_partial(
    session: AsyncSession,
    *,
    tenant_id: str,
    snapshot: Snapshot | dict[str, Any],
    modules: Iterable[str],
    actor_id: str | None,
    registry: EntityRegistry | None = None,
) -> RestoreResult:
    """Replace the selected modules of ``tenant_id`` with snapshot contents.

    Unknown module names, and modules the snapshot does not carry, are skipped
    with a warning. Every selected module is deleted and reinserted inside one
    transaction together with its restore log row.
    """
    registry = registry or default_registry()
    parsed, warnings = _validated(snapshot, tenant_id, registry)

    requested: list[EntityType] = []
    skipped: list[str] = []
    for name in modules:
        if not registry.is_known(name):
            skipped.append(name)
            warnings.append(f"unsupported module {name!r} skipped")
            logger.warning("restore_module_skipped tenant_id=%s module=%s reason=unknown", tenant_id, name)
            continue
        entity_type = registry.parse(name)
        if entity_type.value not in parsed.payload:
            skipped.append(name)
            warnings.append(f"module {name!r} is not present in the snapshot and was skipped")
            logger.warning("restore_module_skipped tenant_id=%s module=%s reason=absent", tenant_id, name)
            continue
        if entity_type not in requested:
            requested.append(entity_type)

    ordered = [spec for spec in registry.dependency_order() if spec.entity_type in requested]
    prepared = {spec.key: prepare_rows(spec, tenant_id, parsed.records(spec.key)) for spec in ordered}

    restored: dict[str, int] = {}
    try:
        async with tenant_lock(session, tenant_id):
            async with transaction_scope(session):
                await load_tenant(session, tenant_id)
                for spec in ordered:
                    await delete_tenant_records(session, spec.model, tenant_id)
                    restored[spec.key] = await insert_records(session, spec.model, prepared[spec.key])
                await record_restore(
                    session,
                    tenant_id=tenant_id,
                    snapshot_id=parsed.metadata.snapshot_id,
                    restore_type="partial",
                    modules=[spec.key for spec in ordered],
                    records_restored=restored,
                    actor_id=actor_id,
                )
    except SQLAlchemyError as exc:
        logger.error(
            "restore_aborted tenant_id=%s snapshot_id=%s type=partial",
            tenant_id,
            parsed.metadata.snapshot_id,
            exc_info=exc,
        )
        raise TransactionAbortedError(
            f"partial restore of {parsed.metadata.snapshot_id} into tenant {tenant_id} failed; "
            "no changes were applied"
        ) from exc

    logger.info(
        "restore_completed tenant_id=%s snapshot_id=%s type=partial modules=%s",
        tenant_id,
        parsed.metadata.snapshot_id,
        ",".join(restored),
    )
    return RestoreResult(
        snapshot_id=parsed.metadata.snapshot_id,
        restore_type="partial",
        restored=restored,
        skipped_modules=skipped,
        warnings=warnings,
    )


async def restore_full(
    session: AsyncSession,
    *,
    tenant_id: str,
    snapshot: Snapshot | dict[str, Any],
    actor_id: str | None,
    registry: EntityRegistry | None = None,
) -> RestoreResult:
    """Replace every module of ``tenant_id`` and restore the snapshot profile.

    Deletes run children first and inserts run parents first. A module the
    snapshot does not carry is still cleared, matching a full replace.
    """
    registry = registry or default_registry()
    parsed, warnings = _validated(snapshot, tenant_id, registry)

    ordered = registry.dependency_order()
    for spec in ordered:
        if spec.key not in parsed.payload:
            warnings.append(f"module {spec.key!r} is not present in the snapshot; live records were cleared")
    prepared = {spec.key: prepare_rows(spec, tenant_id, parsed.records(spec.key)) for spec in ordered}

    restored: dict[str, int] = {}
    try:
        async with tenant_lock(session, tenant_id):
            async with transaction_scope(session):
                tenant = await load_tenant(session, tenant_id)
                for spec in reversed(ordered):
                    await delete_tenant_records(session, spec.model, tenant_id)
                for spec in ordered:
                    restored[spec.key] = await insert_records(session, spec.model, prepared[spec.key])
                changed = _apply_profile(tenant, parsed.tenant)
                await record_restore(
                    session,
                    tenant_id=tenant_id,
                    snapshot_id=parsed.metadata.snapshot_id,
                    restore_type="full",
                    modules=[spec.key for spec in ordered],
                    records_restored=restored,
                    actor_id=actor_id,
                )
    except SQLAlchemyError as exc:
        logger.error(
            "restore_aborted tenant_id=%s snapshot_id=%s type=full",
            tenant_id,
            parsed.metadata.snapshot_id,
            exc_info=exc,
        )
        raise TransactionAbortedError(
            f"full restore of {parsed.metadata.snapshot_id} into tenant {tenant_id} failed; "
            "no changes were applied"
        ) from exc

    logger.info(
        "restore_completed tenant_id=%s snapshot_id=%s type=full records=%s profile_fields=%s",
        tenant_id,
        parsed.metadata.snapshot_id,
        sum(restored.values()),
        len(changed),
    )
    return RestoreResult(
        snapshot_id=parsed.metadata.snapshot_id,
        restore_type="full",
        restored=restored,
        warnings=warnings,
    )


async def restore_backup(
    session: AsyncSession,
    *,
    tenant_id: str,
    snapshot_id: str,
    actor_id: str | None,
    modules: Iterable[str] | None = None,
    registry: EntityRegistry | None = None,
) -> RestoreResult:
    # Restore from a stored backup file; a module list selects the partial path.
    record = await get_backup_record(session, tenant_id=tenant_id, snapshot_id=snapshot_id)
    if record is None or not record.file_path:
        raise BackupNotFoundError(f"no stored backup file {snapshot_id} for tenant {tenant_id}")
    raw = read_snapshot_file(record.file_path)
    selected = list(modules) if modules is not None else []
    if selected:
        return await restore_partial(
            session,
            tenant_id=tenant_id,
            snapshot=raw,
            modules=selected,
            actor_id=actor_id,
            registry=registry,
        )
    return await restore_full(
        session,
        tenant_id=tenant_id,
        snapshot=raw,
        actor_id=actor_id,
        registry=registry,
    )


async def get_restore_history(
    session: AsyncSession,
    tenant_id: str,
    limit: int | None = None,
) -> list[RestoreLog]:
    resolved = limit if limit is not None else get_settings().restore_history_limit
    return await list_restore_logs(session, tenant_id=tenant_id, limit=resolved)
