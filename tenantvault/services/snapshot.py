from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import hashlib
import json
import logging
import os
from pathlib import Path
import re
import shutil
import tempfile
from typing import Any
from uuid import uuid4
import zipfile

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantvault.core.config import SNAPSHOT_SCHEMA_VERSION, get_settings
from tenantvault.core.errors import (
    BackupNotFoundError,
    SnapshotExportError,
    SnapshotFileError,
    SnapshotValidationError,
    TenantNotFoundError,
    TransactionAbortedError,
)
from tenantvault.domain.models import BackupRecord, Tenant
from tenantvault.domain.registry import PROFILE_FIELDS, EntityRegistry, default_registry
from tenantvault.persistence.db import transaction_scope
from tenantvault.persistence.records import parse_timestamp, row_to_dict, to_utc
from tenantvault.persistence.repos.entities import fetch_records
from tenantvault.persistence.repos.history import get_backup_record, list_backup_records
from tenantvault.services.audit import record_backup


logger = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"
TENANT_FILE = "tenant.json"
REQUIRED_METADATA_FIELDS = ("snapshot_id", "tenant_id", "created_at", "schema_version", "sections")
_SNAPSHOT_ID_ATTEMPTS = 5


@dataclass(frozen=True)
class SnapshotMetadata:
    # Self-describing header stamped onto every snapshot.
    snapshot_id: str
    tenant_id: str
    tenant_name: str | None
    created_at: str
    schema_version: str
    app_version: str
    sections: list[str]
    record_counts: dict[str, int]

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "tenant_id": self.tenant_id,
            "tenant_name": self.tenant_name,
            "created_at": self.created_at,
            "schema_version": self.schema_version,
            "app_version": self.app_version,
            "sections": list(self.sections),
            "record_counts": dict(self.record_counts),
        }


@dataclass(frozen=True)
class Snapshot:
    metadata: SnapshotMetadata
    tenant: dict[str, Any]
    payload: dict[str, list[dict[str, Any]]]

    def to_dict(self) -> dict[str, Any]:
        return {
            "metadata": self.metadata.to_dict(),
            "tenant": dict(self.tenant),
            "payload": {section: list(records) for section, records in self.payload.items()},
        }

    def records(self, section: str) -> list[dict[str, Any]]:
        return list(self.payload.get(section) or [])


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    warnings: list[str] = field(default_factory=list)
    error: str | None = None
    metadata: SnapshotMetadata | None = None


@dataclass(frozen=True)
class BackupSummary:
    # Listing view of a backup record plus whether its file is still on disk.
    snapshot_id: str
    tenant_id: str
    file_name: str | None
    file_path: str | None
    file_size: int | None
    sha256: str | None
    record_counts: dict[str, int]
    created_by: str | None
    created_at: datetime
    downloaded: bool
    file_exists: bool


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _load_app_version() -> str:
    # Resolve the running package version for snapshot metadata.
    from importlib.metadata import PackageNotFoundError, version

    try:
        return version("tenantvault")
    except PackageNotFoundError:
        return "unknown"


def _slugify(name: str | None) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (name or "").lower()).strip("-")
    return slug[:40] or "tenant"


def _new_snapshot_id(tenant_name: str | None, now: datetime) -> str:
    stamp = now.strftime("%Y%m%dT%H%M%SZ")
    return f"snap_{_slugify(tenant_name)}_{stamp}_{uuid4().hex[:8]}"


def _sha256_file(path: Path) -> str:
    # Compute checksums for stored snapshot files.
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _major(version: Any) -> str | None:
    if not isinstance(version, str) or not version:
        return None
    head = version.split(".", 1)[0].strip().lstrip("v")
    return head if head.isdigit() else None


def tenant_profile(tenant: Tenant) -> dict[str, Any]:
    # Identity fields travel for reference only; restores read the profile fields.
    profile: dict[str, Any] = {
        "id": tenant.id,
        "name": tenant.name,
        "company_code": tenant.company_code,
    }
    for name in PROFILE_FIELDS:
        profile[name] = getattr(tenant, name)
    return profile


async def load_tenant(session: AsyncSession, tenant_id: str) -> Tenant:
    # Always re-read the row; another session may have changed it since it was cached here.
    tenant = await session.get(Tenant, tenant_id, populate_existing=True)
    if tenant is None:
        raise TenantNotFoundError(f"tenant {tenant_id} does not exist")
    return tenant


async def _unique_snapshot_id(session: AsyncSession, tenant_name: str | None, now: datetime) -> str:
    # Random suffix makes collisions unlikely; the lookup makes them impossible.
    for _ in range(_SNAPSHOT_ID_ATTEMPTS):
        candidate = _new_snapshot_id(tenant_name, now)
        existing = await session.execute(
            select(BackupRecord.id).where(BackupRecord.snapshot_id == candidate)
        )
        if existing.first() is None:
            return candidate
    raise SnapshotExportError("could not allocate a unique snapshot id; retry the export")


async def collect_snapshot(
    session: AsyncSession,
    *,
    tenant_id: str,
    registry: EntityRegistry | None = None,
) -> Snapshot:
    """Read every registered entity type for ``tenant_id`` into a snapshot.

    Sections follow dependency order so a consumer can insert them as listed.
    Storage errors propagate unchanged; callers decide how to wrap them.
    """
    registry = registry or default_registry()
    tenant = await load_tenant(session, tenant_id)
    payload: dict[str, list[dict[str, Any]]] = {}
    for spec in registry.dependency_order():
        rows = await fetch_records(session, spec.model, tenant_id)
        payload[spec.key] = [row_to_dict(row) for row in rows]

    now = _utc_now()
    metadata = SnapshotMetadata(
        snapshot_id=await _unique_snapshot_id(session, tenant.name, now),
        tenant_id=tenant.id,
        tenant_name=tenant.name,
        created_at=now.isoformat(),
        schema_version=SNAPSHOT_SCHEMA_VERSION,
        app_version=_load_app_version(),
        sections=list(payload),
        record_counts={section: len(records) for section, records in payload.items()},
    )
    return Snapshot(metadata=metadata, tenant=tenant_profile(tenant), payload=payload)


async def export_snapshot(
    session: AsyncSession,
    *,
    tenant_id: str,
    actor_id: str | None,
    registry: EntityRegistry | None = None,
) -> Snapshot:
    # In-memory export; the audit row is the only write and commits with the reads.
    try:
        async with transaction_scope(session):
            snapshot = await collect_snapshot(session, tenant_id=tenant_id, registry=registry)
            await record_backup(
                session,
                snapshot_id=snapshot.metadata.snapshot_id,
                tenant_id=tenant_id,
                schema_version=snapshot.metadata.schema_version,
                record_counts=snapshot.metadata.record_counts,
                actor_id=actor_id,
            )
    except SQLAlchemyError as exc:
        logger.error("snapshot_export_failed tenant_id=%s", tenant_id, exc_info=exc)
        raise SnapshotExportError(f"failed to read tenant {tenant_id} for export") from exc
    logger.info(
        "snapshot_exported tenant_id=%s snapshot_id=%s records=%s",
        tenant_id,
        snapshot.metadata.snapshot_id,
        sum(snapshot.metadata.record_counts.values()),
    )
    return snapshot


def _write_json(path: Path, value: Any) -> None:
    with path.open("w", encoding="utf-8") as handle:
        json.dump(value, handle, ensure_ascii=False, indent=2, default=str)


def _read_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def write_snapshot_file(snapshot: Snapshot, target_dir: Path) -> Path:
    """Zip a snapshot into ``<target_dir>/<snapshot_id>.zip``.

    Layout: ``metadata.json``, ``tenant.json`` and one ``<section>.json`` per
    entity type. The staging directory is always removed; a partially written
    zip is removed on failure.
    """
    target_dir.mkdir(parents=True, exist_ok=True)
    base_name = target_dir / snapshot.metadata.snapshot_id
    archive_path = base_name.with_suffix(".zip")
    try:
        with tempfile.TemporaryDirectory(prefix="tenantvault-export-") as staging_root:
            staging = Path(staging_root)
            _write_json(staging / METADATA_FILE, snapshot.metadata.to_dict())
            _write_json(staging / TENANT_FILE, snapshot.tenant)
            for section, records in snapshot.payload.items():
                _write_json(staging / f"{section}.json", records)
            shutil.make_archive(str(base_name), "zip", root_dir=staging)
    except OSError as exc:
        archive_path.unlink(missing_ok=True)
        raise SnapshotFileError(f"failed to write snapshot file {archive_path}: {exc}") from exc
    return archive_path


def read_snapshot_file(path: str | os.PathLike[str]) -> dict[str, Any]:
    # Unpack into a throwaway directory and rebuild the in-memory snapshot shape.
    source = Path(path)
    if not source.is_file():
        raise SnapshotFileError(f"snapshot file not found: {source}")
    try:
        with tempfile.TemporaryDirectory(prefix="tenantvault-import-") as staging_root:
            staging = Path(staging_root)
            with zipfile.ZipFile(source) as archive:
                for member in archive.namelist():
                    if Path(member).name != member or not member.endswith(".json"):
                        raise SnapshotFileError(f"unexpected entry {member!r} in {source.name}")
                archive.extractall(staging)
            metadata_path = staging / METADATA_FILE
            if not metadata_path.exists():
                raise SnapshotFileError(f"{source.name} has no {METADATA_FILE}")
            metadata = _read_json(metadata_path)
            tenant_path = staging / TENANT_FILE
            tenant = _read_json(tenant_path) if tenant_path.exists() else {}
            payload: dict[str, Any] = {}
            for section_path in sorted(staging.glob("*.json")):
                if section_path.name in (METADATA_FILE, TENANT_FILE):
                    continue
                payload[section_path.stem] = _read_json(section_path)
    except (OSError, zipfile.BadZipFile, ValueError) as exc:
        raise SnapshotFileError(f"failed to read snapshot file {source}: {exc}") from exc
    return {"metadata": metadata, "tenant": tenant, "payload": payload}


async def create_backup(
    session: AsyncSession,
    *,
    tenant_id: str,
    actor_id: str | None,
    backup_dir: str | os.PathLike[str] | None = None,
    registry: EntityRegistry | None = None,
) -> BackupRecord:
    # Persisted export: the zip only survives if its audit row commits.
    target_dir = Path(backup_dir or get_settings().backup_local_dir)
    archive_path: Path | None = None
    try:
        async with transaction_scope(session):
            snapshot = await collect_snapshot(session, tenant_id=tenant_id, registry=registry)
            archive_path = write_snapshot_file(snapshot, target_dir)
            record = await record_backup(
                session,
                snapshot_id=snapshot.metadata.snapshot_id,
                tenant_id=tenant_id,
                schema_version=snapshot.metadata.schema_version,
                record_counts=snapshot.metadata.record_counts,
                actor_id=actor_id,
                file_name=archive_path.name,
                file_path=str(archive_path),
                file_size=archive_path.stat().st_size,
                sha256=_sha256_file(archive_path),
            )
    except Exception as exc:
        if archive_path is not None:
            archive_path.unlink(missing_ok=True)
        if isinstance(exc, SQLAlchemyError):
            logger.error("backup_create_failed tenant_id=%s", tenant_id, exc_info=exc)
            raise SnapshotExportError(f"failed to back up tenant {tenant_id}") from exc
        raise
    logger.info(
        "backup_created tenant_id=%s snapshot_id=%s path=%s size=%s",
        tenant_id,
        record.snapshot_id,
        record.file_path,
        record.file_size,
    )
    return record


def _summarize(record: BackupRecord) -> BackupSummary:
    return BackupSummary(
        snapshot_id=record.snapshot_id,
        tenant_id=record.tenant_id,
        file_name=record.file_name,
        file_path=record.file_path,
        file_size=record.file_size,
        sha256=record.sha256,
        record_counts=dict(record.record_counts_json or {}),
        created_by=record.created_by,
        created_at=record.created_at,
        downloaded=record.downloaded,
        file_exists=bool(record.file_path) and Path(record.file_path).is_file(),
    )


async def list_backups(session: AsyncSession, tenant_id: str) -> list[BackupSummary]:
    # Newest first; in-memory exports report file_exists=False.
    records = await list_backup_records(session, tenant_id=tenant_id)
    return [_summarize(record) for record in records]


async def delete_backup(session: AsyncSession, *, tenant_id: str, snapshot_id: str) -> None:
    record = await get_backup_record(session, tenant_id=tenant_id, snapshot_id=snapshot_id)
    if record is None:
        raise BackupNotFoundError(f"backup {snapshot_id} not found for tenant {tenant_id}")
    file_path = record.file_path
    try:
        async with transaction_scope(session):
            await session.delete(record)
    except SQLAlchemyError as exc:
        logger.error("backup_delete_failed tenant_id=%s snapshot_id=%s", tenant_id, snapshot_id, exc_info=exc)
        raise TransactionAbortedError(
            f"deleting backup {snapshot_id} for tenant {tenant_id} failed; the record and file were kept"
        ) from exc
    # Unlink only once the row deletion has committed.
    if file_path:
        try:
            Path(file_path).unlink(missing_ok=True)
        except OSError as exc:
            logger.warning(
                "backup_file_delete_failed tenant_id=%s snapshot_id=%s path=%s",
                tenant_id,
                snapshot_id,
                file_path,
                exc_info=exc,
            )
    logger.info("backup_deleted tenant_id=%s snapshot_id=%s", tenant_id, snapshot_id)


async def mark_backup_downloaded(
    session: AsyncSession,
    *,
    tenant_id: str,
    snapshot_id: str,
) -> BackupRecord:
    record = await get_backup_record(session, tenant_id=tenant_id, snapshot_id=snapshot_id)
    if record is None:
        raise BackupNotFoundError(f"backup {snapshot_id} not found for tenant {tenant_id}")
    async with transaction_scope(session):
        record.downloaded = True
        record.downloaded_at = _utc_now()
    return record


def _as_raw(snapshot: Snapshot | dict[str, Any]) -> Any:
    if isinstance(snapshot, Snapshot):
        return snapshot.to_dict()
    return snapshot


def parse_snapshot(raw: Snapshot | dict[str, Any]) -> Snapshot:
    """Structural validation only; raises SnapshotValidationError."""
    raw = _as_raw(raw)
    if not isinstance(raw, dict):
        raise SnapshotValidationError("snapshot must be a JSON object")
    metadata = raw.get("metadata")
    payload = raw.get("payload")
    if not isinstance(metadata, dict):
        raise SnapshotValidationError("snapshot is missing its metadata section")
    if not isinstance(payload, dict):
        raise SnapshotValidationError("snapshot is missing its payload section")

    missing = [name for name in REQUIRED_METADATA_FIELDS if metadata.get(name) in (None, "")]
    if missing:
        raise SnapshotValidationError(f"snapshot metadata is missing: {', '.join(missing)}")
    sections = metadata["sections"]
    if not isinstance(sections, list) or not all(isinstance(item, str) for item in sections):
        raise SnapshotValidationError("snapshot metadata sections must be a list of names")
    for section in sections:
        if payload.get(section) is None:
            raise SnapshotValidationError(f"snapshot payload is missing section {section!r}")
    # Undeclared sections are still read by restores and imports, so they get the same shape check.
    for section, records in payload.items():
        if not isinstance(records, list) or not all(isinstance(item, dict) for item in records):
            raise SnapshotValidationError(f"snapshot section {section!r} must be a list of records")
    try:
        parse_timestamp(metadata["created_at"])
    except ValueError as exc:
        raise SnapshotValidationError("snapshot created_at is not an ISO-8601 timestamp") from exc

    tenant = raw.get("tenant") or {}
    if not isinstance(tenant, dict):
        raise SnapshotValidationError("snapshot tenant section must be an object")
    counts = metadata.get("record_counts")
    if not isinstance(counts, dict):
        counts = {section: len(payload[section]) for section in sections}
    try:
        record_counts = {str(key): int(value) for key, value in counts.items()}
    except (TypeError, ValueError) as exc:
        raise SnapshotValidationError("snapshot record_counts must map section names to integers") from exc

    return Snapshot(
        metadata=SnapshotMetadata(
            snapshot_id=str(metadata["snapshot_id"]),
            tenant_id=str(metadata["tenant_id"]),
            tenant_name=metadata.get("tenant_name"),
            created_at=str(metadata["created_at"]),
            schema_version=str(metadata["schema_version"]),
            app_version=str(metadata.get("app_version") or "unknown"),
            sections=list(sections),
            record_counts=record_counts,
        ),
        tenant=dict(tenant),
        payload={section: list(records) for section, records in payload.items()},
    )


def validate_snapshot(
    raw: Snapshot | dict[str, Any],
    expected_tenant_id: str,
    *,
    now: datetime | None = None,
    registry: EntityRegistry | None = None,
) -> ValidationResult:
    """Check structure, tenant ownership, version and age without touching storage.

    Only structure and ownership fail validation; version drift, age and
    unknown sections come back as warnings.
    """
    registry = registry or default_registry()
    try:
        snapshot = parse_snapshot(raw)
    except SnapshotValidationError as exc:
        return ValidationResult(valid=False, error=str(exc))

    metadata = snapshot.metadata
    if metadata.tenant_id != expected_tenant_id:
        return ValidationResult(
            valid=False,
            error="snapshot belongs to a different tenant",
            metadata=metadata,
        )

    warnings: list[str] = []
    snapshot_major = _major(metadata.schema_version)
    if snapshot_major != _major(SNAPSHOT_SCHEMA_VERSION):
        warnings.append(
            f"snapshot schema version {metadata.schema_version} differs from "
            f"current {SNAPSHOT_SCHEMA_VERSION}; some fields may not restore"
        )
    app_major = _major(metadata.app_version)
    current_app_major = _major(_load_app_version())
    if app_major and current_app_major and app_major != current_app_major:
        warnings.append(
            f"snapshot was created by app version {metadata.app_version}; "
            f"running {_load_app_version()}"
        )

    created_at = parse_timestamp(metadata.created_at)
    reference = to_utc(now) if now is not None else _utc_now()
    max_age_days = get_settings().snapshot_max_age_days
    if created_at is not None and reference - created_at > timedelta(days=max_age_days):
        age_days = (reference - created_at).days
        warnings.append(f"snapshot is {age_days} days old (older than {max_age_days} days)")

    unknown = sorted(section for section in snapshot.payload if not registry.is_known(section))
    if unknown:
        warnings.append(f"snapshot contains unknown sections that will be ignored: {', '.join(unknown)}")

    return ValidationResult(valid=True, warnings=warnings, metadata=metadata)
