from __future__ import annotations

from datetime import timedelta
import hashlib
from pathlib import Path
import re
import zipfile

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from tenantvault.core.errors import (
    BackupNotFoundError,
    SnapshotExportError,
    SnapshotFileError,
    SnapshotValidationError,
    TenantNotFoundError,
    TransactionAbortedError,
)
from tenantvault.domain.models import BackupRecord
from tenantvault.persistence.db import SessionLocal
from tenantvault.persistence.records import parse_timestamp
from tenantvault.services import snapshot as snapshot_service
from tenantvault.tests.utils.seed import count_rows, seed_trading_tenant


@pytest.mark.asyncio
async def test_export_counts_sections_and_records_backup(session) -> None:
    await seed_trading_tenant(tenant_id="tenant-a")
    snapshot = await snapshot_service.export_snapshot(session, tenant_id="tenant-a", actor_id="admin-1")

    metadata = snapshot.metadata
    assert metadata.tenant_id == "tenant-a"
    assert metadata.tenant_name == "Acme Traders"
    assert metadata.schema_version == "1.0"
    assert re.fullmatch(r"snap_acme-traders_\d{8}T\d{6}Z_[0-9a-f]{8}", metadata.snapshot_id)
    assert metadata.record_counts["clients"] == 3
    assert metadata.record_counts["suppliers"] == 2
    assert metadata.record_counts["warehouses"] == 2
    assert metadata.sections[0] in {"users", "warehouses", "clients", "suppliers"}
    assert snapshot.tenant["industry"] == "wholesale"
    assert {record["name"] for record in snapshot.payload["clients"]} == {"A", "B", "C"}

    async with SessionLocal() as check:
        record = (
            await check.execute(select(BackupRecord).where(BackupRecord.snapshot_id == metadata.snapshot_id))
        ).scalar_one()
    assert record.file_path is None
    assert record.created_by == "admin-1"
    assert record.record_counts_json["clients"] == 3


@pytest.mark.asyncio
async def test_export_ids_are_unique_per_call(session) -> None:
    await seed_trading_tenant(tenant_id="tenant-a")
    first = await snapshot_service.export_snapshot(session, tenant_id="tenant-a", actor_id=None)
    second = await snapshot_service.export_snapshot(session, tenant_id="tenant-a", actor_id=None)
    assert first.metadata.snapshot_id != second.metadata.snapshot_id
    assert await count_rows(BackupRecord, "tenant-a") == 2


@pytest.mark.asyncio
async def test_export_unknown_tenant_writes_nothing(session) -> None:
    with pytest.raises(TenantNotFoundError):
        await snapshot_service.export_snapshot(session, tenant_id="missing", actor_id=None)
    assert await count_rows(BackupRecord) == 0


@pytest.mark.asyncio
async def test_export_read_failure_aborts_without_audit_row(session, monkeypatch) -> None:
    await seed_trading_tenant(tenant_id="tenant-a")

    async def _broken_fetch(*_args, **_kwargs):
        raise SQLAlchemyError("connection reset")

    monkeypatch.setattr(snapshot_service, "fetch_records", _broken_fetch)
    with pytest.raises(SnapshotExportError):
        await snapshot_service.export_snapshot(session, tenant_id="tenant-a", actor_id=None)
    assert await count_rows(BackupRecord) == 0


@pytest.mark.asyncio
async def test_create_backup_writes_checksummed_zip(session, tmp_path: Path) -> None:
    await seed_trading_tenant(tenant_id="tenant-a")
    record = await snapshot_service.create_backup(
        session, tenant_id="tenant-a", actor_id="admin-1", backup_dir=tmp_path
    )

    archive_path = Path(record.file_path)
    assert archive_path.parent == tmp_path
    assert archive_path.name == f"{record.snapshot_id}.zip"
    assert record.file_size == archive_path.stat().st_size
    assert record.sha256 == hashlib.sha256(archive_path.read_bytes()).hexdigest()
    with zipfile.ZipFile(archive_path) as archive:
        members = set(archive.namelist())
    assert {"metadata.json", "tenant.json", "clients.json", "stock_items.json"} <= members

    raw = snapshot_service.read_snapshot_file(archive_path)
    assert raw["metadata"]["snapshot_id"] == record.snapshot_id
    assert len(raw["payload"]["clients"]) == 3
    assert raw["tenant"]["name"] == "Acme Traders"
    assert snapshot_service.validate_snapshot(raw, "tenant-a").valid


@pytest.mark.asyncio
async def test_create_backup_removes_zip_when_audit_write_fails(session, tmp_path: Path, monkeypatch) -> None:
    await seed_trading_tenant(tenant_id="tenant-a")

    async def _broken_record(*_args, **_kwargs):
        raise SQLAlchemyError("disk full")

    monkeypatch.setattr(snapshot_service, "record_backup", _broken_record)
    with pytest.raises(SnapshotExportError):
        await snapshot_service.create_backup(session, tenant_id="tenant-a", actor_id=None, backup_dir=tmp_path)
    assert list(tmp_path.glob("*.zip")) == []
    assert await count_rows(BackupRecord) == 0


def test_read_snapshot_file_reports_file_errors(tmp_path: Path) -> None:
    with pytest.raises(SnapshotFileError):
        snapshot_service.read_snapshot_file(tmp_path / "absent.zip")

    not_a_zip = tmp_path / "broken.zip"
    not_a_zip.write_text("not a zip", encoding="utf-8")
    with pytest.raises(SnapshotFileError):
        snapshot_service.read_snapshot_file(not_a_zip)

    nested = tmp_path / "nested.zip"
    with zipfile.ZipFile(nested, "w") as archive:
        archive.writestr("../metadata.json", "{}")
    with pytest.raises(SnapshotFileError):
        snapshot_service.read_snapshot_file(nested)


@pytest.mark.asyncio
async def test_list_delete_and_mark_downloaded(session, tmp_path: Path) -> None:
    await seed_trading_tenant(tenant_id="tenant-a")
    stored = await snapshot_service.create_backup(
        session, tenant_id="tenant-a", actor_id=None, backup_dir=tmp_path
    )
    in_memory = await snapshot_service.export_snapshot(session, tenant_id="tenant-a", actor_id=None)

    listing = await snapshot_service.list_backups(session, "tenant-a")
    assert [item.snapshot_id for item in listing] == [in_memory.metadata.snapshot_id, stored.snapshot_id]
    assert [item.file_exists for item in listing] == [False, True]
    assert await snapshot_service.list_backups(session, "tenant-b") == []

    marked = await snapshot_service.mark_backup_downloaded(
        session, tenant_id="tenant-a", snapshot_id=stored.snapshot_id
    )
    assert marked.downloaded is True
    assert marked.downloaded_at is not None

    await snapshot_service.delete_backup(session, tenant_id="tenant-a", snapshot_id=stored.snapshot_id)
    assert not Path(stored.file_path).exists()
    assert await count_rows(BackupRecord, "tenant-a") == 1
    with pytest.raises(BackupNotFoundError):
        await snapshot_service.delete_backup(session, tenant_id="tenant-a", snapshot_id=stored.snapshot_id)


def _raw_snapshot(**metadata_overrides) -> dict:
    metadata = {
        "snapshot_id": "snap_acme_20240101T000000Z_deadbeef",
        "tenant_id": "tenant-a",
        "tenant_name": "Acme",
        "created_at": "2024-01-01T00:00:00Z",
        "schema_version": "1.0",
        "app_version": "unknown",
        "sections": ["clients"],
        "record_counts": {"clients": 1},
    }
    metadata.update(metadata_overrides)
    return {
        "metadata": metadata,
        "tenant": {"name": "Acme"},
        "payload": {"clients": [{"id": "cl-a", "name": "A"}]},
    }


def test_validate_rejects_other_tenant() -> None:
    result = snapshot_service.validate_snapshot(_raw_snapshot(), "tenant-b")
    assert result.valid is False
    assert result.error == "snapshot belongs to a different tenant"


def test_validate_rejects_structural_problems() -> None:
    assert snapshot_service.validate_snapshot({"payload": {}}, "tenant-a").valid is False

    missing_field = _raw_snapshot()
    del missing_field["metadata"]["created_at"]
    result = snapshot_service.validate_snapshot(missing_field, "tenant-a")
    assert result.valid is False
    assert "created_at" in result.error

    missing_section = _raw_snapshot(sections=["clients", "suppliers"])
    result = snapshot_service.validate_snapshot(missing_section, "tenant-a")
    assert result.valid is False
    assert "suppliers" in result.error

    bad_records = _raw_snapshot()
    bad_records["payload"]["clients"] = ["not-a-record"]
    assert snapshot_service.validate_snapshot(bad_records, "tenant-a").valid is False

    with pytest.raises(SnapshotValidationError):
        snapshot_service.parse_snapshot(bad_records)


def test_validate_warns_on_version_age_and_unknown_sections() -> None:
    raw = _raw_snapshot(schema_version="2.3")
    raw["payload"]["invoices"] = []
    now = parse_timestamp("2024-01-01T00:00:00Z") + timedelta(days=45)

    result = snapshot_service.validate_snapshot(raw, "tenant-a", now=now)
    assert result.valid is True
    assert result.error is None
    assert len(result.warnings) == 3
    assert any("schema version 2.3" in warning for warning in result.warnings)
    assert any("45 days old" in warning for warning in result.warnings)
    assert any("invoices" in warning for warning in result.warnings)


def test_validate_fresh_matching_snapshot_has_no_warnings() -> None:
    now = parse_timestamp("2024-01-02T00:00:00Z")
    result = snapshot_service.validate_snapshot(_raw_snapshot(), "tenant-a", now=now)
    assert result.valid is True
    assert result.warnings == []
    assert result.metadata.snapshot_id == "snap_acme_20240101T000000Z_deadbeef"


def test_validate_reports_bad_counts_and_undeclared_sections() -> None:
    bad_counts = _raw_snapshot(record_counts={"clients": "three"})
    result = snapshot_service.validate_snapshot(bad_counts, "tenant-a")
    assert result.valid is False
    assert "record_counts" in result.error

    undeclared = _raw_snapshot()
    undeclared["payload"]["suppliers"] = ["sp-x"]
    result = snapshot_service.validate_snapshot(undeclared, "tenant-a")
    assert result.valid is False
    assert "suppliers" in result.error
    with pytest.raises(SnapshotValidationError):
        snapshot_service.parse_snapshot(undeclared)


@pytest.mark.asyncio
async def test_delete_backup_keeps_file_when_commit_fails(session, tmp_path: Path, monkeypatch) -> None:
    await seed_trading_tenant(tenant_id="tenant-a")
    stored = await snapshot_service.create_backup(
        session, tenant_id="tenant-a", actor_id=None, backup_dir=tmp_path
    )

    async def _failing_commit() -> None:
        raise SQLAlchemyError("connection lost during commit")

    monkeypatch.setattr(session, "commit", _failing_commit)
    with pytest.raises(TransactionAbortedError):
        await snapshot_service.delete_backup(session, tenant_id="tenant-a", snapshot_id=stored.snapshot_id)

    assert Path(stored.file_path).exists()
    assert await count_rows(BackupRecord, "tenant-a") == 1


@pytest.mark.asyncio
async def test_delete_backup_tolerates_file_that_cannot_be_removed(session, tmp_path: Path) -> None:
    await seed_trading_tenant(tenant_id="tenant-a")
    stored = await snapshot_service.create_backup(
        session, tenant_id="tenant-a", actor_id=None, backup_dir=tmp_path
    )
    original_path = Path(stored.file_path)
    blocker = tmp_path / "not-a-file"
    blocker.mkdir()
    async with SessionLocal() as edit:
        await edit.execute(
            update(BackupRecord)
            .where(BackupRecord.snapshot_id == stored.snapshot_id)
            .values(file_path=str(blocker))
        )
        await edit.commit()

    await snapshot_service.delete_backup(session, tenant_id="tenant-a", snapshot_id=stored.snapshot_id)

    assert await count_rows(BackupRecord, "tenant-a") == 0
    assert blocker.exists()
    # The path this session cached before the update was never touched.
    assert original_path.exists()
