from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError

from tenantvault.core.errors import (
    BackupNotFoundError,
    SnapshotValidationError,
    TransactionAbortedError,
)
from tenantvault.domain.models import BackupRecord, Client, RestoreLog, Supplier, Tenant
from tenantvault.persistence.db import SessionLocal
from tenantvault.services import restore as restore_service
from tenantvault.services.snapshot import create_backup, export_snapshot
from tenantvault.tests.utils.seed import client, count_rows, names, persist, seed_trading_tenant, supplier, tenant


async def _delete_client(record_id: str) -> None:
    async with SessionLocal() as session:
        await session.execute(delete(Client).where(Client.id == record_id))
        await session.commit()


@pytest.mark.asyncio
async def test_full_restore_brings_back_deleted_client(session) -> None:
    await seed_trading_tenant(tenant_id="tenant-a")
    snapshot = await export_snapshot(session, tenant_id="tenant-a", actor_id="admin-1")
    assert snapshot.metadata.record_counts["clients"] == 3
    assert snapshot.metadata.record_counts["suppliers"] == 2

    await _delete_client("cl-b")
    assert await names(Client, "tenant-a") == {"A", "C"}

    result = await restore_service.restore_full(
        session, tenant_id="tenant-a", snapshot=snapshot, actor_id="admin-1"
    )

    assert await names(Client, "tenant-a") == {"A", "B", "C"}
    assert await names(Supplier, "tenant-a") == {"X", "Y"}
    assert result.restored["clients"] == 3
    logs = await restore_service.get_restore_history(session, "tenant-a")
    assert len(logs) == 1
    assert logs[0].restore_type == "full"
    assert logs[0].records_restored_json["clients"] == 3
    assert logs[0].restored_by == "admin-1"


@pytest.mark.asyncio
async def test_full_restore_round_trip_matches_export(session) -> None:
    await seed_trading_tenant(tenant_id="tenant-a")
    before = await export_snapshot(session, tenant_id="tenant-a", actor_id=None)

    await _delete_client("cl-a")
    await persist(client("tenant-a", "Intruder"), supplier("tenant-a", "Z"))
    await restore_service.restore_full(session, tenant_id="tenant-a", snapshot=before, actor_id=None)

    after = await export_snapshot(session, tenant_id="tenant-a", actor_id=None)
    assert after.metadata.record_counts == before.metadata.record_counts
    assert after.payload == before.payload


@pytest.mark.asyncio
async def test_full_restore_resets_profile_but_keeps_identity(session) -> None:
    await seed_trading_tenant(tenant_id="tenant-a")
    snapshot = await export_snapshot(session, tenant_id="tenant-a", actor_id=None)

    async with SessionLocal() as edit:
        live = await edit.get(Tenant, "tenant-a")
        original_code = live.company_code
        live.industry = "retail"
        live.name = "Renamed Ltd"
        live.settings_json = {"currency": "USD", "theme": "dark"}
        await edit.commit()

    await restore_service.restore_full(session, tenant_id="tenant-a", snapshot=snapshot, actor_id=None)

    async with SessionLocal() as check:
        restored = await check.get(Tenant, "tenant-a")
    assert restored.industry == "wholesale"
    # Keys added after the export do not survive a full restore.
    assert restored.settings_json == {"currency": "INR"}
    assert restored.name == "Renamed Ltd"
    assert restored.company_code == original_code
    assert restored.owner_id == "owner-1"


@pytest.mark.asyncio
async def test_partial_restore_touches_only_selected_modules(session) -> None:
    await seed_trading_tenant(tenant_id="tenant-a")
    snapshot = await export_snapshot(session, tenant_id="tenant-a", actor_id=None)

    await _delete_client("cl-b")
    await persist(supplier("tenant-a", "Z"))

    result = await restore_service.restore_partial(
        session,
        tenant_id="tenant-a",
        snapshot=snapshot.to_dict(),
        modules=["clients", "invoices"],
        actor_id="admin-1",
    )

    assert result.restored == {"clients": 3}
    assert result.skipped_modules == ["invoices"]
    assert any("invoices" in warning for warning in result.warnings)
    assert await names(Client, "tenant-a") == {"A", "B", "C"}
    # Suppliers were not selected, so the live addition survives.
    assert await names(Supplier, "tenant-a") == {"X", "Y", "Z"}
    logs = await restore_service.get_restore_history(session, "tenant-a")
    assert logs[0].restore_type == "partial"
    assert logs[0].modules_json == ["clients"]


@pytest.mark.asyncio
async def test_restore_leaves_other_tenants_alone(session) -> None:
    await seed_trading_tenant(tenant_id="tenant-a")
    await persist(tenant("tenant-b", name="Other"), client("tenant-b", "Foreign"))
    snapshot = await export_snapshot(session, tenant_id="tenant-a", actor_id=None)

    await restore_service.restore_full(session, tenant_id="tenant-a", snapshot=snapshot, actor_id=None)
    assert await names(Client, "tenant-b") == {"Foreign"}


@pytest.mark.asyncio
async def test_restore_rejects_snapshot_of_another_tenant(session) -> None:
    await seed_trading_tenant(tenant_id="tenant-a")
    await persist(tenant("tenant-b", name="Other"))
    snapshot = await export_snapshot(session, tenant_id="tenant-a", actor_id=None)

    with pytest.raises(SnapshotValidationError, match="different tenant"):
        await restore_service.restore_full(session, tenant_id="tenant-b", snapshot=snapshot, actor_id=None)
    with pytest.raises(SnapshotValidationError):
        await restore_service.restore_partial(
            session, tenant_id="tenant-b", snapshot=snapshot, modules=["clients"], actor_id=None
        )
    assert await count_rows(RestoreLog) == 0


@pytest.mark.asyncio
async def test_failure_mid_restore_keeps_live_clients(session, monkeypatch) -> None:
    await seed_trading_tenant(tenant_id="tenant-a")
    snapshot = await export_snapshot(session, tenant_id="tenant-a", actor_id=None)
    original_insert = restore_service.insert_records

    async def _failing_insert(db_session, model, rows):
        # Fail after the live clients were deleted but before their replacements land.
        if model is Client:
            raise SQLAlchemyError("injected failure")
        return await original_insert(db_session, model, rows)

    monkeypatch.setattr(restore_service, "insert_records", _failing_insert)
    with pytest.raises(TransactionAbortedError):
        await restore_service.restore_partial(
            session,
            tenant_id="tenant-a",
            snapshot=snapshot,
            modules=["suppliers", "clients"],
            actor_id=None,
        )
    with pytest.raises(TransactionAbortedError):
        await restore_service.restore_full(session, tenant_id="tenant-a", snapshot=snapshot, actor_id=None)

    assert await names(Client, "tenant-a") == {"A", "B", "C"}
    assert await names(Supplier, "tenant-a") == {"X", "Y"}
    assert await count_rows(RestoreLog) == 0


@pytest.mark.asyncio
async def test_restore_rewrites_tenant_stamp(session) -> None:
    await seed_trading_tenant(tenant_id="tenant-a")
    raw = (await export_snapshot(session, tenant_id="tenant-a", actor_id=None)).to_dict()
    for record in raw["payload"]["clients"]:
        record["tenant_id"] = "tenant-zzz"

    await restore_service.restore_partial(
        session, tenant_id="tenant-a", snapshot=raw, modules=["clients"], actor_id=None
    )
    async with SessionLocal() as check:
        stamps = set((await check.execute(select(Client.tenant_id))).scalars().all())
    assert stamps == {"tenant-a"}


@pytest.mark.asyncio
async def test_restore_backup_reads_stored_file(session, tmp_path: Path) -> None:
    await seed_trading_tenant(tenant_id="tenant-a")
    record = await create_backup(session, tenant_id="tenant-a", actor_id=None, backup_dir=tmp_path)
    await _delete_client("cl-c")

    result = await restore_service.restore_backup(
        session, tenant_id="tenant-a", snapshot_id=record.snapshot_id, actor_id="admin-1", modules=["clients"]
    )
    assert result.restore_type == "partial"
    assert await names(Client, "tenant-a") == {"A", "B", "C"}

    with pytest.raises(BackupNotFoundError):
        await restore_service.restore_backup(
            session, tenant_id="tenant-a", snapshot_id="snap_missing", actor_id=None
        )


@pytest.mark.asyncio
async def test_restore_backup_follows_moved_file(session, tmp_path: Path) -> None:
    await seed_trading_tenant(tenant_id="tenant-a")
    record = await create_backup(session, tenant_id="tenant-a", actor_id=None, backup_dir=tmp_path)
    # Move the zip and repoint the record from another session; this session still holds the old row.
    moved = tmp_path / "moved" / Path(record.file_path).name
    moved.parent.mkdir()
    Path(record.file_path).rename(moved)
    async with SessionLocal() as edit:
        await edit.execute(
            update(BackupRecord).where(BackupRecord.snapshot_id == record.snapshot_id).values(file_path=str(moved))
        )
        await edit.commit()
    await _delete_client("cl-b")

    await restore_service.restore_backup(
        session, tenant_id="tenant-a", snapshot_id=record.snapshot_id, actor_id=None, modules=["clients"]
    )
    assert await names(Client, "tenant-a") == {"A", "B", "C"}


@pytest.mark.asyncio
async def test_restore_rejects_malformed_undeclared_section(session) -> None:
    await seed_trading_tenant(tenant_id="tenant-a")
    raw = (await export_snapshot(session, tenant_id="tenant-a", actor_id=None)).to_dict()
    raw["metadata"]["sections"].remove("clients")
    raw["payload"]["clients"] = ["cl-a"]

    with pytest.raises(SnapshotValidationError):
        await restore_service.restore_partial(
            session, tenant_id="tenant-a", snapshot=raw, modules=["clients"], actor_id=None
        )
    with pytest.raises(SnapshotValidationError):
        await restore_service.restore_full(session, tenant_id="tenant-a", snapshot=raw, actor_id=None)
    assert await names(Client, "tenant-a") == {"A", "B", "C"}
    assert await count_rows(RestoreLog) == 0
