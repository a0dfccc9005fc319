from __future__ import annotations

from datetime import datetime, timezone

import pytest

from tenantvault.core.config import get_settings
from tenantvault.core.errors import TenantPredicateError, TenantVaultError
from tenantvault.domain.models import SalesOrder, SalesOrderArchive, Tenant
from tenantvault.persistence.guards import tenant_predicate
from tenantvault.persistence.records import chunks, coerce_record, copy_columns, parse_timestamp, row_to_dict


def test_parse_timestamp_accepts_trailing_z() -> None:
    parsed = parse_timestamp("2024-03-01T10:00:00Z")
    assert parsed == datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)
    assert parse_timestamp(None) is None
    assert parse_timestamp("2024-03-01T10:00:00").tzinfo == timezone.utc


def test_coerce_record_drops_unknown_keys_and_parses_dates() -> None:
    payload = {
        "id": "so-1",
        "tenant_id": "tenant-a",
        "order_number": "SO-1",
        "order_date": "2024-04-01T00:00:00+00:00",
        "created_at": None,
        "legacy_mongo_field": "ignored",
    }
    values = coerce_record(SalesOrder, payload)
    assert "legacy_mongo_field" not in values
    # A null created_at falls back to the server default.
    assert "created_at" not in values
    assert values["order_date"] == datetime(2024, 4, 1, tzinfo=timezone.utc)


def test_coerce_record_rejects_unreadable_timestamp() -> None:
    with pytest.raises(ValueError):
        coerce_record(SalesOrder, {"id": "so-1", "order_date": "last tuesday"})


def test_row_to_dict_and_copy_columns_between_twin_tables() -> None:
    order = SalesOrder(
        id="so-1",
        tenant_id="tenant-a",
        order_number="SO-1",
        total_amount=10.0,
        order_date=datetime(2024, 4, 1, tzinfo=timezone.utc),
    )
    serialized = row_to_dict(order)
    assert serialized["order_date"] == "2024-04-01T00:00:00+00:00"
    assert "archived_at" not in serialized

    archived = SalesOrderArchive(**copy_columns(order, SalesOrderArchive))
    archived.archived_at = datetime(2025, 1, 1, tzinfo=timezone.utc)
    back = copy_columns(archived, SalesOrder)
    assert "archived_at" not in back and "archived_by" not in back
    assert back["order_number"] == "SO-1"


def test_chunks_split_sequences() -> None:
    assert [list(batch) for batch in chunks([1, 2, 3, 4, 5], 2)] == [[1, 2], [3, 4], [5]]
    assert list(chunks([], 3)) == []


def test_tenant_predicate_requires_tenant_id(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REQUIRE_TENANT_PREDICATE", "true")
    get_settings.cache_clear()
    with pytest.raises(TenantPredicateError):
        tenant_predicate(SalesOrder, "")


def test_tenant_predicate_errors_share_the_library_base(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REQUIRE_TENANT_PREDICATE", "true")
    get_settings.cache_clear()
    with pytest.raises(TenantVaultError):
        tenant_predicate(SalesOrder, "   ")
    # The tenants table is keyed by id, not tenant_id.
    with pytest.raises(TenantPredicateError, match="Tenant"):
        tenant_predicate(Tenant, "tenant-a")


def test_tenant_predicate_check_can_be_disabled(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REQUIRE_TENANT_PREDICATE", "false")
    get_settings.cache_clear()
    assert tenant_predicate(SalesOrder, "") is not None
