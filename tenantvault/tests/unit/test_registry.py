from __future__ import annotations

import pytest

from tenantvault.core.errors import UnsupportedEntityTypeError
from tenantvault.domain.models import Client, Supplier
from tenantvault.domain.registry import (
    EntityRegistry,
    EntitySpec,
    EntityType,
    ReferenceField,
    build_default_registry,
    default_registry,
)


def test_dependency_order_places_parents_first() -> None:
    # Every referenced type must be inserted before the types that point at it.
    registry = build_default_registry()
    order = [spec.entity_type for spec in registry.dependency_order()]
    position = {entity_type: index for index, entity_type in enumerate(order)}
    for spec in registry.dependency_order():
        for ref in spec.references:
            assert position[ref.target] < position[spec.entity_type], (spec.key, ref.name)
        for target in spec.nested_references.values():
            assert position[target] < position[spec.entity_type]
    assert sorted(order, key=lambda item: item.value) == sorted(EntityType, key=lambda item: item.value)


def test_parse_rejects_unknown_names() -> None:
    registry = default_registry()
    assert registry.parse("clients") is EntityType.CLIENTS
    assert registry.is_known("sales")
    assert not registry.is_known("invoices")
    with pytest.raises(UnsupportedEntityTypeError):
        registry.parse("invoices")


def test_archivable_and_dedupable_types() -> None:
    registry = default_registry()
    assert {spec.key for spec in registry.archivable()} == {
        "stock_transactions",
        "sales_orders",
        "purchase_orders",
    }
    assert {spec.key for spec in registry.dedupable()} == {"users", "warehouses", "clients", "suppliers"}


def test_required_references_follow_registry_metadata() -> None:
    registry = default_registry()
    transactions = registry.get("stock_transactions")
    assert [ref.name for ref in transactions.required_references] == ["item_id", "warehouse_id"]
    assert registry.get("sales_orders").required_references == ()
    assert "sales_orders" not in {spec.key for spec in registry.with_required_references()}


def test_reference_cycle_is_rejected_at_construction() -> None:
    with pytest.raises(ValueError, match="cycle"):
        EntityRegistry(
            [
                EntitySpec(
                    EntityType.CLIENTS,
                    Client,
                    references=(ReferenceField("supplier_id", EntityType.SUPPLIERS),),
                ),
                EntitySpec(
                    EntityType.SUPPLIERS,
                    Supplier,
                    references=(ReferenceField("client_id", EntityType.CLIENTS),),
                ),
            ]
        )


def test_reference_to_unregistered_type_is_rejected() -> None:
    with pytest.raises(ValueError, match="unregistered"):
        EntityRegistry(
            [
                EntitySpec(
                    EntityType.CLIENTS,
                    Client,
                    references=(ReferenceField("supplier_id", EntityType.SUPPLIERS),),
                ),
            ]
        )
