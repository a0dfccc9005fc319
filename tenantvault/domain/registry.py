from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Iterable

from tenantvault.core.errors import UnsupportedEntityTypeError
from tenantvault.domain.models import (
    Base,
    Client,
    DeliveryIn,
    DeliveryOut,
    DirectPurchase,
    DirectSale,
    PurchaseOrder,
    PurchaseOrderArchive,
    SalesOrder,
    SalesOrderArchive,
    StockItem,
    StockTransaction,
    StockTransactionArchive,
    Supplier,
    User,
    Warehouse,
)


# Non-identity tenant columns copied by full restore and cross-tenant import.
PROFILE_FIELDS: tuple[str, ...] = (
    "industry",
    "address",
    "phone",
    "email",
    "website",
    "tax_id",
    "logo_url",
    "settings_json",
)


class EntityType(str, Enum):
    USERS = "users"
    WAREHOUSES = "warehouses"
    CLIENTS = "clients"
    SUPPLIERS = "suppliers"
    STOCK_ITEMS = "stock_items"
    STOCK_TRANSACTIONS = "stock_transactions"
    SALES_ORDERS = "sales_orders"
    PURCHASE_ORDERS = "purchase_orders"
    DELIVERY_OUTS = "delivery_outs"
    DELIVERY_INS = "delivery_ins"
    SALES = "sales"
    PURCHASES = "purchases"


@dataclass(frozen=True)
class ReferenceField:
    # A column holding the id of another record in the same tenant.
    name: str
    target: EntityType
    required: bool = False


@dataclass(frozen=True)
class EntitySpec:
    """Storage and reference metadata for one entity type.

    ``nested_references`` maps field names inside each ``items_json`` element
    to the entity type they point at.
    """

    entity_type: EntityType
    model: type[Base]
    references: tuple[ReferenceField, ...] = ()
    nested_references: dict[str, EntityType] = field(default_factory=dict)
    date_field: str | None = None
    archive_model: type[Base] | None = None
    natural_key: str | None = None
    label_field: str | None = None

    @property
    def key(self) -> str:
        return self.entity_type.value

    @property
    def required_references(self) -> tuple[ReferenceField, ...]:
        return tuple(ref for ref in self.references if ref.required)

    @property
    def archivable(self) -> bool:
        return self.archive_model is not None and self.date_field is not None


class EntityRegistry:
    """Closed lookup from entity type to its storage handler and references."""

    def __init__(self, specs: Iterable[EntitySpec]) -> None:
        self._specs: dict[EntityType, EntitySpec] = {}
        for spec in specs:
            if spec.entity_type in self._specs:
                raise ValueError(f"duplicate entity spec for {spec.key}")
            self._specs[spec.entity_type] = spec
        # Resolve the order eagerly so a reference cycle fails at construction.
        self._order = self._resolve_order()

    def __contains__(self, entity_type: object) -> bool:
        return entity_type in self._specs

    def __iter__(self):
        return iter(self._order)

    def __len__(self) -> int:
        return len(self._specs)

    def get(self, entity_type: EntityType | str) -> EntitySpec:
        return self._specs[self.parse(entity_type)]

    def parse(self, name: EntityType | str) -> EntityType:
        # Map loose module names onto the closed enum, rejecting anything unregistered.
        try:
            entity_type = EntityType(name)
        except ValueError as exc:
            raise UnsupportedEntityTypeError(f"unknown entity type: {name}") from exc
        if entity_type not in self._specs:
            raise UnsupportedEntityTypeError(f"entity type not registered: {name}")
        return entity_type

    def is_known(self, name: str) -> bool:
        try:
            self.parse(name)
        except UnsupportedEntityTypeError:
            return False
        return True

    def dependency_order(self) -> list[EntitySpec]:
        # Referenced types first so parents always exist before their children.
        return list(self._order)

    def archivable(self) -> list[EntitySpec]:
        return [spec for spec in self._order if spec.archivable]

    def dedupable(self) -> list[EntitySpec]:
        return [spec for spec in self._order if spec.natural_key]

    def with_required_references(self) -> list[EntitySpec]:
        return [spec for spec in self._order if spec.required_references]

    def _resolve_order(self) -> list[EntitySpec]:
        # Depth-first topological sort in declaration order; self references are not edges.
        order: list[EntitySpec] = []
        state: dict[EntityType, str] = {}

        def visit(entity_type: EntityType, path: tuple[EntityType, ...]) -> None:
            mark = state.get(entity_type)
            if mark == "done":
                return
            if mark == "visiting":
                cycle = " -> ".join(item.value for item in (*path, entity_type))
                raise ValueError(f"reference cycle between entity types: {cycle}")
            spec = self._specs.get(entity_type)
            if spec is None:
                raise ValueError(f"reference to unregistered entity type: {entity_type.value}")
            state[entity_type] = "visiting"
            targets = [ref.target for ref in spec.references]
            targets.extend(spec.nested_references.values())
            for target in targets:
                if target != entity_type:
                    visit(target, (*path, entity_type))
            state[entity_type] = "done"
            order.append(spec)

        for entity_type in self._specs:
            visit(entity_type, ())
        return order


def _ref(name: str, target: EntityType, required: bool = False) -> ReferenceField:
    return ReferenceField(name=name, target=target, required=required)


_LINE_ITEM_REFS = {
    "item_id": EntityType.STOCK_ITEMS,
    "warehouse_id": EntityType.WAREHOUSES,
}


def build_default_registry() -> EntityRegistry:
    # Canonical module list; snapshots, restores and imports all walk this registry.
    return EntityRegistry(
        [
            EntitySpec(EntityType.USERS, User, natural_key="email", label_field="full_name"),
            EntitySpec(EntityType.WAREHOUSES, Warehouse, natural_key="name", label_field="name"),
            EntitySpec(EntityType.CLIENTS, Client, natural_key="name", label_field="name"),
            EntitySpec(EntityType.SUPPLIERS, Supplier, natural_key="name", label_field="name"),
            EntitySpec(
                EntityType.STOCK_ITEMS,
                StockItem,
                references=(_ref("warehouse_id", EntityType.WAREHOUSES, required=True),),
                label_field="item_name",
            ),
            EntitySpec(
                EntityType.STOCK_TRANSACTIONS,
                StockTransaction,
                references=(
                    _ref("item_id", EntityType.STOCK_ITEMS, required=True),
                    _ref("warehouse_id", EntityType.WAREHOUSES, required=True),
                    _ref("to_warehouse_id", EntityType.WAREHOUSES),
                    _ref("performed_by", EntityType.USERS),
                ),
                nested_references=dict(_LINE_ITEM_REFS),
                date_field="transaction_date",
                archive_model=StockTransactionArchive,
                label_field="item_name",
            ),
            EntitySpec(
                EntityType.SALES_ORDERS,
                SalesOrder,
                references=(_ref("client_id", EntityType.CLIENTS),),
                nested_references={"item_id": EntityType.STOCK_ITEMS},
                date_field="order_date",
                archive_model=SalesOrderArchive,
                label_field="order_number",
            ),
            EntitySpec(
                EntityType.PURCHASE_ORDERS,
                PurchaseOrder,
                references=(_ref("supplier_id", EntityType.SUPPLIERS, required=True),),
                nested_references={"item_id": EntityType.STOCK_ITEMS},
                date_field="order_date",
                archive_model=PurchaseOrderArchive,
                label_field="order_number",
            ),
            EntitySpec(
                EntityType.DELIVERY_OUTS,
                DeliveryOut,
                references=(
                    _ref("sales_order_id", EntityType.SALES_ORDERS),
                    _ref("client_id", EntityType.CLIENTS),
                ),
                nested_references=dict(_LINE_ITEM_REFS),
                date_field="delivery_date",
                label_field="delivery_number",
            ),
            EntitySpec(
                EntityType.DELIVERY_INS,
                DeliveryIn,
                references=(
                    _ref("purchase_order_id", EntityType.PURCHASE_ORDERS),
                    _ref("supplier_id", EntityType.SUPPLIERS, required=True),
                ),
                nested_references=dict(_LINE_ITEM_REFS),
                date_field="receipt_date",
                label_field="grn_number",
            ),
            EntitySpec(
                EntityType.SALES,
                DirectSale,
                references=(_ref("client_id", EntityType.CLIENTS, required=True),),
                nested_references=dict(_LINE_ITEM_REFS),
                date_field="sale_date",
                label_field="sale_number",
            ),
            EntitySpec(
                EntityType.PURCHASES,
                DirectPurchase,
                references=(_ref("supplier_id", EntityType.SUPPLIERS, required=True),),
                nested_references=dict(_LINE_ITEM_REFS),
                date_field="purchase_date",
                label_field="purchase_number",
            ),
        ]
    )


@lru_cache
def default_registry() -> EntityRegistry:
    return build_default_registry()
