from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on PostgreSQL, plain JSON elsewhere (sqlite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    # Identity and ownership fields are never overwritten by a restore.
    company_code: Mapped[str] = mapped_column(String, unique=True)
    owner_id: Mapped[str | None] = mapped_column(String, nullable=True)
    industry: Mapped[str | None] = mapped_column(String, nullable=True)
    address: Mapped[str | None] = mapped_column(String, nullable=True)
    phone: Mapped[str | None] = mapped_column(String, nullable=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    website: Mapped[str | None] = mapped_column(String, nullable=True)
    tax_id: Mapped[str | None] = mapped_column(String, nullable=True)
    logo_url: Mapped[str | None] = mapped_column(String, nullable=True)
    settings_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TenantRecordMixin:
    # Columns shared by every tenant-scoped business record, live or archived.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    # Free-form fields that have no lifecycle semantics ride along untouched.
    attributes_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ArchivedRecordMixin:
    # Archive-only tags; stripped again when a record returns to the live table.
    archived_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    archived_by: Mapped[str | None] = mapped_column(String, nullable=True)


class User(TenantRecordMixin, Base):
    __tablename__ = "users"

    full_name: Mapped[str] = mapped_column(String)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    role: Mapped[str] = mapped_column(String, default="staff")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Warehouse(TenantRecordMixin, Base):
    __tablename__ = "warehouses"

    name: Mapped[str] = mapped_column(String)
    location: Mapped[str | None] = mapped_column(String, nullable=True)
    capacity: Mapped[float | None] = mapped_column(Float, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)


class Client(TenantRecordMixin, Base):
    __tablename__ = "clients"

    name: Mapped[str] = mapped_column(String)
    phone: Mapped[str | None] = mapped_column(String, nullable=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    address: Mapped[str | None] = mapped_column(String, nullable=True)
    gst_number: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Supplier(TenantRecordMixin, Base):
    __tablename__ = "suppliers"

    name: Mapped[str] = mapped_column(String)
    contact_person: Mapped[str | None] = mapped_column(String, nullable=True)
    phone: Mapped[str | None] = mapped_column(String, nullable=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    address: Mapped[str | None] = mapped_column(String, nullable=True)
    gst_number: Mapped[str | None] = mapped_column(String, nullable=True)


class StockItem(TenantRecordMixin, Base):
    __tablename__ = "stock_items"

    # Reference columns stay nullable in storage; required-ness lives in the entity registry.
    warehouse_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    item_name: Mapped[str] = mapped_column(String)
    category: Mapped[str | None] = mapped_column(String, nullable=True)
    bag_size: Mapped[float | None] = mapped_column(Float, nullable=True)
    quantity: Mapped[float] = mapped_column(Float, default=0)
    cost_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    selling_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    low_stock_alert: Mapped[float | None] = mapped_column(Float, nullable=True)


class StockTransactionColumns(TenantRecordMixin):
    transaction_type: Mapped[str] = mapped_column(String)
    item_id: Mapped[str | None] = mapped_column(String, nullable=True)
    item_name: Mapped[str | None] = mapped_column(String, nullable=True)
    warehouse_id: Mapped[str | None] = mapped_column(String, nullable=True)
    warehouse_name: Mapped[str | None] = mapped_column(String, nullable=True)
    to_warehouse_id: Mapped[str | None] = mapped_column(String, nullable=True)
    quantity: Mapped[float] = mapped_column(Float, default=0)
    performed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    staff_name: Mapped[str | None] = mapped_column(String, nullable=True)
    transaction_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    # Multi-line movements carry their own item/warehouse references.
    items_json: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)


class StockTransaction(StockTransactionColumns, Base):
    __tablename__ = "stock_transactions"
    __table_args__ = (
        Index("ix_stock_transactions_tenant_date", "tenant_id", "transaction_date"),
    )


class StockTransactionArchive(StockTransactionColumns, ArchivedRecordMixin, Base):
    __tablename__ = "stock_transactions_archive"


class SalesOrderColumns(TenantRecordMixin):
    order_number: Mapped[str] = mapped_column(String)
    client_id: Mapped[str | None] = mapped_column(String, nullable=True)
    client_name: Mapped[str | None] = mapped_column(String, nullable=True)
    total_amount: Mapped[float] = mapped_column(Float, default=0)
    order_status: Mapped[str | None] = mapped_column(String, nullable=True)
    order_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    items_json: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)


class SalesOrder(SalesOrderColumns, Base):
    __tablename__ = "sales_orders"
    __table_args__ = (
        Index("ix_sales_orders_tenant_date", "tenant_id", "order_date"),
    )


class SalesOrderArchive(SalesOrderColumns, ArchivedRecordMixin, Base):
    __tablename__ = "sales_orders_archive"


class PurchaseOrderColumns(TenantRecordMixin):
    order_number: Mapped[str] = mapped_column(String)
    supplier_id: Mapped[str | None] = mapped_column(String, nullable=True)
    supplier_name: Mapped[str | None] = mapped_column(String, nullable=True)
    total_amount: Mapped[float] = mapped_column(Float, default=0)
    order_status: Mapped[str | None] = mapped_column(String, nullable=True)
    order_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    items_json: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)


class PurchaseOrder(PurchaseOrderColumns, Base):
    __tablename__ = "purchase_orders"
    __table_args__ = (
        Index("ix_purchase_orders_tenant_date", "tenant_id", "order_date"),
    )


class PurchaseOrderArchive(PurchaseOrderColumns, ArchivedRecordMixin, Base):
    __tablename__ = "purchase_orders_archive"


class DeliveryOut(TenantRecordMixin, Base):
    __tablename__ = "delivery_outs"

    delivery_number: Mapped[str] = mapped_column(String)
    sales_order_id: Mapped[str | None] = mapped_column(String, nullable=True)
    client_id: Mapped[str | None] = mapped_column(String, nullable=True)
    client_name: Mapped[str | None] = mapped_column(String, nullable=True)
    total_amount: Mapped[float] = mapped_column(Float, default=0)
    delivery_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    items_json: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)


class DeliveryIn(TenantRecordMixin, Base):
    __tablename__ = "delivery_ins"

    grn_number: Mapped[str] = mapped_column(String)
    purchase_order_id: Mapped[str | None] = mapped_column(String, nullable=True)
    supplier_id: Mapped[str | None] = mapped_column(String, nullable=True)
    supplier_name: Mapped[str | None] = mapped_column(String, nullable=True)
    total_amount: Mapped[float] = mapped_column(Float, default=0)
    receipt_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    items_json: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)


class DirectSale(TenantRecordMixin, Base):
    __tablename__ = "direct_sales"

    sale_number: Mapped[str] = mapped_column(String)
    client_id: Mapped[str | None] = mapped_column(String, nullable=True)
    client_name: Mapped[str | None] = mapped_column(String, nullable=True)
    total_amount: Mapped[float] = mapped_column(Float, default=0)
    payment_status: Mapped[str | None] = mapped_column(String, nullable=True)
    sale_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    items_json: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)


class DirectPurchase(TenantRecordMixin, Base):
    __tablename__ = "direct_purchases"

    purchase_number: Mapped[str] = mapped_column(String)
    supplier_id: Mapped[str | None] = mapped_column(String, nullable=True)
    supplier_name: Mapped[str | None] = mapped_column(String, nullable=True)
    total_amount: Mapped[float] = mapped_column(Float, default=0)
    payment_status: Mapped[str | None] = mapped_column(String, nullable=True)
    purchase_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    items_json: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)


class BackupRecord(Base):
    __tablename__ = "backup_records"
    __table_args__ = (
        Index("ix_backup_records_tenant_created", "tenant_id", "created_at"),
    )

    # One row per export, whether the snapshot was zipped to disk or returned in memory.
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    snapshot_id: Mapped[str] = mapped_column(String, unique=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    file_name: Mapped[str | None] = mapped_column(String, nullable=True)
    file_path: Mapped[str | None] = mapped_column(String, nullable=True)
    file_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    sha256: Mapped[str | None] = mapped_column(String, nullable=True)
    record_counts_json: Mapped[dict[str, int] | None] = mapped_column(JSONType, nullable=True)
    schema_version: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="completed")
    downloaded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    downloaded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class RestoreLog(Base):
    __tablename__ = "restore_logs"
    __table_args__ = (
        Index("ix_restore_logs_tenant_restored", "tenant_id", "restored_at"),
    )

    # Append-only; written inside the same transaction as the restore it describes.
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    snapshot_id: Mapped[str] = mapped_column(String)
    restore_type: Mapped[str] = mapped_column(String)
    modules_json: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    records_restored_json: Mapped[dict[str, int] | None] = mapped_column(JSONType, nullable=True)
    status: Mapped[str] = mapped_column(String, default="success")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    restored_by: Mapped[str | None] = mapped_column(String, nullable=True)
    restored_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ArchiveMetadata(Base):
    __tablename__ = "archive_metadata"
    __table_args__ = (
        Index("ix_archive_metadata_tenant_type_created", "tenant_id", "entity_type", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    entity_type: Mapped[str] = mapped_column(String)
    record_count: Mapped[int] = mapped_column(Integer, default=0)
    cutoff_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    archived_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class CleanupLog(Base):
    __tablename__ = "cleanup_logs"
    __table_args__ = (
        Index("ix_cleanup_logs_tenant_created", "tenant_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    cleanup_type: Mapped[str] = mapped_column(String)
    records_affected: Mapped[int] = mapped_column(Integer, default=0)
    details_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    executed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
