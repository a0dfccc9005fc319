"""init tenant lifecycle schema

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _jsonb() -> postgresql.JSONB:
    return postgresql.JSONB(astext_type=sa.Text())


def _record_columns() -> list[sa.Column]:
    # Shared by every tenant-scoped business table and its cold store.
    return [
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("attributes_json", _jsonb(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def _archive_columns() -> list[sa.Column]:
    return [
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("archived_by", sa.String(), nullable=True),
    ]


def _stock_transaction_columns() -> list[sa.Column]:
    return [
        sa.Column("transaction_type", sa.String(), nullable=False),
        sa.Column("item_id", sa.String(), nullable=True),
        sa.Column("item_name", sa.String(), nullable=True),
        sa.Column("warehouse_id", sa.String(), nullable=True),
        sa.Column("warehouse_name", sa.String(), nullable=True),
        sa.Column("to_warehouse_id", sa.String(), nullable=True),
        sa.Column("quantity", sa.Float(), nullable=False),
        sa.Column("performed_by", sa.String(), nullable=True),
        sa.Column("staff_name", sa.String(), nullable=True),
        sa.Column("transaction_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("items_json", _jsonb(), nullable=True),
    ]


def _order_columns(party: str) -> list[sa.Column]:
    # Sales orders reference clients, purchase orders reference suppliers.
    return [
        sa.Column("order_number", sa.String(), nullable=False),
        sa.Column(f"{party}_id", sa.String(), nullable=True),
        sa.Column(f"{party}_name", sa.String(), nullable=True),
        sa.Column("total_amount", sa.Float(), nullable=False),
        sa.Column("order_status", sa.String(), nullable=True),
        sa.Column("order_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("items_json", _jsonb(), nullable=True),
    ]


def _create_record_table(name: str, columns: list[sa.Column]) -> None:
    op.create_table(name, *_record_columns(), *columns)
    op.create_index(f"ix_{name}_tenant_id", name, ["tenant_id"], unique=False)


def upgrade() -> None:
    # Tenants keep identity columns apart from the profile that restores may overwrite.
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("company_code", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=True),
        sa.Column("industry", sa.String(), nullable=True),
        sa.Column("address", sa.String(), nullable=True),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("website", sa.String(), nullable=True),
        sa.Column("tax_id", sa.String(), nullable=True),
        sa.Column("logo_url", sa.String(), nullable=True),
        sa.Column("settings_json", _jsonb(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("company_code", name="uq_tenants_company_code"),
    )

    # Business tables carry no foreign keys; reference integrity is checked by the orphan analyzer.
    _create_record_table(
        "users",
        [
            sa.Column("full_name", sa.String(), nullable=False),
            sa.Column("email", sa.String(), nullable=True),
            sa.Column("role", sa.String(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False),
        ],
    )
    _create_record_table(
        "warehouses",
        [
            sa.Column("name", sa.String(), nullable=False),
            sa.Column("location", sa.String(), nullable=True),
            sa.Column("capacity", sa.Float(), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
        ],
    )
    _create_record_table(
        "clients",
        [
            sa.Column("name", sa.String(), nullable=False),
            sa.Column("phone", sa.String(), nullable=True),
            sa.Column("email", sa.String(), nullable=True),
            sa.Column("address", sa.String(), nullable=True),
            sa.Column("gst_number", sa.String(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False),
        ],
    )
    _create_record_table(
        "suppliers",
        [
            sa.Column("name", sa.String(), nullable=False),
            sa.Column("contact_person", sa.String(), nullable=True),
            sa.Column("phone", sa.String(), nullable=True),
            sa.Column("email", sa.String(), nullable=True),
            sa.Column("address", sa.String(), nullable=True),
            sa.Column("gst_number", sa.String(), nullable=True),
        ],
    )
    _create_record_table(
        "stock_items",
        [
            sa.Column("warehouse_id", sa.String(), nullable=True),
            sa.Column("item_name", sa.String(), nullable=False),
            sa.Column("category", sa.String(), nullable=True),
            sa.Column("bag_size", sa.Float(), nullable=True),
            sa.Column("quantity", sa.Float(), nullable=False),
            sa.Column("cost_price", sa.Float(), nullable=True),
            sa.Column("selling_price", sa.Float(), nullable=True),
            sa.Column("low_stock_alert", sa.Float(), nullable=True),
        ],
    )
    op.create_index("ix_stock_items_warehouse_id", "stock_items", ["warehouse_id"], unique=False)

    _create_record_table("stock_transactions", _stock_transaction_columns())
    op.create_index(
        "ix_stock_transactions_tenant_date",
        "stock_transactions",
        ["tenant_id", "transaction_date"],
        unique=False,
    )
    _create_record_table("sales_orders", _order_columns("client"))
    op.create_index("ix_sales_orders_tenant_date", "sales_orders", ["tenant_id", "order_date"], unique=False)
    _create_record_table("purchase_orders", _order_columns("supplier"))
    op.create_index(
        "ix_purchase_orders_tenant_date", "purchase_orders", ["tenant_id", "order_date"], unique=False
    )

    _create_record_table(
        "delivery_outs",
        [
            sa.Column("delivery_number", sa.String(), nullable=False),
            sa.Column("sales_order_id", sa.String(), nullable=True),
            sa.Column("client_id", sa.String(), nullable=True),
            sa.Column("client_name", sa.String(), nullable=True),
            sa.Column("total_amount", sa.Float(), nullable=False),
            sa.Column("delivery_date", sa.DateTime(timezone=True), nullable=False),
            sa.Column("items_json", _jsonb(), nullable=True),
        ],
    )
    _create_record_table(
        "delivery_ins",
        [
            sa.Column("grn_number", sa.String(), nullable=False),
            sa.Column("purchase_order_id", sa.String(), nullable=True),
            sa.Column("supplier_id", sa.String(), nullable=True),
            sa.Column("supplier_name", sa.String(), nullable=True),
            sa.Column("total_amount", sa.Float(), nullable=False),
            sa.Column("receipt_date", sa.DateTime(timezone=True), nullable=False),
            sa.Column("items_json", _jsonb(), nullable=True),
        ],
    )
    _create_record_table(
        "direct_sales",
        [
            sa.Column("sale_number", sa.String(), nullable=False),
            sa.Column("client_id", sa.String(), nullable=True),
            sa.Column("client_name", sa.String(), nullable=True),
            sa.Column("total_amount", sa.Float(), nullable=False),
            sa.Column("payment_status", sa.String(), nullable=True),
            sa.Column("sale_date", sa.DateTime(timezone=True), nullable=False),
            sa.Column("items_json", _jsonb(), nullable=True),
        ],
    )
    _create_record_table(
        "direct_purchases",
        [
            sa.Column("purchase_number", sa.String(), nullable=False),
            sa.Column("supplier_id", sa.String(), nullable=True),
            sa.Column("supplier_name", sa.String(), nullable=True),
            sa.Column("total_amount", sa.Float(), nullable=False),
            sa.Column("payment_status", sa.String(), nullable=True),
            sa.Column("purchase_date", sa.DateTime(timezone=True), nullable=False),
            sa.Column("items_json", _jsonb(), nullable=True),
        ],
    )

    # Cold stores mirror their live tables plus archive tags.
    _create_record_table(
        "stock_transactions_archive", [*_stock_transaction_columns(), *_archive_columns()]
    )
    _create_record_table("sales_orders_archive", [*_order_columns("client"), *_archive_columns()])
    _create_record_table("purchase_orders_archive", [*_order_columns("supplier"), *_archive_columns()])

    # Audit tables for backups, restores, archive batches and cleanups.
    op.create_table(
        "backup_records",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("snapshot_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("file_name", sa.String(), nullable=True),
        sa.Column("file_path", sa.String(), nullable=True),
        sa.Column("file_size", sa.BigInteger(), nullable=True),
        sa.Column("sha256", sa.String(), nullable=True),
        sa.Column("record_counts_json", _jsonb(), nullable=True),
        sa.Column("schema_version", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("downloaded", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("downloaded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("snapshot_id", name="uq_backup_records_snapshot_id"),
    )
    op.create_index("ix_backup_records_tenant_id", "backup_records", ["tenant_id"], unique=False)
    op.create_index(
        "ix_backup_records_tenant_created", "backup_records", ["tenant_id", "created_at"], unique=False
    )

    op.create_table(
        "restore_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("snapshot_id", sa.String(), nullable=False),
        sa.Column("restore_type", sa.String(), nullable=False),
        sa.Column("modules_json", _jsonb(), nullable=True),
        sa.Column("records_restored_json", _jsonb(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("restored_by", sa.String(), nullable=True),
        sa.Column("restored_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_restore_logs_tenant_id", "restore_logs", ["tenant_id"], unique=False)
    op.create_index(
        "ix_restore_logs_tenant_restored", "restore_logs", ["tenant_id", "restored_at"], unique=False
    )

    op.create_table(
        "archive_metadata",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("record_count", sa.Integer(), nullable=False),
        sa.Column("cutoff_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("archived_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_archive_metadata_tenant_id", "archive_metadata", ["tenant_id"], unique=False)
    op.create_index(
        "ix_archive_metadata_tenant_type_created",
        "archive_metadata",
        ["tenant_id", "entity_type", "created_at"],
        unique=False,
    )

    op.create_table(
        "cleanup_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("cleanup_type", sa.String(), nullable=False),
        sa.Column("records_affected", sa.Integer(), nullable=False),
        sa.Column("details_json", _jsonb(), nullable=True),
        sa.Column("executed_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_cleanup_logs_tenant_id", "cleanup_logs", ["tenant_id"], unique=False)
    op.create_index(
        "ix_cleanup_logs_tenant_created", "cleanup_logs", ["tenant_id", "created_at"], unique=False
    )


def downgrade() -> None:
    for name in ("cleanup_logs", "archive_metadata", "restore_logs", "backup_records"):
        op.drop_table(name)
    for name in (
        "purchase_orders_archive",
        "sales_orders_archive",
        "stock_transactions_archive",
        "direct_purchases",
        "direct_sales",
        "delivery_ins",
        "delivery_outs",
        "purchase_orders",
        "sales_orders",
        "stock_transactions",
        "stock_items",
        "suppliers",
        "clients",
        "warehouses",
        "users",
    ):
        op.drop_table(name)
    op.drop_table("tenants")
