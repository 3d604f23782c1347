"""order settlement core tables

Revision ID: 3c1d9e7a5b20
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "3c1d9e7a5b20"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind, table_name: str) -> bool:
    try:
        return sa.inspect(bind).has_table(table_name)
    except Exception:
        return False


def _payee_columns():
    return [
        sa.Column("total_earnings", sa.Float(), nullable=False, server_default="0"),
        sa.Column("total_paid_out", sa.Float(), nullable=False, server_default="0"),
        sa.Column("bank_name", sa.String(length=120), nullable=True),
        sa.Column("bank_account_name", sa.String(length=160), nullable=True),
        sa.Column("bank_account_number", sa.String(length=32), nullable=True),
        sa.Column("is_payout_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_payout_date", sa.DateTime(), nullable=True),
    ]


def upgrade():
    bind = op.get_bind()

    if not _table_exists(bind, "users"):
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(length=120), nullable=False, server_default=""),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("phone", sa.String(length=32), nullable=True),
            sa.Column("password_hash", sa.String(length=255), nullable=False, server_default=""),
            sa.Column("role", sa.String(length=32), nullable=False, server_default="customer"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_users_email", "users", ["email"], unique=True)
        op.create_index("ix_users_phone", "users", ["phone"], unique=True)

    if not _table_exists(bind, "customers"):
        op.create_table(
            "customers",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("first_name", sa.String(length=80), nullable=False, server_default=""),
            sa.Column("last_name", sa.String(length=80), nullable=False, server_default=""),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("phone", sa.String(length=32), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_customers_user_id", "customers", ["user_id"], unique=True)

    if not _table_exists(bind, "addresses"):
        op.create_table(
            "addresses",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id"), nullable=False),
            sa.Column("street", sa.String(length=255), nullable=False, server_default=""),
            sa.Column("city", sa.String(length=80), nullable=False, server_default=""),
            sa.Column("state", sa.String(length=80), nullable=False, server_default=""),
            sa.Column("additional_info", sa.Text(), nullable=True),
            sa.Column("latitude", sa.Float(), nullable=True),
            sa.Column("longitude", sa.Float(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_addresses_customer_id", "addresses", ["customer_id"])

    if not _table_exists(bind, "vendors"):
        op.create_table(
            "vendors",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("business_name", sa.String(length=160), nullable=False, server_default=""),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("phone", sa.String(length=32), nullable=True),
            sa.Column("latitude", sa.Float(), nullable=True),
            sa.Column("longitude", sa.Float(), nullable=True),
            sa.Column("commission_rate", sa.Float(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            *_payee_columns(),
        )
        op.create_index("ix_vendors_user_id", "vendors", ["user_id"], unique=True)

    if not _table_exists(bind, "drivers"):
        op.create_table(
            "drivers",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("first_name", sa.String(length=80), nullable=False, server_default=""),
            sa.Column("last_name", sa.String(length=80), nullable=False, server_default=""),
            sa.Column("phone", sa.String(length=32), nullable=True),
            sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            *_payee_columns(),
        )
        op.create_index("ix_drivers_user_id", "drivers", ["user_id"], unique=True)

    if not _table_exists(bind, "parts"):
        op.create_table(
            "parts",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("vendor_id", sa.Integer(), sa.ForeignKey("vendors.id"), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("sku", sa.String(length=64), nullable=True),
            sa.Column("price", sa.Float(), nullable=False, server_default="0"),
            sa.Column("discounted_price", sa.Float(), nullable=True),
            sa.Column("stock_quantity", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("low_stock_alert", sa.Integer(), nullable=False, server_default="5"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.CheckConstraint("stock_quantity >= 0", name="ck_parts_stock_non_negative"),
        )
        op.create_index("ix_parts_vendor_id", "parts", ["vendor_id"])
        op.create_index("ix_parts_sku", "parts", ["sku"])

    if not _table_exists(bind, "promotions"):
        op.create_table(
            "promotions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("vendor_id", sa.Integer(), sa.ForeignKey("vendors.id"), nullable=False),
            sa.Column("name", sa.String(length=160), nullable=False, server_default=""),
            sa.Column("promotion_code", sa.String(length=64), nullable=False),
            sa.Column("discount_value", sa.Float(), nullable=False, server_default="0"),
            sa.Column("is_percentage", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("minimum_order_value", sa.Float(), nullable=True),
            sa.Column("start_date", sa.DateTime(), nullable=False),
            sa.Column("end_date", sa.DateTime(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("vendor_id", "promotion_code", name="uq_promotions_vendor_code"),
        )
        op.create_index("ix_promotions_vendor_id", "promotions", ["vendor_id"])
        op.create_index("ix_promotions_promotion_code", "promotions", ["promotion_code"])

    if not _table_exists(bind, "orders"):
        op.create_table(
            "orders",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_number", sa.String(length=32), nullable=False),
            sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id"), nullable=False),
            sa.Column("vendor_id", sa.Integer(), sa.ForeignKey("vendors.id"), nullable=False),
            sa.Column("address_id", sa.Integer(), sa.ForeignKey("addresses.id"), nullable=True),
            sa.Column("order_type", sa.String(length=16), nullable=False, server_default="DELIVERY"),
            sa.Column("subtotal", sa.Float(), nullable=False, server_default="0"),
            sa.Column("delivery_fee", sa.Float(), nullable=False, server_default="0"),
            sa.Column("tax", sa.Float(), nullable=False, server_default="0"),
            sa.Column("discount", sa.Float(), nullable=False, server_default="0"),
            sa.Column("total", sa.Float(), nullable=False, server_default="0"),
            sa.Column("refunded_amount", sa.Float(), nullable=False, server_default="0"),
            sa.Column("commission_rate", sa.Float(), nullable=False, server_default="0"),
            sa.Column("commission_amount", sa.Float(), nullable=False, server_default="0"),
            sa.Column("vendor_earning", sa.Float(), nullable=False, server_default="0"),
            sa.Column("payment_method", sa.String(length=24), nullable=False, server_default="CARD"),
            sa.Column("payment_status", sa.String(length=24), nullable=False, server_default="PENDING"),
            sa.Column("payment_reference", sa.String(length=64), nullable=True),
            sa.Column("order_status", sa.String(length=24), nullable=False, server_default="RECEIVED"),
            sa.Column("is_cancelled", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("cancellation_reason", sa.Text(), nullable=True),
            sa.Column("promo_code", sa.String(length=64), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_orders_order_number", "orders", ["order_number"], unique=True)
        op.create_index("ix_orders_customer_id", "orders", ["customer_id"])
        op.create_index("ix_orders_vendor_id", "orders", ["vendor_id"])
        op.create_index("ix_orders_payment_status", "orders", ["payment_status"])
        op.create_index("ix_orders_payment_reference", "orders", ["payment_reference"])
        op.create_index("ix_orders_order_status", "orders", ["order_status"])
        op.create_index("ix_orders_created_at", "orders", ["created_at"])

    if not _table_exists(bind, "order_items"):
        op.create_table(
            "order_items",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("part_id", sa.Integer(), sa.ForeignKey("parts.id"), nullable=False),
            sa.Column("part_name", sa.String(length=200), nullable=False, server_default=""),
            sa.Column("quantity", sa.Integer(), nullable=False),
            sa.Column("unit_price", sa.Float(), nullable=False),
            sa.Column("subtotal", sa.Float(), nullable=False),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        )
        op.create_index("ix_order_items_order_id", "order_items", ["order_id"])
        op.create_index("ix_order_items_part_id", "order_items", ["part_id"])

    if not _table_exists(bind, "deliveries"):
        op.create_table(
            "deliveries",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("driver_id", sa.Integer(), sa.ForeignKey("drivers.id"), nullable=True),
            sa.Column("status", sa.String(length=24), nullable=False, server_default="PENDING"),
            sa.Column("start_latitude", sa.Float(), nullable=True),
            sa.Column("start_longitude", sa.Float(), nullable=True),
            sa.Column("destination_latitude", sa.Float(), nullable=True),
            sa.Column("destination_longitude", sa.Float(), nullable=True),
            sa.Column("distance", sa.Float(), nullable=True),
            sa.Column("delivery_fee", sa.Float(), nullable=False, server_default="0"),
            sa.Column("estimated_delivery_time", sa.DateTime(), nullable=True),
            sa.Column("pickup_time", sa.DateTime(), nullable=True),
            sa.Column("delivered_time", sa.DateTime(), nullable=True),
            sa.Column("driver_instructions", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_deliveries_order_id", "deliveries", ["order_id"], unique=True)
        op.create_index("ix_deliveries_driver_id", "deliveries", ["driver_id"])
        op.create_index("ix_deliveries_status", "deliveries", ["status"])

    if not _table_exists(bind, "transactions"):
        op.create_table(
            "transactions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("reference", sa.String(length=64), nullable=False),
            sa.Column("type", sa.String(length=16), nullable=False),
            sa.Column("amount", sa.Float(), nullable=False),
            sa.Column("fee", sa.Float(), nullable=False, server_default="0"),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default="NGN"),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
            sa.Column("payment_method", sa.String(length=24), nullable=True),
            sa.Column("gateway_reference", sa.String(length=128), nullable=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=True),
            sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id"), nullable=True),
            sa.Column("vendor_id", sa.Integer(), sa.ForeignKey("vendors.id"), nullable=True),
            sa.Column("driver_id", sa.Integer(), sa.ForeignKey("drivers.id"), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_transactions_reference", "transactions", ["reference"], unique=True)
        op.create_index("ix_transactions_type", "transactions", ["type"])
        op.create_index("ix_transactions_status", "transactions", ["status"])
        op.create_index("ix_transactions_order_id", "transactions", ["order_id"])
        op.create_index("ix_transactions_customer_id", "transactions", ["customer_id"])
        op.create_index("ix_transactions_vendor_id", "transactions", ["vendor_id"])
        op.create_index("ix_transactions_driver_id", "transactions", ["driver_id"])
        op.create_index("ix_transactions_created_at", "transactions", ["created_at"])

    if not _table_exists(bind, "refunds"):
        op.create_table(
            "refunds",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("transaction_id", sa.Integer(), sa.ForeignKey("transactions.id"), nullable=False),
            sa.Column("refund_transaction_id", sa.Integer(), sa.ForeignKey("transactions.id"), nullable=True),
            sa.Column("amount", sa.Float(), nullable=False),
            sa.Column("reason", sa.Text(), nullable=False, server_default=""),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
            sa.Column("requested_by_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
            sa.Column("approved_by_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
            sa.Column("processed_at", sa.DateTime(), nullable=True),
            sa.Column("gateway_reference", sa.String(length=128), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_refunds_order_id", "refunds", ["order_id"])
        op.create_index("ix_refunds_transaction_id", "refunds", ["transaction_id"])
        op.create_index("ix_refunds_status", "refunds", ["status"])

    if not _table_exists(bind, "payout_requests"):
        op.create_table(
            "payout_requests",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("user_type", sa.String(length=16), nullable=False),
            sa.Column("amount", sa.Float(), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
            sa.Column("bank_details_json", sa.Text(), nullable=True),
            sa.Column("requested_earnings_json", sa.Text(), nullable=True),
            sa.Column("requested_by_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
            sa.Column("processed_by_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
            sa.Column("processed_at", sa.DateTime(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("transaction_id", sa.Integer(), sa.ForeignKey("transactions.id"), nullable=True, unique=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_payout_requests_user_id", "payout_requests", ["user_id"])
        op.create_index("ix_payout_requests_user_type", "payout_requests", ["user_type"])
        op.create_index("ix_payout_requests_status", "payout_requests", ["status"])
        op.create_index("ix_payout_requests_created_at", "payout_requests", ["created_at"])

    if not _table_exists(bind, "audit_logs"):
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("action", sa.String(length=64), nullable=False),
            sa.Column("entity_type", sa.String(length=32), nullable=False),
            sa.Column("entity_id", sa.String(length=64), nullable=False),
            sa.Column("performed_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
            sa.Column("details_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
        op.create_index("ix_audit_logs_entity_type", "audit_logs", ["entity_type"])
        op.create_index("ix_audit_logs_entity_id", "audit_logs", ["entity_id"])
        op.create_index("ix_audit_logs_performed_by", "audit_logs", ["performed_by"])
        op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"])

    if not _table_exists(bind, "platform_events"):
        op.create_table(
            "platform_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("event_type", sa.String(length=80), nullable=False),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("subject_type", sa.String(length=80), nullable=True),
            sa.Column("subject_id", sa.String(length=120), nullable=True),
            sa.Column("request_id", sa.String(length=80), nullable=True),
            sa.Column("idempotency_key", sa.String(length=180), nullable=True),
            sa.Column("severity", sa.String(length=16), nullable=False, server_default="INFO"),
            sa.Column("metadata_json", sa.Text(), nullable=True),
        )
        op.create_index("ix_platform_events_created_at", "platform_events", ["created_at"])
        op.create_index("ix_platform_events_event_type", "platform_events", ["event_type"])
        op.create_index("ix_platform_events_actor_user_id", "platform_events", ["actor_user_id"])
        op.create_index("ix_platform_events_subject_type", "platform_events", ["subject_type"])
        op.create_index("ix_platform_events_subject_id", "platform_events", ["subject_id"])
        op.create_index("ix_platform_events_request_id", "platform_events", ["request_id"])
        op.create_index("ix_platform_events_idempotency_key", "platform_events", ["idempotency_key"], unique=True)
        op.create_index("ix_platform_events_severity", "platform_events", ["severity"])

    if not _table_exists(bind, "webhook_events"):
        op.create_table(
            "webhook_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("provider", sa.String(length=32), nullable=False, server_default="flutterwave"),
            sa.Column("event_id", sa.String(length=128), nullable=False),
            sa.Column("event_type", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("reference", sa.String(length=128), nullable=True),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="received"),
            sa.Column("delivery_count", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("processed_at", sa.DateTime(), nullable=True),
            sa.Column("request_id", sa.String(length=64), nullable=True),
            sa.Column("payload_hash", sa.String(length=128), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),
        )
        op.create_index("ix_webhook_events_reference", "webhook_events", ["reference"])

    if not _table_exists(bind, "notifications"):
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("kind", sa.String(length=32), nullable=False, server_default="ORDER"),
            sa.Column("title", sa.String(length=160), nullable=True),
            sa.Column("message", sa.Text(), nullable=False),
            sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("meta", sa.Text(), nullable=True),
        )
        op.create_index("ix_notifications_user_id", "notifications", ["user_id"])


def downgrade():
    bind = op.get_bind()
    for table_name in (
        "notifications",
        "webhook_events",
        "platform_events",
        "audit_logs",
        "payout_requests",
        "refunds",
        "transactions",
        "deliveries",
        "order_items",
        "orders",
        "promotions",
        "parts",
        "drivers",
        "vendors",
        "addresses",
        "customers",
        "users",
    ):
        if _table_exists(bind, table_name):
            op.drop_table(table_name)
