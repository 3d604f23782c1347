"""payout reservations and driver earnings

Revision ID: 7b4e2f90c1d3
Revises: 3c1d9e7a5b20
Create Date: 2026-10-25 10:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "7b4e2f90c1d3"
down_revision = "3c1d9e7a5b20"
branch_labels = None
depends_on = None

OUTSTANDING_PAYOUT_WHERE = "status IN ('PENDING', 'APPROVED')"


def _table_exists(bind, table_name: str) -> bool:
    try:
        return sa.inspect(bind).has_table(table_name)
    except Exception:
        return False


def _column_exists(bind, table_name: str, column_name: str) -> bool:
    try:
        cols = sa.inspect(bind).get_columns(table_name)
        return any((c.get("name") or "") == column_name for c in cols)
    except Exception:
        return False


def _index_exists(bind, table_name: str, index_name: str) -> bool:
    try:
        rows = sa.inspect(bind).get_indexes(table_name)
        return any((r.get("name") or "") == index_name for r in rows)
    except Exception:
        return False


def _add_column(bind, table_name: str, column: sa.Column):
    if not _table_exists(bind, table_name) or _column_exists(bind, table_name, column.name):
        return
    with op.batch_alter_table(table_name) as batch:
        batch.add_column(column)


def upgrade():
    bind = op.get_bind()

    for table_name in ("vendors", "drivers"):
        _add_column(bind, table_name, sa.Column("reserved_payout", sa.Float(), nullable=False, server_default="0"))
    _add_column(bind, "deliveries", sa.Column("driver_earning", sa.Float(), nullable=True))

    if _table_exists(bind, "payout_requests") and not _index_exists(bind, "payout_requests", "uq_payout_requests_outstanding"):
        op.create_index(
            "uq_payout_requests_outstanding",
            "payout_requests",
            ["user_type", "user_id"],
            unique=True,
            sqlite_where=sa.text(OUTSTANDING_PAYOUT_WHERE),
            postgresql_where=sa.text(OUTSTANDING_PAYOUT_WHERE),
        )


def downgrade():
    bind = op.get_bind()
    if _index_exists(bind, "payout_requests", "uq_payout_requests_outstanding"):
        op.drop_index("uq_payout_requests_outstanding", table_name="payout_requests")
    for table_name, column_name in (
        ("deliveries", "driver_earning"),
        ("drivers", "reserved_payout"),
        ("vendors", "reserved_payout"),
    ):
        if _column_exists(bind, table_name, column_name):
            with op.batch_alter_table(table_name) as batch:
                batch.drop_column(column_name)
