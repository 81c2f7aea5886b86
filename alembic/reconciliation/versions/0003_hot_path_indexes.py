"""add hot-path indexes for unattached payments and outbox

Revision ID: 0003_hot_path_indexes
Revises: 0002_ledger_immutability
Create Date: 2026-03-09
"""

from alembic import op


revision = "0003_hot_path_indexes"
down_revision = "0002_ledger_immutability"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "ix_payments_request_id_created_at",
        "payments",
        ["request_id", "created_at"],
    )
    op.create_index(
        "ix_outbox_events_status_created_at",
        "outbox_events",
        ["status", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_outbox_events_status_created_at", table_name="outbox_events")
    op.drop_index("ix_payments_request_id_created_at", table_name="payments")
