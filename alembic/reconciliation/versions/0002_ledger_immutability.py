"""enforce append-only payment logs

Revision ID: 0002_ledger_immutability
Revises: 0001_reconciliation
Create Date: 2026-03-02
"""

from alembic import op


revision = "0002_ledger_immutability"
down_revision = "0001_reconciliation"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE OR REPLACE FUNCTION prevent_payment_log_mutation()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            RAISE EXCEPTION 'payment_logs is append-only; % is not allowed', TG_OP;
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_payment_logs_immutable
        BEFORE UPDATE OR DELETE ON payment_logs
        FOR EACH ROW
        EXECUTE FUNCTION prevent_payment_log_mutation();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_payment_logs_immutable ON payment_logs;")
    op.execute("DROP FUNCTION IF EXISTS prevent_payment_log_mutation();")
