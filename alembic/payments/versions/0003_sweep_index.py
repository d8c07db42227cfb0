"""index for the stale-payment sweep

Revision ID: 0003_sweep_index
Revises: 0002_affiliates
Create Date: 2026-10-18
"""

from alembic import op


revision = "0003_sweep_index"
down_revision = "0002_affiliates"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "ix_payments_status_created_at",
        "payments",
        ["status", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_payments_status_created_at", table_name="payments")
