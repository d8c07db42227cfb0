"""affiliate accounts, clicks, conversions, payouts

Revision ID: 0002_affiliates
Revises: 0001_payments
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


revision = "0002_affiliates"
down_revision = "0001_payments"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "affiliates",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("full_name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("phone", sa.String(), nullable=False),
        sa.Column("referral_code", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("commission_rate", sa.Numeric(5, 2), nullable=False, server_default=sa.text("10")),
        sa.Column("total_clicks", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_conversions", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_earnings", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("available_balance", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("available_balance >= 0", name="ck_affiliates_balance_non_negative"),
    )
    op.create_index("ix_affiliates_user_id", "affiliates", ["user_id"], unique=True)
    op.create_index("ix_affiliates_referral_code", "affiliates", ["referral_code"], unique=True)
    op.create_index("ix_affiliates_status", "affiliates", ["status"])

    op.create_table(
        "referral_clicks",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("affiliate_id", sa.String(), nullable=False),
        sa.Column("ip_address", sa.String(), nullable=False),
        sa.Column("user_agent", sa.String(), nullable=False),
        sa.Column("landing_page", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["affiliate_id"], ["affiliates.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_referral_clicks_affiliate_id", "referral_clicks", ["affiliate_id"])
    op.create_index("ix_referral_clicks_created_at", "referral_clicks", ["created_at"])

    op.create_table(
        "referral_conversions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("affiliate_id", sa.String(), nullable=False),
        sa.Column("payment_id", sa.String(), nullable=False),
        sa.Column("order_id", sa.String(), nullable=False),
        sa.Column("payment_amount", sa.Integer(), nullable=False),
        sa.Column("commission_rate", sa.Numeric(5, 2), nullable=False),
        sa.Column("commission", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["affiliate_id"], ["affiliates.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    # One conversion per payment: duplicate completions cannot double-credit.
    op.create_index("ix_referral_conversions_payment_id", "referral_conversions", ["payment_id"], unique=True)
    op.create_index("ix_referral_conversions_affiliate_id", "referral_conversions", ["affiliate_id"])
    op.create_index("ix_referral_conversions_created_at", "referral_conversions", ["created_at"])

    op.create_table(
        "affiliate_payouts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("affiliate_id", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("phone", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["affiliate_id"], ["affiliates.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_affiliate_payouts_affiliate_id", "affiliate_payouts", ["affiliate_id"])
    op.create_index("ix_affiliate_payouts_status", "affiliate_payouts", ["status"])


def downgrade() -> None:
    op.drop_index("ix_affiliate_payouts_status", table_name="affiliate_payouts")
    op.drop_index("ix_affiliate_payouts_affiliate_id", table_name="affiliate_payouts")
    op.drop_table("affiliate_payouts")
    op.drop_index("ix_referral_conversions_created_at", table_name="referral_conversions")
    op.drop_index("ix_referral_conversions_affiliate_id", table_name="referral_conversions")
    op.drop_index("ix_referral_conversions_payment_id", table_name="referral_conversions")
    op.drop_table("referral_conversions")
    op.drop_index("ix_referral_clicks_created_at", table_name="referral_clicks")
    op.drop_index("ix_referral_clicks_affiliate_id", table_name="referral_clicks")
    op.drop_table("referral_clicks")
    op.drop_index("ix_affiliates_status", table_name="affiliates")
    op.drop_index("ix_affiliates_referral_code", table_name="affiliates")
    op.drop_index("ix_affiliates_user_id", table_name="affiliates")
    op.drop_table("affiliates")
