"""core schema

Revision ID: 0001_core_schema
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_core_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "profiles",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("full_name", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False, server_default="subscriber"),
        sa.Column("admin_sub_role", sa.String(), nullable=True),
        sa.Column("is_super_user", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("total_letters_submitted", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "api_keys",
        sa.Column("id", sa.String(), primary_key=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column("profile_id", sa.String(), sa.ForeignKey("profiles.id"), nullable=False),
        sa.Column("key_prefix", sa.String(), nullable=False),
        sa.Column("key_hash", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_api_keys_profile_id", "api_keys", ["profile_id"])
    op.create_index("ix_api_keys_key_hash", "api_keys", ["key_hash"], unique=True)

    op.create_table(
        "letters",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("profiles.id"), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("letter_type", sa.String(), nullable=True),
        sa.Column("intake_data", postgresql.JSONB(), nullable=True),
        sa.Column("ai_draft_content", sa.Text(), nullable=True),
        sa.Column("final_content", sa.Text(), nullable=True),
        sa.Column("reviewed_by", sa.String(), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("review_notes", sa.Text(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("allowance_source", sa.String(), nullable=True),
        sa.Column("charged_subscription_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('draft', 'generating', 'pending_review', 'under_review', "
            "'approved', 'completed', 'rejected', 'failed')",
            name="ck_letters_status",
        ),
    )
    op.create_index("ix_letters_user_id", "letters", ["user_id"])
    op.create_index("ix_letters_user_status", "letters", ["user_id", "status"])
    op.create_index("ix_letters_status_created_at", "letters", ["status", "created_at"])

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("profiles.id"), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("plan", sa.String(), nullable=False),
        sa.Column("plan_type", sa.String(), nullable=False),
        sa.Column("price", sa.Numeric(18, 6), nullable=False),
        sa.Column("discount", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("credits_remaining", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("allowance_granted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("coupon_code", sa.String(), nullable=True),
        sa.Column("payment_session_id", sa.String(), nullable=True),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_reset_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("payment_session_id", name="uq_subscriptions_payment_session_id"),
        # Balance can never go negative even if a caller bypasses the ledger.
        sa.CheckConstraint("credits_remaining >= 0", name="ck_subscriptions_credits_non_negative"),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    op.create_index(
        "ix_subscriptions_user_status_created",
        "subscriptions",
        ["user_id", "status", "created_at"],
    )

    op.create_table(
        "employee_coupons",
        sa.Column("code", sa.String(), primary_key=True),
        sa.Column("employee_id", sa.String(), sa.ForeignKey("profiles.id"), nullable=True),
        sa.Column("discount_percent", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_employee_coupons_employee_id", "employee_coupons", ["employee_id"])

    op.create_table(
        "commissions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("employee_id", sa.String(), sa.ForeignKey("profiles.id"), nullable=False),
        sa.Column("subscription_id", sa.String(), sa.ForeignKey("subscriptions.id"), nullable=False),
        sa.Column("subscription_amount", sa.Numeric(18, 6), nullable=False),
        sa.Column("commission_rate", sa.Numeric(6, 4), nullable=False),
        sa.Column("commission_amount", sa.Numeric(18, 6), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("subscription_id", name="uq_commissions_subscription"),
    )
    op.create_index("ix_commissions_employee_id", "commissions", ["employee_id"])

    op.create_table(
        "coupon_usage",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("coupon_code", sa.String(), nullable=False),
        sa.Column("employee_id", sa.String(), nullable=True),
        sa.Column("subscription_id", sa.String(), nullable=True),
        sa.Column("discount_percent", sa.Numeric(18, 6), nullable=False),
        sa.Column("amount_before", sa.Numeric(18, 6), nullable=False),
        sa.Column("amount_after", sa.Numeric(18, 6), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_coupon_usage_user_id", "coupon_usage", ["user_id"])
    op.create_index("ix_coupon_usage_coupon_code", "coupon_usage", ["coupon_code"])

    op.create_table(
        "letter_audit_trail",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        # No foreign key: deletion records must outlive the letter row.
        sa.Column("letter_id", sa.String(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("old_status", sa.String(), nullable=True),
        sa.Column("new_status", sa.String(), nullable=True),
        sa.Column("performed_by", sa.String(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_letter_audit_letter_created",
        "letter_audit_trail",
        ["letter_id", "created_at", "id"],
    )
    op.create_index("ix_letter_audit_action", "letter_audit_trail", ["action"])


def downgrade() -> None:
    op.drop_index("ix_letter_audit_action", table_name="letter_audit_trail")
    op.drop_index("ix_letter_audit_letter_created", table_name="letter_audit_trail")
    op.drop_table("letter_audit_trail")
    op.drop_index("ix_coupon_usage_coupon_code", table_name="coupon_usage")
    op.drop_index("ix_coupon_usage_user_id", table_name="coupon_usage")
    op.drop_table("coupon_usage")
    op.drop_index("ix_commissions_employee_id", table_name="commissions")
    op.drop_table("commissions")
    op.drop_index("ix_employee_coupons_employee_id", table_name="employee_coupons")
    op.drop_table("employee_coupons")
    op.drop_index("ix_subscriptions_user_status_created", table_name="subscriptions")
    op.drop_index("ix_subscriptions_user_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("ix_letters_status_created_at", table_name="letters")
    op.drop_index("ix_letters_user_status", table_name="letters")
    op.drop_index("ix_letters_user_id", table_name="letters")
    op.drop_table("letters")
    op.drop_index("ix_api_keys_key_hash", table_name="api_keys")
    op.drop_index("ix_api_keys_profile_id", table_name="api_keys")
    op.drop_table("api_keys")
    op.drop_table("profiles")
