from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Prefer JSONB on Postgres while keeping SQLite usable for tests.
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")
# Keep full precision for money; round only when rendering.
Money = Numeric(18, 6)


class Base(DeclarativeBase):
    pass


class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    full_name: Mapped[str | None] = mapped_column(String, nullable=True)
    # subscriber | employee | admin
    role: Mapped[str] = mapped_column(String, default="subscriber", nullable=False)
    # super_admin | attorney_admin for admins, null otherwise.
    admin_sub_role: Mapped[str | None] = mapped_column(String, nullable=True)
    # Unlimited letters granted by a super coupon; bypasses the allowance ledger.
    is_super_user: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Submissions that consumed a trial, a credit or unlimited access; 0 means trial available.
    total_letters_submitted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ApiKey(Base):
    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    profile_id: Mapped[str] = mapped_column(String, ForeignKey("profiles.id"), index=True)
    # Keep a short prefix for operator display without exposing the secret.
    key_prefix: Mapped[str] = mapped_column(String)
    # Store only the hashed key to avoid plaintext credentials at rest.
    key_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Letter(Base):
    __tablename__ = "letters"
    __table_args__ = (
        Index("ix_letters_user_status", "user_id", "status"),
        Index("ix_letters_status_created_at", "status", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("profiles.id"), index=True)
    status: Mapped[str] = mapped_column(String, nullable=False)
    title: Mapped[str] = mapped_column(String, nullable=False)
    letter_type: Mapped[str | None] = mapped_column(String, nullable=True)
    intake_data: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    ai_draft_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    final_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # How the letter was paid for: trial | unlimited | subscription.
    allowance_source: Mapped[str | None] = mapped_column(String, nullable=True)
    # Subscription debited for this letter, used to refund failed generations.
    charged_subscription_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_user_status_created", "user_id", "status", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("profiles.id"), index=True)
    # active | canceled | past_due
    status: Mapped[str] = mapped_column(String, nullable=False)
    plan: Mapped[str] = mapped_column(String, nullable=False)
    plan_type: Mapped[str] = mapped_column(String, nullable=False)
    price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    discount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    # Allowance ledger balance; never negative.
    credits_remaining: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Flipped once by grant() so duplicate confirmations never double-credit.
    allowance_granted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    coupon_code: Mapped[str | None] = mapped_column(String, nullable=True)
    # Provider checkout session id; unique so confirmations are idempotent.
    payment_session_id: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    current_period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_reset_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class EmployeeCoupon(Base):
    __tablename__ = "employee_coupons"

    code: Mapped[str] = mapped_column(String, primary_key=True)
    # Null for promotional codes that no employee owns.
    employee_id: Mapped[str | None] = mapped_column(String, ForeignKey("profiles.id"), nullable=True, index=True)
    discount_percent: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Commission(Base):
    __tablename__ = "commissions"
    __table_args__ = (
        UniqueConstraint("subscription_id", name="uq_commissions_subscription"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    employee_id: Mapped[str] = mapped_column(String, ForeignKey("profiles.id"), index=True)
    subscription_id: Mapped[str] = mapped_column(String, ForeignKey("subscriptions.id"))
    subscription_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False)
    commission_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    # pending | paid
    status: Mapped[str] = mapped_column(String, default="pending", nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class CouponUsage(Base):
    __tablename__ = "coupon_usage"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    coupon_code: Mapped[str] = mapped_column(String, index=True)
    employee_id: Mapped[str | None] = mapped_column(String, nullable=True)
    subscription_id: Mapped[str | None] = mapped_column(String, nullable=True)
    discount_percent: Mapped[Decimal] = mapped_column(Money, nullable=False)
    amount_before: Mapped[Decimal] = mapped_column(Money, nullable=False)
    amount_after: Mapped[Decimal] = mapped_column(Money, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class LetterAuditTrail(Base):
    __tablename__ = "letter_audit_trail"
    __table_args__ = (
        Index("ix_letter_audit_letter_created", "letter_id", "created_at", "id"),
        Index("ix_letter_audit_action", "action"),
    )

    # Monotonic id breaks created_at ties so insertion order is recoverable.
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    # Not a foreign key: deletion records must outlive the letter row.
    letter_id: Mapped[str] = mapped_column(String, nullable=False)
    action: Mapped[str] = mapped_column(String, nullable=False)
    old_status: Mapped[str | None] = mapped_column(String, nullable=True)
    new_status: Mapped[str | None] = mapped_column(String, nullable=True)
    performed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
