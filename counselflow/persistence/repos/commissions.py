from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from counselflow.domain.models import Commission, CouponUsage, EmployeeCoupon


COMMISSION_PENDING = "pending"
COMMISSION_PAID = "paid"


async def get_coupon(session: AsyncSession, code: str) -> EmployeeCoupon | None:
    result = await session.execute(select(EmployeeCoupon).where(EmployeeCoupon.code == code))
    return result.scalar_one_or_none()


async def increment_coupon_usage(session: AsyncSession, code: str) -> bool:
    # Increment in SQL so concurrent redemptions never lose an update.
    result = await session.execute(
        update(EmployeeCoupon)
        .where(EmployeeCoupon.code == code)
        .values(usage_count=EmployeeCoupon.usage_count + 1, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def create_coupon_usage(
    session: AsyncSession,
    *,
    usage_id: str,
    user_id: str,
    coupon_code: str,
    employee_id: str | None,
    subscription_id: str | None,
    discount_percent: Decimal,
    amount_before: Decimal,
    amount_after: Decimal,
) -> CouponUsage:
    usage = CouponUsage(
        id=usage_id,
        user_id=user_id,
        coupon_code=coupon_code,
        employee_id=employee_id,
        subscription_id=subscription_id,
        discount_percent=discount_percent,
        amount_before=amount_before,
        amount_after=amount_after,
    )
    session.add(usage)
    return usage


async def create_commission(
    session: AsyncSession,
    *,
    commission_id: str,
    employee_id: str,
    subscription_id: str,
    subscription_amount: Decimal,
    commission_rate: Decimal,
) -> Commission:
    commission = Commission(
        id=commission_id,
        employee_id=employee_id,
        subscription_id=subscription_id,
        subscription_amount=subscription_amount,
        commission_rate=commission_rate,
        commission_amount=subscription_amount * commission_rate,
        status=COMMISSION_PENDING,
    )
    session.add(commission)
    return commission


async def get_commission(session: AsyncSession, commission_id: str) -> Commission | None:
    result = await session.execute(select(Commission).where(Commission.id == commission_id))
    return result.scalar_one_or_none()


async def list_commissions_for_employee(session: AsyncSession, employee_id: str) -> list[Commission]:
    result = await session.execute(
        select(Commission)
        .where(Commission.employee_id == employee_id)
        .order_by(Commission.created_at.desc(), Commission.id)
    )
    return list(result.scalars().all())


async def mark_paid(session: AsyncSession, commission_id: str, *, now: datetime) -> bool:
    # Only pending commissions flip; paying twice matches no rows.
    result = await session.execute(
        update(Commission)
        .where(Commission.id == commission_id, Commission.status == COMMISSION_PENDING)
        .values(status=COMMISSION_PAID, paid_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
