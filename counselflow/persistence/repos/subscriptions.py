from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Iterable

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from counselflow.domain.models import Subscription


STATUS_ACTIVE = "active"


def _in_period(now: datetime):
    # Active inside the closed period window [start, end] when one is set.
    return and_(
        Subscription.status == STATUS_ACTIVE,
        or_(Subscription.current_period_start.is_(None), Subscription.current_period_start <= now),
        or_(Subscription.current_period_end.is_(None), Subscription.current_period_end >= now),
    )


async def get_by_payment_session(session: AsyncSession, payment_session_id: str) -> Subscription | None:
    result = await session.execute(
        select(Subscription).where(Subscription.payment_session_id == payment_session_id)
    )
    return result.scalar_one_or_none()


async def get_active_subscription(
    session: AsyncSession, user_id: str, *, now: datetime
) -> Subscription | None:
    result = await session.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id, _in_period(now))
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def sum_active_credits(session: AsyncSession, user_id: str, *, now: datetime) -> int:
    result = await session.execute(
        select(func.coalesce(func.sum(Subscription.credits_remaining), 0)).where(
            Subscription.user_id == user_id, _in_period(now)
        )
    )
    return int(result.scalar() or 0)


async def create_subscription(
    session: AsyncSession,
    *,
    subscription_id: str,
    user_id: str,
    plan_type: str,
    price: Decimal,
    discount: Decimal,
    coupon_code: str | None,
    payment_session_id: str | None,
    period_start: datetime,
    period_end: datetime | None,
) -> Subscription:
    # Credits start at zero; grant() tops them up exactly once.
    subscription = Subscription(
        id=subscription_id,
        user_id=user_id,
        status=STATUS_ACTIVE,
        plan=plan_type,
        plan_type=plan_type,
        price=price,
        discount=discount,
        credits_remaining=0,
        allowance_granted=False,
        coupon_code=coupon_code,
        payment_session_id=payment_session_id,
        current_period_start=period_start,
        current_period_end=period_end,
        last_reset_at=period_start,
        created_at=period_start,
    )
    session.add(subscription)
    return subscription


async def deduct_credit(session: AsyncSession, user_id: str, *, now: datetime) -> str | None:
    # Single compare-and-decrement; returns the debited subscription id or None.
    candidate = (
        select(Subscription.id)
        .where(
            Subscription.user_id == user_id,
            Subscription.credits_remaining > 0,
            _in_period(now),
        )
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .limit(1)
        .scalar_subquery()
    )
    result = await session.execute(
        update(Subscription)
        .where(Subscription.id == candidate, Subscription.credits_remaining > 0)
        .values(credits_remaining=Subscription.credits_remaining - 1, updated_at=now)
        .returning(Subscription.id)
        .execution_options(synchronize_session=False)
    )
    return result.scalar_one_or_none()


async def refund_credit(session: AsyncSession, subscription_id: str, *, units: int, now: datetime) -> bool:
    result = await session.execute(
        update(Subscription)
        .where(Subscription.id == subscription_id)
        .values(credits_remaining=Subscription.credits_remaining + units, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def grant_credits(
    session: AsyncSession, subscription_id: str, *, letters: int, now: datetime
) -> bool:
    # Flip allowance_granted in the same statement that adds credits; a repeat grant matches no rows.
    result = await session.execute(
        update(Subscription)
        .where(Subscription.id == subscription_id, Subscription.allowance_granted.is_(False))
        .values(
            credits_remaining=Subscription.credits_remaining + letters,
            allowance_granted=True,
            last_reset_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def list_due_for_reset(
    session: AsyncSession, *, plan_types: Iterable[str], month_start: datetime, now: datetime
) -> list[Subscription]:
    result = await session.execute(
        select(Subscription).where(
            _in_period(now),
            Subscription.plan_type.in_(list(plan_types)),
            or_(Subscription.last_reset_at.is_(None), Subscription.last_reset_at < month_start),
        )
    )
    return list(result.scalars().all())


async def reset_credits(
    session: AsyncSession,
    subscription_id: str,
    *,
    letters: int,
    month_start: datetime,
    now: datetime,
) -> bool:
    # Re-check the reset window in the write so overlapping cron runs reset once.
    result = await session.execute(
        update(Subscription)
        .where(
            Subscription.id == subscription_id,
            or_(Subscription.last_reset_at.is_(None), Subscription.last_reset_at < month_start),
        )
        .values(credits_remaining=letters, last_reset_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
