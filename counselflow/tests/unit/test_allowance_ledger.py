from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from counselflow.core.config import get_settings
from counselflow.core.errors import AllowanceExhausted, NotFound
from counselflow.domain.models import Subscription
from counselflow.persistence.db import SessionLocal
from counselflow.services.allowance import (
    SOURCE_SUBSCRIPTION,
    SOURCE_TRIAL,
    SOURCE_UNLIMITED,
    AllowanceLedger,
    plan_letters,
)
from counselflow.tests.utils.seed import (
    create_profile,
    create_subscription,
    get_profile_row,
    get_subscription_row,
)


async def _deduct_once(ledger: AllowanceLedger, user_id: str) -> bool:
    async with SessionLocal() as session:
        deducted = await ledger.deduct(session, user_id)
        await session.commit()
        return deducted


def test_plan_catalog_defaults_to_one_letter() -> None:
    assert plan_letters("monthly") == 4
    assert plan_letters("premium_8_month") == 8
    assert plan_letters("unknown-plan") == 1


@pytest.mark.asyncio
async def test_check_allowance_sums_active_subscriptions() -> None:
    user_id = await create_profile()
    await create_subscription(user_id, credits=2)
    await create_subscription(user_id, credits=1, plan_type="one_time")
    # Outside its period window; does not count.
    await create_subscription(
        user_id,
        credits=5,
        period_start=datetime.now(timezone.utc) - timedelta(days=60),
        period_end=datetime.now(timezone.utc) - timedelta(days=30),
    )
    await create_subscription(user_id, credits=7, status="canceled")

    async with SessionLocal() as session:
        status = await AllowanceLedger().check_allowance(session, user_id)

    assert status.has_allowance is True
    assert status.remaining == 3
    assert status.is_unlimited is False
    assert status.trial_available is True


@pytest.mark.asyncio
async def test_check_allowance_reports_unlimited_from_profile_flag() -> None:
    user_id = await create_profile(is_super_user=True)
    async with SessionLocal() as session:
        status = await AllowanceLedger().check_allowance(session, user_id)
    assert status.is_unlimited is True
    assert status.has_allowance is True
    assert status.remaining == 0
    assert status.trial_available is False


@pytest.mark.asyncio
async def test_check_allowance_unknown_profile() -> None:
    async with SessionLocal() as session:
        with pytest.raises(NotFound):
            await AllowanceLedger().check_allowance(session, "missing-user")


@pytest.mark.asyncio
async def test_concurrent_deducts_consume_last_credit_once() -> None:
    user_id = await create_profile(total_letters_submitted=3)
    subscription_id = await create_subscription(user_id, credits=1)
    ledger = AllowanceLedger()

    results = await asyncio.gather(*[_deduct_once(ledger, user_id) for _ in range(5)])

    assert results.count(True) == 1
    subscription = await get_subscription_row(subscription_id)
    assert subscription.credits_remaining == 0


@pytest.mark.asyncio
async def test_concurrent_deducts_never_go_negative() -> None:
    user_id = await create_profile(total_letters_submitted=3)
    subscription_id = await create_subscription(user_id, credits=3)
    ledger = AllowanceLedger()

    results = await asyncio.gather(*[_deduct_once(ledger, user_id) for _ in range(6)])

    assert results.count(True) == 3
    subscription = await get_subscription_row(subscription_id)
    assert subscription.credits_remaining == 0


@pytest.mark.asyncio
async def test_deduct_moves_to_next_subscription_when_newest_is_empty() -> None:
    user_id = await create_profile(total_letters_submitted=1)
    now = datetime.now(timezone.utc)
    older_id = await create_subscription(user_id, credits=1, created_at=now - timedelta(days=3))
    newer_id = await create_subscription(user_id, credits=0, created_at=now - timedelta(hours=1))

    assert await _deduct_once(AllowanceLedger(), user_id) is True
    assert (await get_subscription_row(older_id)).credits_remaining == 0
    assert (await get_subscription_row(newer_id)).credits_remaining == 0
    assert await _deduct_once(AllowanceLedger(), user_id) is False


@pytest.mark.asyncio
async def test_grant_is_idempotent_per_subscription() -> None:
    user_id = await create_profile()
    subscription_id = await create_subscription(user_id, credits=0)
    async with SessionLocal() as session:
        # Seeded rows are already granted; reopen the grant to exercise the first application.
        subscription = await session.get(Subscription, subscription_id)
        subscription.allowance_granted = False
        await session.commit()

    ledger = AllowanceLedger()
    async with SessionLocal() as session:
        first = await ledger.grant(session, subscription_id, "monthly")
        second = await ledger.grant(session, subscription_id, "monthly")
        await session.commit()

    assert first is True
    assert second is False
    assert (await get_subscription_row(subscription_id)).credits_remaining == 4


@pytest.mark.asyncio
async def test_refund_unknown_subscription() -> None:
    async with SessionLocal() as session:
        with pytest.raises(NotFound):
            await AllowanceLedger().refund(session, "missing-subscription")


@pytest.mark.asyncio
async def test_charge_letter_prefers_trial_then_subscription() -> None:
    user_id = await create_profile()
    subscription_id = await create_subscription(user_id, credits=1)
    ledger = AllowanceLedger()

    async with SessionLocal() as session:
        first = await ledger.charge_letter(session, user_id)
        await session.commit()
    async with SessionLocal() as session:
        second = await ledger.charge_letter(session, user_id)
        await session.commit()
    async with SessionLocal() as session:
        with pytest.raises(AllowanceExhausted) as exc_info:
            await ledger.charge_letter(session, user_id)
        await session.rollback()

    assert first.source == SOURCE_TRIAL
    assert second.source == SOURCE_SUBSCRIPTION
    assert second.subscription_id == subscription_id
    assert exc_info.value.details == {"needs_subscription": True}
    assert (await get_profile_row(user_id)).total_letters_submitted == 2


@pytest.mark.asyncio
async def test_charge_letter_skips_trial_when_disabled(monkeypatch) -> None:
    monkeypatch.setenv("FREE_TRIAL_ENABLED", "false")
    get_settings.cache_clear()
    user_id = await create_profile()
    async with SessionLocal() as session:
        with pytest.raises(AllowanceExhausted):
            await AllowanceLedger().charge_letter(session, user_id)
        await session.rollback()
    assert (await get_profile_row(user_id)).total_letters_submitted == 0


@pytest.mark.asyncio
async def test_unlimited_user_bypasses_credits() -> None:
    user_id = await create_profile(is_super_user=True)
    subscription_id = await create_subscription(user_id, credits=1)
    async with SessionLocal() as session:
        charge = await AllowanceLedger().charge_letter(session, user_id)
        await session.commit()
    assert charge.source == SOURCE_UNLIMITED
    assert charge.subscription_id is None
    assert (await get_subscription_row(subscription_id)).credits_remaining == 1


@pytest.mark.asyncio
async def test_release_charge_restores_credit_and_trial() -> None:
    user_id = await create_profile()
    subscription_id = await create_subscription(user_id, credits=1)
    ledger = AllowanceLedger()

    async with SessionLocal() as session:
        trial = await ledger.charge_letter(session, user_id)
        paid = await ledger.charge_letter(session, user_id)
        await session.commit()
    async with SessionLocal() as session:
        await ledger.release_charge(
            session, user_id=user_id, source=paid.source, subscription_id=paid.subscription_id
        )
        await ledger.release_charge(
            session, user_id=user_id, source=trial.source, subscription_id=trial.subscription_id
        )
        await session.commit()

    assert (await get_subscription_row(subscription_id)).credits_remaining == 1
    assert (await get_profile_row(user_id)).total_letters_submitted == 0


@pytest.mark.asyncio
async def test_monthly_reset_runs_once_per_month() -> None:
    user_id = await create_profile()
    now = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
    recurring_id = await create_subscription(
        user_id,
        credits=0,
        plan_type="monthly",
        period_start=datetime(2026, 1, 15, tzinfo=timezone.utc),
        period_end=datetime(2026, 12, 15, tzinfo=timezone.utc),
        last_reset_at=datetime(2026, 2, 3, tzinfo=timezone.utc),
    )
    one_time_id = await create_subscription(
        user_id,
        credits=0,
        plan_type="one_time",
        period_start=datetime(2026, 1, 15, tzinfo=timezone.utc),
        period_end=datetime(2026, 12, 15, tzinfo=timezone.utc),
        last_reset_at=datetime(2026, 2, 3, tzinfo=timezone.utc),
    )
    ledger = AllowanceLedger(time_provider=lambda: now)

    async with SessionLocal() as session:
        first = await ledger.reset_monthly_allowances(session)
    async with SessionLocal() as session:
        second = await ledger.reset_monthly_allowances(session)

    assert first == 1
    assert second == 0
    assert (await get_subscription_row(recurring_id)).credits_remaining == 4
    assert (await get_subscription_row(one_time_id)).credits_remaining == 0


@pytest.mark.asyncio
async def test_period_end_instant_is_still_active() -> None:
    user_id = await create_profile(total_letters_submitted=1)
    period_end = datetime(2026, 4, 1, 0, 0, tzinfo=timezone.utc)
    await create_subscription(
        user_id,
        credits=2,
        period_start=datetime(2026, 3, 1, tzinfo=timezone.utc),
        period_end=period_end,
    )

    async with SessionLocal() as session:
        at_end = await AllowanceLedger(time_provider=lambda: period_end).check_allowance(session, user_id)
    async with SessionLocal() as session:
        after_end = await AllowanceLedger(
            time_provider=lambda: period_end + timedelta(seconds=1)
        ).check_allowance(session, user_id)

    assert at_end.remaining == 2
    assert at_end.plan == "monthly"
    assert after_end.remaining == 0
    assert after_end.plan is None
