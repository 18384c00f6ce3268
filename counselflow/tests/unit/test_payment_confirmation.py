from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from counselflow.core.errors import ConflictError, Forbidden, NotFound, ValidationError
from counselflow.domain.models import Commission, CouponUsage, EmployeeCoupon, Subscription
from counselflow.persistence.db import SessionLocal
from counselflow.providers.payments.fake import FakePaymentProvider
from counselflow.services import commissions
from counselflow.tests.utils.seed import (
    admin,
    create_coupon,
    create_profile,
    get_profile_row,
    get_subscription_row,
    subscriber,
)


async def _count(model) -> int:
    async with SessionLocal() as session:
        return int((await session.execute(select(func.count()).select_from(model))).scalar() or 0)


async def _coupon(code: str) -> EmployeeCoupon:
    async with SessionLocal() as session:
        return await session.get(EmployeeCoupon, code)


def _metadata(user_id: str, **overrides: str) -> dict[str, str]:
    # Checkout metadata values arrive as strings.
    metadata = {
        "userId": user_id,
        "planType": "monthly",
        "letters": "4",
        "basePrice": "299.00",
        "discount": "0",
        "finalPrice": "299.00",
        "couponCode": "",
        "employeeId": "",
        "isSuperUserCoupon": "false",
    }
    metadata.update(overrides)
    return metadata


async def _confirm(provider: FakePaymentProvider, session_id: str, actor=None) -> commissions.PaymentConfirmation:
    async with SessionLocal() as session:
        return await commissions.confirm_payment(session, session_id=session_id, actor=actor, provider=provider)


@pytest.mark.asyncio
async def test_confirm_creates_subscription_with_credits() -> None:
    user_id = await create_profile()
    provider = FakePaymentProvider()
    provider.add_session("cs_basic", metadata=_metadata(user_id))

    confirmation = await _confirm(provider, "cs_basic", actor=subscriber(user_id))

    assert confirmation.created is True
    assert confirmation.letters == 4
    assert confirmation.commission_id is None
    subscription = await get_subscription_row(confirmation.subscription_id)
    assert subscription.credits_remaining == 4
    assert subscription.allowance_granted is True
    assert subscription.status == "active"
    assert subscription.price == Decimal("299.00")


@pytest.mark.asyncio
async def test_employee_coupon_creates_one_commission() -> None:
    user_id = await create_profile()
    employee_id = await create_profile(role="employee", email="rep@example.com")
    await create_coupon("SAVE20", employee_id=employee_id, discount_percent=20)
    provider = FakePaymentProvider()
    provider.add_session(
        "cs_coupon",
        metadata=_metadata(
            user_id,
            basePrice="299.00",
            discount="59.80",
            finalPrice="239.20",
            couponCode="save20",
            employeeId=employee_id,
        ),
    )

    confirmation = await _confirm(provider, "cs_coupon")

    assert confirmation.commission_id is not None
    async with SessionLocal() as session:
        commission = await session.get(Commission, confirmation.commission_id)
        usage = (await session.execute(select(CouponUsage))).scalar_one()
    assert commission.employee_id == employee_id
    assert commission.commission_rate == Decimal("0.05")
    assert commission.commission_amount == Decimal("11.96")
    assert commission.status == "pending"
    assert usage.coupon_code == "SAVE20"
    assert usage.discount_percent == Decimal("20")
    assert (await _coupon("SAVE20")).usage_count == 1


@pytest.mark.asyncio
async def test_full_discount_coupon_earns_no_commission() -> None:
    user_id = await create_profile()
    employee_id = await create_profile(role="employee")
    await create_coupon("TALK3", employee_id=employee_id, discount_percent=100)
    provider = FakePaymentProvider()
    provider.add_session(
        "cs_talk3",
        metadata=_metadata(
            user_id,
            basePrice="299.00",
            discount="299.00",
            finalPrice="0",
            couponCode="TALK3",
            employeeId=employee_id,
        ),
    )

    confirmation = await _confirm(provider, "cs_talk3")

    assert confirmation.created is True
    assert confirmation.commission_id is None
    assert await _count(Commission) == 0
    assert await _count(CouponUsage) == 1
    assert (await _coupon("TALK3")).usage_count == 1
    subscription = await get_subscription_row(confirmation.subscription_id)
    assert subscription.price == Decimal("0")


@pytest.mark.asyncio
async def test_super_user_coupon_flags_profile_without_commission() -> None:
    user_id = await create_profile()
    employee_id = await create_profile(role="employee")
    provider = FakePaymentProvider()
    provider.add_session(
        "cs_super",
        metadata=_metadata(
            user_id,
            finalPrice="199.00",
            couponCode="UNLIMITED",
            employeeId=employee_id,
            isSuperUserCoupon="true",
        ),
    )

    confirmation = await _confirm(provider, "cs_super")

    assert confirmation.commission_id is None
    assert await _count(Commission) == 0
    assert (await get_profile_row(user_id)).is_super_user is True


@pytest.mark.asyncio
async def test_repeat_confirmation_has_no_new_side_effects() -> None:
    user_id = await create_profile()
    employee_id = await create_profile(role="employee")
    await create_coupon("SAVE10", employee_id=employee_id, discount_percent=10)
    provider = FakePaymentProvider()
    provider.add_session(
        "cs_repeat",
        metadata=_metadata(user_id, discount="29.90", finalPrice="269.10", couponCode="SAVE10", employeeId=employee_id),
    )

    first = await _confirm(provider, "cs_repeat")
    second = await _confirm(provider, "cs_repeat")

    assert first.created is True
    assert second.created is False
    assert second.subscription_id == first.subscription_id
    assert provider.lookups == 1
    assert await _count(Subscription) == 1
    assert await _count(Commission) == 1
    assert (await _coupon("SAVE10")).usage_count == 1
    assert (await get_subscription_row(first.subscription_id)).credits_remaining == 4


@pytest.mark.asyncio
async def test_concurrent_confirmations_write_once() -> None:
    user_id = await create_profile()
    employee_id = await create_profile(role="employee")
    await create_coupon("SAVE10", employee_id=employee_id, discount_percent=10)
    provider = FakePaymentProvider()
    provider.add_session(
        "cs_race",
        metadata=_metadata(user_id, discount="29.90", finalPrice="269.10", couponCode="SAVE10", employeeId=employee_id),
    )

    results = await asyncio.gather(*[_confirm(provider, "cs_race") for _ in range(3)])

    assert sum(1 for item in results if item.created) == 1
    assert len({item.subscription_id for item in results}) == 1
    assert await _count(Subscription) == 1
    assert await _count(Commission) == 1
    assert await _count(CouponUsage) == 1
    assert (await _coupon("SAVE10")).usage_count == 1
    assert (await get_subscription_row(results[0].subscription_id)).credits_remaining == 4


@pytest.mark.asyncio
async def test_unpaid_session_is_rejected() -> None:
    user_id = await create_profile()
    provider = FakePaymentProvider()
    provider.add_session("cs_open", metadata=_metadata(user_id), payment_status="unpaid")
    with pytest.raises(ValidationError):
        await _confirm(provider, "cs_open")
    assert await _count(Subscription) == 0


@pytest.mark.asyncio
async def test_unknown_session_is_not_found() -> None:
    with pytest.raises(NotFound):
        await _confirm(FakePaymentProvider(), "cs_missing")


@pytest.mark.asyncio
async def test_missing_metadata_is_rejected() -> None:
    provider = FakePaymentProvider()
    provider.add_session("cs_bare", metadata={"letters": "4"})
    with pytest.raises(ValidationError):
        await _confirm(provider, "cs_bare")


@pytest.mark.asyncio
async def test_confirming_another_users_payment_is_forbidden() -> None:
    user_id = await create_profile()
    provider = FakePaymentProvider()
    provider.add_session("cs_other", metadata=_metadata(user_id))
    with pytest.raises(Forbidden):
        await _confirm(provider, "cs_other", actor=subscriber("someone-else"))
    assert await _count(Subscription) == 0


@pytest.mark.asyncio
async def test_mark_commission_paid_once() -> None:
    user_id = await create_profile()
    employee_id = await create_profile(role="employee")
    await create_coupon("SAVE10", employee_id=employee_id, discount_percent=10)
    provider = FakePaymentProvider()
    provider.add_session(
        "cs_payout",
        metadata=_metadata(user_id, discount="29.90", finalPrice="269.10", couponCode="SAVE10", employeeId=employee_id),
    )
    confirmation = await _confirm(provider, "cs_payout")
    super_admin = admin("finance-1", "super_admin")

    async with SessionLocal() as session:
        paid = await commissions.mark_commission_paid(
            session, commission_id=confirmation.commission_id, actor=super_admin
        )
        assert paid.status == "paid"
        assert paid.paid_at is not None
    async with SessionLocal() as session:
        with pytest.raises(ConflictError):
            await commissions.mark_commission_paid(
                session, commission_id=confirmation.commission_id, actor=super_admin
            )


@pytest.mark.asyncio
async def test_attorney_admin_cannot_mark_commission_paid() -> None:
    async with SessionLocal() as session:
        with pytest.raises(Forbidden):
            await commissions.mark_commission_paid(session, commission_id="any", actor=admin("reviewer-1"))


@pytest.mark.asyncio
async def test_commission_summary_rounds_for_display() -> None:
    employee_id = await create_profile(role="employee")
    await create_coupon("REP5", employee_id=employee_id, discount_percent=5)
    provider = FakePaymentProvider()
    for index, final_price in enumerate(["10.10", "10.30"]):
        user_id = await create_profile()
        provider.add_session(
            f"cs_sum_{index}",
            metadata=_metadata(user_id, finalPrice=final_price, couponCode="REP5", employeeId=employee_id),
        )
        await _confirm(provider, f"cs_sum_{index}")

    async with SessionLocal() as session:
        summary = await commissions.summarize_commissions(session, employee_id)

    # 0.505 + 0.515 stored exactly; only the total is rounded.
    assert summary.pending_count == 2
    assert summary.pending_total == Decimal("1.02")
    assert summary.paid_count == 0
    assert summary.paid_total == Decimal("0.00")
    assert sorted(item.commission_amount for item in summary.items) == [Decimal("0.505"), Decimal("0.515")]


def test_to_display_rounds_half_up() -> None:
    assert commissions.to_display(Decimal("0.005")) == Decimal("0.01")
    assert commissions.to_display(Decimal("11.964999")) == Decimal("11.96")
    assert commissions.to_display(None) == Decimal("0.00")


async def _checkout(user_id: str, plan_type: str, coupon_code: str | None = None, provider=None):
    async with SessionLocal() as session:
        return await commissions.start_checkout(
            session,
            actor=subscriber(user_id),
            plan_type=plan_type,
            coupon_code=coupon_code,
            provider=provider or FakePaymentProvider(),
        )


@pytest.mark.asyncio
async def test_quote_applies_active_coupon_discount() -> None:
    employee_id = await create_profile(role="employee")
    await create_coupon("SAVE10", employee_id=employee_id, discount_percent=10)
    async with SessionLocal() as session:
        quote = await commissions.quote_checkout(session, plan_type="standard_4_month", coupon_code=" save10 ")

    assert quote.coupon_code == "SAVE10"
    assert quote.base_price == Decimal("299")
    assert quote.discount == Decimal("29.9")
    assert quote.final_price == Decimal("269.1")
    assert quote.employee_id == employee_id
    assert quote.is_super_user_coupon is False


@pytest.mark.asyncio
async def test_quote_rejects_inactive_or_unknown_coupon_and_plan() -> None:
    employee_id = await create_profile(role="employee")
    await create_coupon("RETIRED", employee_id=employee_id, discount_percent=20, is_active=False)
    async with SessionLocal() as session:
        with pytest.raises(ValidationError):
            await commissions.quote_checkout(session, plan_type="one_time", coupon_code="RETIRED")
        with pytest.raises(ValidationError):
            await commissions.quote_checkout(session, plan_type="one_time", coupon_code="NOPE")
        with pytest.raises(ValidationError):
            await commissions.quote_checkout(session, plan_type="lifetime")


@pytest.mark.asyncio
async def test_full_coupon_checkout_is_free_and_grants_super_status() -> None:
    user_id = await create_profile()
    employee_id = await create_profile(role="employee")
    await create_coupon("FULLRIDE", employee_id=employee_id, discount_percent=100)
    provider = FakePaymentProvider()

    result = await _checkout(user_id, "premium_8_month", "FULLRIDE", provider=provider)

    assert result.quote.final_price == 0
    assert result.quote.is_super_user_coupon is True
    assert result.session_id is None
    assert result.commission_id is None
    assert provider.created == []
    subscription = await get_subscription_row(result.subscription_id)
    assert subscription.price == Decimal("0")
    assert subscription.credits_remaining == 8
    assert (await get_profile_row(user_id)).is_super_user is True
    assert await _count(Commission) == 0
    assert await _count(CouponUsage) == 1
    assert (await _coupon("FULLRIDE")).usage_count == 0


@pytest.mark.asyncio
async def test_free_promo_code_grants_plan_without_super_status() -> None:
    user_id = await create_profile()

    result = await _checkout(user_id, "one_time", "talk3")

    assert result.quote.final_price == 0
    assert result.quote.is_super_user_coupon is False
    assert result.quote.employee_id is None
    assert (await get_subscription_row(result.subscription_id)).credits_remaining == 1
    assert (await get_profile_row(user_id)).is_super_user is False
    assert await _count(Commission) == 0


@pytest.mark.asyncio
async def test_paid_checkout_opens_session_then_confirms() -> None:
    user_id = await create_profile()
    employee_id = await create_profile(role="employee")
    await create_coupon("SAVE10", employee_id=employee_id, discount_percent=10)
    provider = FakePaymentProvider()

    result = await _checkout(user_id, "standard_4_month", "SAVE10", provider=provider)

    assert result.subscription_id is None
    assert result.checkout_url == f"https://checkout.test/{result.session_id}"
    assert provider.created[0]["amount_cents"] == 26910
    assert provider.created[0]["client_reference_id"] == user_id
    assert await _count(Subscription) == 0

    provider.mark_paid(result.session_id)
    confirmation = await _confirm(provider, result.session_id, actor=subscriber(user_id))

    assert confirmation.created is True
    assert confirmation.letters == 4
    assert confirmation.commission_id is not None
    assert (await _coupon("SAVE10")).usage_count == 1


@pytest.mark.asyncio
async def test_unattributed_coupon_redemption_keeps_usage_count() -> None:
    user_id = await create_profile()
    await create_coupon("SPRING", employee_id=None, discount_percent=15)
    provider = FakePaymentProvider()
    provider.add_session(
        "cs_spring",
        metadata=_metadata(user_id, discount="44.85", finalPrice="254.15", couponCode="SPRING"),
    )

    confirmation = await _confirm(provider, "cs_spring")

    assert confirmation.commission_id is None
    assert await _count(CouponUsage) == 1
    assert (await _coupon("SPRING")).usage_count == 0
