from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
import logging
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from counselflow.core.config import get_settings
from counselflow.core.errors import ConflictError, DependencyFailure, Forbidden, NotFound, ValidationError
from counselflow.domain.models import Commission, Profile
from counselflow.persistence.repos import commissions as commissions_repo
from counselflow.persistence.repos import profiles as profiles_repo
from counselflow.persistence.repos import subscriptions as subscriptions_repo
from counselflow.providers.payments.base import CheckoutSession, PaymentMetadata, PaymentProvider
from counselflow.providers.payments.factory import get_payment_provider
from counselflow.services.allowance import AllowanceLedger, get_allowance_ledger, plan_letters
from counselflow.services.auth.principal import Principal
from counselflow.services.notifications import (
    TEMPLATE_COMMISSION_EARNED,
    TEMPLATE_SUBSCRIPTION_CONFIRMATION,
    get_notification_dispatcher,
)
from counselflow.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


def to_display(amount: Decimal | None) -> Decimal:
    # Stored amounts keep full precision; round to cents only for presentation.
    return (amount or Decimal("0")).quantize(_CENT, rounding=ROUND_HALF_UP)


def commission_rate() -> Decimal:
    return Decimal(get_settings().commission_rate)


@dataclass(frozen=True)
class PaymentConfirmation:
    # Outcome of a confirmation; created is False for repeats of the same session.
    subscription_id: str
    created: bool
    letters: int
    commission_id: str | None = None


class CommissionView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    employee_id: str
    subscription_id: str
    subscription_amount: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    status: str
    paid_at: datetime | None = None
    created_at: datetime | None = None


class CommissionSummary(BaseModel):
    employee_id: str
    pending_count: int
    pending_total: Decimal
    paid_count: int
    paid_total: Decimal
    items: list[CommissionView]


def _parse_metadata(checkout: CheckoutSession) -> PaymentMetadata:
    try:
        return PaymentMetadata.model_validate(checkout.metadata)
    except PydanticValidationError as exc:
        raise ValidationError(
            "Missing session metadata",
            details={"errors": [error["loc"] for error in exc.errors()]},
        ) from exc


async def confirm_payment(
    session: AsyncSession,
    *,
    session_id: str,
    actor: Principal | None = None,
    provider: PaymentProvider | None = None,
    ledger: AllowanceLedger | None = None,
    now: datetime | None = None,
) -> PaymentConfirmation:
    """Turn one paid checkout session into a subscription and its bookkeeping.

    Runs at most once per ``session_id``: the subscription, its credit grant,
    the unlimited flag, the coupon usage row and any employee commission are
    written in one transaction. A repeat or concurrent confirmation of the
    same session returns the existing subscription without new side effects.
    """
    if not session_id or not session_id.strip():
        raise ValidationError("session_id is required")
    provider = provider or get_payment_provider()
    ledger = ledger or get_allowance_ledger()

    existing = await subscriptions_repo.get_by_payment_session(session, session_id)
    if existing is not None:
        _check_actor(actor, existing.user_id)
        return PaymentConfirmation(subscription_id=existing.id, created=False, letters=0)

    checkout = await provider.retrieve_session(session_id)
    increment_counter("payments.lookups")
    if checkout.payment_status != "paid":
        raise ValidationError("Payment not completed", details={"payment_status": checkout.payment_status})
    metadata = _parse_metadata(checkout)
    _check_actor(actor, metadata.user_id)

    profile = await profiles_repo.get_profile(session, metadata.user_id)
    if profile is None:
        raise ValidationError("Payment references an unknown user")
    return await _record_purchase(
        session,
        metadata=metadata,
        payment_session_id=session_id,
        profile=profile,
        ledger=ledger,
        now=now,
    )


async def _record_purchase(
    session: AsyncSession,
    *,
    metadata: PaymentMetadata,
    payment_session_id: str,
    profile: Profile,
    ledger: AllowanceLedger,
    now: datetime | None = None,
) -> PaymentConfirmation:
    # One transaction per payment session id; the unique column settles races.
    now = now or datetime.now(timezone.utc)
    period_days = get_settings().subscription_period_days
    subscription_id = str(uuid4())
    letters = metadata.letters if metadata.letters > 0 else None
    commission: Commission | None = None
    employee_id = metadata.employee_id
    try:
        await subscriptions_repo.create_subscription(
            session,
            subscription_id=subscription_id,
            user_id=metadata.user_id,
            plan_type=metadata.plan_type,
            price=metadata.final_price,
            discount=metadata.discount,
            coupon_code=metadata.coupon_code,
            payment_session_id=payment_session_id,
            period_start=now,
            period_end=now + timedelta(days=period_days),
        )
        # Surface a duplicate session id before any other side effect is queued.
        await session.flush()
        await ledger.grant(session, subscription_id, metadata.plan_type, letters=letters)

        if metadata.is_super_user_coupon:
            await profiles_repo.set_super_user(session, metadata.user_id)

        if metadata.coupon_code:
            coupon = await commissions_repo.get_coupon(session, metadata.coupon_code)
            if employee_id is None and coupon is not None:
                employee_id = coupon.employee_id
            discount_percent = (
                metadata.discount / metadata.base_price * 100 if metadata.base_price > 0 else Decimal("0")
            )
            await commissions_repo.create_coupon_usage(
                session,
                usage_id=str(uuid4()),
                user_id=metadata.user_id,
                coupon_code=metadata.coupon_code,
                employee_id=employee_id,
                subscription_id=subscription_id,
                discount_percent=discount_percent,
                amount_before=metadata.base_price,
                amount_after=metadata.final_price,
            )
            # Only employee-attributed, non-super redemptions count toward the coupon.
            if coupon is not None and employee_id and not metadata.is_super_user_coupon:
                await commissions_repo.increment_coupon_usage(session, metadata.coupon_code)

        # Zero-value sales earn nothing, so no commission row is written for them.
        if employee_id and not metadata.is_super_user_coupon and metadata.final_price > 0:
            commission = await commissions_repo.create_commission(
                session,
                commission_id=str(uuid4()),
                employee_id=employee_id,
                subscription_id=subscription_id,
                subscription_amount=metadata.final_price,
                commission_rate=commission_rate(),
            )
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        winner = await subscriptions_repo.get_by_payment_session(session, payment_session_id)
        if winner is None:
            logger.warning("payment_confirm_failed session_id=%s", payment_session_id, exc_info=exc)
            raise DependencyFailure("Failed to record payment") from exc
        logger.info(
            "payment_confirm_duplicate session_id=%s subscription_id=%s", payment_session_id, winner.id
        )
        return PaymentConfirmation(subscription_id=winner.id, created=False, letters=0)
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning("payment_confirm_failed session_id=%s", payment_session_id, exc_info=exc)
        raise DependencyFailure("Failed to record payment") from exc

    increment_counter("payments.confirmed")
    granted = letters if letters is not None else plan_letters(metadata.plan_type)
    _notify_confirmation(profile.email, profile.full_name, metadata.plan_type)
    if commission is not None:
        increment_counter("commissions.created")
        await _notify_commission(session, employee_id, commission.commission_amount)
    return PaymentConfirmation(
        subscription_id=subscription_id,
        created=True,
        letters=granted,
        commission_id=commission.id if commission is not None else None,
    )


def _check_actor(actor: Principal | None, user_id: str) -> None:
    # Users confirm their own purchases; admins may confirm on anyone's behalf.
    if actor is not None and not actor.is_admin and actor.subject_id != user_id:
        raise Forbidden("Payment belongs to another user")


def _notify_confirmation(email: str | None, full_name: str | None, plan_type: str) -> None:
    if not email:
        return
    get_notification_dispatcher().dispatch(
        TEMPLATE_SUBSCRIPTION_CONFIRMATION,
        email,
        {
            "userName": full_name or "there",
            "subscriptionPlan": plan_type or "Subscription",
            "actionUrl": f"{get_settings().site_url.rstrip('/')}/dashboard",
        },
    )


async def _notify_commission(session: AsyncSession, employee_id: str | None, amount: Decimal) -> None:
    if not employee_id:
        return
    try:
        employee = await profiles_repo.get_profile(session, employee_id)
    except SQLAlchemyError as exc:
        logger.warning("commission_recipient_lookup_failed employee_id=%s", employee_id, exc_info=exc)
        return
    if employee is None or not employee.email:
        return
    get_notification_dispatcher().dispatch(
        TEMPLATE_COMMISSION_EARNED,
        employee.email,
        {
            "userName": employee.full_name or "there",
            "commissionAmount": str(to_display(amount)),
            "actionUrl": f"{get_settings().site_url.rstrip('/')}/dashboard/commissions",
        },
    )


async def mark_commission_paid(
    session: AsyncSession,
    *,
    commission_id: str,
    actor: Principal,
    now: datetime | None = None,
) -> Commission:
    if not actor.is_super_admin:
        raise Forbidden("Super admin access required")
    commission = await commissions_repo.get_commission(session, commission_id)
    if commission is None:
        raise NotFound("Commission not found")
    current_status = commission.status
    try:
        paid = await commissions_repo.mark_paid(session, commission_id, now=now or datetime.now(timezone.utc))
        if not paid:
            await session.rollback()
            raise ConflictError("Commission is already paid", details={"status": current_status})
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise DependencyFailure("Failed to mark commission paid") from exc
    await session.refresh(commission)
    increment_counter("commissions.paid")
    logger.info("commission_marked_paid commission_id=%s actor=%s", commission_id, actor.subject_id)
    return commission


async def summarize_commissions(session: AsyncSession, employee_id: str) -> CommissionSummary:
    rows = await commissions_repo.list_commissions_for_employee(session, employee_id)
    pending = [row for row in rows if row.status == commissions_repo.COMMISSION_PENDING]
    paid = [row for row in rows if row.status == commissions_repo.COMMISSION_PAID]
    return CommissionSummary(
        employee_id=employee_id,
        pending_count=len(pending),
        pending_total=to_display(sum((row.commission_amount for row in pending), Decimal("0"))),
        paid_count=len(paid),
        paid_total=to_display(sum((row.commission_amount for row in paid), Decimal("0"))),
        items=[CommissionView.model_validate(row) for row in rows],
    )


@dataclass(frozen=True)
class PlanOffer:
    price: Decimal
    letters: int
    name: str


PLAN_CATALOG: dict[str, PlanOffer] = {
    "one_time": PlanOffer(price=Decimal("299"), letters=1, name="Single Letter"),
    "standard_4_month": PlanOffer(price=Decimal("299"), letters=4, name="Monthly Plan"),
    "premium_8_month": PlanOffer(price=Decimal("599"), letters=8, name="Yearly Plan"),
}

# Promotional code honoured without a coupon row; never attributed or super.
FREE_PROMO_CODE = "TALK3"


@dataclass(frozen=True)
class CheckoutQuote:
    plan_type: str
    name: str
    letters: int
    base_price: Decimal
    discount_percent: int
    discount: Decimal
    final_price: Decimal
    coupon_code: str | None = None
    employee_id: str | None = None
    is_super_user_coupon: bool = False

    def metadata(self, user_id: str) -> dict[str, str]:
        # Provider metadata values must be strings; blanks mean absent.
        return {
            "user_id": user_id,
            "plan_type": self.plan_type,
            "letters": str(self.letters),
            "base_price": str(self.base_price),
            "discount": str(self.discount),
            "final_price": str(self.final_price),
            "coupon_code": self.coupon_code or "",
            "employee_id": self.employee_id or "",
            "is_super_user_coupon": "true" if self.is_super_user_coupon else "false",
        }


@dataclass(frozen=True)
class CheckoutResult:
    # Either a provider session to redirect to, or a subscription created on the free path.
    quote: CheckoutQuote
    session_id: str | None = None
    checkout_url: str | None = None
    subscription_id: str | None = None
    commission_id: str | None = None


async def quote_checkout(
    session: AsyncSession,
    *,
    plan_type: str,
    coupon_code: str | None = None,
) -> CheckoutQuote:
    """Price a plan, applying an active coupon when one is given.

    A coupon with a 100% discount also grants unlimited ("super") status,
    except the promotional free code, which carries no employee.
    """
    offer = PLAN_CATALOG.get(plan_type)
    if offer is None:
        raise ValidationError("Invalid plan type", details={"plan_type": plan_type})

    code = coupon_code.strip().upper() if coupon_code and coupon_code.strip() else None
    percent = 0
    employee_id: str | None = None
    is_super = False
    if code == FREE_PROMO_CODE:
        percent = 100
    elif code is not None:
        coupon = await commissions_repo.get_coupon(session, code)
        if coupon is None or not coupon.is_active:
            raise ValidationError("Invalid coupon code", details={"coupon_code": code})
        percent = max(0, min(100, int(coupon.discount_percent)))
        employee_id = coupon.employee_id
        is_super = percent >= 100

    discount = offer.price * percent / 100
    return CheckoutQuote(
        plan_type=plan_type,
        name=offer.name,
        letters=offer.letters,
        base_price=offer.price,
        discount_percent=percent,
        discount=discount,
        final_price=offer.price - discount,
        coupon_code=code,
        employee_id=employee_id,
        is_super_user_coupon=is_super,
    )


async def start_checkout(
    session: AsyncSession,
    *,
    actor: Principal,
    plan_type: str,
    coupon_code: str | None = None,
    provider: PaymentProvider | None = None,
    ledger: AllowanceLedger | None = None,
    now: datetime | None = None,
) -> CheckoutResult:
    """Open a checkout for the caller, or grant the plan outright when it is free.

    Free purchases go through the same recording path as confirmed payments,
    keyed by a generated session id. Paid purchases create a provider session
    whose metadata is read back by ``confirm_payment``.
    """
    quote = await quote_checkout(session, plan_type=plan_type, coupon_code=coupon_code)
    profile = await profiles_repo.get_profile(session, actor.subject_id)
    if profile is None:
        raise ValidationError("Checkout requires a known user")

    if quote.final_price <= 0:
        metadata = PaymentMetadata.model_validate(quote.metadata(actor.subject_id))
        confirmation = await _record_purchase(
            session,
            metadata=metadata,
            payment_session_id=f"free_{uuid4().hex}",
            profile=profile,
            ledger=ledger or get_allowance_ledger(),
            now=now,
        )
        increment_counter("payments.checkout_free")
        logger.info(
            "checkout_free_granted user_id=%s plan_type=%s subscription_id=%s",
            actor.subject_id,
            plan_type,
            confirmation.subscription_id,
        )
        return CheckoutResult(
            quote=quote,
            subscription_id=confirmation.subscription_id,
            commission_id=confirmation.commission_id,
        )

    provider = provider or get_payment_provider()
    site_url = get_settings().site_url.rstrip("/")
    amount_cents = int((quote.final_price * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    checkout = await provider.create_session(
        amount_cents=amount_cents,
        product_name=quote.name,
        description=f"{quote.letters} Legal {'Letter' if quote.letters == 1 else 'Letters'}",
        metadata=quote.metadata(actor.subject_id),
        client_reference_id=actor.subject_id,
        success_url=f"{site_url}/dashboard/subscription?success=true&session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{site_url}/dashboard/subscription?canceled=true",
    )
    increment_counter("payments.checkout_started")
    logger.info(
        "checkout_session_created user_id=%s plan_type=%s session_id=%s",
        actor.subject_id,
        plan_type,
        checkout.id,
    )
    return CheckoutResult(quote=quote, session_id=checkout.id, checkout_url=checkout.url)
