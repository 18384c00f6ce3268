from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from counselflow.apps.api.deps import Principal, get_current_principal, get_db, require_role
from counselflow.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from counselflow.apps.api.response import SuccessEnvelope, success_response
from counselflow.services import commissions
from counselflow.services.allowance import get_allowance_ledger
from counselflow.services.commissions import CommissionSummary


router = APIRouter(tags=["billing"], responses=DEFAULT_ERROR_RESPONSES)


class AllowanceResponse(BaseModel):
    has_allowance: bool
    remaining: int
    is_unlimited: bool
    plan: str | None
    trial_available: bool


class PaymentConfirmRequest(BaseModel):
    session_id: str = Field(min_length=1, max_length=255)


class PaymentConfirmResponse(BaseModel):
    subscription_id: str
    created: bool
    letters: int
    commission_id: str | None = None


class CheckoutRequest(BaseModel):
    plan_type: str = Field(min_length=1, max_length=50)
    coupon_code: str | None = Field(default=None, max_length=64)


class CheckoutResponse(BaseModel):
    plan_type: str
    letters: int
    base_price: Decimal
    discount: Decimal
    final_price: Decimal
    coupon_code: str | None = None
    is_super_user_coupon: bool
    session_id: str | None = None
    checkout_url: str | None = None
    subscription_id: str | None = None
    commission_id: str | None = None


@router.get("/subscriptions/allowance", response_model=SuccessEnvelope[AllowanceResponse])
async def get_allowance(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    status = await get_allowance_ledger().check_allowance(db, principal.subject_id)
    payload = AllowanceResponse(
        has_allowance=status.has_allowance,
        remaining=status.remaining,
        is_unlimited=status.is_unlimited,
        plan=status.plan,
        trial_available=status.trial_available,
    )
    return success_response(request=request, data=payload)


@router.post("/checkout", response_model=SuccessEnvelope[CheckoutResponse])
async def start_checkout(
    request: Request,
    payload: CheckoutRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Free plans come back with a subscription id; paid plans with a provider redirect.
    result = await commissions.start_checkout(
        db, actor=principal, plan_type=payload.plan_type, coupon_code=payload.coupon_code
    )
    quote = result.quote
    data = CheckoutResponse(
        plan_type=quote.plan_type,
        letters=quote.letters,
        base_price=commissions.to_display(quote.base_price),
        discount=commissions.to_display(quote.discount),
        final_price=commissions.to_display(quote.final_price),
        coupon_code=quote.coupon_code,
        is_super_user_coupon=quote.is_super_user_coupon,
        session_id=result.session_id,
        checkout_url=result.checkout_url,
        subscription_id=result.subscription_id,
        commission_id=result.commission_id,
    )
    return success_response(request=request, data=data)


@router.post("/payments/confirm", response_model=SuccessEnvelope[PaymentConfirmResponse])
async def confirm_payment(
    request: Request,
    payload: PaymentConfirmRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Safe to repeat: the checkout session id is the idempotency key.
    confirmation = await commissions.confirm_payment(db, session_id=payload.session_id, actor=principal)
    data = PaymentConfirmResponse(
        subscription_id=confirmation.subscription_id,
        created=confirmation.created,
        letters=confirmation.letters,
        commission_id=confirmation.commission_id,
    )
    return success_response(request=request, data=data)


@router.get("/employees/me/commissions", response_model=SuccessEnvelope[CommissionSummary])
async def my_commissions(
    request: Request,
    principal: Principal = Depends(require_role("employee")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    summary = await commissions.summarize_commissions(db, principal.subject_id)
    return success_response(request=request, data=summary)
