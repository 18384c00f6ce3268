from __future__ import annotations

from datetime import datetime
from decimal import Decimal
import hmac
import logging

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from counselflow.apps.api.deps import (
    Principal,
    get_current_principal,
    get_db,
    require_csrf,
    require_reviewer,
    require_super_admin,
)
from counselflow.apps.api.openapi import DEFAULT_ERROR_RESPONSES, TRANSITION_ERROR_RESPONSES
from counselflow.apps.api.response import SuccessEnvelope, success_response
from counselflow.apps.api.routes.letters import LetterResponse
from counselflow.core.config import get_settings
from counselflow.core.errors import Forbidden
from counselflow.services import commissions, review
from counselflow.services.allowance import get_allowance_ledger
from counselflow.services.security.csrf import issue_csrf_token


logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    responses={**DEFAULT_ERROR_RESPONSES, **TRANSITION_ERROR_RESPONSES},
)


class CsrfTokenResponse(BaseModel):
    csrf_token: str
    header_name: str
    expires_in_s: int


class ApproveRequest(BaseModel):
    final_content: str = Field(min_length=1)
    review_notes: str | None = None


class RejectRequest(BaseModel):
    rejection_reason: str = Field(min_length=1)
    review_notes: str | None = None


class CommissionResponse(BaseModel):
    id: str
    employee_id: str
    subscription_id: str
    subscription_amount: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    status: str
    paid_at: datetime | None = None


class ReviewQueueResponse(BaseModel):
    items: list[LetterResponse]
    total: int
    limit: int
    offset: int
    has_more: bool


class ResetAllowancesResponse(BaseModel):
    reset_count: int


@router.get("/csrf-token", response_model=SuccessEnvelope[CsrfTokenResponse])
async def get_csrf_token(
    request: Request,
    principal: Principal = Depends(require_reviewer),
) -> dict:
    settings = get_settings()
    payload = CsrfTokenResponse(
        csrf_token=issue_csrf_token(principal.subject_id),
        header_name=settings.csrf_header_name,
        expires_in_s=settings.csrf_token_ttl_s,
    )
    return success_response(request=request, data=payload)


@router.get("/letters", response_model=SuccessEnvelope[ReviewQueueResponse])
async def list_review_queue(
    request: Request,
    status: str = Query(default="pending_review", max_length=32),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(require_reviewer),
    db: AsyncSession = Depends(get_db),
) -> dict:
    letters, total = await review.list_review_queue(
        db, actor=principal, status=status, limit=limit, offset=offset
    )
    payload = ReviewQueueResponse(
        items=[LetterResponse.model_validate(letter) for letter in letters],
        total=total,
        limit=limit,
        offset=offset,
        has_more=offset + len(letters) < total,
    )
    return success_response(request=request, data=payload)


@router.post("/letters/{letter_id}/start-review", response_model=SuccessEnvelope[LetterResponse])
async def start_review(
    request: Request,
    letter_id: str,
    principal: Principal = Depends(require_csrf),
    db: AsyncSession = Depends(get_db),
) -> dict:
    letter = await review.start_review(db, letter_id=letter_id, actor=principal)
    return success_response(request=request, data=LetterResponse.model_validate(letter))


@router.post("/letters/{letter_id}/approve", response_model=SuccessEnvelope[LetterResponse])
async def approve_letter(
    request: Request,
    letter_id: str,
    payload: ApproveRequest,
    principal: Principal = Depends(require_csrf),
    db: AsyncSession = Depends(get_db),
) -> dict:
    letter = await review.approve(
        db,
        letter_id=letter_id,
        actor=principal,
        final_content=payload.final_content,
        review_notes=payload.review_notes,
    )
    return success_response(request=request, data=LetterResponse.model_validate(letter))


@router.post("/letters/{letter_id}/reject", response_model=SuccessEnvelope[LetterResponse])
async def reject_letter(
    request: Request,
    letter_id: str,
    payload: RejectRequest,
    principal: Principal = Depends(require_csrf),
    db: AsyncSession = Depends(get_db),
) -> dict:
    letter = await review.reject(
        db,
        letter_id=letter_id,
        actor=principal,
        rejection_reason=payload.rejection_reason,
        review_notes=payload.review_notes,
    )
    return success_response(request=request, data=LetterResponse.model_validate(letter))


@router.post("/letters/{letter_id}/complete", response_model=SuccessEnvelope[LetterResponse])
async def complete_letter(
    request: Request,
    letter_id: str,
    principal: Principal = Depends(require_csrf),
    db: AsyncSession = Depends(get_db),
) -> dict:
    letter = await review.complete(db, letter_id=letter_id, actor=principal)
    return success_response(request=request, data=LetterResponse.model_validate(letter))


@router.post("/commissions/{commission_id}/mark-paid", response_model=SuccessEnvelope[CommissionResponse])
async def mark_commission_paid(
    request: Request,
    commission_id: str,
    principal: Principal = Depends(require_super_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    commission = await commissions.mark_commission_paid(db, commission_id=commission_id, actor=principal)
    payload = CommissionResponse(
        id=commission.id,
        employee_id=commission.employee_id,
        subscription_id=commission.subscription_id,
        subscription_amount=commissions.to_display(commission.subscription_amount),
        commission_rate=commission.commission_rate,
        commission_amount=commissions.to_display(commission.commission_amount),
        status=commission.status,
        paid_at=commission.paid_at,
    )
    return success_response(request=request, data=payload)


async def _require_admin_or_cron(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> str:
    # Cron callers present the shared secret; everyone else needs an admin key.
    settings = get_settings()
    cron_header = request.headers.get("X-Cron-Secret")
    if cron_header and settings.cron_secret and hmac.compare_digest(cron_header, settings.cron_secret):
        return "cron"
    principal = await get_current_principal(request, db)
    if not principal.is_admin:
        raise Forbidden("Admin access required")
    return principal.subject_id


@router.post("/allowances/reset-monthly", response_model=SuccessEnvelope[ResetAllowancesResponse])
async def reset_monthly_allowances(
    request: Request,
    caller: str = Depends(_require_admin_or_cron),
    db: AsyncSession = Depends(get_db),
) -> dict:
    reset_count = await get_allowance_ledger().reset_monthly_allowances(db)
    logger.info("allowance_reset_triggered caller=%s count=%s", caller, reset_count)
    return success_response(request=request, data=ResetAllowancesResponse(reset_count=reset_count))
