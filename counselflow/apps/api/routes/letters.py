from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from counselflow.apps.api.deps import Principal, get_current_principal, get_db
from counselflow.apps.api.openapi import DEFAULT_ERROR_RESPONSES, TRANSITION_ERROR_RESPONSES
from counselflow.apps.api.response import SuccessEnvelope, success_response
from counselflow.services import audit, lifecycle
from counselflow.services.audit import LetterAuditRecord


router = APIRouter(
    prefix="/letters",
    tags=["letters"],
    responses={**DEFAULT_ERROR_RESPONSES, **TRANSITION_ERROR_RESPONSES},
)


class LetterCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    letter_type: str | None = Field(default=None, max_length=100)
    intake_data: dict[str, Any] | None = None


class LetterGenerateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    letter_type: str = Field(min_length=1, max_length=100)
    intake_data: dict[str, Any] = Field(default_factory=dict)


class LetterUpdateRequest(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=500)
    letter_type: str | None = Field(default=None, max_length=100)
    intake_data: dict[str, Any] | None = None
    content: str | None = None


class LetterResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    status: str
    title: str
    letter_type: str | None = None
    intake_data: dict[str, Any] | None = None
    ai_draft_content: str | None = None
    final_content: str | None = None
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    review_notes: str | None = None
    rejection_reason: str | None = None
    approved_at: datetime | None = None
    completed_at: datetime | None = None
    allowance_source: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class LetterListResponse(BaseModel):
    items: list[LetterResponse]


class DeleteLetterResponse(BaseModel):
    id: str
    deleted: bool


class AuditTrailResponse(BaseModel):
    letter_id: str
    items: list[LetterAuditRecord]


@router.post("", status_code=201, response_model=SuccessEnvelope[LetterResponse])
async def create_letter(
    request: Request,
    payload: LetterCreateRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    letter = await lifecycle.create_draft(
        db,
        actor=principal,
        title=payload.title,
        letter_type=payload.letter_type,
        intake_data=payload.intake_data,
    )
    return success_response(request=request, data=LetterResponse.model_validate(letter))


@router.post("/generate", status_code=201, response_model=SuccessEnvelope[LetterResponse])
async def generate_letter(
    request: Request,
    payload: LetterGenerateRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Charges the allowance up front; a drafting failure refunds it and returns 502.
    letter = await lifecycle.generate_letter(
        db,
        actor=principal,
        title=payload.title,
        letter_type=payload.letter_type,
        intake_data=payload.intake_data,
    )
    return success_response(request=request, data=LetterResponse.model_validate(letter))


@router.get("", response_model=SuccessEnvelope[LetterListResponse])
async def list_letters(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    letters = await lifecycle.list_letters_for(db, actor=principal)
    items = [LetterResponse.model_validate(letter) for letter in letters]
    return success_response(request=request, data=LetterListResponse(items=items))


@router.get("/{letter_id}", response_model=SuccessEnvelope[LetterResponse])
async def get_letter(
    request: Request,
    letter_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    letter = await lifecycle.get_letter_for(db, letter_id=letter_id, actor=principal)
    return success_response(request=request, data=LetterResponse.model_validate(letter))


@router.patch("/{letter_id}", response_model=SuccessEnvelope[LetterResponse])
async def update_letter(
    request: Request,
    letter_id: str,
    payload: LetterUpdateRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    letter = await lifecycle.update_draft(
        db,
        letter_id=letter_id,
        actor=principal,
        title=payload.title,
        letter_type=payload.letter_type,
        intake_data=payload.intake_data,
        content=payload.content,
    )
    return success_response(request=request, data=LetterResponse.model_validate(letter))


@router.post("/{letter_id}/submit", response_model=SuccessEnvelope[LetterResponse])
async def submit_letter(
    request: Request,
    letter_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    letter = await lifecycle.submit(db, letter_id=letter_id, actor=principal)
    return success_response(request=request, data=LetterResponse.model_validate(letter))


@router.post("/{letter_id}/retry", response_model=SuccessEnvelope[LetterResponse])
async def retry_letter(
    request: Request,
    letter_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    letter = await lifecycle.retry(db, letter_id=letter_id, actor=principal)
    return success_response(request=request, data=LetterResponse.model_validate(letter))


@router.delete("/{letter_id}", response_model=SuccessEnvelope[DeleteLetterResponse])
async def delete_letter(
    request: Request,
    letter_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await lifecycle.delete_letter(db, letter_id=letter_id, actor=principal)
    return success_response(request=request, data=DeleteLetterResponse(id=letter_id, deleted=True))


@router.get("/{letter_id}/audit", response_model=SuccessEnvelope[AuditTrailResponse])
async def get_letter_audit(
    request: Request,
    letter_id: str,
    newest_first: bool = Query(default=True),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Staff may read any trail, including deleted letters'; owners only their live letters'.
    if not principal.is_staff:
        await lifecycle.get_letter_for(db, letter_id=letter_id, actor=principal)
    items = await audit.list_trail(db, letter_id=letter_id, newest_first=newest_first)
    return success_response(request=request, data=AuditTrailResponse(letter_id=letter_id, items=items))
