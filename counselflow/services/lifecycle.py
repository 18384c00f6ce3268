from __future__ import annotations

import asyncio
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from counselflow.core.config import get_settings
from counselflow.core.errors import (
    ConflictError,
    CounselFlowError,
    DependencyFailure,
    DraftingError,
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from counselflow.domain import state
from counselflow.domain.models import Letter
from counselflow.persistence.repos import letters as letters_repo
from counselflow.persistence.repos import profiles as profiles_repo
from counselflow.providers.drafting.base import DraftingProvider
from counselflow.providers.drafting.factory import get_drafting_provider
from counselflow.services import audit
from counselflow.services.allowance import AllowanceLedger, get_allowance_ledger
from counselflow.services.auth.principal import Principal
from counselflow.services.notifications import (
    TEMPLATE_ADMIN_ALERT,
    admin_recipients_from_settings,
    get_notification_dispatcher,
    letter_link,
)
from counselflow.services.security.sanitizer import sanitize_text
from counselflow.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_TITLE_MAX_CHARS = 200
_LETTER_TYPE_MAX_CHARS = 100
_FAILURE_NOTE_MAX_CHARS = 500


async def commit_change(session: AsyncSession, *, letter_id: str, action: str) -> None:
    # Primary writes either land or surface as a retryable dependency failure.
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning("letter_transition_failed letter_id=%s action=%s", letter_id, action, exc_info=exc)
        raise DependencyFailure("Failed to persist letter change") from exc


async def rollback_and_raise(session: AsyncSession, exc: Exception, *, letter_id: str, action: str) -> None:
    await session.rollback()
    if isinstance(exc, CounselFlowError):
        raise exc
    logger.warning("letter_transition_failed letter_id=%s action=%s", letter_id, action, exc_info=exc)
    raise DependencyFailure("Failed to persist letter change") from exc


async def load_letter(session: AsyncSession, letter_id: str) -> Letter:
    letter = await letters_repo.get_letter(session, letter_id)
    if letter is None:
        raise NotFound("Letter not found")
    return letter


def _require_owner(letter: Letter, actor: Principal) -> None:
    if letter.user_id != actor.subject_id:
        raise Forbidden("Only the letter owner can perform this action")


async def get_letter_for(session: AsyncSession, *, letter_id: str, actor: Principal) -> Letter:
    # Owners read their own letters; staff read any.
    letter = await load_letter(session, letter_id)
    if letter.user_id != actor.subject_id and not actor.is_staff:
        raise Forbidden("Letter belongs to another user")
    return letter


async def list_letters_for(session: AsyncSession, *, actor: Principal) -> list[Letter]:
    return await letters_repo.list_letters(session, actor.subject_id)


async def apply_transition(
    session: AsyncSession,
    letter: Letter,
    *,
    new_status: str,
    values: dict[str, Any] | None = None,
) -> None:
    # Compare-and-set on the status we validated against.
    state.validate_transition(letter.status, new_status)
    applied = await letters_repo.transition_status(
        session,
        letter.id,
        expected_status=letter.status,
        new_status=new_status,
        values=values,
    )
    if not applied:
        raise ConflictError(
            "Letter status changed concurrently; reload and retry",
            details={"expected": letter.status, "to": new_status},
        )


async def _notify_admins(session: AsyncSession, letter: Letter) -> None:
    recipients = admin_recipients_from_settings()
    if not recipients:
        try:
            recipients = await profiles_repo.list_admin_emails(session)
        except SQLAlchemyError as exc:
            logger.warning("admin_recipients_lookup_failed letter_id=%s", letter.id, exc_info=exc)
            return
    get_notification_dispatcher().dispatch(
        TEMPLATE_ADMIN_ALERT,
        recipients,
        {
            "alertMessage": f'New letter "{letter.title}" requires review. Letter type: {letter.letter_type or "general"}',
            "actionUrl": letter_link(letter.id, admin=True),
            "pendingReviews": 1,
        },
    )


def _clean_intake(title: str, letter_type: str | None) -> tuple[str, str | None]:
    cleaned_title = sanitize_text(title, _TITLE_MAX_CHARS)
    if not cleaned_title:
        raise ValidationError("title is required")
    cleaned_type = sanitize_text(letter_type, _LETTER_TYPE_MAX_CHARS) if letter_type else None
    return cleaned_title, cleaned_type or None


async def create_draft(
    session: AsyncSession,
    *,
    actor: Principal,
    title: str,
    letter_type: str | None = None,
    intake_data: dict[str, Any] | None = None,
) -> Letter:
    cleaned_title, cleaned_type = _clean_intake(title, letter_type)
    letter_id = str(uuid4())
    try:
        letter = await letters_repo.create_letter(
            session,
            letter_id=letter_id,
            user_id=actor.subject_id,
            status=state.STATUS_DRAFT,
            title=cleaned_title,
            letter_type=cleaned_type,
            intake_data=intake_data,
        )
        await session.flush()
    except SQLAlchemyError as exc:
        await rollback_and_raise(session, exc, letter_id=letter_id, action=state.ACTION_CREATED)
    await commit_change(session, letter_id=letter_id, action=state.ACTION_CREATED)
    await session.refresh(letter)
    # Drafts are not audited; the trail starts at the first transition out of draft.
    logger.info("letter_draft_created letter_id=%s user_id=%s", letter_id, actor.subject_id)
    return letter


async def update_draft(
    session: AsyncSession,
    *,
    letter_id: str,
    actor: Principal,
    title: str | None = None,
    letter_type: str | None = None,
    intake_data: dict[str, Any] | None = None,
    content: str | None = None,
) -> Letter:
    """Edit a draft in place; only the owner may, and only while it is a draft.

    Fields left as ``None`` keep their stored value. Editing is not a
    transition, so nothing is written to the audit trail.
    """
    letter = await load_letter(session, letter_id)
    _require_owner(letter, actor)
    if letter.status != state.STATUS_DRAFT:
        raise ConflictError("Only draft letters can be edited", details={"status": letter.status})

    values: dict[str, Any] = {}
    if title is not None or letter_type is not None:
        cleaned_title, cleaned_type = _clean_intake(
            title if title is not None else letter.title,
            letter_type if letter_type is not None else letter.letter_type,
        )
        values["title"] = cleaned_title
        values["letter_type"] = cleaned_type
    if intake_data is not None:
        values["intake_data"] = intake_data
    if content is not None:
        values["ai_draft_content"] = sanitize_text(content, get_settings().final_content_max_chars) or None
    if not values:
        return letter

    try:
        updated = await letters_repo.update_draft(
            session,
            letter_id,
            user_id=actor.subject_id,
            draft_status=state.STATUS_DRAFT,
            values=values,
        )
        if not updated:
            raise ConflictError("Letter status changed concurrently; reload and retry")
    except (CounselFlowError, SQLAlchemyError) as exc:
        await rollback_and_raise(session, exc, letter_id=letter_id, action="draft_updated")
    await commit_change(session, letter_id=letter_id, action="draft_updated")
    await session.refresh(letter)
    logger.info("letter_draft_updated letter_id=%s fields=%s", letter_id, ",".join(sorted(values)))
    return letter


async def begin_generation(
    session: AsyncSession,
    *,
    actor: Principal,
    title: str,
    letter_type: str | None,
    intake_data: dict[str, Any] | None = None,
    ledger: AllowanceLedger | None = None,
) -> Letter:
    """Charge the allowance and create a letter directly in ``generating``.

    The charge and the insert share one transaction; when no allowance is
    left nothing is created and ``AllowanceExhausted`` propagates.
    """
    ledger = ledger or get_allowance_ledger()
    cleaned_title, cleaned_type = _clean_intake(title, letter_type)
    letter_id = str(uuid4())
    try:
        charge = await ledger.charge_letter(session, actor.subject_id)
        letter = await letters_repo.create_letter(
            session,
            letter_id=letter_id,
            user_id=actor.subject_id,
            status=state.STATUS_GENERATING,
            title=cleaned_title,
            letter_type=cleaned_type,
            intake_data=intake_data,
            allowance_source=charge.source,
            charged_subscription_id=charge.subscription_id,
        )
        await session.flush()
    except (CounselFlowError, SQLAlchemyError) as exc:
        await rollback_and_raise(session, exc, letter_id=letter_id, action=state.ACTION_CREATED)
    await commit_change(session, letter_id=letter_id, action=state.ACTION_CREATED)
    await session.refresh(letter)
    increment_counter("letters.generation_started")
    await audit.record(
        letter_id=letter_id,
        action=state.ACTION_CREATED,
        old_status=None,
        new_status=state.STATUS_GENERATING,
        performed_by=actor.subject_id,
        metadata={"allowance_source": charge.source},
    )
    return letter


async def complete_generation(
    session: AsyncSession,
    *,
    letter_id: str,
    ai_draft_content: str,
    performed_by: str | None = None,
) -> Letter:
    if not ai_draft_content or not ai_draft_content.strip():
        raise ValidationError("ai_draft_content is required")
    letter = await load_letter(session, letter_id)
    old_status = letter.status
    try:
        await apply_transition(
            session,
            letter,
            new_status=state.STATUS_PENDING_REVIEW,
            values={"ai_draft_content": ai_draft_content},
        )
    except (CounselFlowError, SQLAlchemyError) as exc:
        await rollback_and_raise(session, exc, letter_id=letter_id, action=state.ACTION_GENERATED)
    await commit_change(session, letter_id=letter_id, action=state.ACTION_GENERATED)
    await session.refresh(letter)
    increment_counter("letters.generated")
    await audit.record(
        letter_id=letter_id,
        action=state.ACTION_GENERATED,
        old_status=old_status,
        new_status=state.STATUS_PENDING_REVIEW,
        performed_by=performed_by,
        notes="Letter generated successfully by AI",
    )
    await _notify_admins(session, letter)
    return letter


async def fail_generation(
    session: AsyncSession,
    *,
    letter_id: str,
    error: str,
    performed_by: str | None = None,
    ledger: AllowanceLedger | None = None,
) -> Letter:
    # Move generating -> failed and give back whatever the letter was charged.
    ledger = ledger or get_allowance_ledger()
    letter = await load_letter(session, letter_id)
    old_status = letter.status
    try:
        state.validate_transition(old_status, state.STATUS_FAILED)
        await ledger.release_charge(
            session,
            user_id=letter.user_id,
            source=letter.allowance_source,
            subscription_id=letter.charged_subscription_id,
        )
        await apply_transition(
            session,
            letter,
            new_status=state.STATUS_FAILED,
            values={"allowance_source": None, "charged_subscription_id": None},
        )
    except (CounselFlowError, SQLAlchemyError) as exc:
        await rollback_and_raise(session, exc, letter_id=letter_id, action=state.ACTION_GENERATION_FAILED)
    await commit_change(session, letter_id=letter_id, action=state.ACTION_GENERATION_FAILED)
    await session.refresh(letter)
    increment_counter("letters.generation_failed")
    await audit.record(
        letter_id=letter_id,
        action=state.ACTION_GENERATION_FAILED,
        old_status=old_status,
        new_status=state.STATUS_FAILED,
        performed_by=performed_by,
        notes=f"Generation failed: {error}"[:_FAILURE_NOTE_MAX_CHARS],
    )
    return letter


async def generate_letter(
    session: AsyncSession,
    *,
    actor: Principal,
    title: str,
    letter_type: str,
    intake_data: dict[str, Any],
    provider: DraftingProvider | None = None,
    ledger: AllowanceLedger | None = None,
) -> Letter:
    """Charge, draft and queue a letter for review in one call.

    A drafting failure or timeout moves the letter to ``failed``, refunds its
    charge and raises ``DraftingError`` carrying the letter id.
    """
    if not letter_type or not str(letter_type).strip():
        raise ValidationError("letter_type is required")
    provider = provider or get_drafting_provider()
    letter = await begin_generation(
        session,
        actor=actor,
        title=title,
        letter_type=letter_type,
        intake_data=intake_data,
        ledger=ledger,
    )
    timeout_s = get_settings().drafting_timeout_s
    try:
        content = await asyncio.wait_for(
            provider.draft(letter_type=letter.letter_type or letter_type, intake_data=intake_data or {}),
            timeout=timeout_s,
        )
        if not content or not content.strip():
            raise DraftingError("AI returned empty content")
    except (DraftingError, asyncio.TimeoutError) as exc:
        message = str(exc) or "Drafting timed out"
        logger.warning("letter_generation_failed letter_id=%s", letter.id, exc_info=exc)
        await fail_generation(
            session,
            letter_id=letter.id,
            error=message,
            performed_by=actor.subject_id,
            ledger=ledger,
        )
        raise DraftingError(message, details={"letter_id": letter.id, "status": state.STATUS_FAILED}) from exc
    return await complete_generation(
        session,
        letter_id=letter.id,
        ai_draft_content=content,
        performed_by=actor.subject_id,
    )


async def submit(
    session: AsyncSession,
    *,
    letter_id: str,
    actor: Principal,
    ledger: AllowanceLedger | None = None,
) -> Letter:
    """Move a letter into the review queue, charging its allowance first.

    The charge and the status compare-and-set commit together. When the
    allowance is exhausted the transaction rolls back, the letter keeps its
    status and no trail entry is written. A ``generating`` letter was charged
    when it was created and is not charged again.
    """
    ledger = ledger or get_allowance_ledger()
    letter = await load_letter(session, letter_id)
    _require_owner(letter, actor)
    old_status = letter.status
    if old_status not in state.SUBMIT_SOURCES:
        raise InvalidTransition(old_status, state.STATUS_PENDING_REVIEW)
    state.validate_transition(old_status, state.STATUS_PENDING_REVIEW)

    try:
        values: dict[str, Any] = {}
        if letter.allowance_source is None:
            charge = await ledger.charge_letter(session, letter.user_id)
            values = {
                "allowance_source": charge.source,
                "charged_subscription_id": charge.subscription_id,
            }
        await apply_transition(session, letter, new_status=state.STATUS_PENDING_REVIEW, values=values)
    except (CounselFlowError, SQLAlchemyError) as exc:
        await rollback_and_raise(session, exc, letter_id=letter_id, action=state.ACTION_SUBMITTED)
    await commit_change(session, letter_id=letter_id, action=state.ACTION_SUBMITTED)
    await session.refresh(letter)
    increment_counter("letters.submitted")
    await audit.record(
        letter_id=letter_id,
        action=state.ACTION_SUBMITTED,
        old_status=old_status,
        new_status=state.STATUS_PENDING_REVIEW,
        performed_by=actor.subject_id,
        metadata={"allowance_source": letter.allowance_source},
    )
    await _notify_admins(session, letter)
    return letter


async def retry(session: AsyncSession, *, letter_id: str, actor: Principal) -> Letter:
    letter = await load_letter(session, letter_id)
    _require_owner(letter, actor)
    old_status = letter.status
    try:
        await apply_transition(session, letter, new_status=state.STATUS_DRAFT)
    except (CounselFlowError, SQLAlchemyError) as exc:
        await rollback_and_raise(session, exc, letter_id=letter_id, action=state.ACTION_RETRIED)
    await commit_change(session, letter_id=letter_id, action=state.ACTION_RETRIED)
    await session.refresh(letter)
    await audit.record(
        letter_id=letter_id,
        action=state.ACTION_RETRIED,
        old_status=old_status,
        new_status=state.STATUS_DRAFT,
        performed_by=actor.subject_id,
    )
    return letter


async def delete_letter(session: AsyncSession, *, letter_id: str, actor: Principal) -> None:
    letter = await load_letter(session, letter_id)
    _require_owner(letter, actor)
    old_status = letter.status
    if old_status not in state.DELETABLE_STATUSES:
        raise InvalidTransition(old_status, "deleted")
    try:
        deleted = await letters_repo.delete_letter(
            session,
            letter_id,
            user_id=actor.subject_id,
            statuses=state.DELETABLE_STATUSES,
        )
        if not deleted:
            raise ConflictError("Letter status changed concurrently; reload and retry")
    except (CounselFlowError, SQLAlchemyError) as exc:
        await rollback_and_raise(session, exc, letter_id=letter_id, action=state.ACTION_DELETED)
    await commit_change(session, letter_id=letter_id, action=state.ACTION_DELETED)
    increment_counter("letters.deleted")
    await audit.record(
        letter_id=letter_id,
        action=state.ACTION_DELETED,
        old_status=old_status,
        new_status=None,
        performed_by=actor.subject_id,
        notes=f'Letter "{letter.title}" deleted by owner',
    )
