from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from counselflow.core.config import get_settings
from counselflow.core.errors import CounselFlowError, Forbidden, ValidationError
from counselflow.domain import state
from counselflow.domain.models import Letter
from counselflow.persistence.repos import letters as letters_repo
from counselflow.persistence.repos import profiles as profiles_repo
from counselflow.services import audit
from counselflow.services.auth.principal import Principal
from counselflow.services.lifecycle import apply_transition, commit_change, load_letter, rollback_and_raise
from counselflow.services.notifications import (
    TEMPLATE_LETTER_APPROVED,
    TEMPLATE_LETTER_REJECTED,
    get_notification_dispatcher,
    letter_link,
)
from counselflow.services.security.sanitizer import sanitize_text
from counselflow.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _require_reviewer(actor: Principal) -> None:
    if not actor.is_reviewer:
        raise Forbidden("Reviewer access required")


def _clean_notes(review_notes: str | None) -> str | None:
    if review_notes is None:
        return None
    return sanitize_text(review_notes, get_settings().review_notes_max_chars) or None


async def _review_transition(
    session: AsyncSession,
    *,
    letter_id: str,
    actor: Principal,
    new_status: str,
    action: str,
    values: dict[str, Any],
    notes: str | None = None,
) -> Letter:
    # Validate, compare-and-set, commit, then append to the trail.
    _require_reviewer(actor)
    letter = await load_letter(session, letter_id)
    old_status = letter.status
    try:
        await apply_transition(session, letter, new_status=new_status, values=values)
    except (CounselFlowError, SQLAlchemyError) as exc:
        await rollback_and_raise(session, exc, letter_id=letter_id, action=action)
    await commit_change(session, letter_id=letter_id, action=action)
    await session.refresh(letter)
    increment_counter(f"letters.{action}")
    await audit.record(
        letter_id=letter_id,
        action=action,
        old_status=old_status,
        new_status=new_status,
        performed_by=actor.subject_id,
        notes=notes,
    )
    return letter


async def _notify_owner(session: AsyncSession, letter: Letter, template: str, extra: dict[str, Any]) -> None:
    try:
        owner = await profiles_repo.get_profile(session, letter.user_id)
    except SQLAlchemyError as exc:
        logger.warning("letter_owner_lookup_failed letter_id=%s", letter.id, exc_info=exc)
        return
    if owner is None or not owner.email:
        return
    get_notification_dispatcher().dispatch(
        template,
        owner.email,
        {
            "userName": owner.full_name or "there",
            "letterTitle": letter.title or "Your letter",
            **extra,
        },
    )


async def list_review_queue(
    session: AsyncSession,
    *,
    actor: Principal,
    status: str | None = state.STATUS_PENDING_REVIEW,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[Letter], int]:
    # Newest first; a status of None or "all" lists every letter.
    _require_reviewer(actor)
    if status == "all":
        status = None
    if status is not None and status not in state.LETTER_STATUSES:
        raise ValidationError("Unknown letter status", details={"status": status})
    return await letters_repo.list_letters_by_status(session, status=status, limit=limit, offset=offset)


async def start_review(session: AsyncSession, *, letter_id: str, actor: Principal) -> Letter:
    letter = await _review_transition(
        session,
        letter_id=letter_id,
        actor=actor,
        new_status=state.STATUS_UNDER_REVIEW,
        action=state.ACTION_REVIEW_STARTED,
        values={"reviewed_by": actor.subject_id},
        notes="Review started",
    )
    return letter


async def approve(
    session: AsyncSession,
    *,
    letter_id: str,
    actor: Principal,
    final_content: str,
    review_notes: str | None = None,
) -> Letter:
    """Approve a letter under review with the attorney's final text.

    ``final_content`` is required and sanitized to the configured cap; any
    earlier rejection reason is cleared. The owner is notified after commit.
    """
    settings = get_settings()
    _require_reviewer(actor)
    content = sanitize_text(final_content, settings.final_content_max_chars)
    if not content:
        raise ValidationError("final_content is required")
    notes = _clean_notes(review_notes)
    now = datetime.now(timezone.utc)
    letter = await _review_transition(
        session,
        letter_id=letter_id,
        actor=actor,
        new_status=state.STATUS_APPROVED,
        action=state.ACTION_APPROVED,
        values={
            "final_content": content,
            "review_notes": notes,
            "rejection_reason": None,
            "reviewed_by": actor.subject_id,
            "reviewed_at": now,
            "approved_at": now,
        },
        notes=notes or "Letter approved",
    )
    await _notify_owner(
        session,
        letter,
        TEMPLATE_LETTER_APPROVED,
        {"letterLink": letter_link(letter.id)},
    )
    return letter


async def reject(
    session: AsyncSession,
    *,
    letter_id: str,
    actor: Principal,
    rejection_reason: str,
    review_notes: str | None = None,
) -> Letter:
    settings = get_settings()
    _require_reviewer(actor)
    reason = sanitize_text(rejection_reason, settings.rejection_reason_max_chars)
    if not reason:
        raise ValidationError("rejection_reason is required")
    notes = _clean_notes(review_notes)
    letter = await _review_transition(
        session,
        letter_id=letter_id,
        actor=actor,
        new_status=state.STATUS_REJECTED,
        action=state.ACTION_REJECTED,
        values={
            "rejection_reason": reason,
            "review_notes": notes,
            "reviewed_by": actor.subject_id,
            "reviewed_at": datetime.now(timezone.utc),
        },
        notes=reason,
    )
    await _notify_owner(
        session,
        letter,
        TEMPLATE_LETTER_REJECTED,
        {"rejectionReason": reason, "actionUrl": letter_link(letter.id)},
    )
    return letter


async def complete(session: AsyncSession, *, letter_id: str, actor: Principal) -> Letter:
    letter = await _review_transition(
        session,
        letter_id=letter_id,
        actor=actor,
        new_status=state.STATUS_COMPLETED,
        action=state.ACTION_COMPLETED,
        values={"completed_at": datetime.now(timezone.utc)},
        notes="Letter completed",
    )
    return letter
