from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from counselflow.core.config import get_settings
from counselflow.core.errors import ConflictError, Forbidden, InvalidTransition, ValidationError
from counselflow.persistence.db import SessionLocal
from counselflow.services import audit, lifecycle, review
from counselflow.services.notifications import (
    NotificationDeliveryResult,
    NotificationDispatcher,
    set_notification_dispatcher,
)
from counselflow.tests.utils.seed import (
    admin,
    create_letter_row,
    create_profile,
    employee,
    get_letter_row,
    subscriber,
)


class _RecordingSender:
    def __init__(self) -> None:
        self.sent: list[tuple[str, list[str], dict]] = []

    async def __call__(self, template: str, recipients: list[str], variables: dict) -> NotificationDeliveryResult:
        self.sent.append((template, recipients, variables))
        return NotificationDeliveryResult(sent=True, status_code=200, message="ok")


class _FailingAuditSession:
    # Stands in for the audit module's session factory; every insert fails.
    rollbacks = 0

    async def __aenter__(self) -> "_FailingAuditSession":
        return self

    async def __aexit__(self, *exc_info) -> bool:
        return False

    def add(self, entry) -> None:
        self.entry = entry

    async def commit(self) -> None:
        raise OperationalError("INSERT INTO letter_audit_trail", {}, Exception("database is locked"))

    async def rollback(self) -> None:
        type(self).rollbacks += 1


async def _trail(letter_id: str) -> list[audit.LetterAuditRecord]:
    async with SessionLocal() as session:
        return await audit.list_trail(session, letter_id=letter_id, newest_first=False)


@pytest.mark.asyncio
async def test_full_review_path_writes_ordered_trail() -> None:
    user_id = await create_profile(email="client@example.com")
    reviewer_id = await create_profile(role="admin", admin_sub_role="attorney_admin")
    reviewer = admin(reviewer_id)

    async with SessionLocal() as session:
        letter = await lifecycle.create_draft(session, actor=subscriber(user_id), title="Lease dispute")
        await lifecycle.submit(session, letter_id=letter.id, actor=subscriber(user_id))
        started = await review.start_review(session, letter_id=letter.id, actor=reviewer)
        approved = await review.approve(
            session,
            letter_id=letter.id,
            actor=reviewer,
            final_content="Final letter body",
            review_notes="Looks good",
        )
        completed = await review.complete(session, letter_id=letter.id, actor=reviewer)

    assert started.reviewed_by == reviewer_id
    assert approved.final_content == "Final letter body"
    assert approved.approved_at is not None
    assert approved.reviewed_at is not None
    assert completed.status == "completed"
    assert completed.completed_at is not None

    trail = await _trail(letter.id)
    assert len(trail) == 4
    assert [(item.old_status, item.new_status) for item in trail] == [
        ("draft", "pending_review"),
        ("pending_review", "under_review"),
        ("under_review", "approved"),
        ("approved", "completed"),
    ]
    assert [item.performed_by for item in trail[1:]] == [reviewer_id, reviewer_id, reviewer_id]
    assert audit.reconstruct_status(trail) == "completed"


@pytest.mark.asyncio
async def test_approve_from_pending_review_is_invalid() -> None:
    user_id = await create_profile()
    letter_id = await create_letter_row(user_id, status="pending_review")
    async with SessionLocal() as session:
        with pytest.raises(InvalidTransition) as exc_info:
            await review.approve(
                session,
                letter_id=letter_id,
                actor=admin("reviewer-1"),
                final_content="Final text",
            )

    assert exc_info.value.details == {"from": "pending_review", "to": "approved"}
    letter = await get_letter_row(letter_id)
    assert letter.status == "pending_review"
    assert letter.final_content is None
    assert await _trail(letter_id) == []


@pytest.mark.asyncio
async def test_approve_sanitizes_and_caps_final_content(monkeypatch) -> None:
    monkeypatch.setenv("FINAL_CONTENT_MAX_CHARS", "20")
    get_settings.cache_clear()
    user_id = await create_profile()
    letter_id = await create_letter_row(user_id, status="under_review", rejection_reason="old reason")
    async with SessionLocal() as session:
        letter = await review.approve(
            session,
            letter_id=letter_id,
            actor=admin("reviewer-1", "super_admin"),
            final_content="<script>alert(1)</script>Dear Sir, pay the balance now please",
        )

    assert letter.final_content == "Dear Sir, pay the ba"
    assert letter.rejection_reason is None


@pytest.mark.asyncio
async def test_approve_requires_final_content() -> None:
    user_id = await create_profile()
    letter_id = await create_letter_row(user_id, status="under_review")
    async with SessionLocal() as session:
        with pytest.raises(ValidationError):
            await review.approve(session, letter_id=letter_id, actor=admin("reviewer-1"), final_content="<>  ")
    assert (await get_letter_row(letter_id)).status == "under_review"


@pytest.mark.asyncio
async def test_reject_records_reason_and_notifies_owner() -> None:
    sender = _RecordingSender()
    dispatcher = NotificationDispatcher(sender, enabled=True)
    set_notification_dispatcher(dispatcher)
    user_id = await create_profile(email="owner@example.com", full_name="Pat Owner")
    letter_id = await create_letter_row(user_id, status="under_review", title="Debt notice")

    async with SessionLocal() as session:
        letter = await review.reject(
            session,
            letter_id=letter_id,
            actor=admin("reviewer-1"),
            rejection_reason="Missing the invoice number",
        )
    await dispatcher.drain()

    assert letter.status == "rejected"
    assert letter.rejection_reason == "Missing the invoice number"
    assert letter.reviewed_at is not None
    assert len(sender.sent) == 1
    template, recipients, variables = sender.sent[0]
    assert template == "letter-rejected"
    assert recipients == ["owner@example.com"]
    assert variables["rejectionReason"] == "Missing the invoice number"
    assert variables["letterTitle"] == "Debt notice"
    trail = await _trail(letter_id)
    assert trail[-1].notes == "Missing the invoice number"


@pytest.mark.asyncio
async def test_reject_requires_reason() -> None:
    user_id = await create_profile()
    letter_id = await create_letter_row(user_id, status="under_review")
    async with SessionLocal() as session:
        with pytest.raises(ValidationError):
            await review.reject(session, letter_id=letter_id, actor=admin("reviewer-1"), rejection_reason="   ")


@pytest.mark.asyncio
async def test_notification_failure_does_not_undo_approval() -> None:
    async def _failing_sender(template, recipients, variables):
        raise RuntimeError("relay down")

    dispatcher = NotificationDispatcher(_failing_sender, enabled=True)
    set_notification_dispatcher(dispatcher)
    user_id = await create_profile(email="owner@example.com")
    letter_id = await create_letter_row(user_id, status="under_review")

    async with SessionLocal() as session:
        letter = await review.approve(
            session, letter_id=letter_id, actor=admin("reviewer-1"), final_content="Final"
        )
    await dispatcher.drain()

    assert letter.status == "approved"
    assert (await get_letter_row(letter_id)).status == "approved"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "actor",
    [subscriber("user-1"), employee("employee-1")],
)
async def test_non_reviewers_cannot_review(actor) -> None:
    user_id = await create_profile()
    letter_id = await create_letter_row(user_id, status="pending_review")
    async with SessionLocal() as session:
        with pytest.raises(Forbidden):
            await review.start_review(session, letter_id=letter_id, actor=actor)
    assert (await get_letter_row(letter_id)).status == "pending_review"


@pytest.mark.asyncio
async def test_second_concurrent_review_start_conflicts() -> None:
    user_id = await create_profile()
    letter_id = await create_letter_row(user_id, status="pending_review")
    async with SessionLocal() as first, SessionLocal() as second:
        # Both reviewers hold the loaded letter before either writes.
        held = [
            await lifecycle.load_letter(first, letter_id),
            await lifecycle.load_letter(second, letter_id),
        ]
        await review.start_review(first, letter_id=letter_id, actor=admin("reviewer-1"))
        with pytest.raises(ConflictError):
            await review.start_review(second, letter_id=letter_id, actor=admin("reviewer-2"))
        assert held[1].status == "pending_review"

    letter = await get_letter_row(letter_id)
    assert letter.reviewed_by == "reviewer-1"
    trail = await _trail(letter_id)
    assert len(trail) == 1


@pytest.mark.asyncio
async def test_audit_write_failure_keeps_committed_transitions(monkeypatch) -> None:
    monkeypatch.setattr(_FailingAuditSession, "rollbacks", 0)
    monkeypatch.setattr(audit, "SessionLocal", _FailingAuditSession)
    user_id = await create_profile()
    letter_id = await create_letter_row(user_id, status="draft")
    reviewer = admin("reviewer-1")

    async with SessionLocal() as session:
        submitted = await lifecycle.submit(session, letter_id=letter_id, actor=subscriber(user_id))
        started = await review.start_review(session, letter_id=letter_id, actor=reviewer)
        approved = await review.approve(
            session, letter_id=letter_id, actor=reviewer, final_content="Final body"
        )

    assert submitted.status == "pending_review"
    assert started.status == "under_review"
    assert approved.status == "approved"
    assert _FailingAuditSession.rollbacks == 3
    row = await get_letter_row(letter_id)
    assert row.status == "approved"
    assert row.final_content == "Final body"
    assert await _trail(letter_id) == []


@pytest.mark.asyncio
async def test_review_queue_filters_by_status_and_pages() -> None:
    user_id = await create_profile()
    pending = [await create_letter_row(user_id, status="pending_review") for _ in range(3)]
    await create_letter_row(user_id, status="draft")
    await create_letter_row(user_id, status="under_review")

    async with SessionLocal() as session:
        first_page, total = await review.list_review_queue(session, actor=admin("reviewer-1"), limit=2)
        second_page, _ = await review.list_review_queue(
            session, actor=admin("reviewer-1"), limit=2, offset=2
        )
        everything, everything_total = await review.list_review_queue(
            session, actor=admin("reviewer-1"), status="all"
        )

    assert total == 3
    assert len(first_page) == 2
    assert len(second_page) == 1
    assert {letter.id for letter in first_page + second_page} == set(pending)
    assert {letter.status for letter in first_page + second_page} == {"pending_review"}
    assert everything_total == 5
    assert len(everything) == 5


@pytest.mark.asyncio
async def test_review_queue_is_for_reviewers_only() -> None:
    user_id = await create_profile()
    async with SessionLocal() as session:
        with pytest.raises(Forbidden):
            await review.list_review_queue(session, actor=subscriber(user_id))
        with pytest.raises(Forbidden):
            await review.list_review_queue(session, actor=employee("employee-1"))
        with pytest.raises(ValidationError):
            await review.list_review_queue(session, actor=admin("reviewer-1"), status="archived")
