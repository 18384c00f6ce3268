from __future__ import annotations

from typing import Iterable, Mapping

from counselflow.core.errors import InvalidTransition


STATUS_DRAFT = "draft"
STATUS_GENERATING = "generating"
STATUS_PENDING_REVIEW = "pending_review"
STATUS_UNDER_REVIEW = "under_review"
STATUS_APPROVED = "approved"
STATUS_COMPLETED = "completed"
STATUS_REJECTED = "rejected"
STATUS_FAILED = "failed"

LETTER_STATUSES = frozenset(
    {
        STATUS_DRAFT,
        STATUS_GENERATING,
        STATUS_PENDING_REVIEW,
        STATUS_UNDER_REVIEW,
        STATUS_APPROVED,
        STATUS_COMPLETED,
        STATUS_REJECTED,
        STATUS_FAILED,
    }
)

# Source status -> allowed destinations. Anything absent is an InvalidTransition.
TRANSITIONS: Mapping[str, frozenset[str]] = {
    STATUS_DRAFT: frozenset({STATUS_PENDING_REVIEW}),
    STATUS_GENERATING: frozenset({STATUS_PENDING_REVIEW, STATUS_FAILED}),
    STATUS_FAILED: frozenset({STATUS_DRAFT}),
    STATUS_PENDING_REVIEW: frozenset({STATUS_UNDER_REVIEW}),
    STATUS_UNDER_REVIEW: frozenset({STATUS_APPROVED, STATUS_REJECTED}),
    STATUS_APPROVED: frozenset({STATUS_COMPLETED}),
}

# States a letter may be created in (creation is not a transition).
INITIAL_STATUSES = frozenset({STATUS_DRAFT, STATUS_GENERATING})

SUBMIT_SOURCES = frozenset({STATUS_DRAFT, STATUS_GENERATING})
DELETABLE_STATUSES = frozenset({STATUS_DRAFT, STATUS_REJECTED, STATUS_FAILED})
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED})
# final_content is present exactly in these states.
FINAL_CONTENT_STATUSES = frozenset({STATUS_APPROVED, STATUS_COMPLETED})

# Audit actions
ACTION_CREATED = "created"
ACTION_SUBMITTED = "submitted"
ACTION_GENERATED = "generated"
ACTION_GENERATION_FAILED = "generation_failed"
ACTION_RETRIED = "retried"
ACTION_REVIEW_STARTED = "review_started"
ACTION_APPROVED = "approved"
ACTION_REJECTED = "rejected"
ACTION_COMPLETED = "completed"
ACTION_DELETED = "deleted"


def is_valid_transition(from_status: str, to_status: str) -> bool:
    return to_status in TRANSITIONS.get(from_status, frozenset())


def validate_transition(from_status: str, to_status: str) -> None:
    # Reject pairs outside the table with the attempted pair for diagnostics.
    if not is_valid_transition(from_status, to_status):
        raise InvalidTransition(from_status, to_status)


def replay_status(records: Iterable[Mapping[str, object]]) -> str | None:
    """Reconstruct a letter's status by re-applying audit records in causal order.

    Records without a status change (notes, deletions) are skipped. A record whose
    ``old_status`` is null establishes the initial state and must name one of the
    creation states; every later record must start from the current status and
    follow the transition table.
    """
    current: str | None = None
    for record in records:
        old_status = record.get("old_status")
        new_status = record.get("new_status")
        if new_status is None or new_status == old_status:
            continue
        new_status = str(new_status)
        if old_status is None:
            if current is not None or new_status not in INITIAL_STATUSES:
                raise InvalidTransition(current, new_status)
            current = new_status
            continue
        old_status = str(old_status)
        if current is None:
            # Trails recorded without a creation entry start from the first old status.
            current = old_status
        if old_status != current:
            raise InvalidTransition(current, new_status)
        validate_transition(current, new_status)
        current = new_status
    return current
