from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from counselflow.domain.models import LetterAuditTrail
from counselflow.domain.state import replay_status
from counselflow.persistence.db import SessionLocal
from counselflow.persistence.repos import audit as audit_repo


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password", "content"]
_REDACTED_VALUE = "[REDACTED]"


class LetterAuditRecord(BaseModel):
    # Serializable view of one trail row for API responses and replay.
    model_config = ConfigDict(from_attributes=True)

    id: int | None = None
    letter_id: str
    action: str
    old_status: str | None = None
    new_status: str | None = None
    performed_by: str | None = None
    notes: str | None = None
    metadata_json: dict[str, Any] | None = None
    created_at: datetime | None = None


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


async def record(
    *,
    letter_id: str,
    action: str,
    old_status: str | None,
    new_status: str | None,
    notes: str | None = None,
    performed_by: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Append one trail row for a letter.

    Runs after the transition it describes has committed. Failures are logged and
    swallowed: the business transition outranks its own audit entry. The row is
    written in a dedicated session so a failed audit insert cannot poison the
    caller's session.
    """
    entry = LetterAuditTrail(
        letter_id=letter_id,
        action=action,
        old_status=old_status,
        new_status=new_status,
        performed_by=performed_by,
        notes=notes,
        metadata_json=sanitize_metadata(metadata) if metadata else None,
        created_at=datetime.now(timezone.utc),
    )

    async with SessionLocal() as audit_session:
        try:
            audit_session.add(entry)
            await audit_session.commit()
        except SQLAlchemyError as exc:
            await audit_session.rollback()
            logger.warning(
                "letter_audit_write_failed letter_id=%s action=%s",
                letter_id,
                action,
                exc_info=exc,
            )


async def list_trail(
    session: AsyncSession,
    *,
    letter_id: str,
    newest_first: bool = True,
) -> list[LetterAuditRecord]:
    rows = await audit_repo.list_trail(session, letter_id=letter_id, newest_first=newest_first)
    return [LetterAuditRecord.model_validate(row) for row in rows]


def reconstruct_status(records: list[LetterAuditRecord]) -> str | None:
    # Records must be in causal (oldest-first) order, as list_trail(newest_first=False) returns them.
    return replay_status(item.model_dump() for item in records)
