from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from counselflow.domain.models import LetterAuditTrail


async def list_trail(
    session: AsyncSession,
    *,
    letter_id: str,
    newest_first: bool = True,
) -> list[LetterAuditTrail]:
    # created_at orders the trail; the monotonic id breaks ties in insertion order.
    stmt = select(LetterAuditTrail).where(LetterAuditTrail.letter_id == letter_id)
    if newest_first:
        stmt = stmt.order_by(LetterAuditTrail.created_at.desc(), LetterAuditTrail.id.desc())
    else:
        stmt = stmt.order_by(LetterAuditTrail.created_at.asc(), LetterAuditTrail.id.asc())
    result = await session.execute(stmt)
    return list(result.scalars().all())
