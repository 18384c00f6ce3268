from __future__ import annotations

from typing import Any, Iterable

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from counselflow.domain.models import Letter


async def create_letter(
    session: AsyncSession,
    *,
    letter_id: str,
    user_id: str,
    status: str,
    title: str,
    letter_type: str | None = None,
    intake_data: dict[str, Any] | None = None,
    allowance_source: str | None = None,
    charged_subscription_id: str | None = None,
) -> Letter:
    # Create the row explicitly so the initial status is recorded by the caller's audit entry.
    letter = Letter(
        id=letter_id,
        user_id=user_id,
        status=status,
        title=title,
        letter_type=letter_type,
        intake_data=intake_data,
        allowance_source=allowance_source,
        charged_subscription_id=charged_subscription_id,
    )
    session.add(letter)
    return letter


async def get_letter(session: AsyncSession, letter_id: str) -> Letter | None:
    result = await session.execute(select(Letter).where(Letter.id == letter_id))
    return result.scalar_one_or_none()


async def list_letters(session: AsyncSession, user_id: str) -> list[Letter]:
    result = await session.execute(
        select(Letter).where(Letter.user_id == user_id).order_by(Letter.created_at.desc(), Letter.id)
    )
    return list(result.scalars().all())


async def transition_status(
    session: AsyncSession,
    letter_id: str,
    *,
    expected_status: str,
    new_status: str,
    values: dict[str, Any] | None = None,
) -> bool:
    # Conditional update on the status we read; zero rows means another writer won.
    stmt = (
        update(Letter)
        .where(Letter.id == letter_id, Letter.status == expected_status)
        .values(status=new_status, updated_at=func.now(), **(values or {}))
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def delete_letter(
    session: AsyncSession,
    letter_id: str,
    *,
    user_id: str,
    statuses: Iterable[str],
) -> bool:
    # Guard ownership and status in the statement itself so a concurrent submit cannot be deleted.
    result = await session.execute(
        delete(Letter)
        .where(
            Letter.id == letter_id,
            Letter.user_id == user_id,
            Letter.status.in_(list(statuses)),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def update_draft(
    session: AsyncSession,
    letter_id: str,
    *,
    user_id: str,
    draft_status: str,
    values: dict[str, Any],
) -> bool:
    # Edits land only while the row is still the owner's draft.
    result = await session.execute(
        update(Letter)
        .where(Letter.id == letter_id, Letter.user_id == user_id, Letter.status == draft_status)
        .values(updated_at=func.now(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def list_letters_by_status(
    session: AsyncSession,
    *,
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[Letter], int]:
    filters = [Letter.status == status] if status else []
    total = await session.scalar(select(func.count()).select_from(Letter).where(*filters))
    result = await session.execute(
        select(Letter)
        .where(*filters)
        .order_by(Letter.created_at.desc(), Letter.id)
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), int(total or 0)
