from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from counselflow.domain.models import Profile


async def get_profile(session: AsyncSession, profile_id: str) -> Profile | None:
    result = await session.execute(select(Profile).where(Profile.id == profile_id))
    return result.scalar_one_or_none()


async def claim_trial(session: AsyncSession, profile_id: str) -> bool:
    # Flip the submission counter 0 -> 1 atomically; only one concurrent first submit wins.
    result = await session.execute(
        update(Profile)
        .where(
            Profile.id == profile_id,
            Profile.total_letters_submitted == 0,
            Profile.is_super_user.is_(False),
        )
        .values(total_letters_submitted=1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def record_submission(session: AsyncSession, profile_id: str) -> None:
    await session.execute(
        update(Profile)
        .where(Profile.id == profile_id)
        .values(total_letters_submitted=Profile.total_letters_submitted + 1)
        .execution_options(synchronize_session=False)
    )


async def release_submission(session: AsyncSession, profile_id: str) -> None:
    # Undo one counted submission; failed letters do not use up the trial.
    await session.execute(
        update(Profile)
        .where(Profile.id == profile_id, Profile.total_letters_submitted > 0)
        .values(total_letters_submitted=Profile.total_letters_submitted - 1)
        .execution_options(synchronize_session=False)
    )


async def set_super_user(session: AsyncSession, profile_id: str) -> bool:
    result = await session.execute(
        update(Profile)
        .where(Profile.id == profile_id)
        .values(is_super_user=True)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def list_admin_emails(session: AsyncSession) -> list[str]:
    result = await session.execute(
        select(Profile.email).where(Profile.role == "admin", Profile.email.is_not(None))
    )
    return [email for email in result.scalars().all() if email]
