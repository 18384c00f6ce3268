from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from counselflow.core.config import get_settings
from counselflow.core.errors import AllowanceExhausted, DependencyFailure, NotFound
from counselflow.persistence.repos import profiles as profiles_repo
from counselflow.persistence.repos import subscriptions as subscriptions_repo
from counselflow.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Letters included per purchase of each plan.
PLAN_LETTERS: dict[str, int] = {
    "one_time": 1,
    "single_letter": 1,
    "standard_4_month": 4,
    "monthly": 4,
    "premium_8_month": 8,
    "yearly": 8,
}
DEFAULT_PLAN_LETTERS = 1
# Plans whose credits are reset at each calendar month boundary.
RECURRING_PLANS = frozenset({"standard_4_month", "monthly", "premium_8_month", "yearly"})

SOURCE_TRIAL = "trial"
SOURCE_UNLIMITED = "unlimited"
SOURCE_SUBSCRIPTION = "subscription"

# A concurrent writer can drain the chosen subscription between planning and locking.
_DEDUCT_ATTEMPTS = 3


@dataclass(frozen=True)
class AllowanceStatus:
    # Read-only view of a user's metered entitlement.
    has_allowance: bool
    remaining: int
    is_unlimited: bool
    plan: str | None
    trial_available: bool


@dataclass(frozen=True)
class Charge:
    # How a letter was paid for; kept on the letter so failures can be refunded.
    source: str
    subscription_id: str | None = None


def plan_letters(plan_name: str) -> int:
    return PLAN_LETTERS.get(plan_name, DEFAULT_PLAN_LETTERS)


class AllowanceLedger:
    """Race-safe letter credit accounting.

    Every mutating method runs inside the caller's transaction and never
    commits, so a deduction and the status change it pays for land together
    or not at all. Balances only move through single conditional UPDATE
    statements; nothing reads a balance and writes it back.
    """

    def __init__(self, *, time_provider: Callable[[], datetime] | None = None) -> None:
        # Allow time injection for deterministic period and reset tests.
        self._time_provider = time_provider or _utc_now

    async def check_allowance(self, session: AsyncSession, user_id: str) -> AllowanceStatus:
        now = self._time_provider()
        profile = await profiles_repo.get_profile(session, user_id)
        if profile is None:
            raise NotFound("Profile not found")
        remaining = await subscriptions_repo.sum_active_credits(session, user_id, now=now)
        active = await subscriptions_repo.get_active_subscription(session, user_id, now=now)
        trial_available = (
            get_settings().free_trial_enabled
            and not profile.is_super_user
            and int(profile.total_letters_submitted or 0) == 0
        )
        if profile.is_super_user:
            return AllowanceStatus(
                has_allowance=True,
                remaining=remaining,
                is_unlimited=True,
                plan="unlimited",
                trial_available=False,
            )
        return AllowanceStatus(
            has_allowance=remaining > 0,
            remaining=remaining,
            is_unlimited=False,
            plan=active.plan_type if active else None,
            trial_available=trial_available,
        )

    async def deduct(self, session: AsyncSession, user_id: str) -> bool:
        return await self.deduct_from_subscription(session, user_id) is not None

    async def deduct_from_subscription(self, session: AsyncSession, user_id: str) -> str | None:
        # Return the debited subscription id, or None when no active subscription has credits.
        now = self._time_provider()
        for _ in range(_DEDUCT_ATTEMPTS):
            subscription_id = await subscriptions_repo.deduct_credit(session, user_id, now=now)
            if subscription_id is not None:
                increment_counter("allowance.deducted")
                return subscription_id
            if await subscriptions_repo.sum_active_credits(session, user_id, now=now) <= 0:
                break
        increment_counter("allowance.exhausted")
        return None

    async def grant(
        self,
        session: AsyncSession,
        subscription_id: str,
        plan_name: str,
        *,
        letters: int | None = None,
    ) -> bool:
        """Top up a subscription with its plan's letters, once per subscription id.

        Returns False when the grant was already applied. ``letters`` overrides the
        plan catalog with the purchased count carried on the payment.
        """
        now = self._time_provider()
        count = letters if letters is not None else plan_letters(plan_name)
        applied = await subscriptions_repo.grant_credits(session, subscription_id, letters=count, now=now)
        if not applied:
            logger.info("allowance_grant_skipped subscription_id=%s", subscription_id)
        return applied

    async def refund(self, session: AsyncSession, subscription_id: str, units: int = 1) -> None:
        now = self._time_provider()
        if not await subscriptions_repo.refund_credit(session, subscription_id, units=units, now=now):
            raise NotFound("Subscription not found")
        increment_counter("allowance.refunded", units)

    async def charge_letter(self, session: AsyncSession, user_id: str) -> Charge:
        # Unlimited users bypass the ledger; otherwise try the free trial, then a credit.
        profile = await profiles_repo.get_profile(session, user_id)
        if profile is None:
            raise NotFound("Profile not found")
        if profile.is_super_user:
            await profiles_repo.record_submission(session, user_id)
            return Charge(source=SOURCE_UNLIMITED)
        if get_settings().free_trial_enabled and await profiles_repo.claim_trial(session, user_id):
            increment_counter("allowance.trial_claimed")
            return Charge(source=SOURCE_TRIAL)
        subscription_id = await self.deduct_from_subscription(session, user_id)
        if subscription_id is None:
            raise AllowanceExhausted()
        await profiles_repo.record_submission(session, user_id)
        return Charge(source=SOURCE_SUBSCRIPTION, subscription_id=subscription_id)

    async def release_charge(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        source: str | None,
        subscription_id: str | None,
    ) -> None:
        # Give back what charge_letter took; a released trial becomes claimable again.
        if source is None:
            return
        if source == SOURCE_SUBSCRIPTION and subscription_id:
            await self.refund(session, subscription_id)
        await profiles_repo.release_submission(session, user_id)

    async def reset_monthly_allowances(self, session: AsyncSession) -> int:
        # Reset recurring plans once per calendar month; returns the number of subscriptions reset.
        now = self._time_provider()
        month_start = datetime(now.year, now.month, 1, tzinfo=timezone.utc)
        try:
            due = await subscriptions_repo.list_due_for_reset(
                session, plan_types=RECURRING_PLANS, month_start=month_start, now=now
            )
            reset = 0
            for subscription in due:
                applied = await subscriptions_repo.reset_credits(
                    session,
                    subscription.id,
                    letters=plan_letters(subscription.plan_type),
                    month_start=month_start,
                    now=now,
                )
                reset += int(applied)
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            raise DependencyFailure("Failed to reset monthly allowances") from exc
        logger.info("allowance_monthly_reset count=%s", reset)
        return reset


_ledger: AllowanceLedger | None = None


def get_allowance_ledger() -> AllowanceLedger:
    # Cache the ledger for reuse across requests.
    global _ledger
    if _ledger is None:
        _ledger = AllowanceLedger()
    return _ledger


def reset_allowance_ledger() -> None:
    # Reset cached services for deterministic tests.
    global _ledger
    _ledger = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
