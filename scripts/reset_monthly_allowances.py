from __future__ import annotations

import asyncio

from counselflow.persistence.db import SessionLocal
from counselflow.services.allowance import get_allowance_ledger


async def reset() -> None:
    # Safe to run repeatedly; each subscription resets at most once per calendar month.
    async with SessionLocal() as session:
        count = await get_allowance_ledger().reset_monthly_allowances(session)
        print(f"reset_subscriptions={count}")


if __name__ == "__main__":
    asyncio.run(reset())
