from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway SQLite file before counselflow builds it at import time.
_DB_DIR = tempfile.mkdtemp(prefix="counselflow-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR}/counselflow.db")
os.environ.setdefault("AUTH_DEV_BYPASS", "true")
os.environ.setdefault("NOTIFICATIONS_ENABLED", "false")
os.environ.setdefault("DRAFTING_PROVIDER", "fake")
os.environ.setdefault("PAYMENT_PROVIDER", "fake")
os.environ.setdefault("CSRF_SECRET", "test-csrf-secret")

import pytest  # noqa: E402

from counselflow.core.config import get_settings  # noqa: E402
from counselflow.domain.models import Base  # noqa: E402
from counselflow.persistence.db import engine  # noqa: E402
from counselflow.providers.payments.factory import set_payment_provider  # noqa: E402
from counselflow.services.allowance import reset_allowance_ledger  # noqa: E402
from counselflow.services.notifications import reset_notification_dispatcher  # noqa: E402
from counselflow.services.telemetry import get_telemetry  # noqa: E402


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Every test starts from empty tables; the engine is disposed so no connection outlives its loop.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_singletons() -> None:
    # Clear cached settings and process-wide services so env overrides never leak across tests.
    get_settings.cache_clear()
    reset_allowance_ledger()
    reset_notification_dispatcher()
    set_payment_provider(None)
    get_telemetry().reset()
    yield
    get_settings.cache_clear()
    reset_allowance_ledger()
    reset_notification_dispatcher()
    set_payment_provider(None)
