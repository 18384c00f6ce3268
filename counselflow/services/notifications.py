from __future__ import annotations

import asyncio
from dataclasses import dataclass
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Awaitable, Callable

import httpx

from counselflow.core.config import get_settings
from counselflow.services.resilience import retry_async
from counselflow.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

TEMPLATE_LETTER_APPROVED = "letter-approved"
TEMPLATE_LETTER_REJECTED = "letter-rejected"
TEMPLATE_ADMIN_ALERT = "admin-alert"
TEMPLATE_COMMISSION_EARNED = "commission-earned"
TEMPLATE_SUBSCRIPTION_CONFIRMATION = "subscription-confirmation"


@dataclass(frozen=True)
class NotificationDeliveryResult:
    # Summarize one template delivery for logging and tests.
    sent: bool
    status_code: int | None
    message: str


NotificationSender = Callable[[str, list[str], dict[str, Any]], Awaitable[NotificationDeliveryResult]]


def build_notification_signature(secret: str, payload: bytes) -> str:
    # Compute HMAC SHA256 signatures so the relay can verify the sender.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


async def send_template_webhook(
    template: str,
    recipients: list[str],
    variables: dict[str, Any],
) -> NotificationDeliveryResult:
    # Post a signed template payload to the email relay with a short timeout.
    settings = get_settings()
    if not settings.notification_webhook_url or not settings.notification_webhook_secret:
        return NotificationDeliveryResult(
            sent=False,
            status_code=None,
            message="Notification webhook is not configured",
        )

    payload = {"template": template, "to": recipients, "data": variables}
    body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "X-Notification-Signature": build_notification_signature(settings.notification_webhook_secret, body),
        "X-Notification-Template": template,
    }
    timeout = settings.notification_timeout_ms / 1000.0

    start = time.monotonic()
    try:
        async def _call() -> httpx.Response:
            async with httpx.AsyncClient(timeout=timeout) as client:
                return await client.post(settings.notification_webhook_url, content=body, headers=headers)

        response = await retry_async(_call)
    except (httpx.HTTPError, TimeoutError, OSError) as exc:
        record_external_call(
            integration="notifications.webhook",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=False,
        )
        logger.warning("notification_send_failed template=%s", template, exc_info=exc)
        return NotificationDeliveryResult(sent=False, status_code=None, message=str(exc))

    success = response.status_code < 400
    record_external_call(
        integration="notifications.webhook",
        latency_ms=(time.monotonic() - start) * 1000.0,
        success=success,
    )
    if not success:
        return NotificationDeliveryResult(
            sent=False,
            status_code=response.status_code,
            message=f"Webhook responded with status {response.status_code}",
        )
    return NotificationDeliveryResult(
        sent=True,
        status_code=response.status_code,
        message="Notification delivered",
    )


class NotificationDispatcher:
    """Fire-and-forget template notifications.

    ``dispatch`` schedules delivery on the running loop and returns immediately;
    a failed or slow delivery never reaches the caller. Pending tasks are kept
    so they are not garbage collected mid-flight and so tests can ``drain``.
    """

    def __init__(self, sender: NotificationSender | None = None, *, enabled: bool | None = None) -> None:
        self._sender = sender or send_template_webhook
        self._enabled = enabled
        self._tasks: set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        if self._enabled is not None:
            return self._enabled
        return get_settings().notifications_enabled

    def dispatch(
        self,
        template: str,
        recipients: str | list[str] | None,
        variables: dict[str, Any],
    ) -> asyncio.Task | None:
        if isinstance(recipients, str):
            recipients = [recipients]
        resolved = [item for item in (recipients or []) if item]
        if not resolved or not self.enabled:
            return None
        task = asyncio.create_task(self._deliver(template, resolved, variables))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver(self, template: str, recipients: list[str], variables: dict[str, Any]) -> None:
        try:
            result = await self._sender(template, recipients, variables)
        except Exception as exc:  # noqa: BLE001 - notification failures are non-fatal
            increment_counter("notifications.failed")
            logger.warning("notification_dispatch_failed template=%s", template, exc_info=exc)
            return
        if result.sent:
            increment_counter("notifications.sent")
        else:
            increment_counter("notifications.failed")
            logger.info("notification_not_sent template=%s reason=%s", template, result.message)

    async def drain(self) -> None:
        # Wait for in-flight deliveries; used on shutdown and in tests.
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def letter_link(letter_id: str, *, admin: bool = False) -> str:
    site_url = get_settings().site_url.rstrip("/")
    if admin:
        return f"{site_url}/secure-admin-gateway/review/{letter_id}"
    return f"{site_url}/dashboard/letters/{letter_id}"


def admin_recipients_from_settings() -> list[str]:
    raw = get_settings().admin_notification_emails
    return [item.strip() for item in raw.split(",") if item.strip()]


_dispatcher: NotificationDispatcher | None = None


def get_notification_dispatcher() -> NotificationDispatcher:
    # Cache the dispatcher so in-flight tasks are tracked process-wide.
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher()
    return _dispatcher


def set_notification_dispatcher(dispatcher: NotificationDispatcher | None) -> None:
    # Swap the dispatcher for tests; None restores the default on next access.
    global _dispatcher
    _dispatcher = dispatcher


def reset_notification_dispatcher() -> None:
    set_notification_dispatcher(None)
