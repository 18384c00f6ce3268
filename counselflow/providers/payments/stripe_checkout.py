from __future__ import annotations

import time
from typing import Any

import httpx

from counselflow.core.config import get_settings
from counselflow.core.errors import DependencyFailure, NotFound
from counselflow.providers.payments.base import CheckoutSession
from counselflow.services.telemetry import record_external_call


class StripeCheckoutProvider:
    """Create and look up Stripe Checkout sessions over the REST API.

    One request per call; failures are not retried here because checkout
    creation is user-initiated and confirmation is idempotent, so both are
    safe for the caller to repeat.
    """

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        self._client = httpx.AsyncClient(timeout=self._settings.payment_timeout_ms / 1000.0)
        return self._client

    async def _send(self, method: str, path: str, *, data: dict[str, str] | None = None) -> dict[str, Any]:
        secret_key = self._settings.stripe_secret_key
        if not secret_key:
            raise DependencyFailure("STRIPE_SECRET_KEY is required for payment processing")

        url = f"{self._settings.stripe_api_base.rstrip('/')}{path}"
        headers = {"Authorization": f"Bearer {secret_key}"}
        client = self._get_client()

        start = time.monotonic()
        try:
            response = await client.request(method, url, headers=headers, data=data)
        except httpx.HTTPError as exc:
            record_external_call(
                integration="payments.stripe",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise DependencyFailure("Payment provider request failed") from exc

        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code == 404:
            record_external_call(integration="payments.stripe", latency_ms=latency_ms, success=True)
            raise NotFound("Payment session not found")
        if response.status_code >= 400:
            record_external_call(integration="payments.stripe", latency_ms=latency_ms, success=False)
            raise DependencyFailure(
                "Payment provider request failed",
                details={"status_code": response.status_code},
            )
        try:
            payload = response.json()
        except ValueError as exc:
            record_external_call(integration="payments.stripe", latency_ms=latency_ms, success=False)
            raise DependencyFailure("Payment provider returned an unexpected payload") from exc
        record_external_call(integration="payments.stripe", latency_ms=latency_ms, success=True)
        return payload

    @staticmethod
    def _to_session(payload: dict[str, Any], fallback_id: str | None = None) -> CheckoutSession:
        try:
            return CheckoutSession.model_validate(
                {
                    "id": payload.get("id") or fallback_id,
                    "payment_status": payload.get("payment_status") or "unpaid",
                    "metadata": payload.get("metadata") or {},
                    "url": payload.get("url"),
                }
            )
        except ValueError as exc:
            raise DependencyFailure("Payment provider returned an unexpected payload") from exc

    async def create_session(
        self,
        *,
        amount_cents: int,
        product_name: str,
        description: str,
        metadata: dict[str, str],
        client_reference_id: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        # Stripe takes form-encoded nested keys.
        form = {
            "mode": "payment",
            "payment_method_types[0]": "card",
            "line_items[0][quantity]": "1",
            "line_items[0][price_data][currency]": "usd",
            "line_items[0][price_data][unit_amount]": str(amount_cents),
            "line_items[0][price_data][product_data][name]": product_name,
            "line_items[0][price_data][product_data][description]": description,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": client_reference_id,
        }
        form.update({f"metadata[{key}]": value for key, value in metadata.items()})
        payload = await self._send("POST", "/v1/checkout/sessions", data=form)
        return self._to_session(payload)

    async def retrieve_session(self, session_id: str) -> CheckoutSession:
        payload = await self._send("GET", f"/v1/checkout/sessions/{session_id}")
        return self._to_session(payload, fallback_id=session_id)
