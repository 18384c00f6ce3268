from __future__ import annotations

from typing import Any

from counselflow.core.errors import DependencyFailure, NotFound
from counselflow.providers.payments.base import CheckoutSession


class FakePaymentProvider:
    def __init__(self, sessions: dict[str, CheckoutSession] | None = None, *, fail: bool = False) -> None:
        # In-memory sessions keep payment tests deterministic without provider calls.
        self._sessions: dict[str, CheckoutSession] = dict(sessions or {})
        self._fail = fail
        self.lookups = 0
        self.created: list[dict[str, Any]] = []

    def add_session(
        self,
        session_id: str,
        *,
        metadata: dict[str, Any],
        payment_status: str = "paid",
    ) -> CheckoutSession:
        checkout = CheckoutSession(id=session_id, payment_status=payment_status, metadata=metadata)
        self._sessions[session_id] = checkout
        return checkout

    def mark_paid(self, session_id: str) -> None:
        checkout = self._sessions[session_id]
        self._sessions[session_id] = checkout.model_copy(update={"payment_status": "paid"})

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
        if self._fail:
            raise DependencyFailure("Payment provider unavailable")
        session_id = f"cs_fake_{len(self.created) + 1}"
        self.created.append(
            {
                "id": session_id,
                "amount_cents": amount_cents,
                "product_name": product_name,
                "description": description,
                "client_reference_id": client_reference_id,
                "success_url": success_url,
                "cancel_url": cancel_url,
            }
        )
        checkout = CheckoutSession(
            id=session_id,
            payment_status="unpaid",
            metadata=dict(metadata),
            url=f"https://checkout.test/{session_id}",
        )
        self._sessions[session_id] = checkout
        return checkout

    async def retrieve_session(self, session_id: str) -> CheckoutSession:
        self.lookups += 1
        if self._fail:
            raise DependencyFailure("Payment provider unavailable")
        checkout = self._sessions.get(session_id)
        if checkout is None:
            raise NotFound("Payment session not found")
        return checkout
