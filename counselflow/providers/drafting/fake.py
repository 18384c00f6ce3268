from __future__ import annotations

from typing import Any, Mapping

from counselflow.core.errors import DraftingError


class FakeDraftingProvider:
    def __init__(self, response: str | None = None, *, fail: bool = False) -> None:
        # Deterministic drafts keep tests stable without external calls.
        self._response = response
        self._fail = fail
        self.calls: list[dict[str, Any]] = []

    async def draft(self, *, letter_type: str, intake_data: Mapping[str, Any]) -> str:
        self.calls.append({"letter_type": letter_type, "intake_data": dict(intake_data)})
        if self._fail:
            raise DraftingError("Fake drafting provider configured to fail")
        if self._response is not None:
            return self._response
        recipient = intake_data.get("recipientName") or "Recipient"
        sender = intake_data.get("senderName") or "Sender"
        return f"Dear {recipient},\n\nThis {letter_type} letter is a placeholder draft.\n\nSincerely,\n{sender}"
