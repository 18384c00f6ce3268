from __future__ import annotations

import re
from typing import Any, Mapping, Protocol


SYSTEM_PROMPT = (
    "You are a professional legal attorney drafting formal legal letters. "
    "Always produce professional, legally sound content with proper formatting."
)

_SENDER_FIELDS = ("senderName", "senderAddress", "senderEmail", "senderPhone")
_RECIPIENT_FIELDS = ("recipientName", "recipientAddress", "recipientEmail", "recipientPhone")
_REQUIREMENTS = (
    "- Write a professional, legally sound letter (300-500 words)",
    "- Include proper date and formal letter format",
    "- Present facts clearly and objectively",
    "- State clear demands with specific deadlines (if applicable)",
    "- Maintain professional legal tone throughout",
    "- Include proper salutations and closing",
    "- Format as a complete letter with all standard elements",
    "- Avoid any legal advice beyond standard letter writing",
)


class DraftingProvider(Protocol):
    async def draft(self, *, letter_type: str, intake_data: Mapping[str, Any]) -> str:
        ...


def _label(key: str) -> str:
    # senderName -> Sender Name, issue_description -> Issue description
    spaced = re.sub(r"([A-Z])", r" \1", key).replace("_", " ").strip()
    return spaced[:1].upper() + spaced[1:]


def _field(intake_data: Mapping[str, Any], key: str) -> str:
    value = intake_data.get(key)
    if value is None or value == "":
        return ""
    return f"{_label(key)}: {value}"


def build_prompt(letter_type: str, intake_data: Mapping[str, Any]) -> str:
    """Render the user prompt for one letter from its intake form."""
    amount = intake_data.get("amountDemanded")
    amount_line = ""
    if amount not in (None, ""):
        try:
            amount_line = f"Amount Demanded: ${float(amount):,.2f}"
        except (TypeError, ValueError):
            amount_line = f"Amount Demanded: {amount}"
    lines = [
        f"Draft a professional {letter_type} letter with the following details:",
        "",
        "Sender Information:",
        *(_field(intake_data, key) for key in _SENDER_FIELDS),
        "",
        "Recipient Information:",
        *(_field(intake_data, key) for key in _RECIPIENT_FIELDS),
        "",
        "Case Details:",
        _field(intake_data, "issueDescription"),
        _field(intake_data, "desiredOutcome"),
        amount_line,
        f"Deadline: {intake_data['deadlineDate']}" if intake_data.get("deadlineDate") else "",
        f"Incident Date: {intake_data['incidentDate']}" if intake_data.get("incidentDate") else "",
        _field(intake_data, "additionalDetails"),
        "",
        "Requirements:",
        *_REQUIREMENTS,
        "",
        "Important: Only return the letter content itself, no explanations or commentary.",
    ]
    return "\n".join(line for line in lines if line)
