from __future__ import annotations

import re


# Control characters except tab, newline and carriage return.
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_SCRIPT_BLOCKS = re.compile(r"<\s*(script|style)[^>]*>.*?<\s*/\s*\1\s*>", re.IGNORECASE | re.DOTALL)
_ANGLE_BRACKETS = re.compile(r"[<>]")
_JS_SCHEME = re.compile(r"javascript\s*:", re.IGNORECASE)
_EVENT_HANDLERS = re.compile(r"\bon\w+\s*=", re.IGNORECASE)


def sanitize_text(value: str | None, max_length: int) -> str:
    """Normalize free text before it is stored or shown to reviewers.

    Trims whitespace, drops control characters and common markup injection
    vectors, then caps the result at ``max_length`` characters.
    """
    if value is None:
        return ""
    cleaned = _CONTROL_CHARS.sub("", str(value))
    cleaned = _SCRIPT_BLOCKS.sub("", cleaned)
    cleaned = _ANGLE_BRACKETS.sub("", cleaned)
    cleaned = _JS_SCHEME.sub("", cleaned)
    cleaned = _EVENT_HANDLERS.sub("", cleaned)
    cleaned = cleaned.strip()
    if max_length > 0 and len(cleaned) > max_length:
        cleaned = cleaned[:max_length].rstrip()
    return cleaned
