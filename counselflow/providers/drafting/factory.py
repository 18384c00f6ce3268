from __future__ import annotations

from counselflow.core.config import get_settings
from counselflow.core.errors import DraftingError
from counselflow.providers.drafting.fake import FakeDraftingProvider
from counselflow.providers.drafting.openai_drafting import OpenAIDraftingProvider


def get_drafting_provider():
    settings = get_settings()
    provider = (settings.drafting_provider or "fake").lower()

    if provider == "fake":
        return FakeDraftingProvider()
    if provider == "openai":
        return OpenAIDraftingProvider()

    raise DraftingError(f"Unsupported drafting provider: {provider}")
