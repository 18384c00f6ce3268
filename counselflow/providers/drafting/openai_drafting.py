from __future__ import annotations

import time
from typing import Any, Mapping

import httpx

from counselflow.core.config import get_settings
from counselflow.core.errors import DraftingError
from counselflow.providers.drafting.base import SYSTEM_PROMPT, build_prompt
from counselflow.services.resilience import retry_async
from counselflow.services.telemetry import record_external_call


class OpenAIDraftingProvider:
    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        self._client = httpx.AsyncClient(timeout=float(self._settings.drafting_timeout_s))
        return self._client

    async def draft(self, *, letter_type: str, intake_data: Mapping[str, Any]) -> str:
        api_key = self._settings.openai_api_key
        if not api_key:
            raise DraftingError("OPENAI_API_KEY is required for OpenAI drafting")

        payload = {
            "model": self._settings.openai_drafting_model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_prompt(letter_type, intake_data)},
            ],
            "temperature": 0.7,
            "max_tokens": 2048,
        }
        headers = {"Authorization": f"Bearer {api_key}"}
        url = f"{self._settings.openai_base_url.rstrip('/')}/chat/completions"
        client = self._get_client()

        start = time.monotonic()
        try:
            async def _call() -> httpx.Response:
                response = await client.post(url, json=payload, headers=headers)
                if response.status_code >= 500:
                    # Surface 5xx as an exception so the retry policy can see it.
                    response.raise_for_status()
                return response

            response = await retry_async(_call)
        except (httpx.HTTPError, TimeoutError) as exc:
            record_external_call(
                integration="drafting.openai",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise DraftingError("OpenAI drafting request failed") from exc

        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code >= 400:
            record_external_call(integration="drafting.openai", latency_ms=latency_ms, success=False)
            raise DraftingError(f"OpenAI drafting error: {response.status_code}")

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            record_external_call(integration="drafting.openai", latency_ms=latency_ms, success=False)
            raise DraftingError("OpenAI drafting returned an unexpected payload") from exc
        if not content or not str(content).strip():
            record_external_call(integration="drafting.openai", latency_ms=latency_ms, success=False)
            raise DraftingError("AI returned empty content")

        record_external_call(integration="drafting.openai", latency_ms=latency_ms, success=True)
        return str(content).strip()
