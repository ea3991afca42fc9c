"""
OpenAI-compatible backend.

Works with api.openai.com and anything else that serves
POST {base_url}/chat/completions, where base_url already includes /v1.
A reply that is not a chat completion object (non-JSON body, a JSON list,
choices that are not objects) is reported as a failed response.
"""

from __future__ import annotations

import logging
import time

import httpx

from khobot.backends.base import BaseBackend, BackendResponse

logger = logging.getLogger(__name__)


def _well_formed(data) -> bool:
    if not isinstance(data, dict):
        return False
    choices = data.get("choices")
    if choices is None:
        return True
    if not isinstance(choices, list):
        return False
    if choices and not isinstance(choices[0], dict):
        return False
    message = choices[0].get("message") if choices else None
    usage = data.get("usage")
    return (message is None or isinstance(message, dict)) and (usage is None or isinstance(usage, dict))


class OpenAICompatibleBackend(BaseBackend):
    """Non-streaming chat completions over httpx."""

    def __init__(self, name: str, url: str, timeout: float = 15, api_key: str = ""):
        super().__init__(name, url, timeout)
        self.api_key = api_key

    @property
    def endpoint(self) -> str:
        return f"{self.url}/chat/completions"

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    def _failure(self, t0: float, error: str, status_code: int = 0) -> BackendResponse:
        return BackendResponse(
            ok=False,
            status_code=status_code,
            backend_name=self.name,
            latency_ms=(time.monotonic() - t0) * 1000,
            error=error,
        )

    async def forward(self, body: dict) -> BackendResponse:
        t0 = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.endpoint, json=body, headers=self._headers())
        except httpx.TimeoutException:
            logger.warning("Backend '%s' timed out after %ss", self.name, self.timeout)
            return self._failure(t0, f"Timeout after {self.timeout}s")
        except httpx.HTTPError as e:
            logger.warning("Backend '%s' transport error: %s", self.name, e)
            return self._failure(t0, f"Transport error: {e}")

        if resp.status_code >= 400:
            return self._failure(t0, f"HTTP {resp.status_code}: {resp.text[:200]}", resp.status_code)

        try:
            data = resp.json()
        except ValueError:
            logger.warning("Backend '%s' returned a non-JSON body", self.name)
            return self._failure(t0, "Response body is not JSON", resp.status_code)
        if not _well_formed(data):
            logger.warning("Backend '%s' returned an unexpected shape: %s", self.name, type(data).__name__)
            return self._failure(t0, "Unexpected response shape", resp.status_code)

        return BackendResponse(
            ok=True,
            status_code=resp.status_code,
            data=data,
            backend_name=self.name,
            latency_ms=(time.monotonic() - t0) * 1000,
        )
