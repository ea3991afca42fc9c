"""
LLM gateway: the single place the pipeline talks to the model.

complete() sends system prompt + recent history + user turn, and returns the
text plus the provider's token usage. Any transport, HTTP or empty-response
failure becomes ModelUnavailable; the provider's error text only reaches the
log. The before_call hook sees every call's prompt texts and output limit
first and may refuse it by raising; usage is charged to the budget guard
before complete() returns.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Callable

from khobot.backends.base import BaseBackend
from khobot.backends.openai_compat import OpenAICompatibleBackend
from khobot.config import AISettings
from khobot.costs import TokenUsage
from khobot.errors import ModelUnavailable
from khobot.storage.models import Message

logger = logging.getLogger(__name__)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def parse_json_reply(text: str) -> dict | None:
    """
    Parse a model reply that should be a JSON object.
    Tries the reply as-is (minus code fences), then the outermost {...}
    inside surrounding prose. None when neither parses to an object.
    """
    cleaned = (text or "").strip()
    if cleaned.startswith("```"):
        lines = [l for l in cleaned.split("\n") if not l.strip().startswith("```")]
        cleaned = "\n".join(lines).strip()
    try:
        data = json.loads(cleaned)
        return data if isinstance(data, dict) else None
    except json.JSONDecodeError:
        pass
    match = _JSON_OBJECT.search(cleaned)
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


@dataclass
class Completion:
    text: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    latency_ms: float = 0.0


class LLMGateway:
    """Chat completion calls with a bounded history window and output size."""

    def __init__(
        self,
        backend: BaseBackend,
        model: str,
        temperature: float = 0.2,
        max_output_tokens: int = 1024,
        history_window: int = 20,
        on_usage: Callable[[TokenUsage], object] | None = None,
        before_call: Callable[[list[str], int], object] | None = None,
    ):
        self.backend = backend
        self.model = model
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.history_window = history_window
        self.on_usage = on_usage
        self.before_call = before_call

    @classmethod
    def from_settings(
        cls,
        settings: AISettings,
        on_usage: Callable[[TokenUsage], object] | None = None,
    ) -> "LLMGateway":
        backend = OpenAICompatibleBackend(
            name="openai",
            url=settings.base_url,
            timeout=settings.timeout,
            api_key=settings.api_key,
        )
        return cls(
            backend=backend,
            model=settings.model,
            temperature=settings.temperature,
            max_output_tokens=settings.max_output_tokens,
            history_window=settings.conversation_max_messages,
            on_usage=on_usage,
        )

    def build_messages(
        self,
        system_prompt: str,
        user_prompt: str,
        history: list[Message] | None = None,
    ) -> list[dict]:
        window = (history or [])[-self.history_window:] if self.history_window > 0 else []
        return (
            [{"role": "system", "content": system_prompt}]
            + [m.to_openai_format() for m in window if m.role in ("user", "assistant")]
            + [{"role": "user", "content": user_prompt}]
        )

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        history: list[Message] | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> Completion:
        body = {
            "model": self.model,
            "messages": self.build_messages(system_prompt, user_prompt, history),
            "temperature": self.temperature if temperature is None else temperature,
            "stream": False,
        }
        limit = self.max_output_tokens if max_tokens is None else max_tokens
        if limit and limit > 0:
            body["max_tokens"] = limit

        if self.before_call is not None:
            prompt_texts = [m["content"] for m in body["messages"]]
            await asyncio.to_thread(self.before_call, prompt_texts, limit)

        resp = await self.backend.forward(body)
        if not resp.ok:
            logger.error(
                "Model call failed (backend=%s status=%s): %s",
                resp.backend_name, resp.status_code, resp.error,
            )
            raise ModelUnavailable()

        usage = TokenUsage.from_openai(resp.usage)
        if self.on_usage is not None:
            await asyncio.to_thread(self.on_usage, usage)

        text = resp.content.strip()
        if not text:
            logger.error("Model returned an empty reply (backend=%s)", resp.backend_name)
            raise ModelUnavailable()

        logger.info(
            "Model reply: %d chars in %.0fms (tokens in=%d out=%d)",
            len(text), resp.latency_ms, usage.input_tokens, usage.output_tokens,
        )
        return Completion(text=text, usage=usage, latency_ms=resp.latency_ms)
