"""
Base backend abstraction.
Backends return a BackendResponse instead of raising, so the gateway decides
what a failure means for the caller.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class BackendResponse:
    """Standardized response from any backend."""
    ok: bool
    status_code: int = 200
    data: dict = field(default_factory=dict)
    backend_name: str = ""
    latency_ms: float = 0.0
    error: str = ""

    @property
    def content(self) -> str:
        """Extract assistant content from response data."""
        choices = self.data.get("choices") or []
        if choices:
            return (choices[0].get("message") or {}).get("content") or ""
        return ""

    @property
    def usage(self) -> dict:
        """Raw provider usage block ({} when absent)."""
        return self.data.get("usage") or {}


class BaseBackend(abc.ABC):
    """Abstract base for chat completion backends."""

    def __init__(self, name: str, url: str, timeout: float = 15):
        self.name = name
        self.url = url.rstrip("/")
        self.timeout = timeout

    @abc.abstractmethod
    async def forward(self, body: dict) -> BackendResponse:
        """
        Send a chat completion request.
        Body is OpenAI-compatible format.
        Returns BackendResponse with data or error.
        """
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} url={self.url!r}>"
