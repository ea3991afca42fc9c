"""
LLM backends for khobot.
The gateway talks to one OpenAI-compatible chat completions endpoint.
"""
from khobot.backends.base import BaseBackend, BackendResponse
from khobot.backends.openai_compat import OpenAICompatibleBackend

__all__ = ["BaseBackend", "BackendResponse", "OpenAICompatibleBackend"]
