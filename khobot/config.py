"""
Config loader for khobot.
Reads config.yaml once at startup. All other modules import from here.
String values may reference the environment as ${VAR} or ${VAR:-default}.
"""

import os
import re
from dataclasses import dataclass
from pathlib import Path

import yaml
from dotenv import load_dotenv

from khobot.errors import Misconfigured

load_dotenv()

_CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"

_config: dict | None = None

_ENV_PATTERN = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")


def _resolve_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} / ${ENV_VAR:-default} patterns with environment values."""
    def replacer(match):
        var_name, default = match.group(1), match.group(2)
        return os.environ.get(var_name) or (default if default is not None else "")
    return _ENV_PATTERN.sub(replacer, value)


def _walk_and_resolve(obj):
    """Recursively resolve env vars in all string values."""
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_walk_and_resolve(v) for v in obj]
    elif isinstance(obj, str):
        return _resolve_env_vars(obj)
    return obj


def load_config(path: Path | None = None) -> dict:
    """Load and cache config from YAML file."""
    global _config
    if _config is not None:
        return _config

    config_path = path or _CONFIG_PATH
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    _config = _walk_and_resolve(raw)
    return _config


def get_config() -> dict:
    """Return cached base config, loading if necessary."""
    if _config is None:
        return load_config()
    return _config


# ---------------------------------------------------------------------------
# Typed settings for the question-answering pipeline
# ---------------------------------------------------------------------------

def _num(value, default, cast=float):
    """Coerce a config value (often an env-resolved string) to a number."""
    if value is None or value == "":
        return default
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise Misconfigured(f"Invalid numeric setting: {value!r}")


def _flag(value, default: bool = False) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class AISettings:
    """Everything the ask pipeline needs to know about the model and its limits."""
    model: str = ""
    api_key: str = ""
    base_url: str = "https://api.openai.com/v1"
    temperature: float = 0.2
    timeout: float = 15.0
    max_output_tokens: int = 1024
    max_question_chars: int = 1000
    monthly_budget_usd: float = 3.0
    input_cost_per_1m: float = 0.4
    output_cost_per_1m: float = 1.6
    chars_per_token: float = 3.0
    daily_question_limit: int = 1000
    conversation_ttl_hours: float = 24.0
    conversation_max_messages: int = 20
    route_min_confidence: float = 0.6
    generate_titles: bool = False

    @classmethod
    def from_config(cls, cfg: dict | None = None) -> "AISettings":
        """Build settings from the llm: and ai: sections of config.yaml."""
        cfg = cfg if cfg is not None else get_config()
        llm = cfg.get("llm", {}) or {}
        ai = cfg.get("ai", {}) or {}
        d = cls()
        return cls(
            model=str(llm.get("model") or "").strip(),
            api_key=str(llm.get("api_key") or "").strip(),
            base_url=str(llm.get("base_url") or d.base_url).rstrip("/"),
            temperature=_num(llm.get("temperature"), d.temperature),
            timeout=_num(llm.get("timeout"), d.timeout),
            max_output_tokens=_num(llm.get("max_output_tokens"), d.max_output_tokens, int),
            max_question_chars=_num(ai.get("max_question_chars"), d.max_question_chars, int),
            monthly_budget_usd=_num(ai.get("monthly_budget_usd"), d.monthly_budget_usd),
            input_cost_per_1m=_num(ai.get("input_cost_per_1m"), d.input_cost_per_1m),
            output_cost_per_1m=_num(ai.get("output_cost_per_1m"), d.output_cost_per_1m),
            chars_per_token=_num(ai.get("chars_per_token"), d.chars_per_token),
            daily_question_limit=_num(ai.get("daily_question_limit"), d.daily_question_limit, int),
            conversation_ttl_hours=_num(ai.get("conversation_ttl_hours"), d.conversation_ttl_hours),
            conversation_max_messages=_num(
                ai.get("conversation_max_messages"), d.conversation_max_messages, int
            ),
            route_min_confidence=_num(ai.get("route_min_confidence"), d.route_min_confidence),
            generate_titles=_flag(ai.get("generate_titles"), d.generate_titles),
        )

    def validate(self) -> "AISettings":
        """Raise Misconfigured if the pipeline cannot possibly call the model."""
        missing = [name for name in ("model", "api_key") if not getattr(self, name)]
        if missing:
            raise Misconfigured(f"Missing LLM settings: {', '.join(missing)}")
        if self.chars_per_token <= 0:
            raise Misconfigured("chars_per_token must be positive")
        if self.daily_question_limit < 0 or self.max_question_chars <= 0:
            raise Misconfigured("Question limits must be positive")
        return self
