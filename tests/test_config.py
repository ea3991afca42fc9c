"""
Tests for config loading and typed AI settings.
"""

import pytest

from khobot import config
from khobot.config import AISettings
from khobot.errors import Misconfigured


def test_env_substitution(monkeypatch):
    monkeypatch.setenv("KHOBOT_TEST_KEY", "sk-live")
    monkeypatch.delenv("KHOBOT_TEST_MISSING", raising=False)
    assert config._resolve_env_vars("${KHOBOT_TEST_KEY}") == "sk-live"
    assert config._resolve_env_vars("${KHOBOT_TEST_MISSING:-7}") == "7"
    assert config._resolve_env_vars("${KHOBOT_TEST_MISSING}") == ""
    assert config._walk_and_resolve({"a": ["${KHOBOT_TEST_KEY}", 3]}) == {"a": ["sk-live", 3]}


def test_load_config_from_file(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "_config", None)
    monkeypatch.setenv("KHOBOT_TEST_MODEL", "gpt-test")
    path = tmp_path / "config.yaml"
    path.write_text(
        "llm:\n"
        "  model: ${KHOBOT_TEST_MODEL}\n"
        "  api_key: sk-test\n"
        "ai:\n"
        "  daily_question_limit: \"${KHOBOT_TEST_LIMIT:-5}\"\n"
        "  generate_titles: \"true\"\n",
        encoding="utf-8",
    )
    cfg = config.load_config(path)
    assert config.get_config() is cfg

    settings = AISettings.from_config(cfg).validate()
    assert settings.model == "gpt-test"
    assert settings.daily_question_limit == 5
    assert settings.generate_titles is True
    assert settings.monthly_budget_usd == 3.0
    assert settings.max_question_chars == 1000


def test_missing_config_file(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "_config", None)
    with pytest.raises(FileNotFoundError):
        config.load_config(tmp_path / "nope.yaml")


def test_validate_requires_model_and_key():
    with pytest.raises(Misconfigured):
        AISettings().validate()
    with pytest.raises(Misconfigured):
        AISettings(model="gpt-test", api_key="k", chars_per_token=0).validate()


def test_bad_number_is_misconfigured():
    with pytest.raises(Misconfigured):
        AISettings.from_config({"ai": {"monthly_budget_usd": "three"}})
