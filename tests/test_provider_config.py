from __future__ import annotations

import pytest

from novel_engine.adapters.provider_config import (
    DEFAULT_MODEL,
    DEFAULT_PROVIDER,
    ProviderSettingsCache,
    load_provider_settings_from_env,
    settings_ttl_from_env,
)
from novel_engine.domain.ports import ProviderSettings


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "NOVEL_ENGINE_COMPLETION_PROVIDER",
        "NOVEL_ENGINE_AI_MODEL",
        "NOVEL_ENGINE_AI_BASE_URL",
        "NOVEL_ENGINE_AI_TEMPERATURE",
        "NOVEL_ENGINE_AI_MAX_TOKENS",
        "NOVEL_ENGINE_AI_TIMEOUT_SECONDS",
        "NOVEL_ENGINE_SETTINGS_TTL_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)


def test_settings_default_to_offline_draft_provider(monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)
    settings = load_provider_settings_from_env()
    assert settings.provider == DEFAULT_PROVIDER
    assert settings.model == DEFAULT_MODEL
    assert settings.temperature == 0.7
    assert settings.base_url == ""
    assert settings_ttl_from_env() == 300.0


def test_settings_read_and_clamp_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("NOVEL_ENGINE_COMPLETION_PROVIDER", " OpenRouter ")
    monkeypatch.setenv("NOVEL_ENGINE_AI_MODEL", "anthropic/claude-sonnet")
    monkeypatch.setenv("NOVEL_ENGINE_AI_TEMPERATURE", "5")
    monkeypatch.setenv("NOVEL_ENGINE_AI_MAX_TOKENS", "not-a-number")
    monkeypatch.setenv("NOVEL_ENGINE_AI_TIMEOUT_SECONDS", "30")

    settings = load_provider_settings_from_env()

    assert settings.provider == "openrouter"
    assert settings.model == "anthropic/claude-sonnet"
    assert settings.temperature == 2.0
    assert settings.max_output_tokens == 2000
    assert settings.timeout_seconds == 30.0
    assert settings.base_url == "https://openrouter.ai/api/v1"


def test_cache_reloads_after_ttl_and_on_invalidate() -> None:
    clock = _Clock()
    loads: list[int] = []

    def loader() -> ProviderSettings:
        loads.append(1)
        return ProviderSettings(provider="draft", model=f"model-{len(loads)}")

    cache = ProviderSettingsCache(loader, clock=clock, ttl_seconds=60.0)

    assert cache.get().model == "model-1"
    clock.now += 59.0
    assert cache.get().model == "model-1"
    clock.now += 1.0
    assert cache.get().model == "model-2"
    cache.invalidate()
    assert cache.get().model == "model-3"
    assert len(loads) == 3


def test_zero_ttl_reloads_every_time() -> None:
    calls: list[int] = []

    def loader() -> ProviderSettings:
        calls.append(1)
        return ProviderSettings(provider="draft", model="m")

    cache = ProviderSettingsCache(loader, clock=_Clock(), ttl_seconds=0.0)
    cache.get()
    cache.get()
    assert len(calls) == 2
    with pytest.raises(ValueError, match="ttl_seconds"):
        ProviderSettingsCache(loader, ttl_seconds=-1.0)
