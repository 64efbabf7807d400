"""Provider/model settings loaded from the environment behind an explicit TTL cache."""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable

from novel_engine.adapters.observability import int_env
from novel_engine.domain.ports import ProviderSettings

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "draft"
DEFAULT_MODEL = "draft-prose-v1"
DEFAULT_TTL_SECONDS = 300.0

_DEFAULT_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "xai": "https://api.x.ai/v1",
    "openrouter": "https://openrouter.ai/api/v1",
}


def _float_env(name: str, default: float, *, minimum: float, maximum: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, min(maximum, value))


def default_base_url(provider: str) -> str:
    return _DEFAULT_BASE_URLS.get(provider, "")


def load_provider_settings_from_env() -> ProviderSettings:
    """Read provider settings from ``NOVEL_ENGINE_*`` environment variables."""
    provider = (
        os.environ.get("NOVEL_ENGINE_COMPLETION_PROVIDER", "").strip().lower() or DEFAULT_PROVIDER
    )
    model = os.environ.get("NOVEL_ENGINE_AI_MODEL", "").strip() or DEFAULT_MODEL
    base_url = os.environ.get("NOVEL_ENGINE_AI_BASE_URL", "").strip() or default_base_url(provider)
    return ProviderSettings(
        provider=provider,
        model=model,
        temperature=_float_env("NOVEL_ENGINE_AI_TEMPERATURE", 0.7, minimum=0.0, maximum=2.0),
        max_output_tokens=int_env("NOVEL_ENGINE_AI_MAX_TOKENS", 2000, minimum=64, maximum=32000),
        timeout_seconds=_float_env(
            "NOVEL_ENGINE_AI_TIMEOUT_SECONDS", 60.0, minimum=1.0, maximum=600.0
        ),
        base_url=base_url.rstrip("/"),
    )


def settings_ttl_from_env() -> float:
    return _float_env(
        "NOVEL_ENGINE_SETTINGS_TTL_SECONDS", DEFAULT_TTL_SECONDS, minimum=0.0, maximum=86400.0
    )


class ProviderSettingsCache:
    """Memoize provider settings for ``ttl_seconds`` of the injected clock.

    ``invalidate()`` forces the next ``get()`` to reload, e.g. after an
    operator changes the active model.
    """

    def __init__(
        self,
        loader: Callable[[], ProviderSettings] = load_provider_settings_from_env,
        *,
        clock: Callable[[], float] = time.monotonic,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
    ) -> None:
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must be >= 0.")
        self._loader = loader
        self._clock = clock
        self._ttl_seconds = ttl_seconds
        self._lock = threading.Lock()
        self._value: ProviderSettings | None = None
        self._loaded_at = 0.0

    def get(self) -> ProviderSettings:
        with self._lock:
            now = self._clock()
            if self._value is not None and now - self._loaded_at < self._ttl_seconds:
                return self._value
            self._value = self._loader()
            self._loaded_at = now
            logger.debug(
                "provider_settings.loaded provider=%s model=%s",
                self._value.provider,
                self._value.model,
            )
            return self._value

    def invalidate(self) -> None:
        with self._lock:
            self._value = None
            self._loaded_at = 0.0
