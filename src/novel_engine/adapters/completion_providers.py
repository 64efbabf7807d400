"""Completion provider clients: OpenAI-compatible HTTP, offline draft, and failing."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import random
import threading
import time
from collections.abc import Callable, Iterator
from typing import Final

import httpx

from novel_engine.domain.errors import ProviderError
from novel_engine.domain.ports import CompletionProvider, CompletionRequest, ProviderSettings

logger = logging.getLogger(__name__)

OPENAI_COMPATIBLE_PROVIDERS: Final[frozenset[str]] = frozenset(
    {"openai", "xai", "openrouter", "openai-compatible"}
)


class OpenAICompatibleCompletionProvider:
    """Chat-completions client for OpenAI, xAI, OpenRouter, and compatible gateways."""

    def __init__(
        self,
        *,
        name: str,
        base_url: str,
        api_key: str,
        client: httpx.Client | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not base_url:
            raise ValueError(f"Provider '{name}' requires a base URL.")
        self.name = name
        self._endpoint = f"{base_url.rstrip('/')}/chat/completions"
        self._api_key = api_key
        self._client = client or httpx.Client()
        self._clock = clock

    def _payload(self, request: CompletionRequest, *, stream: bool) -> dict[str, object]:
        return {
            "model": request.model,
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "stream": stream,
            "messages": [
                {"role": "system", "content": request.system_prompt},
                {"role": "user", "content": request.user_prompt},
            ],
        }

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def complete(self, request: CompletionRequest) -> str:
        try:
            response = self._client.post(
                self._endpoint,
                json=self._payload(request, stream=False),
                headers=self._headers(),
                timeout=request.timeout_seconds,
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.TimeoutException as exc:
            raise ProviderError(
                f"{self.name} timed out after {request.timeout_seconds:.0f}s."
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise ProviderError(
                f"{self.name} returned HTTP {exc.response.status_code}."
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise ProviderError(f"{self.name} request failed: {exc}") from exc
        return _message_content(payload, provider=self.name)

    def stream(
        self,
        request: CompletionRequest,
        *,
        cancel: threading.Event | None = None,
    ) -> Iterator[str]:
        """Yield content deltas; the whole stream shares one ``timeout_seconds`` budget."""
        deadline = self._clock() + request.timeout_seconds
        try:
            with self._client.stream(
                "POST",
                self._endpoint,
                json=self._payload(request, stream=True),
                headers=self._headers(),
                timeout=request.timeout_seconds,
            ) as response:
                response.raise_for_status()
                for line in response.iter_lines():
                    if cancel is not None and cancel.is_set():
                        logger.info("provider.stream_cancelled provider=%s", self.name)
                        return
                    if self._clock() > deadline:
                        raise ProviderError(
                            f"{self.name} stream exceeded {request.timeout_seconds:.0f}s overall."
                        )
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:") :].strip()
                    if data == "[DONE]":
                        return
                    fragment = _delta_content(data, provider=self.name)
                    if fragment:
                        yield fragment
        except httpx.TimeoutException as exc:
            raise ProviderError(
                f"{self.name} stream timed out after {request.timeout_seconds:.0f}s."
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise ProviderError(
                f"{self.name} returned HTTP {exc.response.status_code}."
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"{self.name} stream failed: {exc}") from exc


def _message_content(payload: object, *, provider: str) -> str:
    try:
        content = payload["choices"][0]["message"]["content"]  # type: ignore[index]
    except (KeyError, IndexError, TypeError) as exc:
        raise ProviderError(f"{provider} returned an unexpected payload shape.") from exc
    if not isinstance(content, str):
        raise ProviderError(f"{provider} returned non-text content.")
    return content


def _delta_content(data: str, *, provider: str) -> str:
    try:
        event = json.loads(data)
    except json.JSONDecodeError as exc:
        raise ProviderError(f"{provider} streamed malformed JSON.") from exc
    choices = event.get("choices") or []
    if not choices:
        return ""
    delta = choices[0].get("delta") or {}
    content = delta.get("content")
    return content if isinstance(content, str) else ""


_DRAFT_SUBJECTS: Final[tuple[str, ...]] = (
    "She",
    "He",
    "The stranger",
    "Her oldest friend",
    "The innkeeper",
    "A voice from the doorway",
)
_DRAFT_ACTIONS: Final[tuple[str, ...]] = (
    "lingered by the window while rain traced slow lines down the glass",
    "turned the letter over twice before deciding not to open it",
    "laughed, though the sound came out thinner than intended",
    "crossed the room and stopped an arm's length away",
    "remembered the promise made on the harbor steps years ago",
    "watched the lamplight catch on the edge of the silver ring",
    "said nothing for a long moment, weighing every word that might follow",
    "felt the old certainty slip, replaced by something warmer and far less safe",
)
_DRAFT_CLOSERS: Final[tuple[str, ...]] = (
    "Somewhere below, the street settled into its evening hush.",
    "The clock on the mantel kept its patient count.",
    "Outside, the wind rose and fell like a held breath.",
    "Neither of them moved to break the silence.",
)


class DraftCompletionProvider:
    """Deterministic offline prose for local previews and tests.

    Output depends only on the prompt pair, so identical requests yield
    identical scenes.
    """

    name = "draft"

    def __init__(self, *, target_words: int = 900, fragment_words: int = 40) -> None:
        self._target_words = target_words
        self._fragment_words = max(1, fragment_words)

    def complete(self, request: CompletionRequest) -> str:
        return self._compose(request)

    def stream(
        self,
        request: CompletionRequest,
        *,
        cancel: threading.Event | None = None,
    ) -> Iterator[str]:
        words = self._compose(request).split(" ")
        for start in range(0, len(words), self._fragment_words):
            if cancel is not None and cancel.is_set():
                return
            chunk = " ".join(words[start : start + self._fragment_words])
            yield chunk if start + self._fragment_words >= len(words) else f"{chunk} "

    def _compose(self, request: CompletionRequest) -> str:
        digest = hashlib.sha256(
            f"{request.system_prompt}\n{request.user_prompt}".encode("utf-8")
        ).hexdigest()
        rng = random.Random(int(digest[:16], 16))
        paragraphs: list[str] = []
        word_total = 0
        while word_total < self._target_words:
            sentences = [
                f"{rng.choice(_DRAFT_SUBJECTS)} {rng.choice(_DRAFT_ACTIONS)}."
                for _ in range(rng.randint(4, 6))
            ]
            sentences.append(rng.choice(_DRAFT_CLOSERS))
            paragraph = " ".join(sentences)
            paragraphs.append(paragraph)
            word_total += len(paragraph.split())
        return "\n\n".join(paragraphs)


class FailingCompletionProvider:
    """Always fails; used to exercise generation-failure handling."""

    name = "failing"

    def complete(self, request: CompletionRequest) -> str:
        del request
        raise ProviderError("Configured failing provider always raises.")

    def stream(
        self,
        request: CompletionRequest,
        *,
        cancel: threading.Event | None = None,
    ) -> Iterator[str]:
        del request, cancel
        raise ProviderError("Configured failing provider always raises.")


def build_completion_provider(
    settings: ProviderSettings,
    *,
    api_key: str | None = None,
    client: httpx.Client | None = None,
) -> CompletionProvider:
    """Construct the provider named by ``settings.provider``."""
    provider = settings.provider.strip().lower()
    if provider == "draft":
        return DraftCompletionProvider()
    if provider == "failing":
        return FailingCompletionProvider()
    if provider in OPENAI_COMPATIBLE_PROVIDERS:
        resolved_key = (
            api_key if api_key is not None else os.environ.get("NOVEL_ENGINE_AI_API_KEY", "")
        )
        return OpenAICompatibleCompletionProvider(
            name=provider,
            base_url=settings.base_url,
            api_key=resolved_key.strip(),
            client=client,
        )
    raise ValueError(f"Unknown completion provider: {settings.provider!r}")


class CompletionProviderPool:
    """Serve the client for the currently configured provider.

    The client is rebuilt whenever the settings name a different provider or
    base URL, so a settings reload takes effect on the next generation.
    """

    def __init__(
        self,
        factory: Callable[[ProviderSettings], CompletionProvider] = build_completion_provider,
    ) -> None:
        self._factory = factory
        self._lock = threading.Lock()
        self._key: tuple[str, str] | None = None
        self._provider: CompletionProvider | None = None

    def provider_for(self, settings: ProviderSettings) -> CompletionProvider:
        key = (settings.provider.strip().lower(), settings.base_url)
        with self._lock:
            if self._provider is not None and key == self._key:
                return self._provider
            try:
                provider = self._factory(settings)
            except ValueError as exc:
                raise ProviderError(f"Cannot build completion provider: {exc}") from exc
            logger.info(
                "provider.rebuilt previous=%s provider=%s",
                self._provider.name if self._provider is not None else None,
                provider.name,
            )
            self._provider = provider
            self._key = key
            return provider
