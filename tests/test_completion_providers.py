from __future__ import annotations

import json
import threading

import httpx
import pytest

from novel_engine.adapters.completion_providers import (
    CompletionProviderPool,
    DraftCompletionProvider,
    FailingCompletionProvider,
    OpenAICompatibleCompletionProvider,
    build_completion_provider,
)
from novel_engine.core.scene_quality import SceneQualityPolicy
from novel_engine.domain.errors import ProviderError
from novel_engine.domain.ports import CompletionRequest, ProviderSettings


def _request(user_prompt: str = "Write scene 1 now (800-1200 words):") -> CompletionRequest:
    return CompletionRequest(
        system_prompt="You are an expert novelist.",
        user_prompt=user_prompt,
        model="gpt-test",
        temperature=0.5,
        max_tokens=1500,
        timeout_seconds=5.0,
    )


def _provider(transport: httpx.MockTransport) -> OpenAICompatibleCompletionProvider:
    return OpenAICompatibleCompletionProvider(
        name="openai",
        base_url="https://llm.example.test/v1/",
        api_key="secret",
        client=httpx.Client(transport=transport),
    )


def test_complete_posts_chat_payload_and_reads_message() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"choices": [{"message": {"content": "Scene text."}}]})

    text = _provider(httpx.MockTransport(handler)).complete(_request())

    assert text == "Scene text."
    assert str(seen[0].url) == "https://llm.example.test/v1/chat/completions"
    assert seen[0].headers["Authorization"] == "Bearer secret"
    body = json.loads(seen[0].content)
    assert body["model"] == "gpt-test"
    assert body["stream"] is False
    assert [message["role"] for message in body["messages"]] == ["system", "user"]


def test_complete_maps_http_failures_to_provider_error() -> None:
    def rate_limited(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": "slow down"})

    def timed_out(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    def malformed(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"unexpected": True})

    with pytest.raises(ProviderError, match="HTTP 429"):
        _provider(httpx.MockTransport(rate_limited)).complete(_request())
    with pytest.raises(ProviderError, match="timed out"):
        _provider(httpx.MockTransport(timed_out)).complete(_request())
    with pytest.raises(ProviderError, match="unexpected payload"):
        _provider(httpx.MockTransport(malformed)).complete(_request())


def test_stream_parses_server_sent_deltas() -> None:
    events = [
        {"choices": [{"delta": {"role": "assistant"}}]},
        {"choices": [{"delta": {"content": "The tide "}}]},
        {"choices": [{"delta": {"content": "turned."}}]},
    ]
    body = "".join(f"data: {json.dumps(event)}\n\n" for event in events)
    body += ": keep-alive\n\ndata: [DONE]\n\ndata: {\"ignored\": true}\n\n"

    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content)["stream"] is True
        return httpx.Response(
            200, content=body.encode("utf-8"), headers={"Content-Type": "text/event-stream"}
        )

    fragments = list(_provider(httpx.MockTransport(handler)).stream(_request()))

    assert fragments == ["The tide ", "turned."]


def test_stream_maps_http_failure_to_provider_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="unavailable")

    with pytest.raises(ProviderError, match="HTTP 503"):
        list(_provider(httpx.MockTransport(handler)).stream(_request()))


def test_draft_provider_is_deterministic_and_passes_quality_checks() -> None:
    provider = DraftCompletionProvider()

    first = provider.complete(_request())
    second = provider.complete(_request())
    other = provider.complete(_request("Write scene 2 now (800-1200 words):"))

    assert first == second
    assert first != other
    assert SceneQualityPolicy().evaluate(first).passed
    assert "".join(provider.stream(_request())) == first


def test_draft_provider_stream_honors_cancel() -> None:
    cancel = threading.Event()
    stream = DraftCompletionProvider(fragment_words=10).stream(_request(), cancel=cancel)

    first = next(stream)
    cancel.set()

    assert first
    assert list(stream) == []


def test_failing_provider_always_raises() -> None:
    provider = FailingCompletionProvider()
    with pytest.raises(ProviderError):
        provider.complete(_request())
    with pytest.raises(ProviderError):
        provider.stream(_request())


def test_build_completion_provider_selects_implementation() -> None:
    assert isinstance(
        build_completion_provider(ProviderSettings(provider="draft", model="m")),
        DraftCompletionProvider,
    )
    remote = build_completion_provider(
        ProviderSettings(provider="xai", model="grok", base_url="https://api.x.ai/v1"),
        api_key="key",
    )
    assert isinstance(remote, OpenAICompatibleCompletionProvider)
    assert remote.name == "xai"
    with pytest.raises(ValueError, match="requires a base URL"):
        build_completion_provider(ProviderSettings(provider="openai-compatible", model="m"))
    with pytest.raises(ValueError, match="Unknown completion provider"):
        build_completion_provider(ProviderSettings(provider="mystery", model="m"))


def test_provider_pool_rebuilds_only_when_provider_changes() -> None:
    built: list[str] = []

    def factory(settings: ProviderSettings) -> DraftCompletionProvider:
        built.append(settings.provider)
        return DraftCompletionProvider()

    pool = CompletionProviderPool(factory)
    first = pool.provider_for(ProviderSettings(provider="draft", model="a"))
    same = pool.provider_for(ProviderSettings(provider="draft", model="b"))
    moved = pool.provider_for(
        ProviderSettings(provider="draft", model="b", base_url="https://other.test/v1")
    )

    assert same is first
    assert moved is not first
    assert built == ["draft", "draft"]


def test_provider_pool_follows_configured_provider() -> None:
    pool = CompletionProviderPool()

    draft = pool.provider_for(ProviderSettings(provider="draft", model="m"))
    remote = pool.provider_for(
        ProviderSettings(provider="openrouter", model="m", base_url="https://openrouter.ai/api/v1")
    )

    assert isinstance(draft, DraftCompletionProvider)
    assert isinstance(remote, OpenAICompatibleCompletionProvider)
    assert remote.name == "openrouter"
    with pytest.raises(ProviderError, match="Unknown completion provider"):
        pool.provider_for(ProviderSettings(provider="mystery", model="m"))


def test_stream_enforces_overall_deadline() -> None:
    ticks = iter(range(1_000))
    body = "".join(
        f"data: {json.dumps({'choices': [{'delta': {'content': f'part {index} '}}]})}\n\n"
        for index in range(20)
    )

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, content=body.encode("utf-8"), headers={"Content-Type": "text/event-stream"}
        )

    provider = OpenAICompatibleCompletionProvider(
        name="openai",
        base_url="https://llm.example.test/v1",
        api_key="",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
        clock=lambda: float(next(ticks)),
    )
    received: list[str] = []

    with pytest.raises(ProviderError, match="exceeded 5s overall"):
        for fragment in provider.stream(_request()):
            received.append(fragment)

    assert 0 < len(received) < 20
