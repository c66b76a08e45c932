import asyncio
import json

import httpx
import pytest

from affirmgate.adapters.affirmation.normalizer import PassthroughNormalizer, ReframingNormalizer
from affirmgate.adapters.affirmation.upstream import map_upstream_status, open_upstream_stream
from affirmgate.config.settings import UpstreamCallConfig
from affirmgate.core.errors import ConfigurationError, RelayError, UpstreamProtocolError, UpstreamTransportError
from affirmgate.core.models import StreamTerminator, TextDelta


def _config(**overrides) -> UpstreamCallConfig:
    values = {
        "provider": "openai",
        "endpoint": "https://upstream.example.com/v1",
        "api_key": "sk-test",
        "model": "test-model",
        "system_prompt": "Be kind.",
        "timeout_ms": 2000,
        "referer": "https://kind-affirmations.app",
        "title": "Kind Affirmations",
    }
    values.update(overrides)
    return UpstreamCallConfig(**values)


def _open(config: UpstreamCallConfig, handler, message: str = "I feel lonely today"):
    async def run_case():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            upstream = await open_upstream_stream(config, message, client=client)
            try:
                events = [event async for event in upstream.events()]
            finally:
                await upstream.aclose()
            return upstream, events

    return asyncio.run(run_case())


def _open_error(config: UpstreamCallConfig, handler) -> RelayError:
    with pytest.raises(RelayError) as exc_info:
        _open(config, handler)
    return exc_info.value


def test_openai_style_request_shape_and_stream():
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["headers"] = dict(request.headers)
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            content=b'data: {"choices":[{"delta":{"content":"You matter."}}]}\n\ndata: [DONE]\n\n',
            headers={"content-type": "text/event-stream"},
        )

    upstream, events = _open(_config(max_tokens=150, temperature=0.7), handler)

    assert captured["url"] == "https://upstream.example.com/v1/chat/completions"
    assert captured["headers"]["authorization"] == "Bearer sk-test"
    assert captured["headers"]["http-referer"] == "https://kind-affirmations.app"
    assert captured["headers"]["x-title"] == "Kind Affirmations"
    assert captured["body"] == {
        "model": "test-model",
        "messages": [
            {"role": "system", "content": "Be kind."},
            {"role": "user", "content": "I feel lonely today"},
        ],
        "stream": True,
        "max_tokens": 150,
        "temperature": 0.7,
    }
    assert isinstance(upstream.normalizer, PassthroughNormalizer)
    assert events == [TextDelta("You matter."), StreamTerminator()]
    assert upstream.closed is True


def test_gateway_provider_omits_attribution_headers():
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["headers"] = dict(request.headers)
        return httpx.Response(200, content=b"data: [DONE]\n\n")

    _open(_config(provider="gateway"), handler)
    assert captured["headers"]["authorization"] == "Bearer sk-test"
    assert "http-referer" not in captured["headers"]
    assert "x-title" not in captured["headers"]


def test_gemini_request_merges_prompt_and_reframes():
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["headers"] = dict(request.headers)
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            content=b'data: {"candidates":[{"content":{"parts":[{"text":"You are enough."}]}}]}\r\n\r\n',
        )

    upstream, events = _open(
        _config(provider="gemini", endpoint="https://gemini.example.com/v1", model="gemini-2.5-flash", max_tokens=150),
        handler,
    )

    assert captured["url"] == "https://gemini.example.com/v1/models/gemini-2.5-flash:streamGenerateContent?alt=sse"
    assert captured["headers"]["x-goog-api-key"] == "sk-test"
    assert "authorization" not in captured["headers"]
    parts = captured["body"]["contents"][0]["parts"]
    assert len(parts) == 1
    assert parts[0]["text"].startswith("Be kind.")
    assert parts[0]["text"].endswith("I feel lonely today")
    assert captured["body"]["generationConfig"] == {"maxOutputTokens": 150}
    assert isinstance(upstream.normalizer, ReframingNormalizer)
    assert events == [TextDelta("You are enough."), StreamTerminator()]


def test_missing_api_key_fails_before_any_call():
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200)

    error = _open_error(_config(api_key=""), handler)
    assert isinstance(error, ConfigurationError)
    assert (error.http_status, error.code) == (500, "CONFIG_ERROR")
    assert calls == []


@pytest.mark.parametrize(
    ("upstream_status", "http_status", "code"),
    [
        (401, 502, "AUTH_ERROR"),
        (403, 502, "AUTH_ERROR"),
        (429, 429, "RATE_LIMITED"),
        (402, 502, "SERVICE_UNAVAILABLE"),
        (500, 502, "UPSTREAM_ERROR"),
        (503, 502, "UPSTREAM_ERROR"),
        (400, 502, "API_ERROR"),
        (404, 502, "API_ERROR"),
    ],
)
def test_upstream_status_mapping(upstream_status, http_status, code):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(upstream_status, json={"error": {"message": "sk-test is invalid for org-123"}})

    error = _open_error(_config(), handler)
    assert isinstance(error, UpstreamProtocolError)
    assert (error.http_status, error.code, error.upstream_status) == (http_status, code, upstream_status)
    assert "sk-test" not in error.user_message
    assert "org-123" not in json.dumps(error.to_payload())


def test_map_upstream_status_never_leaks_401():
    assert map_upstream_status(401).http_status == 502


def test_connection_failure_is_network_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("name or service not known", request=request)

    error = _open_error(_config(), handler)
    assert isinstance(error, UpstreamTransportError)
    assert (error.http_status, error.code) == (502, "NETWORK_ERROR")


def test_timeout_cancels_inflight_call():
    observed = {"started": False, "cancelled": False}

    async def handler(request: httpx.Request) -> httpx.Response:
        observed["started"] = True
        try:
            await asyncio.sleep(5)
        except asyncio.CancelledError:
            observed["cancelled"] = True
            raise
        return httpx.Response(200, content=b"data: [DONE]\n\n")

    error = _open_error(_config(timeout_ms=50), handler)
    assert (error.http_status, error.code) == (504, "TIMEOUT")
    assert observed == {"started": True, "cancelled": True}


def test_httpx_timeout_is_reported_as_timeout():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("connect timed out", request=request)

    error = _open_error(_config(), handler)
    assert (error.http_status, error.code) == (504, "TIMEOUT")
