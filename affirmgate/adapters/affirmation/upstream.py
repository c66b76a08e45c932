"""
上游调用：构造请求、超时与取消、状态码映射。响应头返回前的所有失败都以 RelayError 抛出，
此时尚未向浏览器写任何字节，router 可以直接回 JSON。
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncGenerator

import httpx

from affirmgate.adapters.affirmation.mapper import get_provider_adapter
from affirmgate.adapters.affirmation.normalizer import StreamNormalizer
from affirmgate.config.settings import UpstreamCallConfig, settings
from affirmgate.core.errors import (
    ConfigurationError,
    StreamTimeoutError,
    StreamTransportError,
    UpstreamProtocolError,
    UpstreamTransportError,
)
from affirmgate.core.models import StreamEvent
from affirmgate.util.logger import logger

_upstream_async_client: httpx.AsyncClient | None = None
_upstream_client_lock: asyncio.Lock | None = None


def _upstream_http_limits() -> httpx.Limits:
    return httpx.Limits(
        max_connections=max(10, int(settings.upstream_max_connections)),
        max_keepalive_connections=max(5, int(settings.upstream_max_keepalive_connections)),
    )


def _upstream_http_timeout(timeout: float) -> httpx.Timeout:
    return httpx.Timeout(connect=timeout, read=timeout, write=timeout, pool=timeout)


async def _get_upstream_async_client() -> httpx.AsyncClient:
    global _upstream_async_client, _upstream_client_lock
    if _upstream_async_client is not None:
        return _upstream_async_client
    if _upstream_client_lock is None:
        _upstream_client_lock = asyncio.Lock()
    async with _upstream_client_lock:
        if _upstream_async_client is None:
            _upstream_async_client = httpx.AsyncClient(
                http2=False,
                timeout=_upstream_http_timeout(settings.upstream_timeout_ms / 1000.0),
                limits=_upstream_http_limits(),
            )
    return _upstream_async_client


async def close_upstream_async_client() -> None:
    global _upstream_async_client
    if _upstream_async_client is not None:
        await _upstream_async_client.aclose()
        _upstream_async_client = None


def _decode_json_or_text(body: bytes) -> dict[str, Any] | str:
    text = body.decode("utf-8", errors="replace")
    if not text:
        return ""
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return text
    return parsed if isinstance(parsed, dict) else text


def _safe_error_detail(payload: dict[str, Any] | str) -> str:
    if isinstance(payload, str):
        return payload[:600]
    error = payload.get("error")
    if isinstance(error, str):
        return error[:600]
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"][:600]
    return json.dumps(payload, ensure_ascii=False)[:600]


def map_upstream_status(status_code: int) -> UpstreamProtocolError:
    """Translate a non-success upstream status into the error the browser sees."""

    if status_code in {401, 403}:
        # 上游鉴权失败是运维问题，不把 401 透传给浏览器
        return UpstreamProtocolError(502, "AUTH_ERROR", "Service authentication failed. Please contact support.", status_code)
    if status_code == 429:
        return UpstreamProtocolError(429, "RATE_LIMITED", "Too many requests. Please wait a moment and try again.", status_code)
    if status_code == 402:
        return UpstreamProtocolError(502, "SERVICE_UNAVAILABLE", "Service temporarily unavailable. Please try again later.", status_code)
    if status_code >= 500:
        return UpstreamProtocolError(
            502, "UPSTREAM_ERROR", "AI service is experiencing issues. Please try again in a moment.", status_code
        )
    return UpstreamProtocolError(502, "API_ERROR", "Unable to generate affirmation. Please try again.", status_code)


def timeout_error() -> UpstreamTransportError:
    return UpstreamTransportError(504, "TIMEOUT", "The request took too long. Please try again.")


def _network_error() -> UpstreamTransportError:
    return UpstreamTransportError(502, "NETWORK_ERROR", "Unable to connect to AI service. Please try again.")


class UpstreamStream:
    """An upstream response whose headers arrived with a success status.

    The caller owns it and must call ``aclose`` on every exit path.
    """

    def __init__(self, response: httpx.Response, normalizer: StreamNormalizer, deadline: float) -> None:
        self.response = response
        self.normalizer = normalizer
        # loop.time() 截止点：等响应头与等第一条事件共用同一个预算
        self.deadline = deadline
        self.closed = False

    def remaining_seconds(self) -> float:
        return max(0.0, self.deadline - asyncio.get_running_loop().time())

    async def aiter_bytes(self) -> AsyncGenerator[bytes, None]:
        try:
            async for chunk in self.response.aiter_bytes():
                yield chunk
        except httpx.TimeoutException as exc:
            raise StreamTimeoutError(f"upstream_read_timeout: {type(exc).__name__}") from exc
        except httpx.HTTPError as exc:
            detail = (str(exc) or "").strip() or type(exc).__name__
            raise StreamTransportError(f"upstream_read_failed: {detail}") from exc

    def events(self) -> AsyncGenerator[StreamEvent, None]:
        return self.normalizer.aiter_events(self.aiter_bytes())

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self.response.aclose()


async def open_upstream_stream(
    config: UpstreamCallConfig,
    message: str,
    *,
    client: httpx.AsyncClient | None = None,
) -> UpstreamStream:
    if not config.api_key:
        logger.error("upstream api key is not configured provider=%s", config.provider)
        raise ConfigurationError("missing upstream api key")

    adapter = get_provider_adapter(config.provider)
    url = adapter.build_url(config)
    body = json.dumps(adapter.build_payload(config, message), ensure_ascii=False).encode("utf-8")
    http_client = client or await _get_upstream_async_client()
    request = http_client.build_request(
        "POST",
        url,
        content=body,
        headers=adapter.build_headers(config),
        timeout=_upstream_http_timeout(config.timeout_seconds),
    )
    logger.debug("upstream call start provider=%s model=%s payload_bytes=%d", adapter.name, config.model, len(body))

    deadline = asyncio.get_running_loop().time() + config.timeout_seconds
    try:
        response = await asyncio.wait_for(http_client.send(request, stream=True), timeout=config.timeout_seconds)
    except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
        logger.error("upstream call timed out provider=%s timeout_ms=%d", adapter.name, config.timeout_ms)
        raise timeout_error() from exc
    except httpx.HTTPError as exc:
        detail = (str(exc) or "").strip() or type(exc).__name__
        logger.error("upstream network error provider=%s error=%s", adapter.name, detail)
        raise _network_error() from exc

    logger.info("upstream response received provider=%s status=%s", adapter.name, response.status_code)
    if not response.is_success:
        try:
            raw = await asyncio.wait_for(response.aread(), timeout=config.timeout_seconds)
        except (asyncio.TimeoutError, httpx.HTTPError):
            raw = b""
        finally:
            await response.aclose()
        logger.error(
            "upstream api error provider=%s status=%s detail=%s",
            adapter.name,
            response.status_code,
            _safe_error_detail(_decode_json_or_text(raw)),
        )
        raise map_upstream_status(response.status_code)

    return UpstreamStream(response, adapter.build_normalizer(config), deadline)
