"""Affirmation relay route."""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncGenerator

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse

from affirmgate.adapters.affirmation.stream_utils import (
    _build_streaming_response,
    _stream_delta_sse_chunk,
    _stream_done_sse_chunk,
)
from affirmgate.adapters.affirmation.upstream import UpstreamStream, open_upstream_stream, timeout_error
from affirmgate.config.settings import UpstreamCallConfig, build_upstream_config, settings
from affirmgate.core.context import (
    COMPLETED,
    STREAMING,
    UPSTREAM_CALLED,
    VALIDATED,
    RequestContext,
)
from affirmgate.core.errors import RelayError, StreamTimeoutError, StreamTransportError
from affirmgate.core.models import StreamEvent, StreamTerminator
from affirmgate.core.validation import validate_generation_payload
from affirmgate.observability.logging import log_event
from affirmgate.util.logger import logger


router = APIRouter()
upstream_config = build_upstream_config(settings)

_INTERNAL_ERROR = RelayError(500, "INTERNAL_ERROR", "An unexpected error occurred. Please try again.")
_STREAM_ERROR = RelayError(500, "STREAM_ERROR", "Stream interrupted. Please try again.")


def _write_relay_event(ctx: RequestContext) -> None:
    log_event(
        "relay_request",
        request_id=ctx.request_id,
        provider=ctx.provider,
        state=ctx.state,
        code=ctx.error_code or "-",
        message_length=ctx.message_length,
        chunks=ctx.chunk_count,
        chars=ctx.delta_chars,
        duration_ms=ctx.duration_ms,
    )


def _error_response(exc: RelayError, ctx: RequestContext) -> JSONResponse:
    ctx.fail(exc.code)
    _write_relay_event(ctx)
    return JSONResponse(
        status_code=exc.http_status,
        content=exc.to_payload(),
        headers={"X-Request-ID": ctx.request_id},
    )


async def _release_upstream(upstream: UpstreamStream, events: AsyncGenerator[StreamEvent, None]) -> None:
    await events.aclose()
    await upstream.aclose()


async def _execute_affirmation_stream(
    *,
    body: Any,
    ctx: RequestContext,
    config: UpstreamCallConfig,
) -> StreamingResponse | JSONResponse:
    try:
        req = validate_generation_payload(
            body,
            min_length=settings.min_message_length,
            max_length=settings.max_message_length,
        )
    except RelayError as exc:
        return _error_response(exc, ctx)
    ctx.advance(VALIDATED)
    ctx.message_length = len(req.message)
    logger.info("relay request validated request_id=%s message_length=%d", ctx.request_id, ctx.message_length)

    try:
        upstream = await open_upstream_stream(config, req.message)
    except RelayError as exc:
        logger.warning("relay upstream call failed request_id=%s code=%s", ctx.request_id, exc.code)
        return _error_response(exc, ctx)
    ctx.advance(UPSTREAM_CALLED)

    # 先取第一条事件再提交响应头：上游开流即断时浏览器还能拿到结构化 JSON。
    # 响应头之前整体只有一个 timeout_ms 预算，剩余时间用于等第一条事件
    events = upstream.events()
    try:
        first_event = await asyncio.wait_for(events.__anext__(), timeout=upstream.remaining_seconds())
    except (asyncio.TimeoutError, StreamTimeoutError):
        logger.error(
            "relay upstream timed out before first event request_id=%s timeout_ms=%d",
            ctx.request_id,
            config.timeout_ms,
        )
        await _release_upstream(upstream, events)
        return _error_response(timeout_error(), ctx)
    except StreamTransportError as exc:
        logger.error("relay stream failed before first event request_id=%s error=%s", ctx.request_id, exc)
        await _release_upstream(upstream, events)
        return _error_response(_STREAM_ERROR, ctx)
    except BaseException:
        await _release_upstream(upstream, events)
        raise

    ctx.advance(STREAMING)
    logger.info("relay stream started request_id=%s provider=%s", ctx.request_id, ctx.provider)

    async def relay_generator() -> AsyncGenerator[bytes, None]:
        event = first_event
        try:
            while True:
                if isinstance(event, StreamTerminator):
                    yield _stream_done_sse_chunk()
                    ctx.advance(COMPLETED)
                    logger.info(
                        "relay stream completed request_id=%s chunks=%d duration_ms=%d",
                        ctx.request_id,
                        ctx.chunk_count,
                        ctx.duration_ms,
                    )
                    break
                ctx.chunk_count += 1
                ctx.delta_chars += len(event.text)
                yield _stream_delta_sse_chunk(event.text)
                event = await events.__anext__()
        except StreamTransportError as exc:
            ctx.fail("STREAM_ERROR")
            logger.error("relay stream interrupted request_id=%s chunks=%d error=%s", ctx.request_id, ctx.chunk_count, exc)
        except Exception:  # pragma: no cover - fail-safe
            ctx.fail("STREAM_ERROR")
            logger.exception("relay stream unexpected failure request_id=%s", ctx.request_id)
        finally:
            if ctx.state == STREAMING:
                # 浏览器断开：生成器被取消或关闭，同步关掉上游避免继续计费
                ctx.fail("CLIENT_DISCONNECTED")
                logger.warning("relay client disconnected request_id=%s chunks=%d", ctx.request_id, ctx.chunk_count)
            await _release_upstream(upstream, events)
            _write_relay_event(ctx)

    response = _build_streaming_response(relay_generator())
    response.headers["X-Request-ID"] = ctx.request_id
    return response


@router.post("/generate-affirmation")
async def generate_affirmation(request: Request):
    ctx = RequestContext(provider=upstream_config.provider)
    incoming_id = (request.headers.get("x-request-id") or "").strip()
    if incoming_id:
        ctx.request_id = incoming_id[:64]

    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("relay request body is not valid json request_id=%s", ctx.request_id)
        body = None

    try:
        return await _execute_affirmation_stream(body=body, ctx=ctx, config=upstream_config)
    except Exception:
        logger.exception("relay unexpected error request_id=%s", ctx.request_id)
        if ctx.headers_committed:  # pragma: no cover - response already handed to starlette
            raise
        return _error_response(_INTERNAL_ERROR, ctx)
