"""
浏览器侧流式消费的 Python 实现：读取 relay 的 SSE，逐段回调文本。
切行与回推逻辑与服务端归一化共用 SSELineBuffer。
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, AsyncIterator, Callable

import httpx

from affirmgate.core.errors import AffirmGateError
from affirmgate.core.sse import SSELineBuffer
from affirmgate.util.logger import get_logger

logger = get_logger("client")

DEFAULT_AFFIRMATION_URL = "http://localhost:3001/api/generate-affirmation"
DEFAULT_CLIENT_TIMEOUT_SECONDS = 60.0

CONNECTION_ERROR_MESSAGE = "Connection error. Please try again."
NO_RESPONSE_MESSAGE = "No response received."
INTERRUPTED_MESSAGE = "The response was interrupted. Please try again."

_CANCELLED = object()


class ClientStreamError(AffirmGateError):
    """Failure reported to the caller as a short user-facing message."""

    def __init__(self, user_message: str, status_code: int | None = None) -> None:
        super().__init__(user_message)
        self.user_message = user_message
        self.status_code = status_code


def user_message_for_status(status_code: int, body_error: str | None) -> str:
    if status_code == 400:
        return body_error or "Please check your input and try again."
    if status_code == 429:
        return "Too many requests. Please wait a moment and try again."
    if status_code in {502, 503}:
        return "Service temporarily unavailable. Please try again in a moment."
    if status_code == 504:
        return "Request timed out. Please try again."
    if status_code >= 500:
        return "Server error. Please try again later."
    return body_error or "Something went wrong. Please try again."


def _error_from_body(raw: bytes) -> str | None:
    try:
        body = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return "Unable to connect to the service."
    if isinstance(body, dict) and isinstance(body.get("error"), str):
        return body["error"]
    return None


async def _read_one(chunks: AsyncIterator[bytes]) -> bytes | None:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


async def _next_chunk(chunks: AsyncIterator[bytes], cancel_event: asyncio.Event | None) -> Any:
    """Next body chunk, ``None`` at end of body, ``_CANCELLED`` once cancel_event is set."""

    if cancel_event is None:
        return await _read_one(chunks)
    if cancel_event.is_set():
        return _CANCELLED

    read = asyncio.ensure_future(_read_one(chunks))
    cancelled = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({read, cancelled}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        cancelled.cancel()
        if not read.done():
            read.cancel()
            await asyncio.wait({read})
    if cancel_event.is_set():
        if not read.cancelled():
            read.exception()
        return _CANCELLED
    return read.result()


def _extract_delta(event: Any) -> str:
    if not isinstance(event, dict):
        return ""
    choices = event.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return ""
    content = delta.get("content")
    return content if isinstance(content, str) else ""


async def iter_affirmation(
    message: str,
    *,
    url: str = DEFAULT_AFFIRMATION_URL,
    client: httpx.AsyncClient | None = None,
    cancel_event: asyncio.Event | None = None,
    require_terminator: bool = True,
    timeout: float = DEFAULT_CLIENT_TIMEOUT_SECONDS,
) -> AsyncGenerator[str, None]:
    """Yield affirmation text fragments in order.

    Raises ``ClientStreamError`` carrying a user-facing message on any failure.
    Returns early, without error, once ``cancel_event`` is set. Each pending
    read is raced against the event, so a stalled relay does not delay it.
    """

    owns_client = client is None
    http_client = client or httpx.AsyncClient(timeout=timeout)
    try:
        async with http_client.stream("POST", url, json={"message": message}) as resp:
            if not resp.is_success:
                raw = await resp.aread()
                user_message = user_message_for_status(resp.status_code, _error_from_body(raw))
                logger.warning("affirmation request failed status=%s message=%s", resp.status_code, user_message)
                raise ClientStreamError(user_message, status_code=resp.status_code)

            buffer = SSELineBuffer(require_prefix=True)
            received_bytes = 0
            chunks = resp.aiter_bytes()
            while True:
                chunk = await _next_chunk(chunks, cancel_event)
                if chunk is _CANCELLED:
                    logger.info("affirmation stream cancelled received_bytes=%d", received_bytes)
                    return
                if chunk is None:
                    break
                received_bytes += len(chunk)
                for event in buffer.feed(chunk):
                    text = _extract_delta(event)
                    if text:
                        yield text
                if buffer.done:
                    break

            for event in buffer.flush():
                text = _extract_delta(event)
                if text:
                    yield text

            if received_bytes == 0:
                raise ClientStreamError(NO_RESPONSE_MESSAGE, status_code=resp.status_code)
            if require_terminator and not buffer.done:
                logger.warning("affirmation stream ended without terminator received_bytes=%d", received_bytes)
                raise ClientStreamError(INTERRUPTED_MESSAGE, status_code=resp.status_code)
    except httpx.HTTPError as exc:
        logger.warning("affirmation stream connection error error=%s", exc)
        raise ClientStreamError(CONNECTION_ERROR_MESSAGE) from exc
    finally:
        if owns_client:
            await http_client.aclose()


async def stream_affirmation(
    message: str,
    *,
    on_delta: Callable[[str], None],
    on_done: Callable[[], None],
    on_error: Callable[[str], None],
    cancel_event: asyncio.Event | None = None,
    **kwargs: Any,
) -> None:
    """Callback flavour of ``iter_affirmation``.

    ``on_done`` and ``on_error`` are mutually exclusive and each fires at most
    once. A cancelled stream fires neither.
    """

    try:
        async for text in iter_affirmation(message, cancel_event=cancel_event, **kwargs):
            on_delta(text)
    except ClientStreamError as exc:
        on_error(exc.user_message)
        return
    except Exception:
        logger.exception("affirmation stream error")
        on_error(CONNECTION_ERROR_MESSAGE)
        return

    if cancel_event is not None and cancel_event.is_set():
        return
    on_done()


@dataclass
class AffirmationSession:
    """Accumulates one affirmation at a time, like the form's state hook."""

    url: str = DEFAULT_AFFIRMATION_URL
    client: httpx.AsyncClient | None = None
    text: str = ""
    is_loading: bool = False
    error: str | None = None
    _parts: list[str] = field(default_factory=list, repr=False)

    def _on_delta(self, chunk: str) -> None:
        self._parts.append(chunk)
        self.text = "".join(self._parts)

    def _on_done(self) -> None:
        self.is_loading = False

    def _on_error(self, message: str) -> None:
        self.error = message
        self.is_loading = False

    async def generate(self, message: str, *, cancel_event: asyncio.Event | None = None) -> str:
        self.reset()
        self.is_loading = True
        try:
            await stream_affirmation(
                message,
                on_delta=self._on_delta,
                on_done=self._on_done,
                on_error=self._on_error,
                cancel_event=cancel_event,
                url=self.url,
                client=self.client,
            )
        finally:
            self.is_loading = False
        return self.text

    def reset(self) -> None:
        self._parts.clear()
        self.text = ""
        self.error = None
