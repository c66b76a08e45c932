"""Upstream stream normalizers: provider wire shape -> ordered text deltas."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, AsyncGenerator, AsyncIterable

from affirmgate.core.errors import StreamDecodeError, StreamTransportError
from affirmgate.core.models import StreamEvent, StreamTerminator, TextDelta
from affirmgate.core.sse import SSELineBuffer
from affirmgate.util.logger import logger


def _flatten_content(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "".join(_flatten_content(item) for item in value)
    if isinstance(value, dict) and isinstance(value.get("text"), str):
        return value["text"]
    return ""


def _upstream_error_detail(event: Any) -> str | None:
    if not isinstance(event, dict) or "error" not in event:
        return None
    error = event.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or error.get("code") or "upstream_stream_error")[:300]
    return str(error or "upstream_stream_error")[:300]


class StreamNormalizer(ABC):
    """Consume upstream bytes once and yield deltas followed by one terminator."""

    name = "base"
    require_prefix = True
    # 上游自带结束标记时，缺失即视为被截断
    requires_upstream_terminator = False

    def __init__(self, *, max_pending_bytes: int = 65_536) -> None:
        self.max_pending_bytes = max_pending_bytes
        self.dropped_lines = 0
        self._consumed = False

    @abstractmethod
    def extract_text(self, event: Any) -> str:
        """Return the text fragment carried by one decoded event, or ``""``."""

    def _to_delta(self, event: Any) -> TextDelta | None:
        detail = _upstream_error_detail(event)
        if detail is not None:
            raise StreamTransportError(f"upstream_stream_error: {detail}")
        try:
            text = self.extract_text(event)
        except StreamDecodeError as exc:
            self.dropped_lines += 1
            logger.warning("normalizer skipped event provider=%s error=%s", self.name, exc)
            return None
        return TextDelta(text) if text else None

    async def aiter_events(self, chunks: AsyncIterable[bytes]) -> AsyncGenerator[StreamEvent, None]:
        if self._consumed:
            raise RuntimeError("stream normalizer can only be consumed once")
        self._consumed = True

        buffer = SSELineBuffer(require_prefix=self.require_prefix, max_pending_bytes=self.max_pending_bytes)
        async for chunk in chunks:
            for event in buffer.feed(chunk):
                delta = self._to_delta(event)
                if delta is not None:
                    yield delta
            if buffer.done:
                break

        for event in buffer.flush():
            delta = self._to_delta(event)
            if delta is not None:
                yield delta
        self.dropped_lines += buffer.dropped

        if self.requires_upstream_terminator and not buffer.done:
            raise StreamTransportError("upstream_stream_truncated: stream closed without terminator")
        yield StreamTerminator()


class PassthroughNormalizer(StreamNormalizer):
    """Upstream already speaks delta-framed SSE (``choices[0].delta.content``)."""

    name = "passthrough"
    require_prefix = True
    requires_upstream_terminator = True

    def extract_text(self, event: Any) -> str:
        if not isinstance(event, dict):
            raise StreamDecodeError("event is not an object")
        choices = event.get("choices")
        if not isinstance(choices, list) or not choices:
            return ""
        first = choices[0]
        if not isinstance(first, dict):
            return ""
        delta = first.get("delta")
        if not isinstance(delta, dict):
            return ""
        return _flatten_content(delta.get("content"))


class ReframingNormalizer(StreamNormalizer):
    """Upstream emits one JSON object per chunk (Gemini ``candidates`` shape)."""

    name = "reframing"
    require_prefix = False

    def extract_text(self, event: Any) -> str:
        if not isinstance(event, dict):
            raise StreamDecodeError("event is not an object")
        candidates = event.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            return ""
        first = candidates[0]
        if not isinstance(first, dict):
            return ""
        content = first.get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list):
            return ""
        # thought=True 的片段是模型内部推理，不下发
        return "".join(
            part["text"]
            for part in parts
            if isinstance(part, dict) and isinstance(part.get("text"), str) and not part.get("thought")
        )
