"""
增量 SSE 行缓冲：服务端归一化与客户端消费共用同一套切行、回推与收尾逻辑。
"""

from __future__ import annotations

import codecs
import json
from typing import Any

from affirmgate.core.errors import StreamDecodeError
from affirmgate.util.logger import get_logger

logger = get_logger("sse")

DONE_TOKEN = "[DONE]"
DATA_PREFIX = "data:"


def decode_payload(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise StreamDecodeError(f"invalid_json: {exc.msg} at {exc.pos}") from exc


def _ends_event(line: str) -> bool:
    return not line.strip() or line.startswith(":")


class SSELineBuffer:
    """Split an event stream into JSON payloads without losing data at read boundaries.

    Bytes are decoded incrementally, so a multi-byte character split across two
    reads is reassembled. Only newline-terminated lines are processed; the
    trailing partial line waits for the next ``feed``. A complete ``data:``
    payload that is not valid JSON is kept pending and retried together with
    the continuation lines that follow it. Consecutive ``data:`` lines of one
    event are joined with a newline the same way. A pending payload is dropped as
    malformed once a blank line or comment ends the event, once a following
    line parses on its own, or once it grows past ``max_pending_bytes``.
    """

    def __init__(
        self,
        *,
        require_prefix: bool = True,
        terminator: str = DONE_TOKEN,
        max_pending_bytes: int = 65_536,
    ) -> None:
        self.require_prefix = require_prefix
        self.terminator = terminator
        self.max_pending_bytes = max(1024, int(max_pending_bytes))
        self.done = False
        self.dropped = 0
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._pending: str | None = None
        self._skip_partial = False

    def feed(self, chunk: bytes) -> list[Any]:
        text = self._decoder.decode(chunk)
        if self._skip_partial:
            newline_index = text.find("\n")
            if newline_index == -1:
                return []
            text = text[newline_index + 1:]
            self._skip_partial = False
        self._buffer += text

        payloads: list[Any] = []
        while not self.done:
            newline_index = self._buffer.find("\n")
            if newline_index == -1:
                break
            line = self._buffer[:newline_index]
            self._buffer = self._buffer[newline_index + 1:]
            payload = self._process_line(line)
            if payload is not None:
                payloads.append(payload)

        if len(self._buffer) > self.max_pending_bytes:
            logger.warning("sse partial line exceeds limit, discarding chars=%d", len(self._buffer))
            self.dropped += 1
            self._buffer = ""
            self._skip_partial = True
        return payloads

    def flush(self) -> list[Any]:
        """Process whatever is left once the stream has ended."""

        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        payloads: list[Any] = []
        if not self._skip_partial:
            for line in tail.split("\n"):
                payload = self._process_line(line)
                if payload is not None:
                    payloads.append(payload)
        self._skip_partial = False
        if self._pending is not None:
            self._abandon_pending("stream_end")
        return payloads

    def _process_line(self, line: str) -> Any:
        if line.endswith("\r"):
            line = line[:-1]

        if self._pending is not None:
            if _ends_event(line):
                self._abandon_pending("event_end")
            elif line.startswith(DATA_PREFIX):
                data = line[len(DATA_PREFIX):].strip()
                if data == self.terminator:
                    self._abandon_pending("terminator")
                    self.done = True
                    return None
                return self._retry_pending(data, standalone=True)
            else:
                return self._retry_pending(line, standalone=not self.require_prefix)

        if not line.strip() or line.startswith(":"):
            return None

        if line.startswith(DATA_PREFIX):
            data = line[len(DATA_PREFIX):].strip()
        elif self.require_prefix:
            return None
        else:
            data = line.strip()

        if data == self.terminator:
            self.done = True
            return None
        return self._try_payload(data)

    def _try_payload(self, data: str) -> Any:
        try:
            return decode_payload(data)
        except StreamDecodeError:
            self._hold(data)
            return None

    def _retry_pending(self, line: str, *, standalone: bool) -> Any:
        candidate = f"{self._pending}\n{line}"
        try:
            parsed = decode_payload(candidate)
        except StreamDecodeError:
            pass
        else:
            self._pending = None
            return parsed

        if standalone:
            try:
                parsed = decode_payload(line.strip())
            except StreamDecodeError:
                pass
            else:
                self._abandon_pending("superseded")
                return parsed

        self._pending = None
        self._hold(candidate)
        return None

    def _hold(self, data: str) -> None:
        if len(data.encode("utf-8")) > self.max_pending_bytes:
            self._pending = data
            self._abandon_pending("too_large")
            return
        self._pending = data

    def _abandon_pending(self, reason: str) -> None:
        pending = self._pending or ""
        self._pending = None
        self.dropped += 1
        logger.warning("sse malformed payload skipped reason=%s chars=%d head=%r", reason, len(pending), pending[:80])
