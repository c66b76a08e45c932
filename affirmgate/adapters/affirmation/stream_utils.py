"""
客户端 SSE 帧构建与流式响应。浏览器只认这一种格式，与上游是哪家无关。
"""

from __future__ import annotations

import json
from typing import AsyncIterable, Iterable

from fastapi.responses import StreamingResponse

from affirmgate.core.sse import DONE_TOKEN


def _stream_delta_sse_chunk(text: str) -> bytes:
    payload = {"choices": [{"delta": {"content": text}}]}
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def _stream_done_sse_chunk() -> bytes:
    return f"data: {DONE_TOKEN}\n\n".encode("utf-8")


def _build_streaming_response(generator: Iterable[bytes] | AsyncIterable[bytes]) -> StreamingResponse:
    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
