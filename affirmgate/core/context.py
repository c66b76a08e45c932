"""Per-request relay context."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field

RECEIVED = "received"
VALIDATED = "validated"
UPSTREAM_CALLED = "upstream_called"
STREAMING = "streaming"
COMPLETED = "completed"
FAILED_PRE_STREAM = "failed_pre_stream"
FAILED_MID_STREAM = "failed_mid_stream"

_TRANSITIONS: dict[str, frozenset[str]] = {
    RECEIVED: frozenset({VALIDATED, FAILED_PRE_STREAM}),
    VALIDATED: frozenset({UPSTREAM_CALLED, FAILED_PRE_STREAM}),
    UPSTREAM_CALLED: frozenset({STREAMING, FAILED_PRE_STREAM}),
    STREAMING: frozenset({COMPLETED, FAILED_MID_STREAM}),
    COMPLETED: frozenset(),
    FAILED_PRE_STREAM: frozenset(),
    FAILED_MID_STREAM: frozenset(),
}


@dataclass(slots=True)
class RequestContext:
    request_id: str = field(default_factory=lambda: f"aff-{uuid.uuid4().hex[:12]}")
    provider: str = ""
    state: str = RECEIVED
    started_at: float = field(default_factory=time.perf_counter)
    message_length: int = 0
    chunk_count: int = 0
    delta_chars: int = 0
    error_code: str = ""
    history: list[str] = field(default_factory=lambda: [RECEIVED])

    def advance(self, new_state: str) -> None:
        if new_state not in _TRANSITIONS.get(self.state, frozenset()):
            raise RuntimeError(f"invalid relay transition {self.state} -> {new_state}")
        self.state = new_state
        self.history.append(new_state)

    def fail(self, code: str) -> None:
        target = FAILED_MID_STREAM if self.state == STREAMING else FAILED_PRE_STREAM
        self.error_code = code
        self.advance(target)

    @property
    def headers_committed(self) -> bool:
        return self.state in {STREAMING, COMPLETED, FAILED_MID_STREAM}

    @property
    def duration_ms(self) -> int:
        return int((time.perf_counter() - self.started_at) * 1000)
