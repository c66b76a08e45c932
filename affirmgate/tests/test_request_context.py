import pytest

from affirmgate.core.context import (
    COMPLETED,
    FAILED_MID_STREAM,
    FAILED_PRE_STREAM,
    RECEIVED,
    STREAMING,
    UPSTREAM_CALLED,
    VALIDATED,
    RequestContext,
)


def test_happy_path_history():
    ctx = RequestContext(provider="openai")
    for state in (VALIDATED, UPSTREAM_CALLED, STREAMING, COMPLETED):
        ctx.advance(state)
    assert ctx.history == [RECEIVED, VALIDATED, UPSTREAM_CALLED, STREAMING, COMPLETED]
    assert ctx.headers_committed is True
    assert ctx.request_id.startswith("aff-")


def test_fail_before_streaming_is_pre_stream():
    ctx = RequestContext()
    ctx.advance(VALIDATED)
    ctx.fail("TIMEOUT")
    assert ctx.state == FAILED_PRE_STREAM
    assert ctx.error_code == "TIMEOUT"
    assert ctx.headers_committed is False


def test_fail_while_streaming_is_mid_stream():
    ctx = RequestContext()
    for state in (VALIDATED, UPSTREAM_CALLED, STREAMING):
        ctx.advance(state)
    ctx.fail("STREAM_ERROR")
    assert ctx.state == FAILED_MID_STREAM


def test_terminal_states_reject_further_transitions():
    ctx = RequestContext()
    ctx.fail("EMPTY_MESSAGE")
    with pytest.raises(RuntimeError, match="invalid relay transition"):
        ctx.advance(VALIDATED)


def test_cannot_skip_validation():
    with pytest.raises(RuntimeError):
        RequestContext().advance(STREAMING)
