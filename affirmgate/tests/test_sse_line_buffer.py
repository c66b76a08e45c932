import json

from affirmgate.core.sse import SSELineBuffer


def _sse(*texts: str) -> bytes:
    lines = [
        f"data: {json.dumps({'choices': [{'delta': {'content': text}}]}, ensure_ascii=False)}\n\n"
        for text in texts
    ]
    return "".join(lines).encode("utf-8") + b"data: [DONE]\n\n"


def _feed_all(buffer: SSELineBuffer, chunks: list[bytes]) -> list:
    out: list = []
    for chunk in chunks:
        out.extend(buffer.feed(chunk))
        if buffer.done:
            break
    out.extend(buffer.flush())
    return out


def test_split_at_every_byte_offset_yields_identical_events():
    data = _sse("You are ", "stronger than ", "you feel — café ☀️ 你很好", "today.")
    expected = _feed_all(SSELineBuffer(), [data])
    assert [e["choices"][0]["delta"]["content"] for e in expected] == [
        "You are ",
        "stronger than ",
        "you feel — café ☀️ 你很好",
        "today.",
    ]

    for offset in range(1, len(data)):
        buffer = SSELineBuffer()
        assert _feed_all(buffer, [data[:offset], data[offset:]]) == expected, offset
        assert buffer.done is True


def test_byte_by_byte_feed_matches_single_read():
    data = _sse("é", "ü", "☀️")
    expected = _feed_all(SSELineBuffer(), [data])
    single_bytes = [data[i:i + 1] for i in range(len(data))]
    assert _feed_all(SSELineBuffer(), single_bytes) == expected


def test_line_split_across_reads_is_reassembled():
    buffer = SSELineBuffer()
    assert buffer.feed(b'data: {"choices":[{"delta":') == []
    assert buffer.feed(b'{"content":"hi"}}]}\n\n') == [{"choices": [{"delta": {"content": "hi"}}]}]


def test_terminator_stops_processing_and_flush_drains_rest():
    buffer = SSELineBuffer()
    assert buffer.feed(b'data: {"a":1}\n\ndata: [DONE]\n\ndata: {"b":2}\n\n') == [{"a": 1}]
    assert buffer.done is True
    assert buffer.flush() == [{"b": 2}]


def test_comments_blank_lines_and_crlf_are_skipped():
    buffer = SSELineBuffer()
    events = buffer.feed(b": OPENROUTER PROCESSING\r\n\r\ndata: {\"a\":1}\r\n\r\n")
    assert events == [{"a": 1}]
    assert buffer.dropped == 0


def test_prefix_required_ignores_other_fields():
    buffer = SSELineBuffer(require_prefix=True)
    assert buffer.feed(b'event: message\n{"a":1}\nid: 7\n') == []


def test_bare_json_lines_accepted_without_prefix_requirement():
    buffer = SSELineBuffer(require_prefix=False)
    assert buffer.feed(b'{"a":1}\ndata: {"b":2}\n') == [{"a": 1}, {"b": 2}]


def test_payload_spread_over_lines_is_retried_not_dropped():
    buffer = SSELineBuffer(require_prefix=False)
    assert buffer.feed(b'{"a":\n') == []
    assert buffer.feed(b" 1}\n") == [{"a": 1}]
    assert buffer.dropped == 0

    prefixed = SSELineBuffer()
    assert prefixed.feed(b'data: {"a":\n 1}\n\n') == [{"a": 1}]


def test_malformed_payload_is_skipped_and_stream_continues():
    buffer = SSELineBuffer()
    assert buffer.feed(b'data: {oops\n\ndata: {"a":1}\n\n') == [{"a": 1}]
    assert buffer.dropped == 1


def test_malformed_bare_line_does_not_swallow_next_valid_line():
    buffer = SSELineBuffer(require_prefix=False)
    assert buffer.feed(b'{oops\n{"a":1}\n') == [{"a": 1}]
    assert buffer.dropped == 1


def test_unterminated_last_line_is_flushed():
    buffer = SSELineBuffer()
    assert buffer.feed(b'data: {"a":1}') == []
    assert buffer.flush() == [{"a": 1}]


def test_truncated_payload_at_stream_end_is_dropped():
    buffer = SSELineBuffer()
    assert buffer.feed(b'data: {"a":') == []
    assert buffer.flush() == []
    assert buffer.dropped == 1


def test_oversized_partial_line_is_discarded_until_next_newline():
    buffer = SSELineBuffer(max_pending_bytes=1024)
    assert buffer.feed(b"data: " + b"x" * 2000) == []
    assert buffer.feed(b"x" * 500) == []
    assert buffer.feed(b'yyy\ndata: {"a":1}\n') == [{"a": 1}]
    assert buffer.dropped == 1


def test_multiple_data_lines_of_one_event_are_joined():
    buffer = SSELineBuffer()
    events = buffer.feed(b'data: {"choices":[{"delta":\ndata: {"content":"hi"}}]}\n\n')
    assert events == [{"choices": [{"delta": {"content": "hi"}}]}]
    assert buffer.dropped == 0


def test_malformed_data_line_followed_by_valid_data_line():
    buffer = SSELineBuffer()
    assert buffer.feed(b'data: {oops\ndata: {"a":1}\n\n') == [{"a": 1}]
    assert buffer.dropped == 1


def test_terminator_ends_pending_payload():
    buffer = SSELineBuffer()
    assert buffer.feed(b'data: {"a":\ndata: [DONE]\n\n') == []
    assert buffer.done is True
    assert buffer.dropped == 1
