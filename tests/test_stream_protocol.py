from __future__ import annotations

import pytest

from board_orchestrator.runtime.agents.protocol import StreamDecoder, StreamRecord, decode_line

STREAM = (
    b'{"type":"system","subtype":"init","session_id":"boot"}\n'
    b"plain log line \xc3\xa9\n"
    b"\n"
    b'{"type":"assistant","message":{"content":[{"type":"text","text":"hi"}]}}\n'
    b'{"type":"result","session_id":"s1","result":"done"}\r\n'
    b'{"type":"partial"'
)


def _decode(chunks: list[bytes]) -> list[tuple[str, object]]:
    decoder = StreamDecoder()
    records: list[StreamRecord] = []
    for chunk in chunks:
        records.extend(decoder.feed(chunk))
    tail = decoder.flush()
    if tail is not None:
        records.append(tail)
    return [(record.text, record.data) for record in records]


def test_decodes_json_and_plain_lines_and_skips_blanks() -> None:
    decoded = _decode([STREAM])

    assert [text for text, _ in decoded] == [
        '{"type":"system","subtype":"init","session_id":"boot"}',
        "plain log line é",
        '{"type":"assistant","message":{"content":[{"type":"text","text":"hi"}]}}',
        '{"type":"result","session_id":"s1","result":"done"}',
        '{"type":"partial"',
    ]
    assert decoded[1][1] is None
    assert decoded[3][1] == {"type": "result", "session_id": "s1", "result": "done"}
    # The unterminated tail is not valid JSON and passes through as text.
    assert decoded[4][1] is None


@pytest.mark.parametrize("split", range(1, len(STREAM)))
def test_any_two_chunk_split_decodes_identically(split: int) -> None:
    assert _decode([STREAM[:split], STREAM[split:]]) == _decode([STREAM])


def test_byte_at_a_time_feed_decodes_identically() -> None:
    chunks = [STREAM[i : i + 1] for i in range(len(STREAM))]

    assert _decode(chunks) == _decode([STREAM])


def test_feed_holds_fragment_until_newline() -> None:
    decoder = StreamDecoder()

    assert decoder.feed(b'{"type":"result",') == []
    assert decoder.pending == b'{"type":"result",'
    records = decoder.feed(b'"session_id":"s1"}\n')

    assert len(records) == 1
    assert records[0].continuity_id == "s1"
    assert decoder.pending == b""


def test_flush_emits_pending_fragment_once() -> None:
    decoder = StreamDecoder()
    decoder.feed(b"no newline at end")

    first = decoder.flush()
    assert first is not None
    assert first.text == "no newline at end"
    assert decoder.flush() is None


def test_flush_of_empty_buffer_returns_none() -> None:
    decoder = StreamDecoder()
    decoder.feed(b"complete\n")

    assert decoder.flush() is None


def test_continuity_id_only_from_result_records() -> None:
    assert decode_line(b'{"type":"result","session_id":"abc"}').continuity_id == "abc"
    assert decode_line(b'{"type":"result","session_id":""}').continuity_id is None
    assert decode_line(b'{"type":"system","session_id":"abc"}').continuity_id is None
    assert decode_line(b"[1, 2, 3]").continuity_id is None
    assert decode_line(b"not json").continuity_id is None


def test_blank_and_whitespace_lines_decode_to_none() -> None:
    assert decode_line(b"") is None
    assert decode_line(b"   \r") is None
    assert StreamDecoder().feed(b"\n\n  \n") == []


def test_invalid_utf8_is_replaced_not_raised() -> None:
    record = decode_line(b"bad \xff byte")

    assert record is not None
    assert record.text == "bad � byte"
    assert not record.is_json
