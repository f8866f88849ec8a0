"""Unit tests for line framing."""

import pytest

from linepump.protocol.events import CHILD_DIED, UNKNOWN_FRAME, Event
from linepump.protocol.framing import LineBuffer, encode_command, extract_frames, parse_frame

STREAM = b"200 hello\n301 moved there\ngarbage line\n\n404 \n250 caf\xc3\xa9\n120 tail"


@pytest.mark.unit
class TestParseFrame:
    """Test classification of single lines."""

    def test_coded_line(self):
        assert parse_frame("200 hello world") == Event(code=200, payload="hello world")

    def test_empty_payload(self):
        assert parse_frame("404 ") == Event(code=404, payload="")

    def test_payload_keeps_extra_spaces(self):
        assert parse_frame("200  two  spaces ").payload == " two  spaces "

    def test_leading_zeros(self):
        assert parse_frame("007 bond").code == 7

    @pytest.mark.parametrize(
        "line",
        ["garbage line", "", "200", "200hello", "2000 too wide", "20 short", " 200 x", "٢٠٠ arabic"],
    )
    def test_unknown_frame(self, line):
        event = parse_frame(line)
        assert event.code == UNKNOWN_FRAME
        assert event.payload == f"unknown response ({line})"

    def test_carriage_return_stays_in_payload(self):
        assert parse_frame("200 dos\r").payload == "dos\r"


@pytest.mark.unit
class TestExtractFrames:
    """Test splitting a buffer into events and a partial remainder."""

    def test_complete_lines(self):
        events, remaining = extract_frames(b"200 a\n201 b\n")
        assert events == [Event(code=200, payload="a"), Event(code=201, payload="b")]
        assert remaining == b""

    def test_partial_line_retained(self):
        events, remaining = extract_frames(b"200 hel")
        assert events == []
        assert remaining == b"200 hel"

    def test_partial_line_completed(self):
        _, remaining = extract_frames(b"200 hel")
        events, remaining = extract_frames(remaining + b"lo\n")
        assert events == [Event(code=200, payload="hello")]
        assert remaining == b""

    def test_empty_buffer(self):
        assert extract_frames(b"") == ([], b"")

    def test_garbage_between_lines(self):
        events, _ = extract_frames(b"200 ok\ngarbage line\n201 ok\n")
        assert [e.code for e in events] == [200, UNKNOWN_FRAME, 201]
        assert "garbage line" in events[1].payload

    def test_blank_line_is_unknown(self):
        events, _ = extract_frames(b"\n")
        assert events == [Event(code=UNKNOWN_FRAME, payload="unknown response ()")]

    def test_decoding(self):
        events, _ = extract_frames("250 café\n".encode("latin-1"), encoding="latin-1")
        assert events[0].payload == "café"

    def test_invalid_bytes_replaced(self):
        events, _ = extract_frames(b"200 \xff\n")
        assert events[0].payload == "\ufffd"


@pytest.mark.unit
class TestLineBuffer:
    """Test the stateful accumulator."""

    def test_append_and_drain(self):
        buffer = LineBuffer()
        buffer.append(b"200 a\n201")
        assert buffer.has_event()
        assert buffer.drain() == [Event(code=200, payload="a")]
        assert buffer.pending == b"201"
        assert not buffer.has_event()

    @pytest.mark.parametrize("chunk_size", [1, 2, 3, 7, len(STREAM)])
    def test_chunking_does_not_change_events(self, chunk_size):
        whole_events, whole_remaining = extract_frames(STREAM)

        buffer = LineBuffer()
        for start in range(0, len(STREAM), chunk_size):
            buffer.append(STREAM[start:start + chunk_size])

        assert buffer.drain() == whole_events
        assert buffer.pending == whole_remaining == b"120 tail"

    def test_multibyte_character_split_across_chunks(self):
        buffer = LineBuffer()
        buffer.append(b"250 caf\xc3")
        buffer.append(b"\xa9\n")
        assert buffer.drain() == [Event(code=250, payload="café")]

    def test_line_too_large(self):
        buffer = LineBuffer(max_line_size=8)
        buffer.append(b"200 ok\n")
        with pytest.raises(ValueError, match="Line too large"):
            buffer.append(b"200 this is far too long")
        assert buffer.pending == b""
        assert buffer.discarding
        assert buffer.drain() == [Event(code=200, payload="ok")]

    def test_events_before_oversized_line_survive(self):
        buffer = LineBuffer(max_line_size=10)
        with pytest.raises(ValueError):
            buffer.append(b"200 ok\n123456789012345")
        assert buffer.drain() == [Event(code=200, payload="ok")]

    def test_oversized_line_tail_is_discarded(self):
        buffer = LineBuffer(max_line_size=10)
        with pytest.raises(ValueError):
            buffer.append(b"123456789012345")

        buffer.append(b"still the same line")
        assert buffer.drain() == []
        assert buffer.pending == b""

        buffer.append(b"tail\n200 next\n201 par")
        assert not buffer.discarding
        assert buffer.drain() == [Event(code=200, payload="next")]
        assert buffer.pending == b"201 par"

    def test_clear_stops_discarding(self):
        buffer = LineBuffer(max_line_size=4)
        with pytest.raises(ValueError):
            buffer.append(b"200 long")
        buffer.clear()
        buffer.append(b"1\n")
        assert buffer.drain() == [Event(code=UNKNOWN_FRAME, payload="unknown response (1)")]

    def test_clear(self):
        buffer = LineBuffer()
        buffer.append(b"200 a\n20")
        buffer.clear()
        assert buffer.pending == b""
        assert buffer.drain() == []


@pytest.mark.unit
class TestEncodeCommand:
    """Test outbound line construction."""

    def test_command_with_params(self):
        assert encode_command("login", "alice", "secret") == b"login alice secret\n"

    def test_bare_command(self):
        assert encode_command("status") == b"status\n"

    def test_params_are_stringified(self):
        assert encode_command("connect", "login.example", 4800) == b"connect login.example 4800\n"

    def test_no_escaping(self):
        assert encode_command("say", "two\nlines") == b"say two\nlines\n"

    def test_encoding(self):
        assert encode_command("say", "é", encoding="latin-1") == b"say \xe9\n"


@pytest.mark.unit
def test_reserved_codes_are_distinct():
    assert UNKNOWN_FRAME == 3000
    assert CHILD_DIED == 3001
