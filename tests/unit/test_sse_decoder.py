"""Tests for incremental server-sent event decoding."""

from __future__ import annotations

from folio.services.stream_client import SSEDecoder, SSEFrame, parse_frame


class TestParseFrame:
    def test_event_and_data(self) -> None:
        frame = parse_frame('event: delta\ndata: {"a": 1}')
        assert frame == SSEFrame(event="delta", data='{"a": 1}')

    def test_default_event_name(self) -> None:
        assert parse_frame("data: hello").event == "message"

    def test_multiline_data_joined_with_newline(self) -> None:
        frame = parse_frame("event: x\ndata: one\ndata: two")
        assert frame.data == "one\ntwo"

    def test_comment_only_frame_is_ignored(self) -> None:
        assert parse_frame(": keep-alive") is None

    def test_space_after_colon_is_optional(self) -> None:
        assert parse_frame("event:done\ndata:{}").event == "done"

    def test_json_helper(self) -> None:
        assert parse_frame('data: {"k": [1, 2]}').json() == {"k": [1, 2]}
        assert SSEFrame(event="done").json() is None


class TestSSEDecoder:
    def test_single_chunk_multiple_frames(self) -> None:
        decoder = SSEDecoder()
        frames = decoder.feed(b"event: thread\ndata: t1\n\nevent: done\ndata: {}\n\n")
        assert [f.event for f in frames] == ["thread", "done"]

    def test_frame_split_across_chunks(self) -> None:
        decoder = SSEDecoder()
        assert decoder.feed(b"event: del") == []
        assert decoder.feed(b'ta\ndata: {"x"') == []
        frames = decoder.feed(b": 1}\n\n")
        assert frames == [SSEFrame(event="delta", data='{"x": 1}')]

    def test_multibyte_character_split(self) -> None:
        payload = "event: delta\ndata: naïve café\n\n".encode("utf-8")
        cut = payload.index("ï".encode("utf-8")) + 1
        decoder = SSEDecoder()
        assert decoder.feed(payload[:cut]) == []
        frames = decoder.feed(payload[cut:])
        assert frames[0].data == "naïve café"

    def test_crlf_line_endings(self) -> None:
        decoder = SSEDecoder()
        frames = decoder.feed(b"event: done\r\ndata: {}\r\n\r\n")
        assert frames == [SSEFrame(event="done", data="{}")]

    def test_crlf_split_between_chunks(self) -> None:
        decoder = SSEDecoder()
        assert decoder.feed(b"event: done\r\ndata: {}\r") == []
        assert decoder.feed(b"\n\r") == []
        assert decoder.feed(b"\n") == [SSEFrame(event="done", data="{}")]

    def test_bare_cr_line_endings(self) -> None:
        decoder = SSEDecoder()
        frames = decoder.feed(b"event: done\rdata: {}\r\rx")
        assert frames == [SSEFrame(event="done", data="{}")]

    def test_flush_returns_unterminated_frame(self) -> None:
        decoder = SSEDecoder()
        assert decoder.feed(b"event: done\ndata: {}") == []
        assert decoder.flush() == [SSEFrame(event="done", data="{}")]
        assert decoder.flush() == []

    def test_comments_between_frames(self) -> None:
        decoder = SSEDecoder()
        frames = decoder.feed(b": ping\n\nevent: done\ndata: {}\n\n")
        assert [f.event for f in frames] == ["done"]
