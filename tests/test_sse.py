"""
Tests for the incremental event stream decoder.
"""

import json

import pytest

from callbridge.models import StreamEvent, StreamEventType
from callbridge.sse import SSEDecoder, accumulate, iter_stream_events


def _data(payload: dict) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


async def _chunks(*parts: bytes):
    for part in parts:
        yield part


class TestSSEDecoder:

    def test_extracts_answer_and_conversation_id(self):
        decoder = SSEDecoder()
        events = decoder.feed(_data({"event": "message", "conversation_id": "conv_1", "answer": "Hi"}))

        assert [e.type for e in events] == [StreamEventType.CONVERSATION_ID, StreamEventType.ANSWER]
        assert events[0].value == "conv_1"
        assert events[1].value == "Hi"
        assert events[1].event == "message"

    def test_line_split_across_chunks(self):
        """A JSON payload cut in half by the network is reassembled."""
        raw = _data({"answer": "Your balance is $42."})
        decoder = SSEDecoder()

        first = decoder.feed(raw[:17])
        second = decoder.feed(raw[17:])

        assert first == []
        assert [e.value for e in second] == ["Your balance is $42."]

    def test_multibyte_character_split_across_chunks(self):
        raw = _data({"answer": "café"})
        cut = raw.index("é".encode("utf-8")) + 1
        decoder = SSEDecoder()

        events = decoder.feed(raw[:cut]) + decoder.feed(raw[cut:])

        assert events[0].value == "café"

    def test_malformed_line_is_skipped(self):
        """One bad line doesn't stop the lines after it."""
        decoder = SSEDecoder()
        raw = b"data: {not json\n" + _data({"answer": "still here"})

        events = decoder.feed(raw)

        assert [e.value for e in events] == ["still here"]
        assert decoder.malformed_count == 1

    def test_non_object_payload_is_malformed(self):
        decoder = SSEDecoder()

        assert decoder.feed(b"data: [1, 2]\n") == []
        assert decoder.malformed_count == 1

    def test_ignores_non_data_lines(self):
        decoder = SSEDecoder()
        raw = b": ping\nevent: message\nid: 7\n\n" + _data({"answer": "x"})

        events = decoder.feed(raw)

        assert len(events) == 1
        assert decoder.malformed_count == 0

    def test_crlf_and_no_space_prefix(self):
        decoder = SSEDecoder()

        events = decoder.feed(b'data:{"answer": "a"}\r\n')

        assert [e.value for e in events] == ["a"]

    def test_empty_fields_produce_no_events(self):
        decoder = SSEDecoder()

        events = decoder.feed(_data({"event": "message_end", "conversation_id": "", "answer": ""}))

        assert events == []

    def test_flush_parses_unterminated_last_line(self):
        decoder = SSEDecoder()

        assert decoder.feed(b'data: {"answer": "tail"}') == []
        assert [e.value for e in decoder.flush()] == ["tail"]


class TestIterStreamEvents:

    @pytest.mark.asyncio
    async def test_ends_with_end_event(self):
        events = [e async for e in iter_stream_events(_chunks(_data({"answer": "a"}), b"data: {\"answer\"", b": \"b\"}\n"))]

        assert [e.type for e in events] == [StreamEventType.ANSWER, StreamEventType.ANSWER, StreamEventType.END]
        assert events[1].value == "b"

    @pytest.mark.asyncio
    async def test_empty_stream(self):
        events = [e async for e in iter_stream_events(_chunks())]

        assert events == [StreamEvent(StreamEventType.END)]


class TestAccumulate:

    def test_last_conversation_id_wins(self):
        events = [
            StreamEvent(StreamEventType.CONVERSATION_ID, "conv_a"),
            StreamEvent(StreamEventType.ANSWER, "Hello "),
            StreamEvent(StreamEventType.CONVERSATION_ID, "conv_b"),
            StreamEvent(StreamEventType.ANSWER, "there"),
            StreamEvent(StreamEventType.END),
        ]

        result = accumulate(events, conversation_id="old")

        assert result.answer == "Hello there"
        assert result.conversation_id == "conv_b"
        assert result.fragments == 2

    def test_keeps_snapshot_without_update(self):
        result = accumulate([StreamEvent(StreamEventType.ANSWER, "x")], conversation_id="conv_1")

        assert result.conversation_id == "conv_1"
