"""
Incremental decoder for the chat API event stream.

The chat endpoint answers with text/event-stream. Network chunks do not line
up with event lines (a JSON payload, or even a multi-byte character, can be
split across two chunks), so bytes are buffered until a full line is
available. Only "data:" lines are interpreted; a bad line is logged and
skipped so one malformed event never aborts the answer.
"""

import codecs
import json
import logging
from typing import AsyncIterable, AsyncIterator, Iterable, List, Optional

from .models import StreamEvent, StreamEventType, StreamResult

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"

# Truncate logged payloads
MAX_LOG_CHARS = 200


class SSEDecoder:
    """Turns raw stream chunks into StreamEvents."""

    def __init__(self, context: str = ""):
        self.context = context
        self.malformed_count = 0
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> List[StreamEvent]:
        """Consume one chunk, returning events for every completed line."""
        self._buffer += self._decoder.decode(chunk)
        events: List[StreamEvent] = []
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            events.extend(self._parse_line(line.rstrip("\r")))
        return events

    def flush(self) -> List[StreamEvent]:
        """Parse whatever is left once the stream has ended."""
        self._buffer += self._decoder.decode(b"", final=True)
        line, self._buffer = self._buffer, ""
        return self._parse_line(line.rstrip("\r"))

    def _parse_line(self, line: str) -> List[StreamEvent]:
        if not line.startswith(DATA_PREFIX):
            # blank separators, "event:", "id:", ":" comments
            return []

        payload = line[len(DATA_PREFIX):]
        if payload.startswith(" "):
            payload = payload[1:]

        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            self._malformed(f"invalid JSON ({e})", line)
            return []

        if not isinstance(data, dict):
            self._malformed("payload is not an object", line)
            return []

        upstream_event = data.get("event")
        events: List[StreamEvent] = []

        conversation_id = data.get("conversation_id")
        if conversation_id:
            events.append(StreamEvent(StreamEventType.CONVERSATION_ID, str(conversation_id), upstream_event))

        answer = data.get("answer")
        if answer:
            events.append(StreamEvent(StreamEventType.ANSWER, str(answer), upstream_event))

        return events

    def _malformed(self, reason: str, line: str) -> None:
        self.malformed_count += 1
        logger.error(f"{self.context}Error parsing SSE event: {reason}. Line: {line[:MAX_LOG_CHARS]}")


async def iter_stream_events(
    chunks: AsyncIterable[bytes],
    decoder: Optional[SSEDecoder] = None,
) -> AsyncIterator[StreamEvent]:
    """Decode an async byte stream lazily, finishing with an END event."""
    decoder = decoder or SSEDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
    for event in decoder.flush():
        yield event
    yield StreamEvent(StreamEventType.END)


def accumulate(events: Iterable[StreamEvent], conversation_id: str = "") -> StreamResult:
    """Fold stream events into the final answer and conversation_id."""
    result = StreamResult(conversation_id=conversation_id)
    for event in events:
        apply_event(result, event)
    return result


def apply_event(result: StreamResult, event: StreamEvent) -> None:
    """Apply a single event to a running StreamResult."""
    if event.type == StreamEventType.CONVERSATION_ID:
        # last one wins
        result.conversation_id = event.value
    elif event.type == StreamEventType.ANSWER:
        result.answer += event.value
        result.fragments += 1
