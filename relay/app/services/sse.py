"""Server-Sent-Events transcoding.

Turns an upstream ``text/event-stream`` byte stream carrying
OpenAI-style chat completion chunks into the plain assistant text.

- ``SSEDecoder`` reassembles events from arbitrarily split byte slices
  (UTF-8 sequences and CRLF pairs may straddle reads)
- ``extract_delta`` pulls ``choices[0].delta.content`` out of one payload
- ``transcode`` is a pull-based async generator: it reads the next slice
  of upstream bytes only when its consumer asks for the next chunk
"""

import codecs
import json
from dataclasses import dataclass
from typing import AsyncGenerator, AsyncIterator, List, Optional

from relay.app.core.logging import get_logger

logger = get_logger(__name__)

DONE_SENTINEL = "[DONE]"


@dataclass
class SSEEvent:
    """One parsed event block."""
    data: str
    event: Optional[str] = None
    id: Optional[str] = None

    @property
    def is_done(self) -> bool:
        return self.data.strip() == DONE_SENTINEL


def parse_event(block: str) -> Optional[SSEEvent]:
    """Parse a newline-normalised event block.

    Returns None for blocks without a ``data`` field (comments, bare
    ``event:``/``id:`` blocks, keep-alives).
    """
    data_lines: List[str] = []
    event_name: Optional[str] = None
    event_id: Optional[str] = None

    for line in block.split("\n"):
        if not line or line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            data_lines.append(value)
        elif name == "event":
            event_name = value
        elif name == "id":
            event_id = value

    if not data_lines:
        return None
    return SSEEvent(data="\n".join(data_lines), event=event_name, id=event_id)


class SSEDecoder:
    """Incremental SSE decoder.

    Holds at most one incomplete event between calls.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> List[SSEEvent]:
        """Append bytes and return the events completed by them."""
        if not chunk:
            return []
        return self._consume(self._decoder.decode(chunk))

    def flush(self) -> List[SSEEvent]:
        """Finish decoding at end of input, including an unterminated block."""
        events = self._consume(self._decoder.decode(b"", final=True))
        tail, self._buffer = self._buffer, ""
        tail = tail.replace("\r\n", "\n").replace("\r", "\n")
        event = parse_event(tail) if tail.strip() else None
        if event is not None:
            events.append(event)
        return events

    def _consume(self, text: str) -> List[SSEEvent]:
        self._buffer += text

        # A trailing CR may be the first half of a CRLF split across reads
        pending_cr = self._buffer.endswith("\r")
        body = self._buffer[:-1] if pending_cr else self._buffer
        body = body.replace("\r\n", "\n").replace("\r", "\n")

        blocks = body.split("\n\n")
        self._buffer = blocks.pop() + ("\r" if pending_cr else "")

        events: List[SSEEvent] = []
        for block in blocks:
            event = parse_event(block)
            if event is not None:
                events.append(event)
        return events


def extract_delta(payload: str) -> Optional[str]:
    """Return ``choices[0].delta.content`` if it is a non-empty string.

    Malformed JSON and unexpected shapes yield None; one corrupt frame
    must not end the stream.
    """
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug(
            "Skipping malformed SSE payload",
            extra={"payload_preview": payload[:100]},
        )
        return None

    try:
        content = data["choices"][0]["delta"].get("content")
    except (KeyError, IndexError, TypeError, AttributeError):
        return None

    if isinstance(content, str) and content:
        return content
    return None


async def transcode(
    byte_stream: AsyncIterator[bytes],
    request_id: Optional[str] = None,
) -> AsyncGenerator[str, None]:
    """Yield assistant text chunks from an upstream SSE byte stream.

    Ends at the ``[DONE]`` sentinel without reading further bytes, or at
    the end of input after flushing the last partial event. A read error
    propagates. The byte stream is closed on every exit path, including
    the consumer closing this generator early.
    """
    decoder = SSEDecoder()
    chunks = 0
    try:
        async for raw in byte_stream:
            for event in decoder.feed(raw):
                if event.is_done:
                    return
                text = extract_delta(event.data)
                if text:
                    chunks += 1
                    yield text

        for event in decoder.flush():
            if event.is_done:
                return
            text = extract_delta(event.data)
            if text:
                chunks += 1
                yield text

        logger.debug(
            "Upstream stream ended without sentinel",
            extra={"request_id": request_id, "chunks": chunks},
        )
    finally:
        aclose = getattr(byte_stream, "aclose", None)
        if aclose is not None:
            await aclose()
