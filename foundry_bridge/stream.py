"""
Stream Normalizer - rewrites the local service's SSE dialect into the
standard chat-completion stream.

The service sends both an incremental `delta` and a redundant full
`message` on each streamed choice. Consumers that read both would count
the same text twice, so every choice that carries `delta` loses its
`message`. Nothing else is touched:

- Lines that cannot be interpreted (non-JSON payloads, JSON without a
  `choices` list, comments, blank lines) pass through byte-identical.
- Data lines that need no rewrite pass through byte-identical.
- `data: [DONE]` passes through unchanged.

Normalization is a pure function of the input bytes, so running it twice
gives the same output as running it once.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterable, AsyncIterator, Optional, Union

from foundry_bridge.errors import StreamTransformFailure

logger = logging.getLogger(__name__)

DATA_PREFIX = b"data:"
DONE_MARKER = "[DONE]"


class EventKind(str, Enum):
    DATA = "data"    # JSON payload event
    DONE = "done"    # terminal marker
    OTHER = "other"  # anything passed through uninterpreted


class NormalizerState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    ENDED = "ended"
    ERRORED = "errored"


@dataclass(frozen=True)
class NormalizedEvent:
    """One output line, including its original line terminator (if any)."""
    kind: EventKind
    raw: bytes
    payload: Optional[dict] = None
    rewritten: bool = False

    @property
    def text(self) -> str:
        return self.raw.decode("utf-8", errors="replace")


# ─────────────────────────────────────────────────────────────────────
# LINE LEVEL
# ─────────────────────────────────────────────────────────────────────

def _split_terminator(line: bytes) -> tuple[bytes, bytes]:
    if line.endswith(b"\r\n"):
        return line[:-2], b"\r\n"
    if line.endswith(b"\n"):
        return line[:-1], b"\n"
    return line, b""


def strip_redundant_messages(payload: dict) -> bool:
    """
    Remove `message` from every choice that also carries a non-null `delta`.

    Mutates payload in place. Returns True if anything was removed.
    """
    changed = False
    for choice in payload.get("choices", []):
        if isinstance(choice, dict) and choice.get("delta") is not None and "message" in choice:
            logger.debug(f"Removing duplicate message field from choice {choice.get('index')}")
            del choice["message"]
            changed = True
    return changed


def _rewrite_payload(payload: dict) -> bool:
    try:
        return strip_redundant_messages(payload)
    except Exception as e:
        raise StreamTransformFailure(f"Could not rewrite stream payload: {e}") from e


def normalize_line(line: bytes) -> NormalizedEvent:
    """
    Classify and, if needed, rewrite one complete SSE line.

    `line` may end with "\\n" or "\\r\\n"; the terminator is preserved.
    """
    body, terminator = _split_terminator(line)

    if not body.startswith(DATA_PREFIX):
        return NormalizedEvent(EventKind.OTHER, line)

    # "data:" optionally followed by one space, as SSE allows
    prefix_len = len(DATA_PREFIX) + (1 if body[len(DATA_PREFIX):].startswith(b" ") else 0)
    data = body[prefix_len:]

    if data.strip() == DONE_MARKER.encode():
        return NormalizedEvent(EventKind.DONE, line)

    try:
        payload = json.loads(data)
    except ValueError:
        logger.debug(f"Could not parse line as JSON, passing through: {line[:200]!r}")
        return NormalizedEvent(EventKind.OTHER, line)

    if not isinstance(payload, dict) or not isinstance(payload.get("choices"), list):
        return NormalizedEvent(EventKind.OTHER, line)

    try:
        changed = _rewrite_payload(payload)
    except StreamTransformFailure as e:
        logger.warning(f"{e}; passing line through unchanged")
        return NormalizedEvent(EventKind.OTHER, line)

    if not changed:
        return NormalizedEvent(EventKind.DATA, line, payload=payload)

    encoded = json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    return NormalizedEvent(
        EventKind.DATA,
        body[:prefix_len] + encoded + terminator,
        payload=payload,
        rewritten=True,
    )


# ─────────────────────────────────────────────────────────────────────
# PUSH-BASED NORMALIZER
# ─────────────────────────────────────────────────────────────────────

class StreamNormalizer:
    """
    Incremental normalizer for one response body.

    Feed raw chunks as they arrive; complete lines are emitted immediately,
    a trailing partial line waits in the buffer for more bytes. Create one
    instance per request.

    Usage:
        normalizer = StreamNormalizer()
        for chunk in chunks:
            for event in normalizer.feed(chunk):
                handle(event)
        for event in normalizer.flush():
            handle(event)
    """

    def __init__(self):
        self._buffer = b""
        self.state = NormalizerState.IDLE

    @property
    def pending(self) -> bytes:
        """Bytes of the partial line awaiting more input."""
        return self._buffer

    def feed(self, chunk: bytes) -> list[NormalizedEvent]:
        """Accept a chunk of the body and return events for every completed line."""
        if self.state in (NormalizerState.ENDED, NormalizerState.ERRORED):
            raise RuntimeError(f"Cannot feed a normalizer in state {self.state.value}")
        self.state = NormalizerState.STREAMING

        self._buffer += chunk
        events = []
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            line, self._buffer = self._buffer[:newline + 1], self._buffer[newline + 1:]
            events.append(normalize_line(line))
        return events

    def flush(self) -> list[NormalizedEvent]:
        """Upstream ended: emit any non-empty remainder as a final line."""
        if self.state == NormalizerState.ERRORED:
            return []
        remainder, self._buffer = self._buffer, b""
        self.state = NormalizerState.ENDED
        if remainder:
            return [normalize_line(remainder)]
        return []

    def abort(self, errored: bool = False) -> None:
        """Drop the partial line without parsing it (cancellation or upstream error)."""
        if self._buffer:
            logger.debug(f"Discarding {len(self._buffer)} buffered bytes")
        self._buffer = b""
        self.state = NormalizerState.ERRORED if errored else NormalizerState.ENDED


# ─────────────────────────────────────────────────────────────────────
# PULL-BASED / BUFFER HELPERS
# ─────────────────────────────────────────────────────────────────────

async def normalize_stream(
    chunks: AsyncIterable[bytes],
    normalizer: Optional[StreamNormalizer] = None,
) -> AsyncIterator[NormalizedEvent]:
    """
    Normalize an async byte stream, yielding events in arrival order.

    Upstream errors propagate after the buffer is discarded. Closing the
    generator early (consumer stopped, task cancelled) discards the buffer
    without emitting anything further.
    """
    normalizer = normalizer or StreamNormalizer()
    finished = False
    try:
        async for chunk in chunks:
            for event in normalizer.feed(chunk):
                yield event
        finished = True
    except Exception:
        normalizer.abort(errored=True)
        raise
    finally:
        if not finished and normalizer.state == NormalizerState.STREAMING:
            normalizer.abort()

    for event in normalizer.flush():
        yield event


def normalize_text(text: Union[str, bytes]) -> bytes:
    """
    Normalize a complete in-memory SSE body (non-streaming fallback).

    Returns the rewritten body; identical to the input when nothing
    needed rewriting.
    """
    data = text.encode("utf-8") if isinstance(text, str) else text
    normalizer = StreamNormalizer()
    events = normalizer.feed(data) + normalizer.flush()
    return b"".join(event.raw for event in events)
