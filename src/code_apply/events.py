"""Progress event envelopes and server-sent-event framing."""

from __future__ import annotations

import codecs
import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from src.sandbox_backends.errors import StreamProtocolError

# Events understood on the inbound generation stream.
GENERATION_EVENT_TYPES = frozenset(
    {"stream", "package", "status", "complete", "error", "file-progress"}
)


def validate_event(obj: Any) -> dict[str, Any]:
    if not isinstance(obj, dict):
        raise StreamProtocolError(f"event must be an object, got {type(obj).__name__}")
    etype = obj.get("type")
    if not isinstance(etype, str) or not etype.strip():
        raise StreamProtocolError("event is missing a string 'type'")
    return obj


def format_sse(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event)}\n\n"


@dataclass
class SSEBatch:
    events: list[dict[str, Any]] = field(default_factory=list)
    lines: list[str] = field(default_factory=list)


class SSEJsonBuffer:
    """Collect ``data: {...}`` events from chunks that may split lines anywhere.

    A line is only parsed once its newline has arrived; comments (``:``) and
    blank separators are dropped, other text lines are returned as-is.
    """

    def __init__(self) -> None:
        self._partial = ""

    def add_chunk(self, chunk: str) -> SSEBatch:
        self._partial += chunk or ""
        *complete, self._partial = self._partial.split("\n")
        batch = SSEBatch()
        for line in complete:
            self._consume(line.rstrip("\r"), batch)
        return batch

    def flush(self) -> SSEBatch:
        batch = SSEBatch()
        rest, self._partial = self._partial, ""
        if rest.strip():
            self._consume(rest.rstrip("\r"), batch)
        return batch

    def _consume(self, line: str, batch: SSEBatch) -> None:
        if line.startswith("data:"):
            payload = line[5:].strip()
            if not payload:
                return
            try:
                obj = json.loads(payload)
            except ValueError as exc:
                raise StreamProtocolError(f"malformed event payload: {payload[:200]}") from exc
            batch.events.append(validate_event(obj))
        elif line.strip() and not line.startswith(":"):
            batch.lines.append(line)


async def iter_sse_events(chunks: AsyncIterator[str | bytes]) -> AsyncIterator[dict[str, Any]]:
    """Decode an SSE body into validated event dicts."""
    buf = SSEJsonBuffer()
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    async for chunk in chunks:
        text = decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        for event in buf.add_chunk(text).events:
            yield event
    tail = decoder.decode(b"", final=True)
    if tail:
        for event in buf.add_chunk(tail).events:
            yield event
    for event in buf.flush().events:
        yield event
