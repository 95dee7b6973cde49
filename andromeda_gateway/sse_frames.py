"""Server-sent-event framing for both directions.

Upstream bytes are decoded incrementally into `data:` payloads; downstream
events are encoded in the gateway's own `data: <json>` shape.
"""

from __future__ import annotations

import codecs
import json
from typing import Any

from .errors import UpstreamTransportError

DONE_PAYLOAD = "[DONE]"
DONE_EVENT = b"data: [DONE]\n\n"

DEFAULT_MAX_EVENT_CHARS = 1_048_576


class SSEFrameDecoder:
    """Incremental decoder: feed arbitrary byte chunks, drain complete event payloads.

    Partial UTF-8 sequences and partial lines are carried over to the next
    `feed` call, so the output does not depend on how the input was split.
    The `data:` lines of one event are joined with newlines and the event is
    emitted at the blank line that ends it. A line or event longer than
    `max_event_chars` raises UpstreamTransportError.
    """

    def __init__(self, max_event_chars: int = DEFAULT_MAX_EVENT_CHARS) -> None:
        self.max_event_chars = max_event_chars
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._partial: list[str] = []
        self._partial_len = 0
        self._data: list[str] = []
        self._data_len = 0

    def feed(self, chunk: bytes) -> list[str]:
        """Add bytes and return the payloads of all completed events."""
        return self._consume(self._decoder.decode(chunk))

    def finish(self) -> list[str]:
        """Flush the decoder; a trailing unterminated line and event are emitted."""
        payloads = self._consume(self._decoder.decode(b"", final=True))
        if self._partial:
            line = "".join(self._partial)
            self._partial, self._partial_len = [], 0
            self._take_line(line, payloads)
        self._dispatch(payloads)
        return payloads

    def _consume(self, text: str) -> list[str]:
        payloads: list[str] = []
        if "\n" not in text:
            if text:
                self._partial.append(text)
                self._partial_len += len(text)
                self._check(self._partial_len)
            return payloads

        lines = text.split("\n")
        if self._partial:
            lines[0] = "".join(self._partial) + lines[0]
        tail = lines.pop()
        self._partial = [tail] if tail else []
        self._partial_len = len(tail)
        self._check(self._partial_len)
        for line in lines:
            self._take_line(line, payloads)
        return payloads

    def _take_line(self, line: str, payloads: list[str]) -> None:
        self._check(len(line))
        line = line.rstrip("\r")
        if not line:
            self._dispatch(payloads)
            return
        value = data_payload(line)
        if value is None:
            return
        self._data.append(value)
        self._data_len += len(value) + 1
        self._check(self._data_len)

    def _dispatch(self, payloads: list[str]) -> None:
        if not self._data:
            return
        payload = "\n".join(self._data).strip()
        self._data, self._data_len = [], 0
        if payload:
            payloads.append(payload)

    def _check(self, size: int) -> None:
        if size > self.max_event_chars:
            raise UpstreamTransportError(f"Upstream event exceeded {self.max_event_chars} characters")


def data_payload(line: str) -> str | None:
    """Return the value of one `data:` field line, or None for any other line."""
    line = line.rstrip("\r")
    if not line.startswith("data:"):
        return None
    value = line[5:]
    return value[1:] if value.startswith(" ") else value


def parse_event(payload: str) -> dict[str, Any] | None:
    """Parse one JSON event payload; malformed payloads yield None."""
    try:
        value = json.loads(payload)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def pick_primary_choice(chunk: dict[str, Any]) -> dict[str, Any] | None:
    """Return the primary choice (index 0 if present) from an upstream chunk."""
    choices = chunk.get("choices")
    if not isinstance(choices, list) or not choices:
        return None

    for choice in choices:
        if isinstance(choice, dict) and choice.get("index") == 0:
            return choice

    first = choices[0]
    return first if isinstance(first, dict) else None


def content_delta(chunk: dict[str, Any]) -> str | None:
    """Extract `choices[0].delta.content` text from one upstream chunk."""
    choice = pick_primary_choice(chunk)
    if choice is None:
        return None
    delta = choice.get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    return content if isinstance(content, str) and content else None


def sse_data(payload: dict[str, Any]) -> bytes:
    """Encode one downstream `data:` event."""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def sse_comment(text: str) -> bytes:
    """Encode one SSE comment/heartbeat event."""
    return f": {text}\n\n".encode("utf-8")


def model_event(model: str) -> bytes:
    return sse_data({"model": model})


def delta_event(text: str) -> bytes:
    return sse_data({"delta": text})


def error_event(message: str) -> bytes:
    return sse_data({"error": message})
