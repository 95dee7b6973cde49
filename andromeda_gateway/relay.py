"""Streaming answer relay.

One relay instance serves one chat turn: it performs the streamed upstream
call with tools disabled, re-emits content deltas in the gateway's event
shape and stores the accumulated answer as a single assistant turn.
"""

from __future__ import annotations

import logging
import time
from typing import AsyncGenerator

from .errors import UpstreamTransportError
from .sessions import Session, SessionStore, Turn
from .sse_frames import DONE_EVENT, DONE_PAYLOAD, SSEFrameDecoder, content_delta, delta_event, parse_event
from .upstream import UpstreamClient

LOG = logging.getLogger(__name__)


class StreamRelay:
    """Reframe one upstream completion stream into downstream delta events."""

    def __init__(
        self,
        *,
        upstream: UpstreamClient,
        store: SessionStore,
        max_answer_chars: int = 100_000,
    ) -> None:
        self.upstream = upstream
        self.store = store
        self.max_answer_chars = max_answer_chars
        self._parts: list[str] = []
        self._length = 0
        self.skipped_events = 0
        self.completed = False

    @property
    def text(self) -> str:
        """Answer text accumulated so far."""
        return "".join(self._parts)

    def _accept(self, payload: str) -> bytes | None:
        """Turn one upstream payload into a downstream event, if it carries text."""
        chunk = parse_event(payload)
        if chunk is None:
            self.skipped_events += 1
            LOG.debug("skipping malformed upstream event payload=%.200s", payload)
            return None
        text = content_delta(chunk)
        if text is None:
            return None
        self._length += len(text)
        if self._length > self.max_answer_chars:
            raise UpstreamTransportError(f"Upstream answer exceeded {self.max_answer_chars} characters")
        self._parts.append(text)
        return delta_event(text)

    async def relay(self, session: Session, *, model: str) -> AsyncGenerator[bytes, None]:
        """Stream the answer for `session`, then store it and emit `[DONE]`.

        Closing the generator early stops reading upstream and leaves the
        session without an assistant turn.
        """
        started = time.monotonic()
        decoder = SSEFrameDecoder()
        finished = False
        stream = self.upstream.stream_chat_completion(session.history(), model=model, tool_choice="none")
        try:
            async for chunk in stream:
                for payload in decoder.feed(chunk):
                    if payload == DONE_PAYLOAD:
                        finished = True
                        break
                    event = self._accept(payload)
                    if event is not None:
                        yield event
                if finished:
                    break
            if not finished:
                for payload in decoder.finish():
                    if payload == DONE_PAYLOAD:
                        break
                    event = self._accept(payload)
                    if event is not None:
                        yield event
        finally:
            await stream.aclose()

        answer = self.text
        self.store.append(session, Turn.assistant(answer))
        self.completed = True
        LOG.info(
            "stream relay finished session_id=%s chars=%s skipped_events=%s elapsed=%.3fs",
            session.id,
            len(answer),
            self.skipped_events,
            time.monotonic() - started,
        )
        yield DONE_EVENT
