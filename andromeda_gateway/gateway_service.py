"""Gateway service runtime and per-turn chat orchestration."""

from __future__ import annotations

import asyncio
import collections
import contextlib
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterator

import httpx

from .config import GatewayConfig
from .errors import GENERIC_UPSTREAM_MESSAGE, GatewayError, InputValidationError, RateLimitError, UpstreamTransportError
from .rate_limit import RateLimiter
from .relay import StreamRelay
from .resolution import ToolResolutionLoop
from .sessions import Session, SessionStore, Turn
from .sse_frames import error_event, model_event
from .tool_registry import ToolRegistry
from .upstream import UpstreamClient

LOG = logging.getLogger(__name__)


@dataclass
class ChatRequest:
    """Validated chat turn input."""

    session_id: Any
    message: str
    model: str


def parse_chat_request(body: Any, cfg: GatewayConfig) -> ChatRequest:
    """Validate a chat request body; raises InputValidationError."""
    if not isinstance(body, dict):
        raise InputValidationError("Request body must be a JSON object.")

    message = body.get("message")
    if not isinstance(message, str) or not message.strip():
        raise InputValidationError("Message must be a non-empty string.")
    if len(message) > cfg.max_message_chars:
        raise InputValidationError(f"Message exceeds {cfg.max_message_chars} characters.")

    model = body.get("model")
    if model is None or model == "":
        model = cfg.default_model
    elif not isinstance(model, str) or not cfg.is_model_allowed(model):
        raise InputValidationError("Requested model is not allowed.")

    return ChatRequest(session_id=body.get("sessionId"), message=message, model=model)


def client_key(peer_host: str | None, forwarded_for: str | None, *, trust_forwarded_for: bool) -> str:
    """Derive the rate-limit key for one request.

    The forwarded header is client-controlled and only honoured when the
    deployment sits behind a trusted proxy.
    """
    if trust_forwarded_for and forwarded_for:
        first_hop = forwarded_for.split(",", 1)[0].strip()
        if first_hop:
            return first_hop
    return peer_host or "unknown"


class _TurnDeadline:
    """Optional wall-clock deadline for a whole chat turn."""

    def __init__(self, seconds: float | None) -> None:
        self.seconds = seconds
        self._deadline = None if seconds is None else time.monotonic() + seconds

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        left = self._deadline - time.monotonic()
        if left <= 0:
            raise UpstreamTransportError(f"Chat turn exceeded its {self.seconds:.1f}s deadline")
        return left

    async def run(self, awaitable: Any) -> Any:
        """Await with the remaining time as timeout."""
        try:
            timeout = self.remaining()
        except UpstreamTransportError:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise
        if timeout is None:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise UpstreamTransportError(f"Chat turn exceeded its {self.seconds:.1f}s deadline") from exc


class GatewayService:
    """Runtime container for sessions, admission control, tools and upstream."""

    def __init__(
        self,
        cfg: GatewayConfig,
        *,
        registry: ToolRegistry | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.cfg = cfg
        self._transport = transport
        self.registry = registry or ToolRegistry()
        self.upstream = UpstreamClient(cfg, self.registry, transport=transport)
        self.sessions = SessionStore(max_messages=cfg.max_session_messages, ttl_seconds=cfg.session_ttl_seconds)
        self.limiter = RateLimiter(max_requests=cfg.rate_limit_max, window_seconds=cfg.rate_limit_window_seconds)
        self._leases: collections.Counter[int] = collections.Counter()
        self._retiring: set[asyncio.Task[None]] = set()

    async def close(self) -> None:
        """Shut down clients and background resources."""
        for task in list(self._retiring):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self.upstream.close()

    async def reload(self, new_cfg: GatewayConfig) -> None:
        """Apply a new configuration, keeping sessions and rate windows.

        The previous upstream client is closed once no turn uses it anymore.
        """
        old_upstream = self.upstream
        self.cfg = new_cfg
        self.upstream = UpstreamClient(new_cfg, self.registry, transport=self._transport)
        self.sessions.max_messages = new_cfg.max_session_messages
        self.sessions.ttl_seconds = new_cfg.session_ttl_seconds
        self.limiter.configure(max_requests=new_cfg.rate_limit_max, window_seconds=new_cfg.rate_limit_window_seconds)

        task = asyncio.create_task(self._retire_upstream(old_upstream))
        self._retiring.add(task)
        task.add_done_callback(self._retiring.discard)

    async def _retire_upstream(self, upstream: UpstreamClient) -> None:
        while self._leases[id(upstream)] > 0:
            await asyncio.sleep(0.5)
        self._leases.pop(id(upstream), None)
        await upstream.close()

    @contextlib.asynccontextmanager
    async def _lease_upstream(self) -> AsyncIterator[UpstreamClient]:
        """Pin the current upstream client for the duration of one turn."""
        upstream = self.upstream
        self._leases[id(upstream)] += 1
        try:
            yield upstream
        finally:
            self._leases[id(upstream)] -= 1

    def health(self) -> dict[str, Any]:
        """Liveness payload."""
        return {"ok": True}

    def admit(self, key: str) -> None:
        """Count one request for `key`; raises RateLimitError when over the limit."""
        decision = self.limiter.admit(key)
        if not decision.allowed:
            retry_after = int(decision.retry_after_seconds or 1)
            LOG.warning("rate limit exceeded retry_after=%ss", retry_after, extra={"client": key})
            raise RateLimitError(retry_after)

    def housekeeping(self) -> None:
        """Reap expired sessions and stale rate-limit windows."""
        self.sessions.sweep()
        self.limiter.prune()

    def clear_memory(self, session_id: Any) -> dict[str, Any]:
        """Delete a session outright; unknown ids are fine."""
        if self.sessions.delete(session_id):
            LOG.info("session memory cleared", extra={"session_id": session_id})
        return {"ok": True}

    def _begin_turn(self, request: ChatRequest) -> contextlib.AbstractAsyncContextManager[Session]:
        """Sweep, then return the serialized turn context for the request's session."""
        self.housekeeping()
        return self.sessions.turn(request.session_id)

    async def chat(self, request: ChatRequest) -> dict[str, Any]:
        """Run one buffered chat turn and return the answer payload."""
        deadline = _TurnDeadline(self.cfg.turn_deadline_seconds)
        async with self._begin_turn(request) as session, self._lease_upstream() as upstream:
            self.sessions.append(session, Turn.user(request.message))
            loop = ToolResolutionLoop(
                upstream=upstream,
                registry=self.registry,
                store=self.sessions,
                max_iterations=self.cfg.max_tool_loops,
            )
            resolution = await deadline.run(loop.run(session, model=request.model))
            self.sessions.append(session, Turn.assistant(resolution.content))

        LOG.info(
            "chat turn answered model=%s iterations=%s tool_calls=%s",
            resolution.model,
            resolution.iterations,
            resolution.tool_calls_executed,
            extra={"session_id": session.id},
        )
        return {
            "sessionId": session.id if session.id is not None else request.session_id,
            "message": resolution.content,
            "model": resolution.model,
        }

    async def stream_chat(self, request: ChatRequest) -> AsyncGenerator[bytes, None]:
        """Run one streaming chat turn as downstream SSE events.

        Any failure after the stream started ends it with one error event.
        """
        deadline = _TurnDeadline(self.cfg.turn_deadline_seconds)
        log_extra = {"session_id": request.session_id}
        try:
            async with self._begin_turn(request) as session, self._lease_upstream() as upstream:
                self.sessions.append(session, Turn.user(request.message))
                loop = ToolResolutionLoop(
                    upstream=upstream,
                    registry=self.registry,
                    store=self.sessions,
                    max_iterations=self.cfg.max_tool_loops,
                )
                resolution = await deadline.run(loop.run(session, model=request.model))
                yield model_event(resolution.model)

                relay = StreamRelay(upstream=upstream, store=self.sessions, max_answer_chars=self.cfg.max_answer_chars)
                events = relay.relay(session, model=request.model)
                try:
                    while True:
                        try:
                            event = await deadline.run(events.__anext__())
                        except StopAsyncIteration:
                            break
                        yield event
                finally:
                    await events.aclose()
        except GatewayError as exc:
            LOG.warning("stream chat failed error=%s", exc, extra=log_extra)
            yield error_event(exc.public_message())
        except Exception:
            LOG.exception("stream chat failed unexpectedly", extra=log_extra)
            yield error_event(GENERIC_UPSTREAM_MESSAGE)
