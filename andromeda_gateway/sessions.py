"""In-memory conversation sessions.

The store is the only owner of Session objects. Sessions are bounded FIFO
windows of turns and expire after a period without access.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable

LOG = logging.getLogger(__name__)

SESSION_ID_MIN_LENGTH = 8
SESSION_ID_MAX_LENGTH = 64

ROLES = frozenset({"system", "user", "assistant", "tool"})


@dataclass
class Turn:
    """One message in a conversation."""

    role: str
    content: str = ""
    tool_calls: list[dict[str, Any]] | None = None
    tool_call_id: str | None = None

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"unknown turn role: {self.role!r}")

    @classmethod
    def user(cls, content: str) -> "Turn":
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str, tool_calls: list[dict[str, Any]] | None = None) -> "Turn":
        return cls(role="assistant", content=content or "", tool_calls=tool_calls or None)

    @classmethod
    def tool(cls, tool_call_id: str, content: str) -> "Turn":
        return cls(role="tool", content=content, tool_call_id=tool_call_id)

    def to_message(self) -> dict[str, Any]:
        """Return an OpenAI-compatible message dict."""
        message: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = self.tool_calls
        if self.tool_call_id:
            message["tool_call_id"] = self.tool_call_id
        return message


@dataclass
class Session:
    """Bounded conversation history for one client-supplied id.

    `id` is None for anonymous sessions, which are never stored.
    """

    id: str | None
    messages: list[Turn] = field(default_factory=list)
    updated_at: float = 0.0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    @property
    def is_anonymous(self) -> bool:
        return self.id is None

    def history(self) -> list[dict[str, Any]]:
        """Render all turns as upstream message dicts."""
        return [turn.to_message() for turn in self.messages]


def is_valid_session_id(session_id: Any) -> bool:
    """Return true when a client id may be used as a persistent session key."""
    return isinstance(session_id, str) and SESSION_ID_MIN_LENGTH <= len(session_id) <= SESSION_ID_MAX_LENGTH


def truncate_turns(turns: list[Turn], max_turns: int) -> list[Turn]:
    """Keep the most recent `max_turns` turns.

    Tool turns at the head of the window whose assistant tool-call turn fell
    out of the window are dropped as well.
    """
    if len(turns) <= max_turns:
        return turns
    window = turns[-max_turns:]
    start = 0
    while start < len(window) and window[start].role == "tool":
        start += 1
    return window[start:]


@dataclass
class _TurnGate:
    """Per-id turn lock plus the number of turns holding or awaiting it."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class SessionStore:
    """Mapping from session id to Session with TTL based expiry.

    Turns for one id are serialized through a gate that outlives the Session
    object, so deleting a session while a turn runs or waits does not let a
    later turn for the same id start alongside it.
    """

    def __init__(
        self,
        *,
        max_messages: int,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_messages = max_messages
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._gates: dict[str, _TurnGate] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def _gate(self, session_id: str) -> _TurnGate:
        gate = self._gates.get(session_id)
        if gate is None:
            gate = self._gates[session_id] = _TurnGate()
        return gate

    def _release_gate(self, session_id: str) -> None:
        gate = self._gates.get(session_id)
        if gate is not None and gate.users == 0 and session_id not in self._sessions:
            del self._gates[session_id]

    def _busy(self, session_id: str, session: Session) -> bool:
        gate = self._gates.get(session_id)
        return session.lock.locked() or (gate is not None and gate.users > 0)

    def get(self, session_id: Any) -> Session | None:
        """Return a stored session and refresh its access time."""
        if not is_valid_session_id(session_id):
            return None
        session = self._sessions.get(session_id)
        if session is not None:
            session.updated_at = self._clock()
        return session

    def get_or_create(self, session_id: Any) -> Session:
        """Return the stored session for `session_id`, creating it lazily.

        Invalid ids yield a fresh anonymous session that is never stored.
        """
        now = self._clock()
        if not is_valid_session_id(session_id):
            return Session(id=None, updated_at=now)
        session = self._sessions.get(session_id)
        if session is None:
            session = Session(id=session_id, updated_at=now, lock=self._gate(session_id).lock)
            self._sessions[session_id] = session
            LOG.debug("session created session_id=%s", session_id)
        else:
            session.updated_at = now
        return session

    @contextlib.asynccontextmanager
    async def turn(self, session_id: Any) -> AsyncIterator[Session]:
        """Hold the turn lock for `session_id` and yield its current session.

        The session is looked up after the lock is acquired, so a turn that
        waited across a delete works on the recreated session.
        """
        if not is_valid_session_id(session_id):
            session = self.get_or_create(session_id)
            async with session.lock:
                yield session
            return

        gate = self._gate(session_id)
        gate.users += 1
        try:
            async with gate.lock:
                yield self.get_or_create(session_id)
        finally:
            gate.users -= 1
            self._release_gate(session_id)

    def append(self, session: Session, turn: Turn) -> None:
        """Append one turn and enforce the history bound."""
        session.messages.append(turn)
        session.messages = truncate_turns(session.messages, self.max_messages)
        session.updated_at = self._clock()

    def delete(self, session_id: Any) -> bool:
        """Remove a session; unknown ids are a no-op."""
        if not isinstance(session_id, str):
            return False
        removed = self._sessions.pop(session_id, None) is not None
        self._release_gate(session_id)
        if removed:
            LOG.debug("session deleted session_id=%s", session_id)
        return removed

    def sweep(self, now: float | None = None) -> int:
        """Remove every expired session and return how many were removed.

        Sessions with a turn in progress or waiting are left alone.
        """
        current = self._clock() if now is None else now
        expired = [
            sid
            for sid, session in self._sessions.items()
            if current - session.updated_at > self.ttl_seconds and not self._busy(sid, session)
        ]
        for sid in expired:
            del self._sessions[sid]
            self._release_gate(sid)
        if expired:
            LOG.info("expired sessions removed count=%s remaining=%s", len(expired), len(self._sessions))
        return len(expired)
