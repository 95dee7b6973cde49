"""Bounded tool-call resolution loop.

The loop drives buffered completion calls until the model answers with
content. It is a small state machine:

    CALLING -> TOOLS_PENDING -> CALLING ... -> ANSWERED
                            \\-> EXHAUSTED (iteration cap reached)

At most `max_iterations` upstream calls are made per run, so a model that
keeps requesting tools cannot loop forever.
"""

from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from .errors import ToolChainUnresolvedError
from .json_helpers import parse_tool_arguments
from .sessions import Session, SessionStore, Turn
from .tool_registry import ToolRegistry
from .upstream import UpstreamClient, UpstreamResponse

LOG = logging.getLogger(__name__)


class ResolutionState(enum.Enum):
    CALLING = "calling"
    TOOLS_PENDING = "tools_pending"
    ANSWERED = "answered"
    EXHAUSTED = "exhausted"


@dataclass
class Resolution:
    """Outcome of one resolution run."""

    state: ResolutionState
    content: str
    model: str
    iterations: int
    tool_calls_executed: int = 0


def stable_tool_calls(tool_calls: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Normalize raw tool calls, filling in missing ids.

    Names and raw argument text are kept as the model sent them.
    """
    stable: list[dict[str, Any]] = []
    for tc in tool_calls:
        fn = tc.get("function") or {}
        raw_args = fn.get("arguments")
        stable.append(
            {
                "id": str(tc.get("id") or f"call_{uuid.uuid4().hex}"),
                "type": "function",
                "function": {
                    "name": str(fn.get("name") or ""),
                    "arguments": raw_args if isinstance(raw_args, str) else "{}",
                },
            }
        )
    return stable


class ToolResolutionLoop:
    """Resolve tool calls against the local registry until the model answers."""

    def __init__(
        self,
        *,
        upstream: UpstreamClient,
        registry: ToolRegistry,
        store: SessionStore,
        max_iterations: int = 3,
    ) -> None:
        self.upstream = upstream
        self.registry = registry
        self.store = store
        self.max_iterations = max_iterations

    def _apply_tool_calls(self, session: Session, response: UpstreamResponse) -> int:
        """Record the assistant tool-call turn, run each call, record results."""
        tool_calls = stable_tool_calls(response.tool_calls)
        self.store.append(session, Turn.assistant(response.content, tool_calls))
        for call in tool_calls:
            fn = call["function"]
            args = parse_tool_arguments(fn["arguments"])
            result = self.registry.execute(fn["name"], args)
            self.store.append(session, Turn.tool(call["id"], result))
        return len(tool_calls)

    async def run(self, session: Session, *, model: str) -> Resolution:
        """Drive the conversation to a content answer.

        Raises ToolChainUnresolvedError once the iteration cap is spent while
        tools are still pending.
        """
        state = ResolutionState.CALLING
        iterations = 0
        executed = 0
        served_model = model

        while True:
            if state is ResolutionState.CALLING:
                iterations += 1
                response = await self.upstream.chat_completion(session.history(), model=model, tool_choice="auto")
                served_model = response.model or served_model
                if not response.has_tool_calls:
                    LOG.debug(
                        "tool resolution answered session_id=%s iterations=%s",
                        session.id,
                        iterations,
                    )
                    return Resolution(
                        state=ResolutionState.ANSWERED,
                        content=response.content,
                        model=served_model,
                        iterations=iterations,
                        tool_calls_executed=executed,
                    )
                executed += self._apply_tool_calls(session, response)
                state = ResolutionState.TOOLS_PENDING
            elif state is ResolutionState.TOOLS_PENDING:
                state = ResolutionState.CALLING if iterations < self.max_iterations else ResolutionState.EXHAUSTED
            else:
                LOG.warning(
                    "tool chain unresolved session_id=%s iterations=%s tool_calls=%s",
                    session.id,
                    iterations,
                    executed,
                )
                raise ToolChainUnresolvedError(f"Tool chain did not resolve after {iterations} upstream calls.")
