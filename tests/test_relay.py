import asyncio
import json

import pytest

from andromeda_gateway.errors import UpstreamTransportError
from andromeda_gateway.relay import StreamRelay
from andromeda_gateway.sessions import SessionStore, Turn
from andromeda_gateway.sse_frames import DONE_EVENT
from andromeda_gateway.tool_registry import ToolRegistry
from andromeda_gateway.upstream import UpstreamClient

from upstream_fakes import ScriptedUpstream, make_cfg, parse_downstream, sse_body, split_every


def _setup(chunks: list[bytes], max_answer_chars: int = 100_000):
    upstream = ScriptedUpstream(streams=[chunks])
    store = SessionStore(max_messages=20, ttl_seconds=60)
    client = UpstreamClient(make_cfg(), ToolRegistry(), transport=upstream.transport())
    session = store.get_or_create("session-0001")
    store.append(session, Turn.user("tell me about Andromeda"))
    relay = StreamRelay(upstream=client, store=store, max_answer_chars=max_answer_chars)
    return relay, session, upstream


async def _collect(relay: StreamRelay, session) -> list[bytes]:
    return [event async for event in relay.relay(session, model="gpt-4o-mini")]


def _deltas(events: list[bytes]) -> str:
    parsed = parse_downstream(b"".join(events))
    return "".join(event["delta"] for event in parsed if isinstance(event, dict) and "delta" in event)


def test_relayed_deltas_equal_stored_answer() -> None:
    parts = ["The ", "Andromeda galaxy ", "is our neighbour ✨."]
    relay, session, upstream = _setup(split_every(sse_body(parts), 7))

    events = asyncio.run(_collect(relay, session))

    assert events[-1] == DONE_EVENT
    assert _deltas(events) == "".join(parts)
    assert session.messages[-1].role == "assistant"
    assert session.messages[-1].content == "".join(parts)
    assert relay.completed is True
    assert upstream.stream_requests[0]["messages"][-1] == {"role": "user", "content": "tell me about Andromeda"}


def test_malformed_events_are_skipped() -> None:
    body = sse_body(["one ", "two"], extra_lines=["data: {not json\n\n", ": comment\n\n"])
    relay, session, _ = _setup([body])

    events = asyncio.run(_collect(relay, session))

    assert _deltas(events) == "one two"
    assert relay.skipped_events == 1
    assert session.messages[-1].content == "one two"


def test_stream_ending_without_done_still_completes() -> None:
    body = sse_body(["partial ", "answer"], done=False)
    tail = b'data: {"choices":[{"index":0,"delta":{"content":"!"}}]}'
    relay, session, _ = _setup([body, tail])

    events = asyncio.run(_collect(relay, session))

    assert events[-1] == DONE_EVENT
    assert session.messages[-1].content == "partial answer!"


def test_events_after_done_are_ignored() -> None:
    body = sse_body(["kept"]) + b'data: {"choices":[{"index":0,"delta":{"content":"dropped"}}]}\n\n'
    relay, session, _ = _setup([body])

    events = asyncio.run(_collect(relay, session))

    assert _deltas(events) == "kept"
    assert parse_downstream(b"".join(events))[-1] == "[DONE]"


def test_answer_cap_aborts_without_storing() -> None:
    relay, session, _ = _setup([sse_body(["abc", "def"])], max_answer_chars=5)

    async def run() -> list[bytes]:
        received: list[bytes] = []
        with pytest.raises(UpstreamTransportError, match="exceeded 5 characters"):
            async for event in relay.relay(session, model="gpt-4o-mini"):
                received.append(event)
        return received

    received = asyncio.run(run())
    assert [json.loads(event[6:]) for event in received] == [{"delta": "abc"}]
    assert [turn.role for turn in session.messages] == ["user"]


def test_closing_early_leaves_session_without_answer() -> None:
    relay, session, _ = _setup(split_every(sse_body(["first ", "second ", "third"]), 16))

    async def run() -> bytes:
        events = relay.relay(session, model="gpt-4o-mini")
        first = await events.__anext__()
        await events.aclose()
        return first

    first = asyncio.run(run())
    assert first.startswith(b"data: ")
    assert relay.completed is False
    assert [turn.role for turn in session.messages] == ["user"]


def test_unframed_garbage_fails_instead_of_completing() -> None:
    garbage = [b"x" * 65_536 for _ in range(64)]
    relay, session, _ = _setup(garbage)

    async def run() -> list[bytes]:
        received: list[bytes] = []
        with pytest.raises(UpstreamTransportError, match="Upstream event exceeded"):
            async for event in relay.relay(session, model="gpt-4o-mini"):
                received.append(event)
        return received

    assert asyncio.run(run()) == []
    assert relay.completed is False
    assert [turn.role for turn in session.messages] == ["user"]
