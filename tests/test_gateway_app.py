import asyncio
import json
import random
from datetime import datetime, timezone

import httpx
import pytest
from fastapi.testclient import TestClient

from andromeda_gateway.app import create_app
from andromeda_gateway.errors import GENERIC_UPSTREAM_MESSAGE, TOOL_CHAIN_MESSAGE, UpstreamTransportError
from andromeda_gateway.gateway_service import ChatRequest, GatewayService, client_key
from andromeda_gateway.tool_registry import PlanMissionTool, RandomConstellationTool, ServerTimeTool, ToolRegistry

from upstream_fakes import ScriptedUpstream, completion, make_cfg, parse_downstream, sse_body, split_every, tool_call

SESSION = "session-0001"


def _registry() -> ToolRegistry:
    return ToolRegistry(
        [
            ServerTimeTool(clock=lambda: datetime(2024, 1, 1, tzinfo=timezone.utc)),
            RandomConstellationTool(rng=random.Random(3)),
            PlanMissionTool(),
        ]
    )


def _client(upstream, **overrides: object) -> TestClient:
    transport = upstream.transport() if isinstance(upstream, ScriptedUpstream) else httpx.MockTransport(upstream)
    app = create_app(make_cfg(**overrides), registry=_registry(), transport=transport)
    return TestClient(app)


def test_health() -> None:
    with _client(ScriptedUpstream()) as client:
        response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_streamed_turn_with_tool_call_end_to_end() -> None:
    upstream = ScriptedUpstream(
        buffered=[
            completion(tool_calls=[tool_call("call_1", "get_server_time")]),
            completion("It is midnight UTC."),
        ],
        streams=[split_every(sse_body(["It is ", "midnight ", "UTC."]), 9)],
    )
    with _client(upstream) as client:
        response = client.post("/api/chat/stream", json={"sessionId": SESSION, "message": "What time is it?"})
        session = client.app.state.service.sessions.get(SESSION)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    events = parse_downstream(response.content)
    assert events[0] == {"model": "gpt-4o-mini-2024"}
    assert events[-1] == "[DONE]"
    assert "".join(event["delta"] for event in events[1:-1]) == "It is midnight UTC."

    assert [turn.role for turn in session.messages] == ["user", "assistant", "tool", "assistant"]
    assert session.messages[1].tool_calls[0]["function"]["name"] == "get_server_time"
    assert session.messages[2].content == "2024-01-01T00:00:00Z"
    assert session.messages[3].content == "It is midnight UTC."

    streamed = upstream.stream_requests[0]
    assert "tools" not in streamed
    assert [message["role"] for message in streamed["messages"]] == ["system", "user", "assistant", "tool"]


def test_buffered_turn_returns_answer_and_keeps_history() -> None:
    upstream = ScriptedUpstream(buffered=[completion("Hello, traveller."), completion("Still here.")])
    with _client(upstream) as client:
        first = client.post("/api/chat", json={"sessionId": SESSION, "message": "hi"})
        second = client.post("/api/chat", json={"sessionId": SESSION, "message": "again"})

    assert first.status_code == 200
    assert first.json() == {"sessionId": SESSION, "message": "Hello, traveller.", "model": "gpt-4o-mini-2024"}
    assert second.json()["message"] == "Still here."
    history = upstream.buffered_requests[1]["messages"]
    assert [message["content"] for message in history[1:]] == ["hi", "Hello, traveller.", "again"]


def test_requested_model_is_forwarded_when_allowed() -> None:
    upstream = ScriptedUpstream(buffered=[completion("ok", model="gpt-4o")])
    with _client(upstream, allowed_models=["gpt-4o"]) as client:
        response = client.post("/api/chat", json={"message": "hi", "model": "gpt-4o"})

    assert response.status_code == 200
    assert upstream.requests[0]["model"] == "gpt-4o"


def test_rate_limit_rejects_request_over_window_limit() -> None:
    upstream = ScriptedUpstream(buffered=[completion("ok")], repeat_last=True)
    with _client(upstream) as client:
        for _ in range(30):
            assert client.post("/api/chat", json={"message": "hi"}).status_code == 200
        rejected = client.post("/api/chat", json={"message": "hi"})

    assert rejected.status_code == 429
    assert int(rejected.headers["retry-after"]) >= 1
    assert "error" in rejected.json()
    assert len(upstream.requests) == 30


@pytest.mark.parametrize(
    "kwargs",
    [
        {"json": {"message": ""}},
        {"json": {"message": "   "}},
        {"json": {"message": 42}},
        {"json": {"message": "x" * 11}},
        {"json": {"message": "hi", "model": "gpt-evil"}},
        {"json": ["not", "an", "object"]},
        {"content": b"{not json", "headers": {"content-type": "application/json"}},
    ],
)
def test_invalid_input_is_rejected_before_upstream(kwargs) -> None:
    upstream = ScriptedUpstream()
    with _client(upstream, max_message_chars=10) as client:
        response = client.post("/api/chat", **kwargs)
        streamed = client.post("/api/chat/stream", **kwargs)

    assert response.status_code == 400
    assert streamed.status_code == 400
    assert isinstance(response.json()["error"], str)
    assert upstream.requests == []


def test_rejected_input_does_not_count_against_rate_limit() -> None:
    upstream = ScriptedUpstream(buffered=[completion("ok")])
    with _client(upstream, rate_limit_max=1) as client:
        for _ in range(3):
            assert client.post("/api/chat", json={"message": ""}).status_code == 400
        assert client.post("/api/chat", json={"message": "hi"}).status_code == 200


def test_memory_clear_is_idempotent() -> None:
    upstream = ScriptedUpstream(buffered=[completion("ok")])
    with _client(upstream) as client:
        client.post("/api/chat", json={"sessionId": SESSION, "message": "hi"})
        service = client.app.state.service
        assert SESSION in service.sessions

        first = client.post("/api/memory/clear", json={"sessionId": SESSION})
        second = client.post("/api/memory/clear", json={"sessionId": SESSION})
        empty = client.post("/api/memory/clear")

        assert SESSION not in service.sessions
    assert first.json() == second.json() == empty.json() == {"ok": True}


def test_anonymous_session_is_not_stored() -> None:
    upstream = ScriptedUpstream(buffered=[completion("ok")])
    with _client(upstream) as client:
        response = client.post("/api/chat", json={"sessionId": "short", "message": "hi"})
        assert len(client.app.state.service.sessions) == 0

    assert response.json()["sessionId"] == "short"


def test_stream_upstream_failure_ends_with_single_generic_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if json.loads(request.content).get("stream"):
            return httpx.Response(500, text="secret internal detail")
        return httpx.Response(200, json=completion("unused"))

    with _client(handler) as client:
        response = client.post("/api/chat/stream", json={"sessionId": SESSION, "message": "hi"})
        session = client.app.state.service.sessions.get(SESSION)

    events = parse_downstream(response.content)
    assert response.status_code == 200
    assert events == [{"model": "gpt-4o-mini-2024"}, {"error": GENERIC_UPSTREAM_MESSAGE}]
    assert b"secret" not in response.content
    assert [turn.role for turn in session.messages] == ["user"]


def test_buffered_upstream_failure_is_generic_500() -> None:
    with _client(lambda request: httpx.Response(503, text="secret internal detail")) as client:
        response = client.post("/api/chat", json={"message": "hi"})

    assert response.status_code == 500
    assert response.json() == {"error": GENERIC_UPSTREAM_MESSAGE}


def test_unresolved_tool_chain_reports_tool_message() -> None:
    upstream = ScriptedUpstream(
        buffered=[completion(tool_calls=[tool_call("call_1", "get_random_constellation")])],
        repeat_last=True,
    )
    with _client(upstream) as client:
        streamed = client.post("/api/chat/stream", json={"message": "loop forever"})
        buffered = client.post("/api/chat", json={"message": "loop forever"})

    assert parse_downstream(streamed.content) == [{"error": TOOL_CHAIN_MESSAGE}]
    assert buffered.status_code == 500
    assert buffered.json() == {"error": TOOL_CHAIN_MESSAGE}
    assert len(upstream.requests) == 6


def test_client_key_ignores_forwarded_header_unless_trusted() -> None:
    assert client_key("10.0.0.1", "1.2.3.4", trust_forwarded_for=False) == "10.0.0.1"
    assert client_key("10.0.0.1", "1.2.3.4, 10.0.0.9", trust_forwarded_for=True) == "1.2.3.4"
    assert client_key("10.0.0.1", " ", trust_forwarded_for=True) == "10.0.0.1"
    assert client_key(None, None, trust_forwarded_for=False) == "unknown"


def _tracking_handler(delay: float):
    state = {"active": 0, "max_active": 0}

    async def handler(request: httpx.Request) -> httpx.Response:
        state["active"] += 1
        state["max_active"] = max(state["max_active"], state["active"])
        await asyncio.sleep(delay)
        state["active"] -= 1
        return httpx.Response(200, json=completion("ok"))

    return handler, state


def test_turns_for_one_session_are_serialized() -> None:
    handler, state = _tracking_handler(0.05)

    async def run() -> None:
        service = GatewayService(make_cfg(), transport=httpx.MockTransport(handler))
        try:
            await asyncio.gather(
                *(service.chat(ChatRequest(session_id=SESSION, message=f"m{i}", model="gpt-4o-mini")) for i in range(3))
            )
            session = service.sessions.get(SESSION)
            assert [turn.role for turn in session.messages] == ["user", "assistant"] * 3
        finally:
            await service.close()

    asyncio.run(run())
    assert state["max_active"] == 1


def test_turns_for_different_sessions_run_concurrently() -> None:
    handler, state = _tracking_handler(0.05)

    async def run() -> None:
        service = GatewayService(make_cfg(), transport=httpx.MockTransport(handler))
        try:
            await asyncio.gather(
                service.chat(ChatRequest(session_id="session-aaaa", message="a", model="gpt-4o-mini")),
                service.chat(ChatRequest(session_id="session-bbbb", message="b", model="gpt-4o-mini")),
            )
        finally:
            await service.close()

    asyncio.run(run())
    assert state["max_active"] == 2


def test_turn_deadline_bounds_whole_turn() -> None:
    handler, _ = _tracking_handler(1.0)

    async def run() -> None:
        service = GatewayService(make_cfg(turn_deadline_seconds=0.05), transport=httpx.MockTransport(handler))
        try:
            with pytest.raises(UpstreamTransportError, match="deadline"):
                await service.chat(ChatRequest(session_id=SESSION, message="hi", model="gpt-4o-mini"))
        finally:
            await service.close()

    asyncio.run(run())


def test_reload_applies_limits_and_retires_old_client() -> None:
    async def run() -> None:
        service = GatewayService(make_cfg(), transport=ScriptedUpstream().transport())
        old = service.upstream
        retiring_before = set(service._retiring)
        await service.reload(make_cfg(rate_limit_max=1, max_session_messages=4))
        pending = [task for task in service._retiring if task not in retiring_before]
        await asyncio.wait_for(asyncio.gather(*pending), timeout=1.0)

        assert service.upstream is not old
        assert old._client.is_closed
        assert service.sessions.max_messages == 4
        assert service.limiter.max_requests == 1
        await service.close()

    asyncio.run(run())


def test_memory_clear_during_turn_keeps_turns_serialized() -> None:
    state = {"active": 0, "max_active": 0}

    async def handler(request: httpx.Request) -> httpx.Response:
        state["active"] += 1
        state["max_active"] = max(state["max_active"], state["active"])
        await asyncio.sleep(0.05)
        state["active"] -= 1
        last_user = json.loads(request.content)["messages"][-1]["content"]
        return httpx.Response(200, json=completion(f"re:{last_user}"))

    async def run() -> list[str]:
        service = GatewayService(make_cfg(), transport=httpx.MockTransport(handler))

        def turn(text: str) -> "asyncio.Task[dict]":
            return asyncio.create_task(service.chat(ChatRequest(session_id=SESSION, message=text, model="gpt-4o-mini")))

        try:
            first = turn("a")
            await asyncio.sleep(0.01)
            second = turn("b")
            await asyncio.sleep(0)
            assert service.clear_memory(SESSION) == {"ok": True}
            third = turn("c")
            results = await asyncio.gather(first, second, third)
            assert [result["message"] for result in results] == ["re:a", "re:b", "re:c"]
            return [turn.content for turn in service.sessions.get(SESSION).messages]
        finally:
            await service.close()

    history = asyncio.run(run())
    assert state["max_active"] == 1
    assert history == ["b", "re:b", "c", "re:c"]
