"""Minimal OpenAI-compatible upstream for local gateway runs.

Start with `uvicorn examples.mock_upstream_server:app --port 10000` and point
`upstream_base_url` at it.
"""

from __future__ import annotations

import json
import time
import uuid
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

app = FastAPI(title="mock-upstream")

_TOOL_KEYWORDS = {
    "time": "get_server_time",
    "constellation": "get_random_constellation",
    "mission": "plan_mission",
}


def _requested_tool(text: str, tools: list[dict[str, Any]]) -> str | None:
    offered = {tool.get("function", {}).get("name") for tool in tools}
    lowered = text.lower()
    for keyword, name in _TOOL_KEYWORDS.items():
        if keyword in lowered and name in offered:
            return name
    return None


@app.post("/v1/chat/completions")
async def chat_completions(request: Request):
    payload = await request.json()
    messages: list[dict[str, Any]] = payload.get("messages") or []
    tools: list[dict[str, Any]] = payload.get("tools") or []
    model = payload.get("model") or "demo-model"
    stream = bool(payload.get("stream"))

    last_user_index = max((i for i, m in enumerate(messages) if m.get("role") == "user"), default=-1)
    last_user = messages[last_user_index] if last_user_index >= 0 else {}
    tool_results = [m for m in messages[last_user_index + 1 :] if m.get("role") == "tool"]
    tool_name = _requested_tool(last_user.get("content") or "", tools)

    if tool_name and not tool_results:
        arguments = {"goal": last_user.get("content")} if tool_name == "plan_mission" else {}
        msg: dict[str, Any] = {
            "role": "assistant",
            "content": None,
            "tool_calls": [
                {
                    "id": f"call_{uuid.uuid4().hex}",
                    "type": "function",
                    "function": {"name": tool_name, "arguments": json.dumps(arguments)},
                }
            ],
        }
    elif tool_results:
        msg = {"role": "assistant", "content": f"Tool says: {tool_results[-1].get('content')}"}
    else:
        msg = {"role": "assistant", "content": "Signal received. No tools needed."}

    base = {
        "id": f"chatcmpl-{uuid.uuid4().hex}",
        "object": "chat.completion",
        "created": int(datetime.now(timezone.utc).timestamp()),
        "model": model,
        "choices": [{"index": 0, "message": msg, "finish_reason": "stop"}],
    }

    if not stream:
        return JSONResponse(base)

    async def gen():
        content = msg.get("content") or ""
        for word in content.split(" "):
            chunk = {
                "id": base["id"],
                "object": "chat.completion.chunk",
                "created": int(time.time()),
                "model": model,
                "choices": [{"index": 0, "delta": {"content": word + " "}, "finish_reason": None}],
            }
            yield f"data: {json.dumps(chunk)}\n\n"
        yield "data: [DONE]\n\n"

    return StreamingResponse(gen(), media_type="text/event-stream")
