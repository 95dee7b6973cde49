"""Local tool descriptors and dispatch registry.

The registry maps tool names to executors and exposes the descriptor set in
the OpenAI `tools` shape. Execution is synchronous and always yields text.
"""

from __future__ import annotations

import copy
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Protocol

from .json_helpers import to_bounded_json

LOG = logging.getLogger(__name__)

CONSTELLATIONS = (
    "Orion: Hunter figure with bright belt stars.",
    "Lyra: Harp-shaped constellation anchored by Vega.",
    "Cygnus: Swan gliding through the Milky Way.",
    "Cassiopeia: W-shaped constellation named for a queen.",
    "Scorpius: Scorpion with the red star Antares.",
)


def _object_schema(properties: Mapping[str, Any] | None = None, required: Iterable[str] = ()) -> dict[str, Any]:
    """Build a closed JSON-schema object contract."""
    schema: dict[str, Any] = {
        "type": "object",
        "properties": dict(properties or {}),
        "additionalProperties": False,
    }
    required_names = list(required)
    if required_names:
        schema["required"] = required_names
    return schema


@dataclass(frozen=True)
class ToolDescriptor:
    """Name, description and parameter contract of one tool."""

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=_object_schema)

    def to_openai(self) -> dict[str, Any]:
        """Render the descriptor as an OpenAI function tool definition."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": copy.deepcopy(dict(self.parameters)),
            },
        }


class Tool(Protocol):
    descriptor: ToolDescriptor

    def execute(self, args: dict[str, Any]) -> str: ...


class ServerTimeTool:
    descriptor = ToolDescriptor(
        name="get_server_time",
        description="Return the current server time in ISO format.",
    )

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def execute(self, args: dict[str, Any]) -> str:
        return self._clock().isoformat().replace("+00:00", "Z")


class RandomConstellationTool:
    descriptor = ToolDescriptor(
        name="get_random_constellation",
        description="Return a random constellation name with a short description.",
    )

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    def execute(self, args: dict[str, Any]) -> str:
        return self._rng.choice(CONSTELLATIONS)


class PlanMissionTool:
    descriptor = ToolDescriptor(
        name="plan_mission",
        description="Generate a mission outline from a goal.",
        parameters=_object_schema({"goal": {"type": "string"}}, required=["goal"]),
    )

    def execute(self, args: dict[str, Any]) -> str:
        goal = str(args.get("goal") or "").strip() or "an unspecified goal"
        steps = [
            "Define objectives.",
            "Assemble sensors.",
            "Run calibration.",
            "Execute observation.",
            "Synthesize insights.",
        ]
        lines = [f'Mission outline for "{goal}":']
        lines.extend(f"{number}. {step}" for number, step in enumerate(steps, start=1))
        return "\n".join(lines)


def default_tools() -> list[Tool]:
    """Return the built-in tool set."""
    return [ServerTimeTool(), RandomConstellationTool(), PlanMissionTool()]


class ToolRegistry:
    """Name-to-executor mapping for locally resolvable functions."""

    def __init__(self, tools: Iterable[Tool] | None = None) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in default_tools() if tools is None else tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        """Add one tool; names must be unique."""
        name = tool.descriptor.name
        if name in self._tools:
            raise ValueError(f"duplicate tool name: {name}")
        self._tools[name] = tool

    def names(self) -> list[str]:
        return list(self._tools)

    def descriptors(self) -> list[ToolDescriptor]:
        return [tool.descriptor for tool in self._tools.values()]

    def openai_tools(self) -> list[dict[str, Any]]:
        """Return OpenAI tool definitions for all registered tools."""
        return [descriptor.to_openai() for descriptor in self.descriptors()]

    def execute(self, name: str, args: dict[str, Any]) -> str:
        """Run one tool by name.

        Unknown names and executor failures produce a descriptive string so
        the conversation always has a result to feed back to the model.
        """
        tool = self._tools.get(name)
        if tool is None:
            LOG.warning("unknown tool requested tool=%s", name)
            return f'Tool "{name}" not available.'

        LOG.info("dispatching local tool call tool=%s", name)
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("local tool call args tool=%s args=%s", name, to_bounded_json(args))

        try:
            result = tool.execute(args)
        except Exception as exc:
            LOG.warning("local tool call failed tool=%s error=%s", name, exc, exc_info=True)
            return f'Tool "{name}" failed: {exc}'

        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("local tool call result tool=%s result=%s", name, to_bounded_json(result))
        return str(result)
