"""
Building blocks for conversational agents.

An agent is immutable configuration: who it is, what it is told, which tools it
may call and which other agents it may hand a call over to. The only runtime
state that refers to an agent is a CallSession's ``active_agent`` pointer, which
always holds an ``AgentId``.
"""

import inspect
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple, Union

from clinconnect.config.constants import LOGGER_NAME

logger = logging.getLogger(LOGGER_NAME)


class AgentId(str, Enum):
    """Closed set of agent identities."""

    INTAKE = "patientIntake"
    SEARCH = "trialSearch"
    ENROLLMENT = "enrollment"
    SUPPORT = "support"
    CHAT = "chatAgent"


@dataclass
class ToolContext:
    """What a tool handler may see about the call it runs for."""

    call_id: str
    context: Dict[str, Any]
    trials: Any = None


@dataclass
class ToolResult:
    """
    Outcome of one tool invocation.

    Attributes:
        summary: Human-readable sentence that can be spoken as-is
        data: Structured payload handed back to the model
        context_update: Facts to merge into the call's accumulated context
        handoff: Agent the tool says should take over, if any
        success: False when the handler failed
    """

    summary: str
    data: Dict[str, Any] = field(default_factory=dict)
    context_update: Dict[str, Any] = field(default_factory=dict)
    handoff: Optional[AgentId] = None
    success: bool = True

    @classmethod
    def failure(cls, tool_name: str, error: str) -> "ToolResult":
        return cls(
            summary="I wasn't able to complete that just now.",
            data={"error": error, "tool": tool_name},
            success=False,
        )

    def to_model_payload(self) -> Dict[str, Any]:
        """Payload sent back to the model as the tool's output."""
        payload = {"success": self.success, "summary": self.summary}
        payload.update(self.data)
        return payload


ToolHandler = Callable[
    [Dict[str, Any], ToolContext], Union[ToolResult, Awaitable[ToolResult]]
]


@dataclass(frozen=True)
class Tool:
    """A function the model may ask to run."""

    name: str
    description: str
    parameters: Mapping[str, Any]
    handler: ToolHandler

    def schema(self) -> Dict[str, Any]:
        """Chat-completions function tool definition."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters),
            },
        }

    async def run(self, arguments: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        result = self.handler(arguments, ctx)
        if inspect.isawaitable(result):
            result = await result
        return result


@dataclass(frozen=True)
class Agent:
    """Immutable agent configuration."""

    id: AgentId
    display_name: str
    instructions: str
    introduction: str
    tools: Tuple[Tool, ...] = ()
    handoffs: FrozenSet[AgentId] = frozenset()
    handoff_description: str = ""
    delegates_to_supervisor: bool = False

    def find_tool(self, name: str) -> Optional[Tool]:
        """Look a tool up among this agent's own tools only."""
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None

    def can_hand_off_to(self, target: AgentId) -> bool:
        return target in self.handoffs


def object_schema(properties: Dict[str, Any], required: Tuple[str, ...] = ()) -> Dict[str, Any]:
    """JSON schema for a tool taking a flat object of arguments."""
    return {
        "type": "object",
        "properties": properties,
        "required": list(required),
        "additionalProperties": False,
    }


def string_list(description: str) -> Dict[str, Any]:
    return {"type": "array", "items": {"type": "string"}, "description": description}


def deep_merge(target: Dict[str, Any], update: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge ``update`` into ``target`` in place, recursing into nested dicts."""
    for key, value in update.items():
        if isinstance(value, Mapping) and isinstance(target.get(key), dict):
            deep_merge(target[key], value)
        elif isinstance(value, Mapping):
            target[key] = deep_merge({}, value)
        else:
            target[key] = value
    return target


async def run_tool_safely(tool: Tool, arguments: Dict[str, Any], ctx: ToolContext) -> ToolResult:
    """
    Run a tool, turning any handler exception into a failure result.

    Tool errors are reported back to the model, never raised past this point.
    """
    try:
        result = await tool.run(arguments, ctx)
    except Exception as e:
        logger.error(f"Tool {tool.name} failed for call {ctx.call_id}: {e}", exc_info=True)
        return ToolResult.failure(tool.name, str(e))
    if not isinstance(result, ToolResult):
        logger.error(f"Tool {tool.name} returned {type(result).__name__} for call {ctx.call_id}")
        return ToolResult.failure(tool.name, f"Unexpected result type {type(result).__name__}")
    logger.info(f"Tool {tool.name} ran for call {ctx.call_id} (success={result.success})")
    return result


def build_agent_messages(
    agent: Agent, turns: Iterable[Any], context: Mapping[str, Any]
) -> List[Dict[str, Any]]:
    """
    Chat messages for one reasoning pass of ``agent``.

    Args:
        agent: Agent whose instructions form the system prompt
        turns: Recent history entries, each with ``role`` and ``text``
        context: Facts accumulated on the call so far
    """
    system = agent.instructions
    if context:
        system += "\n\nWhat is already known about this caller:\n" + json.dumps(context, default=str)
    messages: List[Dict[str, Any]] = [{"role": "system", "content": system}]
    messages.extend({"role": turn.role, "content": turn.text} for turn in turns)
    return messages
