"""
Runs one conversational turn of a phone call.

A turn is: record what the caller said, let the active agent reason over the
recent history (optionally running one of its tools), decide whether another
agent should take over, and record what will be spoken back. Upstream failures
never escape; the caller hears a fixed apology instead.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from clinconnect.agents.base import (
    Agent,
    AgentId,
    ToolContext,
    ToolResult,
    build_agent_messages,
    deep_merge,
    object_schema,
    run_tool_safely,
)
from clinconnect.agents.catalog import get_agent
from clinconnect.agents.supervisor import DelegationProtocol, DelegationProtocolError
from clinconnect.config.constants import (
    APOLOGY_UTTERANCE,
    HISTORY_WINDOW_TURNS,
    LOGGER_NAME,
    ROLE_ASSISTANT,
    ROLE_USER,
)
from clinconnect.models.call_session import CallSession
from clinconnect.services.llm_client import ChatCompletionClient, LLMError, ToolCall

logger = logging.getLogger(LOGGER_NAME)

TRANSFER_TOOL_NAME = "transfer_to_agent"


@dataclass
class TurnResult:
    """
    Outcome of one turn.

    Attributes:
        utterance: Final text to speak
        updated_context: The call's accumulated context after the turn
        handoff_target: Agent that took over during this turn, if any
        spoken_segments: Everything to speak, in order (a filler phrase may
            precede the utterance)
        failed: True when the apology was returned instead of a real answer
    """

    utterance: str
    updated_context: Dict[str, Any]
    handoff_target: Optional[AgentId] = None
    spoken_segments: List[str] = field(default_factory=list)
    failed: bool = False


def transfer_tool_schema(agent: Agent, lookup: Callable[[AgentId], Agent] = get_agent) -> Optional[Dict[str, Any]]:
    """
    Structured handoff function offered to ``agent``.

    The ``target`` enum only lists the agent's permitted handoffs, so the model
    cannot even name anything else. Returns None for agents that never hand off.
    """
    if not agent.handoffs:
        return None
    targets = sorted(agent.handoffs, key=lambda a: a.value)
    options = "; ".join(f"{t.value}: {lookup(t).handoff_description}" for t in targets)
    return {
        "type": "function",
        "function": {
            "name": TRANSFER_TOOL_NAME,
            "description": f"Hand the caller over to another specialist agent. Options: {options}",
            "parameters": object_schema(
                {
                    "target": {
                        "type": "string",
                        "enum": [t.value for t in targets],
                        "description": "Agent that should take over the call",
                    },
                    "reason": {"type": "string", "description": "Why the caller is being transferred"},
                },
                ("target",),
            ),
        },
    }


class TurnHandler:
    """
    Turn-based conversation engine shared by every call.

    Holds only collaborators; all per-call state lives on the CallSession.
    """

    def __init__(
        self,
        llm: ChatCompletionClient,
        trials: Any = None,
        delegation: Optional[DelegationProtocol] = None,
        history_window: int = HISTORY_WINDOW_TURNS,
        agent_lookup: Callable[[AgentId], Agent] = get_agent,
    ):
        """
        Initialize the turn handler.

        Args:
            llm: Chat-completions client for the agents' reasoning passes
            trials: Clinical-trial data source handed to tool handlers
            delegation: Protocol used for agents that defer to a supervisor
            history_window: Number of recent turns shown to the model
            agent_lookup: Resolves an AgentId to its configuration
        """
        self.llm = llm
        self.trials = trials
        self.delegation = delegation
        self.history_window = history_window
        self.agent_lookup = agent_lookup

    async def handle_turn(
        self,
        session: CallSession,
        utterance: str,
        speak: Optional[Callable[[str], Any]] = None,
    ) -> TurnResult:
        """
        Process one caller utterance.

        Turns on the same call run strictly one after another. On success the
        history grows by two entries; on failure only the caller's entry is
        kept and the apology is returned.

        Args:
            session: The call this turn belongs to
            utterance: Transcribed caller speech
            speak: Optional callback for text that must be voiced before the
                turn completes (filler phrases)

        Returns:
            TurnResult describing what to say and any handoff
        """
        async with session.turn_lock:
            session.add_turn(ROLE_USER, utterance)
            agent = self.agent_lookup(session.active_agent)
            try:
                if agent.delegates_to_supervisor:
                    result = await self._delegated_turn(session, agent, utterance, speak)
                else:
                    result = await self._agent_turn(session, agent)
            except (LLMError, DelegationProtocolError) as e:
                logger.error(f"Turn failed on call {session.call_id} ({agent.id.value}): {e}")
                return TurnResult(
                    utterance=APOLOGY_UTTERANCE,
                    updated_context=session.context,
                    spoken_segments=[APOLOGY_UTTERANCE],
                    failed=True,
                )

            session.add_turn(ROLE_ASSISTANT, result.utterance)
            return result

    async def _delegated_turn(
        self,
        session: CallSession,
        agent: Agent,
        utterance: str,
        speak: Optional[Callable[[str], Any]],
    ) -> TurnResult:
        if self.delegation is None:
            raise LLMError(f"Agent {agent.id.value} needs a supervisor but none is configured")
        outcome = await self.delegation.handle(session, agent, utterance, speak=speak)
        return TurnResult(
            utterance=outcome.utterance,
            updated_context=session.context,
            spoken_segments=outcome.spoken_segments,
        )

    async def _agent_turn(self, session: CallSession, agent: Agent) -> TurnResult:
        messages = build_agent_messages(
            agent, session.recent_history(self.history_window), session.context
        )
        tools = [tool.schema() for tool in agent.tools]
        transfer = transfer_tool_schema(agent, self.agent_lookup)
        if transfer is not None:
            tools.append(transfer)

        reply = await self.llm.complete(messages, tools=tools or None)
        utterance = reply.text
        handoff: Optional[AgentId] = None
        call = reply.tool_call

        if call is not None and call.name == TRANSFER_TOOL_NAME:
            handoff = self._permitted_handoff(session, agent, call.arguments.get("target"))
            if handoff is None and utterance is None:
                utterance = await self._follow_up(
                    messages, call, ToolResult.failure(call.name, "transfer not permitted")
                )
        elif call is not None:
            result = await self._run_tool(session, agent, call)
            if result.handoff is not None:
                handoff = self._permitted_handoff(session, agent, result.handoff)
            utterance = await self._follow_up(messages, call, result)

        if handoff is not None:
            logger.info(f"Call {session.call_id} handed off from {agent.id.value} to {handoff.value}")
            session.active_agent = handoff
            if not utterance:
                utterance = self.agent_lookup(handoff).introduction

        return TurnResult(
            utterance=utterance,
            updated_context=session.context,
            handoff_target=handoff,
            spoken_segments=[utterance],
        )

    async def _run_tool(self, session: CallSession, agent: Agent, call: ToolCall) -> ToolResult:
        tool = agent.find_tool(call.name)
        if tool is None:
            logger.warning(f"Agent {agent.id.value} asked for tool {call.name} it does not own (call {session.call_id})")
            return ToolResult.failure(call.name, f"Tool {call.name} is not available to this agent")
        result = await run_tool_safely(
            tool, call.arguments, ToolContext(call_id=session.call_id, context=session.context, trials=self.trials)
        )
        if result.context_update:
            deep_merge(session.context, result.context_update)
        return result

    async def _follow_up(self, messages: List[Dict[str, Any]], call: ToolCall, result: ToolResult) -> str:
        """Ask the model to phrase the tool result; speak the tool's own summary if that fails."""
        try:
            reply = await self.llm.complete(messages + call.as_messages(result.to_model_payload()))
        except LLMError as e:
            logger.warning(f"Follow-up after tool {call.name} failed, using tool summary: {e}")
            return result.summary
        return reply.text or result.summary

    def _permitted_handoff(self, session: CallSession, agent: Agent, target: Any) -> Optional[AgentId]:
        try:
            target_id = AgentId(target)
        except ValueError:
            logger.warning(f"Ignoring handoff to unknown agent {target!r} on call {session.call_id}")
            return None
        if not agent.can_hand_off_to(target_id):
            logger.warning(
                f"Refused handoff from {agent.id.value} to {target_id.value} on call {session.call_id}"
            )
            return None
        return target_id
