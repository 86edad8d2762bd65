"""
Junior/supervisor delegation.

A junior agent answers a small allow-list of requests on its own. For anything
else it must first say a short filler phrase and only then ask the supervisor
for the exact text to read out. The ordering is enforced by the types: the
supervisor can only be reached with a FillerReceipt, and a FillerReceipt can
only be produced by speaking a filler.
"""

import inspect
import json
import logging
import random
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, List, Optional, Sequence

from clinconnect.agents.base import (
    Agent,
    Tool,
    ToolContext,
    build_agent_messages,
    deep_merge,
    run_tool_safely,
)
from clinconnect.agents.chat_supervisor import (
    SUPERVISOR_INSTRUCTIONS,
    SUPERVISOR_TOOL_NAME,
    SUPERVISOR_TOOL_SCHEMA,
    SUPERVISOR_TOOLS,
)
from clinconnect.config.constants import HISTORY_WINDOW_TURNS, LOGGER_NAME
from clinconnect.services.llm_client import ChatCompletionClient, LLMError

if TYPE_CHECKING:
    from clinconnect.models.call_session import CallSession, CallSessionRegistry

logger = logging.getLogger(LOGGER_NAME)

FILLER_PHRASES = (
    "Just a second.",
    "Let me check.",
    "One moment.",
    "Let me look into that.",
    "Give me a moment.",
    "Let me see.",
)

RELEVANT_CONTEXT_LIMIT = 200


class DelegationProtocolError(RuntimeError):
    """The supervisor was approached without a filler being spoken first."""


class RequestKind(str, Enum):
    GREETING = "greeting"
    CHITCHAT = "chitchat"
    CLARIFY = "clarify"
    OTHER = "other"


ALLOWED_KINDS = frozenset({RequestKind.GREETING, RequestKind.CHITCHAT, RequestKind.CLARIFY})

_GREETING = r"(hi|hello|hey|hiya|howdy|good (morning|afternoon|evening))( there)?"
_CHITCHAT = (
    r"(thanks|thank you( (so|very) much)?|how are you( doing)?( today)?|i'?m (fine|good|great|ok|okay)"
    r"|ok|okay|great|cool|perfect|bye|goodbye|nice to meet you|that'?s all|no thanks)"
)
_CLARIFY = (
    r"(what|sorry|pardon( me)?|come again|say (that|it) again|repeat that( please)?"
    r"|(can|could) you (repeat|say) (that|it)( again)?( please)?|what did you say)"
)

_GREETING_RE = re.compile(rf"{_GREETING}( {_CHITCHAT})*")
_CHITCHAT_RE = re.compile(rf"{_CHITCHAT}( {_CHITCHAT})*")
_CLARIFY_RE = re.compile(rf"({_CHITCHAT} )?{_CLARIFY}")

_LEADING_FILLER_RE = re.compile(
    r"^(hi|hello|hey|um+|uh+|so|well|okay|ok|yes|yeah|please|thanks|thank you|good (morning|afternoon|evening))\b[\s,.!?]*",
    re.IGNORECASE,
)


def _normalise(utterance: str) -> str:
    text = re.sub(r"[^\w\s']", " ", utterance.lower())
    return " ".join(text.split())


def classify_request(utterance: str) -> RequestKind:
    """Decide whether the junior agent may answer this on its own."""
    text = _normalise(utterance)
    if not text:
        return RequestKind.CLARIFY
    if _GREETING_RE.fullmatch(text):
        return RequestKind.GREETING
    if _CLARIFY_RE.fullmatch(text):
        return RequestKind.CLARIFY
    if _CHITCHAT_RE.fullmatch(text):
        return RequestKind.CHITCHAT
    return RequestKind.OTHER


def extract_relevant_context(utterance: str, limit: int = RELEVANT_CONTEXT_LIMIT) -> str:
    """
    Terse extract of the new information in the caller's last utterance.

    Leading pleasantries are dropped and the result is capped at ``limit``
    characters on a word boundary. May be empty.
    """
    text = " ".join(utterance.split())
    while True:
        stripped = _LEADING_FILLER_RE.sub("", text, count=1)
        if stripped == text:
            break
        text = stripped
    if len(text) <= limit:
        return text
    cut = text[:limit]
    if text[limit] != " " and " " in cut:
        cut = cut.rsplit(" ", 1)[0]
    return cut.rstrip(" ,;:")


_RECEIPT_TOKEN = object()


class FillerReceipt:
    """Proof that a filler phrase was spoken on a call. Good for one delegation."""

    __slots__ = ("call_id", "phrase", "consumed")

    def __init__(self, call_id: str, phrase: str, _token: object = None):
        if _token is not _RECEIPT_TOKEN:
            raise DelegationProtocolError("A filler receipt can only be issued by speaking a filler")
        self.call_id = call_id
        self.phrase = phrase
        self.consumed = False


class SupervisorAgent:
    """
    The reasoning pass the junior agent defers to.

    It reads the whole transcript from the registry, may run its own tools,
    and returns text to be spoken verbatim.
    """

    def __init__(
        self,
        llm: ChatCompletionClient,
        registry: "CallSessionRegistry",
        model: Optional[str] = None,
        tools: Sequence[Tool] = SUPERVISOR_TOOLS,
        instructions: str = SUPERVISOR_INSTRUCTIONS,
        max_tool_rounds: int = 5,
    ):
        self.llm = llm
        self.registry = registry
        self.model = model
        self.tools = tuple(tools)
        self.instructions = instructions
        self.max_tool_rounds = max_tool_rounds

    def _find_tool(self, name: str) -> Optional[Tool]:
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None

    async def next_response(self, call_id: str, relevant_context: str) -> str:
        """
        Produce the next thing the junior agent should say.

        Raises:
            LLMError: if the model fails or never settles on an answer
        """
        session = self.registry.get(call_id)
        transcript = [{"role": t.role, "text": t.text} for t in session.history] if session else []
        call_context = session.context if session else {}

        messages: List[dict] = [
            {"role": "system", "content": self.instructions},
            {
                "role": "user",
                "content": (
                    "==== Conversation History ====\n"
                    f"{json.dumps(transcript, indent=2)}\n\n"
                    "==== Relevant Context From Last User Message ====\n"
                    f"{relevant_context}"
                ),
            },
        ]
        tool_schemas = [tool.schema() for tool in self.tools]

        for _ in range(self.max_tool_rounds):
            reply = await self.llm.complete(messages, tools=tool_schemas, model=self.model)
            if reply.tool_call is None:
                return reply.text

            call = reply.tool_call
            tool = self._find_tool(call.name)
            if tool is None:
                logger.warning(f"Supervisor requested unknown tool {call.name} on call {call_id}")
                payload = {"success": False, "error": f"Unknown tool {call.name}"}
            else:
                result = await run_tool_safely(
                    tool, call.arguments, ToolContext(call_id=call_id, context=call_context)
                )
                if result.context_update:
                    deep_merge(call_context, result.context_update)
                payload = result.to_model_payload()
            messages.extend(call.as_messages(payload))

        logger.warning(f"Supervisor hit {self.max_tool_rounds} tool rounds on call {call_id}")
        reply = await self.llm.complete(messages, model=self.model)
        if reply.text is None:
            raise LLMError("Supervisor did not produce a final answer")
        return reply.text


@dataclass
class DelegationOutcome:
    """What the junior agent ended up saying for one turn."""

    utterance: str
    spoken_segments: List[str] = field(default_factory=list)
    delegated: bool = False
    filler: Optional[str] = None


class DelegationProtocol:
    """Runs one junior-agent turn, delegating to the supervisor when required."""

    def __init__(
        self,
        junior_llm: ChatCompletionClient,
        supervisor: SupervisorAgent,
        rng: Optional[random.Random] = None,
        history_window: int = HISTORY_WINDOW_TURNS,
    ):
        self.junior_llm = junior_llm
        self.supervisor = supervisor
        self.rng = rng or random.Random()
        self.history_window = history_window

    async def handle(
        self,
        session: "CallSession",
        agent: Agent,
        utterance: str,
        speak: Optional[Callable[[str], Any]] = None,
    ) -> DelegationOutcome:
        """
        Answer one caller utterance as the junior agent.

        Args:
            session: The call; its history already holds ``utterance``
            agent: The junior agent configuration
            utterance: What the caller just said
            speak: Called with the filler phrase the moment it is chosen

        Raises:
            LLMError: if the junior model or the supervisor fails
        """
        kind = classify_request(utterance)
        relevant = extract_relevant_context(utterance)

        if kind in ALLOWED_KINDS:
            messages = build_agent_messages(
                agent, session.recent_history(self.history_window), session.context
            )
            reply = await self.junior_llm.complete(messages, tools=[SUPERVISOR_TOOL_SCHEMA])
            call = reply.tool_call
            if call is None or call.name != SUPERVISOR_TOOL_NAME:
                if reply.text is None:
                    raise LLMError(f"Junior agent requested unavailable tool {call.name}")
                logger.debug(f"Junior agent answered {kind.value} request on call {session.call_id}")
                return DelegationOutcome(utterance=reply.text, spoken_segments=[reply.text])
            requested = call.arguments.get("relevantContextFromLastUserMessage")
            if isinstance(requested, str):
                relevant = extract_relevant_context(requested)

        receipt = await self._speak_filler(session, speak)
        answer = await self._delegate(receipt, session, relevant)
        return DelegationOutcome(
            utterance=answer,
            spoken_segments=[receipt.phrase, answer],
            delegated=True,
            filler=receipt.phrase,
        )

    def _choose_filler(self, session: "CallSession") -> str:
        available = [p for p in FILLER_PHRASES if p not in session.used_fillers]
        if not available:
            last = session.used_fillers[-1]
            session.used_fillers.clear()
            available = [p for p in FILLER_PHRASES if p != last]
        phrase = self.rng.choice(available)
        session.used_fillers.append(phrase)
        return phrase

    async def _speak_filler(
        self, session: "CallSession", speak: Optional[Callable[[str], Any]]
    ) -> FillerReceipt:
        phrase = self._choose_filler(session)
        if speak is not None:
            spoken = speak(phrase)
            if inspect.isawaitable(spoken):
                await spoken
        return FillerReceipt(session.call_id, phrase, _token=_RECEIPT_TOKEN)

    async def _delegate(self, receipt: FillerReceipt, session: "CallSession", relevant_context: str) -> str:
        if not isinstance(receipt, FillerReceipt) or receipt.call_id != session.call_id:
            raise DelegationProtocolError("Delegation attempted before a filler phrase was spoken")
        if receipt.consumed:
            raise DelegationProtocolError("Filler receipt already used for a delegation")
        receipt.consumed = True
        logger.info(f"Delegating call {session.call_id} to supervisor after filler {receipt.phrase!r}")
        return await self.supervisor.next_response(session.call_id, relevant_context)
