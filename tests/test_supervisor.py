import random

import pytest

from clinconnect.agents.base import AgentId
from clinconnect.agents.catalog import get_agent
from clinconnect.agents.chat_supervisor import SUPERVISOR_TOOL_NAME
from clinconnect.agents.supervisor import (
    FILLER_PHRASES,
    DelegationProtocol,
    DelegationProtocolError,
    FillerReceipt,
    RequestKind,
    SupervisorAgent,
    classify_request,
    extract_relevant_context,
)
from clinconnect.models.call_session import CallSessionRegistry
from clinconnect.services.llm_client import LLMError

from tests.fakes import ScriptedLLM, text_reply, tool_reply

CHAT_AGENT = get_agent(AgentId.CHAT)


@pytest.mark.parametrize(
    "utterance, kind",
    [
        ("Hello!", RequestKind.GREETING),
        ("Hi there, thank you", RequestKind.GREETING),
        ("Good morning.", RequestKind.GREETING),
        ("Thank you so much", RequestKind.CHITCHAT),
        ("How are you today?", RequestKind.CHITCHAT),
        ("Okay, bye", RequestKind.CHITCHAT),
        ("What?", RequestKind.CLARIFY),
        ("Could you repeat that please", RequestKind.CLARIFY),
        ("", RequestKind.CLARIFY),
        ("I need a clinic near 02114", RequestKind.OTHER),
        ("Hi, what is your privacy policy?", RequestKind.OTHER),
    ],
)
def test_classify_request(utterance, kind):
    assert classify_request(utterance) == kind


def test_extract_strips_leading_pleasantries():
    assert extract_relevant_context("Hi, um, so I need a clinic near 02114") == "I need a clinic near 02114"
    assert extract_relevant_context("thank you") == ""


def test_extract_caps_on_word_boundary():
    text = "condition " * 40
    extracted = extract_relevant_context(text)
    assert len(extracted) <= 200
    assert extracted.split() == ["condition"] * len(extracted.split())


def test_receipt_cannot_be_forged():
    with pytest.raises(DelegationProtocolError):
        FillerReceipt("CA1", "Let me check.")


def make_protocol(junior, supervisor_llm, registry=None, rng=None):
    registry = registry or CallSessionRegistry(default_agent=AgentId.CHAT)
    supervisor = SupervisorAgent(supervisor_llm, registry)
    return DelegationProtocol(junior, supervisor, rng=rng or random.Random(7)), registry


@pytest.mark.asyncio
async def test_junior_answers_greeting_without_supervisor():
    junior = ScriptedLLM(text_reply("Hi! How can I help?"))
    supervisor_llm = ScriptedLLM()
    protocol, registry = make_protocol(junior, supervisor_llm)
    session = registry.get_or_create("CA1")
    session.add_turn("user", "Hello")

    outcome = await protocol.handle(session, CHAT_AGENT, "Hello")

    assert outcome.utterance == "Hi! How can I help?"
    assert outcome.delegated is False
    assert outcome.spoken_segments == ["Hi! How can I help?"]
    assert supervisor_llm.calls == []
    assert session.used_fillers == []


@pytest.mark.asyncio
async def test_other_requests_speak_filler_then_delegate():
    log = []
    junior = ScriptedLLM(log=log, label="junior")
    supervisor_llm = ScriptedLLM(text_reply("The nearest clinic is Mass General."), log=log, label="supervisor")
    protocol, registry = make_protocol(junior, supervisor_llm)
    session = registry.get_or_create("CA1")
    session.add_turn("user", "Where is the nearest clinic to 02114?")

    outcome = await protocol.handle(
        session, CHAT_AGENT, "Where is the nearest clinic to 02114?", speak=lambda phrase: log.append(f"speak:{phrase}")
    )

    assert outcome.delegated is True
    assert outcome.filler in FILLER_PHRASES
    assert outcome.spoken_segments == [outcome.filler, "The nearest clinic is Mass General."]
    assert log == [f"speak:{outcome.filler}", "supervisor"]
    assert junior.calls == []
    prompt = supervisor_llm.calls[0]["messages"][1]["content"]
    assert "Where is the nearest clinic to 02114?" in prompt
    assert "==== Conversation History ====" in prompt


@pytest.mark.asyncio
async def test_junior_may_choose_to_delegate_allowed_requests():
    junior = ScriptedLLM(tool_reply(SUPERVISOR_TOOL_NAME, {"relevantContextFromLastUserMessage": "asks what ClinConnect is"}))
    supervisor_llm = ScriptedLLM(text_reply("ClinConnect helps you find clinical trials."))
    protocol, registry = make_protocol(junior, supervisor_llm)
    session = registry.get_or_create("CA1")

    outcome = await protocol.handle(session, CHAT_AGENT, "Hello")

    assert outcome.delegated is True
    assert outcome.utterance == "ClinConnect helps you find clinical trials."
    assert supervisor_llm.calls[0]["messages"][1]["content"].endswith("asks what ClinConnect is")


@pytest.mark.asyncio
async def test_async_speak_is_awaited_before_delegation():
    log = []

    async def speak(phrase):
        log.append("speak")

    supervisor_llm = ScriptedLLM(text_reply("Answer."), log=log, label="supervisor")
    protocol, registry = make_protocol(ScriptedLLM(), supervisor_llm)
    session = registry.get_or_create("CA1")
    await protocol.handle(session, CHAT_AGENT, "What are your hours?", speak=speak)
    assert log == ["speak", "supervisor"]


@pytest.mark.asyncio
async def test_filler_always_precedes_supervisor_call():
    rng = random.Random(1234)
    utterances = [
        "Hello",
        "What is my account status?",
        "Thanks",
        "Can you look up the privacy policy?",
        "Sorry?",
        "I'd like the nearest clinic to 94110",
    ]
    for i in range(50):
        log = []
        utterance = rng.choice(utterances)
        junior = ScriptedLLM(
            rng.choice([text_reply("Sure."), tool_reply(SUPERVISOR_TOOL_NAME, {"relevantContextFromLastUserMessage": utterance})]),
            log=log,
            label="junior",
        )
        supervisor_llm = ScriptedLLM(text_reply("Here is what I found."), log=log, label="supervisor")
        protocol, registry = make_protocol(junior, supervisor_llm, rng=random.Random(i))
        session = registry.get_or_create(f"CA{i}")
        session.add_turn("user", utterance)

        outcome = await protocol.handle(session, CHAT_AGENT, utterance, speak=lambda p: log.append("filler"))

        if "supervisor" in log:
            assert outcome.delegated
            assert log.index("filler") < log.index("supervisor")
            assert log.count("filler") == 1
        else:
            assert "filler" not in log
            assert classify_request(utterance) != RequestKind.OTHER


@pytest.mark.asyncio
async def test_fillers_do_not_repeat_until_exhausted():
    supervisor_llm = ScriptedLLM(*[text_reply(f"answer {i}") for i in range(len(FILLER_PHRASES) + 1)])
    protocol, registry = make_protocol(ScriptedLLM(), supervisor_llm)
    session = registry.get_or_create("CA1")

    fillers = []
    for _ in FILLER_PHRASES:
        outcome = await protocol.handle(session, CHAT_AGENT, "What is my membership type?")
        fillers.append(outcome.filler)
    assert sorted(fillers) == sorted(FILLER_PHRASES)

    outcome = await protocol.handle(session, CHAT_AGENT, "What is my membership type?")
    assert outcome.filler != fillers[-1]
    assert session.used_fillers == [outcome.filler]


@pytest.mark.asyncio
async def test_receipt_is_single_use():
    protocol, registry = make_protocol(ScriptedLLM(), ScriptedLLM(text_reply("one"), text_reply("two")))
    session = registry.get_or_create("CA1")
    receipt = await protocol._speak_filler(session, None)
    assert await protocol._delegate(receipt, session, "x") == "one"
    with pytest.raises(DelegationProtocolError):
        await protocol._delegate(receipt, session, "x")


@pytest.mark.asyncio
async def test_receipt_is_bound_to_its_call():
    protocol, registry = make_protocol(ScriptedLLM(), ScriptedLLM(text_reply("one")))
    receipt = await protocol._speak_filler(registry.get_or_create("CA1"), None)
    with pytest.raises(DelegationProtocolError):
        await protocol._delegate(receipt, registry.get_or_create("CA2"), "x")


@pytest.mark.asyncio
async def test_supervisor_runs_tools_and_merges_context():
    registry = CallSessionRegistry(default_agent=AgentId.CHAT)
    session = registry.get_or_create("CA1")
    session.add_turn("user", "Nearest clinic to 02114?")
    llm = ScriptedLLM(
        tool_reply("find_nearest_clinic", {"zip_code": "02114"}),
        tool_reply("no_such_tool", {}),
        text_reply("Mass General Research, on Fruit Street."),
    )
    supervisor = SupervisorAgent(llm, registry)

    answer = await supervisor.next_response("CA1", "nearest clinic to 02114")

    assert answer == "Mass General Research, on Fruit Street."
    assert len(llm.calls) == 3
    tool_output = llm.calls[1]["messages"][-1]
    assert tool_output["role"] == "tool"
    assert "Mass General" in tool_output["content"]
    assert "Unknown tool" in llm.calls[2]["messages"][-1]["content"]


@pytest.mark.asyncio
async def test_supervisor_bounds_tool_rounds():
    registry = CallSessionRegistry()
    rounds = [tool_reply("get_user_account_info", {"phone_number": "1"}) for _ in range(2)]
    llm = ScriptedLLM(*rounds, text_reply("Your account is active."))
    supervisor = SupervisorAgent(llm, registry, max_tool_rounds=2)

    assert await supervisor.next_response("CA-missing", "account") == "Your account is active."
    assert llm.calls[-1]["tools"] is None


@pytest.mark.asyncio
async def test_supervisor_failure_propagates():
    protocol, registry = make_protocol(ScriptedLLM(), ScriptedLLM(LLMError("down")))
    session = registry.get_or_create("CA1")
    with pytest.raises(LLMError):
        await protocol.handle(session, CHAT_AGENT, "What is my account status?")
    assert len(session.used_fillers) == 1
