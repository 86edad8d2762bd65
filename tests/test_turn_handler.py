import asyncio

import pytest

from clinconnect.agents.base import AgentId
from clinconnect.agents.catalog import get_agent
from clinconnect.agents.supervisor import DelegationProtocol, SupervisorAgent
from clinconnect.config.constants import APOLOGY_UTTERANCE
from clinconnect.handlers.turn_handler import TRANSFER_TOOL_NAME, TurnHandler, transfer_tool_schema
from clinconnect.models.call_session import CallSessionRegistry
from clinconnect.services.clinical_trials import MockTrialDataSource
from clinconnect.services.llm_client import LLMError

from tests.fakes import ScriptedLLM, text_reply, tool_reply


@pytest.fixture
def registry():
    return CallSessionRegistry()


def test_transfer_schema_lists_only_permitted_targets():
    schema = transfer_tool_schema(get_agent(AgentId.INTAKE))
    params = schema["function"]["parameters"]
    assert schema["function"]["name"] == TRANSFER_TOOL_NAME
    assert params["properties"]["target"]["enum"] == ["support", "trialSearch"]
    assert params["required"] == ["target"]


def test_no_transfer_schema_without_handoffs():
    assert transfer_tool_schema(get_agent(AgentId.CHAT)) is None


@pytest.mark.asyncio
async def test_plain_answer_grows_history_by_two(registry):
    llm = ScriptedLLM(text_reply("Which condition are you interested in?"))
    handler = TurnHandler(llm)
    session = registry.get_or_create("CA1")

    result = await handler.handle_turn(session, "I'd like to find a trial")

    assert result.utterance == "Which condition are you interested in?"
    assert result.failed is False
    assert result.handoff_target is None
    assert [(t.role, t.text) for t in session.history] == [
        ("user", "I'd like to find a trial"),
        ("assistant", "Which condition are you interested in?"),
    ]
    tools = {t["function"]["name"] for t in llm.calls[0]["tools"]}
    assert "record_patient_details" in tools
    assert TRANSFER_TOOL_NAME in tools


@pytest.mark.asyncio
async def test_tool_call_updates_context(registry):
    llm = ScriptedLLM(
        tool_reply("record_patient_details", {"conditions": ["diabetes"]}),
        text_reply("Thanks. How old are you?"),
    )
    handler = TurnHandler(llm)
    session = registry.get_or_create("CA9")

    result = await handler.handle_turn(session, "I have diabetes")

    assert session.context["patient_profile"]["conditions"] == ["diabetes"]
    assert result.updated_context is session.context
    assert result.utterance == "Thanks. How old are you?"
    assert len(session.history) == 2
    follow_up = llm.calls[1]["messages"]
    assert follow_up[-1]["role"] == "tool"
    assert follow_up[-2]["tool_calls"][0]["function"]["name"] == "record_patient_details"


@pytest.mark.asyncio
async def test_follow_up_failure_speaks_tool_summary(registry):
    llm = ScriptedLLM(tool_reply("explain_clinical_trials", {"topic": "phases"}), LLMError("down"))
    session = registry.get_or_create("CA1")

    result = await TurnHandler(llm).handle_turn(session, "What are phases?")

    assert result.utterance.startswith("Trials happen in phases")
    assert result.failed is False


@pytest.mark.asyncio
async def test_permitted_transfer_switches_agent(registry):
    llm = ScriptedLLM(tool_reply(TRANSFER_TOOL_NAME, {"target": "support", "reason": "anxious"}))
    session = registry.get_or_create("CA1")

    result = await TurnHandler(llm).handle_turn(session, "I'm really nervous about all this")

    assert result.handoff_target == AgentId.SUPPORT
    assert session.active_agent == AgentId.SUPPORT
    assert result.utterance == get_agent(AgentId.SUPPORT).introduction


@pytest.mark.asyncio
async def test_refused_transfer_keeps_agent(registry):
    llm = ScriptedLLM(
        tool_reply(TRANSFER_TOOL_NAME, {"target": "enrollment"}),
        text_reply("Let's finish your profile first."),
    )
    session = registry.get_or_create("CA1")

    result = await TurnHandler(llm).handle_turn(session, "Sign me up now")

    assert session.active_agent == AgentId.INTAKE
    assert result.handoff_target is None
    assert result.utterance == "Let's finish your profile first."
    assert '"success": false' in llm.calls[1]["messages"][-1]["content"]


@pytest.mark.asyncio
async def test_unknown_transfer_target_is_ignored(registry):
    llm = ScriptedLLM(tool_reply(TRANSFER_TOOL_NAME, {"target": "billing"}, text="One moment."))
    session = registry.get_or_create("CA1")

    result = await TurnHandler(llm).handle_turn(session, "Billing please")

    assert session.active_agent == AgentId.INTAKE
    assert result.utterance == "One moment."


@pytest.mark.asyncio
async def test_tool_result_handoff_goes_through_permission_check(registry):
    profile = {
        "age": 58,
        "gender": "male",
        "conditions": ["heart failure"],
        "city": "Houston",
        "state": "Texas",
        "country": "USA",
        "travelWillingness": "regional",
    }
    llm = ScriptedLLM(tool_reply("create_patient_profile", profile), text_reply("Let me search for you."))
    session = registry.get_or_create("CA1")

    result = await TurnHandler(llm).handle_turn(session, "That's everything")

    assert result.handoff_target == AgentId.SEARCH
    assert session.active_agent == AgentId.SEARCH
    assert session.context["patient_profile"]["patientId"].startswith("patient_")


@pytest.mark.asyncio
async def test_tool_not_owned_by_agent_is_reported_as_failure(registry):
    llm = ScriptedLLM(tool_reply("submit_trial_application", {"trialId": "trial_001"}), text_reply("I can't do that yet."))
    session = registry.get_or_create("CA1")

    result = await TurnHandler(llm).handle_turn(session, "Apply me")

    assert result.utterance == "I can't do that yet."
    assert "applications" not in session.context


@pytest.mark.asyncio
async def test_search_agent_uses_trial_source(registry):
    llm = ScriptedLLM(tool_reply("search_trials_by_condition", {"conditions": ["diabetes"]}), text_reply("I found one."))
    session = registry.get_or_create("CA1")
    session.active_agent = AgentId.SEARCH

    await TurnHandler(llm, trials=MockTrialDataSource()).handle_turn(session, "Diabetes trials?")

    assert session.context["last_search"]["trial_ids"] == ["trial_002"]


@pytest.mark.asyncio
async def test_failure_returns_apology_and_keeps_user_turn(registry):
    session = registry.get_or_create("CA1")

    result = await TurnHandler(ScriptedLLM(LLMError("upstream down"))).handle_turn(session, "Hello?")

    assert result.failed is True
    assert result.utterance == APOLOGY_UTTERANCE
    assert result.spoken_segments == [APOLOGY_UTTERANCE]
    assert [(t.role, t.text) for t in session.history] == [("user", "Hello?")]
    assert session.active_agent == AgentId.INTAKE


@pytest.mark.asyncio
async def test_history_window_limits_prompt(registry):
    session = registry.get_or_create("CA1")
    for i in range(20):
        session.add_turn("user" if i % 2 == 0 else "assistant", f"turn {i}")
    llm = ScriptedLLM(text_reply("ok"))

    await TurnHandler(llm, history_window=4).handle_turn(session, "latest")

    messages = llm.calls[0]["messages"]
    assert len(messages) == 5
    assert messages[-1] == {"role": "user", "content": "latest"}


@pytest.mark.asyncio
async def test_delegating_agent_runs_through_protocol():
    registry = CallSessionRegistry(default_agent=AgentId.CHAT)
    supervisor = SupervisorAgent(ScriptedLLM(text_reply("Our privacy policy follows HIPAA.")), registry)
    handler = TurnHandler(ScriptedLLM(), delegation=DelegationProtocol(ScriptedLLM(), supervisor))
    session = registry.get_or_create("CA1")
    spoken = []

    result = await handler.handle_turn(session, "Tell me about your privacy policy", speak=spoken.append)

    assert len(spoken) == 1
    assert result.spoken_segments == [spoken[0], "Our privacy policy follows HIPAA."]
    assert result.utterance == "Our privacy policy follows HIPAA."
    assert session.history[-1].text == "Our privacy policy follows HIPAA."


@pytest.mark.asyncio
async def test_delegating_agent_without_protocol_apologises():
    registry = CallSessionRegistry(default_agent=AgentId.CHAT)
    session = registry.get_or_create("CA1")
    result = await TurnHandler(ScriptedLLM()).handle_turn(session, "Tell me about your policies")
    assert result.failed is True


@pytest.mark.asyncio
async def test_turns_on_one_call_are_serialised(registry):
    order = []

    class SlowLLM:
        async def complete(self, messages, tools=None, model=None):
            order.append(("start", messages[-1]["content"]))
            await asyncio.sleep(0.01)
            order.append(("end", messages[-1]["content"]))
            return text_reply("ok")

    session = registry.get_or_create("CA1")
    handler = TurnHandler(SlowLLM())
    await asyncio.gather(handler.handle_turn(session, "first"), handler.handle_turn(session, "second"))

    assert order == [("start", "first"), ("end", "first"), ("start", "second"), ("end", "second")]
    assert [t.text for t in session.history] == ["first", "ok", "second", "ok"]
