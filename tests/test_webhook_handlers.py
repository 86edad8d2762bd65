import xml.etree.ElementTree as ET
from unittest.mock import AsyncMock, MagicMock

import pytest

from clinconnect.agents.base import AgentId
from clinconnect.agents.catalog import get_agent
from clinconnect.config.constants import APOLOGY_UTTERANCE, NO_SPEECH_UTTERANCE
from clinconnect.handlers.turn_handler import TurnHandler, TurnResult
from clinconnect.handlers.webhook_handlers import (
    build_apology_twiml,
    build_gather_twiml,
    build_stream_twiml,
    handle_call_status,
    handle_voice_turn,
    stream_url_for,
    synthesize_segments,
)
from clinconnect.models.call_session import CallSessionRegistry
from clinconnect.services.audio_cache import AudioCache
from clinconnect.services.speech import SpeechService, SpeechSynthesisError

from tests.fakes import ScriptedLLM, text_reply

ACTION = "https://example.ngrok.app/api/twilio/voice-webhook"


def spoken(twiml):
    gather = ET.fromstring(twiml).find("Gather")
    return [(child.tag, child.text) for child in gather]


def test_gather_twiml_structure():
    root = ET.fromstring(build_gather_twiml(["One moment.", "Here you go."], ACTION))
    gather = root.find("Gather")
    assert gather.get("input") == "speech"
    assert gather.get("action") == ACTION
    assert gather.get("method") == "POST"
    assert gather.get("speechTimeout") == "auto"
    assert [child.text for child in gather.findall("Say")] == ["One moment.", "Here you go."]
    redirect = root.find("Redirect")
    assert redirect.text == ACTION


def test_gather_twiml_prefers_generated_audio():
    twiml = build_gather_twiml(["A", "B"], ACTION, ["https://x/api/twilio/audio/1", None])
    assert spoken(twiml) == [("Play", "https://x/api/twilio/audio/1"), ("Say", "B")]


def test_stream_twiml():
    root = ET.fromstring(build_stream_twiml("wss://example.ngrok.app/api/twilio/audio-stream"))
    stream = root.find("Connect/Stream")
    assert stream.get("url") == "wss://example.ngrok.app/api/twilio/audio-stream"


def test_apology_twiml():
    assert spoken(build_apology_twiml(ACTION)) == [("Say", APOLOGY_UTTERANCE)]
    root = ET.fromstring(build_apology_twiml())
    assert root.find("Say").text == APOLOGY_UTTERANCE
    assert root.find("Gather") is None


@pytest.mark.parametrize(
    "base, expected",
    [
        ("https://example.ngrok.app", "wss://example.ngrok.app/api/twilio/audio-stream"),
        ("http://localhost:8000/", "ws://localhost:8000/api/twilio/audio-stream"),
    ],
)
def test_stream_url_for(base, expected):
    assert stream_url_for(base) == expected


@pytest.mark.asyncio
async def test_first_request_speaks_introduction_without_recording_it():
    registry = CallSessionRegistry()
    llm = ScriptedLLM()

    twiml = await handle_voice_turn("CA1", None, registry, TurnHandler(llm), ACTION)

    assert spoken(twiml) == [("Say", get_agent(AgentId.INTAKE).introduction)]
    assert registry.get("CA1").history == []
    assert llm.calls == []


@pytest.mark.asyncio
async def test_silence_later_in_the_call_asks_to_repeat():
    registry = CallSessionRegistry()
    registry.get_or_create("CA1").add_turn("user", "hello")

    twiml = await handle_voice_turn("CA1", "   ", registry, TurnHandler(ScriptedLLM()), ACTION)

    assert spoken(twiml) == [("Say", NO_SPEECH_UTTERANCE)]
    assert len(registry.get("CA1").history) == 1


@pytest.mark.asyncio
async def test_speech_runs_a_turn():
    registry = CallSessionRegistry()
    handler = TurnHandler(ScriptedLLM(text_reply("What condition would you like to explore?")))

    twiml = await handle_voice_turn("CA1", "I want to find a trial", registry, handler, ACTION)

    assert spoken(twiml) == [("Say", "What condition would you like to explore?")]
    assert len(registry.get("CA1").history) == 2


@pytest.mark.asyncio
async def test_filler_and_answer_are_both_spoken():
    registry = CallSessionRegistry()
    handler = MagicMock()
    handler.handle_turn = AsyncMock(
        return_value=TurnResult("Answer.", {}, spoken_segments=["Let me check.", "Answer."])
    )

    twiml = await handle_voice_turn("CA1", "question", registry, handler, ACTION)

    assert spoken(twiml) == [("Say", "Let me check."), ("Say", "Answer.")]


@pytest.mark.asyncio
async def test_synthesized_audio_is_played():
    cache = AudioCache()
    speech = SpeechService(None, cache, voice="alloy")
    audio_id = cache.put("Hello", "alloy", b"mp3")

    urls = await synthesize_segments(["Hello", "Not cached"], speech, "https://example.ngrok.app/")

    assert urls == [f"https://example.ngrok.app/api/twilio/audio/{audio_id}", None]


@pytest.mark.asyncio
async def test_tts_failure_falls_back_to_say():
    speech = MagicMock()
    speech.synthesize = AsyncMock(side_effect=SpeechSynthesisError("tts down"))
    registry = CallSessionRegistry()

    twiml = await handle_voice_turn("CA1", None, registry, TurnHandler(ScriptedLLM()), ACTION, speech=speech)

    assert spoken(twiml)[0][0] == "Say"


def test_call_status_discards_terminal_calls():
    registry = CallSessionRegistry()
    registry.get_or_create("CA1")

    assert handle_call_status(registry, "CA1", "in-progress") is False
    assert "CA1" in registry
    assert handle_call_status(registry, "CA1", "completed") is True
    assert "CA1" not in registry
    assert handle_call_status(registry, "CA1", "completed") is False
    assert handle_call_status(registry, None, "completed") is False


def test_stream_stopped_status_discards_call():
    registry = CallSessionRegistry()
    registry.get_or_create("CA1")
    assert handle_call_status(registry, "CA1", None, "stream-stopped") is True
