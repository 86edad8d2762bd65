"""
Twilio voice webhooks and the TwiML documents sent back for them.

In turn-based mode Twilio posts every caller utterance to the voice webhook as
a separate HTTP request. Each response is a TwiML document that speaks the
reply inside a speech <Gather> whose action points back at the webhook, which
keeps the conversation going. Streaming mode answers once with a
<Connect><Stream> document and the rest happens on the media socket.
"""

import logging
from typing import List, Optional, Sequence

from twilio.twiml.voice_response import Connect, VoiceResponse

from clinconnect.agents.catalog import get_agent
from clinconnect.config.constants import (
    APOLOGY_UTTERANCE,
    AUDIO_PATH_PREFIX,
    AUDIO_STREAM_PATH,
    LOGGER_NAME,
    NO_SPEECH_UTTERANCE,
    TERMINAL_CALL_STATUSES,
    TWILIO_SAY_VOICE,
)
from clinconnect.handlers.turn_handler import TurnHandler
from clinconnect.models.call_session import CallSessionRegistry
from clinconnect.services.speech import SpeechService, SpeechSynthesisError

logger = logging.getLogger(LOGGER_NAME)


def build_gather_twiml(
    segments: Sequence[str],
    action_url: str,
    audio_urls: Optional[Sequence[Optional[str]]] = None,
) -> str:
    """
    TwiML that speaks ``segments`` and then listens for the caller's answer.

    Args:
        segments: Texts to speak, in order
        action_url: Where Twilio posts the caller's next utterance
        audio_urls: Pre-generated audio per segment; a missing entry is spoken
            with <Say> instead

    Returns:
        TwiML document as a string
    """
    response = VoiceResponse()
    gather = response.gather(
        input="speech",
        action=action_url,
        method="POST",
        speech_timeout="auto",
        language="en-US",
    )
    for index, text in enumerate(segments):
        url = audio_urls[index] if audio_urls and index < len(audio_urls) else None
        if url:
            gather.play(url)
        else:
            gather.say(text, voice=TWILIO_SAY_VOICE)
    # No speech at all: come back as an empty turn instead of hanging up
    response.redirect(action_url, method="POST")
    return str(response)


def build_stream_twiml(stream_url: str) -> str:
    """TwiML that connects the call to the media stream socket."""
    response = VoiceResponse()
    connect = Connect()
    connect.stream(url=stream_url)
    response.append(connect)
    return str(response)


def build_apology_twiml(action_url: Optional[str] = None) -> str:
    """Fallback document used when a webhook fails outright."""
    if action_url:
        return build_gather_twiml([APOLOGY_UTTERANCE], action_url)
    response = VoiceResponse()
    response.say(APOLOGY_UTTERANCE, voice=TWILIO_SAY_VOICE)
    return str(response)


def stream_url_for(base_url: str) -> str:
    """Media stream socket URL derived from the public HTTP base URL."""
    base = base_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return base + AUDIO_STREAM_PATH


async def synthesize_segments(
    segments: Sequence[str], speech: SpeechService, base_url: str
) -> List[Optional[str]]:
    """
    Generate audio for each segment and return the URLs Twilio should <Play>.

    A segment whose synthesis fails gets ``None`` and is spoken with <Say>.
    """
    urls: List[Optional[str]] = []
    for text in segments:
        try:
            audio_id = await speech.synthesize(text)
        except SpeechSynthesisError as e:
            logger.warning(f"Falling back to <Say>: {e}")
            urls.append(None)
            continue
        urls.append(f"{base_url.rstrip('/')}{AUDIO_PATH_PREFIX}/{audio_id}")
    return urls


async def handle_voice_turn(
    call_sid: str,
    speech_result: Optional[str],
    registry: CallSessionRegistry,
    turn_handler: TurnHandler,
    action_url: str,
    speech: Optional[SpeechService] = None,
    base_url: str = "",
) -> str:
    """
    Handle one turn-based webhook request.

    A request without speech on a fresh call is answered with the active
    agent's introduction, which is not recorded in the history. A request
    without speech later in the call asks the caller to repeat.

    Args:
        call_sid: Twilio CallSid
        speech_result: Twilio's transcription of the caller, if any
        registry: Call session registry
        turn_handler: Turn engine
        action_url: Absolute URL of the voice webhook
        speech: Optional TTS service for <Play> audio
        base_url: Public base URL used to build audio URLs

    Returns:
        TwiML document as a string
    """
    session = registry.get_or_create(call_sid)
    text = (speech_result or "").strip()

    if not text:
        if not session.history:
            segments = [get_agent(session.active_agent).introduction]
            logger.info(f"Greeting call {call_sid} as {session.active_agent.value}")
        else:
            segments = [NO_SPEECH_UTTERANCE]
            logger.info(f"No speech on call {call_sid}, prompting again")
    else:
        logger.info(f"Caller said on {call_sid}: {text}")
        result = await turn_handler.handle_turn(session, text)
        segments = result.spoken_segments or [result.utterance]
        if result.handoff_target is not None:
            logger.info(f"Call {call_sid} now with {result.handoff_target.value}")

    audio_urls = None
    if speech is not None:
        audio_urls = await synthesize_segments(segments, speech, base_url)
    return build_gather_twiml(segments, action_url, audio_urls)


def handle_call_status(
    registry: CallSessionRegistry,
    call_sid: Optional[str],
    call_status: Optional[str] = None,
    stream_status: Optional[str] = None,
) -> bool:
    """
    React to a call-status callback.

    Terminal statuses discard the call's session; an unknown call is a no-op.

    Returns:
        True if a session was removed
    """
    status = (call_status or stream_status or "").lower()
    logger.info(f"Call status for {call_sid}: {status or 'unknown'}")
    if not call_sid or status not in TERMINAL_CALL_STATUSES:
        return False
    return registry.delete(call_sid)
