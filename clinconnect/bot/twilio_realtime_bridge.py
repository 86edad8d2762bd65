"""
Bridge between one Twilio Media Stream and one OpenAI Realtime session.

The bridge is a small state machine fed with parsed stream frames by the
socket's receive loop. Frames for Twilio are not written directly; they go
into ``outbound``, which the socket's writer task drains, so the bridge can be
driven in tests by a scripted frame sequence.

    IDLE -> STREAM_STARTING -> STREAMING -> CLOSING -> CLOSED
"""

import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Callable, Deque, Optional

from clinconnect.agents.base import Agent, AgentId
from clinconnect.agents.catalog import get_agent
from clinconnect.audio.buffer import AudioBuffer
from clinconnect.bot.realtime_api import RealtimeAudioClient, RealtimeSessionError, RealtimeSessionFactory
from clinconnect.config.constants import (
    DEFAULT_STREAM_BUFFER_FRAMES,
    LOGGER_NAME,
    MARK_ERROR_OCCURRED,
    MARK_GREETING_READY,
    REALTIME_SAMPLE_RATE,
    TWILIO_SAMPLE_RATE,
)
from clinconnect.models.call_session import CallSession, CallSessionRegistry
from clinconnect.models.stream_frames import (
    BaseFrame,
    ConnectedFrame,
    MarkFrame,
    MediaFrame,
    StartFrame,
    StopFrame,
    clear_frame,
    mark_frame,
    media_frame,
)

logger = logging.getLogger(LOGGER_NAME)


class StreamState(str, Enum):
    IDLE = "idle"
    STREAM_STARTING = "stream_starting"
    STREAMING = "streaming"
    CLOSING = "closing"
    CLOSED = "closed"


def mulaw_to_model_audio(payload: bytes) -> bytes:
    """Twilio 8 kHz μ-law to 24 kHz pcm16 for the model."""
    return AudioBuffer.from_mulaw(payload).resample(REALTIME_SAMPLE_RATE).to_pcm16()


def model_audio_to_mulaw(chunk: bytes) -> bytes:
    """Model 24 kHz pcm16 to 8 kHz μ-law for Twilio."""
    return AudioBuffer.from_pcm16(chunk, REALTIME_SAMPLE_RATE).resample(TWILIO_SAMPLE_RATE).to_mulaw()


class TwilioRealtimeBridge:
    """
    Full-duplex audio bridge for one call.

    Teardown runs exactly once no matter how many times ``close`` is called,
    and the model session is released before ``close`` returns.
    """

    def __init__(
        self,
        registry: CallSessionRegistry,
        session_factory: RealtimeSessionFactory,
        buffer_frames: int = DEFAULT_STREAM_BUFFER_FRAMES,
        agent_lookup: Callable[[AgentId], Agent] = get_agent,
    ):
        self.registry = registry
        self.session_factory = session_factory
        self.agent_lookup = agent_lookup
        self.state = StreamState.IDLE
        self.stream_sid: Optional[str] = None
        self.call_sid: Optional[str] = None
        self.model: Optional[RealtimeAudioClient] = None
        self.pending: Deque[bytes] = deque(maxlen=buffer_frames)
        self.dropped_frames = 0
        self.outbound: asyncio.Queue = asyncio.Queue()
        self._acquire_task: Optional[asyncio.Task] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._closed = asyncio.Event()

    async def handle_frame(self, frame: BaseFrame) -> None:
        """Advance the state machine with one inbound frame."""
        if isinstance(frame, MediaFrame):
            await self._on_media(frame)
        elif isinstance(frame, StartFrame):
            self._on_start(frame)
        elif isinstance(frame, StopFrame):
            logger.info(f"Stop frame received for stream {self.stream_sid}")
            await self.close()
        elif isinstance(frame, MarkFrame):
            logger.debug(f"Twilio played mark {frame.mark.name} on stream {self.stream_sid}")
        elif isinstance(frame, ConnectedFrame):
            logger.info("Twilio media stream connected")

    def _on_start(self, frame: StartFrame) -> None:
        if self.state != StreamState.IDLE:
            logger.warning(f"Ignoring start frame in state {self.state.value}")
            return
        self.stream_sid = frame.stream_id
        self.call_sid = frame.call_id
        session = self.registry.get_or_create(self.call_sid)
        session.stream_sid = self.stream_sid
        self.state = StreamState.STREAM_STARTING
        logger.info(f"Stream {self.stream_sid} started for call {self.call_sid}")
        self._acquire_task = asyncio.create_task(self._acquire_model(session))

    async def _on_media(self, frame: MediaFrame) -> None:
        if self.state == StreamState.STREAM_STARTING:
            if len(self.pending) == self.pending.maxlen:
                self.dropped_frames += 1
                logger.debug(f"Pre-ready buffer full on {self.stream_sid}, dropped oldest frame ({self.dropped_frames} total)")
            self.pending.append(frame.audio)
        elif self.state == StreamState.STREAMING:
            await self._send_to_model(frame.audio)
        else:
            logger.debug(f"Dropping media frame in state {self.state.value}")

    async def _acquire_model(self, session: CallSession) -> None:
        agent = self.agent_lookup(session.active_agent)
        try:
            model = await self.session_factory.create(agent.instructions)
        except RealtimeSessionError as e:
            logger.error(f"Could not start model session for call {self.call_sid}: {e}")
            await self._fail()
            return

        if self.state != StreamState.STREAM_STARTING:
            await model.close()
            return

        self.model = model
        model.set_event_handlers(
            transcript_handler=self._on_transcript,
            speech_started_handler=self._on_speech_started,
            connection_lost_handler=self._on_model_lost,
        )
        await self._on_ready(agent)

    async def _on_ready(self, agent: Agent) -> None:
        flushed = 0
        # Frames may still arrive while flushing; they join the back of the queue
        while self.pending:
            if not await self._send_to_model(self.pending.popleft()):
                return
            flushed += 1
        self.state = StreamState.STREAMING
        logger.info(f"Model session ready for call {self.call_sid}, flushed {flushed} buffered frame(s)")

        self._pump_task = asyncio.create_task(self._pump_model_audio())
        self._enqueue(mark_frame(self.stream_sid, MARK_GREETING_READY))
        if not await self.model.request_response(f"Greet the caller by saying: {agent.introduction}"):
            await self._fail()

    async def _send_to_model(self, payload: bytes) -> bool:
        if await self.model.send_audio_chunk(mulaw_to_model_audio(payload)):
            return True
        logger.error(f"Failed to forward caller audio to the model for call {self.call_sid}")
        await self._fail()
        return False

    async def _pump_model_audio(self) -> None:
        """Forward model audio to Twilio until cancelled."""
        while True:
            chunk = await self.model.audio_queue.get()
            if self.state != StreamState.STREAMING:
                continue
            self._enqueue(media_frame(self.stream_sid, model_audio_to_mulaw(chunk)))

    async def _on_transcript(self, role: str, text: str) -> None:
        text = text.strip()
        session = self.registry.get(self.call_sid) if self.call_sid else None
        if session is not None and text:
            session.add_turn(role, text)
            logger.info(f"[{self.call_sid}] {role}: {text}")

    async def _on_speech_started(self) -> None:
        if self.state != StreamState.STREAMING:
            return
        # Barge-in: drop model audio not yet sent and flush what Twilio has queued
        while not self.model.audio_queue.empty():
            self.model.audio_queue.get_nowait()
        self._enqueue(clear_frame(self.stream_sid))
        logger.debug(f"Caller barged in on {self.stream_sid}")

    async def _on_model_lost(self) -> None:
        logger.warning(f"Model session lost for call {self.call_sid}")
        await self._fail()

    def _enqueue(self, frame: BaseFrame) -> bool:
        if self.state in (StreamState.CLOSING, StreamState.CLOSED):
            return False
        self.outbound.put_nowait(frame)
        return True

    async def _fail(self) -> None:
        """Tell Twilio something went wrong, then tear down."""
        if self.state in (StreamState.CLOSING, StreamState.CLOSED):
            return
        if self.stream_sid:
            self._enqueue(mark_frame(self.stream_sid, MARK_ERROR_OCCURRED))
        await self.close()

    async def close(self) -> None:
        """
        Tear the bridge down. Idempotent.

        Cancels the bridge's tasks, releases the model session and finally
        puts ``None`` on ``outbound`` so the writer knows to stop.
        """
        if self.state in (StreamState.CLOSING, StreamState.CLOSED):
            await self._closed.wait()
            return
        self.state = StreamState.CLOSING
        logger.info(f"Closing bridge for call {self.call_sid}")

        current = asyncio.current_task()
        for task in (self._pump_task, self._acquire_task):
            if task is None or task is current or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        try:
            if self.model is not None:
                await self.model.close()
        finally:
            self.pending.clear()
            self.state = StreamState.CLOSED
            self.outbound.put_nowait(None)
            self._closed.set()
            logger.info(f"Bridge closed for call {self.call_sid} ({self.dropped_frames} frame(s) dropped)")
