import asyncio
import base64
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import websockets
from websockets.exceptions import (
    ConnectionClosed,
    ConnectionClosedError,
    ConnectionClosedOK,
    WebSocketException,
)

from clinconnect.config.constants import (
    DEFAULT_REALTIME_MODEL,
    DEFAULT_REALTIME_VOICE,
    LOGGER_NAME,
)

logger = logging.getLogger(LOGGER_NAME)

OPENAI_API_BASE = "https://api.openai.com/v1"
REALTIME_WS_URL = "wss://api.openai.com/v1/realtime"

CONNECTION_TIMEOUT = 30  # seconds
SEND_TIMEOUT = 5.0  # seconds

# WebSocket configuration for low latency
WS_MAX_SIZE = 16 * 1024 * 1024  # 16MB - large enough for audio chunks
WS_MAX_QUEUE = 32  # Small queue to prevent buffering
WS_PING_INTERVAL = 5  # 5 seconds between pings

# Model audio waiting to be forwarded to the caller
AUDIO_QUEUE_SIZE = 256

TranscriptHandler = Callable[[str, str], Awaitable[None]]
EventHandler = Callable[[], Awaitable[None]]


class RealtimeSessionError(RuntimeError):
    """A live model session could not be acquired or used."""


class RealtimeAudioClient:
    """
    Client for one OpenAI Realtime session over WebSocket.

    Caller audio goes in as base64 pcm16 ``input_audio_buffer.append`` events;
    model audio comes out of ``response.audio.delta`` events into
    ``audio_queue``. Transcripts and barge-in signals are delivered to the
    handlers registered with ``set_event_handlers``.
    """

    def __init__(self, client_secret: str, model: str = DEFAULT_REALTIME_MODEL):
        self.client_secret = client_secret
        self.model = model
        self.ws = None
        self.audio_queue: asyncio.Queue = asyncio.Queue(maxsize=AUDIO_QUEUE_SIZE)
        self._recv_task: Optional[asyncio.Task] = None
        self._connection_active = False
        self._is_closing = False
        self._transcript_handler: Optional[TranscriptHandler] = None
        self._speech_started_handler: Optional[EventHandler] = None
        self._connection_lost_handler: Optional[EventHandler] = None
        logger.info(f"RealtimeAudioClient initialized with model: {model}")

    @property
    def is_connected(self) -> bool:
        return self._connection_active

    async def connect(self) -> bool:
        """
        Connect to the OpenAI Realtime WebSocket endpoint.

        Returns:
            bool: True if connection was successful, False otherwise
        """
        if self._is_closing:
            logger.warning("Cannot connect - client is closing")
            return False

        url = f"{REALTIME_WS_URL}?model={self.model}"
        headers = {
            "Authorization": f"Bearer {self.client_secret}",
            "OpenAI-Beta": "realtime=v1",
        }

        try:
            logger.info(f"Connecting to OpenAI Realtime API with model: {self.model}")
            connection_start = time.time()
            self.ws = await asyncio.wait_for(
                websockets.connect(
                    url,
                    max_size=WS_MAX_SIZE,
                    max_queue=WS_MAX_QUEUE,
                    ping_interval=WS_PING_INTERVAL,
                    ping_timeout=10,
                    compression=None,  # Disable compression for lower latency
                    additional_headers=headers,
                ),
                timeout=CONNECTION_TIMEOUT,
            )
            logger.debug(f"WebSocket connection established in {time.time() - connection_start:.2f} seconds")
        except asyncio.TimeoutError:
            logger.error(f"Timeout while connecting to OpenAI Realtime API (after {CONNECTION_TIMEOUT}s)")
            return False
        except (OSError, WebSocketException) as e:
            logger.error(f"Failed to connect to OpenAI Realtime API: {e}")
            return False

        self._connection_active = True
        self._recv_task = asyncio.create_task(self._recv_loop())
        logger.info("Successfully connected to OpenAI Realtime API")
        return True

    async def _send_event(self, event: Dict[str, Any]) -> bool:
        if not self._connection_active or self.ws is None:
            logger.warning(f"Cannot send {event.get('type')} - connection not active")
            return False
        try:
            await asyncio.wait_for(self.ws.send(json.dumps(event)), timeout=SEND_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning(f"Timeout while sending {event.get('type')}")
            return False
        except ConnectionClosed as e:
            logger.warning(f"Connection closed while sending {event.get('type')}: {e}")
            self._connection_active = False
            return False
        return True

    async def configure(self, instructions: str, voice: str = DEFAULT_REALTIME_VOICE) -> bool:
        """Send the session configuration: audio formats, voice, VAD and transcription."""
        logger.info(f"Configuring realtime session (voice={voice})")
        return await self._send_event(
            {
                "type": "session.update",
                "session": {
                    "instructions": instructions,
                    "voice": voice,
                    "modalities": ["audio", "text"],
                    "input_audio_format": "pcm16",
                    "output_audio_format": "pcm16",
                    "input_audio_transcription": {"model": "whisper-1"},
                    "turn_detection": {
                        "type": "server_vad",
                        "threshold": 0.5,
                        "prefix_padding_ms": 300,
                        "silence_duration_ms": 500,
                    },
                },
            }
        )

    async def send_audio_chunk(self, chunk: bytes) -> bool:
        """
        Send caller audio to the model. The chunk must be 24 kHz pcm16.

        Returns:
            bool: True if the chunk was sent successfully, False otherwise
        """
        return await self._send_event(
            {
                "type": "input_audio_buffer.append",
                "audio": base64.b64encode(chunk).decode("ascii"),
            }
        )

    async def request_response(self, instructions: Optional[str] = None) -> bool:
        """Ask the model to speak now, e.g. to deliver the greeting."""
        event: Dict[str, Any] = {"type": "response.create"}
        if instructions:
            event["response"] = {"instructions": instructions}
        return await self._send_event(event)

    async def _recv_loop(self) -> None:
        """
        Internal loop to receive events from OpenAI.
        Audio deltas go into the audio_queue, everything else to the handlers.
        """
        try:
            async for message in self.ws:
                try:
                    data = json.loads(message)
                except (TypeError, ValueError):
                    logger.warning(f"Received invalid JSON from OpenAI: {str(message)[:100]}...")
                    continue
                await self._dispatch_event(data)
        except ConnectionClosedOK:
            logger.info("WebSocket connection closed normally")
        except ConnectionClosedError as e:
            logger.warning(f"WebSocket connection closed unexpectedly: {e}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in receive loop: {e}", exc_info=True)

        self._connection_active = False
        logger.info("Receive loop exited, connection marked as inactive")
        if self._connection_lost_handler and not self._is_closing:
            await self._connection_lost_handler()

    async def _dispatch_event(self, data: Dict[str, Any]) -> None:
        event_type = data.get("type", "unknown")

        if event_type == "response.audio.delta":
            chunk = base64.b64decode(data.get("delta", ""))
            if self.audio_queue.full():
                self.audio_queue.get_nowait()
                logger.debug("Audio queue full, dropped oldest model chunk")
            self.audio_queue.put_nowait(chunk)
        elif event_type == "conversation.item.input_audio_transcription.completed":
            if self._transcript_handler:
                await self._transcript_handler("user", data.get("transcript", ""))
        elif event_type == "response.audio_transcript.done":
            if self._transcript_handler:
                await self._transcript_handler("assistant", data.get("transcript", ""))
        elif event_type == "input_audio_buffer.speech_started":
            if self._speech_started_handler:
                await self._speech_started_handler()
        elif event_type == "error":
            logger.error(f"Received error from OpenAI: {data.get('error')}")
        else:
            logger.debug(f"Received message of type: {event_type}")

    def set_event_handlers(
        self,
        transcript_handler: Optional[TranscriptHandler] = None,
        speech_started_handler: Optional[EventHandler] = None,
        connection_lost_handler: Optional[EventHandler] = None,
    ) -> None:
        """
        Register callbacks for model events.

        Args:
            transcript_handler: Called with (role, text) for finished transcripts
            speech_started_handler: Called when the caller starts talking
            connection_lost_handler: Called when the socket drops unexpectedly
        """
        self._transcript_handler = transcript_handler
        self._speech_started_handler = speech_started_handler
        self._connection_lost_handler = connection_lost_handler

    async def close(self) -> None:
        """Close the session. Safe to call more than once."""
        if self._is_closing:
            return
        logger.info("Closing OpenAI Realtime client")
        self._is_closing = True
        self._connection_active = False

        # The receive loop itself may be closing us from a connection-lost handler
        if self._recv_task and self._recv_task is not asyncio.current_task():
            self._recv_task.cancel()
            try:
                await self._recv_task
            except asyncio.CancelledError:
                pass

        if self.ws:
            await self.ws.close()
        logger.info("OpenAI Realtime client closed")


class RealtimeSessionFactory:
    """
    Acquires live model sessions.

    The long-lived API key is only used to mint an ephemeral client secret;
    the session socket itself is opened with that secret.
    """

    def __init__(
        self,
        api_key: Optional[str],
        model: str = DEFAULT_REALTIME_MODEL,
        voice: str = DEFAULT_REALTIME_VOICE,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.voice = voice
        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(base_url=OPENAI_API_BASE, timeout=10.0)

    async def create_client_secret(self) -> str:
        """
        Exchange the API key for an ephemeral realtime client secret.

        Raises:
            RealtimeSessionError: if no key is configured or the exchange fails
        """
        if not self.api_key:
            raise RealtimeSessionError("OPENAI_API_KEY is not configured")
        try:
            response = await self.http_client.post(
                "/realtime/sessions",
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={"model": self.model, "voice": self.voice},
            )
            response.raise_for_status()
            return response.json()["client_secret"]["value"]
        except httpx.HTTPError as e:
            raise RealtimeSessionError(f"Realtime credential exchange failed: {e}") from e
        except (KeyError, TypeError, ValueError) as e:
            raise RealtimeSessionError("Realtime credential response was malformed") from e

    async def create(self, instructions: str) -> RealtimeAudioClient:
        """
        Open and configure a live session.

        Raises:
            RealtimeSessionError: if any step fails; a half-open client is closed,
                including when this coroutine is cancelled mid-setup
        """
        secret = await self.create_client_secret()
        client = RealtimeAudioClient(secret, self.model)
        if not await client.connect():
            raise RealtimeSessionError("Could not connect to the realtime model")
        try:
            if not await client.configure(instructions, self.voice):
                raise RealtimeSessionError("Could not configure the realtime session")
        except BaseException:
            await client.close()
            raise
        return client

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self.http_client.aclose()
