import asyncio
import base64
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from websockets.exceptions import ConnectionClosedOK

from clinconnect.bot.realtime_api import RealtimeAudioClient, RealtimeSessionError, RealtimeSessionFactory


class FakeSocket:
    """Minimal stand-in for a websockets client connection."""

    def __init__(self, messages=()):
        self.messages = list(messages)
        self.sent = []
        self.close = AsyncMock()

    async def send(self, data):
        self.sent.append(json.loads(data))

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self.messages:
            yield message


def connected_client(socket=None):
    client = RealtimeAudioClient("ek_secret", "gpt-4o-realtime-preview")
    client.ws = socket or FakeSocket()
    client._connection_active = True
    return client


# Session factory


@pytest.mark.asyncio
async def test_client_secret_exchange():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"client_secret": {"value": "ek_123", "expires_at": 0}})

    http = httpx.AsyncClient(base_url="https://api.openai.com/v1", transport=httpx.MockTransport(handler))
    factory = RealtimeSessionFactory("sk-test", "gpt-4o-realtime-preview", "shimmer", http_client=http)

    assert await factory.create_client_secret() == "ek_123"
    assert seen[0].url.path == "/v1/realtime/sessions"
    assert seen[0].headers["Authorization"] == "Bearer sk-test"
    assert json.loads(seen[0].content) == {"model": "gpt-4o-realtime-preview", "voice": "shimmer"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [httpx.Response(401, json={"error": "bad key"}), httpx.Response(200, json={"unexpected": True})],
)
async def test_client_secret_errors(response):
    http = httpx.AsyncClient(base_url="https://api.openai.com/v1", transport=httpx.MockTransport(lambda r: response))
    factory = RealtimeSessionFactory("sk-test", http_client=http)
    with pytest.raises(RealtimeSessionError):
        await factory.create_client_secret()


@pytest.mark.asyncio
async def test_missing_api_key():
    factory = RealtimeSessionFactory(None, http_client=httpx.AsyncClient())
    with pytest.raises(RealtimeSessionError):
        await factory.create("instructions")


@pytest.mark.asyncio
async def test_create_fails_when_socket_does_not_connect():
    factory = RealtimeSessionFactory("sk-test", http_client=httpx.AsyncClient())
    factory.create_client_secret = AsyncMock(return_value="ek_1")
    with patch.object(RealtimeAudioClient, "connect", AsyncMock(return_value=False)):
        with pytest.raises(RealtimeSessionError):
            await factory.create("instructions")


@pytest.mark.asyncio
async def test_create_configures_the_session():
    factory = RealtimeSessionFactory("sk-test", voice="verse", http_client=httpx.AsyncClient())
    factory.create_client_secret = AsyncMock(return_value="ek_1")
    configure = AsyncMock(return_value=True)
    with patch.object(RealtimeAudioClient, "connect", AsyncMock(return_value=True)), patch.object(
        RealtimeAudioClient, "configure", configure
    ):
        client = await factory.create("Be kind.")
    assert client.client_secret == "ek_1"
    configure.assert_awaited_once_with("Be kind.", "verse")


@pytest.mark.asyncio
async def test_create_closes_client_when_configure_fails():
    factory = RealtimeSessionFactory("sk-test", http_client=httpx.AsyncClient())
    factory.create_client_secret = AsyncMock(return_value="ek_1")
    close = AsyncMock()
    with patch.object(RealtimeAudioClient, "connect", AsyncMock(return_value=True)), patch.object(
        RealtimeAudioClient, "configure", AsyncMock(return_value=False)
    ), patch.object(RealtimeAudioClient, "close", close):
        with pytest.raises(RealtimeSessionError):
            await factory.create("instructions")
    close.assert_awaited_once()


@pytest.mark.asyncio
async def test_create_closes_client_when_cancelled_during_configure():
    factory = RealtimeSessionFactory("sk-test", http_client=httpx.AsyncClient())
    factory.create_client_secret = AsyncMock(return_value="ek_1")
    configuring = asyncio.Event()

    async def slow_configure(instructions, voice):
        configuring.set()
        await asyncio.sleep(10)
        return True

    close = AsyncMock()
    with patch.object(RealtimeAudioClient, "connect", AsyncMock(return_value=True)), patch.object(
        RealtimeAudioClient, "configure", AsyncMock(side_effect=slow_configure)
    ), patch.object(RealtimeAudioClient, "close", close):
        task = asyncio.create_task(factory.create("hi"))
        await asyncio.wait_for(configuring.wait(), timeout=1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
    close.assert_awaited_once()


# Outbound events


@pytest.mark.asyncio
async def test_configure_sends_session_update():
    client = connected_client()
    assert await client.configure("Be brief.", "shimmer")
    event = client.ws.sent[0]
    assert event["type"] == "session.update"
    assert event["session"]["instructions"] == "Be brief."
    assert event["session"]["input_audio_format"] == "pcm16"
    assert event["session"]["turn_detection"]["type"] == "server_vad"


@pytest.mark.asyncio
async def test_send_audio_chunk_is_base64():
    client = connected_client()
    assert await client.send_audio_chunk(b"\x01\x02")
    assert client.ws.sent[0] == {"type": "input_audio_buffer.append", "audio": base64.b64encode(b"\x01\x02").decode()}


@pytest.mark.asyncio
async def test_request_response():
    client = connected_client()
    await client.request_response("Say hello")
    await client.request_response()
    assert client.ws.sent == [
        {"type": "response.create", "response": {"instructions": "Say hello"}},
        {"type": "response.create"},
    ]


@pytest.mark.asyncio
async def test_send_fails_when_not_connected():
    client = RealtimeAudioClient("ek_secret")
    assert await client.send_audio_chunk(b"\x00") is False


@pytest.mark.asyncio
async def test_send_fails_when_socket_closed():
    socket = FakeSocket()
    socket.send = AsyncMock(side_effect=ConnectionClosedOK(None, None))
    client = connected_client(socket)
    assert await client.send_audio_chunk(b"\x00") is False
    assert client.is_connected is False


# Inbound events


@pytest.mark.asyncio
async def test_audio_deltas_are_queued_and_bounded():
    client = connected_client()
    client.audio_queue = asyncio.Queue(maxsize=2)
    for chunk in (b"a", b"b", b"c"):
        await client._dispatch_event({"type": "response.audio.delta", "delta": base64.b64encode(chunk).decode()})
    assert [client.audio_queue.get_nowait() for _ in range(2)] == [b"b", b"c"]


@pytest.mark.asyncio
async def test_handlers_receive_events():
    transcripts, started = [], []

    async def on_transcript(role, text):
        transcripts.append((role, text))

    async def on_speech_started():
        started.append(True)

    client = connected_client()
    client.set_event_handlers(transcript_handler=on_transcript, speech_started_handler=on_speech_started)
    await client._dispatch_event(
        {"type": "conversation.item.input_audio_transcription.completed", "transcript": "I have asthma"}
    )
    await client._dispatch_event({"type": "response.audio_transcript.done", "transcript": "Thanks."})
    await client._dispatch_event({"type": "input_audio_buffer.speech_started"})
    await client._dispatch_event({"type": "error", "error": {"message": "bad"}})
    await client._dispatch_event({"type": "session.created"})

    assert transcripts == [("user", "I have asthma"), ("assistant", "Thanks.")]
    assert started == [True]


@pytest.mark.asyncio
async def test_receive_loop_reports_lost_connection():
    lost = []

    async def on_lost():
        lost.append(True)

    socket = FakeSocket(["not json", json.dumps({"type": "response.audio.delta", "delta": base64.b64encode(b"z").decode()})])
    client = connected_client(socket)
    client.set_event_handlers(connection_lost_handler=on_lost)

    await client._recv_loop()

    assert client.audio_queue.get_nowait() == b"z"
    assert client.is_connected is False
    assert lost == [True]


@pytest.mark.asyncio
async def test_close_is_idempotent():
    client = connected_client()
    client._recv_task = asyncio.create_task(asyncio.sleep(10))
    await client.close()
    await client.close()
    assert client._recv_task.cancelled()
    client.ws.close.assert_awaited_once()
    assert await client.connect() is False
