import asyncio
import base64
import json

import pytest
from fastapi import WebSocketDisconnect
from starlette.websockets import WebSocketState

from clinconnect.models.call_session import CallSessionRegistry
from clinconnect.websocket_manager import WebSocketManager

from tests.fakes import FakeSessionFactory

START = json.dumps(
    {"event": "start", "streamSid": "MZ1", "start": {"streamSid": "MZ1", "callSid": "CA1", "accountSid": "AC1"}}
)
MEDIA = json.dumps(
    {"event": "media", "streamSid": "MZ1", "media": {"track": "inbound", "payload": base64.b64encode(b"\xff" * 160).decode()}}
)
STOP = json.dumps({"event": "stop", "streamSid": "MZ1", "stop": {"callSid": "CA1"}})


class FakeWebSocket:
    """Scripted server-side socket."""

    def __init__(self, script):
        self.script = list(script)
        self.sent = []
        self.accepted = False
        self.closed = False
        self.client = None
        self.application_state = WebSocketState.CONNECTING
        self.client_state = WebSocketState.CONNECTED

    async def accept(self):
        self.accepted = True
        self.application_state = WebSocketState.CONNECTED

    async def receive_text(self):
        # Let background tasks (model acquisition, writer) make progress between frames
        await asyncio.sleep(0.01)
        if not self.script:
            self.client_state = WebSocketState.DISCONNECTED
            raise WebSocketDisconnect(code=1000)
        return self.script.pop(0)

    async def send_text(self, text):
        self.sent.append(json.loads(text))

    async def close(self, code=1000):
        self.closed = True
        self.application_state = WebSocketState.DISCONNECTED


def manager_with_ready_model():
    factory = FakeSessionFactory()
    factory.ready.set()
    registry = CallSessionRegistry()
    return WebSocketManager(registry, factory), factory, registry


@pytest.mark.asyncio
async def test_full_stream_lifecycle():
    manager, factory, registry = manager_with_ready_model()
    websocket = FakeWebSocket(['{"event": "connected", "protocol": "Call"}', START, MEDIA, STOP])

    await manager.handle_websocket(websocket)

    assert websocket.accepted
    assert websocket.closed
    assert {"event": "mark", "streamSid": "MZ1", "mark": {"name": "greeting_ready"}} in websocket.sent
    assert len(factory.model.sent) == 1
    assert factory.model.close_calls == 1
    assert manager.active_bridges == set()
    assert registry.get("CA1").stream_sid == "MZ1"


@pytest.mark.asyncio
async def test_malformed_frames_do_not_end_the_call():
    manager, factory, _ = manager_with_ready_model()
    websocket = FakeWebSocket([START, "{broken", '{"event": "dtmf"}', '{"event": "media", "media": {"payload": "%%%"}}', MEDIA, STOP])

    await manager.handle_websocket(websocket)

    assert len(factory.model.sent) == 1
    assert factory.model.close_calls == 1


@pytest.mark.asyncio
async def test_peer_disconnect_still_releases_model():
    manager, factory, _ = manager_with_ready_model()
    websocket = FakeWebSocket([START, MEDIA])

    await manager.handle_websocket(websocket)

    assert factory.model.close_calls == 1
    assert manager.active_bridges == set()
    assert websocket.closed is False


@pytest.mark.asyncio
async def test_model_failure_sends_error_mark_before_closing():
    factory = FakeSessionFactory(error=None)
    factory.ready.set()
    factory.model.send_ok = False
    manager = WebSocketManager(CallSessionRegistry(), factory)
    websocket = FakeWebSocket([START, MEDIA, MEDIA])

    await manager.handle_websocket(websocket)

    marks = [frame["mark"]["name"] for frame in websocket.sent if frame["event"] == "mark"]
    assert "error_occurred" in marks
    assert factory.model.close_calls == 1


def test_create_bridge_shares_registry():
    manager, factory, registry = manager_with_ready_model()
    bridge = manager.create_bridge()
    assert bridge.registry is registry
    assert bridge.session_factory is factory
