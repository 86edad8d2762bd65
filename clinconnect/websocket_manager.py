"""
WebSocket connection manager for Twilio Media Streams.

This module implements the server side of the Twilio Media Streams socket:
- Accept the connection and tune the socket for low latency
- Parse every inbound message into a typed stream frame
- Discard malformed frames without dropping the call
- Feed frames to a per-call TwilioRealtimeBridge
- Drain the bridge's outbound frames to Twilio from a dedicated writer task
- Tear the bridge down before the socket is closed

Each socket gets its own bridge; the only state shared between calls is the
call session registry.
"""

import asyncio
import logging
import socket
from typing import Set

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from clinconnect.bot.realtime_api import RealtimeSessionFactory
from clinconnect.bot.twilio_realtime_bridge import TwilioRealtimeBridge
from clinconnect.config.constants import DEFAULT_STREAM_BUFFER_FRAMES, LOGGER_NAME
from clinconnect.models.call_session import CallSessionRegistry
from clinconnect.models.stream_frames import (
    FrameParseError,
    StopFrame,
    UnknownEventError,
    parse_frame,
    serialize_frame,
)

logger = logging.getLogger(LOGGER_NAME)

# Seconds the writer gets to flush the last frames (e.g. an error mark)
WRITER_DRAIN_TIMEOUT = 2.0


class WebSocketManager:
    """Runs the receive loop of every Twilio media stream socket."""

    def __init__(
        self,
        registry: CallSessionRegistry,
        session_factory: RealtimeSessionFactory,
        buffer_frames: int = DEFAULT_STREAM_BUFFER_FRAMES,
    ):
        self.registry = registry
        self.session_factory = session_factory
        self.buffer_frames = buffer_frames
        self.active_bridges: Set[TwilioRealtimeBridge] = set()

    def create_bridge(self) -> TwilioRealtimeBridge:
        return TwilioRealtimeBridge(self.registry, self.session_factory, self.buffer_frames)

    async def _optimize_socket(self, websocket: WebSocket) -> None:
        """
        Optimize the WebSocket's underlying TCP socket for low-latency transmission.

        Args:
            websocket: The FastAPI WebSocket connection
        """
        try:
            client = websocket.client
            if hasattr(client, "sock") and client.sock is not None:
                # Disable Nagle's algorithm to send packets immediately
                client.sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
                logger.info("Optimized socket: TCP_NODELAY enabled for low latency")
        except OSError as e:
            logger.warning(f"Could not optimize socket: {e}")

    async def _write_frames(self, websocket: WebSocket, bridge: TwilioRealtimeBridge) -> None:
        """Send the bridge's outbound frames until it signals the end with None."""
        while True:
            frame = await bridge.outbound.get()
            if frame is None:
                break
            try:
                await websocket.send_text(serialize_frame(frame))
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.info(f"Stopped writing to stream {bridge.stream_sid}: {e}")
                break

    async def _finish_writer(self, writer: asyncio.Task) -> None:
        try:
            await asyncio.wait_for(writer, timeout=WRITER_DRAIN_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("Outbound writer did not drain in time, cancelled")

    async def handle_websocket(self, websocket: WebSocket) -> None:
        """Handle a media stream socket throughout its lifecycle.

        Args:
            websocket (WebSocket): The FastAPI WebSocket connection object

        This method:
        1. Accepts the WebSocket connection
        2. Parses each message; malformed frames are logged and skipped
        3. Hands valid frames to the call's bridge
        4. Stops on a stop frame or when Twilio disconnects
        5. Closes the bridge (and its model session) before closing the socket
        """
        await websocket.accept()
        await self._optimize_socket(websocket)
        logger.info("Media stream connection established")

        bridge = self.create_bridge()
        self.active_bridges.add(bridge)
        writer = asyncio.create_task(self._write_frames(websocket, bridge))

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    frame = parse_frame(raw)
                except UnknownEventError as e:
                    logger.debug(f"Ignoring frame with unknown event {e.event!r}")
                    continue
                except FrameParseError as e:
                    logger.warning(f"Discarding malformed frame: {e}")
                    continue

                await bridge.handle_frame(frame)
                if isinstance(frame, StopFrame):
                    break
        except WebSocketDisconnect:
            logger.info(f"Twilio disconnected stream {bridge.stream_sid}")
        except Exception as e:
            logger.error(f"Error in media stream connection: {e}", exc_info=True)
        finally:
            await bridge.close()
            self.active_bridges.discard(bridge)
            await self._finish_writer(writer)
            if websocket.application_state != WebSocketState.DISCONNECTED and websocket.client_state != WebSocketState.DISCONNECTED:
                await websocket.close()
            logger.info("Media stream connection closed")
