"""
Pydantic models for Twilio Media Streams frames.

This module defines structured data models for the JSON messages exchanged over the
Media Streams WebSocket, together with the codec that turns raw socket text into
typed frames and back. Every message carries exactly one ``event`` tag:

- connected: first message on a new socket
- start: stream metadata (streamSid, callSid, accountSid, tracks, media format)
- media: one chunk of base64-encoded μ-law audio
- mark: a named checkpoint in the audio stream
- stop: the stream (and usually the call) has ended
- clear: outbound only, asks Twilio to drop audio it has queued for playback
"""

import base64
import binascii
import json
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from clinconnect.config.constants import (
    EVENT_CLEAR,
    EVENT_CONNECTED,
    EVENT_MARK,
    EVENT_MEDIA,
    EVENT_START,
    EVENT_STOP,
    TWILIO_MEDIA_ENCODING,
    TWILIO_SAMPLE_RATE,
)

KNOWN_EVENTS = frozenset(
    {EVENT_CONNECTED, EVENT_START, EVENT_MEDIA, EVENT_MARK, EVENT_STOP, EVENT_CLEAR}
)


class FrameParseError(ValueError):
    """Raised when socket text cannot be turned into a stream frame."""


class UnknownEventError(FrameParseError):
    """Raised for well-formed frames whose event tag is not recognised."""

    def __init__(self, event: str):
        super().__init__(f"Unknown stream event: {event}")
        self.event = event


# Base Models
class BaseFrame(BaseModel):
    """Base model for all Media Streams frames."""

    model_config = ConfigDict(extra="ignore")

    event: str = Field(..., description="Frame type identifier")
    sequenceNumber: Optional[str] = Field(
        None, description="Per-socket message counter assigned by Twilio"
    )
    streamSid: Optional[str] = Field(None, description="Unique stream identifier")


class ConnectedFrame(BaseFrame):
    """First message Twilio sends once the socket is open."""

    event: Literal["connected"]
    protocol: Optional[str] = None
    version: Optional[str] = None


class MediaFormat(BaseModel):
    """Audio encoding announced in the start frame."""

    encoding: str = TWILIO_MEDIA_ENCODING
    sampleRate: int = TWILIO_SAMPLE_RATE
    channels: int = 1


class StartMetadata(BaseModel):
    """Body of the start frame."""

    streamSid: str = Field(..., description="Stream identifier used on every later frame")
    accountSid: Optional[str] = Field(None, description="Twilio account")
    callSid: str = Field(..., description="Call the stream belongs to")
    tracks: List[str] = Field(default_factory=lambda: ["inbound"])
    mediaFormat: MediaFormat = Field(default_factory=MediaFormat)
    customParameters: Dict[str, str] = Field(default_factory=dict)


class StartFrame(BaseFrame):
    """Model for the start frame: binds the socket to one call."""

    event: Literal["start"]
    start: StartMetadata

    @property
    def stream_id(self) -> str:
        return self.start.streamSid

    @property
    def call_id(self) -> str:
        return self.start.callSid

    @property
    def account_id(self) -> Optional[str]:
        return self.start.accountSid


class MediaPayload(BaseModel):
    """Body of a media frame."""

    track: Optional[str] = Field(None, description="inbound or outbound")
    chunk: Optional[str] = Field(None, description="Chunk sequence number on the track")
    timestamp: Optional[str] = Field(None, description="Milliseconds since stream start")
    payload: str = Field(..., description="Base64-encoded μ-law audio")

    @field_validator("payload")
    def validate_payload(cls, v):
        """Validate that the payload is valid base64."""
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("Invalid base64 encoded audio data")
        return v


class MediaFrame(BaseFrame):
    """Model for a media frame carrying audio in either direction."""

    event: Literal["media"]
    media: MediaPayload

    @property
    def audio(self) -> bytes:
        return base64.b64decode(self.media.payload)

    @property
    def track(self) -> str:
        return self.media.track or "inbound"

    @property
    def chunk_seq(self) -> Optional[int]:
        return int(self.media.chunk) if self.media.chunk and self.media.chunk.isdigit() else None

    @property
    def timestamp_ms(self) -> Optional[int]:
        if self.media.timestamp and self.media.timestamp.isdigit():
            return int(self.media.timestamp)
        return None


class MarkPayload(BaseModel):
    name: str = Field(..., description="Checkpoint name")


class MarkFrame(BaseFrame):
    """Model for a mark frame (sent to Twilio, echoed back once played)."""

    event: Literal["mark"]
    mark: MarkPayload


class StopMetadata(BaseModel):
    accountSid: Optional[str] = None
    callSid: Optional[str] = None


class StopFrame(BaseFrame):
    """Model for the stop frame that ends a stream."""

    event: Literal["stop"]
    stop: Optional[StopMetadata] = None


class ClearFrame(BaseFrame):
    """Model for the clear frame that flushes queued playback on Twilio's side."""

    event: Literal["clear"]


# Union type for every frame variant
StreamFrame = Annotated[
    Union[ConnectedFrame, StartFrame, MediaFrame, MarkFrame, StopFrame, ClearFrame],
    Field(discriminator="event"),
]

_FRAME_ADAPTER = TypeAdapter(StreamFrame)

# Frames we send must say which call leg they belong to
_REQUIRES_STREAM_SID = (MediaFrame, MarkFrame, ClearFrame)


def parse_frame(raw_text: Union[str, bytes]) -> StreamFrame:
    """
    Parse one socket message into a typed frame.

    Raises:
        FrameParseError: the text is not a JSON object, has no event tag, fails
            validation, or carries an undecodable payload.
        UnknownEventError: the event tag is not one we know about.
    """
    try:
        data = json.loads(raw_text)
    except (TypeError, ValueError) as e:
        raise FrameParseError(f"Frame is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise FrameParseError("Frame is not a JSON object")

    event = data.get("event")
    if not isinstance(event, str) or not event:
        raise FrameParseError("Frame has no event field")
    if event not in KNOWN_EVENTS:
        raise UnknownEventError(event)

    try:
        return _FRAME_ADAPTER.validate_python(data)
    except ValidationError as e:
        raise FrameParseError(f"Invalid {event} frame: {e}") from e


def serialize_frame(frame: BaseFrame) -> str:
    """Serialize a frame to socket text."""
    if isinstance(frame, _REQUIRES_STREAM_SID) and not frame.streamSid:
        raise ValueError(f"Outbound {frame.event} frame requires a streamSid")
    return frame.model_dump_json(exclude_none=True)


def media_frame(stream_sid: str, audio: bytes) -> MediaFrame:
    """Build an outbound media frame for the given stream."""
    return MediaFrame(
        event="media",
        streamSid=stream_sid,
        media=MediaPayload(payload=base64.b64encode(audio).decode("utf-8")),
    )


def mark_frame(stream_sid: str, name: str) -> MarkFrame:
    return MarkFrame(event="mark", streamSid=stream_sid, mark=MarkPayload(name=name))


def clear_frame(stream_sid: str) -> ClearFrame:
    return ClearFrame(event="clear", streamSid=stream_sid)
