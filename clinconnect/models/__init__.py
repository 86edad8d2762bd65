"""
Models module for data structures and state management in the voice bridge.

Key components:
- stream_frames: Pydantic models for the Twilio Media Streams protocol, with
  parse_frame / serialize_frame and helpers for outbound frames.
- call_session: Per-call state (active agent, history, context) and the
  registry that owns every session in the process.

Usage examples:
```python
from clinconnect.models import CallSessionRegistry, parse_frame

registry = CallSessionRegistry()
session = registry.get_or_create("CA123")
session.add_turn("user", "Hello")

frame = parse_frame('{"event": "mark", "streamSid": "MZ1", "mark": {"name": "greeting_ready"}}')
```
"""

from clinconnect.models.call_session import CallSession, CallSessionRegistry, Turn, run_periodic_sweep
from clinconnect.models.stream_frames import (
    ClearFrame,
    ConnectedFrame,
    FrameParseError,
    MarkFrame,
    MediaFrame,
    StartFrame,
    StopFrame,
    StreamFrame,
    UnknownEventError,
    clear_frame,
    mark_frame,
    media_frame,
    parse_frame,
    serialize_frame,
)
