"""
Bot module bridging Twilio Media Streams with OpenAI's Realtime API.

Key components:
- RealtimeAudioClient: Client for one OpenAI Realtime session over WebSockets,
  streaming pcm16 audio in both directions and surfacing transcripts.
- RealtimeSessionFactory: Mints an ephemeral client secret and opens a
  configured RealtimeAudioClient with it.
- TwilioRealtimeBridge: Per-call state machine converting between Twilio's
  8 kHz μ-law frames and the model's 24 kHz pcm16 audio.

Usage examples:
```python
from clinconnect.bot import RealtimeSessionFactory, TwilioRealtimeBridge
from clinconnect.models.call_session import CallSessionRegistry

factory = RealtimeSessionFactory(api_key, model="gpt-4o-realtime-preview-2025-06-03")
bridge = TwilioRealtimeBridge(CallSessionRegistry(), factory)

async def on_message(raw_text):
    await bridge.handle_frame(parse_frame(raw_text))
    # frames for Twilio appear on bridge.outbound
```
"""

from clinconnect.bot.realtime_api import RealtimeAudioClient, RealtimeSessionError, RealtimeSessionFactory
from clinconnect.bot.twilio_realtime_bridge import StreamState, TwilioRealtimeBridge

__all__ = [
    "RealtimeAudioClient",
    "RealtimeSessionError",
    "RealtimeSessionFactory",
    "StreamState",
    "TwilioRealtimeBridge",
]
