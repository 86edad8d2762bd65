"""
Audio helpers for the Twilio <-> realtime model bridge.

- g711: μ-law companding, per sample and vectorised over whole payloads.
- buffer: bounded PCM sample buffers with resampling between the 8 kHz
  telephony rate and the 24 kHz model rate.
"""

from clinconnect.audio.buffer import AudioBuffer
from clinconnect.audio.g711 import (
    decode_mulaw,
    encode_mulaw,
    linear_to_mulaw,
    mulaw_to_linear,
    quantization_step,
)
