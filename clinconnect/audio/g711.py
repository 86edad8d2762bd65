"""
ITU-T G.711 μ-law companding.

Twilio Media Streams carry 8-bit μ-law samples at 8 kHz, while the realtime
model consumes and produces 16-bit signed linear PCM. This module converts
between the two, one sample at a time or a whole payload at once.

Every byte and every int16 value is a valid input, so none of these functions
can fail. The transform is lossy: ``mulaw_to_linear(linear_to_mulaw(x))`` lands
on the midpoint of the quantisation band containing ``x``.
"""

import numpy as np

BIAS = 0x84  # 132
CLIP = 32635

INT16_MIN = -32768
INT16_MAX = 32767

# Highest set bit of (magnitude >> 7), i.e. the exponent band of a biased magnitude
_EXPONENT_TABLE = np.array(
    [max(i.bit_length() - 1, 0) for i in range(256)], dtype=np.int32
)


def linear_to_mulaw(sample: int) -> int:
    """Encode one signed 16-bit sample as a μ-law byte."""
    sign = 0x80 if sample < 0 else 0x00
    magnitude = min(abs(int(sample)) + BIAS, CLIP)

    exponent = magnitude.bit_length() - 8
    mantissa = (magnitude >> (exponent + 3)) & 0x0F

    return ~(sign | (exponent << 4) | mantissa) & 0xFF


def mulaw_to_linear(mulaw_byte: int) -> int:
    """Decode one μ-law byte to a signed 16-bit sample."""
    mulaw_byte = ~mulaw_byte & 0xFF
    sign = mulaw_byte & 0x80
    exponent = (mulaw_byte >> 4) & 0x07
    mantissa = mulaw_byte & 0x0F

    magnitude = (((mantissa << 3) + BIAS) << exponent) - BIAS
    return -magnitude if sign else magnitude


def quantization_step(mulaw_byte: int) -> int:
    """Width of the quantisation band a μ-law byte stands for."""
    exponent = ((~mulaw_byte & 0xFF) >> 4) & 0x07
    return 1 << (exponent + 3)


# Decoding is a pure table lookup
DECODE_TABLE = np.array([mulaw_to_linear(b) for b in range(256)], dtype=np.int16)


def decode_mulaw(payload: bytes) -> np.ndarray:
    """Decode a μ-law payload into an int16 sample array."""
    if not payload:
        return np.zeros(0, dtype=np.int16)
    return DECODE_TABLE[np.frombuffer(payload, dtype=np.uint8)]


def encode_mulaw(samples) -> bytes:
    """Encode a sequence of int16 samples into a μ-law payload."""
    samples = np.asarray(samples, dtype=np.int32)
    if samples.size == 0:
        return b""

    sign = np.where(samples < 0, 0x80, 0x00).astype(np.int32)
    magnitude = np.minimum(np.abs(samples) + BIAS, CLIP)

    exponent = _EXPONENT_TABLE[magnitude >> 7]
    mantissa = (magnitude >> (exponent + 3)) & 0x0F

    encoded = ~(sign | (exponent << 4) | mantissa) & 0xFF
    return encoded.astype(np.uint8).tobytes()
