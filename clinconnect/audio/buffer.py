"""
Bounded buffers of 16-bit PCM samples.

An AudioBuffer collects decoded samples in arrival order. Samples are never
reordered; when a bound is set, the oldest samples are discarded first.
"""

import logging
from typing import Optional

import numpy as np

from clinconnect.audio.g711 import INT16_MAX, INT16_MIN, decode_mulaw, encode_mulaw
from clinconnect.config.constants import LOGGER_NAME, TWILIO_SAMPLE_RATE

logger = logging.getLogger(LOGGER_NAME)


class AudioBuffer:
    """Ordered mono int16 samples at a fixed sample rate, optionally bounded."""

    def __init__(
        self,
        sample_rate: int = TWILIO_SAMPLE_RATE,
        max_samples: Optional[int] = None,
        samples: Optional[np.ndarray] = None,
    ):
        if max_samples is not None and max_samples <= 0:
            raise ValueError("max_samples must be positive")
        self.sample_rate = sample_rate
        self.max_samples = max_samples
        self.dropped_samples = 0
        self._samples = np.zeros(0, dtype=np.int16)
        if samples is not None:
            self.extend(samples)

    @classmethod
    def from_mulaw(
        cls,
        payload: bytes,
        sample_rate: int = TWILIO_SAMPLE_RATE,
        max_samples: Optional[int] = None,
    ) -> "AudioBuffer":
        """Build a buffer by decoding a μ-law payload."""
        return cls(sample_rate, max_samples, decode_mulaw(payload))

    @classmethod
    def from_pcm16(
        cls,
        data: bytes,
        sample_rate: int,
        max_samples: Optional[int] = None,
    ) -> "AudioBuffer":
        """Build a buffer from little-endian 16-bit PCM bytes."""
        if len(data) % 2:
            logger.debug(f"Dropping trailing odd byte from {len(data)}-byte PCM chunk")
            data = data[:-1]
        return cls(sample_rate, max_samples, np.frombuffer(data, dtype="<i2"))

    @property
    def samples(self) -> np.ndarray:
        return self._samples

    def __len__(self) -> int:
        return int(self._samples.size)

    @property
    def duration_ms(self) -> float:
        return 1000.0 * len(self) / self.sample_rate

    def extend(self, samples) -> None:
        """Append samples, discarding the oldest ones beyond the bound."""
        incoming = np.asarray(samples, dtype=np.int16)
        combined = np.concatenate((self._samples, incoming))
        if self.max_samples is not None and combined.size > self.max_samples:
            overflow = combined.size - self.max_samples
            self.dropped_samples += overflow
            combined = combined[overflow:]
        self._samples = combined

    def resample(self, target_rate: int) -> "AudioBuffer":
        """Return a copy at ``target_rate`` using linear interpolation."""
        if target_rate == self.sample_rate or len(self) == 0:
            return AudioBuffer(target_rate, None, self._samples.copy())

        out_length = int(round(len(self) * target_rate / self.sample_rate))
        positions = np.arange(out_length) * (self.sample_rate / target_rate)
        resampled = np.interp(positions, np.arange(len(self)), self._samples.astype(np.float64))
        resampled = np.clip(np.rint(resampled), INT16_MIN, INT16_MAX).astype(np.int16)
        return AudioBuffer(target_rate, None, resampled)

    def to_pcm16(self) -> bytes:
        """Little-endian 16-bit PCM bytes."""
        return self._samples.astype("<i2").tobytes()

    def to_mulaw(self) -> bytes:
        return encode_mulaw(self._samples)
