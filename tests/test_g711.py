import numpy as np

from clinconnect.audio.g711 import (
    decode_mulaw,
    encode_mulaw,
    linear_to_mulaw,
    mulaw_to_linear,
    quantization_step,
)

ALL_SAMPLES = np.arange(-32768, 32768, dtype=np.int32)


def test_silence_encodes_to_ff():
    assert linear_to_mulaw(0) == 0xFF
    assert mulaw_to_linear(0xFF) == 0


def test_extremes_clip_to_largest_band():
    assert linear_to_mulaw(32767) == 0x80
    assert linear_to_mulaw(-32768) == 0x00
    assert mulaw_to_linear(0x80) == -mulaw_to_linear(0x00)


def test_sign_is_symmetric():
    for sample in (1, 100, 1000, 12345, 30000):
        assert mulaw_to_linear(linear_to_mulaw(-sample)) == -mulaw_to_linear(linear_to_mulaw(sample))


def test_round_trip_error_within_quantization_step():
    """Every int16 value decodes to within one quantization step of itself."""
    encoded = np.frombuffer(encode_mulaw(ALL_SAMPLES), dtype=np.uint8)
    decoded = decode_mulaw(encoded.tobytes()).astype(np.int32)
    steps = np.array([quantization_step(int(b)) for b in range(256)])[encoded]
    assert np.all(np.abs(decoded - ALL_SAMPLES) <= steps)


def test_decoded_values_are_int16():
    decoded = [mulaw_to_linear(b) for b in range(256)]
    assert min(decoded) >= -32768
    assert max(decoded) <= 32767


def test_vectorised_encoder_matches_scalar():
    samples = ALL_SAMPLES[::97]
    expected = bytes(linear_to_mulaw(int(s)) for s in samples)
    assert encode_mulaw(samples) == expected


def test_vectorised_decoder_matches_scalar():
    payload = bytes(range(256))
    assert decode_mulaw(payload).tolist() == [mulaw_to_linear(b) for b in payload]


def test_empty_payloads():
    assert decode_mulaw(b"").size == 0
    assert encode_mulaw(np.zeros(0, dtype=np.int16)) == b""


def test_encoding_is_monotonic_in_magnitude():
    positive = ALL_SAMPLES[ALL_SAMPLES >= 0][::13]
    decoded = decode_mulaw(encode_mulaw(positive)).astype(np.int32)
    assert np.all(np.diff(decoded) >= 0)
