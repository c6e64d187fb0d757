import base64

import numpy as np
import pytest

from parley.app.services.audio.audio_processor import (
    calculate_rms,
    encode_base64_pcm16,
    float_to_pcm16,
    frame_duration_seconds,
    pcm16_to_float,
    resample_linear,
)


def test_rms_of_silence_is_zero(silent_frame):
    assert calculate_rms(silent_frame) == 0.0


def test_rms_of_tone_is_above_voice_threshold(voiced_frame, app_config):
    rms = calculate_rms(voiced_frame)

    assert rms > app_config.submission.amplitude_threshold
    assert rms == pytest.approx(0.3 / np.sqrt(2), rel=0.05)


def test_rms_of_empty_or_odd_frame():
    assert calculate_rms(b"") == 0.0
    assert calculate_rms(b"\x01") == 0.0


def test_pcm16_round_trip_preserves_samples():
    samples = np.array([0, 1000, -1000, 32767, -32768], dtype="<i2")

    decoded = pcm16_to_float(samples.tobytes())

    assert float_to_pcm16(decoded) == samples.tobytes()


def test_float_to_pcm16_clips_out_of_range():
    encoded = np.frombuffer(float_to_pcm16(np.array([2.0, -2.0], dtype=np.float32)), dtype="<i2")

    assert encoded.tolist() == [32767, -32768]


def test_resample_produces_requested_length():
    samples = np.sin(np.linspace(0, 2 * np.pi, 2048)).astype(np.float32)

    resampled = resample_linear(samples, 48000, 24000, target_length=1024)

    assert resampled.shape == (1024,)
    assert resampled.dtype == np.float32


def test_resample_defaults_to_rate_scaled_length():
    samples = np.zeros(441, dtype=np.float32)

    assert len(resample_linear(samples, 44100, 24000)) == 240


def test_resample_identity_and_empty():
    samples = np.ones(16, dtype=np.float32)

    assert resample_linear(samples, 24000, 24000) is not None
    assert np.array_equal(resample_linear(samples, 24000, 24000), samples)
    assert len(resample_linear(np.array([], dtype=np.float32), 48000, 24000, target_length=8)) == 8


def test_base64_encoding_and_duration(voiced_frame):
    assert base64.b64decode(encode_base64_pcm16(voiced_frame)) == voiced_frame
    assert frame_duration_seconds(voiced_frame, 24000) == pytest.approx(1024 / 24000)
