"""PCM16 helpers: level metering, resampling and base64 packing for the wire."""
import base64

import numpy as np

PCM16_SCALE = 32768.0


def pcm16_to_float(frame: bytes) -> np.ndarray:
    """Decode little-endian int16 PCM into float32 samples in [-1.0, 1.0)."""
    samples = np.frombuffer(frame, dtype="<i2")
    return samples.astype(np.float32) / PCM16_SCALE


def float_to_pcm16(samples: np.ndarray) -> bytes:
    """Encode float samples into little-endian int16 PCM with hard clipping."""
    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 32767.0 / PCM16_SCALE)
    return (clipped * PCM16_SCALE).astype("<i2").tobytes()


def calculate_rms(frame: bytes) -> float:
    """RMS level of a PCM16 frame, normalized to 0.0-1.0. Empty frames are silent."""
    if len(frame) < 2:
        return 0.0
    samples = pcm16_to_float(frame[: len(frame) - (len(frame) % 2)])
    return float(np.sqrt(np.mean(samples**2)))


def resample_linear(samples: np.ndarray, source_rate: int, target_rate: int, target_length: int = None) -> np.ndarray:
    """Linear-interpolation resampler for mono float blocks.

    Args:
        samples: Mono input block.
        source_rate: Sample rate of ``samples``.
        target_rate: Desired sample rate.
        target_length: Exact output length. Defaults to the rate-scaled input length.

    Returns:
        Resampled float32 block.
    """
    samples = np.asarray(samples, dtype=np.float32).reshape(-1)
    if target_length is None:
        target_length = int(round(len(samples) * target_rate / source_rate))
    if len(samples) == 0 or target_length <= 0:
        return np.zeros(max(target_length, 0), dtype=np.float32)
    if source_rate == target_rate and len(samples) == target_length:
        return samples

    source_positions = np.linspace(0.0, 1.0, num=len(samples), endpoint=False)
    target_positions = np.linspace(0.0, 1.0, num=target_length, endpoint=False)
    return np.interp(target_positions, source_positions, samples).astype(np.float32)


def encode_base64_pcm16(frame: bytes) -> str:
    return base64.b64encode(frame).decode("ascii")


def frame_duration_seconds(frame: bytes, sample_rate: int) -> float:
    return (len(frame) // 2) / float(sample_rate)
