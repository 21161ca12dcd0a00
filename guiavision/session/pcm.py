"""PCM wire codec: float samples to 16-bit frames and back."""
from __future__ import annotations

from typing import Sequence, Union

import numpy as np

from guiavision.errors import AudioDecodeError
from .constants import PCM16_MAX, PCM16_SCALE, pcm_mime_type
from .media import AudioChunk, MediaBlob


def encode_pcm16(samples: Union[np.ndarray, Sequence[float]], sample_rate: int = 16000) -> MediaBlob:
    """Convert float samples in [-1.0, 1.0] into a little-endian int16 frame.

    Out-of-range samples are clamped. The output has exactly one 16-bit
    sample per input sample.
    """
    arr = np.asarray(samples, dtype=np.float32).reshape(-1)
    arr = np.nan_to_num(arr, nan=0.0, posinf=1.0, neginf=-1.0)
    clipped = np.clip(arr, -1.0, 1.0)
    pcm = np.round(clipped * PCM16_MAX).astype("<i2")
    return MediaBlob(data=pcm.tobytes(), mime_type=pcm_mime_type(sample_rate))


def decode_pcm16(data: bytes, sample_rate: int = 24000, channels: int = 1) -> AudioChunk:
    """Turn a raw little-endian int16 payload into an :class:`AudioChunk`."""
    if not data:
        raise AudioDecodeError("empty audio payload")
    frame_bytes = 2 * channels
    if len(data) % frame_bytes:
        raise AudioDecodeError(
            f"audio payload of {len(data)} bytes is not a multiple of {frame_bytes}"
        )
    pcm = np.frombuffer(data, dtype="<i2")
    samples = (pcm.astype(np.float32) / PCM16_SCALE).reshape(-1, channels)
    return AudioChunk(samples=samples, sample_rate=sample_rate, channels=channels)
