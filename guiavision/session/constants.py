"""Constants for live session media components."""
from __future__ import annotations

import fractions

__all__ = [
    "AUDIO_PTIME",
    "PCM_MIME_PREFIX",
    "JPEG_MIME",
    "PCM16_MAX",
    "PCM16_SCALE",
    "audio_time_base",
    "samples_per_ptime",
    "pcm_mime_type",
]

# 20 ms – packetization time of the output track
AUDIO_PTIME = 0.020

PCM_MIME_PREFIX = "audio/pcm"
JPEG_MIME = "image/jpeg"

# Largest positive int16 sample; used to scale float PCM
PCM16_MAX = 32767
# Divisor for int16 → float conversion, keeps -32768 at exactly -1.0
PCM16_SCALE = 32768.0


def audio_time_base(sample_rate: int) -> fractions.Fraction:
    """Time-base for audio frames at ``sample_rate``."""
    return fractions.Fraction(1, sample_rate)


def samples_per_ptime(sample_rate: int) -> int:
    """Number of PCM samples in a single 20 ms chunk."""
    return int(AUDIO_PTIME * sample_rate)


def pcm_mime_type(sample_rate: int) -> str:
    return f"{PCM_MIME_PREFIX};rate={sample_rate}"
