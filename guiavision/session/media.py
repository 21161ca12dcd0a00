"""Value types exchanged between the capture, transport and playback sides."""
from __future__ import annotations

import base64
from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class AudioChunk:
    """Decoded block of playable audio.

    ``samples`` is a read-only float32 array shaped ``(frames, channels)``.
    """

    samples: np.ndarray
    sample_rate: int
    channels: int = 1

    def __post_init__(self) -> None:
        if self.sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        samples = np.asarray(self.samples, dtype=np.float32)
        if samples.ndim == 1:
            samples = samples.reshape(-1, 1)
        if samples.shape[1] != self.channels:
            raise ValueError(f"expected {self.channels} channel(s), got {samples.shape[1]}")
        if samples.flags.writeable:
            samples = samples.copy()
            samples.setflags(write=False)
        object.__setattr__(self, "samples", samples)

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration(self) -> float:
        return self.frames / self.sample_rate

    def mono(self) -> np.ndarray:
        """Down-mixed 1-D view of the samples."""
        if self.channels == 1:
            return self.samples[:, 0]
        return self.samples.mean(axis=1)


@dataclass(frozen=True)
class MediaBlob:
    """Outbound media payload: raw bytes plus their mime type."""

    data: bytes
    mime_type: str

    def to_payload(self) -> dict:
        return {
            "media": {
                "data": base64.b64encode(self.data).decode("ascii"),
                "mimeType": self.mime_type,
            }
        }
