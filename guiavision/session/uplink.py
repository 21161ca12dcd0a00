"""Continuous microphone capture → PCM encode → send loop."""
from __future__ import annotations

import asyncio
from typing import Callable, List, Optional

import av  # type: ignore
from av.error import FFmpegError  # type: ignore
import numpy as np  # type: ignore
from aiortc import MediaStreamTrack  # type: ignore
from aiortc.mediastreams import MediaStreamError  # type: ignore

from guiavision.logging_config import get_logger
from .media import MediaBlob
from .pcm import encode_pcm16

logger = get_logger(__name__)


class AudioUplink:
    """Resamples microphone frames to mono float and sends fixed-size PCM frames.

    The loop is a task owned by the orchestrator: :meth:`stop` cancels it and
    drops any partially filled block, so no audio leaves after the session ends.
    """

    def __init__(
        self,
        track: MediaStreamTrack,
        send: Callable[[MediaBlob], None],
        *,
        sample_rate: int = 16000,
        block_size: int = 4096,
    ) -> None:
        self._track = track
        self._send = send
        self._sample_rate = sample_rate
        self._block_size = block_size
        self._resampler = av.AudioResampler(format="flt", layout="mono", rate=sample_rate)
        self._pending = np.zeros(0, dtype=np.float32)
        self._task: Optional[asyncio.Task] = None
        self.blocks_sent = 0
        self.frames_skipped = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.ensure_future(self._run())
        logger.info("Audio uplink started (%d Hz, %d samples/block)", self._sample_rate, self._block_size)

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self._pending = np.zeros(0, dtype=np.float32)

    async def _run(self) -> None:
        while True:
            try:
                frame = await self._track.recv()
            except MediaStreamError:
                logger.info("Microphone track ended")
                return
            for samples in self._to_samples(frame):
                self.push(samples)

    def _to_samples(self, frame) -> List[np.ndarray]:
        try:
            out = self._resampler.resample(frame)
        except (FFmpegError, ValueError) as exc:
            self.frames_skipped += 1
            logger.warning(f"Microphone frame skipped -> {exc!r}")
            return []
        if not isinstance(out, list):
            out = [out] if out is not None else []
        return [f.to_ndarray().reshape(-1).astype(np.float32, copy=False) for f in out]

    def push(self, samples: np.ndarray) -> None:
        """Accumulate ``samples`` and send every complete block."""
        self._pending = np.concatenate((self._pending, samples))
        while len(self._pending) >= self._block_size:
            block = self._pending[:self._block_size]
            self._pending = self._pending[self._block_size:]
            self._send(encode_pcm16(block, self._sample_rate))
            self.blocks_sent += 1
