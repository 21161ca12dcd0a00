"""Periodic still-frame sampling from the live camera track."""
from __future__ import annotations

import asyncio
import io
from typing import Any, Callable, Optional, Set

from aiortc import MediaStreamTrack  # type: ignore
from aiortc.mediastreams import MediaStreamError  # type: ignore

from guiavision.logging_config import get_logger
from .constants import JPEG_MIME
from .media import MediaBlob

logger = get_logger(__name__)

Encoder = Callable[[Any, float, int], bytes]


def jpeg_quality_percent(quality: float) -> int:
    """Map a 0..1 quality factor onto Pillow's 1..95 JPEG scale."""
    return max(1, min(95, int(round(quality * 100))))


def encode_jpeg(frame, quality: float = 0.6, max_width: int = 640) -> bytes:
    """Downscale an ``av.VideoFrame`` to ``max_width`` and JPEG-encode it."""
    image = frame.to_image()
    if max_width and image.width > max_width:
        height = max(1, round(image.height * max_width / image.width))
        image = image.resize((max_width, height))
    buf = io.BytesIO()
    image.save(buf, format="JPEG", quality=jpeg_quality_percent(quality))
    return buf.getvalue()


class FrameSampler:
    """Sends the latest camera frame as JPEG on a fixed cadence.

    Each tick encodes in its own task; a tick never waits for an earlier one.
    A finished encode is sent at once, a failed one is dropped. Nothing is
    sent once :meth:`stop` has been called.
    """

    def __init__(
        self,
        track: MediaStreamTrack,
        send: Callable[[MediaBlob], None],
        *,
        fps: float = 1.0,
        quality: float = 0.6,
        max_width: int = 640,
        encoder: Encoder = encode_jpeg,
    ) -> None:
        if fps <= 0:
            raise ValueError("fps must be positive")
        self._track = track
        self._send = send
        self._interval = 1.0 / fps
        self._quality = quality
        self._max_width = max_width
        self._encoder = encoder
        self._latest = None
        self._ticks = 0
        self._reader: Optional[asyncio.Task] = None
        self._ticker: Optional[asyncio.Task] = None
        self._in_flight: Set[asyncio.Task] = set()
        self._stopped = False
        self.sent = 0
        self.dropped = 0

    @property
    def running(self) -> bool:
        return self._ticker is not None

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def start(self) -> None:
        if self._ticker is not None:
            return
        self._stopped = False
        self._reader = asyncio.ensure_future(self._read_frames())
        self._ticker = asyncio.ensure_future(self._tick_forever())
        logger.info("Frame sampler started (interval=%.2fs)", self._interval)

    def stop(self) -> None:
        self._stopped = True
        for task in (self._reader, self._ticker, *self._in_flight):
            if task is not None and not task.done():
                task.cancel()
        self._reader = None
        self._ticker = None
        self._in_flight.clear()
        self._latest = None

    async def _read_frames(self) -> None:
        """Drain the camera track, keeping only the newest frame."""
        while True:
            try:
                self._latest = await self._track.recv()
            except MediaStreamError:
                logger.info("Camera track ended")
                return

    async def _tick_forever(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time()
        while True:
            deadline += self._interval
            await asyncio.sleep(max(0.0, deadline - loop.time()))
            self.tick()

    def tick(self) -> Optional[asyncio.Task]:
        """Capture the current frame and start its encode without waiting."""
        frame = self._latest
        if frame is None or self._stopped:
            return None
        self._ticks += 1
        task = asyncio.ensure_future(self._encode_and_send(self._ticks, frame))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    def push_frame(self, frame) -> None:
        self._latest = frame

    async def _encode_and_send(self, tick: int, frame) -> None:
        loop = asyncio.get_running_loop()
        try:
            data = await loop.run_in_executor(None, self._encoder, frame, self._quality, self._max_width)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            self.dropped += 1
            logger.warning(f"Frame {tick} encode failed, dropped -> {exc!r}")
            return
        if self._stopped:
            return
        self._send(MediaBlob(data=data, mime_type=JPEG_MIME))
        self.sent += 1
        logger.debug("Frame %d sent (%d bytes)", tick, len(data))
