"""Audio output: a paced aiortc track that plays scheduled chunks back to back."""
from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Callable, Deque, List, Optional

import av  # type: ignore
import numpy as np  # type: ignore
from aiortc import MediaStreamTrack  # type: ignore
from aiortc.contrib.media import MediaRecorder  # type: ignore
from aiortc.mediastreams import MediaStreamError  # type: ignore

from guiavision.errors import DeviceAcquisitionError
from guiavision.logging_config import get_logger
from .constants import AUDIO_PTIME, PCM16_MAX, audio_time_base, samples_per_ptime
from .media import AudioChunk

logger = get_logger(__name__)

__all__ = [
    "AudioOutput",
    "OutputTrack",
    "PlaybackHandle",
]


class _Queued:
    __slots__ = ("handle", "pcm", "offset")

    def __init__(self, handle: "PlaybackHandle", pcm: np.ndarray) -> None:
        self.handle = handle
        self.pcm = pcm
        self.offset = 0

    @property
    def remaining(self) -> int:
        return len(self.pcm) - self.offset


class OutputTrack(MediaStreamTrack):
    """Mono s16 audio track emitting one 20 ms frame per slot.

    Queued handles are played sample-contiguously: a frame may hold the tail
    of one chunk and the head of the next, so there is no silence between
    chunks. A handle is finished when its last sample leaves the track;
    stopped handles are skipped and silence fills an empty queue.
    """

    kind = "audio"

    def __init__(self, sample_rate: int):
        super().__init__()
        self._rate = sample_rate
        self._period = AUDIO_PTIME
        self._piece_samples = samples_per_ptime(sample_rate)
        self._tb = audio_time_base(sample_rate)
        self._pts: int = 0
        self._start: Optional[float] = None  # perf_counter timebase
        self._queue: Deque[_Queued] = deque()
        self.emitted_samples = 0

    @property
    def played_time(self) -> float:
        """Seconds of audio handed out so far, silence included."""
        return self.emitted_samples / self._rate

    @property
    def pending_samples(self) -> int:
        return sum(item.remaining for item in self._queue if not item.handle.stopped)

    @property
    def pending_pieces(self) -> int:
        return -(-self.pending_samples // self._piece_samples)

    def feed(self, handle: "PlaybackHandle", samples: np.ndarray) -> None:
        """Queue float mono ``samples`` for ``handle`` behind everything already queued."""
        pcm = np.round(np.clip(samples, -1.0, 1.0) * PCM16_MAX).astype(np.int16)
        self._queue.append(_Queued(handle, pcm))

    def discard(self, handle: "PlaybackHandle") -> None:
        self._queue = deque(item for item in self._queue if item.handle is not handle)

    def _next_piece(self) -> np.ndarray:
        piece = np.zeros(self._piece_samples, dtype=np.int16)
        filled = 0
        ended: List[PlaybackHandle] = []
        while filled < len(piece) and self._queue:
            item = self._queue[0]
            if item.handle.stopped:
                self._queue.popleft()
                continue
            item.handle._begin()
            take = min(len(piece) - filled, item.remaining)
            piece[filled:filled + take] = item.pcm[item.offset:item.offset + take]
            item.offset += take
            filled += take
            if not item.remaining:
                self._queue.popleft()
                ended.append(item.handle)
        self.emitted_samples += len(piece)
        for handle in ended:
            handle._finish()
        return piece

    async def _sleep_until_slot(self) -> None:
        """Sleep just enough to achieve a constant packet rate."""
        if self._start is None:
            self._start = time.perf_counter()
            return

        self._pts += int(self._rate * self._period)
        target = self._start + self._pts / self._rate
        now = time.perf_counter()
        delay = target - now

        if delay > 0:
            await asyncio.sleep(delay)
        elif delay < -0.12:
            # far behind schedule: move the base instead of bursting
            self._start = now - self._pts / self._rate

    async def recv(self):  # type: ignore[override]
        if self.readyState != "live":
            raise MediaStreamError

        await self._sleep_until_slot()

        piece = self._next_piece()
        frame = av.AudioFrame(format="s16", layout="mono", samples=len(piece))
        frame.planes[0].update(piece.tobytes())
        frame.sample_rate = self._rate
        frame.pts = self._pts
        frame.time_base = self._tb
        return frame

    def stop(self) -> None:  # type: ignore[override]
        super().stop()
        self._queue.clear()


class PlaybackHandle:
    """One scheduled playback of an :class:`AudioChunk`."""

    def __init__(
        self,
        chunk: AudioChunk,
        start_time: float,
        on_ended: Optional[Callable[["PlaybackHandle"], None]] = None,
    ) -> None:
        self.chunk = chunk
        self.start_time = start_time
        self.started = False
        self.stopped = False
        self.finished = False
        self._on_ended = on_ended
        self._track: Optional[OutputTrack] = None
        self._timers: List[asyncio.Handle] = []

    @property
    def end_time(self) -> float:
        return self.start_time + self.chunk.duration

    def stop(self) -> None:
        """Cancel the playback; audio not yet emitted is dropped. Safe to call twice."""
        if self.stopped or self.finished:
            return
        self.stopped = True
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()
        if self._track is not None:
            self._track.discard(self)

    def _begin(self) -> None:
        if not self.stopped:
            self.started = True

    def _finish(self) -> None:
        if self.stopped or self.finished:
            return
        self.started = True
        self.finished = True
        self._timers.clear()
        if self._on_ended is not None:
            self._on_ended(self)

    def __repr__(self) -> str:
        return f"<PlaybackHandle start={self.start_time:.3f} duration={self.chunk.duration:.3f}>"


class AudioOutput:
    """Output audio context: owns the playback clock and the output track.

    When the track is consumed (``device`` rendered through aiortc's
    ``MediaRecorder``, or ``external_sink`` for a caller that reads
    :attr:`track` itself) chunks are queued on the track and the clock is the
    amount of audio the track has emitted. Otherwise nothing is rendered:
    handles only run on event-loop timers and the clock is loop time since
    :meth:`open`.
    """

    def __init__(
        self,
        sample_rate: int = 24000,
        device: Optional[str] = None,
        device_format: Optional[str] = None,
        external_sink: bool = False,
    ) -> None:
        self.sample_rate = sample_rate
        self.track = OutputTrack(sample_rate)
        self._device = device
        self._device_format = device_format
        self._external_sink = external_sink
        self._recorder: Optional[MediaRecorder] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._origin: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self._origin is not None

    @property
    def rendering(self) -> bool:
        return self._external_sink or self._recorder is not None

    @property
    def current_time(self) -> float:
        if self._origin is None or self._loop is None:
            return 0.0
        if self.rendering:
            return self.track.played_time
        return max(0.0, self._loop.time() - self._origin)

    async def open(self) -> None:
        if self.is_open:
            return
        self._loop = asyncio.get_running_loop()
        if self._device:
            try:
                recorder = MediaRecorder(self._device, format=self._device_format)
                recorder.addTrack(self.track)
                await recorder.start()
            except Exception as exc:  # noqa: BLE001
                raise DeviceAcquisitionError(
                    f"cannot open audio output {self._device!r}: {exc}"
                ) from exc
            self._recorder = recorder
            logger.info("Audio output opened → %s (%s)", self._device, self._device_format)
        elif not self._external_sink:
            logger.info("No audio output device, replies are clocked but not played")
        self._origin = self._loop.time()

    def play(
        self,
        chunk: AudioChunk,
        start_at: float,
        on_ended: Optional[Callable[[PlaybackHandle], None]] = None,
    ) -> PlaybackHandle:
        """Play ``chunk`` at ``start_at`` seconds on the output clock.

        ``start_at`` must not be earlier than the end of the previously
        played chunk; the scheduler guarantees that.
        """
        if self._origin is None or self._loop is None:
            raise RuntimeError("audio output is not open")
        if chunk.sample_rate != self.sample_rate:
            logger.warning("Chunk rate %d differs from output rate %d", chunk.sample_rate, self.sample_rate)

        handle = PlaybackHandle(chunk, start_at, on_ended)
        if not chunk.frames:
            handle._timers = [self._loop.call_soon(handle._finish)]
        elif self.rendering:
            handle._track = self.track
            self.track.feed(handle, chunk.mono())
        else:
            begin_at = self._origin + start_at
            handle._timers = [
                self._loop.call_at(begin_at, handle._begin),
                self._loop.call_at(begin_at + chunk.duration, handle._finish),
            ]
        return handle

    async def close(self) -> None:
        if self._origin is None and self._recorder is None:
            return
        self._origin = None
        self.track.stop()
        recorder, self._recorder = self._recorder, None
        if recorder is not None:
            try:
                await recorder.stop()
            except Exception as exc:  # noqa: BLE001
                logger.error(f"Audio output close failed -> {exc!r}")
        logger.info("Audio output closed")
