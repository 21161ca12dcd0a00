"""Gapless scheduling of decoded audio chunks on the output clock."""
from __future__ import annotations

from typing import Callable, Optional, Protocol, Set

from guiavision.logging_config import get_logger
from .media import AudioChunk

logger = get_logger(__name__)


class Handle(Protocol):
    start_time: float

    def stop(self) -> None: ...


class OutputClock(Protocol):
    """What the scheduler needs from an audio output."""

    @property
    def current_time(self) -> float: ...

    def play(
        self,
        chunk: AudioChunk,
        start_at: float,
        on_ended: Optional[Callable[[Handle], None]] = None,
    ) -> Handle: ...


class PlaybackScheduler:
    """Queues chunks back to back and flushes them on barge-in.

    ``next_start_time`` is the playback cursor: 0.0 means nothing is
    reserved. Every chunk starts at ``max(cursor, output clock)`` and moves the
    cursor to its own end, so chunks never overlap and never start in the past.
    """

    def __init__(self, output: OutputClock) -> None:
        self._output = output
        self.next_start_time: float = 0.0
        self.active: Set[Handle] = set()

    def schedule(self, chunk: AudioChunk) -> Handle:
        start_at = max(self.next_start_time, self._output.current_time)
        handle = self._output.play(chunk, start_at, on_ended=self._on_ended)
        self.next_start_time = start_at + chunk.duration
        self.active.add(handle)
        logger.debug("Scheduled %.3fs chunk at %.3f (active=%d)", chunk.duration, start_at, len(self.active))
        return handle

    def _on_ended(self, handle: Handle) -> None:
        self.active.discard(handle)

    def flush(self) -> int:
        """Stop every pending playback and forget the cursor."""
        stopped = len(self.active)
        for handle in list(self.active):
            handle.stop()
        self.active.clear()
        self.next_start_time = 0.0
        if stopped:
            logger.info("Playback flushed, %d handle(s) stopped", stopped)
        return stopped
