"""Session orchestrator: lifecycle state machine wiring capture, transport and playback."""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, Set

from guiavision.config import Settings
from guiavision.errors import DeviceAcquisitionError, InvalidStateTransition, TransportConnectError
from guiavision.events import Notice, SessionEvent, SessionEvents
from guiavision.logging_config import get_logger
from .capture import CaptureStream, open_capture
from .frames import FrameSampler
from .playback import AudioOutput
from .scheduler import PlaybackScheduler
from .state import SessionState, can_transition
from .transport import GeminiTransport, LiveSession
from .uplink import AudioUplink

logger = get_logger(__name__)

CaptureFactory = Callable[[Settings], Awaitable[CaptureStream]]


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class SessionOrchestrator:
    """Owns one assistant run at a time: IDLE → CONNECTING → ACTIVE → IDLE/ERROR.

    The live session, capture stream and audio output are owned here and only
    here. Stop, transport error and transport close all go through
    :meth:`_teardown`, which is synchronous and idempotent; async closes are
    spawned and can be awaited with :meth:`wait_closed`.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Any = None,
        capture_factory: CaptureFactory = open_capture,
        output_factory: Optional[Callable[[], Any]] = None,
    ) -> None:
        self._settings = settings
        self._transport = transport if transport is not None else GeminiTransport(settings)
        self._capture_factory = capture_factory
        self._output_factory = output_factory or self._default_output

        self.state = SessionState.IDLE
        self.last_transcript = ""
        self.last_error: Optional[BaseException] = None

        self._attempt = 0
        self._session: Optional[LiveSession] = None
        self._capture: Optional[CaptureStream] = None
        self._output: Optional[AudioOutput] = None
        self._scheduler: Optional[PlaybackScheduler] = None
        self._sampler: Optional[FrameSampler] = None
        self._uplink: Optional[AudioUplink] = None
        self._consumer: Optional[asyncio.Task] = None
        self._starter: Optional[asyncio.Task] = None
        self._closers: Set[asyncio.Task] = set()
        self._subscribers: Set[asyncio.Queue] = set()

    def _default_output(self) -> AudioOutput:
        return AudioOutput(
            self._settings.output_sample_rate,
            device=self._settings.audio_output_device,
            device_format=self._settings.audio_output_format,
        )

    # ───────────────────────── Introspection ─────────────────────────
    @property
    def session(self) -> Optional[LiveSession]:
        return self._session

    @property
    def scheduler(self) -> Optional[PlaybackScheduler]:
        return self._scheduler

    @property
    def cadences_running(self) -> bool:
        return bool(self._sampler and self._sampler.running and self._uplink and self._uplink.running)

    def status(self) -> dict:
        return {"state": self.state.value, "transcript": self.last_transcript}

    # ───────────────────────── UI events ─────────────────────────────
    def subscribe(self) -> asyncio.Queue:
        """Queue receiving every state, transcript and notice message."""
        queue: asyncio.Queue = asyncio.Queue()
        queue.put_nowait({"type": "state", "state": self.state.value})
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def _publish(self, message: dict) -> None:
        for queue in list(self._subscribers):
            queue.put_nowait(message)

    def _notify(self, notice: Notice) -> None:
        logger.info("Notice %s: %s", notice.name, notice.value)
        self._publish(notice.to_message())

    def _transition(self, target: SessionState) -> None:
        if target is self.state:
            return
        if not can_transition(self.state, target):
            raise InvalidStateTransition(self.state, target)
        logger.info("Session state %s → %s", self.state.value, target.value)
        self.state = target
        self._publish({"type": "state", "state": target.value})

    # ───────────────────────── Lifecycle ─────────────────────────────
    def _is_current(self, attempt: int) -> bool:
        return attempt == self._attempt and self.state is SessionState.CONNECTING

    def _begin_attempt(self) -> Optional[int]:
        if self.state in (SessionState.CONNECTING, SessionState.ACTIVE):
            logger.warning("start() ignored, session is %s", self.state.value)
            return None
        self._attempt += 1
        self._transition(SessionState.CONNECTING)
        self.last_transcript = ""
        self.last_error = None
        self._notify(Notice.STARTING)
        return self._attempt

    async def start(self) -> SessionState:
        """User start action. Returns the state the attempt ended in."""
        attempt = self._begin_attempt()
        if attempt is None:
            return self.state
        return await self._connect(attempt)

    def launch(self) -> Optional[asyncio.Task]:
        """Start in the background; the outcome reaches subscribers as events.

        The state is CONNECTING when this returns, so a following
        :meth:`stop` abandons the attempt.
        """
        attempt = self._begin_attempt()
        if attempt is None:
            return None
        self._starter = asyncio.ensure_future(self._connect(attempt))
        return self._starter

    async def _connect(self, attempt: int) -> SessionState:
        try:
            output = self._output_factory()
            await output.open()
            if not self._is_current(attempt):
                await output.close()
                return self.state
            self._output = output
            self._scheduler = PlaybackScheduler(output)

            capture = await self._capture_factory(self._settings)
            if not self._is_current(attempt):
                capture.release()
                return self.state
            self._capture = capture
        except DeviceAcquisitionError as exc:
            if self._is_current(attempt):
                self._fail(Notice.DEVICE_ERROR, exc)
            return self.state

        try:
            session = await self._transport.connect()
        except TransportConnectError as exc:
            if self._is_current(attempt):
                self._fail(Notice.CONNECTION_ERROR, exc)
            return self.state

        if not self._is_current(attempt):
            await session.close()
            return self.state

        self._session = session
        self._transition(SessionState.ACTIVE)
        self._notify(Notice.ACTIVE)
        self._start_streaming(session, capture)
        return self.state

    def _start_streaming(self, session: LiveSession, capture: CaptureStream) -> None:
        settings = self._settings
        self._sampler = FrameSampler(
            capture.video,
            session.send,
            fps=settings.frame_rate,
            quality=settings.jpeg_quality,
            max_width=settings.frame_max_width,
        )
        self._uplink = AudioUplink(
            capture.audio,
            session.send,
            sample_rate=settings.input_sample_rate,
            block_size=settings.input_block_size,
        )
        self._sampler.start()
        self._uplink.start()
        self._consumer = asyncio.ensure_future(self._consume_events(session))

    def stop(self) -> SessionState:
        """User stop action. A no-op unless connecting or active."""
        if self.state not in (SessionState.CONNECTING, SessionState.ACTIVE):
            return self.state
        self._teardown()
        self._transition(SessionState.IDLE)
        self._notify(Notice.STOPPED)
        return self.state

    async def aclose(self) -> None:
        self.stop()
        starter, self._starter = self._starter, None
        if starter is not None and not starter.done():
            starter.cancel()
            await asyncio.gather(starter, return_exceptions=True)
        await self.wait_closed()

    def announce_help(self) -> None:
        self._notify(Notice.HELP)

    async def wait_closed(self) -> None:
        """Wait for sessions and outputs closed by teardown."""
        while self._closers:
            await asyncio.gather(*list(self._closers), return_exceptions=True)

    def _fail(self, notice: Notice, exc: BaseException) -> None:
        logger.error(f"Session failed ({notice.name}) -> {exc!r}")
        self.last_error = exc
        self._teardown()
        self._transition(SessionState.ERROR)
        self._notify(notice)

    def _teardown(self) -> None:
        # invalidates any start() still awaiting
        self._attempt += 1

        if self._sampler is not None:
            self._sampler.stop()
            self._sampler = None
        if self._uplink is not None:
            self._uplink.stop()
            self._uplink = None

        consumer, self._consumer = self._consumer, None
        if consumer is not None and consumer is not _current_task() and not consumer.done():
            consumer.cancel()

        if self._scheduler is not None:
            self._scheduler.flush()
            self._scheduler = None

        if self._capture is not None:
            self._capture.release()
            self._capture = None

        session, self._session = self._session, None
        if session is not None and not session.closed:
            self._spawn_closer(session.close())

        output, self._output = self._output, None
        if output is not None:
            self._spawn_closer(output.close())

    def _spawn_closer(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._closers.add(task)
        task.add_done_callback(self._closers.discard)

    # ───────────────────────── Inbound events ────────────────────────
    async def _consume_events(self, session: LiveSession) -> None:
        while self._session is session:
            event = await session.next_event()
            self._dispatch(event)

    def _dispatch(self, event: SessionEvent) -> None:
        if event.kind is SessionEvents.AUDIO_OUTPUT:
            if self._scheduler is None or event.chunk is None:
                return
            try:
                self._scheduler.schedule(event.chunk)
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"Audio chunk dropped -> {exc!r}")

        elif event.kind is SessionEvents.INTERRUPTED:
            if self._scheduler is not None:
                self._scheduler.flush()

        elif event.kind is SessionEvents.TRANSCRIPTION:
            if not event.is_user:
                self.last_transcript = event.text
                self._publish({"type": "transcript", "text": event.text})

        elif event.kind is SessionEvents.ERROR:
            self._fail(Notice.CONNECTION_ERROR, event.error or RuntimeError("transport error"))

        elif event.kind is SessionEvents.CLOSE:
            if self.state is SessionState.ACTIVE:
                self._teardown()
                self._transition(SessionState.IDLE)
                self._notify(Notice.STOPPED)
