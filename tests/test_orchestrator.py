import asyncio

import av
import numpy as np
import pytest

from fakes import FakeCapture, FakeOutput, FakeTransport, wait_for
from guiavision.config import Settings
from guiavision.errors import InvalidStateTransition
from guiavision.events import SessionEvent, SessionEvents
from guiavision.session.media import AudioChunk
from guiavision.session.orchestrator import SessionOrchestrator
from guiavision.session.state import TRANSITIONS, SessionState, can_transition


class Harness:
    def __init__(self, *, capture_fails=False, connect_fails=False, output_fails=False, gate=None):
        self.transport = FakeTransport(fail=connect_fails, gate=gate)
        self.capture = FakeCapture(fail=capture_fails)
        self.outputs = []
        self._output_fails = output_fails
        self.orchestrator = SessionOrchestrator(
            Settings(api_key="test", frame_rate=20.0),
            transport=self.transport,
            capture_factory=self.capture,
            output_factory=self._make_output,
        )
        self.messages = self.orchestrator.subscribe()

    def _make_output(self):
        output = FakeOutput(fail_open=self._output_fails)
        self.outputs.append(output)
        return output

    @property
    def session(self):
        return self.transport.sessions[-1]

    def drain(self):
        items = []
        while not self.messages.empty():
            items.append(self.messages.get_nowait())
        return items

    def notices(self):
        return [m["code"] for m in self.drain() if m["type"] == "notice"]


def chunk(seconds=0.5, rate=24000):
    return AudioChunk(samples=np.zeros(int(seconds * rate), dtype=np.float32), sample_rate=rate)


def test_transition_table():
    assert can_transition(SessionState.IDLE, SessionState.CONNECTING)
    assert can_transition(SessionState.CONNECTING, SessionState.ACTIVE)
    assert can_transition(SessionState.CONNECTING, SessionState.ERROR)
    assert can_transition(SessionState.ACTIVE, SessionState.IDLE)
    assert can_transition(SessionState.ACTIVE, SessionState.ERROR)
    assert can_transition(SessionState.ERROR, SessionState.CONNECTING)
    assert not can_transition(SessionState.IDLE, SessionState.ACTIVE)
    assert not can_transition(SessionState.ERROR, SessionState.ACTIVE)
    assert set(TRANSITIONS) == set(SessionState)


def test_unlisted_transition_raises():
    orchestrator = Harness().orchestrator
    with pytest.raises(InvalidStateTransition) as info:
        orchestrator._transition(SessionState.ACTIVE)
    assert info.value.current is SessionState.IDLE
    assert orchestrator.state is SessionState.IDLE


def test_stop_when_idle_is_a_noop():
    h = Harness()
    h.drain()
    assert h.orchestrator.stop() is SessionState.IDLE
    assert h.drain() == []


@pytest.mark.asyncio
async def test_start_reaches_active_and_streams():
    h = Harness()

    assert await h.orchestrator.start() is SessionState.ACTIVE

    messages = h.drain()
    assert [m["state"] for m in messages if m["type"] == "state"] == ["IDLE", "CONNECTING", "ACTIVE"]
    assert [m["code"] for m in messages if m["type"] == "notice"] == ["STARTING", "ACTIVE"]
    assert h.orchestrator.cadences_running
    assert h.outputs[0].opened
    await h.orchestrator.aclose()


@pytest.mark.asyncio
async def test_start_while_active_is_ignored():
    h = Harness()
    await h.orchestrator.start()
    assert await h.orchestrator.start() is SessionState.ACTIVE
    assert h.transport.connects == 1
    await h.orchestrator.aclose()


@pytest.mark.asyncio
async def test_stop_releases_everything():
    h = Harness()
    await h.orchestrator.start()
    stream = h.capture.streams[0]
    h.drain()

    assert h.orchestrator.stop() is SessionState.IDLE
    await h.orchestrator.wait_closed()

    assert h.notices() == ["STOPPED"]
    assert stream.released
    assert stream.video.stopped and stream.audio.stopped
    assert h.session.closed
    assert h.outputs[0].closed
    assert not h.orchestrator.cadences_running
    assert h.orchestrator.session is None

    assert h.orchestrator.stop() is SessionState.IDLE
    assert h.drain() == []


@pytest.mark.asyncio
async def test_no_media_sent_after_stop():
    h = Harness()
    await h.orchestrator.start()
    stream = h.capture.streams[0]
    h.orchestrator.stop()
    await h.orchestrator.wait_closed()

    stream.video.put(b"frame")
    await asyncio.sleep(0.1)

    assert h.session.sent == []


@pytest.mark.asyncio
async def test_frames_flow_while_active():
    h = Harness()
    await h.orchestrator.start()
    pixels = np.zeros((480, 640, 3), dtype=np.uint8)
    h.capture.streams[0].video.put(av.VideoFrame.from_ndarray(pixels, format="rgb24"))

    await wait_for(lambda: any(blob.mime_type == "image/jpeg" for blob in h.session.sent))
    await h.orchestrator.aclose()


@pytest.mark.asyncio
async def test_device_failure_goes_to_error():
    h = Harness(capture_fails=True)

    assert await h.orchestrator.start() is SessionState.ERROR

    assert h.notices() == ["STARTING", "DEVICE_ERROR"]
    assert h.transport.connects == 0
    await h.orchestrator.wait_closed()
    assert h.outputs[0].closed
    assert h.orchestrator.last_error is not None


@pytest.mark.asyncio
async def test_output_failure_goes_to_error():
    h = Harness(output_fails=True)
    assert await h.orchestrator.start() is SessionState.ERROR
    assert h.capture.streams == []


@pytest.mark.asyncio
async def test_connect_failure_releases_devices():
    h = Harness(connect_fails=True)

    assert await h.orchestrator.start() is SessionState.ERROR

    assert h.notices() == ["STARTING", "CONNECTION_ERROR"]
    assert h.capture.streams[0].released


@pytest.mark.asyncio
async def test_restart_after_error():
    h = Harness(connect_fails=True)
    await h.orchestrator.start()
    h.transport.fail = False

    assert await h.orchestrator.start() is SessionState.ACTIVE
    await h.orchestrator.aclose()


@pytest.mark.asyncio
async def test_stop_while_connecting_abandons_start():
    gate = asyncio.Event()
    h = Harness(gate=gate)
    starting = asyncio.ensure_future(h.orchestrator.start())
    await wait_for(lambda: h.transport.connects == 1)
    assert h.orchestrator.state is SessionState.CONNECTING

    assert h.orchestrator.stop() is SessionState.IDLE
    gate.set()

    assert await starting is SessionState.IDLE
    assert h.session.closed
    assert h.capture.streams[0].released
    assert h.orchestrator.session is None


@pytest.mark.asyncio
async def test_audio_is_scheduled_and_interrupt_flushes():
    h = Harness()
    await h.orchestrator.start()
    output = h.outputs[0]

    for _ in range(3):
        h.session.emit(SessionEvent(SessionEvents.AUDIO_OUTPUT, chunk=chunk()))
    await wait_for(lambda: len(output.handles) == 3)
    assert [handle.start_time for handle in output.handles] == pytest.approx([0.0, 0.5, 1.0])

    h.session.emit(SessionEvent(SessionEvents.INTERRUPTED))
    await wait_for(lambda: all(handle.stopped for handle in output.handles))
    assert h.orchestrator.scheduler.next_start_time == 0.0
    assert h.orchestrator.state is SessionState.ACTIVE
    await h.orchestrator.aclose()


@pytest.mark.asyncio
async def test_only_model_transcripts_are_shown():
    h = Harness()
    await h.orchestrator.start()
    h.drain()

    h.session.emit(SessionEvent(SessionEvents.TRANSCRIPTION, text="Porta à esquerda."))
    h.session.emit(SessionEvent(SessionEvents.TRANSCRIPTION, text="onde fica a porta?", is_user=True))
    h.session.emit(SessionEvent(SessionEvents.TRANSCRIPTION, text="Siga em frente."))
    await wait_for(lambda: h.orchestrator.last_transcript == "Siga em frente.")

    transcripts = [m["text"] for m in h.drain() if m["type"] == "transcript"]
    assert transcripts == ["Porta à esquerda.", "Siga em frente."]
    assert h.orchestrator.status() == {"state": "ACTIVE", "transcript": "Siga em frente."}
    await h.orchestrator.aclose()


@pytest.mark.asyncio
async def test_transport_error_tears_down():
    h = Harness()
    await h.orchestrator.start()
    h.drain()

    h.session.emit(SessionEvent(SessionEvents.ERROR, error=OSError("reset")))
    await wait_for(lambda: h.orchestrator.state is SessionState.ERROR)
    await h.orchestrator.wait_closed()

    assert h.notices() == ["CONNECTION_ERROR"]
    assert h.session.closed
    assert h.capture.streams[0].released
    assert not h.orchestrator.cadences_running


@pytest.mark.asyncio
async def test_server_close_returns_to_idle():
    h = Harness()
    await h.orchestrator.start()
    h.drain()

    h.session.emit(SessionEvent(SessionEvents.CLOSE))
    await wait_for(lambda: h.orchestrator.state is SessionState.IDLE)
    await h.orchestrator.wait_closed()

    assert h.notices() == ["STOPPED"]
    assert h.outputs[0].closed


@pytest.mark.asyncio
async def test_launch_returns_while_connecting():
    gate = asyncio.Event()
    h = Harness(gate=gate)

    task = h.orchestrator.launch()

    assert h.orchestrator.state is SessionState.CONNECTING
    assert h.orchestrator.launch() is None
    gate.set()
    assert await task is SessionState.ACTIVE
    await h.orchestrator.aclose()


@pytest.mark.asyncio
async def test_shutdown_cancels_hung_connect():
    h = Harness(gate=asyncio.Event())
    task = h.orchestrator.launch()
    await wait_for(lambda: h.transport.connects == 1)

    await asyncio.wait_for(h.orchestrator.aclose(), 1.0)

    assert task.done()
    assert h.orchestrator.state is SessionState.IDLE
    assert h.capture.streams[0].released


def test_help_is_announced_in_any_state():
    h = Harness()
    h.drain()
    h.orchestrator.announce_help()
    assert h.notices() == ["HELP"]
