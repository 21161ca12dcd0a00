import asyncio
import contextlib
from types import SimpleNamespace

import numpy as np
import pytest
from google.genai import types

from fakes import wait_for
from guiavision.config import Settings
from guiavision.errors import TransportConnectError
from guiavision.events import SessionEvents
from guiavision.session.media import MediaBlob
from guiavision.session.transport import GeminiTransport, LiveSession


class FakeGenaiSession:
    """Replays scripted server turns; an empty turn list ends the stream."""

    def __init__(self, turns=(), error=None):
        self._turns = list(turns)
        self._error = error
        self.sent = []

    async def receive(self):
        if self._error is not None:
            raise self._error
        if not self._turns:
            return
        for message in self._turns.pop(0):
            yield message

    async def send_realtime_input(self, **kwargs):
        self.sent.append(kwargs)


def content_message(**kwargs) -> types.LiveServerMessage:
    return types.LiveServerMessage(server_content=types.LiveServerContent(**kwargs))


def audio_message(*payloads: bytes) -> types.LiveServerMessage:
    parts = [types.Part(inline_data=types.Blob(data=p, mime_type="audio/pcm;rate=24000")) for p in payloads]
    return content_message(model_turn=types.Content(role="model", parts=parts))


async def drain(live: LiveSession):
    events = []
    while True:
        event = await asyncio.wait_for(live.next_event(), 1.0)
        events.append(event)
        if event.kind in (SessionEvents.CLOSE, SessionEvents.ERROR):
            return events


def open_session(genai_session) -> LiveSession:
    live = LiveSession(genai_session, contextlib.AsyncExitStack())
    live.start_receiving()
    return live


@pytest.mark.asyncio
async def test_server_messages_become_ordered_events():
    pcm = np.zeros(2400, dtype="<i2").tobytes()
    live = open_session(FakeGenaiSession(turns=[
        [
            audio_message(pcm, pcm),
            content_message(interrupted=True),
            content_message(output_transcription=types.Transcription(text="Há um degrau à frente.")),
            content_message(input_transcription=types.Transcription(text="o que tem ali?")),
        ],
    ]))

    events = await drain(live)
    kinds = [event.kind for event in events]

    assert kinds == [
        SessionEvents.AUDIO_OUTPUT,
        SessionEvents.AUDIO_OUTPUT,
        SessionEvents.INTERRUPTED,
        SessionEvents.TRANSCRIPTION,
        SessionEvents.TRANSCRIPTION,
        SessionEvents.CLOSE,
    ]
    assert events[0].chunk.duration == pytest.approx(0.1)
    assert (events[3].text, events[3].is_user) == ("Há um degrau à frente.", False)
    assert (events[4].text, events[4].is_user) == ("o que tem ali?", True)
    await live.close()


@pytest.mark.asyncio
async def test_undecodable_audio_is_skipped():
    good = np.zeros(240, dtype="<i2").tobytes()
    live = open_session(FakeGenaiSession(turns=[[audio_message(b"\x01\x02\x03", good)]]))

    events = await drain(live)

    assert [event.kind for event in events] == [SessionEvents.AUDIO_OUTPUT, SessionEvents.CLOSE]
    await live.close()


@pytest.mark.asyncio
async def test_receive_failure_emits_error():
    live = open_session(FakeGenaiSession(error=OSError("socket reset")))

    events = await drain(live)

    assert events[-1].kind is SessionEvents.ERROR
    assert isinstance(events[-1].error, OSError)
    await live.close()


@pytest.mark.asyncio
async def test_send_routes_audio_and_video():
    genai_session = FakeGenaiSession()
    live = LiveSession(genai_session, contextlib.AsyncExitStack())

    live.send(MediaBlob(data=b"\x00\x00", mime_type="audio/pcm;rate=16000"))
    live.send(MediaBlob(data=b"\xff\xd8", mime_type="image/jpeg"))
    await wait_for(lambda: len(genai_session.sent) == 2)

    audio, video = genai_session.sent
    assert audio["audio"].mime_type == "audio/pcm;rate=16000"
    assert video["video"].data == b"\xff\xd8"
    await live.close()


@pytest.mark.asyncio
async def test_send_after_close_is_dropped():
    genai_session = FakeGenaiSession()
    stack = contextlib.AsyncExitStack()
    closed = []
    stack.callback(closed.append, True)
    live = LiveSession(genai_session, stack)

    await live.close()
    await live.close()
    live.send(MediaBlob(data=b"\x00\x00", mime_type="audio/pcm;rate=16000"))
    await asyncio.sleep(0.01)

    assert closed == [True]
    assert genai_session.sent == []


def test_connect_config_requests_audio_with_transcripts():
    transport = GeminiTransport(Settings(api_key="test", voice_name="Puck"))
    config = transport.build_config()

    assert config.response_modalities == [types.Modality.AUDIO]
    assert config.speech_config.voice_config.prebuilt_voice_config.voice_name == "Puck"
    assert config.input_audio_transcription is not None
    assert config.output_audio_transcription is not None


@pytest.mark.asyncio
async def test_connect_failure_raises_transport_error():
    def refuse(**kwargs):
        raise ConnectionRefusedError("no route")

    client = SimpleNamespace(aio=SimpleNamespace(live=SimpleNamespace(connect=refuse)))
    transport = GeminiTransport(Settings(api_key="test"), client=client)

    with pytest.raises(TransportConnectError):
        await transport.connect()


@pytest.mark.asyncio
async def test_connect_opens_receiving_session():
    genai_session = FakeGenaiSession()
    calls = []

    @contextlib.asynccontextmanager
    async def connect(model, config):
        calls.append(model)
        yield genai_session
        calls.append("closed")

    client = SimpleNamespace(aio=SimpleNamespace(live=SimpleNamespace(connect=connect)))
    settings = Settings(api_key="test")
    live = await GeminiTransport(settings, client=client).connect()

    event = await asyncio.wait_for(live.next_event(), 1.0)
    assert event.kind is SessionEvents.CLOSE
    await live.close()
    assert calls == [settings.model_name, "closed"]


@pytest.mark.asyncio
async def test_connect_times_out():
    @contextlib.asynccontextmanager
    async def connect(model, config):
        await asyncio.Event().wait()
        yield None

    client = SimpleNamespace(aio=SimpleNamespace(live=SimpleNamespace(connect=connect)))
    transport = GeminiTransport(Settings(api_key="test", connect_timeout=0.05), client=client)

    with pytest.raises(TransportConnectError, match="timed out"):
        await transport.connect()
