"""Gemini Live transport: one bidirectional session per assistant run."""
from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Optional, Set

from google import genai  # type: ignore
from google.genai import types  # type: ignore
from websockets.exceptions import ConnectionClosedOK

from guiavision.config import Settings
from guiavision.errors import AudioDecodeError, TransportConnectError
from guiavision.events import SessionEvent, SessionEvents
from guiavision.logging_config import get_logger
from .constants import PCM_MIME_PREFIX
from .media import MediaBlob
from .pcm import decode_pcm16

logger = get_logger(__name__)


class LiveSession:
    """Explicit handle of an open live session.

    Inbound server messages are translated into :class:`SessionEvent` items
    on :attr:`events`, consumed by the orchestrator in arrival order.
    """

    def __init__(
        self,
        session: Any,
        exit_stack: contextlib.AsyncExitStack,
        *,
        output_sample_rate: int = 24000,
    ) -> None:
        self._session = session
        self._stack = exit_stack
        self._output_rate = output_sample_rate
        self.events: "asyncio.Queue[SessionEvent]" = asyncio.Queue()
        self._receiver: Optional[asyncio.Task] = None
        self._sends: Set[asyncio.Task] = set()
        self.closed = False

    def start_receiving(self) -> None:
        if self._receiver is None:
            self._receiver = asyncio.ensure_future(self._receive_loop())

    async def next_event(self) -> SessionEvent:
        return await self.events.get()

    # ───────────────────────── outbound ─────────────────────────
    def send(self, blob: MediaBlob) -> None:
        """Fire-and-forget send; delivery is never reported back."""
        if self.closed:
            logger.debug("Dropping %s send on closed session", blob.mime_type)
            return
        task = asyncio.ensure_future(self._send(blob))
        self._sends.add(task)
        task.add_done_callback(self._sends.discard)

    async def _send(self, blob: MediaBlob) -> None:
        payload = types.Blob(data=blob.data, mime_type=blob.mime_type)
        try:
            if blob.mime_type.startswith(PCM_MIME_PREFIX):
                await self._session.send_realtime_input(audio=payload)
            else:
                await self._session.send_realtime_input(video=payload)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Send of {blob.mime_type} failed -> {exc!r}")

    # ───────────────────────── inbound ──────────────────────────
    def _emit(self, kind: SessionEvents, **payload) -> None:
        self.events.put_nowait(SessionEvent(kind=kind, **payload))

    async def _receive_loop(self) -> None:
        try:
            while True:
                received = 0
                async for message in self._session.receive():
                    received += 1
                    self._handle_message(message)
                if not received:
                    break
        except asyncio.CancelledError:
            raise
        except ConnectionClosedOK:
            logger.info("Live session closed by server")
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Live session receive failed -> {exc!r}")
            self._emit(SessionEvents.ERROR, error=exc)
            return
        self._emit(SessionEvents.CLOSE)

    def _handle_message(self, message: Any) -> None:
        content = getattr(message, "server_content", None)
        if content is None:
            return

        turn = content.model_turn
        if turn is not None and turn.parts:
            for part in turn.parts:
                blob = part.inline_data
                if blob is None or not blob.data:
                    continue
                try:
                    chunk = decode_pcm16(blob.data, sample_rate=self._output_rate)
                except AudioDecodeError as exc:
                    logger.warning(f"Skipping undecodable audio chunk -> {exc}")
                    continue
                self._emit(SessionEvents.AUDIO_OUTPUT, chunk=chunk)

        if content.interrupted:
            self._emit(SessionEvents.INTERRUPTED)

        if content.output_transcription is not None and content.output_transcription.text:
            self._emit(SessionEvents.TRANSCRIPTION, text=content.output_transcription.text, is_user=False)
        if content.input_transcription is not None and content.input_transcription.text:
            self._emit(SessionEvents.TRANSCRIPTION, text=content.input_transcription.text, is_user=True)

    async def close(self) -> None:
        """Close the underlying connection. Safe to call more than once."""
        if self.closed:
            return
        self.closed = True
        pending = [t for t in (self._receiver, *self._sends) if t is not None and not t.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._sends.clear()
        try:
            await self._stack.aclose()
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Live session close raised -> {exc!r}")
        logger.info("Live session closed")


class GeminiTransport:
    """Opens live sessions with the configured model, voice and instruction."""

    def __init__(self, settings: Settings, client: Optional[genai.Client] = None) -> None:
        self._settings = settings
        self._client = client

    def build_config(self) -> types.LiveConnectConfig:
        return types.LiveConnectConfig(
            response_modalities=[types.Modality.AUDIO],
            system_instruction=self._settings.system_instruction,
            speech_config=types.SpeechConfig(
                voice_config=types.VoiceConfig(
                    prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=self._settings.voice_name)
                )
            ),
            output_audio_transcription=types.AudioTranscriptionConfig(),
            input_audio_transcription=types.AudioTranscriptionConfig(),
        )

    def _get_client(self) -> genai.Client:
        if self._client is None:
            self._client = genai.Client(api_key=self._settings.api_key)
        return self._client

    async def connect(self) -> LiveSession:
        stack = contextlib.AsyncExitStack()
        logger.info("Connecting live session → %s", self._settings.model_name)
        try:
            client = self._get_client()
            session = await asyncio.wait_for(
                stack.enter_async_context(
                    client.aio.live.connect(model=self._settings.model_name, config=self.build_config())
                ),
                timeout=self._settings.connect_timeout,
            )
        except asyncio.TimeoutError as exc:
            await stack.aclose()
            raise TransportConnectError(
                f"live session connect timed out after {self._settings.connect_timeout:.0f}s"
            ) from exc
        except Exception as exc:  # noqa: BLE001
            await stack.aclose()
            raise TransportConnectError(f"live session connect failed: {exc}") from exc

        live = LiveSession(session, stack, output_sample_rate=self._settings.output_sample_rate)
        live.start_receiving()
        logger.info("Live session opened")
        return live
