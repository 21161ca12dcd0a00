"""Camera + microphone acquisition through aiortc media players."""
from __future__ import annotations

import asyncio
from typing import List, Optional

from aiortc import MediaStreamTrack  # type: ignore
from aiortc.contrib.media import MediaPlayer  # type: ignore

from guiavision.config import Settings
from guiavision.errors import DeviceAcquisitionError
from guiavision.logging_config import get_logger

logger = get_logger(__name__)


class CaptureStream:
    """Live audio + video source owned by the orchestrator for one session."""

    def __init__(self, video: MediaStreamTrack, audio: MediaStreamTrack, players: Optional[List[MediaPlayer]] = None):
        self.video = video
        self.audio = audio
        self._players = players or []
        self.released = False

    @property
    def tracks(self) -> List[MediaStreamTrack]:
        return [self.video, self.audio]

    def release(self) -> None:
        """Stop every track. Safe to call more than once."""
        if self.released:
            return
        self.released = True
        for track in self.tracks:
            track.stop()
        logger.info("Capture stream released")


def _open_players(settings: Settings) -> CaptureStream:
    video_options = {"video_size": settings.video_size} if settings.video_size else None
    camera = MediaPlayer(settings.video_device, format=settings.video_format, options=video_options)
    players = [camera]

    if settings.audio_input_device:
        try:
            microphone = MediaPlayer(settings.audio_input_device, format=settings.audio_input_format)
        except Exception:
            _stop_player(camera)
            raise
        players.append(microphone)
    else:
        # camera device also carries the microphone (e.g. avfoundation "0:0")
        microphone = camera

    if camera.video is None or microphone.audio is None:
        for player in players:
            _stop_player(player)
        missing = "video" if camera.video is None else "audio"
        raise DeviceAcquisitionError(f"capture device provides no {missing} track")

    return CaptureStream(video=camera.video, audio=microphone.audio, players=players)


def _stop_player(player: MediaPlayer) -> None:
    for track in (player.audio, player.video):
        if track is not None:
            track.stop()


async def open_capture(settings: Settings) -> CaptureStream:
    """Acquire camera and microphone; raises :class:`DeviceAcquisitionError`."""
    loop = asyncio.get_running_loop()
    try:
        stream = await loop.run_in_executor(None, _open_players, settings)
    except DeviceAcquisitionError:
        raise
    except Exception as exc:  # noqa: BLE001
        raise DeviceAcquisitionError(f"cannot open capture devices: {exc}") from exc
    logger.info(
        "Capture acquired: video=%s (%s), audio=%s (%s)",
        settings.video_device, settings.video_format,
        settings.audio_input_device or settings.video_device, settings.audio_input_format,
    )
    return stream
