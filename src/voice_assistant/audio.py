"""
Local audio plumbing for realtime sessions.

- Capture: the default microphone opened through ffmpeg (aiortc MediaPlayer).
- Playback: the assistant's remote track routed to an output device
  (aiortc MediaRecorder), or discarded when no playback device is configured.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol

import structlog
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder

from src.voice_assistant.config import Config, get_config
from src.voice_assistant.errors import MediaError

logger = structlog.get_logger(__name__)


class CaptureStream(Protocol):
    """A local capture stream feeding the outbound audio track."""

    @property
    def track(self) -> Any: ...

    def stop(self) -> None: ...


class AudioSink(Protocol):
    """Receives the remote audio track for the lifetime of a session."""

    async def attach(self, track: Any) -> None: ...

    async def detach(self) -> None: ...


class MicrophoneCapture:
    """Microphone capture backed by an aiortc MediaPlayer."""

    def __init__(self, player: MediaPlayer):
        self._player = player
        self._stopped = False

    @property
    def track(self) -> Any:
        return self._player.audio

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        track = self._player.audio
        if track is not None:
            track.stop()
        logger.debug("Microphone capture released")


def open_microphone(config: Optional[Config] = None) -> MicrophoneCapture:
    """
    Open the configured capture device.

    Raises:
        MediaError: if the device cannot be opened or has no audio
    """
    config = config or get_config()
    try:
        player = MediaPlayer(config.audio_capture_device, format=config.audio_capture_format)
    except Exception as e:
        logger.error(
            "Microphone unavailable",
            device=config.audio_capture_device,
            format=config.audio_capture_format,
            error=str(e),
        )
        raise MediaError(f"Microphone unavailable: {e}") from e

    if player.audio is None:
        raise MediaError(f"Capture device '{config.audio_capture_device}' has no audio track")

    logger.info("Microphone capture opened", device=config.audio_capture_device)
    return MicrophoneCapture(player)


class RemoteAudioPlayer:
    """
    Plays the assistant's audio on the configured output device.

    With no playback device configured the track is still consumed (so the
    peer connection keeps flowing) but the audio is discarded.
    """

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self._recorder: Optional[Any] = None

    @property
    def is_playing(self) -> bool:
        return self._recorder is not None

    def _create_recorder(self) -> Any:
        device = self.config.audio_playback_device
        if not device:
            return MediaBlackhole()
        return MediaRecorder(device, format=self.config.audio_playback_format)

    async def attach(self, track: Any) -> None:
        await self.detach()
        recorder = self._create_recorder()
        recorder.addTrack(track)
        await recorder.start()
        self._recorder = recorder
        logger.info("Remote audio stream started", device=self.config.audio_playback_device or None)

    async def detach(self) -> None:
        recorder, self._recorder = self._recorder, None
        if recorder is None:
            return
        try:
            await recorder.stop()
        except Exception as e:
            logger.warning("Error stopping remote audio", error=str(e))
