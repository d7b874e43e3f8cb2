"""Device acquisition boundary.

The aggregator never opens devices itself. It asks a MediaDevices
implementation for a MediaStreams pair of aiortc tracks and stops them on
teardown. PlayerDevices covers local capture through FFmpeg input
formats, e.g.::

    # Linux webcam + ALSA microphone
    PlayerDevices(
        video=PlayerSource("/dev/video0", format="v4l2", options={"video_size": "1280x720"}),
        audio=PlayerSource("default", format="alsa"),
    )

    # macOS
    PlayerDevices(video=PlayerSource("default:default", format="avfoundation"))

    # Recorded interview
    PlayerDevices(video="interview.mp4")
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol, Union

import av
from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import MediaStreamTrack

from ._errors import AcquisitionError

logger = logging.getLogger(__name__)


@dataclass
class MediaStreams:
    """Acquired tracks; either may be None when the device is missing."""

    audio: Optional[MediaStreamTrack] = None
    video: Optional[MediaStreamTrack] = None
    _players: list[MediaPlayer] = field(default_factory=list, repr=False)

    def stop(self) -> None:
        """Stop every held track. Safe to call more than once."""
        for track in (self.audio, self.video):
            if track is None or track.readyState == "ended":
                continue
            try:
                track.stop()
            except Exception:
                logger.exception("Error stopping %s track", track.kind)
        self._players.clear()


class MediaDevices(Protocol):
    async def acquire(self) -> MediaStreams:
        """Open the capture devices.

        Raises:
            AcquisitionError: Permission denied or device unavailable.
        """
        ...


@dataclass(frozen=True)
class PlayerSource:
    """One FFmpeg input: a device path or URL, its format and options."""

    file: str
    format: Optional[str] = None
    options: Optional[dict[str, str]] = None


def _as_source(source: Union[PlayerSource, str, None]) -> Optional[PlayerSource]:
    if source is None or isinstance(source, PlayerSource):
        return source
    return PlayerSource(file=source)


class PlayerDevices:
    """MediaDevices backed by aiortc MediaPlayer.

    Args:
        video: Input providing the video track (and the audio track too,
            when ``audio`` is not given).
        audio: Separate input for the audio track.

    Raises:
        ValueError: If neither input is given.
    """

    def __init__(
        self,
        video: Union[PlayerSource, str, None] = None,
        audio: Union[PlayerSource, str, None] = None,
    ) -> None:
        self._video = _as_source(video)
        self._audio = _as_source(audio)
        if self._video is None and self._audio is None:
            raise ValueError("PlayerDevices needs a video or an audio source")

    @staticmethod
    def _open(source: PlayerSource) -> MediaPlayer:
        return MediaPlayer(source.file, format=source.format, options=source.options)

    async def _open_async(self, source: PlayerSource) -> MediaPlayer:
        try:
            # Opening a device blocks inside FFmpeg.
            return await asyncio.to_thread(self._open, source)
        except (OSError, ValueError, av.error.FFmpegError) as exc:
            raise AcquisitionError(f"Cannot open media source {source.file!r}: {exc}") from exc

    async def acquire(self) -> MediaStreams:
        streams = MediaStreams()
        try:
            if self._video is not None:
                player = await self._open_async(self._video)
                streams._players.append(player)
                streams.video = player.video
                if self._audio is None:
                    streams.audio = player.audio
            if self._audio is not None:
                player = await self._open_async(self._audio)
                streams._players.append(player)
                streams.audio = player.audio
        except AcquisitionError:
            streams.stop()
            raise

        if streams.audio is None and streams.video is None:
            streams.stop()
            raise AcquisitionError("No audio or video track available from media sources")

        logger.info(
            "Acquired media (audio=%s, video=%s)",
            streams.audio is not None,
            streams.video is not None,
        )
        return streams
