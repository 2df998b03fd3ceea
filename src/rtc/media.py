"""Local capture devices and mute-able outbound tracks."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Any

import av
import numpy as np
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer

from config.settings import Settings, get_settings
from session.errors import MediaAcquisitionError

LOGGER = logging.getLogger(__name__)


def silence_like(frame: av.AudioFrame) -> av.AudioFrame:
    samples = frame.to_ndarray()
    silent = av.AudioFrame.from_ndarray(
        np.zeros_like(samples),
        format=frame.format.name,
        layout=frame.layout.name,
    )
    silent.sample_rate = frame.sample_rate
    silent.pts = frame.pts
    silent.time_base = frame.time_base
    return silent


def black_like(frame: av.VideoFrame) -> av.VideoFrame:
    black = av.VideoFrame.from_ndarray(
        np.zeros((frame.height, frame.width, 3), dtype=np.uint8),
        format="rgb24",
    )
    black.pts = frame.pts
    black.time_base = frame.time_base
    return black


class SwitchableTrack(MediaStreamTrack):
    """Relays a capture track; sends silence or black frames while disabled.

    Disabling keeps the track attached to the peer connection, so muting never
    needs a renegotiation round-trip.
    """

    def __init__(self, source: MediaStreamTrack) -> None:
        super().__init__()
        self.kind = source.kind
        self.enabled = True
        self._source = source

    async def recv(self) -> Any:
        frame = await self._source.recv()
        if self.enabled:
            return frame
        if self.kind == "audio":
            return silence_like(frame)
        return black_like(frame)

    def stop(self) -> None:
        super().stop()
        self._source.stop()


class LocalMedia:
    """The session's captured tracks. Stopping releases the capture device."""

    def __init__(self, tracks: Iterable[Any]) -> None:
        self._tracks = list(tracks)
        self._stopped = False

    @property
    def tracks(self) -> list[Any]:
        return list(self._tracks)

    @property
    def stopped(self) -> bool:
        return self._stopped

    def tracks_of(self, kind: str) -> list[Any]:
        return [track for track in self._tracks if track.kind == kind]

    def enabled(self, kind: str) -> bool:
        tracks = self.tracks_of(kind)
        return bool(tracks) and all(track.enabled for track in tracks)

    def toggle(self, kind: str) -> bool:
        """Flip ``enabled`` on every track of ``kind``; returns the new state."""

        for track in self.tracks_of(kind):
            track.enabled = not track.enabled
        return self.enabled(kind)

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        for track in self._tracks:
            try:
                track.stop()
            except Exception:
                LOGGER.exception("Failed to stop local %s track", track.kind)


class MediaAcquirer(ABC):
    @abstractmethod
    async def acquire(self) -> LocalMedia:
        """Open the capture devices, or raise MediaAcquisitionError."""


class DeviceMediaAcquirer(MediaAcquirer):
    """Opens microphone and camera through FFmpeg (aiortc ``MediaPlayer``)."""

    def __init__(self, settings: Settings | None = None, *, audio: bool | None = None, video: bool | None = None) -> None:
        self._settings = settings or get_settings()
        self._audio = self._settings.media_audio if audio is None else audio
        self._video = self._settings.media_video if video is None else video

    async def acquire(self) -> LocalMedia:
        settings = self._settings
        tracks: list[SwitchableTrack] = []
        try:
            if self._audio:
                player = await asyncio.to_thread(
                    MediaPlayer,
                    settings.media_audio_device,
                    format=settings.media_audio_format,
                )
                if player.audio is None:
                    raise MediaAcquisitionError("Audio device produced no audio track.")
                tracks.append(SwitchableTrack(player.audio))
            if self._video:
                player = await asyncio.to_thread(
                    MediaPlayer,
                    settings.media_video_device,
                    format=settings.media_video_format,
                    options={"video_size": settings.media_video_size},
                )
                if player.video is None:
                    raise MediaAcquisitionError("Video device produced no video track.")
                tracks.append(SwitchableTrack(player.video))
        except MediaAcquisitionError:
            LocalMedia(tracks).stop()
            raise
        except Exception as exc:
            LocalMedia(tracks).stop()
            raise MediaAcquisitionError(f"Could not open capture device: {exc}") from exc

        LOGGER.info("Acquired local media: %s", ", ".join(track.kind for track in tracks) or "none")
        return LocalMedia(tracks)
