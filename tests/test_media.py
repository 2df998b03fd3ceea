from __future__ import annotations

from fractions import Fraction

import av
import numpy as np
import pytest
from aiortc import MediaStreamTrack

from rtc.media import LocalMedia, SwitchableTrack, black_like, silence_like

from helpers import FakeTrack


class FrameSource(MediaStreamTrack):
    def __init__(self, kind: str, frame) -> None:
        super().__init__()
        self.kind = kind
        self._frame = frame

    async def recv(self):
        return self._frame


def audio_frame() -> av.AudioFrame:
    frame = av.AudioFrame.from_ndarray(np.full((1, 960), 1000, dtype=np.int16), format="s16", layout="mono")
    frame.sample_rate = 48000
    frame.pts = 960
    frame.time_base = Fraction(1, 48000)
    return frame


def video_frame() -> av.VideoFrame:
    frame = av.VideoFrame.from_ndarray(np.full((4, 6, 3), 200, dtype=np.uint8), format="rgb24")
    frame.pts = 3000
    frame.time_base = Fraction(1, 90000)
    return frame


def test_toggle_twice_restores_original_state() -> None:
    media = LocalMedia([FakeTrack("audio"), FakeTrack("video")])

    assert media.toggle("audio") is False
    assert media.enabled("audio") is False
    assert media.enabled("video") is True
    assert media.toggle("audio") is True
    assert all(track.enabled for track in media.tracks)


def test_enabled_is_false_without_tracks_of_kind() -> None:
    media = LocalMedia([FakeTrack("audio")])

    assert media.enabled("video") is False
    assert media.toggle("video") is False


def test_stop_is_idempotent_and_survives_track_errors() -> None:
    class BrokenTrack(FakeTrack):
        def stop(self) -> None:
            raise RuntimeError("device busy")

    good = FakeTrack("audio")
    media = LocalMedia([BrokenTrack("video"), good])

    media.stop()
    media.stop()

    assert media.stopped is True
    assert good.stopped is True


def test_silence_and_black_keep_timing() -> None:
    silent = silence_like(audio_frame())
    assert not silent.to_ndarray().any()
    assert silent.sample_rate == 48000
    assert silent.pts == 960

    black = black_like(video_frame())
    assert (black.width, black.height) == (6, 4)
    assert not black.to_ndarray(format="rgb24").any()
    assert black.pts == 3000


@pytest.mark.asyncio
async def test_switchable_track_blanks_frames_while_disabled() -> None:
    track = SwitchableTrack(FrameSource("audio", audio_frame()))
    assert track.kind == "audio"

    assert (await track.recv()).to_ndarray().any()
    track.enabled = False
    assert not (await track.recv()).to_ndarray().any()

    video = SwitchableTrack(FrameSource("video", video_frame()))
    video.enabled = False
    assert not (await video.recv()).to_ndarray(format="rgb24").any()


def test_switchable_track_stop_releases_source() -> None:
    source = FrameSource("video", video_frame())
    track = SwitchableTrack(source)

    track.stop()

    assert track.readyState == "ended"
    assert source.readyState == "ended"
