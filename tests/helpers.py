"""In-memory stand-ins for the network and the capture devices."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from aiortc import RTCSessionDescription

from rtc.media import LocalMedia, MediaAcquirer
from session.errors import MediaAcquisitionError


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.005)


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def candidate_line(foundation: str, index: int = 1) -> str:
    return f"candidate:{foundation} 1 udp 2130706431 10.0.0.{index} {50000 + index} typ host"


class FakeTrack:
    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.enabled = True
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class FakePeerConnection:
    def __init__(self, configuration: Any = None) -> None:
        self.configuration = configuration
        self.tracks: list[Any] = []
        self.handlers: dict[str, Callable[..., Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self.localDescription: RTCSessionDescription | None = None
        self.remoteDescription: RTCSessionDescription | None = None
        self.connectionState = "new"
        self.closed = False
        self.close_calls = 0
        self.reject_remote = False

    def addTrack(self, track: Any) -> None:
        self.tracks.append(track)

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self.handlers[event] = handler

    def emit(self, event: str, *args: Any) -> None:
        self.handlers[event](*args)

    async def createOffer(self) -> RTCSessionDescription:
        await asyncio.sleep(0)
        return RTCSessionDescription(sdp="v=0\r\no=- offer\r\n", type="offer")

    async def createAnswer(self) -> RTCSessionDescription:
        await asyncio.sleep(0)
        return RTCSessionDescription(sdp="v=0\r\no=- answer\r\n", type="answer")

    async def setLocalDescription(self, description: RTCSessionDescription) -> None:
        self.localDescription = description

    async def setRemoteDescription(self, description: RTCSessionDescription) -> None:
        await asyncio.sleep(0)
        if self.reject_remote:
            raise ValueError("bad sdp")
        self.remoteDescription = description
        self.calls.append(("remote", description.type))

    async def addIceCandidate(self, candidate: Any) -> None:
        self.calls.append(("candidate", candidate.foundation))

    async def close(self) -> None:
        self.close_calls += 1
        self.closed = True
        self.connectionState = "closed"


class PeerFactory:
    """Records every connection the manager creates."""

    def __init__(self, *, reject_remote: bool = False) -> None:
        self.instances: list[FakePeerConnection] = []
        self._reject_remote = reject_remote

    def __call__(self, configuration: Any = None) -> FakePeerConnection:
        pc = FakePeerConnection(configuration)
        pc.reject_remote = self._reject_remote
        self.instances.append(pc)
        return pc

    @property
    def last(self) -> FakePeerConnection:
        return self.instances[-1]


class FakeAcquirer(MediaAcquirer):
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.acquired: list[LocalMedia] = []

    async def acquire(self) -> LocalMedia:
        if self.fail:
            raise MediaAcquisitionError("camera denied")
        media = LocalMedia([FakeTrack("audio"), FakeTrack("video")])
        self.acquired.append(media)
        return media


class FakeChannel:
    """Signaling channel double with the same handler contract as the real one."""

    def __init__(self) -> None:
        self.sent: list[Any] = []
        self.is_open = False
        self.connects = 0
        self.on_connect: Callable[[], None] | None = None
        self.gate: asyncio.Event | None = None
        self._message_handlers: list[Callable[[Any], Any]] = []
        self._open_handlers: list[Callable[[], None]] = []
        self._close_handlers: list[Callable[[bool], None]] = []

    def on_message(self, handler: Callable[[Any], Any]) -> None:
        self._message_handlers.append(handler)

    def on_open(self, handler: Callable[[], None]) -> None:
        self._open_handlers.append(handler)

    def on_close(self, handler: Callable[[bool], None]) -> None:
        self._close_handlers.append(handler)

    async def connect(self) -> bool:
        self.connects += 1
        if self.on_connect is not None:
            self.on_connect()
        if self.gate is not None:
            await self.gate.wait()
        self.is_open = True
        for handler in self._open_handlers:
            handler()
        return True

    def send(self, message: Any) -> bool:
        if not self.is_open:
            return False
        self.sent.append(message)
        return True

    async def close(self) -> None:
        if not self.is_open:
            return
        self.is_open = False
        for handler in self._close_handlers:
            handler(True)

    def drop(self) -> None:
        self.is_open = False
        for handler in self._close_handlers:
            handler(False)

    def deliver(self, message: Any) -> None:
        for handler in self._message_handlers:
            handler(message)

    def sent_types(self) -> list[str]:
        return [message.type for message in self.sent]
