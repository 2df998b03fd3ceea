"""Offer/answer/ICE negotiation for the one direct media path of a call."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from enum import Enum
from typing import Any

from aiortc import RTCConfiguration, RTCIceCandidate, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp
from pydantic import BaseModel

from rtc.media import LocalMedia
from session.errors import NegotiationError
from signaling.messages import (
    IceCandidatePayload,
    SessionDescriptionPayload,
    WebRTCAnswer,
    WebRTCIce,
    WebRTCOffer,
)

LOGGER = logging.getLogger(__name__)


class NegotiationState(str, Enum):
    IDLE = "idle"
    OFFER_SENT = "offer_sent"
    OFFER_RECEIVED = "offer_received"
    STABLE = "stable"


SendFn = Callable[[BaseModel], Any]
FailureFn = Callable[[int, NegotiationError], None]
ConnectionStateFn = Callable[[int, str], None]
RemoteTrackFn = Callable[[Any], None]


def build_configuration(ice_servers: list[str]) -> RTCConfiguration:
    return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])


def parse_remote_candidate(payload: IceCandidatePayload) -> RTCIceCandidate:
    raw = payload.candidate
    if raw.startswith("candidate:"):
        raw = raw[len("candidate:") :]
    try:
        candidate = candidate_from_sdp(raw)
    except (AssertionError, IndexError, ValueError) as exc:
        raise NegotiationError(f"Unparseable ICE candidate: {payload.candidate!r}") from exc
    candidate.sdpMid = payload.sdp_mid
    candidate.sdpMLineIndex = payload.sdp_mline_index
    return candidate


def candidate_payload(candidate: RTCIceCandidate) -> IceCandidatePayload:
    return IceCandidatePayload(
        candidate=f"candidate:{candidate_to_sdp(candidate)}",
        sdpMid=candidate.sdpMid,
        sdpMLineIndex=candidate.sdpMLineIndex,
    )


class PeerConnectionManager:
    """Owns the RTCPeerConnection, negotiation state and media tracks of one call.

    Commands (``start_as_caller``, ``on_offer``, ``on_answer``,
    ``on_remote_candidate``) validate the negotiation state synchronously and
    run their SDP work in background tasks, serialized by a lock so that
    candidates are applied in receipt order and always after the remote
    description. Every connection gets a new epoch; results and callbacks from
    an older epoch are dropped, which makes work that completes after
    :meth:`teardown` a no-op.

    Failures are reported through ``on_failure(epoch, error)``; the manager
    never retries a handshake.
    """

    def __init__(
        self,
        send: SendFn,
        *,
        ice_servers: list[str] | None = None,
        peer_factory: Callable[..., Any] = RTCPeerConnection,
        on_failure: FailureFn | None = None,
        on_connection_state: ConnectionStateFn | None = None,
        on_remote_track: RemoteTrackFn | None = None,
    ) -> None:
        self._send = send
        self._configuration = build_configuration(ice_servers or [])
        self._peer_factory = peer_factory
        self._on_failure = on_failure
        self._on_connection_state = on_connection_state
        self._on_remote_track = on_remote_track

        self._epoch = 0
        self._pc: Any = None
        self._media: LocalMedia | None = None
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self._negotiation_state = NegotiationState.IDLE
        self._pending_candidates: list[RTCIceCandidate] = []
        self._remote_description_applied = False
        self._remote_tracks: dict[str, Any] = {}
        self._connection_state = "new"

    # ------------------------------------------------------------------ state

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def is_open(self) -> bool:
        return self._pc is not None

    @property
    def negotiation_state(self) -> NegotiationState:
        return self._negotiation_state

    @property
    def pending_remote_candidates(self) -> tuple[RTCIceCandidate, ...]:
        return tuple(self._pending_candidates)

    @property
    def local_media(self) -> LocalMedia | None:
        return self._media

    @property
    def remote_tracks(self) -> dict[str, Any]:
        return dict(self._remote_tracks)

    @property
    def connection_state(self) -> str:
        return self._connection_state

    # -------------------------------------------------------------- lifecycle

    def open(self, media: LocalMedia) -> int:
        """Create the connection for a new call and attach the local tracks."""

        if self._pc is not None:
            raise NegotiationError("Peer connection already open.")

        self._epoch += 1
        epoch = self._epoch
        pc = self._peer_factory(configuration=self._configuration)
        self._pc = pc
        self._media = media
        self._lock = asyncio.Lock()
        self._negotiation_state = NegotiationState.IDLE
        self._remote_description_applied = False
        self._connection_state = "new"

        for track in media.tracks:
            pc.addTrack(track)

        def on_track(track: Any) -> None:
            if epoch != self._epoch:
                return
            LOGGER.info("Remote %s track received", track.kind)
            self._remote_tracks[track.kind] = track
            if self._on_remote_track is not None:
                self._on_remote_track(track)

        def on_ice_candidate(candidate: RTCIceCandidate | None) -> None:
            if epoch != self._epoch or candidate is None:
                return
            self.on_local_candidate_gathered(candidate)

        def on_connection_state_change() -> None:
            if epoch != self._epoch:
                return
            self._connection_state = pc.connectionState
            LOGGER.info("Peer connection state -> %s", pc.connectionState)
            if self._on_connection_state is not None:
                self._on_connection_state(epoch, pc.connectionState)

        pc.on("track", on_track)
        pc.on("icecandidate", on_ice_candidate)
        pc.on("connectionstatechange", on_connection_state_change)

        LOGGER.info("Peer connection opened (epoch=%s)", epoch)
        return epoch

    async def teardown(self) -> None:
        """Stop local tracks, close the connection, discard negotiation state. Idempotent."""

        pc, media = self._pc, self._media
        if pc is None and media is None and not self._tasks:
            return

        self._epoch += 1
        self._pc = None
        self._media = None
        tasks = list(self._tasks)
        self._tasks.clear()
        for task in tasks:
            task.cancel()

        self._negotiation_state = NegotiationState.IDLE
        self._pending_candidates.clear()
        self._remote_description_applied = False
        self._remote_tracks.clear()
        self._connection_state = "closed"

        if media is not None:
            media.stop()
        if pc is not None:
            try:
                await pc.close()
            except Exception:
                LOGGER.exception("Error while closing peer connection")
        LOGGER.info("Peer connection torn down")

    # ------------------------------------------------------------ negotiation

    def start_as_caller(self) -> None:
        epoch = self._epoch
        if not self._check_open("start_as_caller"):
            return
        if self._negotiation_state is not NegotiationState.IDLE:
            self._fail(epoch, NegotiationError(f"Cannot send offer in state {self._negotiation_state.value}"))
            return
        self._negotiation_state = NegotiationState.OFFER_SENT
        self._spawn(epoch, self._create_offer)

    def on_offer(self, offer: SessionDescriptionPayload) -> None:
        epoch = self._epoch
        if not self._check_open("webrtc_offer"):
            return
        if self._negotiation_state is not NegotiationState.IDLE or offer.type != "offer":
            self._fail(epoch, NegotiationError(f"Unexpected offer in state {self._negotiation_state.value}"))
            return
        self._negotiation_state = NegotiationState.OFFER_RECEIVED
        self._spawn(epoch, self._answer_offer, offer.sdp)

    def on_answer(self, answer: SessionDescriptionPayload) -> None:
        epoch = self._epoch
        if not self._check_open("webrtc_answer"):
            return
        if self._negotiation_state is not NegotiationState.OFFER_SENT or answer.type != "answer":
            self._fail(epoch, NegotiationError(f"Unexpected answer in state {self._negotiation_state.value}"))
            return
        self._spawn(epoch, self._accept_answer, answer.sdp)

    def on_remote_candidate(self, payload: IceCandidatePayload) -> None:
        epoch = self._epoch
        if not self._check_open("webrtc_ice"):
            return
        if not payload.candidate:
            LOGGER.debug("Remote end-of-candidates received")
            return
        try:
            candidate = parse_remote_candidate(payload)
        except NegotiationError as exc:
            self._fail(epoch, exc)
            return

        if not self._remote_description_applied:
            self._pending_candidates.append(candidate)
            LOGGER.debug("Buffered remote ICE candidate (%d pending)", len(self._pending_candidates))
            return
        self._spawn(epoch, self._apply_candidate, candidate)

    def on_local_candidate_gathered(self, candidate: RTCIceCandidate) -> None:
        if self._pc is None:
            return
        self._send(WebRTCIce(candidate=candidate_payload(candidate)))

    # ------------------------------------------------------------ local media

    def toggle_mute(self) -> bool | None:
        """Local-only: flips ``enabled`` on the audio tracks, no signaling."""

        if self._media is None:
            return None
        return self._media.toggle("audio")

    def toggle_video(self) -> bool | None:
        if self._media is None:
            return None
        return self._media.toggle("video")

    # -------------------------------------------------------------- internals

    async def _create_offer(self, epoch: int) -> None:
        async with self._lock:
            pc = self._current(epoch)
            if pc is None:
                return
            try:
                offer = await pc.createOffer()
                await pc.setLocalDescription(offer)
            except Exception as exc:
                raise NegotiationError(f"Could not create offer: {exc}") from exc
            if self._current(epoch) is None:
                return
            description = pc.localDescription
            self._send(WebRTCOffer(offer=SessionDescriptionPayload(type="offer", sdp=description.sdp)))
            LOGGER.info("Sent webrtc_offer")

    async def _answer_offer(self, epoch: int, sdp: str) -> None:
        async with self._lock:
            pc = self._current(epoch)
            if pc is None:
                return
            await self._apply_remote_description(epoch, pc, RTCSessionDescription(sdp=sdp, type="offer"))
            if self._current(epoch) is None:
                return
            try:
                answer = await pc.createAnswer()
                await pc.setLocalDescription(answer)
            except Exception as exc:
                raise NegotiationError(f"Could not create answer: {exc}") from exc
            if self._current(epoch) is None:
                return
            self._negotiation_state = NegotiationState.STABLE
            description = pc.localDescription
            self._send(WebRTCAnswer(answer=SessionDescriptionPayload(type="answer", sdp=description.sdp)))
            LOGGER.info("Sent webrtc_answer")

    async def _accept_answer(self, epoch: int, sdp: str) -> None:
        async with self._lock:
            pc = self._current(epoch)
            if pc is None:
                return
            await self._apply_remote_description(epoch, pc, RTCSessionDescription(sdp=sdp, type="answer"))
            if self._current(epoch) is None:
                return
            self._negotiation_state = NegotiationState.STABLE
            LOGGER.info("Negotiation stable")

    async def _apply_remote_description(self, epoch: int, pc: Any, description: RTCSessionDescription) -> None:
        try:
            await pc.setRemoteDescription(description)
        except Exception as exc:
            raise NegotiationError(f"Remote {description.type} rejected: {exc}") from exc

        # Candidates that arrive while flushing are appended and drained here too.
        while self._pending_candidates:
            candidate = self._pending_candidates.pop(0)
            await self._add_candidate(pc, candidate)
            if self._current(epoch) is None:
                return
        self._remote_description_applied = True

    async def _apply_candidate(self, epoch: int, candidate: RTCIceCandidate) -> None:
        async with self._lock:
            pc = self._current(epoch)
            if pc is None:
                return
            await self._add_candidate(pc, candidate)

    @staticmethod
    async def _add_candidate(pc: Any, candidate: RTCIceCandidate) -> None:
        try:
            await pc.addIceCandidate(candidate)
        except Exception as exc:
            raise NegotiationError(f"ICE candidate rejected: {exc}") from exc

    def _current(self, epoch: int) -> Any:
        if epoch != self._epoch:
            return None
        return self._pc

    def _check_open(self, operation: str) -> bool:
        if self._pc is None:
            LOGGER.warning("Ignoring %s, no open peer connection", operation)
            return False
        return True

    def _spawn(self, epoch: int, step: Callable[..., Coroutine[Any, Any, None]], *args: Any) -> None:
        task = asyncio.create_task(self._guard(epoch, step, *args))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guard(self, epoch: int, step: Callable[..., Coroutine[Any, Any, None]], *args: Any) -> None:
        try:
            await step(epoch, *args)
        except asyncio.CancelledError:
            raise
        except NegotiationError as exc:
            self._fail(epoch, exc)
        except Exception as exc:
            LOGGER.exception("Unexpected negotiation error")
            self._fail(epoch, NegotiationError(str(exc)))

    def _fail(self, epoch: int, error: NegotiationError) -> None:
        if epoch != self._epoch or self._pc is None:
            LOGGER.debug("Discarding stale negotiation failure: %s", error.detail)
            return
        LOGGER.warning("Negotiation failed: %s", error.detail)
        if self._on_failure is not None:
            self._on_failure(epoch, error)
