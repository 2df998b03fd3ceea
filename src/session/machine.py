"""Call session state machine.

The machine is an actor: signaling messages, user commands, timer firings and
peer connection callbacks are all posted to one queue and handled strictly one
at a time. Handlers may await (media acquisition, teardown, token fetch), but
no other event is processed until they return.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from aiortc import RTCPeerConnection

from auth.credentials import Credentials
from config.settings import Settings, get_settings
from rtc.media import MediaAcquirer
from rtc.peer import PeerConnectionManager
from session.errors import CredentialError, MediaAcquisitionError, NegotiationError
from session.events import (
    MessageReceived,
    NegotiationFailed,
    PeerConnectionStateChanged,
    SessionEvent,
    Shutdown,
    TimerFired,
    TransportClosed,
    TransportOpened,
    UserAction,
    UserCommand,
)
from session.state import CALL_STATES, Role, Session, SessionSnapshot, SessionState
from session.supervisor import RECONNECT_TIMER, ReconnectionSupervisor
from session.timers import TimerSet
from signaling.channel import SignalingChannel
from signaling.messages import (
    Authenticate,
    Authenticated,
    CallEnded,
    EndCall,
    JoinQueue,
    LeaveQueue,
    MatchFound,
    PartnerDisconnected,
    Queued,
    ServerError,
    WebRTCAnswer,
    WebRTCIce,
    WebRTCOffer,
)

LOGGER = logging.getLogger(__name__)

OFFER_TIMER = "offer"
IN_CALL_TIMER = "in_call"

SnapshotListener = Callable[[SessionSnapshot], None]


class SessionStateMachine:
    """Authority for the call lifecycle of one user."""

    def __init__(
        self,
        channel: SignalingChannel,
        credentials: Credentials,
        media: MediaAcquirer,
        *,
        settings: Settings | None = None,
        peer_factory: Callable[..., Any] = RTCPeerConnection,
        on_remote_track: Callable[[Any], None] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._channel = channel
        self._credentials = credentials
        self._media = media
        self._queue: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._timers = TimerSet(self.post)
        self._listeners: list[SnapshotListener] = []
        self._runner: asyncio.Task | None = None
        self._token: str | None = None
        self._logged_out = False

        self.session = Session()
        self.peer = PeerConnectionManager(
            channel.send,
            ice_servers=self._settings.ice_servers,
            peer_factory=peer_factory,
            on_failure=lambda epoch, error: self.post(NegotiationFailed(epoch, error.detail)),
            on_connection_state=lambda epoch, state: self.post(PeerConnectionStateChanged(epoch, state)),
            on_remote_track=on_remote_track,
        )
        self.supervisor = ReconnectionSupervisor(
            channel,
            self._timers,
            delay=self._settings.reconnect_delay_seconds,
        )

        channel.on_open(lambda: self.post(TransportOpened()))
        channel.on_close(lambda explicit: self.post(TransportClosed(explicit)))
        channel.on_message(lambda message: self.post(MessageReceived(message)))

    # ---------------------------------------------------------------- public

    @property
    def state(self) -> SessionState:
        return self.session.state

    def post(self, event: SessionEvent) -> None:
        self._queue.put_nowait(event)

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def snapshot(self) -> SessionSnapshot:
        media = self.peer.local_media
        session = self.session
        return SessionSnapshot(
            state=session.state,
            queue_position=session.queue_position,
            call_id=session.call_id,
            partner_id=session.partner_id,
            role=session.role,
            failure=session.failure,
            last_error=session.last_error,
            reconnecting=self.supervisor.pending,
            reconnect_attempts=self.supervisor.attempts,
            audio_enabled=media.enabled("audio") if media else False,
            video_enabled=media.enabled("video") if media else False,
            connection_state=self.peer.connection_state if self.peer.is_open else None,
            call_started_at=session.call_started_at,
        )

    async def start(self) -> None:
        """Start the actor loop and the first connection attempt."""

        if self._runner is None:
            self._runner = asyncio.create_task(self.run())
        self.supervisor.start()

    async def stop(self) -> None:
        self.post(Shutdown())
        if self._runner is not None:
            await self._runner
            self._runner = None

    async def drain(self) -> None:
        """Wait until every event posted so far has been processed."""

        await self._queue.join()

    def join_queue(self) -> None:
        self.post(UserAction(UserCommand.JOIN_QUEUE))

    def leave_queue(self) -> None:
        self.post(UserAction(UserCommand.LEAVE_QUEUE))

    def end_call(self) -> None:
        self.post(UserAction(UserCommand.END_CALL))

    def toggle_mute(self) -> None:
        self.post(UserAction(UserCommand.TOGGLE_MUTE))

    def toggle_video(self) -> None:
        self.post(UserAction(UserCommand.TOGGLE_VIDEO))

    def logout(self) -> None:
        self.post(UserAction(UserCommand.LOGOUT))

    def login(self) -> None:
        self.post(UserAction(UserCommand.LOGIN))

    async def run(self) -> None:
        while True:
            event = await self._queue.get()
            before = self.snapshot()
            try:
                if isinstance(event, Shutdown):
                    await self._shutdown()
                    return
                await self._handle(event)
            except Exception:
                LOGGER.exception("Session failed to process %s", type(event).__name__)
            finally:
                self._queue.task_done()
                self._publish(before)

    # -------------------------------------------------------------- dispatch

    async def _handle(self, event: SessionEvent) -> None:
        if self.session.state is SessionState.ENDED:
            LOGGER.debug("Session ended; ignoring %s", type(event).__name__)
            return

        if isinstance(event, MessageReceived):
            await self._on_message(event.message)
        elif isinstance(event, UserAction):
            await self._on_user_action(event.command)
        elif isinstance(event, TimerFired):
            await self._on_timer(event)
        elif isinstance(event, TransportOpened):
            await self._on_transport_opened()
        elif isinstance(event, TransportClosed):
            await self._on_transport_closed(event.explicit)
        elif isinstance(event, NegotiationFailed):
            await self._on_negotiation_failed(event.epoch, event.detail)
        elif isinstance(event, PeerConnectionStateChanged):
            if event.state == "failed":
                await self._on_negotiation_failed(event.epoch, "peer connection failed")

    async def _on_message(self, message: Any) -> None:
        state = self.session.state

        if isinstance(message, Authenticated):
            if state is not SessionState.CONNECTING:
                return self._ignore(message.type)
            self.session.user_id = message.user_id
            self._transition(SessionState.CONNECTED, "authenticated")

        elif isinstance(message, Queued):
            if state is not SessionState.QUEUED:
                return self._ignore(message.type)
            self.session.queue_position = message.position
            LOGGER.info("Queue position %d", message.position)

        elif isinstance(message, MatchFound):
            if state is not SessionState.QUEUED:
                return self._ignore(message.type)
            await self._on_match_found(message)

        elif isinstance(message, (CallEnded, PartnerDisconnected)):
            if state not in CALL_STATES:
                return self._ignore(message.type)
            await self._leave_call(message.type)

        elif isinstance(message, WebRTCOffer):
            if state not in CALL_STATES:
                return self._ignore(message.type)
            self._timers.cancel(OFFER_TIMER)
            self.peer.on_offer(message.offer)

        elif isinstance(message, WebRTCAnswer):
            if state not in CALL_STATES:
                return self._ignore(message.type)
            self.peer.on_answer(message.answer)

        elif isinstance(message, WebRTCIce):
            if state not in CALL_STATES:
                return self._ignore(message.type)
            self.peer.on_remote_candidate(message.candidate)

        elif isinstance(message, ServerError):
            LOGGER.warning("Signaling service error: %s", message.message)
            self.session.last_error = message.message

        else:
            self._ignore(getattr(message, "type", type(message).__name__))

    async def _on_user_action(self, command: UserCommand) -> None:
        state = self.session.state

        if command is UserCommand.JOIN_QUEUE:
            if state is not SessionState.CONNECTED:
                return self._ignore(command.value)
            self.session.failure = None
            self.session.queue_position = 0
            self._transition(SessionState.QUEUED, "join queue")
            self._channel.send(JoinQueue())

        elif command is UserCommand.LEAVE_QUEUE:
            if state is not SessionState.QUEUED:
                return self._ignore(command.value)
            self.session.queue_position = 0
            self._transition(SessionState.CONNECTED, "leave queue")
            self._channel.send(LeaveQueue())

        elif command is UserCommand.END_CALL:
            if state is not SessionState.IN_CALL:
                return self._ignore(command.value)
            self._channel.send(EndCall())
            await self._leave_call("end call")

        elif command is UserCommand.TOGGLE_MUTE:
            enabled = self.peer.toggle_mute()
            if enabled is None:
                return self._ignore(command.value)
            LOGGER.info("Microphone %s", "on" if enabled else "muted")

        elif command is UserCommand.TOGGLE_VIDEO:
            enabled = self.peer.toggle_video()
            if enabled is None:
                return self._ignore(command.value)
            LOGGER.info("Camera %s", "on" if enabled else "off")

        elif command is UserCommand.LOGOUT:
            self._logged_out = True
            self.supervisor.stop()
            self._credentials.logout()
            self._token = None
            await self._reset("logout")
            await self._channel.close()

        elif command is UserCommand.LOGIN:
            if not self._logged_out:
                return self._ignore(command.value)
            self._logged_out = False
            self.supervisor.start()

    async def _on_timer(self, event: TimerFired) -> None:
        if not self._timers.consume(event):
            LOGGER.debug("Stale timer %s ignored", event.name)
            return

        state = self.session.state
        if event.name == IN_CALL_TIMER:
            if state is SessionState.MATCHED:
                self.session.call_started_at = time.monotonic()
                self._transition(SessionState.IN_CALL, "call started")
        elif event.name == OFFER_TIMER:
            if state in CALL_STATES and self.session.role is Role.CALLER:
                self.peer.start_as_caller()
        elif event.name == RECONNECT_TIMER:
            if state is SessionState.DISCONNECTED and not self._logged_out:
                self.supervisor.on_timer()

    async def _on_transport_opened(self) -> None:
        if self.session.state is not SessionState.DISCONNECTED or self._logged_out:
            LOGGER.warning("Transport opened in state %s; closing it", self.session.state.value)
            await self._channel.close()
            return

        self.supervisor.on_transport_open()
        self._transition(SessionState.CONNECTING, "transport established")
        try:
            token = await self._credentials.get_token()
        except CredentialError as exc:
            LOGGER.error("Cannot authenticate: %s", exc.detail)
            await self._channel.close()
            await self._reset("credential failure")
            self.supervisor.on_transport_lost()
            return

        self._token = token
        self._channel.send(Authenticate(token=token))

    async def _on_transport_closed(self, explicit: bool) -> None:
        await self._reset("transport closed" if explicit else "transport lost")
        if not explicit and not self._logged_out:
            self.supervisor.on_transport_lost()

    async def _on_negotiation_failed(self, epoch: int, detail: str) -> None:
        if epoch != self.peer.epoch or self.session.state not in CALL_STATES:
            LOGGER.debug("Stale negotiation failure ignored: %s", detail)
            return
        LOGGER.warning("Call %s aborted: %s", self.session.call_id, detail)
        self._channel.send(EndCall())
        await self._leave_call("negotiation failed")

    # ---------------------------------------------------------------- calls

    async def _on_match_found(self, message: MatchFound) -> None:
        session = self.session
        session.call_id = message.call_id
        session.partner_id = message.partner_id
        session.role = self._resolve_role(message)
        session.queue_position = 0
        self._transition(SessionState.MATCHED, f"match {message.call_id} as {session.role.value}")

        try:
            media = await self._media.acquire()
        except MediaAcquisitionError as exc:
            LOGGER.error("Media acquisition failed for call %s: %s", message.call_id, exc.detail)
            session.failure = "media"
            self._channel.send(EndCall())
            await self._leave_call("media unavailable")
            return

        try:
            self.peer.open(media)
        except NegotiationError as exc:
            media.stop()
            LOGGER.warning("Could not open peer connection: %s", exc.detail)
            self._channel.send(EndCall())
            await self._leave_call("peer connection unavailable")
            return

        self._timers.schedule(IN_CALL_TIMER, self._settings.in_call_delay_seconds)
        if session.role is Role.CALLER:
            self._timers.schedule(OFFER_TIMER, self._settings.offer_delay_seconds)

    def _resolve_role(self, message: MatchFound) -> Role:
        if message.role is not None:
            return Role(message.role)
        # Both peers apply the same ordering rule, so exactly one side offers.
        local_id = self.session.user_id or self._token or ""
        return Role.CALLER if local_id < message.partner_id else Role.CALLEE

    async def _leave_call(self, reason: str) -> None:
        self._timers.cancel(OFFER_TIMER)
        self._timers.cancel(IN_CALL_TIMER)
        await self.peer.teardown()
        self.session.clear_call()
        self._transition(SessionState.CONNECTED, reason)

    async def _reset(self, reason: str) -> None:
        self._timers.cancel(OFFER_TIMER)
        self._timers.cancel(IN_CALL_TIMER)
        await self.peer.teardown()
        self.session.reset()
        self._transition(SessionState.DISCONNECTED, reason)

    async def _shutdown(self) -> None:
        self.supervisor.stop()
        self._timers.cancel_all()
        await self.peer.teardown()
        await self._channel.close()
        self.session.clear_call()
        self._transition(SessionState.ENDED, "shutdown")

    # -------------------------------------------------------------- helpers

    def _transition(self, new_state: SessionState, reason: str) -> None:
        old_state = self.session.state
        if old_state is new_state:
            return
        self.session.state = new_state
        LOGGER.info("Session %s -> %s (%s)", old_state.value, new_state.value, reason)

    def _ignore(self, what: str) -> None:
        LOGGER.info("Ignoring %s in state %s", what, self.session.state.value)

    def _publish(self, before: SessionSnapshot) -> None:
        after = self.snapshot()
        if after == before:
            return
        for listener in list(self._listeners):
            try:
                listener(after)
            except Exception:
                LOGGER.exception("Session listener failed")
