"""Reconnection policy for the signaling transport."""

from __future__ import annotations

import asyncio
import logging

from session.timers import TimerSet
from signaling.channel import SignalingChannel

LOGGER = logging.getLogger(__name__)

RECONNECT_TIMER = "reconnect"


class ReconnectionSupervisor:
    """Reconnects after every unexplained transport loss.

    The delay is fixed and attempts are unbounded: each attempt re-runs the
    whole connect/authenticate sequence, and no call survives a drop. The
    retry timer lives in the session's :class:`TimerSet` so the actor can
    cancel it (logout, shutdown) like any other pending transition.
    """

    def __init__(self, channel: SignalingChannel, timers: TimerSet, *, delay: float = 3.0) -> None:
        self._channel = channel
        self._timers = timers
        self._delay = delay
        self._stopped = True
        self._attempts = 0
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> bool:
        return self._timers.pending(RECONNECT_TIMER)

    @property
    def attempts(self) -> int:
        """Reconnect attempts since the last successful open."""

        return self._attempts

    def start(self) -> None:
        """Enable supervision and connect immediately."""

        self._stopped = False
        self._attempts = 0
        self._timers.cancel(RECONNECT_TIMER)
        self._connect()

    def stop(self) -> None:
        """Disable supervision; a scheduled reconnect will not fire and an in-flight one is aborted."""

        self._stopped = True
        self._timers.cancel(RECONNECT_TIMER)
        for task in list(self._tasks):
            task.cancel()

    def on_transport_open(self) -> None:
        self._attempts = 0

    def on_transport_lost(self) -> None:
        if self._stopped:
            return
        LOGGER.info("Signaling transport lost; reconnecting in %.1fs", self._delay)
        self._timers.schedule(RECONNECT_TIMER, self._delay)

    def on_timer(self) -> None:
        if self._stopped:
            return
        self._attempts += 1
        LOGGER.info("Reconnect attempt %d", self._attempts)
        self._connect()

    def _connect(self) -> None:
        task = asyncio.create_task(self._channel.connect())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
