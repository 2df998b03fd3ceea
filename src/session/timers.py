from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from session.events import TimerFired

LOGGER = logging.getLogger(__name__)


class TimerSet:
    """Named, cancellable one-shot timers that fire as actor events.

    A timer that was cancelled or rescheduled may still have its event queued;
    :meth:`consume` rejects such stale firings by token.
    """

    def __init__(self, post: Callable[[TimerFired], None]) -> None:
        self._post = post
        self._seq = 0
        self._timers: dict[str, tuple[int, asyncio.TimerHandle]] = {}

    def schedule(self, name: str, delay: float) -> None:
        self.cancel(name)
        self._seq += 1
        token = self._seq
        handle = asyncio.get_running_loop().call_later(delay, self._post, TimerFired(name, token))
        self._timers[name] = (token, handle)
        LOGGER.debug("Timer %s scheduled in %.2fs", name, delay)

    def cancel(self, name: str) -> None:
        entry = self._timers.pop(name, None)
        if entry is not None:
            entry[1].cancel()
            LOGGER.debug("Timer %s cancelled", name)

    def cancel_all(self) -> None:
        for name in list(self._timers):
            self.cancel(name)

    def pending(self, name: str) -> bool:
        return name in self._timers

    def consume(self, event: TimerFired) -> bool:
        entry = self._timers.get(event.name)
        if entry is None or entry[0] != event.token:
            return False
        del self._timers[event.name]
        return True
