"""Session data model."""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    QUEUED = "queued"
    MATCHED = "matched"
    IN_CALL = "in_call"
    ENDED = "ended"


class Role(str, Enum):
    CALLER = "caller"
    CALLEE = "callee"


CALL_STATES = frozenset({SessionState.MATCHED, SessionState.IN_CALL})


@dataclass
class Session:
    """Mutable lifecycle record; only the state machine writes to it."""

    state: SessionState = SessionState.DISCONNECTED
    queue_position: int = 0
    call_id: str | None = None
    partner_id: str | None = None
    role: Role | None = None
    user_id: str | None = None
    failure: str | None = None
    last_error: str | None = None
    call_started_at: float | None = None

    def clear_call(self) -> None:
        self.call_id = None
        self.partner_id = None
        self.role = None
        self.call_started_at = None

    def reset(self) -> None:
        """Forget everything learned from the current connection; ``state`` is left to the caller."""

        self.queue_position = 0
        self.user_id = None
        self.failure = None
        self.clear_call()


@dataclass(frozen=True, slots=True)
class SessionSnapshot:
    """Read-only view handed to observers."""

    state: SessionState
    queue_position: int
    call_id: str | None
    partner_id: str | None
    role: Role | None
    failure: str | None
    last_error: str | None
    reconnecting: bool
    reconnect_attempts: int
    audio_enabled: bool
    video_enabled: bool
    connection_state: str | None
    call_started_at: float | None

    @property
    def status(self) -> str:
        if self.reconnecting:
            return "reconnecting"
        if self.failure:
            return "failed"
        return self.state.value

    @property
    def call_duration(self) -> float | None:
        if self.call_started_at is None:
            return None
        return max(0.0, time.monotonic() - self.call_started_at)
