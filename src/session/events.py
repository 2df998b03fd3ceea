"""Inputs to the session actor. Everything the session reacts to is one of these."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class UserCommand(str, Enum):
    JOIN_QUEUE = "join_queue"
    LEAVE_QUEUE = "leave_queue"
    END_CALL = "end_call"
    TOGGLE_MUTE = "toggle_mute"
    TOGGLE_VIDEO = "toggle_video"
    LOGOUT = "logout"
    LOGIN = "login"


@dataclass(frozen=True, slots=True)
class TransportOpened:
    pass


@dataclass(frozen=True, slots=True)
class TransportClosed:
    explicit: bool = False


@dataclass(frozen=True, slots=True)
class MessageReceived:
    message: Any


@dataclass(frozen=True, slots=True)
class UserAction:
    command: UserCommand


@dataclass(frozen=True, slots=True)
class TimerFired:
    name: str
    token: int


@dataclass(frozen=True, slots=True)
class NegotiationFailed:
    epoch: int
    detail: str


@dataclass(frozen=True, slots=True)
class PeerConnectionStateChanged:
    epoch: int
    state: str


@dataclass(frozen=True, slots=True)
class Shutdown:
    pass


SessionEvent = (
    TransportOpened
    | TransportClosed
    | MessageReceived
    | UserAction
    | TimerFired
    | NegotiationFailed
    | PeerConnectionStateChanged
    | Shutdown
)
