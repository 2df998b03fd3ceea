"""Domain-specific exceptions for the call session core.

The session actor maps each of these onto a recovery path; none of them is
allowed to escape the actor loop.
"""

from __future__ import annotations


class SessionError(Exception):
    default_detail: str = "Session error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class MalformedMessageError(SessionError):
    default_detail = "Malformed signaling message."

    def __init__(self, detail: str | None = None, *, message_type: str | None = None) -> None:
        super().__init__(detail)
        self.message_type = message_type


class UnknownMessageTypeError(SessionError):
    default_detail = "Unknown signaling message type."

    def __init__(self, message_type: str) -> None:
        super().__init__(f"Unknown signaling message type: {message_type!r}")
        self.message_type = message_type


class NegotiationError(SessionError):
    default_detail = "Peer connection negotiation failed."


class MediaAcquisitionError(SessionError):
    default_detail = "Camera or microphone unavailable."


class CredentialError(SessionError):
    default_detail = "Could not obtain an auth token."
