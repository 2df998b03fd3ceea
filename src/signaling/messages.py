"""Pydantic models for the signaling wire protocol.

Every frame is one JSON object discriminated by its ``type`` field.  Unknown
extra fields are ignored so that newer servers can add payload without
breaking older clients.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from session.errors import MalformedMessageError, UnknownMessageTypeError


class _WireModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)


class SessionDescriptionPayload(_WireModel):
    """Browser-compatible ``RTCSessionDescriptionInit``."""

    type: Literal["offer", "answer"]
    sdp: str = Field(min_length=1)


class IceCandidatePayload(_WireModel):
    """Browser-compatible ``RTCIceCandidateInit``.

    An empty ``candidate`` string is the end-of-candidates marker.
    """

    candidate: str
    sdp_mid: str | None = Field(default=None, alias="sdpMid")
    sdp_mline_index: int | None = Field(default=None, alias="sdpMLineIndex")


class Authenticate(_WireModel):
    type: Literal["authenticate"] = "authenticate"
    token: str = Field(min_length=1)


class Authenticated(_WireModel):
    type: Literal["authenticated"] = "authenticated"
    message: str | None = None
    user_id: str | None = None


class JoinQueue(_WireModel):
    type: Literal["join_queue"] = "join_queue"


class LeaveQueue(_WireModel):
    type: Literal["leave_queue"] = "leave_queue"


class Queued(_WireModel):
    type: Literal["queued"] = "queued"
    position: int = Field(ge=0)
    message: str = ""


class MatchFound(_WireModel):
    type: Literal["match_found"] = "match_found"
    call_id: str = Field(min_length=1)
    partner_id: str = Field(min_length=1)
    message: str = ""
    role: Literal["caller", "callee"] | None = None


class CallEnded(_WireModel):
    type: Literal["call_ended"] = "call_ended"
    message: str = ""


class PartnerDisconnected(_WireModel):
    type: Literal["partner_disconnected"] = "partner_disconnected"
    message: str = ""


class EndCall(_WireModel):
    type: Literal["end_call"] = "end_call"


class WebRTCOffer(_WireModel):
    type: Literal["webrtc_offer"] = "webrtc_offer"
    offer: SessionDescriptionPayload


class WebRTCAnswer(_WireModel):
    type: Literal["webrtc_answer"] = "webrtc_answer"
    answer: SessionDescriptionPayload


class WebRTCIce(_WireModel):
    type: Literal["webrtc_ice"] = "webrtc_ice"
    candidate: IceCandidatePayload


class ServerError(_WireModel):
    type: Literal["error"] = "error"
    message: str


SignalingMessage = Annotated[
    Union[
        Authenticate,
        Authenticated,
        JoinQueue,
        LeaveQueue,
        Queued,
        MatchFound,
        CallEnded,
        PartnerDisconnected,
        EndCall,
        WebRTCOffer,
        WebRTCAnswer,
        WebRTCIce,
        ServerError,
    ],
    Field(discriminator="type"),
]

MESSAGE_TYPES: frozenset[str] = frozenset(
    {
        "authenticate",
        "authenticated",
        "join_queue",
        "leave_queue",
        "queued",
        "match_found",
        "call_ended",
        "partner_disconnected",
        "end_call",
        "webrtc_offer",
        "webrtc_answer",
        "webrtc_ice",
        "error",
    }
)

_ADAPTER: TypeAdapter[Any] = TypeAdapter(SignalingMessage)


def decode_message(text: str | bytes) -> SignalingMessage:
    """Parse one inbound frame.

    Raises:
        MalformedMessageError: invalid JSON, missing ``type``, or a bad payload for a known type.
        UnknownMessageTypeError: well-formed frame whose ``type`` this client does not know.
    """

    try:
        data = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedMessageError(f"Invalid JSON frame: {exc}") from exc

    if not isinstance(data, dict):
        raise MalformedMessageError("Signaling frame is not a JSON object.")

    message_type = data.get("type")
    if not isinstance(message_type, str) or not message_type:
        raise MalformedMessageError("Signaling frame has no 'type' field.")
    if message_type not in MESSAGE_TYPES:
        raise UnknownMessageTypeError(message_type)

    try:
        return _ADAPTER.validate_python(data)
    except ValidationError as exc:
        raise MalformedMessageError(
            f"Invalid {message_type!r} payload: {exc.error_count()} error(s)",
            message_type=message_type,
        ) from exc


def encode_message(message: BaseModel) -> str:
    return message.model_dump_json(by_alias=True)
