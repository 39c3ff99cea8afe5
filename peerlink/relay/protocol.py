"""Relay wire protocol (JSON over WebSocket).

Every frame is an `Envelope`. Event fields live in `payload` using the camelCase
names the browser clients already speak (recipientId, toUserId, callId, ...).
Inbound event kinds form a closed set; each has a pydantic model that checks the
fields the relay itself needs and lets everything else pass through untouched.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

PROTOCOL_VERSION = 1


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Envelope(BaseModel):
    """Top-level message wrapper."""

    v: int = Field(default=PROTOCOL_VERSION)
    type: str
    id: str = Field(default_factory=lambda: str(uuid4()))
    ts: str = Field(default_factory=utc_now_iso)

    payload: dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(self.model_dump(), ensure_ascii=True, separators=(",", ":"))

    @staticmethod
    def from_json(data: str | bytes) -> "Envelope":
        return Envelope.model_validate(json.loads(data))


def make_envelope(msg_type: str, **kwargs: Any) -> Envelope:
    return Envelope(type=msg_type, **kwargs)


class MalformedEnvelope(ValueError):
    """Frame could not be parsed or is missing fields its event kind requires."""

    def __init__(self, message: str, msg_type: str | None = None) -> None:
        super().__init__(message)
        self.msg_type = msg_type


class EventKind(str, Enum):
    CHAT_MESSAGE = "chat_message"
    TYPING_START = "typing_start"
    TYPING_END = "typing_end"
    INITIATE_CALL = "initiate_call"
    ACCEPT_CALL = "accept_call"
    REJECT_CALL = "reject_call"
    WEBRTC_OFFER = "webrtc_offer"
    WEBRTC_ANSWER = "webrtc_answer"
    WEBRTC_ICE_CANDIDATE = "webrtc_ice_candidate"
    WEBRTC_END_CALL = "webrtc_end_call"
    SEND_CAPTION = "send_caption"
    FRIEND_REQUEST_SENT = "friend_request_sent"


# Control frames handled by the server itself rather than relayed.
CONTROL_TYPES = frozenset({"auth", "ping", "list_online"})

# Non-delivery of these is reported back to the sender; everything else is silent.
DELIVERY_SENSITIVE = frozenset({EventKind.CHAT_MESSAGE, EventKind.INITIATE_CALL})

WEBRTC_KINDS = frozenset(
    {
        EventKind.WEBRTC_OFFER,
        EventKind.WEBRTC_ANSWER,
        EventKind.WEBRTC_ICE_CANDIDATE,
        EventKind.WEBRTC_END_CALL,
    }
)


class _Event(BaseModel):
    # Unknown fields are kept so opaque payloads (SDP, ICE, captions) survive.
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    def passthrough(self) -> dict[str, Any]:
        """The inbound payload, re-keyed with the wire (camelCase) names."""
        return self.model_dump(by_alias=True)


class ChatMessage(_Event):
    recipient_id: str = Field(alias="recipientId", min_length=1)
    message_id: str = Field(alias="messageId", min_length=1)
    text: str


class Typing(_Event):
    recipient_id: str = Field(alias="recipientId", min_length=1)


class InitiateCall(_Event):
    call_id: str = Field(alias="callId", min_length=1)
    room_id: str | None = Field(default=None, alias="roomId")
    target_user_id: str = Field(alias="targetUserId", min_length=1)
    target_username: str | None = Field(default=None, alias="targetUsername")


class AcceptCall(_Event):
    call_id: str = Field(alias="callId", min_length=1)
    room_id: str | None = Field(default=None, alias="roomId")
    caller_id: str = Field(alias="callerId", min_length=1)


class RejectCall(_Event):
    call_id: str = Field(alias="callId", min_length=1)
    caller_id: str = Field(alias="callerId", min_length=1)


class WebRTCSignal(_Event):
    # Older clients address the peer as targetUserId.
    to_user_id: str = Field(
        validation_alias=AliasChoices("toUserId", "targetUserId"),
        serialization_alias="toUserId",
        min_length=1,
    )
    call_id: str | None = Field(default=None, alias="callId")


class SendCaption(_Event):
    to_user_id: str = Field(alias="toUserId", min_length=1)
    call_id: str | None = Field(default=None, alias="callId")
    caption: Any = None


class FriendRequestSent(_Event):
    to_user_id: str = Field(alias="toUserId", min_length=1)
    request_id: str | None = Field(default=None, alias="requestId")
    from_user: Any = Field(default=None, alias="fromUser")


EVENT_MODELS: dict[EventKind, type[_Event]] = {
    EventKind.CHAT_MESSAGE: ChatMessage,
    EventKind.TYPING_START: Typing,
    EventKind.TYPING_END: Typing,
    EventKind.INITIATE_CALL: InitiateCall,
    EventKind.ACCEPT_CALL: AcceptCall,
    EventKind.REJECT_CALL: RejectCall,
    EventKind.WEBRTC_OFFER: WebRTCSignal,
    EventKind.WEBRTC_ANSWER: WebRTCSignal,
    EventKind.WEBRTC_ICE_CANDIDATE: WebRTCSignal,
    EventKind.WEBRTC_END_CALL: WebRTCSignal,
    EventKind.SEND_CAPTION: SendCaption,
    EventKind.FRIEND_REQUEST_SENT: FriendRequestSent,
}


def parse_frame(raw: str | bytes) -> Envelope:
    try:
        return Envelope.from_json(raw)
    except (ValueError, ValidationError) as e:
        raise MalformedEnvelope(f"bad json: {e}") from e


def parse_event(env: Envelope) -> tuple[EventKind, _Event]:
    """Resolve the envelope's tag to an EventKind and validate its payload."""
    try:
        kind = EventKind(env.type)
    except ValueError:
        raise MalformedEnvelope(f"unknown event: {env.type}", env.type) from None
    try:
        event = EVENT_MODELS[kind].model_validate(env.payload or {})
    except ValidationError as e:
        missing = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise MalformedEnvelope(f"invalid {kind.value}: {missing}", env.type) from e
    return kind, event
