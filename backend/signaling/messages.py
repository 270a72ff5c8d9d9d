"""
Signaling wire messages.

Wire shape (JSON text frames):

    {"type": "offer", "sessionId": "k3j...", "data": {...}}
    {"type": "identify", "clientType": "requester"}

Every message type is its own frozen dataclass; `type` is a class-level
discriminant, so isinstance() checks are exhaustive over InboundMessage.

Rules:
- Messages carry data only (no behavior beyond (de)serialization)
- Absent optional fields are omitted on the wire, never sent as null
- An empty sessionId is treated as absent
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Union

from spec import ROLE_ALIASES, ROLE_REQUESTER, ROLE_SERVER


# -------------------------
# Exceptions
# -------------------------

class SignalingParseError(Exception):
    """
    Raised when an inbound payload is not a valid signaling message.

    Covers invalid JSON, non-object payloads, unknown types, an identify
    without a valid clientType and non-string session ids. The message is
    dropped; the connection stays open.
    """


# -------------------------
# Enums
# -------------------------

class MessageType(str, Enum):
    """Canonical signaling message types."""
    IDENTIFY = "identify"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    START_RECORDING = "start-recording"
    STOP_RECORDING = "stop-recording"
    CLIENT_CONNECTED = "client-connected"
    CLIENT_DISCONNECTED = "client-disconnected"


class PartyRole(str, Enum):
    """Role a connected party declares on identify."""
    REQUESTER = ROLE_REQUESTER
    SERVER = ROLE_SERVER

    @classmethod
    def from_wire(cls, value: Any) -> PartyRole:
        """
        Resolve a wire clientType, accepting legacy aliases.

        Raises:
            ValueError for anything else.
        """
        if isinstance(value, str):
            for alias, role in ROLE_ALIASES:
                if value == alias:
                    return cls(role)
        return cls(value)


# -------------------------
# Message types
# -------------------------

@dataclass(frozen=True)
class Identify:
    """Party declares its role."""
    client_type: PartyRole
    type: ClassVar[MessageType] = MessageType.IDENTIFY


@dataclass(frozen=True)
class Offer:
    """Session offer from a requester; session_id None asks the relay to assign one."""
    session_id: str | None = None
    data: Any = None
    type: ClassVar[MessageType] = MessageType.OFFER


@dataclass(frozen=True)
class Answer:
    """Session answer from the server party."""
    session_id: str | None = None
    data: Any = None
    type: ClassVar[MessageType] = MessageType.ANSWER


@dataclass(frozen=True)
class IceCandidate:
    """Connectivity candidate for the other side of a session."""
    session_id: str | None = None
    data: Any = None
    type: ClassVar[MessageType] = MessageType.ICE_CANDIDATE


@dataclass(frozen=True)
class StartRecording:
    """Begin-capture directive (relay -> server) or request (party -> relay)."""
    session_id: str | None = None
    data: Any = None
    type: ClassVar[MessageType] = MessageType.START_RECORDING


@dataclass(frozen=True)
class StopRecording:
    """End-of-session request; removes the session."""
    session_id: str | None = None
    data: Any = None
    type: ClassVar[MessageType] = MessageType.STOP_RECORDING


@dataclass(frozen=True)
class ClientConnected:
    """Relay -> party: connection prompt, identify confirmation or stats."""
    data: Any = None
    session_id: str | None = None
    type: ClassVar[MessageType] = MessageType.CLIENT_CONNECTED


@dataclass(frozen=True)
class ClientDisconnected:
    """Relay -> party: rejection or peer-disconnect notice."""
    data: Any = None
    session_id: str | None = None
    type: ClassVar[MessageType] = MessageType.CLIENT_DISCONNECTED


SessionMessage = Union[Offer, Answer, IceCandidate, StartRecording, StopRecording]

InboundMessage = Union[
    Identify,
    Offer,
    Answer,
    IceCandidate,
    StartRecording,
    StopRecording,
    ClientConnected,
    ClientDisconnected,
]

_SESSION_TYPES: dict[MessageType, type] = {
    MessageType.OFFER: Offer,
    MessageType.ANSWER: Answer,
    MessageType.ICE_CANDIDATE: IceCandidate,
    MessageType.START_RECORDING: StartRecording,
    MessageType.STOP_RECORDING: StopRecording,
    MessageType.CLIENT_CONNECTED: ClientConnected,
    MessageType.CLIENT_DISCONNECTED: ClientDisconnected,
}


# -------------------------
# (De)serialization
# -------------------------

def _session_id(obj: dict[str, Any]) -> str | None:
    raw = obj.get("sessionId")
    if raw is None or raw == "":
        return None
    if not isinstance(raw, str):
        raise SignalingParseError(f"sessionId must be a string, got {type(raw).__name__}")
    return raw


def parse_message(payload: str | bytes) -> InboundMessage:
    """
    Decode one JSON text frame into a typed message.

    Raises:
        SignalingParseError if the payload is not a valid message.
    """
    try:
        obj = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise SignalingParseError(f"invalid JSON: {e}") from e

    if not isinstance(obj, dict):
        raise SignalingParseError(f"expected object, got {type(obj).__name__}")

    raw_type = obj.get("type")
    try:
        msg_type = MessageType(raw_type)
    except ValueError as e:
        raise SignalingParseError(f"unknown message type: {raw_type!r}") from e

    if msg_type is MessageType.IDENTIFY:
        try:
            role = PartyRole.from_wire(obj.get("clientType"))
        except ValueError as e:
            raise SignalingParseError(
                f"invalid clientType: {obj.get('clientType')!r}"
            ) from e
        return Identify(client_type=role)

    cls = _SESSION_TYPES[msg_type]
    return cls(session_id=_session_id(obj), data=obj.get("data"))


def to_wire(message: InboundMessage) -> dict[str, Any]:
    """Serialize a message to its JSON-ready dict."""
    out: dict[str, Any] = {"type": message.type.value}

    if isinstance(message, Identify):
        out["clientType"] = message.client_type.value
        return out

    if message.session_id is not None:
        out["sessionId"] = message.session_id
    if message.data is not None:
        out["data"] = message.data
    return out


def encode_message(message: InboundMessage) -> str:
    """Serialize a message to a JSON text frame."""
    return json.dumps(to_wire(message), separators=(",", ":"))
