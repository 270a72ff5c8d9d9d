"""
Session router: pairs one requester with one server per session id.

Per-session lifecycle:

    (no session) --offer--> PENDING --answer--> PAIRED
         PENDING / PAIRED --stop-recording | party removed--> CLOSED

route() is synchronous and never raises for routing problems; every
inbound message yields a RouteResult describing what to send, what to
surface to collaborators and how the message was handled. The relay does
the actual I/O.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from observability.logger import log_event, now_ms
from signaling.messages import (
    Answer,
    ClientConnected,
    ClientDisconnected,
    IceCandidate,
    Identify,
    InboundMessage,
    Offer,
    PartyRole,
    StartRecording,
    StopRecording,
)
from signaling.registry import SignalingRegistry
from spec import (
    ID_ALPHABET,
    NO_SERVER_AVAILABLE_MESSAGE,
    PEER_DISCONNECTED_REASON,
    SESSION_ID_LENGTH,
)


def generate_session_id() -> str:
    return "".join(secrets.choice(ID_ALPHABET) for _ in range(SESSION_ID_LENGTH))


# -------------------------
# Session record
# -------------------------

class SessionState(str, Enum):
    PENDING = "pending"
    PAIRED = "paired"
    CLOSED = "closed"


@dataclass
class Session:
    session_id: str
    requester_id: str
    server_id: str
    state: SessionState = SessionState.PENDING
    created_at: float = field(default_factory=time.monotonic)

    def binds(self, party_id: str) -> bool:
        return party_id in (self.requester_id, self.server_id)

    def peer_of(self, party_id: str) -> str | None:
        if party_id == self.requester_id:
            return self.server_id
        if party_id == self.server_id:
            return self.requester_id
        return None


# -------------------------
# Routing results
# -------------------------

class RouteOutcome(str, Enum):
    SESSION_CREATED = "session_created"
    FORWARDED = "forwarded"
    QUEUED = "queued"
    SESSION_CLOSED = "session_closed"
    NOTICE = "notice"
    NO_SERVER_AVAILABLE = "no_server_available"
    SESSION_NOT_FOUND = "session_not_found"
    ROLE_VIOLATION = "role_violation"
    SESSION_CONFLICT = "session_conflict"
    IGNORED = "ignored"


@dataclass(frozen=True)
class Delivery:
    """One message for one party."""
    party_id: str
    message: InboundMessage


@dataclass(frozen=True)
class CollaboratorNotice:
    """Recording-control notice surfaced outside the relay."""
    type: str
    session_id: str | None
    client_id: str

    def as_dict(self) -> dict[str, Any]:
        return {"type": self.type, "sessionId": self.session_id, "clientId": self.client_id}


@dataclass
class RouteResult:
    outcome: RouteOutcome
    session_id: str | None = None
    deliveries: list[Delivery] = field(default_factory=list)
    notices: list[CollaboratorNotice] = field(default_factory=list)


# -------------------------
# Router
# -------------------------

class SessionRouter:
    """
    Owns the session table and the pending candidate queues.

    Pending candidates are kept per session id, in arrival order, until an
    offer creates that session (flushed) or the id is closed (discarded).
    The queues are unbounded; they live as long as the sending connection.
    """

    def __init__(
        self,
        registry: SignalingRegistry,
        *,
        send_capture_directive: bool = True,
        id_factory: Callable[[], str] = generate_session_id,
    ) -> None:
        self._registry = registry
        self._send_capture_directive = send_capture_directive
        self._id_factory = id_factory
        self._sessions: dict[str, Session] = {}
        self._pending: dict[str, list[tuple[str, IceCandidate]]] = {}
        registry.attach_tracker(self)

    # -------------------------
    # Introspection
    # -------------------------

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def active_session_count(self) -> int:
        return len(self._sessions)

    def pending_candidates(self, session_id: str) -> int:
        return len(self._pending.get(session_id, ()))

    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    # -------------------------
    # Routing
    # -------------------------

    def route(self, party_id: str, message: InboundMessage) -> RouteResult:
        """Apply one inbound message from party_id."""
        if isinstance(message, Offer):
            result = self._on_offer(party_id, message)
        elif isinstance(message, Answer):
            result = self._on_answer(party_id, message)
        elif isinstance(message, IceCandidate):
            result = self._on_candidate(party_id, message)
        elif isinstance(message, StopRecording):
            result = self._on_stop(party_id, message)
        elif isinstance(message, StartRecording):
            result = RouteResult(
                outcome=RouteOutcome.NOTICE,
                session_id=message.session_id,
                notices=[CollaboratorNotice("start-recording", message.session_id, party_id)],
            )
        elif isinstance(message, (ClientConnected, ClientDisconnected)):
            # Relay-to-party types; never valid inbound
            result = RouteResult(outcome=RouteOutcome.IGNORED, session_id=message.session_id)
        elif isinstance(message, Identify):
            result = RouteResult(outcome=RouteOutcome.IGNORED)
        else:
            raise TypeError(f"unroutable message: {type(message).__name__}")

        log_event({
            "ts_ms": now_ms(),
            "level": "INFO" if result.outcome in _OK_OUTCOMES else "WARNING",
            "event_type": "SIGNAL_ROUTED",
            "party_id": party_id,
            "message_type": message.type.value,
            "session_id": result.session_id,
            "outcome": result.outcome.value,
            "deliveries": len(result.deliveries),
        })
        return result

    def _role_of(self, party_id: str) -> PartyRole | None:
        party = self._registry.get(party_id)
        return party.role if party is not None else None

    def _on_offer(self, party_id: str, message: Offer) -> RouteResult:
        if self._role_of(party_id) is not PartyRole.REQUESTER:
            return RouteResult(outcome=RouteOutcome.ROLE_VIOLATION, session_id=message.session_id)

        session_id = message.session_id or self._id_factory()
        offer = Offer(session_id=session_id, data=message.data)

        existing = self._sessions.get(session_id)
        if existing is not None:
            if existing.requester_id != party_id:
                return RouteResult(outcome=RouteOutcome.SESSION_CONFLICT, session_id=session_id)
            # Renegotiation on a live session goes to the same server
            return RouteResult(
                outcome=RouteOutcome.FORWARDED,
                session_id=session_id,
                deliveries=[Delivery(existing.server_id, offer)],
            )

        server = self._registry.first_server()
        if server is None:
            self._pending.pop(session_id, None)
            return RouteResult(
                outcome=RouteOutcome.NO_SERVER_AVAILABLE,
                session_id=session_id,
                deliveries=[
                    Delivery(party_id, ClientDisconnected(data={"error": NO_SERVER_AVAILABLE_MESSAGE}))
                ],
            )

        session = Session(session_id=session_id, requester_id=party_id, server_id=server.party_id)
        self._sessions[session_id] = session

        deliveries = [Delivery(server.party_id, offer)]
        if self._send_capture_directive:
            deliveries.append(
                Delivery(
                    server.party_id,
                    StartRecording(session_id=session_id, data={"sessionId": session_id}),
                )
            )

        for sender_id, candidate in self._pending.pop(session_id, []):
            target = session.peer_of(sender_id)
            if target is not None:
                deliveries.append(Delivery(target, candidate))

        return RouteResult(
            outcome=RouteOutcome.SESSION_CREATED,
            session_id=session_id,
            deliveries=deliveries,
        )

    def _on_answer(self, party_id: str, message: Answer) -> RouteResult:
        if self._role_of(party_id) is not PartyRole.SERVER:
            return RouteResult(outcome=RouteOutcome.ROLE_VIOLATION, session_id=message.session_id)

        session = self._sessions.get(message.session_id) if message.session_id else None
        if session is None:
            return RouteResult(outcome=RouteOutcome.SESSION_NOT_FOUND, session_id=message.session_id)
        if session.server_id != party_id:
            return RouteResult(outcome=RouteOutcome.ROLE_VIOLATION, session_id=message.session_id)

        session.state = SessionState.PAIRED
        return RouteResult(
            outcome=RouteOutcome.FORWARDED,
            session_id=session.session_id,
            deliveries=[Delivery(session.requester_id, message)],
        )

    def _on_candidate(self, party_id: str, message: IceCandidate) -> RouteResult:
        if message.session_id is None:
            return RouteResult(outcome=RouteOutcome.SESSION_NOT_FOUND)

        session = self._sessions.get(message.session_id)
        if session is None:
            self._pending.setdefault(message.session_id, []).append((party_id, message))
            return RouteResult(outcome=RouteOutcome.QUEUED, session_id=message.session_id)

        target = session.peer_of(party_id)
        if target is None:
            return RouteResult(outcome=RouteOutcome.ROLE_VIOLATION, session_id=message.session_id)

        return RouteResult(
            outcome=RouteOutcome.FORWARDED,
            session_id=session.session_id,
            deliveries=[Delivery(target, message)],
        )

    def _on_stop(self, party_id: str, message: StopRecording) -> RouteResult:
        notice = CollaboratorNotice("stop-recording", message.session_id, party_id)
        if message.session_id is not None:
            session = self._sessions.pop(message.session_id, None)
            self._pending.pop(message.session_id, None)
            if session is not None:
                session.state = SessionState.CLOSED
                return RouteResult(
                    outcome=RouteOutcome.SESSION_CLOSED,
                    session_id=message.session_id,
                    notices=[notice],
                )
        return RouteResult(outcome=RouteOutcome.NOTICE, session_id=message.session_id, notices=[notice])

    # -------------------------
    # Disconnect cleanup
    # -------------------------

    def on_party_removed(self, party_id: str) -> list[Delivery]:
        """
        Close every session bound to party_id.

        The other bound party of each closed session gets exactly one
        client-disconnected notice. Candidates queued by party_id for
        sessions that never opened are discarded too.
        """
        deliveries: list[Delivery] = []

        for session in list(self._sessions.values()):
            if not session.binds(party_id):
                continue
            del self._sessions[session.session_id]
            self._pending.pop(session.session_id, None)
            session.state = SessionState.CLOSED

            peer = session.peer_of(party_id)
            if peer is not None and peer != party_id and peer in self._registry:
                deliveries.append(
                    Delivery(
                        peer,
                        ClientDisconnected(
                            session_id=session.session_id,
                            data={"reason": PEER_DISCONNECTED_REASON},
                        ),
                    )
                )
            log_event({
                "ts_ms": now_ms(),
                "event_type": "SESSION_CLOSED",
                "session_id": session.session_id,
                "party_id": party_id,
                "notified": peer,
            })

        for session_id in list(self._pending):
            kept = [(sender, c) for sender, c in self._pending[session_id] if sender != party_id]
            if kept:
                self._pending[session_id] = kept
            else:
                del self._pending[session_id]

        return deliveries


_OK_OUTCOMES = frozenset({
    RouteOutcome.SESSION_CREATED,
    RouteOutcome.FORWARDED,
    RouteOutcome.QUEUED,
    RouteOutcome.SESSION_CLOSED,
    RouteOutcome.NOTICE,
})
