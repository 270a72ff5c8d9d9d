"""
Signaling party registry.

Tracks every identified party (requester or server) by party id, in
registration order. Registration order doubles as the server selection
order: the first registered server is the one new sessions are routed to.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from observability.logger import log_event, now_ms
from signaling.messages import PartyRole


class Transport(Protocol):
    """Anything that can deliver a JSON text frame to one party."""

    async def send_text(self, data: str) -> None: ...


class SessionTracker(Protocol):
    """Router hooks the registry needs; kept narrow to avoid an import cycle."""

    def active_session_count(self) -> int: ...

    def on_party_removed(self, party_id: str) -> list[Any]: ...


@dataclass
class Party:
    party_id: str
    role: PartyRole
    transport: Transport
    registered_at: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class RegistryStats:
    total: int
    requester_count: int
    server_count: int
    active_session_count: int
    uptime_s: float

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "requesterCount": self.requester_count,
            "serverCount": self.server_count,
            "activeSessionCount": self.active_session_count,
            "uptime": round(self.uptime_s, 3),
        }


class SignalingRegistry:
    """
    Party table keyed by party id.

    All mutation happens on the event loop thread; callers that iterate
    while awaiting must use snapshot().
    """

    def __init__(self) -> None:
        self._parties: dict[str, Party] = {}
        self._tracker: SessionTracker | None = None
        self._started = time.monotonic()

    def attach_tracker(self, tracker: SessionTracker) -> None:
        self._tracker = tracker

    # -------------------------
    # Mutation
    # -------------------------

    def identify(self, party_id: str, role: PartyRole, transport: Transport) -> RegistryStats:
        """
        Register (or re-register) a party. Returns the resulting stats.

        Re-identification keeps the party's original registration slot.
        """
        existing = self._parties.get(party_id)
        if existing is not None:
            existing.role = role
            existing.transport = transport
            event_type = "PARTY_REIDENTIFIED"
        else:
            self._parties[party_id] = Party(party_id=party_id, role=role, transport=transport)
            event_type = "PARTY_IDENTIFIED"

        stats = self.stats()
        log_event({
            "ts_ms": now_ms(),
            "event_type": event_type,
            "party_id": party_id,
            "role": role.value,
            "stats": stats.as_dict(),
        })
        return stats

    def remove(self, party_id: str) -> list[Any]:
        """
        Deregister a party and let the router close its sessions.

        Returns whatever deliveries the router produced (peer notices).
        """
        party = self._parties.pop(party_id, None)
        deliveries = self._tracker.on_party_removed(party_id) if self._tracker else []

        if party is not None:
            log_event({
                "ts_ms": now_ms(),
                "event_type": "PARTY_REMOVED",
                "party_id": party_id,
                "role": party.role.value,
                "peers_notified": len(deliveries),
            })
        return deliveries

    # -------------------------
    # Lookup
    # -------------------------

    def get(self, party_id: str) -> Party | None:
        return self._parties.get(party_id)

    def __contains__(self, party_id: object) -> bool:
        return party_id in self._parties

    def __len__(self) -> int:
        return len(self._parties)

    def first_server(self) -> Party | None:
        for party in self._parties.values():
            if party.role is PartyRole.SERVER:
                return party
        return None

    def snapshot(self) -> list[Party]:
        """Copy of the party list, safe to iterate across awaits."""
        return list(self._parties.values())

    def stats(self) -> RegistryStats:
        requesters = sum(1 for p in self._parties.values() if p.role is PartyRole.REQUESTER)
        servers = sum(1 for p in self._parties.values() if p.role is PartyRole.SERVER)
        return RegistryStats(
            total=len(self._parties),
            requester_count=requesters,
            server_count=servers,
            active_session_count=self._tracker.active_session_count() if self._tracker else 0,
            uptime_s=time.monotonic() - self._started,
        )
