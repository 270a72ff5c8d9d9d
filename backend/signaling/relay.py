"""
Signaling relay: connection lifecycle + I/O around registry and router.

Usage example (one per process):

    relay = SignalingRelay()
    party_id = await relay.on_connect(websocket)
    await relay.on_message(party_id, text)
    await relay.on_disconnect(party_id)

Anything with `async send_text(str)` works as a transport.
"""

from __future__ import annotations

import secrets
from typing import Awaitable, Callable

from observability.logger import log_event, now_ms
from signaling.messages import (
    ClientConnected,
    Identify,
    InboundMessage,
    SignalingParseError,
    encode_message,
    parse_message,
)
from signaling.registry import SignalingRegistry, Transport
from signaling.router import CollaboratorNotice, Delivery, RouteResult, SessionRouter
from spec import CONNECT_PROMPT_MESSAGE, ID_ALPHABET, PARTY_ID_LENGTH


NoticeSink = Callable[[CollaboratorNotice], Awaitable[None]]


class SignalingRelay:
    """
    Accepts party connections and relays signaling messages between them.

    Connections are tracked from connect onwards; only identified parties
    appear in the registry (stats, broadcasts, routing).
    """

    def __init__(
        self,
        *,
        registry: SignalingRegistry | None = None,
        router: SessionRouter | None = None,
        on_notice: NoticeSink | None = None,
    ) -> None:
        self.registry = registry if registry is not None else SignalingRegistry()
        self.router = router if router is not None else SessionRouter(self.registry)
        self._on_notice = on_notice
        self._connections: dict[str, Transport] = {}

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def _new_party_id(self) -> str:
        while True:
            party_id = "".join(secrets.choice(ID_ALPHABET) for _ in range(PARTY_ID_LENGTH))
            if party_id not in self._connections:
                return party_id

    # -------------------------
    # Connection lifecycle
    # -------------------------

    async def on_connect(self, transport: Transport) -> str:
        """Register a new connection and prompt it to identify."""
        party_id = self._new_party_id()
        self._connections[party_id] = transport

        log_event({
            "ts_ms": now_ms(),
            "event_type": "SIGNAL_CONNECTED",
            "party_id": party_id,
            "connections": len(self._connections),
        })
        await self._send(
            party_id,
            ClientConnected(data={"clientId": party_id, "message": CONNECT_PROMPT_MESSAGE}),
        )
        return party_id

    async def on_message(self, party_id: str, payload: str | bytes) -> RouteResult | None:
        """
        Handle one inbound text frame.

        Malformed frames are logged and dropped; returns None for those and
        for identify, otherwise the router's result.
        """
        try:
            message = parse_message(payload)
        except SignalingParseError as e:
            log_event({
                "ts_ms": now_ms(),
                "level": "WARNING",
                "event_type": "SIGNAL_PARSE_ERROR",
                "party_id": party_id,
                "error": str(e),
            })
            return None

        if isinstance(message, Identify):
            await self._identify(party_id, message)
            return None

        result = self.router.route(party_id, message)
        await self._deliver_all(result.deliveries)
        for notice in result.notices:
            await self._emit_notice(notice)
        return result

    async def on_disconnect(self, party_id: str, reason: str = "closed") -> None:
        """Drop the connection, close its sessions and notify peers."""
        transport = self._connections.pop(party_id, None)
        was_identified = party_id in self.registry
        deliveries = self.registry.remove(party_id)

        log_event({
            "ts_ms": now_ms(),
            "event_type": "SIGNAL_DISCONNECTED",
            "party_id": party_id,
            "reason": reason,
            "known": transport is not None,
        })

        await self._deliver_all(deliveries)
        if was_identified:
            await self._broadcast_stats()

    # -------------------------
    # Identify
    # -------------------------

    async def _identify(self, party_id: str, message: Identify) -> None:
        transport = self._connections.get(party_id)
        if transport is None:
            log_event({
                "ts_ms": now_ms(),
                "level": "WARNING",
                "event_type": "SIGNAL_IDENTIFY_UNKNOWN_PARTY",
                "party_id": party_id,
            })
            return

        stats = self.registry.identify(party_id, message.client_type, transport)
        await self._send(
            party_id,
            ClientConnected(
                data={
                    "clientId": party_id,
                    "clientType": message.client_type.value,
                    "message": f"{message.client_type.value} client registered successfully",
                    "stats": stats.as_dict(),
                }
            ),
        )
        await self._broadcast_stats()

    async def _broadcast_stats(self) -> None:
        message = ClientConnected(data={"stats": self.registry.stats().as_dict()})
        for party in self.registry.snapshot():
            await self._send(party.party_id, message)

    # -------------------------
    # I/O
    # -------------------------

    async def _deliver_all(self, deliveries: list[Delivery]) -> None:
        for delivery in deliveries:
            await self._send(delivery.party_id, delivery.message)

    async def _send(self, party_id: str, message: InboundMessage) -> bool:
        transport = self._connections.get(party_id)
        if transport is None:
            log_event({
                "ts_ms": now_ms(),
                "level": "WARNING",
                "event_type": "SIGNAL_SEND_SKIPPED",
                "party_id": party_id,
                "message_type": message.type.value,
            })
            return False
        try:
            await transport.send_text(encode_message(message))
            return True
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "ts_ms": now_ms(),
                "level": "ERROR",
                "event_type": "SIGNAL_SEND_FAILED",
                "party_id": party_id,
                "message_type": message.type.value,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
            return False

    async def _emit_notice(self, notice: CollaboratorNotice) -> None:
        log_event({
            "ts_ms": now_ms(),
            "event_type": "SIGNAL_NOTICE",
            **notice.as_dict(),
        })
        if self._on_notice is None:
            return
        try:
            await self._on_notice(notice)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "ts_ms": now_ms(),
                "level": "ERROR",
                "event_type": "SIGNAL_NOTICE_SINK_ERROR",
                "notice": notice.type,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
