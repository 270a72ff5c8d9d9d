"""
Companion client: this process's own server-role party.

Connects to the signaling relay, identifies as a server and turns relay
directives into capture start/stop calls. Every inbound message is also
forwarded to the host notification callback so the UI layer sees the
signaling traffic.

Lifecycle:
    client = CompanionClient(url, pipeline=pipeline, on_message=hub.publish)
    task = asyncio.create_task(client.run())
    ...
    await client.close()
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Protocol

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from capture.errors import CaptureError
from observability.logger import log_event, now_ms
from signaling.messages import (
    ClientDisconnected,
    Identify,
    PartyRole,
    SignalingParseError,
    StartRecording,
    StopRecording,
    encode_message,
    parse_message,
)
from spec import COMPANION_RECONNECT_DELAY_S, CaptureFormat


HostSink = Callable[[dict[str, Any]], Awaitable[None]]


class CaptureControl(Protocol):
    async def start(self) -> CaptureFormat: ...

    async def stop(self) -> None: ...


class CompanionClient:
    """
    Reconnecting signaling client for the capture side.

    run() loops until close(): connect, identify, read messages, and on
    any drop wait COMPANION_RECONNECT_DELAY_S before reconnecting.
    """

    def __init__(
        self,
        url: str,
        *,
        pipeline: CaptureControl,
        on_message: HostSink | None = None,
        reconnect_delay_s: float = COMPANION_RECONNECT_DELAY_S,
    ) -> None:
        self._url = url
        self._pipeline = pipeline
        self._on_message = on_message
        self._reconnect_delay_s = reconnect_delay_s

        self._ws: ClientConnection | None = None
        self._closing = False
        self._closed = asyncio.Event()
        self.connect_attempts: int = 0

    @property
    def connected(self) -> bool:
        return self._ws is not None

    # -------------------------
    # Lifecycle
    # -------------------------

    async def run(self) -> None:
        while not self._closing:
            self.connect_attempts += 1
            try:
                async with connect(self._url) as ws:
                    self._ws = ws
                    log_event({
                        "ts_ms": now_ms(),
                        "event_type": "COMPANION_CONNECTED",
                        "url": self._url,
                        "attempt": self.connect_attempts,
                    })
                    await ws.send(encode_message(Identify(client_type=PartyRole.SERVER)))
                    async for raw in ws:
                        await self.handle_message(raw)
            except (OSError, WebSocketException, asyncio.TimeoutError) as e:
                if not isinstance(e, ConnectionClosed) or not self._closing:
                    log_event({
                        "ts_ms": now_ms(),
                        "level": "WARNING",
                        "event_type": "COMPANION_CONNECTION_LOST",
                        "url": self._url,
                        "exception": type(e).__name__,
                        "message": str(e),
                    })
            finally:
                self._ws = None

            if self._closing:
                break

            try:
                await asyncio.wait_for(self._closed.wait(), self._reconnect_delay_s)
            except asyncio.TimeoutError:
                continue

        log_event({"ts_ms": now_ms(), "event_type": "COMPANION_STOPPED"})

    async def close(self) -> None:
        """Stop reconnecting and close the live connection, if any."""
        self._closing = True
        self._closed.set()
        ws = self._ws
        if ws is not None:
            await ws.close()

    # -------------------------
    # Messages
    # -------------------------

    async def handle_message(self, raw: str | bytes) -> None:
        """Forward to the host, then act on capture directives."""
        try:
            message = parse_message(raw)
        except SignalingParseError as e:
            log_event({
                "ts_ms": now_ms(),
                "level": "WARNING",
                "event_type": "COMPANION_PARSE_ERROR",
                "error": str(e),
            })
            return

        await self._forward({
            "type": "websocket-message-received",
            "message": json.loads(raw),
        })

        if isinstance(message, StartRecording):
            await self._start_capture(message.session_id)
        elif isinstance(message, StopRecording):
            await self._stop_capture(message.session_id, reason="stop-recording")
        elif isinstance(message, ClientDisconnected) and message.session_id is not None:
            await self._stop_capture(message.session_id, reason="peer-disconnected")

    async def send(self, message: dict[str, Any]) -> dict[str, Any]:
        """Send a raw message to the relay. Never raises."""
        ws = self._ws
        if ws is None:
            return {"success": False, "error": "WebSocket not connected"}
        try:
            await ws.send(json.dumps(message))
        except (ConnectionClosed, TypeError, ValueError) as e:
            return {"success": False, "error": str(e)}
        return {"success": True}

    async def _start_capture(self, session_id: str | None) -> None:
        try:
            fmt = await self._pipeline.start()
        except CaptureError as e:
            log_event({
                "ts_ms": now_ms(),
                "level": "ERROR",
                "event_type": "COMPANION_CAPTURE_START_FAILED",
                "session_id": session_id,
                "exception": type(e).__name__,
                "message": str(e),
            })
            await self._forward({"type": "audio-stream-error", "error": str(e)})
            return

        log_event({
            "ts_ms": now_ms(),
            "event_type": "COMPANION_CAPTURE_STARTED",
            "session_id": session_id,
            "format": fmt.as_dict(),
        })

    async def _stop_capture(self, session_id: str | None, *, reason: str) -> None:
        await self._pipeline.stop()
        log_event({
            "ts_ms": now_ms(),
            "event_type": "COMPANION_CAPTURE_STOPPED",
            "session_id": session_id,
            "reason": reason,
        })

    async def _forward(self, notification: dict[str, Any]) -> None:
        if self._on_message is None:
            return
        try:
            await self._on_message(notification)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "ts_ms": now_ms(),
                "level": "ERROR",
                "event_type": "COMPANION_SINK_ERROR",
                "exception": type(exc).__name__,
                "message": str(exc),
            })
