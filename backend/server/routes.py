"""
Route registration.

Responsibilities:
- Define HTTP and WebSocket endpoints
- Wire the signaling relay to WebSocket lifecycle
- Expose capture control and the host notification streams
- Pull dependencies from app.state
"""

from __future__ import annotations

import asyncio
import base64
from typing import Any, Awaitable, Callable

from fastapi import Body, FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from capture.errors import CaptureError
from observability.logger import log_event, now_ms
from observability.metrics import timed
from server.notifications import NotificationHub
from signaling.relay import SignalingRelay


def register_routes(app: FastAPI) -> None:
    """Register all routes on the FastAPI app."""

    @app.get("/health")
    async def health() -> dict[str, str]:  # pyright: ignore[reportUnusedFunction]
        return {"status": "ok"}

    # ------------------------------------------------------------------
    # Signaling relay
    # ------------------------------------------------------------------

    @app.websocket("/ws")
    async def signaling_endpoint(ws: WebSocket) -> None:  # pyright: ignore[reportUnusedFunction]
        """One connection = one party."""
        await ws.accept()

        relay: SignalingRelay = app.state.relay
        party_id = await relay.on_connect(ws)

        try:
            while True:
                msg = await ws.receive()

                if msg["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(code=msg.get("code", 1000))

                if msg.get("text") is not None:
                    await relay.on_message(party_id, msg["text"])

                elif msg.get("bytes") is not None:
                    log_event({
                        "ts_ms": now_ms(),
                        "level": "WARNING",
                        "event_type": "SIGNAL_BINARY_IGNORED",
                        "party_id": party_id,
                        "bytes": len(msg["bytes"]),
                    })

        except WebSocketDisconnect:
            await relay.on_disconnect(party_id, reason="client_disconnect")

        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "ts_ms": now_ms(),
                "level": "ERROR",
                "event_type": "WS_FATAL_ERROR",
                "party_id": party_id,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
            await relay.on_disconnect(party_id, reason="server_error")

    # ------------------------------------------------------------------
    # Capture control
    # ------------------------------------------------------------------

    @app.post("/capture/start")
    async def capture_start() -> Any:  # pyright: ignore[reportUnusedFunction]
        try:
            fmt = await app.state.pipeline.start()
        except CaptureError as e:
            return JSONResponse(
                status_code=503,
                content={"success": False, "error": str(e), "kind": type(e).__name__},
            )
        return {"success": True, "format": fmt.as_dict()}

    @app.post("/capture/stop")
    async def capture_stop() -> dict[str, bool]:  # pyright: ignore[reportUnusedFunction]
        await app.state.pipeline.stop()
        return {"success": True}

    @app.get("/capture/status")
    async def capture_status() -> dict[str, Any]:  # pyright: ignore[reportUnusedFunction]
        return app.state.pipeline.snapshot()

    @app.get("/capture/buffer")
    async def capture_buffer() -> dict[str, Any]:  # pyright: ignore[reportUnusedFunction]
        pcm = app.state.supervisor.take_buffer()
        return {"data": base64.b64encode(pcm).decode("ascii"), "bytes": len(pcm)}

    @app.get("/capture/permissions")
    async def capture_permissions() -> dict[str, bool]:  # pyright: ignore[reportUnusedFunction]
        with timed("capture_permission_check") as details:
            granted = await app.state.supervisor.check_permissions()
            details["granted"] = granted
        return {"granted": granted}

    # ------------------------------------------------------------------
    # Host notification streams
    # ------------------------------------------------------------------

    @app.websocket("/capture/frames")
    async def capture_frames(ws: WebSocket) -> None:  # pyright: ignore[reportUnusedFunction]
        """JSON host notifications (frames, stream stop/error, signaling traffic)."""
        await ws.accept()
        await _pump(ws, app.state.notifications, ws.send_json, stream="frames")

    @app.websocket("/capture/blocks")
    async def capture_blocks(ws: WebSocket) -> None:  # pyright: ignore[reportUnusedFunction]
        """Binary playback blocks from the bridge."""
        await ws.accept()
        await _pump(ws, app.state.blocks, ws.send_bytes, stream="blocks")

    # ------------------------------------------------------------------
    # Companion
    # ------------------------------------------------------------------

    @app.post("/companion/send")
    async def companion_send(  # pyright: ignore[reportUnusedFunction]
        message: dict[str, Any] = Body(...),
    ) -> dict[str, Any]:
        companion = app.state.companion
        if companion is None:
            return {"success": False, "error": "Companion client disabled"}
        return await companion.send(message)


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

async def _wait_for_disconnect(ws: WebSocket) -> None:
    while True:
        msg = await ws.receive()
        if msg["type"] == "websocket.disconnect":
            return


async def _pump(
    ws: WebSocket,
    hub: NotificationHub,
    send: Callable[[Any], Awaitable[None]],
    *,
    stream: str,
) -> None:
    """
    Forward hub items to one WebSocket until the client goes away.

    Inbound frames are read and ignored so a disconnect is noticed even
    while nothing is being published.
    """
    sub = hub.subscribe()
    disconnected = asyncio.create_task(_wait_for_disconnect(ws))
    try:
        while True:
            getter = asyncio.create_task(sub.get())
            done, _ = await asyncio.wait(
                {getter, disconnected}, return_when=asyncio.FIRST_COMPLETED
            )
            if disconnected in done:
                getter.cancel()
                break
            await send(getter.result())

    except WebSocketDisconnect:
        pass

    except Exception as exc:  # pylint: disable=broad-exception-caught
        log_event({
            "ts_ms": now_ms(),
            "level": "ERROR",
            "event_type": "WS_FATAL_ERROR",
            "stream": stream,
            "exception": type(exc).__name__,
            "message": str(exc),
        })

    finally:
        hub.unsubscribe(sub)
        disconnected.cancel()
