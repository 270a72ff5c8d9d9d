"""
Capture pipeline wiring.

Connects the supervisor's push path to a playback bridge task for the
lifetime of each capture session. HTTP routes and the companion client both
start and stop capture through this object so the bridge is attached exactly
once per session.
"""

from __future__ import annotations

import asyncio
from typing import Any

from audio.playback_bridge import AudioPlaybackBridge
from capture.supervisor import CaptureProcessSupervisor, CaptureState
from observability.logger import log_event, now_ms
from spec import CAPTURE_STOP_GRACE_S, CaptureFormat


class CapturePipeline:
    """Supervisor + bridge, started and stopped together."""

    def __init__(
        self,
        *,
        supervisor: CaptureProcessSupervisor,
        bridge: AudioPlaybackBridge,
    ) -> None:
        self.supervisor = supervisor
        self.bridge = bridge
        self._bridge_task: asyncio.Task[None] | None = None

    def is_active(self) -> bool:
        return self.supervisor.is_active()

    async def start(self) -> CaptureFormat:
        """
        Start capture (idempotent) and attach the bridge if not attached.

        Raises whatever CaptureProcessSupervisor.start() raises.
        """
        if self.supervisor.is_active():
            return await self.supervisor.start()

        channel = self.supervisor.subscribe()
        try:
            fmt = await self.supervisor.start()
        except BaseException:
            channel.close(drop_pending=True)
            raise

        previous = self._bridge_task
        if previous is not None and not previous.done():
            # Previous session's channel is already closed; let it wind down
            await asyncio.wait({previous})

        self.bridge.reset()
        self._bridge_task = asyncio.create_task(self.bridge.run(channel))

        log_event({
            "ts_ms": now_ms(),
            "event_type": "CAPTURE_PIPELINE_STARTED",
            "pid": self.supervisor.session.pid,
        })
        return fmt

    async def stop(self) -> None:
        """Stop capture; the bridge finishes when its channel closes."""
        was_streaming = self.supervisor.state is CaptureState.STREAMING
        await self.supervisor.stop()

        task = self._bridge_task
        if was_streaming and task is not None and not task.done():
            # Channel is closed by the supervisor once stdout is drained
            await asyncio.wait({task})

    async def shutdown(self) -> None:
        """Terminate the helper in any state; no bridge task outlives the app."""
        was_streaming = self.supervisor.state is CaptureState.STREAMING
        await self.supervisor.close()

        task = self._bridge_task
        if was_streaming and task is not None and not task.done():
            await asyncio.wait({task}, timeout=CAPTURE_STOP_GRACE_S)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
        self._bridge_task = None

    def snapshot(self) -> dict[str, Any]:
        snap = self.supervisor.snapshot()
        snap["bridge"] = {
            "running": self._bridge_task is not None and not self._bridge_task.done(),
            "frames_decoded": self.bridge.frames_decoded,
            "frames_rejected": self.bridge.frames_rejected,
            "blocks_emitted": self.bridge.blocks_emitted,
        }
        return snap
