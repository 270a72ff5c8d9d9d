# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
import base64
import signal
import struct
import sys
from pathlib import Path
from typing import Any

import pytest

from audio.playback_bridge import AudioPlaybackBridge, SampleBlock
from capture.errors import (
    CaptureStartCancelled,
    CaptureStartTimeout,
    ProcessRuntimeError,
    ProcessSpawnError,
    StreamFailedError,
)
from capture.pipeline import CapturePipeline
from capture.supervisor import CaptureProcessSupervisor, CaptureState
from observability import logger


FAKE_HELPER = Path(__file__).resolve().parents[1] / "fixtures" / "fake_helper.py"
FRAME_PCM = struct.pack("<hh", 16384, -16384)


@pytest.fixture(autouse=True)
def log_lines(monkeypatch: pytest.MonkeyPatch) -> list[str]:
    lines: list[str] = []
    monkeypatch.setattr(logger, "_print", lines.append)
    return lines


def helper(mode: str) -> list[str]:
    return [sys.executable, str(FAKE_HELPER), mode]


def make_supervisor(mode: str, **kwargs: Any) -> tuple[CaptureProcessSupervisor, list[dict]]:
    notifications: list[dict] = []

    async def sink(message: dict) -> None:
        notifications.append(message)

    supervisor = CaptureProcessSupervisor(
        helper_command=helper(mode),
        on_notification=sink,
        **kwargs,
    )
    return supervisor, notifications


async def wait_until(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------------
# start()
# ---------------------------------------------------------------------

def test_start_is_idempotent_while_streaming():
    async def scenario() -> tuple[int | None, int | None, CaptureState]:
        supervisor, _ = make_supervisor("stream")
        await supervisor.start()
        first_pid = supervisor.session.pid
        await supervisor.start()
        second_pid = supervisor.session.pid
        state = supervisor.state
        await supervisor.stop()
        return first_pid, second_pid, state

    first_pid, second_pid, state = asyncio.run(scenario())

    assert first_pid is not None
    assert first_pid == second_pid
    assert state is CaptureState.STREAMING


def test_malformed_line_between_frames_still_yields_two_frames(log_lines: list[str]):
    async def scenario() -> tuple[CaptureProcessSupervisor, bytes, list[dict]]:
        supervisor, notifications = make_supervisor("stream")
        await supervisor.start()
        await wait_until(lambda: supervisor.session.frames_received == 2)
        pcm = supervisor.take_buffer()
        await supervisor.stop()
        return supervisor, pcm, notifications

    supervisor, pcm, notifications = asyncio.run(scenario())

    assert pcm == FRAME_PCM * 2
    assert supervisor.session.lines_skipped == 1
    assert supervisor.state is CaptureState.STOPPED
    frames = [n for n in notifications if n["type"] == "native-audio-frame"]
    assert [base64.b64decode(n["data"]) for n in frames] == [FRAME_PCM, FRAME_PCM]
    assert frames[0]["format"] == {"sampleRate": 48000, "channels": 2, "bitDepth": 16, "format": "PCM"}
    assert notifications[-1] == {"type": "audio-stream-stopped", "reason": "requested"}
    assert any("HELPER_LINE_SKIPPED" in line for line in log_lines)


def test_subscribed_channel_receives_frames_then_closes():
    async def scenario() -> list[int]:
        supervisor, _ = make_supervisor("stream")
        channel = supervisor.subscribe()
        await supervisor.start()
        await wait_until(lambda: supervisor.session.frames_received == 2)
        await supervisor.stop()
        return [frame.sequence_num async for frame in channel]

    assert asyncio.run(scenario()) == [1, 2]


def test_start_times_out_when_helper_never_reports_ready():
    async def scenario() -> CaptureProcessSupervisor:
        supervisor, _ = make_supervisor("silent", start_timeout_s=0.5, stop_grace_s=2.0)
        with pytest.raises(CaptureStartTimeout):
            await supervisor.start()
        return supervisor

    supervisor = asyncio.run(scenario())

    assert supervisor.state is not CaptureState.STREAMING
    assert supervisor.state is CaptureState.FAILED
    assert supervisor.session.returncode is not None
    assert isinstance(CaptureStartTimeout("x"), TimeoutError)


def test_stream_failed_is_raised_from_start():
    async def scenario() -> CaptureProcessSupervisor:
        supervisor, _ = make_supervisor("fail")
        with pytest.raises(StreamFailedError, match="permission denied"):
            await supervisor.start()
        return supervisor

    supervisor = asyncio.run(scenario())

    assert supervisor.state is CaptureState.FAILED
    assert supervisor.session.failure_reason == "Screen recording permission denied"


def test_cancelled_start_reaps_helper_and_next_start_stays_bounded():
    async def scenario() -> tuple[CaptureState, int | None, CaptureProcessSupervisor]:
        supervisor, _ = make_supervisor("silent", start_timeout_s=1.0, stop_grace_s=2.0)
        first = asyncio.create_task(supervisor.start())
        await asyncio.sleep(0.3)
        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first
        state, returncode = supervisor.state, supervisor.session.returncode

        with pytest.raises(CaptureStartTimeout):
            await asyncio.wait_for(supervisor.start(), 4.0)
        return state, returncode, supervisor

    state, returncode, supervisor = asyncio.run(scenario())

    assert state is CaptureState.FAILED
    assert returncode is not None
    assert supervisor.state is CaptureState.FAILED
    assert supervisor.session.returncode is not None


def test_joined_start_fails_when_first_caller_is_cancelled():
    async def scenario() -> CaptureProcessSupervisor:
        supervisor, _ = make_supervisor("silent", start_timeout_s=5.0, stop_grace_s=2.0)
        first = asyncio.create_task(supervisor.start())
        await wait_until(lambda: supervisor.session.pid is not None)
        second = asyncio.create_task(supervisor.start())
        await asyncio.sleep(0.05)
        first.cancel()
        with pytest.raises(CaptureStartCancelled):
            await asyncio.wait_for(second, 4.0)
        await asyncio.gather(first, return_exceptions=True)
        return supervisor

    supervisor = asyncio.run(scenario())

    assert supervisor.state is CaptureState.FAILED
    assert supervisor.session.returncode is not None


def test_exit_during_startup_is_a_failed_start_not_a_stopped_stream():
    async def scenario() -> tuple[CaptureProcessSupervisor, list[dict]]:
        supervisor, notifications = make_supervisor("early")
        with pytest.raises(ProcessRuntimeError):
            await supervisor.start()
        await asyncio.sleep(0.1)
        return supervisor, notifications

    supervisor, notifications = asyncio.run(scenario())

    assert supervisor.state is CaptureState.FAILED
    assert supervisor.session.returncode == 2
    assert not any(n["type"] == "audio-stream-stopped" for n in notifications)


def test_stream_failed_mid_stream_terminates_helper():
    async def scenario() -> tuple[CaptureProcessSupervisor, list[dict]]:
        supervisor, notifications = make_supervisor("midfail")
        await supervisor.start()
        await wait_until(lambda: supervisor.session.returncode is not None)
        await asyncio.sleep(0.1)
        return supervisor, notifications

    supervisor, notifications = asyncio.run(scenario())

    assert supervisor.state is CaptureState.FAILED
    assert supervisor.session.failure_reason == "Capture device lost"
    assert supervisor.session.returncode == -signal.SIGTERM
    assert {"type": "audio-stream-error", "error": "Capture device lost"} in notifications
    assert not any(n["type"] == "audio-stream-stopped" for n in notifications)


def test_close_stops_a_streaming_helper():
    async def scenario() -> tuple[CaptureProcessSupervisor, list[dict]]:
        supervisor, notifications = make_supervisor("stream")
        await supervisor.start()
        await supervisor.close()
        return supervisor, notifications

    supervisor, notifications = asyncio.run(scenario())

    assert supervisor.state is CaptureState.STOPPED
    assert supervisor.session.returncode is not None
    assert notifications[-1] == {"type": "audio-stream-stopped", "reason": "requested"}


def test_spawn_failure_is_typed():
    async def scenario() -> CaptureProcessSupervisor:
        supervisor = CaptureProcessSupervisor(helper_command=["/nonexistent/capture-helper"])
        with pytest.raises(ProcessSpawnError):
            await supervisor.start()
        return supervisor

    assert asyncio.run(scenario()).state is CaptureState.FAILED


def test_stop_escalates_to_kill_after_grace(log_lines: list[str]):
    async def scenario() -> CaptureProcessSupervisor:
        supervisor, _ = make_supervisor("stubborn", stop_grace_s=0.5)
        await supervisor.start()
        await supervisor.stop()
        return supervisor

    supervisor = asyncio.run(scenario())

    assert supervisor.state is CaptureState.STOPPED
    assert supervisor.session.returncode == -signal.SIGKILL
    assert any("CAPTURE_STOP_GRACE_EXPIRED" in line for line in log_lines)


def test_stop_when_idle_is_a_noop():
    async def scenario() -> CaptureProcessSupervisor:
        supervisor, _ = make_supervisor("stream")
        await supervisor.stop()
        return supervisor

    assert asyncio.run(scenario()).state is CaptureState.IDLE


def test_unexpected_exit_is_reported_not_restarted():
    async def scenario() -> tuple[CaptureProcessSupervisor, list[dict]]:
        supervisor, notifications = make_supervisor("exit")
        await supervisor.start()
        await wait_until(
            lambda: any(n.get("reason") == "exited" for n in notifications)
        )
        return supervisor, notifications

    supervisor, notifications = asyncio.run(scenario())

    assert supervisor.state is CaptureState.STOPPED
    assert supervisor.session.returncode == 3
    assert notifications[-1] == {"type": "audio-stream-stopped", "reason": "exited", "returncode": 3}
    # Buffered audio survives an unexpected exit
    assert supervisor.take_buffer() == FRAME_PCM


@pytest.mark.parametrize("mode, expected", [("granted", True), ("denied", False)])
def test_check_permissions(mode: str, expected: bool):
    supervisor, _ = make_supervisor(mode)

    assert asyncio.run(supervisor.check_permissions()) is expected


# ---------------------------------------------------------------------
# CapturePipeline
# ---------------------------------------------------------------------

def test_pipeline_feeds_bridge_for_the_session():
    blocks: list[SampleBlock] = []

    async def sink(block: SampleBlock) -> None:
        blocks.append(block)

    async def scenario() -> dict:
        supervisor, _ = make_supervisor("stream")
        pipeline = CapturePipeline(
            supervisor=supervisor,
            bridge=AudioPlaybackBridge(sink=sink, block_samples=1),
        )
        await pipeline.start()
        await pipeline.start()
        await wait_until(lambda: len(blocks) == 2)
        await pipeline.stop()
        snap = pipeline.snapshot()
        await pipeline.shutdown()
        return snap

    snap = asyncio.run(scenario())

    assert [b.samples.tolist() for b in blocks] == [[[0.5], [-0.5]], [[0.5], [-0.5]]]
    assert snap["state"] == "stopped"
    assert snap["bridge"]["running"] is False
    assert snap["bridge"]["frames_decoded"] == 2


def test_pipeline_shutdown_during_startup_reaps_helper():
    async def sink(block: SampleBlock) -> None:
        pass

    async def scenario() -> CaptureProcessSupervisor:
        supervisor, _ = make_supervisor("silent", stop_grace_s=2.0)
        pipeline = CapturePipeline(supervisor=supervisor, bridge=AudioPlaybackBridge(sink=sink))
        starting = asyncio.create_task(pipeline.start())
        await wait_until(lambda: supervisor.session.pid is not None)
        await pipeline.shutdown()
        with pytest.raises(CaptureStartCancelled):
            await starting
        return supervisor

    supervisor = asyncio.run(scenario())

    assert supervisor.state is CaptureState.FAILED
    assert supervisor.session.returncode is not None
