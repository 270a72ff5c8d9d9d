"""
Capture helper supervisor.

Responsibilities:
- Own the single capture helper process and its CaptureSession record
- Spawn with --start-stream and wait (bounded) for STREAM_STARTED
- Parse helper stdout line by line, skipping malformed lines
- Push decoded frames into the FrameBuffer (pull path) and every
  subscribed FrameChannel (push path), in arrival order
- Stop with SIGTERM, escalate to SIGKILL after the grace period
- Report unexpected exits as notifications; never restart by itself

Non-responsibilities:
- PCM decoding (audio.playback_bridge)
- Deciding when to retry a failed start (caller)
"""

from __future__ import annotations

import asyncio
import base64
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Sequence

from audio.frame_buffer import FrameBuffer
from audio.frames import AudioFrame
from capture.channel import ChannelClosed, FrameChannel
from capture.errors import (
    CaptureBusyError,
    CaptureError,
    CaptureStartCancelled,
    CaptureStartTimeout,
    ProcessRuntimeError,
    ProcessSpawnError,
    StreamFailedError,
)
from capture.protocol import (
    AudioData,
    FrameProtocolParser,
    HelperRecord,
    PermissionStatus,
    ProtocolParseError,
    RecordingStatus,
    StreamFailed,
    StreamStarted,
    parse_helper_line,
)
from observability.logger import log_event, now_ms
from observability.metrics import start_timer, stop_timer
from spec import (
    CAPTURE_FORMAT_V1,
    CAPTURE_START_TIMEOUT_S,
    CAPTURE_STOP_GRACE_S,
    FRAME_CHANNEL_CAPACITY,
    HELPER_FLAG_CHECK_PERMISSIONS,
    HELPER_FLAG_START_STREAM,
    PERMISSION_CHECK_TIMEOUT_S,
    CaptureFormat,
)


_READ_CHUNK_BYTES = 64 * 1024
_LINE_PREVIEW_CHARS = 100

Notification = dict[str, Any]
NotificationSink = Callable[[Notification], Awaitable[None]]


def _settle(ready: asyncio.Future[None], error: BaseException | None = None) -> None:
    """Resolve the readiness future once; later outcomes are ignored."""
    if ready.done():
        return
    if error is None:
        ready.set_result(None)
        return
    ready.set_exception(error)
    # start() re-raises from its own await; no other reader is required
    ready.exception()


# ------------------------------------------------------------------
# Capture session record
# ------------------------------------------------------------------

class CaptureState(str, Enum):
    """Lifecycle of the capture helper."""
    IDLE = "idle"
    STARTING = "starting"
    STREAMING = "streaming"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class CaptureSession:
    """Mutable record of the current (or last) capture session."""

    state: CaptureState = CaptureState.IDLE
    pid: int | None = None
    format: CaptureFormat = CAPTURE_FORMAT_V1
    start_deadline: float | None = None  # event loop clock
    started_at_ms: int | None = None
    failure_reason: str | None = None
    frames_received: int = 0
    frames_dropped: int = 0
    lines_skipped: int = 0
    returncode: int | None = None
    created_at: float = field(default_factory=time.time)

    def is_active(self) -> bool:
        return self.state in (CaptureState.STARTING, CaptureState.STREAMING)

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "pid": self.pid,
            "format": self.format.as_dict(),
            "started_at_ms": self.started_at_ms,
            "failure_reason": self.failure_reason,
            "frames_received": self.frames_received,
            "frames_dropped": self.frames_dropped,
            "lines_skipped": self.lines_skipped,
            "returncode": self.returncode,
        }


# ------------------------------------------------------------------
# Supervisor
# ------------------------------------------------------------------

class CaptureProcessSupervisor:
    """
    Owns at most one live capture helper process.

    One supervisor == one capture helper binary. Create it once and inject it
    where needed; the "one capture session at a time" rule is enforced here.
    """

    def __init__(
        self,
        *,
        helper_command: Sequence[str],
        buffer: FrameBuffer | None = None,
        on_notification: NotificationSink | None = None,
        start_timeout_s: float = CAPTURE_START_TIMEOUT_S,
        stop_grace_s: float = CAPTURE_STOP_GRACE_S,
        capture_format: CaptureFormat = CAPTURE_FORMAT_V1,
    ) -> None:
        if not helper_command:
            raise ValueError("helper_command must not be empty")

        self._helper_command = tuple(helper_command)
        self.buffer = buffer if buffer is not None else FrameBuffer()
        self._on_notification = on_notification
        self._start_timeout_s = start_timeout_s
        self._stop_grace_s = stop_grace_s
        self._format = capture_format

        self._session = CaptureSession(format=capture_format)
        self._proc: asyncio.subprocess.Process | None = None
        self._ready: asyncio.Future[None] | None = None
        self._exit_expected = False
        self._next_seq = 1

        self._channels: list[FrameChannel] = []
        self._next_channels: list[FrameChannel] = []
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._exit_task: asyncio.Task[None] | None = None
        self._start_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def session(self) -> CaptureSession:
        return self._session

    @property
    def state(self) -> CaptureState:
        return self._session.state

    @property
    def capture_format(self) -> CaptureFormat:
        return self._format

    def is_active(self) -> bool:
        return self._session.is_active()

    def snapshot(self) -> dict[str, Any]:
        snap = self._session.snapshot()
        snap["buffer"] = self.buffer.snapshot()
        snap["subscribers"] = len(self._channels)
        return snap

    # ------------------------------------------------------------------
    # Push / pull paths
    # ------------------------------------------------------------------

    def subscribe(self, *, capacity: int = FRAME_CHANNEL_CAPACITY) -> FrameChannel:
        """
        Open a new push channel.

        While a session is active the channel joins it immediately; otherwise
        it joins the next session start() creates. Either way it is closed
        when that session's output stream ends.
        """
        channel = FrameChannel(capacity=capacity)
        if self._session.is_active():
            self._channels.append(channel)
        else:
            self._next_channels.append(channel)
        return channel

    def take_buffer(self) -> bytes:
        """Pull path: concatenated buffered PCM, then clear."""
        return self.buffer.take_all()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> CaptureFormat:
        """
        Start streaming and wait for the helper's readiness signal.

        Idempotent: if a session is already STREAMING this returns at once;
        if one is STARTING this waits on the same readiness signal.

        Raises:
            ProcessSpawnError, StreamFailedError, CaptureStartTimeout,
            ProcessRuntimeError, CaptureBusyError, CaptureStartCancelled
        """
        if self._session.state is CaptureState.STREAMING:
            log_event({
                "ts_ms": now_ms(),
                "event_type": "CAPTURE_ALREADY_STREAMING",
                "pid": self._session.pid,
            })
            return self._format

        if self._session.state is CaptureState.STARTING and self._ready is not None:
            await self._join_start(self._ready)
            return self._format

        if self._session.state is CaptureState.STOPPING:
            raise CaptureBusyError("capture helper is still stopping")

        if self._proc is not None:
            # FAILED mid-stream but the helper never exited
            self._exit_expected = True
            await self._terminate(self._proc)
            self._proc = None

        await self._await_previous_reader()
        self._channels = self._next_channels
        self._next_channels = []

        loop = asyncio.get_running_loop()
        self._session = CaptureSession(
            state=CaptureState.STARTING,
            format=self._format,
            start_deadline=loop.time() + self._start_timeout_s,
        )
        self._exit_expected = False
        self._next_seq = 1
        self._start_task = None
        ready: asyncio.Future[None] = loop.create_future()
        self._ready = ready

        log_event({
            "ts_ms": now_ms(),
            "event_type": "CAPTURE_STARTING",
            "command": list(self._helper_command),
            "timeout_s": self._start_timeout_s,
        })

        try:
            proc = await asyncio.create_subprocess_exec(
                *self._helper_command,
                HELPER_FLAG_START_STREAM,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            error = ProcessSpawnError(str(e))
            self._fail(f"spawn failed: {e}")
            self._close_channels()
            _settle(ready, error)
            self._ready = None
            raise error from e
        except asyncio.CancelledError:
            self._fail("start cancelled")
            self._close_channels()
            _settle(ready, CaptureStartCancelled("capture start cancelled"))
            self._ready = None
            raise

        self._proc = proc
        self._session.pid = proc.pid

        reader = asyncio.create_task(self._read_stdout(proc))
        self._reader_task = reader
        self._stderr_task = asyncio.create_task(self._read_stderr(proc))
        self._exit_task = asyncio.create_task(self._watch_exit(proc, reader, ready))
        guard = asyncio.create_task(self._guard_start(proc, ready))
        self._start_task = guard

        try:
            await self._join_start(ready)
        except asyncio.CancelledError:
            # Abandoned by its caller: fail the start and reap the helper
            _settle(ready, CaptureStartCancelled("capture start cancelled"))
            await asyncio.wait({guard})
            raise
        return self._format

    async def close(self) -> None:
        """
        Terminate any live helper whatever the state.

        Stops a streaming session normally, fails a pending start, and reaps a
        helper left behind by a mid-stream failure. Used at app shutdown.
        """
        if self._session.state is CaptureState.STREAMING:
            await self.stop()

        if self._ready is not None:
            _settle(self._ready, CaptureStartCancelled("capture supervisor closed"))
        guard = self._start_task
        if guard is not None and not guard.done():
            await asyncio.wait({guard})

        proc = self._proc
        if proc is not None:
            self._exit_expected = True
            forced = await self._terminate(proc)
            await self._await_previous_reader()
            if self._proc is proc:
                self._session.returncode = proc.returncode
                self._proc = None
            log_event({
                "ts_ms": now_ms(),
                "event_type": "CAPTURE_CLOSED",
                "pid": proc.pid,
                "forced": forced,
                "returncode": proc.returncode,
            })

        for channel in self._next_channels:
            channel.close()
        self._next_channels.clear()

    async def stop(self) -> None:
        """
        Stop streaming. No-op unless STREAMING.

        SIGTERM first; SIGKILL if the helper is still alive after the grace
        period. Frames already buffered or forwarded are not retracted.
        """
        proc = self._proc
        if self._session.state is not CaptureState.STREAMING or proc is None:
            log_event({
                "ts_ms": now_ms(),
                "event_type": "CAPTURE_STOP_IGNORED",
                "state": self._session.state.value,
            })
            return

        self._exit_expected = True
        self._session.state = CaptureState.STOPPING
        log_event({
            "ts_ms": now_ms(),
            "event_type": "CAPTURE_STOPPING",
            "pid": proc.pid,
        })

        forced = await self._terminate(proc)
        await self._await_previous_reader()

        self._session.state = CaptureState.STOPPED
        self._session.returncode = proc.returncode
        self._proc = None
        self.buffer.clear()

        log_event({
            "ts_ms": now_ms(),
            "event_type": "CAPTURE_STOPPED",
            "pid": proc.pid,
            "forced": forced,
            "returncode": proc.returncode,
        })
        await self._notify({"type": "audio-stream-stopped", "reason": "requested"})

    async def check_permissions(self) -> bool:
        """
        Run the helper with --check-permissions.

        True only if the helper answers PERMISSION_GRANTED; any failure to
        run or parse counts as not granted.
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._helper_command,
                HELPER_FLAG_CHECK_PERMISSIONS,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            log_event({
                "ts_ms": now_ms(),
                "level": "ERROR",
                "event_type": "PERMISSION_CHECK_SPAWN_FAILED",
                "error": str(e),
            })
            return False

        try:
            stdout, _ = await asyncio.wait_for(
                proc.communicate(), PERMISSION_CHECK_TIMEOUT_S
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            log_event({
                "ts_ms": now_ms(),
                "level": "ERROR",
                "event_type": "PERMISSION_CHECK_TIMEOUT",
            })
            return False

        for line in stdout.splitlines():
            if not line.strip():
                continue
            try:
                record = parse_helper_line(line, ts_ms=now_ms())
            except ProtocolParseError as e:
                log_event({
                    "ts_ms": now_ms(),
                    "level": "WARNING",
                    "event_type": "HELPER_LINE_SKIPPED",
                    "error": str(e),
                })
                continue
            if isinstance(record, PermissionStatus):
                log_event({
                    "ts_ms": now_ms(),
                    "event_type": "PERMISSION_CHECKED",
                    "granted": record.granted,
                })
                return record.granted

        return False

    # ------------------------------------------------------------------
    # Internal: lifecycle helpers
    # ------------------------------------------------------------------

    def _fail(self, reason: str) -> None:
        self._session.state = CaptureState.FAILED
        self._session.failure_reason = reason
        log_event({
            "ts_ms": now_ms(),
            "level": "ERROR",
            "event_type": "CAPTURE_FAILED",
            "pid": self._session.pid,
            "reason": reason,
        })

    async def _join_start(self, ready: asyncio.Future[None]) -> None:
        """
        Wait for a pending start to settle.

        On failure this also waits for the start guard to reap the helper, so
        the state is FAILED by the time the error reaches the caller.
        """
        try:
            await asyncio.shield(ready)
        except CaptureError:
            guard = self._start_task
            if guard is not None and not guard.done():
                await asyncio.shield(guard)
            raise

    async def _guard_start(
        self,
        proc: asyncio.subprocess.Process,
        ready: asyncio.Future[None],
    ) -> None:
        """
        Enforce the readiness deadline for one start, independently of callers.

        Settles `ready` with CaptureStartTimeout on expiry; on any failed
        start the helper is terminated and the session marked FAILED.
        """
        loop = asyncio.get_running_loop()
        deadline = self._session.start_deadline or loop.time() + self._start_timeout_s
        timer_id = start_timer("capture_startup")
        try:
            await asyncio.wait_for(asyncio.shield(ready), max(0.0, deadline - loop.time()))
        except asyncio.TimeoutError:
            stop_timer(timer_id, outcome="timeout", details={"pid": proc.pid})
            _settle(ready, CaptureStartTimeout(f"no STREAM_STARTED within {self._start_timeout_s}s"))
            await self._abort_start(proc, "Audio streamer start timeout")
            return
        except CaptureError as e:
            stop_timer(timer_id, outcome=type(e).__name__, details={"pid": proc.pid})
            await self._abort_start(proc, str(e))
            return

        startup_ms = stop_timer(timer_id, details={"pid": proc.pid})
        self._session.started_at_ms = now_ms()
        log_event({
            "ts_ms": now_ms(),
            "event_type": "CAPTURE_STREAMING",
            "pid": proc.pid,
            "startup_ms": startup_ms,
            "format": self._format.as_dict(),
        })

    async def _abort_start(self, proc: asyncio.subprocess.Process, reason: str) -> None:
        """Reap the helper, then mark FAILED; joiners wait for both."""
        self._exit_expected = True
        await self._terminate(proc)
        self._fail(reason)
        self._session.returncode = proc.returncode
        if self._proc is proc:
            self._proc = None
        self._ready = None

    async def _reap_failed(self) -> None:
        """Terminate a helper that reported STREAM_FAILED mid-stream."""
        proc = self._proc
        if proc is None:
            return
        self._exit_expected = True
        forced = await self._terminate(proc)
        if self._proc is proc:
            self._session.returncode = proc.returncode
            self._proc = None
        log_event({
            "ts_ms": now_ms(),
            "event_type": "CAPTURE_FAILED_HELPER_REAPED",
            "pid": proc.pid,
            "forced": forced,
            "returncode": proc.returncode,
        })

    async def _terminate(self, proc: asyncio.subprocess.Process) -> bool:
        """
        SIGTERM, wait up to the grace period, then SIGKILL.

        Returns True if SIGKILL was needed.
        """
        if proc.returncode is not None:
            return False

        try:
            proc.terminate()
        except ProcessLookupError:
            return False

        try:
            await asyncio.wait_for(proc.wait(), self._stop_grace_s)
            return False
        except asyncio.TimeoutError:
            log_event({
                "ts_ms": now_ms(),
                "level": "WARNING",
                "event_type": "CAPTURE_STOP_GRACE_EXPIRED",
                "pid": proc.pid,
                "grace_s": self._stop_grace_s,
            })

        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        return True

    async def _await_previous_reader(self) -> None:
        """Let the previous session's reader finish draining stdout."""
        task = self._reader_task
        if task is None or task.done():
            return
        done, _ = await asyncio.wait({task}, timeout=self._stop_grace_s)
        if not done:
            # Stuck on a consumer that never drains; cancelling closes its channels
            task.cancel()
            await asyncio.wait({task})

    async def _watch_exit(
        self,
        proc: asyncio.subprocess.Process,
        reader: asyncio.Task[None],
        ready: asyncio.Future[None],
    ) -> None:
        returncode = await proc.wait()
        await asyncio.wait({reader})

        _settle(
            ready,
            ProcessRuntimeError(
                f"helper exited with code {returncode} before streaming",
                returncode=returncode,
            ),
        )

        if self._exit_expected or self._proc is not proc:
            return
        if self._session.state is CaptureState.STARTING:
            # Failed start; the start guard reports it
            return

        # Exit nobody asked for
        self._session.returncode = returncode
        if self._session.state is not CaptureState.FAILED:
            self._session.state = CaptureState.STOPPED
        self._proc = None

        log_event({
            "ts_ms": now_ms(),
            "level": "WARNING",
            "event_type": "CAPTURE_PROCESS_EXITED",
            "pid": proc.pid,
            "returncode": returncode,
        })
        await self._notify({
            "type": "audio-stream-stopped",
            "reason": "exited",
            "returncode": returncode,
        })

    # ------------------------------------------------------------------
    # Internal: stream readers
    # ------------------------------------------------------------------

    async def _read_stdout(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stdout is not None
        parser = FrameProtocolParser()
        discarded = 0

        try:
            while True:
                chunk = await proc.stdout.read(_READ_CHUNK_BYTES)
                if not chunk:
                    break

                for line in parser.feed(chunk):
                    await self._handle_line(line)

                if parser.discarded_lines != discarded:
                    self._session.lines_skipped += parser.discarded_lines - discarded
                    discarded = parser.discarded_lines
                    log_event({
                        "ts_ms": now_ms(),
                        "level": "WARNING",
                        "event_type": "HELPER_LINE_TOO_LONG",
                        "discarded_total": discarded,
                    })

            for line in parser.flush():
                await self._handle_line(line)
        finally:
            self._close_channels()

    async def _read_stderr(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stderr is not None
        while True:
            try:
                raw = await proc.stderr.readline()
            except ValueError:
                # Line exceeded the stream limit; keep draining
                continue
            if not raw:
                break
            text = raw.decode("utf-8", errors="replace").rstrip()
            if text:
                log_event({
                    "ts_ms": now_ms(),
                    "level": "WARNING",
                    "event_type": "HELPER_STDERR",
                    "pid": proc.pid,
                    "line": text,
                })

    async def _handle_line(self, line: bytes) -> None:
        ts_ms = now_ms()
        try:
            record = parse_helper_line(line, ts_ms=ts_ms)
        except ProtocolParseError as e:
            self._session.lines_skipped += 1
            log_event({
                "ts_ms": ts_ms,
                "level": "WARNING",
                "event_type": "HELPER_LINE_SKIPPED",
                "error": str(e),
                "line_preview": line[:_LINE_PREVIEW_CHARS].decode("utf-8", errors="replace"),
            })
            return

        await self._handle_record(record)

    async def _handle_record(self, record: HelperRecord) -> None:
        if isinstance(record, AudioData):
            await self._accept_audio(record)

        elif isinstance(record, StreamStarted):
            if self._session.state is CaptureState.STARTING:
                self._session.state = CaptureState.STREAMING
            if self._ready is not None:
                _settle(self._ready)

        elif isinstance(record, StreamFailed):
            if self._ready is not None and not self._ready.done():
                _settle(self._ready, StreamFailedError(record.error))
            elif self._session.state is CaptureState.STREAMING:
                self._fail(record.error)
                await self._notify({"type": "audio-stream-error", "error": record.error})
                await self._reap_failed()

        elif isinstance(record, RecordingStatus):
            await self._notify({
                "type": "recording-status",
                "status": "START_RECORDING" if record.started else "STOP_RECORDING",
                "timestamp": record.timestamp or record.ts_ms,
                "path": record.path,
            })

        elif isinstance(record, PermissionStatus):
            if not record.granted:
                await self._notify({"type": "permission-denied"})

    async def _accept_audio(self, record: AudioData) -> None:
        if not self._session.is_active():
            self._session.frames_dropped += 1
            return

        frame = AudioFrame(
            pcm_bytes=record.pcm_bytes,
            ts_ms=record.ts_ms,
            sequence_num=self._next_seq,
        )
        self._next_seq += 1
        self._session.frames_received += 1

        evicted = self.buffer.push(frame)
        if evicted is not None:
            log_event({
                "ts_ms": record.ts_ms,
                "level": "DEBUG",
                "event_type": "FRAME_BUFFER_EVICTED",
                "evicted_seq": evicted.sequence_num,
                "evicted_total": self.buffer.counters.evicted,
            })

        for channel in list(self._channels):
            try:
                await channel.send(frame)
            except ChannelClosed:
                self._channels.remove(channel)

        await self._notify({
            "type": "native-audio-frame",
            "data": base64.b64encode(frame.pcm_bytes).decode("ascii"),
            "timestamp": frame.ts_ms,
            "format": self._format.as_dict(),
        })

    def _close_channels(self) -> None:
        for channel in self._channels:
            channel.close()
        self._channels.clear()

    async def _notify(self, message: Notification) -> None:
        if self._on_notification is None:
            return
        try:
            await self._on_notification(message)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "ts_ms": now_ms(),
                "level": "ERROR",
                "event_type": "NOTIFICATION_SINK_ERROR",
                "notification": message.get("type"),
                "exception": type(exc).__name__,
                "message": str(exc),
            })
