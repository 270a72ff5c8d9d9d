"""
Capture helper stdout protocol.

The helper writes one JSON object per line:

    {"code": "STREAM_STARTED"}
    {"code": "AUDIO_DATA", "data": "<base64 PCM16LE>"}
    {"code": "STREAM_FAILED", "error": "Screen recording permission denied"}
    {"code": "RECORDING_STARTED", "timestamp": "...", "path": "/x/y.flac"}
    {"code": "PERMISSION_GRANTED"}

Usage example:

    parser = FrameProtocolParser()
    for line in parser.feed(chunk):
        try:
            record = parse_helper_line(line, ts_ms=now_ms())
        except ProtocolParseError as e:
            log_event({"event_type": "HELPER_LINE_SKIPPED", "error": str(e)})
            continue

Every line is parsed independently; a bad line never affects its neighbours.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from spec import HELPER_LINE_LIMIT_BYTES


# -------------------------
# Exceptions
# -------------------------

class ProtocolParseError(Exception):
    """
    Raised when a helper output line is not a well-formed record.

    Covers invalid JSON, non-object payloads, missing or unknown codes and
    AUDIO_DATA records whose payload is absent or not valid base64.
    The line must be skipped; the stream continues.
    """


# -------------------------
# Record types
# -------------------------

class HelperCode(str, Enum):
    """Status codes the capture helper emits."""
    STREAM_STARTED = "STREAM_STARTED"
    STREAM_FAILED = "STREAM_FAILED"
    AUDIO_DATA = "AUDIO_DATA"
    RECORDING_STARTED = "RECORDING_STARTED"
    RECORDING_STOPPED = "RECORDING_STOPPED"
    PERMISSION_GRANTED = "PERMISSION_GRANTED"
    PERMISSION_DENIED = "PERMISSION_DENIED"


@dataclass(frozen=True)
class StreamStarted:
    """Helper began streaming; the capture session is live."""
    ts_ms: int
    code: HelperCode = HelperCode.STREAM_STARTED


@dataclass(frozen=True)
class StreamFailed:
    """Helper could not start (or lost) the stream."""
    ts_ms: int
    error: str
    code: HelperCode = HelperCode.STREAM_FAILED


@dataclass(frozen=True)
class AudioData:
    """One chunk of decoded PCM."""
    ts_ms: int
    pcm_bytes: bytes
    code: HelperCode = HelperCode.AUDIO_DATA


@dataclass(frozen=True)
class RecordingStatus:
    """Recording to file started or stopped."""
    ts_ms: int
    code: HelperCode
    timestamp: str | None = None
    path: str | None = None

    @property
    def started(self) -> bool:
        return self.code is HelperCode.RECORDING_STARTED


@dataclass(frozen=True)
class PermissionStatus:
    """Answer to --check-permissions."""
    ts_ms: int
    code: HelperCode

    @property
    def granted(self) -> bool:
        return self.code is HelperCode.PERMISSION_GRANTED


HelperRecord = Union[StreamStarted, StreamFailed, AudioData, RecordingStatus, PermissionStatus]


# -------------------------
# Parsing
# -------------------------

def _decode_audio(data: Any) -> bytes:
    if not isinstance(data, str) or not data:
        raise ProtocolParseError("AUDIO_DATA record without base64 data")
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ProtocolParseError(f"invalid base64 audio payload: {e}") from e


def parse_helper_line(line: str | bytes, *, ts_ms: int) -> HelperRecord:
    """
    Decode one stdout line into a typed record.

    Raises:
        ProtocolParseError if the line does not have the expected shape.
    """
    if isinstance(line, bytes):
        try:
            line = line.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolParseError(f"line is not utf-8: {e}") from e

    try:
        obj = json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolParseError(f"invalid JSON: {e}") from e

    if not isinstance(obj, dict):
        raise ProtocolParseError(f"expected object, got {type(obj).__name__}")

    raw_code = obj.get("code")
    try:
        code = HelperCode(raw_code)
    except ValueError as e:
        raise ProtocolParseError(f"unknown code: {raw_code!r}") from e

    if code is HelperCode.AUDIO_DATA:
        return AudioData(ts_ms=ts_ms, pcm_bytes=_decode_audio(obj.get("data")))

    if code is HelperCode.STREAM_STARTED:
        return StreamStarted(ts_ms=ts_ms)

    if code is HelperCode.STREAM_FAILED:
        return StreamFailed(ts_ms=ts_ms, error=str(obj.get("error") or "Stream failed"))

    if code in (HelperCode.RECORDING_STARTED, HelperCode.RECORDING_STOPPED):
        return RecordingStatus(
            ts_ms=ts_ms,
            code=code,
            timestamp=obj.get("timestamp"),
            path=obj.get("path"),
        )

    return PermissionStatus(ts_ms=ts_ms, code=code)


class FrameProtocolParser:
    """
    Splits raw stdout chunks into complete lines.

    Chunk boundaries from the pipe do not align with record boundaries, so a
    partial trailing line is held until its newline arrives. Blank lines are
    skipped. A line longer than `max_line_bytes` is discarded (a partial one
    up to its next newline) and counted in `discarded_lines`.
    """

    def __init__(self, *, max_line_bytes: int = HELPER_LINE_LIMIT_BYTES) -> None:
        self._max_line_bytes = max_line_bytes
        self._pending = bytearray()
        self._discarding = False
        self.discarded_lines: int = 0

    def feed(self, chunk: bytes) -> list[bytes]:
        """Append a chunk and return every line it completed, in order."""
        lines: list[bytes] = []
        start = 0

        while True:
            idx = chunk.find(b"\n", start)
            if idx < 0:
                break

            if self._discarding:
                self._discarding = False
            else:
                self._pending += chunk[start:idx]
                if len(self._pending) > self._max_line_bytes:
                    self.discarded_lines += 1
                else:
                    line = bytes(self._pending).strip()
                    if line:
                        lines.append(line)
            self._pending.clear()
            start = idx + 1

        if not self._discarding:
            self._pending += chunk[start:]
            if len(self._pending) > self._max_line_bytes:
                self._pending.clear()
                self._discarding = True
                self.discarded_lines += 1

        return lines

    def flush(self) -> list[bytes]:
        """Return the unterminated trailing line at end of stream, if any."""
        line = bytes(self._pending).strip()
        self._pending.clear()
        self._discarding = False
        return [line] if line else []
