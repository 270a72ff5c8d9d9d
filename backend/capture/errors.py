"""
Capture lifecycle errors.

Raised by CaptureProcessSupervisor.start(); the caller decides whether to
retry. Unexpected exits after streaming began are reported as notifications,
not raised, because no caller is waiting at that point.
"""

from __future__ import annotations


class CaptureError(Exception):
    """Base class for capture helper lifecycle failures."""


class ProcessSpawnError(CaptureError):
    """The helper executable could not be launched."""


class StreamFailedError(CaptureError):
    """The helper reported STREAM_FAILED before streaming began."""


class CaptureStartTimeout(CaptureError, TimeoutError):
    """STREAM_STARTED did not arrive within the readiness bound."""


class ProcessRuntimeError(CaptureError):
    """
    The helper exited without being asked to.

    Carries the process return code (None if unknown).
    """

    def __init__(self, message: str, *, returncode: int | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class CaptureBusyError(CaptureError):
    """start() was called while a stop is still in progress."""


class CaptureStartCancelled(CaptureError):
    """The start was abandoned (caller cancelled or supervisor closed) before STREAM_STARTED."""
