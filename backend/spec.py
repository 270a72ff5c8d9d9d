"""
BEHAVIOR AS CONSTANTS
---------------------
Single source of truth for all behavioral invariants in the system.

Rules:
- If changing a value changes runtime behavior, it belongs here.
- No magic numbers elsewhere in the codebase.
- Other modules MUST import from this file.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Final, Tuple

# =============================================================================
# Capture Format (PCM16 stereo @ 48kHz, fixed by the capture helper)
# =============================================================================

CAPTURE_SAMPLE_RATE_HZ: Final[int] = 48_000
CAPTURE_CHANNELS: Final[int] = 2
CAPTURE_BIT_DEPTH: Final[int] = 16
CAPTURE_ENCODING: Final[str] = "PCM"

# Normalization divisor for signed 16-bit samples
PCM16_SCALE: Final[float] = 32768.0
PCM16_MIN: Final[int] = -32768
PCM16_MAX: Final[int] = 32767

# =============================================================================
# Capture Helper Process
# =============================================================================

HELPER_FLAG_START_STREAM: Final[str] = "--start-stream"
HELPER_FLAG_CHECK_PERMISSIONS: Final[str] = "--check-permissions"

# Readiness wait after spawn; STREAM_STARTED must arrive within this bound
CAPTURE_START_TIMEOUT_S: Final[float] = 10.0

# Grace period between SIGTERM and SIGKILL on stop()
CAPTURE_STOP_GRACE_S: Final[float] = 5.0

# Bound on a --check-permissions invocation
PERMISSION_CHECK_TIMEOUT_S: Final[float] = 5.0

# Longest line accepted from the helper's stdout (base64 audio is verbose)
HELPER_LINE_LIMIT_BYTES: Final[int] = 4 * 1024 * 1024

# =============================================================================
# Buffering & Backpressure
# =============================================================================

# Pull-path ring buffer: drop OLDEST beyond this many payloads
FRAME_BUFFER_CAPACITY: Final[int] = 1024

# Push-path channel between the helper reader and each subscriber
FRAME_CHANNEL_CAPACITY: Final[int] = 64

# =============================================================================
# Playback Bridge
# =============================================================================

# Per-channel samples per emitted block (10 ms @ 48 kHz)
PLAYBACK_BLOCK_SAMPLES: Final[int] = 480

# Channel counts the bridge de-interleaves; anything >= 1 is accepted
PLAYBACK_MIN_CHANNELS: Final[int] = 1

# =============================================================================
# Signaling
# =============================================================================

SIGNALING_DEFAULT_PORT: Final[int] = 8080

# Server-generated identifiers (base36, random)
SESSION_ID_LENGTH: Final[int] = 26
PARTY_ID_LENGTH: Final[int] = 13
ID_ALPHABET: Final[str] = "0123456789abcdefghijklmnopqrstuvwxyz"

ROLE_REQUESTER: Final[str] = "requester"
ROLE_SERVER: Final[str] = "server"

# Wire aliases accepted on identify (desktop app / web page naming)
ROLE_ALIASES: Final[Tuple[Tuple[str, str], ...]] = (
    ("website", ROLE_REQUESTER),
    ("electron", ROLE_SERVER),
)

CONNECT_PROMPT_MESSAGE: Final[str] = "Please identify your client type"
NO_SERVER_AVAILABLE_MESSAGE: Final[str] = "No capture server connected"
PEER_DISCONNECTED_REASON: Final[str] = "Other client disconnected"

# Companion client (server-role party living in this process)
COMPANION_RECONNECT_DELAY_S: Final[float] = 3.0

# =============================================================================
# Convenience Bundles
# =============================================================================

@dataclass(frozen=True)
class CaptureFormat:
    """
    Immutable bundle describing the PCM format the capture helper emits.

    This is a convenience wrapper for passing format metadata around;
    it is NOT a second source of truth.
    """
    sample_rate_hz: int = CAPTURE_SAMPLE_RATE_HZ
    channels: int = CAPTURE_CHANNELS
    bit_depth: int = CAPTURE_BIT_DEPTH
    encoding: str = CAPTURE_ENCODING

    @property
    def bytes_per_sample_frame(self) -> int:
        """Bytes per interleaved sample frame (all channels)."""
        return self.channels * (self.bit_depth // 8)

    def as_dict(self) -> dict[str, Any]:
        """Wire shape used in notifications and HTTP replies."""
        return {
            "sampleRate": self.sample_rate_hz,
            "channels": self.channels,
            "bitDepth": self.bit_depth,
            "format": self.encoding,
        }


CAPTURE_FORMAT_V1: Final[CaptureFormat] = CaptureFormat()
