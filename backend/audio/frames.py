"""
Audio frame primitives.

Pure data containers only.
No behavior, no queues, no timing logic.
"""

from __future__ import annotations
from dataclasses import dataclass


@dataclass(frozen=True)
class AudioFrame:
    """
    Raw audio payload captured from the helper process.

    pcm_bytes:
        Decoded PCM16 little-endian interleaved bytes (base64 already removed).
        Length is whatever the helper chose to emit; no fixed frame size.

    ts_ms:
        Wall-clock timestamp (milliseconds) when the record was read from the
        helper's stdout. Used for observability and notifications.

    sequence_num:
        Monotonic per-capture-session counter assigned by the supervisor,
        starting at 1. Used for ordering checks and debugging only.
    """
    pcm_bytes: bytes
    ts_ms: int
    sequence_num: int = 0
