"""
Fixed-capacity ring buffer of captured audio payloads.

Rules:
- Capacity measured in entries (one entry per helper AUDIO_DATA record)
- Drop OLDEST entry when full; the newest payload is always kept
- Pull semantics: take_all() reads and clears in one step
- Deterministic, synchronous behavior (single event loop, no locks)
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional

from audio.frames import AudioFrame
from spec import FRAME_BUFFER_CAPACITY


@dataclass
class EvictionCounters:
    """
    Eviction counters for observability.
    """
    evicted: int = 0
    cleared: int = 0


class FrameBuffer:
    """
    Bounded FIFO of AudioFrame objects with drop-oldest eviction.

    push() never rejects: when the buffer already holds `capacity`
    frames, the oldest one is evicted to make room.
    """

    def __init__(self, *, capacity: int = FRAME_BUFFER_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be > 0")

        self._capacity: int = capacity
        self._frames: Deque[AudioFrame] = deque()
        self.counters: EvictionCounters = EvictionCounters()

    # -------------------------
    # Core buffer operations
    # -------------------------

    def push(self, frame: AudioFrame) -> Optional[AudioFrame]:
        """
        Append a frame.

        Returns:
            The evicted frame, or None if nothing was evicted.
        """
        evicted: Optional[AudioFrame] = None
        if len(self._frames) >= self._capacity:
            evicted = self._frames.popleft()
            self.counters.evicted += 1

        self._frames.append(frame)
        return evicted

    def take_all(self) -> bytes:
        """
        Concatenate all buffered payloads in arrival order and clear.

        Returns b"" when the buffer is empty.
        """
        if not self._frames:
            return b""
        combined = b"".join(frame.pcm_bytes for frame in self._frames)
        self._frames.clear()
        return combined

    def clear(self) -> None:
        """
        Drop all buffered frames without counting them as evictions.

        Used when a capture session stops.
        """
        self.counters.cleared += len(self._frames)
        self._frames.clear()

    # -------------------------
    # Introspection helpers
    # -------------------------

    def __len__(self) -> int:
        return len(self._frames)

    @property
    def capacity(self) -> int:
        return self._capacity

    def is_empty(self) -> bool:
        """Check if the buffer is empty."""
        return not self._frames

    def peek_oldest(self) -> Optional[AudioFrame]:
        return self._frames[0] if self._frames else None

    def peek_latest(self) -> Optional[AudioFrame]:
        return self._frames[-1] if self._frames else None

    def buffered_bytes(self) -> int:
        return sum(len(frame.pcm_bytes) for frame in self._frames)

    def snapshot(self) -> dict[str, int]:
        """
        Lightweight snapshot for logging / status replies.
        """
        return {
            "frames": len(self._frames),
            "capacity": self._capacity,
            "bytes": self.buffered_bytes(),
            "evicted": self.counters.evicted,
            "cleared": self.counters.cleared,
        }
