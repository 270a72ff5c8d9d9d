"""
Playback bridge: raw capture frames -> fixed-size float sample blocks.

Invariants:
- PCM16 signed, little-endian, interleaved by channel
- Samples normalized to [-1.0, 1.0) by dividing by 32768
- Frames arrive in temporal order (single helper stdout); no reordering
- Every emitted block holds exactly `block_samples` samples per channel;
  the remainder of a frame is carried into the next one

Channel policy: any channel count >= 1 is de-interleaved with the same
stride rule (mono passthrough, stereo even/odd, N-channel every Nth sample).
Channel counts below 1 are rejected at construction. A frame whose sample
count is not a whole multiple of the channel count is rejected and skipped.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Awaitable, Callable

import numpy as np

from audio.frames import AudioFrame
from audio.pcm import PcmFormatError, decode_pcm16le, deinterleave
from capture.channel import FrameChannel
from observability.logger import log_event, now_ms
from spec import CAPTURE_FORMAT_V1, PLAYBACK_BLOCK_SAMPLES, PLAYBACK_MIN_CHANNELS, CaptureFormat


# u32 sample_rate, u16 channels, u16 samples_per_channel
_BLOCK_HEADER = struct.Struct("<IHH")


@dataclass(frozen=True)
class SampleBlock:
    """
    One block of planar float32 audio ready for transmission.

    samples:
        Array of shape (channels, samples_per_channel), float32.

    ts_ms:
        Arrival timestamp of the frame that completed this block.
    """
    samples: np.ndarray
    sample_rate_hz: int
    ts_ms: int

    @property
    def channels(self) -> int:
        return int(self.samples.shape[0])

    @property
    def samples_per_channel(self) -> int:
        return int(self.samples.shape[1])

    def to_bytes(self) -> bytes:
        """
        Binary wire form: 8-byte header then planar little-endian float32.
        """
        header = _BLOCK_HEADER.pack(
            self.sample_rate_hz, self.channels, self.samples_per_channel
        )
        return header + self.samples.astype("<f4").tobytes()


BlockSink = Callable[[SampleBlock], Awaitable[None]]


class AudioPlaybackBridge:
    """
    Decodes captured frames and hands fixed-size blocks to a sink.

    push() is synchronous and pure apart from the carried remainder;
    handle_frame() and run() add the async hand-off.
    """

    def __init__(
        self,
        *,
        sink: BlockSink | None = None,
        capture_format: CaptureFormat = CAPTURE_FORMAT_V1,
        block_samples: int = PLAYBACK_BLOCK_SAMPLES,
    ) -> None:
        if capture_format.channels < PLAYBACK_MIN_CHANNELS:
            raise PcmFormatError(f"unsupported channel count: {capture_format.channels}")
        if block_samples <= 0:
            raise ValueError("block_samples must be > 0")

        self._sink = sink
        self._format = capture_format
        self._block_samples = block_samples
        self._residual = np.zeros((capture_format.channels, 0), dtype=np.float32)

        self.frames_decoded: int = 0
        self.frames_rejected: int = 0
        self.blocks_emitted: int = 0

    # ------------------------------------------------------------------
    # Decoding
    # ------------------------------------------------------------------

    def decode_frame(self, frame: AudioFrame) -> np.ndarray:
        """
        Decode one frame to a (channels, n) float32 array.

        Raises:
            PcmFormatError if the payload does not split into whole sample frames.
        """
        samples = decode_pcm16le(frame.pcm_bytes)
        return deinterleave(samples, self._format.channels)

    def push(self, frame: AudioFrame) -> list[SampleBlock]:
        """
        Decode a frame and return every block it completes.

        Rejected frames are logged and yield no blocks; the carried remainder
        is left untouched.
        """
        try:
            planar = self.decode_frame(frame)
        except PcmFormatError as e:
            self.frames_rejected += 1
            log_event({
                "ts_ms": now_ms(),
                "level": "WARNING",
                "event_type": "PLAYBACK_FRAME_REJECTED",
                "seq_num": frame.sequence_num,
                "payload_len": len(frame.pcm_bytes),
                "error": str(e),
            })
            return []

        self.frames_decoded += 1
        pending = np.concatenate((self._residual, planar), axis=1)

        blocks: list[SampleBlock] = []
        whole = pending.shape[1] // self._block_samples
        for i in range(whole):
            start = i * self._block_samples
            blocks.append(
                SampleBlock(
                    samples=pending[:, start : start + self._block_samples],
                    sample_rate_hz=self._format.sample_rate_hz,
                    ts_ms=frame.ts_ms,
                )
            )

        self._residual = pending[:, whole * self._block_samples :]
        self.blocks_emitted += len(blocks)
        return blocks

    def flush(self) -> SampleBlock | None:
        """
        Return the carried remainder as a short block (no padding), if any.
        """
        if self._residual.shape[1] == 0:
            return None
        block = SampleBlock(
            samples=self._residual,
            sample_rate_hz=self._format.sample_rate_hz,
            ts_ms=now_ms(),
        )
        self.reset()
        return block

    def reset(self) -> None:
        """Drop the carried remainder."""
        self._residual = np.zeros((self._format.channels, 0), dtype=np.float32)

    # ------------------------------------------------------------------
    # Async hand-off
    # ------------------------------------------------------------------

    async def handle_frame(self, frame: AudioFrame) -> int:
        """Decode a frame and deliver its blocks. Returns blocks delivered."""
        blocks = self.push(frame)
        for block in blocks:
            await self._deliver(block)
        return len(blocks)

    async def run(self, channel: FrameChannel) -> None:
        """
        Consume a frame channel until it closes.

        The channel is closed (pending frames dropped) when this returns or
        is cancelled, so the producer never waits on a dead consumer.
        """
        log_event({
            "ts_ms": now_ms(),
            "event_type": "PLAYBACK_BRIDGE_STARTED",
            "channels": self._format.channels,
            "sample_rate_hz": self._format.sample_rate_hz,
            "block_samples": self._block_samples,
        })
        try:
            async for frame in channel:
                await self.handle_frame(frame)
        finally:
            channel.close(drop_pending=True)
            tail = self.flush()
            if tail is not None:
                await self._deliver(tail)
            log_event({
                "ts_ms": now_ms(),
                "event_type": "PLAYBACK_BRIDGE_STOPPED",
                "frames_decoded": self.frames_decoded,
                "frames_rejected": self.frames_rejected,
                "blocks_emitted": self.blocks_emitted,
            })

    async def _deliver(self, block: SampleBlock) -> None:
        if self._sink is None:
            return
        try:
            await self._sink(block)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "ts_ms": now_ms(),
                "level": "ERROR",
                "event_type": "PLAYBACK_SINK_ERROR",
                "exception": type(exc).__name__,
                "message": str(exc),
            })
