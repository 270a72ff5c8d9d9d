# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
import struct

import numpy as np
import pytest

from audio.frames import AudioFrame
from audio.pcm import PcmFormatError, encode_pcm16le
from audio.playback_bridge import AudioPlaybackBridge, SampleBlock
from capture.channel import FrameChannel
from observability import logger
from spec import CaptureFormat


STEREO = CaptureFormat(sample_rate_hz=48_000, channels=2, bit_depth=16, encoding="PCM")
MONO = CaptureFormat(sample_rate_hz=16_000, channels=1, bit_depth=16, encoding="PCM")


@pytest.fixture(autouse=True)
def quiet_logger(monkeypatch: pytest.MonkeyPatch) -> list[str]:
    lines: list[str] = []
    monkeypatch.setattr(logger, "_print", lines.append)
    return lines


def stereo_frame(pairs: list[tuple[float, float]], seq: int = 0) -> AudioFrame:
    interleaved = [s for pair in pairs for s in pair]
    return AudioFrame(pcm_bytes=encode_pcm16le(interleaved), ts_ms=100 + seq, sequence_num=seq)


def test_stereo_frame_splits_into_left_and_right():
    bridge = AudioPlaybackBridge(capture_format=STEREO, block_samples=2)

    blocks = bridge.push(stereo_frame([(0.5, -0.5), (0.25, -0.25)]))

    assert len(blocks) == 1
    block = blocks[0]
    assert block.channels == 2
    assert block.samples_per_channel == 2
    np.testing.assert_allclose(block.samples[0], [0.5, 0.25], atol=1 / 32768)
    np.testing.assert_allclose(block.samples[1], [-0.5, -0.25], atol=1 / 32768)


def test_remainder_is_carried_into_the_next_frame():
    bridge = AudioPlaybackBridge(capture_format=MONO, block_samples=4)

    first = bridge.push(AudioFrame(pcm_bytes=encode_pcm16le([0.1] * 3), ts_ms=1))
    second = bridge.push(AudioFrame(pcm_bytes=encode_pcm16le([0.2] * 6), ts_ms=2))
    tail = bridge.flush()

    assert first == []
    assert len(second) == 2
    np.testing.assert_allclose(second[0].samples[0], [0.1, 0.1, 0.1, 0.2], atol=1 / 32768)
    assert tail is not None and tail.samples_per_channel == 1
    assert bridge.flush() is None
    assert bridge.blocks_emitted == 2


def test_misaligned_frame_is_rejected_and_logged(quiet_logger: list[str]):
    bridge = AudioPlaybackBridge(capture_format=STEREO, block_samples=1)

    blocks = bridge.push(AudioFrame(pcm_bytes=encode_pcm16le([0.1, 0.2, 0.3]), ts_ms=1, sequence_num=9))

    assert blocks == []
    assert bridge.frames_rejected == 1
    assert any("PLAYBACK_FRAME_REJECTED" in line for line in quiet_logger)


def test_zero_channel_format_is_rejected_up_front():
    with pytest.raises(PcmFormatError):
        AudioPlaybackBridge(capture_format=CaptureFormat(48_000, 0, 16, "PCM"))


def test_block_wire_form_has_header_then_planar_float32():
    block = SampleBlock(
        samples=np.array([[0.5, 0.25], [-0.5, -0.25]], dtype=np.float32),
        sample_rate_hz=48_000,
        ts_ms=0,
    )

    raw = block.to_bytes()

    assert struct.unpack_from("<IHH", raw) == (48_000, 2, 2)
    assert np.frombuffer(raw[8:], dtype="<f4").tolist() == [0.5, 0.25, -0.5, -0.25]


def test_run_consumes_channel_until_closed_and_flushes_tail():
    delivered: list[SampleBlock] = []

    async def sink(block: SampleBlock) -> None:
        delivered.append(block)

    async def scenario() -> None:
        bridge = AudioPlaybackBridge(sink=sink, capture_format=STEREO, block_samples=2)
        channel = FrameChannel(capacity=4)
        task = asyncio.create_task(bridge.run(channel))
        await channel.send(stereo_frame([(0.5, -0.5)] * 3, seq=1))
        channel.close()
        await asyncio.wait_for(task, 1.0)

    asyncio.run(scenario())

    assert [b.samples_per_channel for b in delivered] == [2, 1]


def test_failing_sink_does_not_stop_the_bridge(quiet_logger: list[str]):
    async def sink(_: SampleBlock) -> None:
        raise RuntimeError("socket gone")

    async def scenario() -> int:
        bridge = AudioPlaybackBridge(sink=sink, capture_format=STEREO, block_samples=1)
        return await bridge.handle_frame(stereo_frame([(0.1, 0.1), (0.2, 0.2)]))

    assert asyncio.run(scenario()) == 2
    assert any("PLAYBACK_SINK_ERROR" in line for line in quiet_logger)
