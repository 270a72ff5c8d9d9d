"""PCM conversion utilities."""

from __future__ import annotations

from typing import Sequence

import numpy as np

from spec import PCM16_MAX, PCM16_MIN, PCM16_SCALE, PLAYBACK_MIN_CHANNELS


class PcmFormatError(ValueError):
    """
    Raised when a payload cannot be de-interleaved for the requested layout.

    Covers channel counts below 1 and sample counts that are not a whole
    multiple of the channel count.
    """


def decode_pcm16le(pcm_bytes: bytes) -> np.ndarray:
    """
    Convert PCM16 little-endian bytes to float32 in [-1.0, 1.0).

    Interleaving is preserved; see deinterleave() for channel splitting.
    A trailing odd byte (truncated sample) is dropped.
    """
    if len(pcm_bytes) % 2 != 0:
        pcm_bytes = pcm_bytes[: len(pcm_bytes) - 1]

    audio_i16 = np.frombuffer(pcm_bytes, dtype="<i2")
    return audio_i16.astype(np.float32) / PCM16_SCALE


def encode_pcm16le(samples: Sequence[float] | np.ndarray) -> bytes:
    """
    Convert float samples to PCM16 little-endian bytes.

    Samples are clamped to [-1.0, 1.0] before scaling so out-of-range input
    saturates instead of wrapping. 1.0 maps to 32767.
    """
    arr = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    scaled = np.clip(np.rint(arr * PCM16_SCALE), PCM16_MIN, PCM16_MAX)
    return scaled.astype("<i2").tobytes()


def deinterleave(samples: np.ndarray, channels: int) -> np.ndarray:
    """
    Split interleaved samples into a (channels, samples_per_channel) array.

    Mono is a passthrough reshape; stereo puts even indices in row 0 (left)
    and odd indices in row 1 (right). Larger counts follow the same stride.

    Raises:
        PcmFormatError if channels < 1 or len(samples) % channels != 0.
    """
    if channels < PLAYBACK_MIN_CHANNELS:
        raise PcmFormatError(f"unsupported channel count: {channels}")

    if len(samples) % channels != 0:
        raise PcmFormatError(
            f"{len(samples)} samples do not divide into {channels} channels"
        )

    return samples.reshape(-1, channels).T.copy()
