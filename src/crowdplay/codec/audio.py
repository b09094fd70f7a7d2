"""Audio packets.

Samples are converted to mono 16-bit PCM, optionally resampled, then
zlib-deflated behind a compact header so viewers can identify and decode
them quickly.

Header layout (6 bytes)::

    [0]     'A' (0x41) magic
    [1]     version (0x01)
    [2]     format (0 = int16 LE)
    [3]     channels (uint8)
    [4..5]  sample rate (uint16 LE), the rate the body was encoded at
"""

from __future__ import annotations

import array
import math
import struct
import zlib
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from crowdplay._constants import OUTPUT_SAMPLE_RATE
from crowdplay.exceptions import (
    BadMagicError,
    CorruptPayloadError,
    TruncatedPacketError,
    UnsupportedFormatError,
    UnsupportedVersionError,
)

AUDIO_MAGIC = 0x41
AUDIO_VERSION = 0x01
FORMAT_INT16_LE = 0
HEADER_SIZE = 6
COMPRESSION_LEVEL = 6

_HEADER = struct.Struct("<BBBBH")

PcmInput = bytes | bytearray | memoryview | Sequence[float]


@dataclass(frozen=True)
class AudioPayload:
    """Decoded audio packet."""

    sample_rate: int
    channels: int
    pcm: bytes

    def samples(self) -> list[int]:
        """Return the body as signed 16-bit sample values."""
        count = len(self.pcm) // 2
        return list(struct.unpack(f"<{count}h", self.pcm[: count * 2]))


def _float_to_int16(value: Any) -> int:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return 0
    if math.isnan(v):
        return 0
    v = max(-1.0, min(1.0, v))
    # int() truncates toward zero
    return int(v * 32767)


def to_int16_pcm(samples: PcmInput | None) -> list[int]:
    """Normalise *samples* to a list of signed 16-bit values.

    Bytes-like input and ``array('h')`` are taken as 16-bit PCM already
    (bytes are little-endian). Any other sequence is treated as float
    samples in ``[-1, 1]``: clamped, then scaled to the full int16 range.
    """
    if samples is None:
        return []
    if isinstance(samples, (bytes, bytearray, memoryview)):
        raw = bytes(samples)
        count = len(raw) // 2
        return list(struct.unpack(f"<{count}h", raw[: count * 2]))
    if isinstance(samples, array.array) and samples.typecode == "h":
        return list(samples)
    return [_float_to_int16(v) for v in samples]


def int16_to_float(pcm: Sequence[int]) -> list[float]:
    return [v / 32768 for v in pcm]


def float_to_int16(samples: Sequence[float]) -> list[int]:
    return [_float_to_int16(v) for v in samples]


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def resample_linear(samples: Sequence[float], from_rate: float, to_rate: float) -> list[float]:
    """Linearly resample *samples* from *from_rate* to *to_rate*.

    Output length is ``round(len(samples) * to_rate / from_rate)`` (at least
    one sample). Output sample ``i`` interpolates between the two nearest
    input samples at position ``i * (n - 1) / (out_len - 1)``.
    """
    n = len(samples)
    if n == 0 or not math.isfinite(from_rate) or not math.isfinite(to_rate) or from_rate <= 0 or to_rate <= 0:
        return []
    if from_rate == to_rate:
        return list(samples)

    out_len = max(1, _round_half_up(n * (to_rate / from_rate)))
    if out_len == 1:
        return [samples[0]]

    step = (n - 1) / (out_len - 1)
    out: list[float] = []
    for i in range(out_len):
        pos = i * step
        i0 = math.floor(pos)
        i1 = min(n - 1, i0 + 1)
        t = pos - i0
        out.append(samples[i0] * (1 - t) + samples[i1] * t)
    return out


def encode_audio(
    samples: PcmInput | None,
    *,
    sample_rate: int = OUTPUT_SAMPLE_RATE,
    channels: int = 1,
    input_sample_rate: int | None = None,
) -> bytes:
    """Encode *samples* as a deflated int16 PCM audio packet.

    When *input_sample_rate* is given and differs from *sample_rate*, the
    samples are resampled to *sample_rate* before compression.
    """
    if not 0 <= sample_rate <= 0xFFFF:
        raise ValueError(f"sample_rate must fit in uint16, got {sample_rate}")
    if not 0 <= channels <= 0xFF:
        raise ValueError(f"channels must fit in uint8, got {channels}")

    pcm = to_int16_pcm(samples)
    if input_sample_rate and input_sample_rate > 0 and input_sample_rate != sample_rate:
        resampled = resample_linear(int16_to_float(pcm), input_sample_rate, sample_rate)
        pcm = float_to_int16(resampled)

    header = _HEADER.pack(AUDIO_MAGIC, AUDIO_VERSION, FORMAT_INT16_LE, channels, sample_rate)
    body = struct.pack(f"<{len(pcm)}h", *pcm)
    return header + zlib.compress(body, COMPRESSION_LEVEL)


def decode_audio(packet: bytes | bytearray | memoryview) -> AudioPayload:
    """Decode an audio packet into its header fields and raw PCM body."""
    if len(packet) < HEADER_SIZE:
        raise TruncatedPacketError(f"packet too short for header: {len(packet)} < {HEADER_SIZE}")
    magic, version, fmt, channels, sample_rate = _HEADER.unpack_from(packet, 0)
    if magic != AUDIO_MAGIC:
        raise BadMagicError(f"invalid audio magic 0x{magic:02x}", magic=magic)
    if version != AUDIO_VERSION:
        raise UnsupportedVersionError(f"unsupported audio version {version}", version=version)
    if fmt != FORMAT_INT16_LE:
        raise UnsupportedFormatError(f"unsupported audio format {fmt}")

    try:
        pcm = zlib.decompress(bytes(packet[HEADER_SIZE:]))
    except zlib.error as exc:
        raise CorruptPayloadError(f"audio body does not inflate: {exc}") from exc
    return AudioPayload(sample_rate=sample_rate, channels=channels, pcm=pcm)
