"""Video frame packets.

Every packet is a self-contained keyframe: an 8-byte header followed by
the zlib-deflated pixel buffer.

Header layout (8 bytes)::

    [0]     'V' (0x56) magic
    [1]     version (0x01)
    [2]     frame type (see :class:`FrameType`)
    [3..4]  width  (uint16 LE)
    [5..6]  height (uint16 LE)
    [7]     bytes per pixel (uint8)

Decoders reject unknown versions instead of guessing the layout.
"""

from __future__ import annotations

import enum
import struct
import zlib
from dataclasses import dataclass

from crowdplay.exceptions import (
    BadMagicError,
    CorruptPayloadError,
    SizeMismatchError,
    TruncatedPacketError,
    UnsupportedFrameTypeError,
    UnsupportedVersionError,
)

VIDEO_MAGIC = 0x56
VIDEO_VERSION = 0x01
HEADER_SIZE = 8
COMPRESSION_LEVEL = 6

_HEADER = struct.Struct("<BBBHHB")


class FrameType(enum.IntEnum):
    KEYFRAME_RAW = 0
    KEYFRAME_ZLIB = 1
    KEYFRAME_RLE = 2


@dataclass(frozen=True)
class VideoHeader:
    """Parsed video packet header."""

    frame_type: int
    width: int
    height: int
    bytes_per_pixel: int

    @property
    def expected_size(self) -> int:
        return self.width * self.height * self.bytes_per_pixel


def encode_video_frame(
    pixels: bytes | bytearray | memoryview,
    width: int,
    height: int,
    bytes_per_pixel: int,
) -> bytes:
    """Encode a full frame as a zlib keyframe packet.

    Raises :class:`SizeMismatchError` if *pixels* is not exactly
    ``width * height * bytes_per_pixel`` bytes long.
    """
    if not 0 <= width <= 0xFFFF or not 0 <= height <= 0xFFFF:
        raise ValueError(f"frame dimensions must fit in uint16, got {width}x{height}")
    if not 0 <= bytes_per_pixel <= 0xFF:
        raise ValueError(f"bytes_per_pixel must fit in uint8, got {bytes_per_pixel}")

    data = bytes(pixels)
    expected = width * height * bytes_per_pixel
    if len(data) != expected:
        raise SizeMismatchError(
            f"frame length {len(data)} != expected {expected}",
            expected=expected,
            actual=len(data),
        )

    header = _HEADER.pack(
        VIDEO_MAGIC,
        VIDEO_VERSION,
        FrameType.KEYFRAME_ZLIB,
        width,
        height,
        bytes_per_pixel,
    )
    return header + zlib.compress(data, COMPRESSION_LEVEL)


def read_video_header(packet: bytes | bytearray | memoryview) -> VideoHeader:
    """Validate and parse the fixed-width header of a video packet."""
    if len(packet) < HEADER_SIZE:
        raise TruncatedPacketError(f"packet too short for header: {len(packet)} < {HEADER_SIZE}")
    magic, version, frame_type, width, height, bytes_per_pixel = _HEADER.unpack_from(packet, 0)
    if magic != VIDEO_MAGIC:
        raise BadMagicError(f"invalid video magic 0x{magic:02x}", magic=magic)
    if version != VIDEO_VERSION:
        raise UnsupportedVersionError(f"unsupported video version {version}", version=version)
    return VideoHeader(
        frame_type=frame_type,
        width=width,
        height=height,
        bytes_per_pixel=bytes_per_pixel,
    )


def decode_video_frame(packet: bytes | bytearray | memoryview) -> bytes:
    """Decode a video packet back to its raw pixel buffer."""
    header = read_video_header(packet)
    if header.frame_type != FrameType.KEYFRAME_ZLIB:
        raise UnsupportedFrameTypeError(f"unsupported frame type {header.frame_type}")

    # Inflate at most one byte past the declared size so an oversized body
    # is rejected without being fully allocated.
    inflater = zlib.decompressobj()
    try:
        pixels = inflater.decompress(bytes(packet[HEADER_SIZE:]), header.expected_size + 1)
    except zlib.error as exc:
        raise CorruptPayloadError(f"video body does not inflate: {exc}") from exc

    if len(pixels) > header.expected_size or inflater.unconsumed_tail:
        raise SizeMismatchError(
            f"keyframe exceeds expected size {header.expected_size}",
            expected=header.expected_size,
            actual=len(pixels),
        )
    if not inflater.eof:
        raise CorruptPayloadError("video body is truncated")
    if len(pixels) != header.expected_size:
        raise SizeMismatchError(
            f"keyframe size {len(pixels)} != expected {header.expected_size}",
            expected=header.expected_size,
            actual=len(pixels),
        )
    return pixels
