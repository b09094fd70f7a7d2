"""Custom exception hierarchy for crowdplay."""

from __future__ import annotations


class CrowdplayError(Exception):
    """Base exception for all crowdplay errors."""


class ConfigError(CrowdplayError):
    """Invalid or missing configuration."""


class CodecError(CrowdplayError):
    """A packet could not be encoded or decoded.

    Decode failures are local to the offending packet: callers drop the
    packet and keep the session running.
    """


class TruncatedPacketError(CodecError):
    """Packet is shorter than its fixed-width header."""


class BadMagicError(CodecError):
    """Packet does not start with the expected magic byte."""

    def __init__(self, message: str, *, magic: int | None = None) -> None:
        self.magic = magic
        super().__init__(message)


class UnsupportedVersionError(CodecError):
    """Packet header carries a version this decoder does not understand."""

    def __init__(self, message: str, *, version: int | None = None) -> None:
        self.version = version
        super().__init__(message)


class UnsupportedFrameTypeError(CodecError):
    """Video packet frame type is reserved or unknown."""


class UnsupportedFormatError(CodecError):
    """Audio packet sample format is unknown."""


class CorruptPayloadError(CodecError):
    """Compressed packet body could not be inflated."""


class SizeMismatchError(CodecError):
    """Pixel data length does not match ``width * height * bytes_per_pixel``."""

    def __init__(self, message: str, *, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(message)


class EngineError(CrowdplayError):
    """Emulation engine could not be set up."""


class RomNotFoundError(EngineError):
    """No engine image was found at startup."""


class EngineLoadError(EngineError):
    """Engine factory could not be imported or instantiated."""


class TransportError(CrowdplayError):
    """Broker or viewer transport failure."""
