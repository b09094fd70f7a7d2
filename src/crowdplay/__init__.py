"""crowdplay - crowd-controlled emulator streaming over websockets and MQTT."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("crowdplay")
except PackageNotFoundError:
    __version__ = "0+local"
from crowdplay.codec import (
    AudioPayload,
    FrameType,
    VideoHeader,
    decode_audio,
    decode_video_frame,
    encode_audio,
    encode_video_frame,
)
from crowdplay.config import BrokerConfig, StreamConfig, TallyConfig
from crowdplay.exceptions import (
    BadMagicError,
    CodecError,
    ConfigError,
    CorruptPayloadError,
    CrowdplayError,
    EngineError,
    EngineLoadError,
    RomNotFoundError,
    SizeMismatchError,
    TransportError,
    TruncatedPacketError,
    UnsupportedFormatError,
    UnsupportedFrameTypeError,
    UnsupportedVersionError,
)
from crowdplay.tally import InputTally, TallyAggregator
from crowdplay.topics import StreamTopic, TallyTopic

__all__ = [
    "__version__",
    "AudioPayload",
    "BadMagicError",
    "BrokerConfig",
    "CodecError",
    "ConfigError",
    "CorruptPayloadError",
    "CrowdplayError",
    "EngineError",
    "EngineLoadError",
    "FrameType",
    "InputTally",
    "RomNotFoundError",
    "SizeMismatchError",
    "StreamConfig",
    "StreamTopic",
    "TallyAggregator",
    "TallyConfig",
    "TallyTopic",
    "TransportError",
    "TruncatedPacketError",
    "UnsupportedFormatError",
    "UnsupportedFrameTypeError",
    "UnsupportedVersionError",
    "VideoHeader",
    "decode_audio",
    "decode_video_frame",
    "encode_audio",
    "encode_video_frame",
]
