"""Binary packet codecs for video frames and audio."""

from crowdplay.codec.audio import (
    AUDIO_MAGIC,
    AudioPayload,
    decode_audio,
    encode_audio,
    resample_linear,
    to_int16_pcm,
)
from crowdplay.codec.video import (
    VIDEO_MAGIC,
    FrameType,
    VideoHeader,
    decode_video_frame,
    encode_video_frame,
    read_video_header,
)

__all__ = [
    "AUDIO_MAGIC",
    "AudioPayload",
    "FrameType",
    "VIDEO_MAGIC",
    "VideoHeader",
    "decode_audio",
    "decode_video_frame",
    "encode_audio",
    "encode_video_frame",
    "read_video_header",
    "resample_linear",
    "to_int16_pcm",
]
