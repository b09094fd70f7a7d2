"""Pydantic payload models."""

from crowdplay.models._base import CrowdplayModel
from crowdplay.models.payloads import HealthStatus, StreamMeta, ViewerEvent, ViewerEventType

__all__ = [
    "CrowdplayModel",
    "HealthStatus",
    "StreamMeta",
    "ViewerEvent",
    "ViewerEventType",
]
