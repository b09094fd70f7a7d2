"""Broker and viewer payload models."""

from __future__ import annotations

import time
from enum import StrEnum

from pydantic import Field, field_validator

from crowdplay._constants import PIXEL_FORMAT, SCREEN_HEIGHT, SCREEN_WIDTH
from crowdplay.models._base import CrowdplayModel


def _now_ms() -> int:
    return int(time.time() * 1000)


class StreamMeta(CrowdplayModel):
    """Stream geometry published once on the ``meta`` topic."""

    width: int = Field(default=SCREEN_WIDTH, ge=0, le=0xFFFF)
    height: int = Field(default=SCREEN_HEIGHT, ge=0, le=0xFFFF)
    format: str = PIXEL_FORMAT


class HealthStatus(CrowdplayModel):
    """Liveness beacon published once on the ``health`` topic."""

    ok: bool = True
    ts: int = Field(default_factory=_now_ms, description="Epoch milliseconds")


class ViewerEventType(StrEnum):
    KEYDOWN = "keydown"
    KEYUP = "keyup"
    RESTART = "restart"


class ViewerEvent(CrowdplayModel):
    """Inbound event from a directly connected viewer."""

    type: ViewerEventType
    key: str | None = None

    @field_validator("key", mode="before")
    @classmethod
    def _coerce_key(cls, value: object) -> object:
        # Browsers send either key names ("A") or numeric ids (4).
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            return str(value)
        return value
