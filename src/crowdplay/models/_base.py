"""Base model for broker and viewer payloads."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class CrowdplayModel(BaseModel):
    """Base for all wire payload models.

    Payloads are immutable once built; unknown keys sent by newer peers are
    ignored rather than rejected.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        str_strip_whitespace=True,
    )

    def to_json_bytes(self) -> bytes:
        return self.model_dump_json(exclude_none=True).encode("utf-8")
