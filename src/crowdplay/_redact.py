"""Helpers for safe debug logging.

Broker credentials end up in connection settings, and most broker traffic
is compressed binary. This module renders both in a form that is safe and
readable in DEBUG logs.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping, Sequence
from typing import Any

_SENSITIVE_VALUE_KEYS: frozenset[str] = frozenset(
    {
        "password",
        "mqtt_password",
        "passwd",
        "secret",
        "token",
        "authorization",
        "cookie",
    }
)

_PREVIEW_BYTES = 64
_MAX_DEPTH = 20


def _describe_bytes(payload: bytes | bytearray | memoryview) -> str:
    return f"<bytes:{len(payload)}b>"


def preview_payload(payload: bytes, *, max_bytes: int = _PREVIEW_BYTES) -> str:
    """Describe a broker payload: text if it decodes cleanly, else its size."""
    if len(payload) <= max_bytes:
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError:
            return _describe_bytes(payload)
        if text.isprintable():
            return text
    return _describe_bytes(payload)


def _clip(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def _fields_of(value: Any) -> Mapping[Any, Any] | None:
    if isinstance(value, Mapping):
        return value
    # Config objects are frozen dataclasses.
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {field.name: getattr(value, field.name) for field in dataclasses.fields(value)}
    return None


def redact_for_log(value: Any, *, max_string: int = 512, _depth: int = 0) -> Any:
    """Return a copy of *value* that is safe to put in debug logs.

    Mappings and dataclass instances become dicts with credential fields
    masked; empty credentials are left as they are so a missing password
    stays visible. Binary values are reduced to their length.
    """
    if _depth > _MAX_DEPTH:
        return "<max-depth>"
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return _clip(value, max_string)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return _describe_bytes(value)

    def walk(item: Any) -> Any:
        return redact_for_log(item, max_string=max_string, _depth=_depth + 1)

    fields = _fields_of(value)
    if fields is not None:
        out: dict[str, Any] = {}
        for key, item in fields.items():
            name = str(key)
            if name.lower() in _SENSITIVE_VALUE_KEYS:
                out[name] = "<redacted>" if item else item
            else:
                out[name] = walk(item)
        return out
    if isinstance(value, Sequence):
        return [walk(item) for item in value]
    return repr(value)
