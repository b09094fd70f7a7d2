"""Topic namespacing and the consumer dispatch table.

Callers register handlers against *logical* topics (members of
:class:`StreamTopic` or :class:`TallyTopic`). The namespace prefix is
prepended here, once, when the table is built; nothing else in the package
composes wire topics by hand.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from enum import StrEnum

from crowdplay._constants import DEFAULT_TOPIC_PREFIX

_logger = logging.getLogger(__name__)

Handler = Callable[[bytes, str], None]


class StreamTopic(StrEnum):
    """Topics owned by the streaming host."""

    INPUT_KEYDOWN = "input/keydown"
    INPUT_KEYUP = "input/keyup"
    CONTROL_RESTART = "control/restart"
    COMMAND = "command"
    META = "meta"
    HEALTH = "health"
    FRAME = "frame"
    AUDIO = "audio"


class TallyTopic(StrEnum):
    """Topics owned by the tally host."""

    INPUT = "input"
    TALLY = "tally"
    COMMAND = "command"


Topic = StreamTopic | TallyTopic


def normalize_prefix(prefix: str | None) -> str:
    value = (prefix or "").strip().rstrip("/")
    return value or DEFAULT_TOPIC_PREFIX


def wire_topic(prefix: str, topic: Topic) -> str:
    """Return the namespaced topic actually used on the broker."""
    if not isinstance(topic, (StreamTopic, TallyTopic)):
        raise TypeError(f"unknown topic {topic!r}; expected a StreamTopic or TallyTopic member")
    return f"{normalize_prefix(prefix)}/{topic.value}"


def build_consumer_routes(prefix: str, handlers: Mapping[Topic, Handler]) -> dict[str, Handler]:
    """Map ``{logical_topic: handler}`` to ``{"<prefix>/<topic>": handler}``.

    Keys must be topic enum members; a plain string is rejected so a
    misspelt topic fails when the table is built rather than silently never
    matching.
    """
    routes: dict[str, Handler] = {}
    for topic, handler in handlers.items():
        if not callable(handler):
            raise TypeError(f"handler for {topic!r} is not callable")
        routes[wire_topic(prefix, topic)] = handler
    return routes


def route_message(routes: Mapping[str, Handler], topic: str, payload: bytes) -> bool:
    """Invoke the handler registered for *topic*.

    Unknown topics are ignored: newer publishers may add topics that older
    consumers do not know about. Returns whether a handler was found.
    """
    handler = routes.get(topic)
    if handler is None:
        _logger.debug("Ignoring message on unrouted topic=%s", topic)
        return False
    handler(payload, topic)
    return True
