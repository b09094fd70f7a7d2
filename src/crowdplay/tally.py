"""Crowd input tally and its two timers.

Votes accumulate into a fixed-length vector. Every telemetry interval the
vector is published (consecutive all-zero snapshots are collapsed into one),
and every decision interval the leading input id is published as the crowd's
command and the vector is reset.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

from crowdplay import _constants as const

_logger = logging.getLogger(__name__)


def parse_vote(payload: bytes | str) -> int | None:
    """Decode a vote payload: a decimal input id, whitespace allowed."""
    if isinstance(payload, bytes):
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError:
            return None
    else:
        text = payload
    text = text.strip()
    if not text or not text.isdecimal():
        return None
    return int(text)


def encode_snapshot(snapshot: list[int]) -> str:
    return json.dumps(snapshot, separators=(",", ":"))


class InputTally:
    """Fixed-length vote counter indexed by input id."""

    def __init__(self, size: int = const.TALLY_SIZE) -> None:
        if size < 1:
            raise ValueError(f"tally size must be >= 1, got {size}")
        self._counts = [0] * size

    def __len__(self) -> int:
        return len(self._counts)

    def increment(self, input_id: Any) -> bool:
        if isinstance(input_id, bool) or not isinstance(input_id, int):
            return False
        if not 0 <= input_id < len(self._counts):
            return False
        self._counts[input_id] += 1
        return True

    def snapshot(self) -> list[int]:
        return list(self._counts)

    def reset(self) -> None:
        for index in range(len(self._counts)):
            self._counts[index] = 0

    def leader(self) -> int | None:
        """Index of the largest count, lowest index on ties; ``None`` if all zero."""
        best_index = 0
        best_value = 0
        for index, value in enumerate(self._counts):
            if value > best_value:
                best_value = value
                best_index = index
        return best_index if best_value > 0 else None


class TallyAggregator:
    """Telemetry and decision timers over an :class:`InputTally`.

    Both ticks are plain methods so they can be driven directly; ``start``
    runs each on its own asyncio task.
    """

    def __init__(
        self,
        tally: InputTally,
        publish_tally: Callable[[list[int]], object],
        publish_command: Callable[[int], object],
        *,
        telemetry_interval: float = const.TELEMETRY_INTERVAL_S,
        decision_interval: float = const.DECISION_INTERVAL_S,
    ) -> None:
        self.tally = tally
        self._publish_tally = publish_tally
        self._publish_command = publish_command
        self.telemetry_interval = telemetry_interval
        self.decision_interval = decision_interval
        self._suppress_until_nonzero = False
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def suppressing(self) -> bool:
        return self._suppress_until_nonzero

    @property
    def is_running(self) -> bool:
        return bool(self._tasks)

    def telemetry_tick(self) -> bool:
        """Publish the current snapshot unless it repeats an all-zero one."""
        snapshot = self.tally.snapshot()
        has_votes = any(snapshot)
        if self._suppress_until_nonzero:
            if not has_votes:
                return False
            self._suppress_until_nonzero = False
            self._safe_publish(self._publish_tally, snapshot, "tally")
            return True

        self._safe_publish(self._publish_tally, snapshot, "tally")
        if not has_votes:
            self._suppress_until_nonzero = True
        return True

    def decision_tick(self) -> int | None:
        """Publish the winning input id and reset; no-op when no votes."""
        winner = self.tally.leader()
        if winner is None:
            return None
        self._safe_publish(self._publish_command, winner, "command")
        self.tally.reset()
        # Next telemetry tick reports the fresh zero vector once.
        self._suppress_until_nonzero = False
        _logger.debug("Crowd decision input=%d", winner)
        return winner

    def _safe_publish(self, publish: Callable[[Any], object], value: Any, what: str) -> None:
        try:
            publish(value)
        except Exception:
            _logger.warning("Publishing %s failed", what, exc_info=True)

    async def _every(self, interval: float, tick: Callable[[], object]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                tick()
            except Exception:
                _logger.exception("Tally timer tick failed")

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._every(self.telemetry_interval, self.telemetry_tick)),
            asyncio.create_task(self._every(self.decision_interval, self.decision_tick)),
        ]
        _logger.info(
            "Tally timers started telemetry=%.1fs decision=%.1fs",
            self.telemetry_interval,
            self.decision_interval,
        )

    async def stop(self) -> None:
        tasks = self._tasks
        self._tasks = []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
