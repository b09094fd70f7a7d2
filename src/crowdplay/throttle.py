"""Emission pacing primitives.

Both classes are plain state machines driven by caller-supplied timestamps,
so they carry no timers of their own and can be exercised directly in tests.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from typing import Generic, TypeVar

T = TypeVar("T")


def frame_interval_ms(target_fps: float) -> int:
    """Minimum spacing between sends for *target_fps*; ``0`` when unbounded."""
    if target_fps <= 0 or not math.isfinite(target_fps):
        return 0
    return math.floor(1000 / target_fps)


class RateGate:
    """Allow at most one send per ``floor(1000 / target_fps)`` milliseconds.

    Rejected attempts do not move the window, so a burst of early sends
    cannot starve the next allowed one.
    """

    def __init__(self, target_fps: float) -> None:
        self.interval_ms = frame_interval_ms(target_fps)
        self._last_ms: float | None = None

    @property
    def enabled(self) -> bool:
        return self.interval_ms > 0

    @property
    def last_send_ms(self) -> float | None:
        return self._last_ms

    def allow(self, now_ms: float) -> bool:
        if self._last_ms is not None and now_ms - self._last_ms < self.interval_ms:
            return False
        self._last_ms = now_ms
        return True

    def reset(self) -> None:
        self._last_ms = None


class LeadingTrailingThrottle(Generic[T]):
    """Throttle with both leading and trailing edges.

    The first item after a quiet period is emitted immediately. Items that
    arrive inside the interval replace one another as the pending item,
    which is emitted once the interval has elapsed (see :meth:`flush`), so
    the last item before a gate boundary is never lost.
    """

    def __init__(self, interval: float, emit: Callable[[T], object]) -> None:
        self.interval = max(0.0, interval)
        self._emit = emit
        self._last_fire: float | None = None
        self._pending = False
        self._pending_item: T | None = None

    @property
    def has_pending(self) -> bool:
        return self._pending

    def next_due(self) -> float | None:
        """Timestamp at which the pending item becomes due, if any."""
        if not self._pending or self._last_fire is None:
            return None
        return self._last_fire + self.interval

    def submit(self, item: T, now: float) -> float | None:
        """Offer *item*; return the delay until a trailing flush is due.

        ``None`` means the item was emitted on the leading edge.
        """
        if self._last_fire is None or now - self._last_fire >= self.interval:
            self._clear_pending()
            self._fire(item, now)
            return None
        self._pending = True
        self._pending_item = item
        return self._last_fire + self.interval - now

    def flush(self, now: float) -> bool:
        """Emit the pending item if its interval has elapsed."""
        if not self._pending:
            return False
        if self._last_fire is not None and now - self._last_fire < self.interval:
            return False
        item = self._pending_item
        self._clear_pending()
        self._fire(item, now)  # type: ignore[arg-type]
        return True

    def cancel(self) -> None:
        self._clear_pending()

    def _fire(self, item: T, now: float) -> None:
        self._last_fire = now
        self._emit(item)

    def _clear_pending(self) -> None:
        self._pending = False
        self._pending_item = None
