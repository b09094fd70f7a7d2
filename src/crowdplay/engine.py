"""Engine collaborator contract and the per-session input model.

The emulation engine is opaque: it is loaded from a ``module:attr`` factory
path and driven only through the :class:`Engine` protocol. Input follows the
queued key-stack model: every accepted input id is queued ``input_repeat``
times and one queued id is applied per engine tick.
"""

from __future__ import annotations

import importlib
import logging
import math
import struct
import time
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from crowdplay import _constants as const
from crowdplay.exceptions import EngineLoadError, RomNotFoundError

_logger = logging.getLogger(__name__)

#: Input ids understood by the default engine, in tally slot order.
KEYMAP: dict[str, int] = {
    "RIGHT": 0,
    "LEFT": 1,
    "UP": 2,
    "DOWN": 3,
    "A": 4,
    "B": 5,
    "SELECT": 6,
    "START": 7,
}

ROM_SUFFIXES = (".gb", ".gbc")


@dataclass(frozen=True)
class EngineOutput:
    """Result of one engine tick."""

    video_frame: bytes
    audio_samples: Sequence[float] | bytes = ()


class Engine(Protocol):
    """Structural interface of the emulation engine."""

    def init(self, rom: bytes, save_state: bytes | None) -> None:
        ...

    def advance(self) -> EngineOutput:
        ...

    def apply_input(self, input_id: int) -> None:
        ...

    def restart(self) -> None:
        ...

    def get_save_state(self) -> bytes:
        ...


def resolve_input_id(key: Any, *, num_inputs: int = len(KEYMAP)) -> int | None:
    """Map a key name (``"a"``, ``"START"``) or decimal id to an input id."""
    if key is None or isinstance(key, bool):
        return None
    if isinstance(key, int):
        input_id = key
    else:
        text = str(key).strip().upper()
        if not text:
            return None
        if text in KEYMAP:
            return KEYMAP[text]
        try:
            input_id = int(text, 10)
        except ValueError:
            return None
    if 0 <= input_id < num_inputs:
        return input_id
    return None


class InactivityClock:
    """Monotonic timestamp of the last accepted input.

    Starts at construction time, so a fresh session counts as active for
    one full inactivity window.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._last_input = clock()

    @property
    def last_input(self) -> float:
        return self._last_input

    def touch(self) -> None:
        self._last_input = self._clock()

    def idle_for(self, now: float | None = None) -> float:
        current = self._clock() if now is None else now
        return max(0.0, current - self._last_input)

    def is_idle(self, window: float, now: float | None = None) -> bool:
        """Whether no input arrived for longer than *window* seconds."""
        if window <= 0:
            return False
        return self.idle_for(now) > window


class EngineSession:
    """Owns one engine instance and its pending input queue.

    Every accepted input, whatever its origin (local viewer, broker input
    topic, or a crowd decision), touches the session's inactivity clock.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        input_repeat: int = const.INPUT_REPEAT,
        num_inputs: int = len(KEYMAP),
        max_pending: int = 64,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.engine = engine
        self._input_repeat = input_repeat
        self._num_inputs = num_inputs
        self._queue: deque[int] = deque(maxlen=max_pending)
        self.activity = InactivityClock(clock)

    @property
    def pending_inputs(self) -> list[int]:
        return list(self._queue)

    def queue_input(self, input_id: int, times: int | None = None) -> bool:
        """Queue *input_id* to be held for *times* ticks."""
        if isinstance(input_id, bool) or not isinstance(input_id, int):
            return False
        if not 0 <= input_id < self._num_inputs:
            return False
        count = self._input_repeat if times is None else times
        self._queue.extend([input_id] * max(0, count))
        self.activity.touch()
        return True

    def key_down(self, key: Any) -> bool:
        input_id = resolve_input_id(key, num_inputs=self._num_inputs)
        if input_id is None:
            _logger.debug("Ignoring keydown for unknown key=%r", key)
            return False
        return self.queue_input(input_id)

    def key_up(self, key: Any) -> bool:
        # Queued presses release on their own; keyup only counts as activity.
        if resolve_input_id(key, num_inputs=self._num_inputs) is None:
            return False
        self.activity.touch()
        return True

    def command(self, payload: bytes | str) -> bool:
        """Apply a decision published by the tally host (decimal input id)."""
        text = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else payload
        try:
            input_id = int(text.strip(), 10)
        except ValueError:
            _logger.debug("Ignoring malformed command payload=%r", text)
            return False
        return self.queue_input(input_id)

    def restart(self) -> None:
        self.activity.touch()
        self.engine.restart()

    def apply_pending_input(self) -> int | None:
        """Apply at most one queued input; return the id applied."""
        if not self._queue:
            return None
        input_id = self._queue.popleft()
        self.engine.apply_input(input_id)
        return input_id

    def advance(self) -> EngineOutput:
        self.apply_pending_input()
        return self.engine.advance()

    def save_state(self) -> bytes:
        return self.engine.get_save_state()


# ----------------------------------------------------------------------
# Engine loading
# ----------------------------------------------------------------------


def load_engine_factory(path: str) -> Callable[[], Engine]:
    """Import an engine factory given as ``"package.module:attr"``."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise EngineLoadError(f"engine path must look like 'module:attr', got {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise EngineLoadError(f"cannot import engine module {module_name!r}: {exc}") from exc
    factory = getattr(module, attr, None)
    if factory is None or not callable(factory):
        raise EngineLoadError(f"engine factory {path!r} not found or not callable")
    return factory  # type: ignore[no-any-return]


def resolve_rom_path(explicit: str | None = None, search_dirs: Sequence[Path] | None = None) -> Path:
    """Locate the engine image.

    Order: *explicit* path (from ``ROM_PATH``), then the first ``.gb``/``.gbc``
    file in ``./roms``.
    """
    if explicit:
        candidate = Path(explicit).expanduser()
        if candidate.is_file():
            return candidate
        _logger.warning("ROM_PATH %s does not exist, searching defaults", candidate)

    dirs = search_dirs if search_dirs is not None else [Path.cwd() / "roms"]
    for directory in dirs:
        if not directory.is_dir():
            continue
        for path in sorted(directory.iterdir()):
            if path.is_file() and path.suffix.lower() in ROM_SUFFIXES:
                return path

    raise RomNotFoundError("No ROM found. Set ROM_PATH to a valid .gb/.gbc file.")


def create_engine(
    factory_path: str,
    *,
    rom_path: str | None = None,
    save_state: bytes | None = None,
) -> Engine:
    """Instantiate and initialise the configured engine.

    Factories that expose ``requires_rom = False`` are started without an
    image; every other engine needs one and fails startup without it.
    """
    factory = load_engine_factory(factory_path)
    rom = b""
    if getattr(factory, "requires_rom", True):
        path = resolve_rom_path(rom_path)
        _logger.info("Using ROM: %s", path)
        rom = path.read_bytes()
    try:
        engine = factory()
    except Exception as exc:
        raise EngineLoadError(f"engine factory {factory_path!r} failed: {exc}") from exc
    engine.init(rom, save_state)
    return engine


# ----------------------------------------------------------------------
# Built-in engine
# ----------------------------------------------------------------------

_PATTERN_STATE = struct.Struct("<IiiI")


class PatternEngine:
    """Deterministic stand-in engine: a scrolling colour gradient and a tone.

    Directional inputs pan the pattern, A/B change the tone pitch, and
    START/SELECT reset the pan. Useful for demos and for exercising the
    streaming pipeline without an emulator.
    """

    requires_rom = False

    def __init__(
        self,
        width: int = const.SCREEN_WIDTH,
        height: int = const.SCREEN_HEIGHT,
        sample_rate: int = const.ENGINE_SAMPLE_RATE,
        frames_per_second: int = 60,
    ) -> None:
        self.width = width
        self.height = height
        self.sample_rate = sample_rate
        self._samples_per_frame = sample_rate // frames_per_second
        self._frame = 0
        self._dx = 0
        self._dy = 0
        self._tone_hz = 440
        # Two rows back to back so any horizontal offset is a single slice.
        row = bytearray()
        for x in range(width):
            shade = (x * 255) // max(1, width - 1)
            row += bytes((shade, 255 - shade, (shade * 2) & 0xFF, 0xFF))
        self._row2 = bytes(row) * 2

    def init(self, rom: bytes, save_state: bytes | None) -> None:
        del rom
        if save_state and len(save_state) == _PATTERN_STATE.size:
            self._frame, self._dx, self._dy, self._tone_hz = _PATTERN_STATE.unpack(save_state)

    def advance(self) -> EngineOutput:
        self._frame += 1
        row_bytes = self.width * 4
        rows = []
        for y in range(self.height):
            offset = ((self._frame + self._dx + y + self._dy) % self.width) * 4
            rows.append(self._row2[offset : offset + row_bytes])
        return EngineOutput(video_frame=b"".join(rows), audio_samples=self._tone())

    def apply_input(self, input_id: int) -> None:
        if input_id == KEYMAP["RIGHT"]:
            self._dx += 1
        elif input_id == KEYMAP["LEFT"]:
            self._dx -= 1
        elif input_id == KEYMAP["UP"]:
            self._dy -= 1
        elif input_id == KEYMAP["DOWN"]:
            self._dy += 1
        elif input_id == KEYMAP["A"]:
            self._tone_hz = min(2000, self._tone_hz + 20)
        elif input_id == KEYMAP["B"]:
            self._tone_hz = max(100, self._tone_hz - 20)
        else:
            self._dx = self._dy = 0

    def restart(self) -> None:
        self._frame = 0
        self._dx = self._dy = 0
        self._tone_hz = 440

    def get_save_state(self) -> bytes:
        return _PATTERN_STATE.pack(self._frame, self._dx, self._dy, self._tone_hz)

    def _tone(self) -> list[float]:
        start = self._frame * self._samples_per_frame
        period = self.sample_rate / self._tone_hz
        return [
            0.25 if math.fmod(start + i, period) < period / 2 else -0.25
            for i in range(self._samples_per_frame)
        ]
