"""Rate-gated broadcast loop.

The engine ticks at its own fixed cadence. Emission to viewers and to the
broker is decided per tick by three independent filters: a fixed skip
factor, optional inactivity suppression, and the emission-rate gate.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

from crowdplay.codec import encode_audio, encode_video_frame
from crowdplay.config import StreamConfig
from crowdplay.engine import EngineOutput, EngineSession
from crowdplay.throttle import LeadingTrailingThrottle, RateGate, frame_interval_ms
from crowdplay.topics import StreamTopic

_logger = logging.getLogger(__name__)

PacketSink = Callable[[bytes], object]
TopicPublisher = Callable[[StreamTopic, bytes], object]

_STATS_LOG_INTERVAL_S = 30.0


class LoopState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass
class BroadcastStats:
    frames_ticked: int = 0
    frames_sent: int = 0
    audio_sent: int = 0
    frames_suppressed: int = 0
    frames_gated: int = 0
    tick_errors: int = 0


class BrokerSink:
    """Forwards packets to the broker, optionally through a per-topic throttle.

    Trailing-edge flushes are scheduled on the running event loop.
    """

    def __init__(
        self,
        publish: TopicPublisher,
        *,
        target_fps: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._publish = publish
        self._clock = clock
        interval = frame_interval_ms(target_fps) / 1000.0
        self._throttles: dict[StreamTopic, LeadingTrailingThrottle[bytes]] = {}
        self._timers: dict[StreamTopic, asyncio.TimerHandle] = {}
        if interval > 0:
            for topic in (StreamTopic.FRAME, StreamTopic.AUDIO):
                self._throttles[topic] = LeadingTrailingThrottle(
                    interval,
                    lambda packet, topic=topic: self._publish(topic, packet),
                )

    def send(self, topic: StreamTopic, packet: bytes) -> None:
        throttle = self._throttles.get(topic)
        if throttle is None:
            self._publish(topic, packet)
            return
        delay = throttle.submit(packet, self._clock())
        if delay is not None and topic not in self._timers:
            self._schedule_flush(topic, delay)

    def _schedule_flush(self, topic: StreamTopic, delay: float) -> None:
        loop = asyncio.get_running_loop()
        self._timers[topic] = loop.call_later(max(0.0, delay), self._flush, topic)

    def _flush(self, topic: StreamTopic) -> None:
        self._timers.pop(topic, None)
        throttle = self._throttles[topic]
        try:
            throttle.flush(self._clock())
        except Exception:
            _logger.warning("Broker publish failed topic=%s", topic, exc_info=True)
        due = throttle.next_due()
        if due is not None:
            self._schedule_flush(topic, due - self._clock())

    def close(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for throttle in self._throttles.values():
            throttle.cancel()


class BroadcastLoop:
    """Drives the engine and emits encoded packets to viewers and the broker."""

    def __init__(
        self,
        session: EngineSession,
        config: StreamConfig,
        *,
        viewers: PacketSink | None = None,
        broker: BrokerSink | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session = session
        self._config = config
        self._viewers = viewers
        self._broker = broker
        self._clock = clock
        self._gate = RateGate(config.target_fps)
        self._frames = 0
        self._last_stats_log = clock()
        self._wake: asyncio.Event | None = None
        self.state = LoopState.IDLE
        self.stats = BroadcastStats()

    def tick(self, now: float | None = None) -> bool:
        """Run one engine tick; return whether packets were emitted.

        Errors from the engine or the encoders are logged and swallowed so
        one bad frame never stops the stream.
        """
        self.stats.frames_ticked += 1
        try:
            output = self._session.advance()
            self._frames += 1
            if self._frames % self._config.skip_factor != 0:
                return False

            current = self._clock() if now is None else now
            if self._session.activity.is_idle(self._config.inactivity_timeout, current):
                self.stats.frames_suppressed += 1
                return False
            if not self._gate.allow(current * 1000.0):
                self.stats.frames_gated += 1
                return False

            self._emit(output)
            return True
        except Exception:
            self.stats.tick_errors += 1
            _logger.exception("Emulation tick failed")
            return False

    def _emit(self, output: EngineOutput) -> None:
        config = self._config
        frame_packet = encode_video_frame(
            output.video_frame,
            config.width,
            config.height,
            config.bytes_per_pixel,
        )
        self._deliver(StreamTopic.FRAME, frame_packet)
        self.stats.frames_sent += 1

        if len(output.audio_samples) == 0:
            return
        try:
            audio_packet = encode_audio(
                output.audio_samples,
                sample_rate=config.audio_sample_rate,
                channels=1,
                input_sample_rate=config.audio_input_sample_rate,
            )
        except Exception:
            _logger.warning("Audio encode failed", exc_info=True)
            return
        self._deliver(StreamTopic.AUDIO, audio_packet)
        self.stats.audio_sent += 1

    def _deliver(self, topic: StreamTopic, packet: bytes) -> None:
        if self._viewers is not None:
            try:
                self._viewers(packet)
            except Exception:
                _logger.warning("Viewer fan-out failed topic=%s", topic, exc_info=True)
        if self._broker is not None:
            try:
                self._broker.send(topic, packet)
            except Exception:
                _logger.warning("Broker publish failed topic=%s", topic, exc_info=True)

    def _maybe_log_stats(self) -> None:
        now = self._clock()
        if now - self._last_stats_log < _STATS_LOG_INTERVAL_S:
            return
        self._last_stats_log = now
        _logger.debug("Broadcast stats %s", self.stats)

    async def run(self) -> None:
        """Tick until :meth:`stop` is called."""
        if self.state == LoopState.STOPPED:
            return
        if self.state == LoopState.RUNNING:
            raise RuntimeError("broadcast loop is already running")
        self.state = LoopState.RUNNING
        self._wake = asyncio.Event()
        _logger.info(
            "Broadcast loop started tick=%.1fms target_fps=%s inactivity=%.1fs",
            self._config.tick_interval * 1000.0,
            self._config.target_fps,
            self._config.inactivity_timeout,
        )
        try:
            while self.state == LoopState.RUNNING:
                self.tick()
                self._maybe_log_stats()
                try:
                    await asyncio.wait_for(self._wake.wait(), self._config.tick_interval)
                except TimeoutError:
                    pass
        finally:
            self.state = LoopState.STOPPED
            if self._broker is not None:
                self._broker.close()
            _logger.info("Broadcast loop stopped %s", self.stats)

    def stop(self) -> None:
        self.state = LoopState.STOPPED
        if self._wake is not None:
            self._wake.set()
