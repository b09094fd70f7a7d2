from __future__ import annotations

import asyncio
from collections.abc import Iterator

import pytest

from crowdplay.broadcast import BroadcastLoop, BrokerSink, LoopState
from crowdplay.codec import AUDIO_MAGIC, VIDEO_MAGIC, decode_audio, decode_video_frame
from crowdplay.config import StreamConfig
from crowdplay.engine import EngineOutput, EngineSession
from crowdplay.topics import StreamTopic
from crowdplay.viewers import ViewerHub

FRAME = bytes(range(16))


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class StubEngine:
    def __init__(self, audio: list[float] | None = None) -> None:
        self.audio = audio or []
        self.fail_next = False
        self.ticks = 0

    def init(self, rom: bytes, save_state: bytes | None) -> None:
        pass

    def advance(self) -> EngineOutput:
        self.ticks += 1
        if self.fail_next:
            self.fail_next = False
            raise RuntimeError("emulator crashed")
        return EngineOutput(video_frame=FRAME, audio_samples=self.audio)

    def apply_input(self, input_id: int) -> None:
        pass

    def restart(self) -> None:
        pass

    def get_save_state(self) -> bytes:
        return b""


def _config(**overrides: object) -> StreamConfig:
    params: dict[str, object] = {
        "width": 2,
        "height": 2,
        "bytes_per_pixel": 4,
        "target_fps": 0.0,
        "skip_factor": 1,
        "audio_sample_rate": 100,
        "audio_input_sample_rate": 100,
    }
    params.update(overrides)
    return StreamConfig(**params)  # type: ignore[arg-type]


class Harness:
    def __init__(self, engine: StubEngine | None = None, **overrides: object) -> None:
        self.clock = FakeClock()
        self.engine = engine or StubEngine()
        self.session = EngineSession(self.engine, clock=self.clock)
        self.viewer_packets: list[bytes] = []
        self.published: list[tuple[StreamTopic, bytes]] = []
        self.loop = BroadcastLoop(
            self.session,
            _config(**overrides),
            viewers=self.viewer_packets.append,
            broker=BrokerSink(lambda topic, packet: self.published.append((topic, packet))),
            clock=self.clock,
        )

    def tick_at(self, now: float) -> bool:
        self.clock.now = now
        return self.loop.tick(now)


def test_emits_frame_to_viewers_and_broker() -> None:
    h = Harness()
    assert h.tick_at(0.0)

    assert len(h.viewer_packets) == 1
    assert decode_video_frame(h.viewer_packets[0]) == FRAME
    assert [topic for topic, _ in h.published] == [StreamTopic.FRAME]


def test_audio_only_when_samples_exist() -> None:
    h = Harness(StubEngine(audio=[0.5, -0.5]))
    h.tick_at(0.0)

    topics = [topic for topic, _ in h.published]
    assert topics == [StreamTopic.FRAME, StreamTopic.AUDIO]
    assert decode_audio(h.viewer_packets[1]).samples() == [16383, -16383]


def test_skip_factor_emits_every_other_tick() -> None:
    h = Harness(skip_factor=2)
    results = [h.tick_at(t * 0.005) for t in range(6)]
    assert results == [False, True, False, True, False, True]
    assert h.engine.ticks == 6


def test_rate_gate_at_15_fps() -> None:
    h = Harness(target_fps=15.0)
    results = [h.tick_at(t) for t in (0.0, 0.010, 0.070, 0.140)]
    assert results == [True, False, True, True]
    assert h.loop.stats.frames_gated == 1


def test_inactivity_suppresses_but_engine_keeps_ticking() -> None:
    h = Harness(inactivity_timeout=1.0)

    assert h.tick_at(0.5)
    assert not h.tick_at(2.0)
    assert not h.tick_at(3.0)
    assert h.engine.ticks == 3
    assert h.loop.stats.frames_suppressed == 2

    h.session.key_down("A")
    assert h.tick_at(3.0)


def test_tick_error_is_logged_and_loop_continues() -> None:
    h = Harness()
    h.engine.fail_next = True

    assert not h.tick_at(0.0)
    assert h.loop.stats.tick_errors == 1
    assert h.tick_at(1.0)
    assert h.loop.stats.frames_sent == 1


def test_bad_frame_size_counts_as_tick_error() -> None:
    h = Harness(width=3)
    assert not h.tick_at(0.0)
    assert h.loop.stats.tick_errors == 1
    assert h.viewer_packets == []


def test_failing_viewer_sink_does_not_block_broker() -> None:
    published: list[StreamTopic] = []

    def broken(_packet: bytes) -> None:
        raise RuntimeError("socket gone")

    session = EngineSession(StubEngine())
    loop = BroadcastLoop(
        session,
        _config(),
        viewers=broken,
        broker=BrokerSink(lambda topic, packet: published.append(topic)),
    )
    assert loop.tick(0.0)
    assert published == [StreamTopic.FRAME]


@pytest.mark.asyncio
async def test_broker_sink_trailing_edge_delivers_latest_packet() -> None:
    published: list[bytes] = []
    sink = BrokerSink(lambda topic, packet: published.append(packet), target_fps=50.0)

    sink.send(StreamTopic.FRAME, b"first")
    sink.send(StreamTopic.FRAME, b"second")
    sink.send(StreamTopic.FRAME, b"third")
    assert published == [b"first"]

    await asyncio.sleep(0.06)
    assert published == [b"first", b"third"]
    sink.close()


@pytest.mark.asyncio
async def test_broker_sink_close_cancels_pending() -> None:
    published: list[bytes] = []
    sink = BrokerSink(lambda topic, packet: published.append(packet), target_fps=50.0)

    sink.send(StreamTopic.AUDIO, b"first")
    sink.send(StreamTopic.AUDIO, b"second")
    sink.close()

    await asyncio.sleep(0.05)
    assert published == [b"first"]


@pytest.mark.asyncio
async def test_run_until_stopped() -> None:
    session = EngineSession(StubEngine())
    packets: list[bytes] = []
    loop = BroadcastLoop(session, _config(tick_interval=0.001), viewers=packets.append)

    task = asyncio.create_task(loop.run())
    await asyncio.sleep(0.05)
    assert loop.state == LoopState.RUNNING
    loop.stop()
    await asyncio.wait_for(task, timeout=1.0)

    assert loop.state == LoopState.STOPPED
    assert loop.stats.frames_ticked > 0
    assert packets


class _RecordingSocket:
    def __init__(self) -> None:
        self.sent: list[bytes] = []

    async def send_bytes(self, data: bytes) -> None:
        self.sent.append(data)

    async def close(self) -> None:
        pass


@pytest.mark.asyncio
async def test_local_viewers_receive_frame_and_audio_each_tick() -> None:
    hub = ViewerHub()
    sock = _RecordingSocket()
    hub._viewers.add(sock)  # type: ignore[attr-defined,arg-type]
    session = EngineSession(StubEngine(audio=[0.5, -0.5]))
    loop = BroadcastLoop(session, _config(), viewers=hub.broadcast)

    for i in range(5):
        assert loop.tick(float(i))
        for _ in range(5):
            await asyncio.sleep(0)

    assert [packet[0] for packet in sock.sent] == [VIDEO_MAGIC, AUDIO_MAGIC] * 5
    assert decode_video_frame(sock.sent[0]) == FRAME
    assert decode_audio(sock.sent[1]).samples() == [16383, -16383]
    assert hub.packets_dropped == 0
    assert loop.stats.audio_sent == 5


class _NumpyLikeSamples:
    """Sequence whose truth value is ambiguous, like an array buffer."""

    def __init__(self, values: list[float]) -> None:
        self._values = values

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[float]:
        return iter(self._values)

    def __getitem__(self, index: int) -> float:
        return self._values[index]

    def __bool__(self) -> bool:
        raise ValueError("truth value of an array is ambiguous")


def test_array_audio_buffers_are_encoded() -> None:
    engine = StubEngine()
    engine.audio = _NumpyLikeSamples([0.5, -0.5])  # type: ignore[assignment]
    h = Harness(engine)

    assert h.tick_at(0.0)
    assert h.loop.stats.tick_errors == 0
    assert [topic for topic, _ in h.published] == [StreamTopic.FRAME, StreamTopic.AUDIO]


def test_empty_array_audio_buffer_sends_frame_only() -> None:
    engine = StubEngine()
    engine.audio = _NumpyLikeSamples([])  # type: ignore[assignment]
    h = Harness(engine)

    assert h.tick_at(0.0)
    assert h.loop.stats.tick_errors == 0
    assert [topic for topic, _ in h.published] == [StreamTopic.FRAME]
