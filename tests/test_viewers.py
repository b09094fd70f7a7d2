from __future__ import annotations

import asyncio

import pytest
from aiohttp import test_utils, web

from crowdplay.engine import EngineOutput, EngineSession
from crowdplay.models import ViewerEvent, ViewerEventType
from crowdplay.viewers import ViewerHub, apply_viewer_event, parse_viewer_event


class _Engine:
    def __init__(self) -> None:
        self.restarts = 0

    def init(self, rom: bytes, save_state: bytes | None) -> None:
        pass

    def advance(self) -> EngineOutput:
        return EngineOutput(video_frame=b"")

    def apply_input(self, input_id: int) -> None:
        pass

    def restart(self) -> None:
        self.restarts += 1

    def get_save_state(self) -> bytes:
        return b""


class TestParseViewerEvent:
    def test_keydown(self) -> None:
        event = parse_viewer_event('{"type": "keydown", "key": "A"}')
        assert event == ViewerEvent(type=ViewerEventType.KEYDOWN, key="A")

    def test_numeric_key_is_coerced(self) -> None:
        event = parse_viewer_event('{"type": "keyup", "key": 4}')
        assert event is not None and event.key == "4"

    def test_restart_without_key(self) -> None:
        event = parse_viewer_event('{"type": "restart"}')
        assert event is not None and event.type is ViewerEventType.RESTART

    @pytest.mark.parametrize("text", ["", "not json", '{"type": "jump"}', "[]", '{"key": "A"}'])
    def test_malformed(self, text: str) -> None:
        assert parse_viewer_event(text) is None


def test_apply_viewer_event_routes_into_session() -> None:
    engine = _Engine()
    session = EngineSession(engine, input_repeat=2)

    assert apply_viewer_event(session, ViewerEvent(type=ViewerEventType.KEYDOWN, key="start"))
    assert session.pending_inputs == [7, 7]
    assert apply_viewer_event(session, ViewerEvent(type=ViewerEventType.RESTART))
    assert engine.restarts == 1
    assert not apply_viewer_event(session, ViewerEvent(type=ViewerEventType.KEYDOWN, key=None))


async def _drain() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


class _StuckSocket:
    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.sent: list[bytes] = []

    async def send_bytes(self, data: bytes) -> None:
        self.started.set()
        await self.release.wait()
        self.sent.append(data)


class _BrokenSocket:
    closed = False

    async def send_bytes(self, data: bytes) -> None:
        raise ConnectionResetError("gone")

    async def close(self) -> None:
        self.closed = True


@pytest.mark.asyncio
async def test_slow_viewer_keeps_latest_packet_per_kind() -> None:
    hub = ViewerHub()
    sock = _StuckSocket()
    hub._viewers.add(sock)  # type: ignore[attr-defined,arg-type]

    assert hub.broadcast(b"V1") == 1
    await sock.started.wait()
    hub.broadcast(b"V2")
    hub.broadcast(b"A1")
    hub.broadcast(b"V3")
    assert hub.packets_dropped == 1

    sock.release.set()
    await _drain()
    assert sock.sent == [b"V1", b"V3", b"A1"]

    hub.broadcast(b"V4")
    await _drain()
    assert sock.sent[-1] == b"V4"


@pytest.mark.asyncio
async def test_frame_and_audio_in_same_step_both_arrive() -> None:
    hub = ViewerHub()
    sock = _StuckSocket()
    sock.release.set()
    hub._viewers.add(sock)  # type: ignore[attr-defined,arg-type]

    hub.broadcast(b"Vframe")
    hub.broadcast(b"Aaudio")
    await _drain()

    assert sock.sent == [b"Vframe", b"Aaudio"]
    assert hub.packets_dropped == 0


@pytest.mark.asyncio
async def test_failed_viewer_is_pruned() -> None:
    hub = ViewerHub()
    sock = _BrokenSocket()
    hub._viewers.add(sock)  # type: ignore[attr-defined,arg-type]

    hub.broadcast(b"frame")
    await _drain()

    assert hub.viewer_count == 0
    assert sock.closed


@pytest.mark.asyncio
async def test_websocket_round_trip() -> None:
    events: list[ViewerEvent] = []
    hub = ViewerHub(on_event=events.append)
    app = web.Application()
    app.router.add_get("/ws", hub.handle_ws)

    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        ws = await client.ws_connect("/ws")
        for _ in range(50):
            if hub.viewer_count:
                break
            await asyncio.sleep(0.01)
        assert hub.viewer_count == 1

        await ws.send_str('{"type": "keydown", "key": "B"}')
        await ws.send_str("garbage")
        hub.broadcast(b"V\x01packet")
        msg = await ws.receive(timeout=2)
        assert msg.data == b"V\x01packet"

        for _ in range(50):
            if events:
                break
            await asyncio.sleep(0.01)
        assert events == [ViewerEvent(type=ViewerEventType.KEYDOWN, key="B")]

        await ws.close()
        await hub.close_all()
