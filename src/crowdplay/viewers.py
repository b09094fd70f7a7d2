"""Local viewer transport over aiohttp websockets.

Outbound: every frame and audio packet is sent as one binary websocket
message; viewers tell them apart by the packet magic byte (``V``/``A``).
Inbound: JSON text events ``keydown``/``keyup``/``restart``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from aiohttp import WSCloseCode, WSMsgType, web
from pydantic import ValidationError

from crowdplay.engine import EngineSession
from crowdplay.models import ViewerEvent, ViewerEventType

_logger = logging.getLogger(__name__)


def parse_viewer_event(text: str) -> ViewerEvent | None:
    """Parse an inbound viewer message; malformed messages yield ``None``."""
    try:
        return ViewerEvent.model_validate_json(text)
    except ValidationError:
        return None


def apply_viewer_event(session: EngineSession, event: ViewerEvent) -> bool:
    """Route a viewer event into the engine session."""
    if event.type == ViewerEventType.KEYDOWN:
        return session.key_down(event.key)
    if event.type == ViewerEventType.KEYUP:
        return session.key_up(event.key)
    if event.type == ViewerEventType.RESTART:
        session.restart()
        return True
    return False


class _Outbox:
    """Latest pending packet per packet kind for one viewer, drained in order."""

    __slots__ = ("pending", "writer")

    def __init__(self) -> None:
        self.pending: dict[int, bytes] = {}
        self.writer: asyncio.Task[None] | None = None


def _packet_kind(packet: bytes) -> int:
    return packet[0] if packet else -1


class ViewerHub:
    """Set of connected viewers plus non-blocking packet fan-out.

    Each viewer has one writer task and holds at most one pending packet per
    kind (frame, audio). A newer packet of the same kind replaces the pending
    one, so a slow socket cannot build an unbounded backlog or stall the
    broadcast tick, and frames never crowd out audio.
    """

    def __init__(self, on_event: Callable[[ViewerEvent], object] | None = None) -> None:
        self._on_event = on_event
        self._viewers: set[web.WebSocketResponse] = set()
        self._outboxes: dict[web.WebSocketResponse, _Outbox] = {}
        self.packets_dropped = 0

    @property
    def viewer_count(self) -> int:
        return len(self._viewers)

    def broadcast(self, packet: bytes) -> int:
        """Queue *packet* for every viewer; return how many viewers got it queued."""
        kind = _packet_kind(packet)
        for ws in list(self._viewers):
            outbox = self._outboxes.setdefault(ws, _Outbox())
            if kind in outbox.pending:
                self.packets_dropped += 1
            outbox.pending[kind] = packet
            if outbox.writer is None:
                outbox.writer = asyncio.create_task(self._drain(ws, outbox))
        return len(self._viewers)

    async def _drain(self, ws: web.WebSocketResponse, outbox: _Outbox) -> None:
        try:
            while outbox.pending:
                kind = next(iter(outbox.pending))
                packet = outbox.pending.pop(kind)
                try:
                    await ws.send_bytes(packet)
                except Exception as exc:
                    _logger.debug("Viewer send error: %s", exc)
                    self._drop_viewer(ws)
                    try:
                        await ws.close()
                    except Exception as exc_close:
                        _logger.debug("Viewer close error: %s", exc_close)
                    return
        finally:
            outbox.writer = None

    def _drop_viewer(self, ws: web.WebSocketResponse) -> None:
        self._viewers.discard(ws)
        outbox = self._outboxes.pop(ws, None)
        if outbox is not None:
            outbox.pending.clear()

    def _handle_text(self, text: str) -> None:
        event = parse_viewer_event(text)
        if event is None:
            _logger.debug("Ignoring malformed viewer message")
            return
        if self._on_event is None:
            return
        try:
            self._on_event(event)
        except Exception:
            _logger.warning("Viewer event handler failed type=%s", event.type, exc_info=True)

    async def handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)
        self._viewers.add(ws)
        _logger.info("Viewer connected remote=%s viewers=%d", request.remote, len(self._viewers))
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    self._handle_text(msg.data)
                elif msg.type == WSMsgType.ERROR:
                    _logger.debug("Viewer websocket error: %s", ws.exception())
        finally:
            self._drop_viewer(ws)
            _logger.info("Viewer disconnected remote=%s viewers=%d", request.remote, len(self._viewers))
        return ws

    async def close_all(self) -> None:
        viewers = list(self._viewers)
        pending = [o.writer for o in self._outboxes.values() if o.writer is not None]
        self._viewers.clear()
        self._outboxes.clear()
        for ws in viewers:
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
