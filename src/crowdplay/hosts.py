"""The two deployable hosts: the streaming host and the tally host.

Each host owns an aiohttp application, an optional broker runtime and its
own timers, and shuts all of them down cooperatively in :meth:`stop`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from pathlib import Path

from aiohttp import web

from crowdplay._mqtt import BrokerConnection, BrokerRuntime, PublishRoute, default_client_id
from crowdplay.broadcast import BroadcastLoop, BrokerSink
from crowdplay.config import StreamConfig, TallyConfig
from crowdplay.engine import Engine, EngineSession, create_engine
from crowdplay.models import HealthStatus, StreamMeta
from crowdplay.tally import InputTally, TallyAggregator, encode_snapshot, parse_vote
from crowdplay.topics import Handler, StreamTopic, TallyTopic, Topic, build_consumer_routes
from crowdplay.viewers import ViewerHub, apply_viewer_event

_logger = logging.getLogger(__name__)


def stream_publish_routes(config: StreamConfig) -> tuple[PublishRoute, ...]:
    return (
        PublishRoute(StreamTopic.META, qos=0, retain=config.retain_meta),
        PublishRoute(StreamTopic.HEALTH, qos=0),
        PublishRoute(StreamTopic.FRAME, qos=0),
        PublishRoute(StreamTopic.AUDIO, qos=0),
    )


TALLY_PUBLISH_ROUTES: tuple[PublishRoute, ...] = (
    PublishRoute(TallyTopic.TALLY, qos=1, retain=True),
    PublishRoute(TallyTopic.COMMAND, qos=2),
)


def _text(payload: bytes) -> str:
    return payload.decode("utf-8", errors="replace").strip()


async def _start_site(app: web.Application, host: str, port: int) -> web.AppRunner:
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    return runner


class StreamHost:
    """Engine session, viewer websocket fan-out and broker publishing."""

    def __init__(
        self,
        config: StreamConfig,
        *,
        engine: Engine | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._clock = clock
        if engine is None:
            engine = create_engine(config.engine, rom_path=config.rom_path)
        self.session = EngineSession(engine, input_repeat=config.input_repeat, clock=clock)
        self.hub = ViewerHub(on_event=lambda event: apply_viewer_event(self.session, event))
        self.runtime: BrokerRuntime | None = None
        self.broadcast: BroadcastLoop | None = None
        self._runner: web.AppRunner | None = None
        self._loop_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Broker consumers
    # ------------------------------------------------------------------

    def consumer_handlers(self) -> dict[Topic, Handler]:
        return {
            StreamTopic.CONTROL_RESTART: self._on_restart,
            StreamTopic.COMMAND: self._on_command,
            StreamTopic.INPUT_KEYDOWN: self._on_keydown,
            StreamTopic.INPUT_KEYUP: self._on_keyup,
        }

    def _on_restart(self, _payload: bytes, _topic: str) -> None:
        _logger.info("Restart requested via broker")
        self.session.restart()

    def _on_command(self, payload: bytes, _topic: str) -> None:
        self.session.command(payload)

    def _on_keydown(self, payload: bytes, _topic: str) -> None:
        key = _text(payload)
        if key:
            self.session.key_down(key)

    def _on_keyup(self, payload: bytes, _topic: str) -> None:
        key = _text(payload)
        if key:
            self.session.key_up(key)

    def _publish(self, topic: StreamTopic, payload: bytes | str) -> bool:
        runtime = self.runtime
        connection = runtime.connection if runtime is not None else None
        if connection is None:
            return False
        return connection.publishers.publish(topic, payload)

    def _on_broker_ready(self, connection: BrokerConnection) -> None:
        config = self.config
        meta = StreamMeta(width=config.width, height=config.height, format=config.pixel_format)
        connection.publishers.publish(StreamTopic.META, meta.to_json_bytes())
        connection.publishers.publish(StreamTopic.HEALTH, HealthStatus().to_json_bytes())
        _logger.info("Published stream meta %sx%s %s", meta.width, meta.height, meta.format)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _handle_health(self, _request: web.Request) -> web.Response:
        return web.json_response({"ok": True})

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/ws", self.hub.handle_ws)
        if self.config.static_dir:
            static = Path(self.config.static_dir)
            if static.is_dir():
                app.router.add_static("/", static, show_index=False)
            else:
                _logger.warning("STATIC_DIR %s is not a directory, not serving it", static)
        return app

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        config = self.config
        loop = asyncio.get_running_loop()

        broker_sink: BrokerSink | None = None
        if config.mqtt_enabled:
            self.runtime = BrokerRuntime(
                loop=loop,
                config=config.broker,
                routes=build_consumer_routes(config.broker.prefix, self.consumer_handlers()),
                publish_routes=stream_publish_routes(config),
                on_ready=self._on_broker_ready,
                client_id=default_client_id("crowdplay-stream"),
            )
            broker_sink = BrokerSink(
                self._publish,
                target_fps=config.target_fps if config.throttle_broker else 0.0,
                clock=self._clock,
            )
        else:
            _logger.info("MQTT disabled, streaming to local viewers only")

        self.broadcast = BroadcastLoop(
            self.session,
            config,
            viewers=self.hub.broadcast,
            broker=broker_sink,
            clock=self._clock,
        )

        self._runner = await _start_site(self.build_app(), config.host, config.port)
        _logger.info("Streaming host listening on http://%s:%s", config.host, config.port)

        if self.runtime is not None:
            self.runtime.start()
        self._loop_task = asyncio.create_task(self.broadcast.run())

    async def stop(self) -> None:
        if self.broadcast is not None:
            self.broadcast.stop()
        if self._loop_task is not None:
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None
        if self.runtime is not None:
            self.runtime.stop()
        await self.hub.close_all()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        _logger.info("Streaming host stopped")


class TallyHost:
    """Aggregates crowd votes from the broker and publishes decisions."""

    def __init__(self, config: TallyConfig) -> None:
        self.config = config
        self.tally = InputTally(config.size)
        self.aggregator = TallyAggregator(
            self.tally,
            self._publish_snapshot,
            self._publish_command,
            telemetry_interval=config.telemetry_interval,
            decision_interval=config.decision_interval,
        )
        self.runtime: BrokerRuntime | None = None
        self._runner: web.AppRunner | None = None
        self.votes_rejected = 0

    def consumer_handlers(self) -> dict[Topic, Handler]:
        return {TallyTopic.INPUT: self._on_input}

    def _on_input(self, payload: bytes, _topic: str) -> None:
        vote = parse_vote(payload)
        if vote is None or not self.tally.increment(vote):
            self.votes_rejected += 1
            _logger.debug("Ignoring vote payload=%r", payload[:32])

    def _publish(self, topic: TallyTopic, payload: str) -> bool:
        runtime = self.runtime
        connection = runtime.connection if runtime is not None else None
        if connection is None:
            return False
        return connection.publishers.publish(topic, payload)

    def _publish_snapshot(self, snapshot: list[int]) -> None:
        self._publish(TallyTopic.TALLY, encode_snapshot(snapshot))

    def _publish_command(self, input_id: int) -> None:
        self._publish(TallyTopic.COMMAND, str(input_id))

    def _on_broker_ready(self, _connection: BrokerConnection) -> None:
        self.aggregator.start()

    async def _handle_index(self, _request: web.Request) -> web.Response:
        return web.Response(text="Tally host is running\n")

    async def _handle_tally(self, _request: web.Request) -> web.Response:
        return web.json_response(self.tally.snapshot())

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/", self._handle_index)
        app.router.add_get("/tally", self._handle_tally)
        return app

    async def start(self) -> None:
        config = self.config
        self.runtime = BrokerRuntime(
            loop=asyncio.get_running_loop(),
            config=config.broker,
            routes=build_consumer_routes(config.broker.prefix, self.consumer_handlers()),
            publish_routes=TALLY_PUBLISH_ROUTES,
            on_ready=self._on_broker_ready,
            client_id=default_client_id("crowdplay-tally"),
        )
        self._runner = await _start_site(self.build_app(), config.host, config.port)
        _logger.info("Tally host listening on http://%s:%s", config.host, config.port)
        self.runtime.start()

    async def stop(self) -> None:
        await self.aggregator.stop()
        if self.runtime is not None:
            self.runtime.stop()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        _logger.info("Tally host stopped")
