"""Broker transport: one paho-mqtt connection per process role.

The runtime owns a single threaded paho client. Every inbound message is
handed to the asyncio loop with ``call_soon_threadsafe`` so handlers run on
the same thread as the broadcast and tally timers and never need locking.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, cast

import paho.mqtt.client as mqtt

from crowdplay._redact import preview_payload, redact_for_log
from crowdplay.config import BrokerConfig
from crowdplay.exceptions import TransportError
from crowdplay.topics import Handler, Topic, route_message, wire_topic


@dataclass(frozen=True)
class PublishRoute:
    """A logical topic this process publishes to, with its delivery options."""

    topic: Topic
    qos: int = 0
    retain: bool = False


ClientRef = Callable[[], "mqtt.Client | None"]


class BoundPublisher:
    """Publish callable bound to one wire topic on the live client."""

    def __init__(
        self,
        client_ref: ClientRef,
        topic: str,
        *,
        qos: int,
        retain: bool,
        logger: logging.Logger,
    ) -> None:
        self._client_ref = client_ref
        self.topic = topic
        self.qos = qos
        self.retain = retain
        self._logger = logger

    def __call__(self, payload: bytes | str) -> bool:
        """Queue *payload* for delivery. Returns ``False`` when it was dropped."""
        data = payload.encode("utf-8") if isinstance(payload, str) else payload
        client = self._client_ref()
        if client is None or not client.is_connected():
            self._logger.debug("MQTT publish dropped (not connected) topic=%s", self.topic)
            return False
        info = client.publish(self.topic, data, qos=self.qos, retain=self.retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self._logger.debug("MQTT publish failed topic=%s rc=%s", self.topic, info.rc)
            return False
        return True


class Publishers(Mapping[Topic, BoundPublisher]):
    """Fixed set of publishers keyed by logical topic."""

    def __init__(
        self,
        client_ref: ClientRef,
        prefix: str,
        routes: Sequence[PublishRoute],
        *,
        logger: logging.Logger,
    ) -> None:
        self._bound: dict[Topic, BoundPublisher] = {
            route.topic: BoundPublisher(
                client_ref,
                wire_topic(prefix, route.topic),
                qos=route.qos,
                retain=route.retain,
                logger=logger,
            )
            for route in routes
        }

    def __getitem__(self, topic: Topic) -> BoundPublisher:
        return self._bound[topic]

    def __iter__(self) -> Iterator[Topic]:
        return iter(self._bound)

    def __len__(self) -> int:
        return len(self._bound)

    def publish(self, topic: Topic, payload: bytes | str) -> bool:
        return self._bound[topic](payload)


@dataclass(frozen=True)
class BrokerConnection:
    """Handed to the ready callback once subscriptions are acknowledged.

    The publishers follow the runtime's live client, so they stay valid
    across reconnects and restarts of the same runtime.
    """

    runtime: BrokerRuntime
    publishers: Publishers


def default_client_id(role: str) -> str:
    return f"{role}-{os.getpid()}"


class BrokerRuntime:
    """Threaded paho-mqtt runtime that dispatches topics onto an asyncio loop."""

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        config: BrokerConfig,
        routes: Mapping[str, Handler],
        publish_routes: Sequence[PublishRoute] = (),
        on_ready: Callable[[BrokerConnection], None] | None = None,
        client_id: str | None = None,
        subscribe_qos: int = 0,
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop
        self._config = config
        self._routes = dict(routes)
        self._publish_routes = tuple(publish_routes)
        self._on_ready = on_ready
        self._client_id = config.client_id or client_id or default_client_id("crowdplay")
        self._subscribe_qos = subscribe_qos
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._connection: BrokerConnection | None = None
        self._running = False
        self._ready_delivered = False
        self._pending_subscribe_mid: int | None = None

    @property
    def is_running(self) -> bool:
        """Whether the MQTT runtime is actively running."""
        return self._running

    @property
    def is_connected(self) -> bool:
        client = self._client
        return client is not None and client.is_connected()

    @property
    def is_ready(self) -> bool:
        """Whether the ready callback has been delivered."""
        return self._ready_delivered

    @property
    def connection(self) -> BrokerConnection | None:
        return self._connection

    def start(self) -> None:
        """Connect in the background and subscribe to every routed topic.

        Connection failures, initial or later, are retried by paho's own
        reconnect loop.
        """
        self.stop()
        config = self._config
        self._logger.info(
            "Connecting to MQTT broker %s://%s:%s prefix=%s",
            config.protocol,
            config.host,
            config.effective_port,
            config.prefix,
        )
        self._logger.debug(
            "MQTT settings client_id=%s %s",
            self._client_id,
            redact_for_log(config),
        )

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=self._client_id,
            clean_session=True,
            protocol=mqtt.MQTTv311,
            transport="websockets" if config.use_websockets else "tcp",
        )
        client.enable_logger(self._logger)
        if config.username:
            client.username_pw_set(config.username, config.password)
        if config.use_tls:
            client.tls_set()
        client.reconnect_delay_set(config.reconnect_min_delay, config.reconnect_max_delay)

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                return
            self._logger.info("Connected to MQTT broker")
            topics = list(self._routes)
            if not topics:
                self._deliver_ready()
                return
            _result, mid = c.subscribe([(topic, self._subscribe_qos) for topic in topics])
            self._pending_subscribe_mid = mid

        def on_subscribe(
            _c: mqtt.Client,
            _userdata: Any,
            mid: int,
            reason_code_list: list[Any],
            _properties: Any,
        ) -> None:
            if mid != self._pending_subscribe_mid:
                return
            self._pending_subscribe_mid = None
            failures = [rc for rc in reason_code_list if rc.is_failure]
            if failures:
                self._logger.error("MQTT subscribe rejected: %s", failures)
                return
            self._logger.info("Subscribed to topics:\n\t%s", "\n\t".join(self._routes))
            self._deliver_ready()

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            payload = bytes(msg.payload)
            self._logger.debug(
                "MQTT message received topic=%s payload=%s",
                msg.topic,
                preview_payload(payload),
            )
            try:
                self._loop.call_soon_threadsafe(self._dispatch, msg.topic, payload)
            except RuntimeError:
                self._logger.debug("MQTT message dropped, event loop closed topic=%s", msg.topic)

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if self._running:
                self._logger.warning("MQTT disconnected: %s (reconnecting)", reason_code)

        client.on_connect = on_connect
        client.on_subscribe = on_subscribe
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        try:
            client.connect_async(config.host, config.effective_port, keepalive=config.keepalive)
        except ValueError as exc:
            raise TransportError(f"Invalid MQTT broker address {config.host!r}: {exc}") from exc
        client.loop_start()

        self._client = client
        self._running = True
        self._logger.debug("MQTT network loop started")

    def stop(self) -> None:
        """Stop and disconnect current MQTT client if running."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False
        self._pending_subscribe_mid = None

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")

    def _live_client(self) -> mqtt.Client | None:
        return self._client

    def _deliver_ready(self) -> None:
        if self._connection is None:
            publishers = Publishers(
                self._live_client,
                self._config.prefix,
                self._publish_routes,
                logger=self._logger,
            )
            self._connection = BrokerConnection(runtime=self, publishers=publishers)
        if self._ready_delivered:
            self._logger.debug("MQTT resubscribed after reconnect")
            return
        self._ready_delivered = True
        if self._on_ready is not None:
            self._loop.call_soon_threadsafe(self._invoke_ready, self._connection)

    def _invoke_ready(self, connection: BrokerConnection) -> None:
        if self._on_ready is None:
            return
        try:
            self._on_ready(connection)
        except Exception:
            self._logger.exception("MQTT ready callback failed")

    def _dispatch(self, topic: str, payload: bytes) -> None:
        try:
            route_message(self._routes, topic, payload)
        except Exception:
            self._logger.warning("MQTT handler failed topic=%s", topic, exc_info=True)
