"""Configuration for the streaming and tally hosts.

All values are read once at startup. Explicit keyword overrides passed to
``from_env`` take precedence over environment variables.
"""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping
from typing import Any

from crowdplay import _constants as const
from crowdplay.exceptions import ConfigError

_TLS_PROTOCOLS = frozenset({"mqtts", "wss"})
_KNOWN_PROTOCOLS = frozenset({"mqtt", "mqtts", "ws", "wss"})


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_int(env: Mapping[str, str], key: str) -> int | None:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from exc


def _env_float(env: Mapping[str, str], key: str) -> float | None:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return None
    try:
        return float(raw.strip())
    except ValueError as exc:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from exc


def _env_str(env: Mapping[str, str], key: str) -> str | None:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return None
    return raw.strip()


def parse_broker_url(url: str) -> tuple[str, str, int | None]:
    """Split ``scheme://host[:port][/path]`` into protocol, host and port."""
    value = url.strip()
    if not value:
        raise ConfigError("Broker URL is empty")

    protocol = "mqtt"
    if "://" in value:
        protocol, value = value.split("://", 1)
        protocol = protocol.lower()
    if "/" in value:
        value = value.split("/", 1)[0]

    host, _, maybe_port = value.rpartition(":")
    if host and maybe_port.isdigit():
        return protocol, host, int(maybe_port)
    return protocol, value, None


@dataclasses.dataclass(frozen=True)
class BrokerConfig:
    """Message broker connection settings.

    Parameters
    ----------
    host : str
        Broker host name.
    port : int or None
        Broker port. ``None`` selects 8883 for TLS protocols, else 1883.
    protocol : str
        One of ``mqtt``, ``mqtts``, ``ws``, ``wss``.
    username, password : str or None
        Broker credentials.
    prefix : str
        Namespace prepended to every logical topic.
    keepalive : int
        MQTT keepalive in seconds.
    client_id : str or None
        MQTT client id. ``None`` derives one from the host role and pid.
    reconnect_min_delay, reconnect_max_delay : int
        Bounds of the client's reconnect backoff in seconds.
    """

    host: str = "localhost"
    port: int | None = None
    protocol: str = "mqtt"
    username: str | None = None
    password: str | None = None
    prefix: str = const.DEFAULT_TOPIC_PREFIX
    keepalive: int = 60
    client_id: str | None = None
    reconnect_min_delay: int = 1
    reconnect_max_delay: int = 30

    def __post_init__(self) -> None:
        if self.protocol not in _KNOWN_PROTOCOLS:
            raise ConfigError(f"Unsupported broker protocol {self.protocol!r}")
        object.__setattr__(self, "prefix", (self.prefix or const.DEFAULT_TOPIC_PREFIX).rstrip("/"))

    @property
    def use_tls(self) -> bool:
        return self.protocol in _TLS_PROTOCOLS

    @property
    def use_websockets(self) -> bool:
        return self.protocol in {"ws", "wss"}

    @property
    def effective_port(self) -> int:
        if self.port is not None:
            return self.port
        return 8883 if self.use_tls else 1883

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None, **overrides: Any) -> BrokerConfig:
        """Create broker settings from ``MQTT_*`` environment variables.

        ``MQTT_URL`` takes precedence over ``MQTT_PROTOCOL``/``MQTT_HOST``/
        ``MQTT_PORT`` when present.
        """
        env = os.environ if env is None else env
        kwargs: dict[str, Any] = {}

        url = _env_str(env, "MQTT_URL")
        if url is not None:
            protocol, host, port = parse_broker_url(url)
            kwargs.update(protocol=protocol, host=host, port=port)
        else:
            for env_key, field_name in (("MQTT_PROTOCOL", "protocol"), ("MQTT_HOST", "host")):
                val = _env_str(env, env_key)
                if val is not None:
                    kwargs[field_name] = val.lower() if field_name == "protocol" else val
            port = _env_int(env, "MQTT_PORT")
            if port is not None:
                kwargs["port"] = port

        for env_key, field_name in (
            ("MQTT_USERNAME", "username"),
            ("MQTT_PASSWORD", "password"),
            ("MQTT_PREFIX", "prefix"),
            ("MQTT_CLIENT_ID", "client_id"),
        ):
            val = _env_str(env, env_key)
            if val is not None:
                kwargs[field_name] = val

        keepalive = _env_int(env, "MQTT_KEEPALIVE")
        if keepalive is not None:
            kwargs["keepalive"] = keepalive

        kwargs.update(overrides)
        return cls(**kwargs)


@dataclasses.dataclass(frozen=True)
class StreamConfig:
    """Streaming host configuration.

    Parameters
    ----------
    port : int
        HTTP/websocket listen port for viewers.
    rom_path : str or None
        Engine image. Falls back to ``./roms`` when unset.
    engine : str
        ``module:attr`` import path of the engine factory.
    target_fps : float
        Upper bound on emitted frames per second. ``0`` disables the gate.
    inactivity_timeout : float
        Seconds without input after which emission is suppressed.
        ``0`` disables suppression.
    tick_interval : float
        Seconds between engine ticks.
    skip_factor : int
        Emit on every N-th tick only.
    audio_sample_rate : int
        Sample rate audio packets are encoded at.
    audio_input_sample_rate : int
        Native sample rate of engine audio.
    input_repeat : int
        How many ticks a queued input is held for.
    mqtt_enabled : bool
        Connect to the broker at all.
    retain_meta : bool
        Publish the ``meta`` message as retained.
    throttle_broker : bool
        Pass broker frame/audio publishes through the leading+trailing
        throttle at ``target_fps``.
    static_dir : str or None
        Directory served at ``/`` for the browser viewer.
    """

    host: str = "0.0.0.0"
    port: int = 3002
    rom_path: str | None = None
    engine: str = "crowdplay.engine:PatternEngine"
    width: int = const.SCREEN_WIDTH
    height: int = const.SCREEN_HEIGHT
    bytes_per_pixel: int = const.BYTES_PER_PIXEL
    pixel_format: str = const.PIXEL_FORMAT
    target_fps: float = 30.0
    inactivity_timeout: float = 0.0
    tick_interval: float = const.TICK_INTERVAL_S
    skip_factor: int = const.EMIT_SKIP_FACTOR
    audio_sample_rate: int = const.OUTPUT_SAMPLE_RATE
    audio_input_sample_rate: int = const.ENGINE_SAMPLE_RATE
    input_repeat: int = const.INPUT_REPEAT
    mqtt_enabled: bool = True
    retain_meta: bool = False
    throttle_broker: bool = True
    static_dir: str | None = None
    broker: BrokerConfig = dataclasses.field(default_factory=BrokerConfig)

    def __post_init__(self) -> None:
        if self.skip_factor < 1:
            raise ConfigError(f"skip_factor must be >= 1, got {self.skip_factor}")
        if self.tick_interval <= 0:
            raise ConfigError(f"tick_interval must be > 0, got {self.tick_interval}")
        if self.input_repeat < 1:
            raise ConfigError(f"input_repeat must be >= 1, got {self.input_repeat}")

    @property
    def frame_size(self) -> int:
        return self.width * self.height * self.bytes_per_pixel

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None, **overrides: Any) -> StreamConfig:
        """Create streaming host configuration from environment variables."""
        env = os.environ if env is None else env
        kwargs: dict[str, Any] = {}

        for env_key, field_name in (
            ("ROM_PATH", "rom_path"),
            ("ENGINE", "engine"),
            ("STATIC_DIR", "static_dir"),
            ("HOST", "host"),
        ):
            val = _env_str(env, env_key)
            if val is not None:
                kwargs[field_name] = val

        for env_key, field_name in (
            ("PORT", "port"),
            ("AUDIO_SAMPLE_RATE", "audio_sample_rate"),
            ("AUDIO_INPUT_SAMPLE_RATE", "audio_input_sample_rate"),
            ("INPUT_REPEAT", "input_repeat"),
        ):
            val = _env_int(env, env_key)
            if val is not None:
                kwargs[field_name] = val

        fps = _env_float(env, "TARGET_FPS")
        if fps is not None:
            kwargs["target_fps"] = fps

        # Millisecond variables are converted to seconds.
        inactivity_ms = _env_float(env, "INACTIVITY_TIMEOUT_MS")
        if inactivity_ms is not None:
            kwargs["inactivity_timeout"] = inactivity_ms / 1000.0
        tick_ms = _env_float(env, "TICK_INTERVAL_MS")
        if tick_ms is not None:
            kwargs["tick_interval"] = tick_ms / 1000.0

        kwargs["mqtt_enabled"] = _env_bool(env.get("ENABLE_MQTT"), True)
        kwargs["retain_meta"] = _env_bool(env.get("MQTT_RETAIN_META"), False)
        kwargs["throttle_broker"] = _env_bool(env.get("MQTT_THROTTLE"), True)

        broker_overrides = overrides.pop("broker", None)
        if isinstance(broker_overrides, BrokerConfig):
            kwargs["broker"] = broker_overrides
        else:
            kwargs["broker"] = BrokerConfig.from_env(env, **(broker_overrides or {}))

        kwargs.update(overrides)
        return cls(**kwargs)


@dataclasses.dataclass(frozen=True)
class TallyConfig:
    """Tally host configuration.

    Parameters
    ----------
    size : int
        Number of vote slots (input ids ``0..size-1``).
    telemetry_interval : float
        Seconds between tally snapshot publishes.
    decision_interval : float
        Seconds between decisions.
    """

    host: str = "0.0.0.0"
    port: int = 3003
    size: int = const.TALLY_SIZE
    telemetry_interval: float = const.TELEMETRY_INTERVAL_S
    decision_interval: float = const.DECISION_INTERVAL_S
    broker: BrokerConfig = dataclasses.field(default_factory=BrokerConfig)

    def __post_init__(self) -> None:
        if self.size < 1:
            raise ConfigError(f"tally size must be >= 1, got {self.size}")
        if self.telemetry_interval <= 0 or self.decision_interval <= 0:
            raise ConfigError("tally intervals must be > 0")

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None, **overrides: Any) -> TallyConfig:
        """Create tally host configuration from ``INPUT_TALLY_*`` variables."""
        env = os.environ if env is None else env
        kwargs: dict[str, Any] = {}

        host = _env_str(env, "HOST")
        if host is not None:
            kwargs["host"] = host
        port = _env_int(env, "PORT")
        if port is not None:
            kwargs["port"] = port
        size = _env_int(env, "INPUT_TALLY_SIZE")
        if size is not None:
            kwargs["size"] = size

        telemetry_ms = _env_float(env, "INPUT_TALLY_LOG_INTERVAL_MS")
        if telemetry_ms is not None:
            kwargs["telemetry_interval"] = telemetry_ms / 1000.0
        decision_ms = _env_float(env, "INPUT_TALLY_COMMAND_INTERVAL_MS")
        if decision_ms is not None:
            kwargs["decision_interval"] = decision_ms / 1000.0

        broker_overrides = overrides.pop("broker", None)
        if isinstance(broker_overrides, BrokerConfig):
            kwargs["broker"] = broker_overrides
        else:
            kwargs["broker"] = BrokerConfig.from_env(env, **(broker_overrides or {}))

        kwargs.update(overrides)
        return cls(**kwargs)
