from __future__ import annotations

import pytest

from crowdplay.config import BrokerConfig, StreamConfig, TallyConfig, parse_broker_url
from crowdplay.exceptions import ConfigError


class TestBrokerConfig:
    def test_defaults(self) -> None:
        config = BrokerConfig.from_env({})
        assert config.host == "localhost"
        assert config.effective_port == 1883
        assert config.prefix == "serverboy"
        assert not config.use_tls

    def test_url_takes_precedence(self) -> None:
        config = BrokerConfig.from_env(
            {"MQTT_URL": "wss://broker.example:8884/mqtt", "MQTT_HOST": "ignored", "MQTT_PORT": "1"}
        )
        assert config.protocol == "wss"
        assert config.host == "broker.example"
        assert config.port == 8884
        assert config.use_tls and config.use_websockets

    def test_tls_default_port(self) -> None:
        config = BrokerConfig.from_env({"MQTT_PROTOCOL": "MQTTS", "MQTT_HOST": "b"})
        assert config.effective_port == 8883

    def test_prefix_trailing_slash_is_stripped(self) -> None:
        assert BrokerConfig.from_env({"MQTT_PREFIX": "arcade/"}).prefix == "arcade"

    def test_overrides_win(self) -> None:
        config = BrokerConfig.from_env({"MQTT_HOST": "env-host"}, host="override")
        assert config.host == "override"

    def test_unknown_protocol(self) -> None:
        with pytest.raises(ConfigError):
            BrokerConfig(protocol="amqp")

    def test_bad_port(self) -> None:
        with pytest.raises(ConfigError):
            BrokerConfig.from_env({"MQTT_PORT": "eighteen"})


def test_parse_broker_url_without_port() -> None:
    assert parse_broker_url("mqtt://broker") == ("mqtt", "broker", None)
    assert parse_broker_url("broker:1884") == ("mqtt", "broker", 1884)


class TestStreamConfig:
    def test_defaults(self) -> None:
        config = StreamConfig.from_env({})
        assert config.port == 3002
        assert config.target_fps == 30.0
        assert config.inactivity_timeout == 0.0
        assert config.skip_factor == 2
        assert config.frame_size == 160 * 144 * 4
        assert config.mqtt_enabled
        assert not config.retain_meta

    def test_millisecond_variables_become_seconds(self) -> None:
        config = StreamConfig.from_env({"INACTIVITY_TIMEOUT_MS": "1500", "TICK_INTERVAL_MS": "10"})
        assert config.inactivity_timeout == 1.5
        assert config.tick_interval == 0.01

    def test_flags(self) -> None:
        config = StreamConfig.from_env(
            {"ENABLE_MQTT": "false", "MQTT_RETAIN_META": "1", "MQTT_THROTTLE": "off"}
        )
        assert not config.mqtt_enabled
        assert config.retain_meta
        assert not config.throttle_broker

    def test_broker_override_dict(self) -> None:
        config = StreamConfig.from_env({}, broker={"host": "b", "prefix": "p"})
        assert config.broker.host == "b"
        assert config.broker.prefix == "p"

    def test_invalid_number(self) -> None:
        with pytest.raises(ConfigError):
            StreamConfig.from_env({"TARGET_FPS": "fast"})

    def test_invalid_skip_factor(self) -> None:
        with pytest.raises(ConfigError):
            StreamConfig(skip_factor=0)


class TestTallyConfig:
    def test_defaults(self) -> None:
        config = TallyConfig.from_env({})
        assert config.size == 8
        assert config.telemetry_interval == 10.0
        assert config.decision_interval == 1.0

    def test_env(self) -> None:
        config = TallyConfig.from_env(
            {
                "INPUT_TALLY_SIZE": "4",
                "INPUT_TALLY_LOG_INTERVAL_MS": "500",
                "INPUT_TALLY_COMMAND_INTERVAL_MS": "250",
                "PORT": "4000",
            }
        )
        assert config.size == 4
        assert config.telemetry_interval == 0.5
        assert config.decision_interval == 0.25
        assert config.port == 4000

    def test_zero_size_rejected(self) -> None:
        with pytest.raises(ConfigError):
            TallyConfig.from_env({"INPUT_TALLY_SIZE": "0"})
