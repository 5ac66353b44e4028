import pytest
from pydantic import ValidationError

from hubclient.config import ClientSettings


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HUBCLIENT_CONFIG_FILE", str(tmp_path / "missing.yaml"))


def test_defaults():
    settings = ClientSettings()

    assert settings.transport == "websocket"
    assert settings.protocol == "amqp"
    assert settings.pooling_enabled is False
    assert settings.pool_size == 100
    assert settings.max_devices_per_connection == 995
    assert settings.devices_per_connection == 1
    assert settings.retry_max_retries == 0
    assert settings.retry_max_delay_seconds == 12 * 60 * 60
    assert settings.auto_reconnect is True


def test_pooling_requires_amqp():
    with pytest.raises(ValidationError):
        ClientSettings(pooling_enabled=True, protocol="mqtt")


def test_devices_per_connection_when_pooling():
    settings = ClientSettings(pooling_enabled=True, max_devices_per_connection=50)
    assert settings.devices_per_connection == 50


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("HUBCLIENT_POOL_SIZE", "7")
    monkeypatch.setenv("HUBCLIENT_LOG_LEVEL", "debug")

    settings = ClientSettings()

    assert settings.pool_size == 7
    assert settings.log_level == "DEBUG"


def test_yaml_file_is_loaded(monkeypatch, tmp_path):
    config = tmp_path / "client.yaml"
    config.write_text("transport: loopback\npooling_enabled: true\npool_size: 4\n", encoding="utf-8")
    monkeypatch.setenv("HUBCLIENT_CONFIG_FILE", str(config))

    settings = ClientSettings()

    assert settings.transport == "loopback"
    assert settings.pooling_enabled is True
    assert settings.pool_size == 4
    assert settings.config_path == config


def test_json_file_is_loaded(monkeypatch, tmp_path):
    config = tmp_path / "client.json"
    config.write_text('{"retry_max_retries": 5}', encoding="utf-8")
    monkeypatch.setenv("HUBCLIENT_CONFIG_FILE", str(config))

    assert ClientSettings().retry_max_retries == 5


def test_non_mapping_file_rejected(monkeypatch, tmp_path):
    config = tmp_path / "client.yaml"
    config.write_text("- just\n- a list\n", encoding="utf-8")
    monkeypatch.setenv("HUBCLIENT_CONFIG_FILE", str(config))

    with pytest.raises(ValueError):
        ClientSettings()
