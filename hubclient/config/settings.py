"""Client configuration loading and validation."""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, ClassVar, Dict, Iterable, Literal

import yaml
from pydantic import AnyUrl, Field, PositiveInt, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_LOCATIONS: tuple[Path, ...] = (
    Path("/etc/hubclient/client.yaml"),
    Path("/etc/hubclient/client.yml"),
    Path("./config/hubclient.yaml"),
    Path("./config/hubclient.yml"),
)


class ClientSettings(BaseSettings):
    """Validated settings for device pipelines and the connection pool."""

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_prefix="HUBCLIENT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Transport
    transport: Literal["loopback", "websocket"] = Field(
        default="websocket",
        description="Protocol transport implementation carrying the frames.",
    )
    protocol: Literal["amqp", "mqtt", "http"] = Field(
        default="amqp",
        description="Hub protocol variant negotiated over the transport.",
    )
    hub_ws_url: AnyUrl | None = Field(
        default=None,
        description="WebSocket endpoint; derived from the identity hostname when unset.",
    )
    idle_timeout_seconds: PositiveInt = Field(
        default=120,
        description="Keep-alive interval agreed with the hub before the connection is considered dead.",
    )
    operation_timeout_seconds: float = Field(
        default=240.0,
        description="Upper bound applied to a single operation when the caller passes no cancellation token.",
    )
    receive_queue_max: int = Field(
        default=0,
        description="Per-link inbound buffer size (0 = unbounded).",
    )

    # Pooling
    pooling_enabled: bool = Field(
        default=False,
        description="Share physical connections across device identities.",
    )
    pool_size: PositiveInt = Field(
        default=100,
        description="Maximum number of physical connections when pooling is enabled.",
    )
    max_devices_per_connection: PositiveInt = Field(
        default=995,
        description="Maximum device sessions multiplexed onto one pooled connection.",
    )

    # Retry
    retry_max_retries: int = Field(
        default=0,
        ge=0,
        description="Attempts allowed by the default retry policy (0 = unlimited).",
    )
    retry_max_delay_seconds: float = Field(
        default=12 * 60 * 60,
        gt=0,
        description="Upper bound on a single retry delay.",
    )
    retry_use_jitter: bool = Field(
        default=True,
        description="Randomise retry delays by +/-5%.",
    )
    auto_reconnect: bool = Field(
        default=True,
        description="Re-open the pipeline after an unsolicited connection loss.",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Minimum log level for the client process.",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        if isinstance(value, str):
            return value.upper()
        return value

    @model_validator(mode="after")
    def _check_pooling(self) -> "ClientSettings":
        if self.pooling_enabled and self.protocol != "amqp":
            raise ValueError("Connection pooling is only supported over amqp")
        return self

    config_path: Path | None = Field(
        default=None,
        description="Resolved path to the on-disk config that seeded the settings.",
        exclude=True,
    )

    @property
    def devices_per_connection(self) -> int:
        return self.max_devices_per_connection if self.pooling_enabled else 1

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[ClientSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            cls._yaml_settings_source,
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )

    @staticmethod
    def _yaml_settings_source(settings_cls: type[ClientSettings] | None = None) -> Dict[str, Any]:
        for path in ClientSettings._resolve_candidate_paths():
            data = ClientSettings._load_file(path)
            if data is not None:
                data.setdefault("config_path", path)
                return data
        return {}

    @staticmethod
    def _resolve_candidate_paths() -> Iterable[Path]:
        explicit = os.getenv("HUBCLIENT_CONFIG_FILE")
        if explicit:
            yield Path(explicit).expanduser()
        yield from DEFAULT_CONFIG_LOCATIONS

    @staticmethod
    def _load_file(path: Path) -> Dict[str, Any] | None:
        if not path.is_file():
            return None
        suffix = path.suffix.lower()
        try:
            with path.open("r", encoding="utf-8") as handle:
                if suffix in {".yaml", ".yml"}:
                    raw = yaml.safe_load(handle)
                elif suffix == ".json":
                    raw = json.load(handle)
                else:
                    return None
        except OSError as exc:
            raise RuntimeError(f"Failed to read client config file {path}") from exc
        except (yaml.YAMLError, json.JSONDecodeError) as exc:
            raise ValueError(f"Invalid client config file {path}") from exc

        if raw is None:
            return {}
        if not isinstance(raw, dict):
            raise ValueError(f"Client config file {path} must contain a mapping at top level.")
        return raw


@lru_cache()
def get_settings() -> ClientSettings:
    """Return memoized client settings."""

    return ClientSettings()
