"""Application configuration for the versioned proxy service."""

from __future__ import annotations

from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class ProxySettings(BaseSettings):
    """Runtime settings for the proxy, read from ``CRA_PROXY_*`` variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    source: str = env_field(..., "CRA_PROXY_SOURCE")
    cache_dir: Path = env_field(Path("./cache"), "CRA_PROXY_CACHE_DIR")
    bind: str = env_field(":8080", "CRA_PROXY_BIND")
    default_version: Optional[str] = env_field(None, "CRA_PROXY_DEFAULT_VERSION")
    default_version_file: str = env_field("default-version.txt", "CRA_PROXY_DEFAULT_VERSION_FILE")
    default_version_interval_seconds: float = env_field(60.0, "CRA_PROXY_DEFAULT_VERSION_INTERVAL")
    default_version_retry_seconds: float = env_field(5.0, "CRA_PROXY_DEFAULT_VERSION_RETRY")
    origin_timeout_seconds: float = env_field(10.0, "CRA_PROXY_ORIGIN_TIMEOUT")
    cookie_ttl_seconds: int = env_field(3600, "CRA_PROXY_COOKIE_TTL")
    serialize_fetches: bool = env_field(True, "CRA_PROXY_SERIALIZE_FETCHES")
    dev_paths_file: Optional[Path] = env_field(None, "CRA_PROXY_DEV_PATHS")
    dev_proxy_timeout_seconds: float = env_field(60.0, "CRA_PROXY_DEV_PROXY_TIMEOUT")
    metrics_token: Optional[SecretStr] = env_field(None, "CRA_PROXY_METRICS_TOKEN")
    log_level: str = env_field("INFO", "CRA_PROXY_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "CRA_PROXY_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "CRA_PROXY_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "CRA_PROXY_OTEL_SAMPLER_RATIO")

    @field_validator("source", mode="after")
    @classmethod
    def _validate_source(cls, value: str) -> str:
        parts = urlsplit(value.strip())
        if parts.scheme not in {"http", "https"} or not parts.netloc:
            raise ValueError(f"Invalid origin url: {value!r}")
        return value.strip().rstrip("/")

    @field_validator("default_version", mode="before")
    @classmethod
    def _blank_default_version(cls, value):
        # An empty variable means "poll the origin", same as an unset one.
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("dev_paths_file", mode="before")
    @classmethod
    def _blank_dev_paths(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def bind_address(self) -> tuple[str, int]:
        """Split ``bind`` into host and port; an empty host listens everywhere."""
        host, sep, port = self.bind.rpartition(":")
        if not sep or not port.isdigit():
            raise ValueError(f"Invalid bind address: {self.bind!r}")
        return (host.strip("[]") or "0.0.0.0"), int(port)
