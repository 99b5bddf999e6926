"""
Configuration for the history sync daemon.

Two layers:

- AppSettings (pydantic BaseSettings): process-level values read from
  environment variables or a ``.env`` file: which environment to run
  (APP_ENV), where the YAML files live (CONFIG_DIR) and the log level
  (LOG_LEVEL). Command-line flags override these in main.py.
- SyncConfig (pydantic BaseModel): the device list, the InfluxDB backend
  and the scrape interval, loaded from ``{config_dir}/default.yaml`` merged
  with ``{config_dir}/{app_env}.yaml`` (top-level keys of the environment
  file win). Missing files are skipped.

Every problem (unreadable YAML, schema violation, no configuration at all)
is raised as ConfigurationError, which is fatal at startup.

Example ``config/default.yaml``::

    scrapeInterval: 300
    shelly:
      - host: 192.168.1.50
        tags: device_name=house,location=basement
    influx:
      version: 2
      url: http://influxdb:8086
      token: my-token
      org: home
      bucket: energy

CHANGELOG:
- 2026-03-04: Load device/backend config from layered YAML files (STORY-106)
- 2026-03-02: Replace EdgeSettings with AppSettings (STORY-102)
- 2026-02-14: Initial creation (STORY-001)

TODO:
- None
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated, Any, Literal

import yaml
from pydantic import (
    AnyHttpUrl,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings

from emsync.src.errors import ConfigurationError
from emsync.src.models import DeviceEndpoint

logger = logging.getLogger(__name__)

MIN_SCRAPE_INTERVAL_S = 60
"""Lower bound for the scrape interval; the meters only store minute data."""


# ---------------------------------------------------------------------------
# Process settings (environment)
# ---------------------------------------------------------------------------


class AppSettings(BaseSettings):
    """Process-level settings loaded from environment variables.

    Attributes:
        app_env: Environment name; selects ``{app_env}.yaml``.
        config_dir: Directory holding the YAML configuration files.
        log_level: Root log level name.
    """

    app_env: str = "development"
    config_dir: str = "config"
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def log_level_must_be_known(cls, v: str) -> str:
        """Validate the log level is a standard logging level name."""
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"LOG_LEVEL must be a logging level name (got: '{v}')")
        return level

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


# ---------------------------------------------------------------------------
# InfluxDB backends
# ---------------------------------------------------------------------------


class InfluxV1Config(BaseModel):
    """InfluxDB 1.x connection parameters.

    Attributes:
        host: Hostname, or a full ``http(s)://host:port`` base URL.
        port: HTTP API port, used when ``host`` carries no scheme.
        database: Target database. Must exist.
        username: Optional user; requires ``password``.
        password: Optional password; requires ``username``.
    """

    version: Literal[1]
    host: str = Field(min_length=1)
    port: int = 8086
    database: str = Field(min_length=1)
    username: str | None = None
    password: str | None = None

    @field_validator("port")
    @classmethod
    def port_must_be_valid(cls, v: int) -> int:
        """Validate the HTTP port is in valid range."""
        if v < 1 or v > 65535:
            raise ValueError("influx.port must be between 1 and 65535")
        return v

    @model_validator(mode="after")
    def _credentials_come_in_pairs(self) -> InfluxV1Config:
        if self.username and not self.password:
            raise ValueError("InfluxDB v1 password is required when username is set")
        if self.password and not self.username:
            raise ValueError("InfluxDB v1 username is required when password is set")
        return self

    @property
    def base_url(self) -> str:
        """HTTP API base URL."""
        if "://" in self.host:
            return self.host.rstrip("/")
        return f"http://{self.host}:{self.port}"


class InfluxV2Config(BaseModel):
    """InfluxDB 2.x connection parameters."""

    version: Literal[2]
    url: AnyHttpUrl
    token: str = Field(min_length=1)
    org: str = Field(min_length=1)
    bucket: str = Field(min_length=1)


InfluxConfig = Annotated[InfluxV1Config | InfluxV2Config, Field(discriminator="version")]
"""Backend configuration, selected by its ``version`` key."""


# ---------------------------------------------------------------------------
# Sync configuration (YAML)
# ---------------------------------------------------------------------------


class SyncConfig(BaseModel):
    """Validated daemon configuration.

    Attributes:
        shelly: Devices to sync, at least one.
        influx: Storage backend parameters.
        scrape_interval: Seconds between successful sync cycles (``scrapeInterval``
            in YAML), at least MIN_SCRAPE_INTERVAL_S.
    """

    model_config = ConfigDict(populate_by_name=True)

    shelly: list[DeviceEndpoint] = Field(min_length=1)
    influx: InfluxConfig
    scrape_interval: int = Field(alias="scrapeInterval")

    @field_validator("scrape_interval")
    @classmethod
    def scrape_interval_must_be_at_least_a_minute(cls, v: int) -> int:
        """Validate the scrape interval respects the minute resolution of the meters."""
        if v < MIN_SCRAPE_INTERVAL_S:
            raise ValueError(
                f"scrapeInterval must be at least {MIN_SCRAPE_INTERVAL_S} seconds"
            )
        return v


def _load_yaml_file(path: Path) -> dict[str, Any]:
    """Read one YAML mapping, or an empty dict if *path* does not exist."""
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Failed to load config from {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    logger.info("Loaded configuration from %s", path)
    return data


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"])
        parts.append(f"{location}: {error['msg']}" if location else error["msg"])
    return "; ".join(parts)


def load_config(config_dir: str | Path, app_env: str) -> SyncConfig:
    """Load and validate the layered YAML configuration.

    Args:
        config_dir: Directory containing ``default.yaml`` and/or
            ``{app_env}.yaml``.
        app_env: Environment name selecting the override file.

    Returns:
        The validated configuration.

    Raises:
        ConfigurationError: If no file is found, a file cannot be parsed,
            or the merged configuration is invalid.
    """
    directory = Path(config_dir)
    default_config = _load_yaml_file(directory / "default.yaml")
    env_config = _load_yaml_file(directory / f"{app_env}.yaml")

    merged = {**default_config, **env_config}
    if not merged:
        raise ConfigurationError(
            f"No configuration found in {directory} (default.yaml, {app_env}.yaml)"
        )

    try:
        config = SyncConfig.model_validate(merged)
    except ValidationError as exc:
        raise ConfigurationError(
            f"Invalid configuration: {_format_validation_error(exc)}"
        ) from exc

    logger.info("Configuration is valid (%d devices)", len(config.shelly))
    return config
