"""
Entrypoint for the energy-meter history sync daemon.

Startup sequence:
1. Parse CLI flags and environment settings, configure JSON logging.
2. Load the layered YAML configuration (fatal on ConfigurationError).
3. Build the storage backend and one history client per device inside a
   SyncContext.
4. Retry the storage connectivity check until it passes, probe each device
   once, then start one independent sync loop per device.

SIGTERM/SIGINT request a graceful shutdown, also while startup is still
waiting for storage or probing devices: pending waits resolve, in-flight
requests are cancelled, and storage is closed. The process exits 0 on a
clean shutdown and 1 when storage fails to close or configuration is
invalid.

Structured JSON logging is used for all events.

CHANGELOG:
- 2026-03-09: Shutdown cancels an in-progress startup phase
- 2026-03-04: Add --config-dir/--env/--log-level flags (STORY-106)
- 2026-03-03: Replace poll/upload loops with per-device sync loops (STORY-108)
- 2026-02-14: Initial creation (STORY-014)

TODO:
- None
"""

from __future__ import annotations

import argparse
import asyncio
import hashlib
import json
import logging
import signal
import sys
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from pydantic import ValidationError

from emsync.src.config import AppSettings, InfluxV1Config, load_config
from emsync.src.context import SyncContext
from emsync.src.errors import ConfigurationError
from emsync.src.shelly import ShellyClient
from emsync.src.storage import create_storage

if TYPE_CHECKING:
    from emsync.src.config import SyncConfig

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


class JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def configure_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging for the daemon.

    Sets up the root logger with a JSON-formatted handler writing to stderr.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)


def _masked_token(value: str | None) -> str:
    """Return a short non-reversible token fingerprint for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


# ---------------------------------------------------------------------------
# Startup config logging
# ---------------------------------------------------------------------------


def log_config_summary(config: SyncConfig, settings: AppSettings) -> None:
    """Log a config summary at startup, excluding secrets.

    Device passwords and the InfluxDB password/token are only logged as
    fingerprints.
    """
    influx = config.influx
    if isinstance(influx, InfluxV1Config):
        target = (
            f"url={influx.base_url}, database={influx.database}, "
            f"username={influx.username}, password_masked={_masked_token(influx.password)}"
        )
    else:
        target = (
            f"url={influx.url}, org={influx.org}, bucket={influx.bucket}, "
            f"token_masked={_masked_token(influx.token)}"
        )
    logger.info(
        "History sync starting with config: app_env=%s, config_dir=%s, "
        "scrape_interval_s=%s, devices=%d, influx_version=%s, %s",
        settings.app_env,
        settings.config_dir,
        config.scrape_interval,
        len(config.shelly),
        influx.version,
        target,
    )
    for device in config.shelly:
        logger.info(
            "Device configured: host=%s, device_name=%s, measurement=%s, "
            "tags=%s, username=%s, password_masked=%s",
            device.host,
            device.device_name,
            device.measurement_name,
            device.tags,
            device.username,
            _masked_token(device.password),
        )


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------


async def run(context: SyncContext) -> bool:
    """Start syncing once storage is reachable and block until shutdown.

    Args:
        context: Fully built runtime context.

    Returns:
        True on a clean shutdown, False if closing storage failed.
    """
    startup = asyncio.create_task(context.startup(), name="startup")
    stopped = asyncio.create_task(context.shutdown_event.wait(), name="shutdown-wait")
    try:
        done, _ = await asyncio.wait(
            {startup, stopped}, return_when=asyncio.FIRST_COMPLETED
        )
        if startup in done:
            startup.result()
            await stopped
        else:
            # Abort in-flight storage and device status checks
            logger.info("Shutdown requested during startup, aborting startup")
            startup.cancel()
            await asyncio.wait({startup})
    finally:
        stopped.cancel()
    return await context.shutdown()


def build_context(config: SyncConfig) -> SyncContext:
    """Create storage and device clients for *config*."""
    storage = create_storage(config.influx)
    clients = [ShellyClient(device) for device in config.shelly]
    return SyncContext(
        storage=storage,
        clients=clients,
        interval_s=config.scrape_interval,
    )


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    p = argparse.ArgumentParser(
        description="Sync Shelly energy-meter history into InfluxDB"
    )
    p.add_argument(
        "--config-dir", dest="config_dir",
        help="Directory containing default.yaml and <env>.yaml (env: CONFIG_DIR)",
    )
    p.add_argument(
        "--env", dest="app_env",
        help="Environment name selecting <env>.yaml (env: APP_ENV)",
    )
    p.add_argument(
        "--log-level", dest="log_level",
        help="Log level, e.g. DEBUG or INFO (env: LOG_LEVEL)",
    )
    return p.parse_args(argv)


def load_settings(args: argparse.Namespace) -> AppSettings:
    """Build AppSettings from the environment, overridden by CLI flags.

    Raises:
        ConfigurationError: If a setting is invalid.
    """
    overrides = {
        key: value
        for key, value in vars(args).items()
        if key in ("config_dir", "app_env", "log_level") and value is not None
    }
    try:
        return AppSettings(**overrides)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid settings: {exc}") from exc


async def async_main(argv: Sequence[str] | None = None) -> int:
    """Async entrypoint: load config, build components, run until shutdown.

    Sets up SIGTERM/SIGINT handlers to trigger graceful shutdown.

    Returns:
        The process exit code.
    """
    configure_logging()
    args = parse_args(argv)

    try:
        settings = load_settings(args)
        logging.getLogger().setLevel(settings.log_level)
        config = load_config(settings.config_dir, settings.app_env)
    except ConfigurationError as exc:
        logger.error("Configuration Error: %s", exc)
        return 1

    log_config_summary(config, settings)
    context = build_context(config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, context.request_shutdown)

    return 0 if await run(context) else 1


def main() -> None:
    """Synchronous entrypoint for the sync daemon."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
