"""
Runtime context shared by the startup sequence and every device task.

SyncContext replaces module-level globals: it owns the storage backend, the
per-device history clients, the shutdown event and the device tasks.

Lifecycle:
1. wait_for_storage(): retry the storage connectivity check with a fixed
   delay until it passes (or shutdown is requested).
2. probe_devices(): log each device's reachability (informational only).
3. start(): spawn one device_sync_loop task per device.
   startup() runs steps 1-3 as one cancellable unit.
4. request_shutdown(): set the shutdown event (signal handler).
5. shutdown(): cancel device tasks (aborting in-flight requests), await
   them, close device clients and finally close storage.

CHANGELOG:
- 2026-03-09: Add startup() so the whole startup phase can be cancelled
- 2026-03-03: Initial creation (STORY-108)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING

from emsync.src.scheduler import MAX_BACKOFF_S, device_sync_loop

if TYPE_CHECKING:
    from emsync.src.shelly import ShellyClient
    from emsync.src.storage import StorageBackend

logger = logging.getLogger(__name__)

STARTUP_RETRY_DELAY_S: float = 10.0
"""Fixed delay between storage connectivity attempts at startup."""


class SyncContext:
    """Owns every long-lived resource of the daemon.

    Args:
        storage: Storage backend shared by all device tasks.
        clients: One history client per configured device.
        interval_s: Base scrape interval in seconds.
        max_backoff_s: Cap for per-device failure backoff.
    """

    def __init__(
        self,
        *,
        storage: StorageBackend,
        clients: Sequence[ShellyClient],
        interval_s: float,
        max_backoff_s: float = MAX_BACKOFF_S,
    ) -> None:
        self.storage = storage
        self.clients = list(clients)
        self.interval_s = interval_s
        self.max_backoff_s = max_backoff_s
        self.shutdown_event = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def tasks(self) -> list[asyncio.Task[None]]:
        """Device tasks started by start()."""
        return list(self._tasks)

    def request_shutdown(self) -> None:
        """Signal every loop and pending wait to stop."""
        if not self.shutdown_event.is_set():
            logger.info("Received shutdown signal, initiating graceful shutdown")
        self.shutdown_event.set()

    async def _sleep(self, seconds: float) -> None:
        """Sleep for *seconds* or until shutdown is requested."""
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self.shutdown_event.wait(), timeout=seconds)

    async def wait_for_storage(
        self,
        retry_delay_s: float = STARTUP_RETRY_DELAY_S,
    ) -> bool:
        """Retry the storage connectivity check until it succeeds.

        Returns:
            True once storage is reachable, False if shutdown was requested
            first.
        """
        while not self.shutdown_event.is_set():
            try:
                await self.storage.test_connection()
            except Exception as exc:
                logger.error("InfluxDB: %s", exc)
                logger.info("Retrying InfluxDB connection in %.0f seconds...", retry_delay_s)
                await self._sleep(retry_delay_s)
                continue
            logger.info("InfluxDB connection successful")
            return True
        return False

    async def probe_devices(self) -> None:
        """Log whether each device answers its status probe."""
        for client in self.clients:
            device = client.device
            if await client.test_connection():
                logger.info("Device %s (%s) is reachable", device.device_name, device.host)
            else:
                logger.warning(
                    "Device %s (%s) is not reachable yet, its sync loop will retry",
                    device.device_name,
                    device.host,
                )

    async def startup(self) -> None:
        """Wait for storage, probe every device, then start the sync loops."""
        if await self.wait_for_storage():
            await self.probe_devices()
            self.start()

    def start(self) -> None:
        """Start one independent sync loop per device."""
        logger.info(
            "Starting %d sync loops with interval of %s seconds",
            len(self.clients),
            self.interval_s,
        )
        for client in self.clients:
            task = asyncio.create_task(
                device_sync_loop(
                    client=client,
                    storage=self.storage,
                    interval_s=self.interval_s,
                    shutdown_event=self.shutdown_event,
                    max_backoff_s=self.max_backoff_s,
                ),
                name=f"sync:{client.device.device_name}",
            )
            self._tasks.append(task)

    async def shutdown(self) -> bool:
        """Stop all device tasks, then close clients and storage.

        Returns:
            True when storage closed cleanly, False otherwise.
        """
        logger.info("Shutting down...")
        self.request_shutdown()

        for task in self._tasks:
            task.cancel()
        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        for task, result in zip(self._tasks, results):
            if isinstance(result, Exception):
                logger.error(
                    "Task %s ended with an error: %r", task.get_name(), result
                )
        self._tasks.clear()

        for client in self.clients:
            try:
                await client.close()
            except Exception:
                logger.warning(
                    "Failed to close client for %s", client.device.host, exc_info=True
                )

        try:
            await self.storage.close()
        except Exception:
            logger.error("Error during shutdown", exc_info=True)
            return False

        logger.info("Successfully closed all connections")
        return True
