"""
Per-device retry scheduler with exponential backoff.

Each configured device runs its own device_sync_loop task:

    Idle -> Running (one sync cycle) -> Waiting -> Idle -> ...

- On success the failure counter resets and the loop waits the base
  scrape interval.
- On failure (including unexpected exceptions, which are logged and
  counted) the counter increments and the wait grows as
  ``min(base * 2**failures, max_backoff_s)``.
- The wait is released immediately when the shutdown event is set, after
  which no new cycle starts.

Loops share nothing but the storage backend, so a failing device never
delays the others. Cycles of one device never overlap.

CHANGELOG:
- 2026-03-03: Move backoff from the Modbus poller into a per-device loop (STORY-108)
- 2026-02-14: Initial creation (STORY-014)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

from emsync.src.sync import sync_device

if TYPE_CHECKING:
    from emsync.src.shelly import ShellyClient
    from emsync.src.storage import StorageBackend

logger = logging.getLogger(__name__)

MAX_BACKOFF_S: float = 900.0
"""Maximum wait in seconds after consecutive failures (15 minutes)."""


def compute_wait(
    failures: int,
    base_interval_s: float,
    max_backoff_s: float = MAX_BACKOFF_S,
) -> float:
    """Return the wait before the next cycle.

    Args:
        failures: Consecutive failed cycles (0 after a success).
        base_interval_s: Scrape interval used after a success.
        max_backoff_s: Cap for the exponential backoff.

    Returns:
        ``base_interval_s`` when *failures* is 0, otherwise
        ``min(base_interval_s * 2**failures, max_backoff_s)``.
    """
    if failures <= 0:
        return base_interval_s
    return min(base_interval_s * 2**failures, max_backoff_s)


async def _sync_once(*, client: ShellyClient, storage: StorageBackend) -> bool:
    """Run one cycle; unexpected exceptions count as a failed cycle."""
    try:
        result = await sync_device(client=client, storage=storage)
    except Exception:
        logger.error(
            "Unexpected error for device=%s",
            client.device.device_name,
            exc_info=True,
        )
        return False
    return bool(result)


async def device_sync_loop(
    *,
    client: ShellyClient,
    storage: StorageBackend,
    interval_s: float,
    shutdown_event: asyncio.Event,
    max_backoff_s: float = MAX_BACKOFF_S,
) -> None:
    """Sync one device forever, until *shutdown_event* is set.

    Args:
        client: History client for the device.
        storage: Shared storage backend.
        interval_s: Base scrape interval in seconds.
        shutdown_event: Event to signal graceful shutdown.
        max_backoff_s: Cap for the failure backoff.
    """
    device_name = client.device.device_name
    failures = 0
    logger.info("Sync loop started for device=%s (interval=%ss)", device_name, interval_s)

    while not shutdown_event.is_set():
        if await _sync_once(client=client, storage=storage):
            failures = 0
        else:
            failures += 1

        wait_s = compute_wait(failures, interval_s, max_backoff_s)
        if failures > 0:
            logger.warning(
                "Device %s: %d consecutive failures, waiting %.0fs before retry",
                device_name,
                failures,
                wait_s,
            )
        else:
            logger.debug("Device %s: next sync in %.0fs", device_name, wait_s)

        # Use wait with timeout so shutdown releases the wait immediately
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=wait_s)

    logger.info("Sync loop stopped for device=%s", device_name)
