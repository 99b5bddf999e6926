"""
Single sync cycle for one device: watermark -> stream pages -> write.

Steps of a cycle:
1. Read the resume watermark (last stored timestamp) for the device. A read
   failure aborts the cycle without fetching; it is never treated as
   "no data", which would re-scrape the device's whole history.
2. Resume at watermark + 1 (or 0 on a cold start, with a warning).
3. Stream history pages from the device; each page is converted to points
   and written immediately, so earlier pages stay durable when a later page
   fails.
4. Any device or storage error aborts the rest of the cycle and reports a
   failed result. A cycle with no new data is a success.

Shutdown cancellation (asyncio.CancelledError) is always re-raised.

CHANGELOG:
- 2026-03-09: Always tag points with device_name; close the page stream on errors
- 2026-03-03: Initial creation (STORY-107)

TODO:
- None
"""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from emsync.src.errors import StorageError, TransportError
from emsync.src.models import iso_ts
from emsync.src.points import to_points

if TYPE_CHECKING:
    from emsync.src.shelly import ShellyClient
    from emsync.src.storage import StorageBackend

logger = logging.getLogger(__name__)

COLD_START_THRESHOLD: int = 10
"""Resume points below this value mean the full device history is scraped."""


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one sync cycle.

    Attributes:
        ok: True when the cycle completed (with or without new data).
        points_written: Number of points persisted during the cycle.
    """

    ok: bool
    points_written: int = 0

    def __bool__(self) -> bool:
        return self.ok


def resume_point(watermark: int | None) -> int:
    """Return the first timestamp to fetch after *watermark*.

    The watermark itself is already stored, so fetching resumes one second
    later. Without a watermark the whole device history is requested.
    """
    if watermark is None:
        return 0
    return watermark + 1


async def sync_device(
    *,
    client: ShellyClient,
    storage: StorageBackend,
) -> SyncResult:
    """Run one sync cycle for the device behind *client*.

    Args:
        client: History client for the device.
        storage: Backend receiving the points and providing the watermark.

    Returns:
        A SyncResult; ``bool(result)`` is the cycle outcome.
    """
    device = client.device
    measurement = device.measurement_name
    device_name = device.device_name

    try:
        watermark = await storage.get_last_timestamp(measurement, device_name)
    except StorageError:
        logger.error(
            "Failed to read last timestamp for device=%s (measurement=%s)",
            device_name,
            measurement,
            exc_info=True,
        )
        return SyncResult(ok=False)

    start = resume_point(watermark)
    logger.debug(
        "Last timestamp for device=%s measurement=%s: %s",
        device_name,
        measurement,
        watermark,
    )
    if start < COLD_START_THRESHOLD:
        logger.warning(
            "Initial scrape for device=%s - this could take a while...",
            device_name,
        )

    # The watermark query filters on device_name, so every point must carry it
    tags = {"device_name": device_name, **device.tags}
    total_points = 0
    try:
        async with contextlib.aclosing(client.iter_history_pages(start)) as pages:
            async for rows in pages:
                points = to_points(rows, measurement, tags)
                await storage.write_points(points)
                total_points += len(points)
                logger.info(
                    "Wrote %d points from device=%s to %s from %s to %s",
                    len(points),
                    device_name,
                    measurement,
                    iso_ts(rows[0].timestamp),
                    iso_ts(rows[-1].timestamp),
                )
    except (TransportError, StorageError) as exc:
        logger.error(
            "Sync failed for device=%s after %d points: %s",
            device_name,
            total_points,
            exc,
        )
        return SyncResult(ok=False, points_written=total_points)

    if total_points == 0:
        logger.warning("No new history data from device=%s", device_name)

    return SyncResult(ok=True, points_written=total_points)
