"""
Map decoded HistoryRows onto InfluxDB StoragePoints.

One point per row, in input order: the row timestamp becomes the point
timestamp, the row fields become the point fields, and the device's tag set
is applied to every point.

CHANGELOG:
- 2026-03-02: Initial creation (STORY-104)

TODO:
- None
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence

from emsync.src.models import HistoryRow, StoragePoint


def to_points(
    rows: Sequence[HistoryRow],
    measurement: str,
    tags: Mapping[str, str],
) -> list[StoragePoint]:
    """Convert *rows* into storage points for *measurement*.

    Args:
        rows: Decoded history rows of one page.
        measurement: Target measurement name.
        tags: Device tag set, applied uniformly.

    Returns:
        A list with exactly ``len(rows)`` points, order preserved.
    """
    tag_set = dict(tags)
    return [
        StoragePoint(
            measurement=measurement,
            fields=dict(row.fields),
            tags=tag_set,
            timestamp=row.timestamp,
        )
        for row in rows
    ]
