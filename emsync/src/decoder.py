"""
Pure decoder that expands an EMData page into per-sample HistoryRows.

A page contains one or more time buckets ``{ts, period, values}``. Every row
of ``values`` is one sample taken at ``ts + index * period``; the page-level
``keys`` list names the columns positionally. Columns missing from a row, or
holding a non-numeric value, are simply left out of that row.

For three-phase meters the device reports per-phase energy counters
(``a_total_act_energy``, ``b_...``, ``c_...``). When all three phases of a
counter are present the decoder injects the combined counter
(``total_act_energy`` / ``total_act_ret_energy``), which is also the field the
resume watermark is queried on.

This is a pure function: no side effects, no I/O, no clock.

CHANGELOG:
- 2026-03-02: Replace Modbus register normalizer with EMData decoder (STORY-103)
- 2026-02-14: Initial creation (STORY-004)

TODO:
- None
"""

from __future__ import annotations

import logging

from emsync.src.models import HistoryRow, RawPageResponse

logger = logging.getLogger(__name__)

PHASES: tuple[str, ...] = ("a", "b", "c")
"""Phase prefixes summed into a combined counter."""

PHASE_TOTALS: tuple[str, ...] = ("total_act_energy", "total_act_ret_energy")
"""Counter suffixes for which a combined all-phase field is computed."""


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _add_phase_totals(fields: dict[str, float]) -> None:
    """Inject combined counters in place when every phase is present."""
    for suffix in PHASE_TOTALS:
        parts = [fields.get(f"{phase}_{suffix}") for phase in PHASES]
        if all(_is_number(part) for part in parts):
            fields[suffix] = sum(parts)  # type: ignore[arg-type]


def decode_page(response: RawPageResponse) -> list[HistoryRow]:
    """Expand every bucket of *response* into ordered HistoryRows.

    Args:
        response: A validated page as returned by the device.

    Returns:
        One row per value row across all buckets, in device order.
    """
    keys = response.keys
    rows: list[HistoryRow] = []

    for bucket in response.data:
        for index, values in enumerate(bucket.values):
            fields: dict[str, float] = {}
            for key, value in zip(keys, values):
                if _is_number(value):
                    fields[key] = value  # type: ignore[assignment]
            _add_phase_totals(fields)
            rows.append(
                HistoryRow(timestamp=bucket.ts + index * bucket.period, fields=fields)
            )

    logger.debug(
        "Decoded %d rows from %d buckets (%d keys)",
        len(rows),
        len(response.data),
        len(keys),
    )
    return rows
