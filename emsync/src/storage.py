"""
InfluxDB storage backends for energy history points.

The sync pipeline depends only on the StorageBackend protocol:

- write_points(points): persist a page of points (idempotent on timestamp).
- get_last_timestamp(measurement, device_name): resume watermark, or None
  when nothing has been stored yet for that device.
- test_connection(): raise StorageError unless the target database/bucket
  is reachable and exists.
- query(q): run a backend-native query and return rows as dicts.
- close(): release connections.

Two independent implementations, selected by create_storage() from the
``version`` of the configuration:

- InfluxV1Storage: InfluxDB 1.x HTTP API (InfluxQL + line protocol) over
  httpx.AsyncClient.
- InfluxV2Storage: InfluxDB 2.x via influxdb_client (Flux + synchronous
  write API). The client is blocking, so every call is offloaded with
  asyncio.to_thread.

All timestamps are unix seconds. Every backend failure surfaces as
StorageError.

CHANGELOG:
- 2026-03-06: Escape identifiers and literals in watermark queries
- 2026-03-03: Replace VPS uploader with InfluxDB backends (STORY-105)
- 2026-02-14: Initial creation (STORY-006)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

import httpx
from influxdb_client import InfluxDBClient, Point, WritePrecision
from influxdb_client.client.write_api import SYNCHRONOUS

from emsync.src.config import InfluxV1Config, InfluxV2Config
from emsync.src.errors import StorageError

if TYPE_CHECKING:
    from emsync.src.models import StoragePoint

logger = logging.getLogger(__name__)

T = TypeVar("T")

REQUEST_TIMEOUT_S: float = 15.0
"""Timeout per InfluxDB request in seconds."""

WATERMARK_FIELD = "total_act_energy"
"""Field whose latest timestamp is the resume watermark."""

WATERMARK_TAG = "device_name"
"""Tag that scopes the watermark to one device."""

WATERMARK_LOOKBACK = "-61d"
"""Flux range start for the v2 watermark query."""


class StorageBackend(Protocol):
    """Contract the sync pipeline requires from a storage backend."""

    async def query(self, query: str) -> list[dict[str, Any]]: ...

    async def write_points(self, points: Sequence[StoragePoint]) -> None: ...

    async def get_last_timestamp(
        self, measurement: str, device_name: str
    ) -> int | None: ...

    async def test_connection(self) -> None: ...

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def flux_str(value: str) -> str:
    """Quote *value* as a Flux string literal."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def influxql_ident(value: str) -> str:
    """Quote *value* as an InfluxQL identifier."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def influxql_str(value: str) -> str:
    """Quote *value* as an InfluxQL string literal."""
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def to_influx_point(point: StoragePoint) -> Point | None:
    """Build an influxdb_client Point, or None if *point* has no fields."""
    if not point.fields:
        return None
    influx_point = Point(point.measurement)
    for key, value in point.tags.items():
        influx_point = influx_point.tag(key, value)
    for key, value in point.fields.items():
        influx_point = influx_point.field(key, float(value))
    return influx_point.time(point.timestamp, WritePrecision.S)


def _convert_points(points: Sequence[StoragePoint]) -> list[Point]:
    converted = [p for p in (to_influx_point(point) for point in points) if p is not None]
    skipped = len(points) - len(converted)
    if skipped:
        logger.debug("Skipping %d points without fields", skipped)
    return converted


# ---------------------------------------------------------------------------
# InfluxDB 1.x
# ---------------------------------------------------------------------------


class InfluxV1Storage:
    """InfluxDB 1.x backend using the HTTP ``/query`` and ``/write`` endpoints.

    Args:
        config: v1 connection parameters.
        transport: Optional httpx transport (used by tests).
    """

    def __init__(
        self,
        config: InfluxV1Config,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            timeout=REQUEST_TIMEOUT_S,
            transport=transport,
        )
        logger.debug(
            "Initialized InfluxDB v1 backend (url=%s, database=%s)",
            config.base_url,
            config.database,
        )

    def _params(self, **extra: str) -> dict[str, str]:
        params = {"db": self._config.database, **extra}
        if self._config.username and self._config.password:
            params["u"] = self._config.username
            params["p"] = self._config.password
        return params

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str],
        content: str | None = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(
                method, path, params=params, content=content
            )
        except httpx.HTTPError as exc:
            raise StorageError(f"InfluxDB request {method} {path} failed: {exc!r}") from exc
        if not response.is_success:
            raise StorageError(
                f"InfluxDB {method} {path} returned HTTP {response.status_code}: "
                f"{response.text[:500]}"
            )
        return response

    async def query(self, query: str) -> list[dict[str, Any]]:
        """Run an InfluxQL query and flatten all series into row dicts.

        Times are returned as unix seconds (``epoch=s``).
        """
        logger.debug("Executing v1 query: %s", query)
        response = await self._request(
            "GET", "/query", params=self._params(q=query, epoch="s")
        )
        try:
            payload = response.json()
        except ValueError as exc:
            raise StorageError("InfluxDB returned a non-JSON query response") from exc

        rows: list[dict[str, Any]] = []
        for result in payload.get("results", []):
            if "error" in result:
                raise StorageError(f"InfluxDB query error: {result['error']}")
            for series in result.get("series", []):
                columns = series.get("columns", [])
                for values in series.get("values", []):
                    rows.append(dict(zip(columns, values)))
        logger.debug("Query returned %d rows", len(rows))
        return rows

    async def write_points(self, points: Sequence[StoragePoint]) -> None:
        lines = [p.to_line_protocol() for p in _convert_points(points)]
        if not lines:
            return
        logger.debug("Writing %d points to v1 influx", len(lines))
        await self._request(
            "POST",
            "/write",
            params=self._params(precision="s"),
            content="\n".join(lines),
        )

    async def get_last_timestamp(
        self, measurement: str, device_name: str
    ) -> int | None:
        query = (
            f"SELECT {influxql_ident(WATERMARK_FIELD)} "
            f"FROM {influxql_ident(measurement)} "
            f"WHERE {influxql_ident(WATERMARK_TAG)} = {influxql_str(device_name)} "
            "ORDER BY time DESC LIMIT 1"
        )
        rows = await self.query(query)
        if not rows or rows[0].get("time") is None:
            return None
        try:
            return int(rows[0]["time"])
        except (TypeError, ValueError) as exc:
            raise StorageError(f"Unexpected time value {rows[0]['time']!r}") from exc

    async def test_connection(self) -> None:
        rows = await self.query("SHOW DATABASES")
        names = {row.get("name") for row in rows}
        if self._config.database not in names:
            raise StorageError(f"Database '{self._config.database}' does not exist")
        logger.debug("Connection to v1 influx successful")

    async def close(self) -> None:
        await self._client.aclose()


# ---------------------------------------------------------------------------
# InfluxDB 2.x
# ---------------------------------------------------------------------------


class InfluxV2Storage:
    """InfluxDB 2.x backend built on ``influxdb_client``.

    Args:
        config: v2 connection parameters.
        client: Optional pre-built InfluxDBClient (used by tests).
    """

    def __init__(
        self,
        config: InfluxV2Config,
        *,
        client: InfluxDBClient | None = None,
    ) -> None:
        self._config = config
        self._client = client or InfluxDBClient(
            url=str(config.url),
            token=config.token,
            org=config.org,
            timeout=int(REQUEST_TIMEOUT_S * 1000),
        )
        self._write_api = self._client.write_api(write_options=SYNCHRONOUS)
        self._query_api = self._client.query_api()
        logger.debug(
            "Initialized InfluxDB v2 backend (url=%s, bucket=%s)",
            config.url,
            config.bucket,
        )

    async def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except Exception as exc:  # influxdb_client raises ApiException and urllib3 errors
            raise StorageError(f"InfluxDB v2 call failed: {exc}") from exc

    async def query(self, query: str) -> list[dict[str, Any]]:
        logger.debug("Executing v2 query: %s", query)
        tables = await self._call(self._query_api.query, query=query, org=self._config.org)
        rows = [dict(record.values) for table in tables for record in table.records]
        logger.debug("Query returned %d rows", len(rows))
        return rows

    async def write_points(self, points: Sequence[StoragePoint]) -> None:
        records = _convert_points(points)
        if not records:
            return
        logger.debug("Writing %d points to v2 influx", len(records))
        await self._call(
            self._write_api.write,
            bucket=self._config.bucket,
            org=self._config.org,
            record=records,
            write_precision=WritePrecision.S,
        )

    async def get_last_timestamp(
        self, measurement: str, device_name: str
    ) -> int | None:
        query = f"""
from(bucket: {flux_str(self._config.bucket)})
  |> range(start: {WATERMARK_LOOKBACK})
  |> filter(fn: (r) => r["_measurement"] == {flux_str(measurement)})
  |> filter(fn: (r) => r[{flux_str(WATERMARK_TAG)}] == {flux_str(device_name)})
  |> filter(fn: (r) => r["_field"] == {flux_str(WATERMARK_FIELD)})
  |> last()
"""
        rows = await self.query(query)
        if not rows or rows[0].get("_time") is None:
            return None
        return int(rows[0]["_time"].timestamp())

    async def test_connection(self) -> None:
        query = f"""
buckets()
  |> filter(fn: (r) => r.name == {flux_str(self._config.bucket)})
"""
        rows = await self.query(query)
        if not rows:
            raise StorageError(f"Bucket '{self._config.bucket}' does not exist")
        logger.debug("Connection to v2 influx successful")

    async def close(self) -> None:
        await self._call(self._write_api.close)
        await self._call(self._client.close)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_storage(config: InfluxV1Config | InfluxV2Config) -> StorageBackend:
    """Create the backend matching the configured InfluxDB version."""
    logger.debug("Creating storage backend for InfluxDB v%d", config.version)
    if isinstance(config, InfluxV1Config):
        return InfluxV1Storage(config)
    return InfluxV2Storage(config)
