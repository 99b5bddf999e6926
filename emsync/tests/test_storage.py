"""
Tests for the InfluxDB storage backends.

Tests verify:
- v1: InfluxQL over /query (db, epoch and credential params), line protocol
  writes over /write, watermark parsing, database existence check, and
  HTTP failures mapped to StorageError. Served by httpx.MockTransport.
- v2: write/query through a mocked InfluxDBClient, Flux watermark query,
  bucket existence check, and client exceptions mapped to StorageError.
- Helpers: quoting of Flux/InfluxQL literals and fieldless point skipping.

CHANGELOG:
- 2026-03-06: Cover literal escaping in watermark queries
- 2026-03-03: Replace uploader tests with InfluxDB backend tests (STORY-105)

TODO:
- None
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest
from emsync.src.config import InfluxV1Config, InfluxV2Config
from emsync.src.errors import StorageError
from emsync.src.models import StoragePoint
from emsync.src.storage import (
    InfluxV1Storage,
    InfluxV2Storage,
    create_storage,
    flux_str,
    influxql_str,
    to_influx_point,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _point(timestamp: int = 60, **fields: float) -> StoragePoint:
    return StoragePoint(
        measurement="shelly_em",
        fields=fields or {"total_act_energy": 3.0},
        tags={"device_name": "house"},
        timestamp=timestamp,
    )


def _v1_config(**overrides: Any) -> InfluxV1Config:
    values: dict[str, Any] = {"version": 1, "host": "influx", "database": "energy"}
    values.update(overrides)
    return InfluxV1Config.model_validate(values)


def _v2_config() -> InfluxV2Config:
    return InfluxV2Config.model_validate(
        {
            "version": 2,
            "url": "http://influx:8086",
            "token": "secret-token",
            "org": "home",
            "bucket": "energy",
        }
    )


def _series(columns: list[str], values: list[list[Any]], **extra: Any) -> dict[str, Any]:
    return {"results": [{"statement_id": 0, "series": [{"columns": columns, "values": values, **extra}]}]}


class _InfluxV1Server:
    """Records requests and answers with a canned /query payload."""

    def __init__(self, query_payload: dict[str, Any] | None = None, status: int = 200) -> None:
        self.query_payload = query_payload or {"results": [{"statement_id": 0}]}
        self.status = status
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status != 200:
            return httpx.Response(self.status, text="database not found")
        if request.url.path == "/write":
            return httpx.Response(204)
        return httpx.Response(200, json=self.query_payload)

    def storage(self, config: InfluxV1Config | None = None) -> InfluxV1Storage:
        return InfluxV1Storage(
            config or _v1_config(), transport=httpx.MockTransport(self.handler)
        )


def _v2_storage(*, tables: list[Any] | None = None) -> tuple[InfluxV2Storage, MagicMock]:
    client = MagicMock()
    client.query_api.return_value.query.return_value = tables or []
    return InfluxV2Storage(_v2_config(), client=client), client


def _table(*rows: dict[str, Any]) -> MagicMock:
    table = MagicMock()
    table.records = [MagicMock(values=row) for row in rows]
    return table


# ---------------------------------------------------------------------------
# Helpers under test
# ---------------------------------------------------------------------------


class TestQuoting:
    def test_flux_str_escapes_quotes_and_backslashes(self) -> None:
        assert flux_str('a"b\\c') == '"a\\"b\\\\c"'

    def test_influxql_str_escapes_single_quotes(self) -> None:
        assert influxql_str("o'brien") == "'o\\'brien'"


class TestToInfluxPoint:
    def test_point_without_fields_is_skipped(self) -> None:
        point = StoragePoint(measurement="m", fields={}, tags={}, timestamp=1)

        assert to_influx_point(point) is None

    def test_line_protocol_carries_tags_and_second_timestamp(self) -> None:
        line = to_influx_point(_point(timestamp=120)).to_line_protocol()

        assert line.startswith("shelly_em,device_name=house total_act_energy=3")
        assert line.endswith(" 120")


# ---------------------------------------------------------------------------
# InfluxDB 1.x
# ---------------------------------------------------------------------------


class TestInfluxV1Config:
    def test_base_url_from_host_and_port(self) -> None:
        assert _v1_config(port=9999).base_url == "http://influx:9999"

    def test_full_url_host_is_used_as_is(self) -> None:
        assert _v1_config(host="https://influx.example/").base_url == "https://influx.example"


class TestInfluxV1Storage:
    """InfluxDB 1.x HTTP API backend."""

    @pytest.mark.asyncio
    async def test_query_sends_db_epoch_and_credentials(self) -> None:
        server = _InfluxV1Server(_series(["time", "v"], [[60, 1.5], [120, 2.5]]))
        storage = server.storage(_v1_config(username="admin", password="pw"))

        rows = await storage.query("SELECT v FROM m")
        await storage.close()

        params = server.requests[0].url.params
        assert server.requests[0].url.path == "/query"
        assert params["db"] == "energy"
        assert params["epoch"] == "s"
        assert params["q"] == "SELECT v FROM m"
        assert params["u"] == "admin"
        assert params["p"] == "pw"
        assert rows == [{"time": 60, "v": 1.5}, {"time": 120, "v": 2.5}]

    @pytest.mark.asyncio
    async def test_no_credentials_without_username(self) -> None:
        server = _InfluxV1Server()
        storage = server.storage()

        await storage.query("SHOW DATABASES")

        assert "u" not in server.requests[0].url.params
        assert "p" not in server.requests[0].url.params

    @pytest.mark.asyncio
    async def test_query_error_in_results_raises(self) -> None:
        server = _InfluxV1Server({"results": [{"statement_id": 0, "error": "syntax error"}]})

        with pytest.raises(StorageError, match="syntax error"):
            await server.storage().query("SELEC")

    @pytest.mark.asyncio
    async def test_write_posts_line_protocol_in_seconds(self) -> None:
        server = _InfluxV1Server()
        storage = server.storage()

        await storage.write_points([_point(60), _point(120)])

        request = server.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/write"
        assert request.url.params["precision"] == "s"
        lines = request.content.decode().split("\n")
        assert len(lines) == 2
        assert lines[0].endswith(" 60")
        assert lines[1].endswith(" 120")

    @pytest.mark.asyncio
    async def test_write_of_fieldless_points_sends_nothing(self) -> None:
        server = _InfluxV1Server()
        point = StoragePoint(measurement="m", fields={}, tags={}, timestamp=1)

        await server.storage().write_points([point])

        assert server.requests == []

    @pytest.mark.asyncio
    async def test_http_error_status_raises_storage_error(self) -> None:
        server = _InfluxV1Server(status=500)

        with pytest.raises(StorageError, match="HTTP 500"):
            await server.storage().write_points([_point()])

    @pytest.mark.asyncio
    async def test_transport_error_raises_storage_error(self) -> None:
        def _refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        storage = InfluxV1Storage(_v1_config(), transport=httpx.MockTransport(_refuse))

        with pytest.raises(StorageError, match="failed"):
            await storage.query("SHOW DATABASES")

    @pytest.mark.asyncio
    async def test_last_timestamp_query_and_parse(self) -> None:
        server = _InfluxV1Server(_series(["time", "total_act_energy"], [[1_700_000_000, 42.0]]))

        result = await server.storage().get_last_timestamp("shelly_em", "o'shed")

        assert result == 1_700_000_000
        query = server.requests[0].url.params["q"]
        assert 'SELECT "total_act_energy" FROM "shelly_em"' in query
        assert "\"device_name\" = 'o\\'shed'" in query
        assert query.endswith("ORDER BY time DESC LIMIT 1")

    @pytest.mark.asyncio
    async def test_last_timestamp_none_without_data(self) -> None:
        server = _InfluxV1Server()

        assert await server.storage().get_last_timestamp("shelly_em", "house") is None

    @pytest.mark.asyncio
    async def test_connection_requires_existing_database(self) -> None:
        server = _InfluxV1Server(_series(["name"], [["_internal"], ["other"]]))

        with pytest.raises(StorageError, match="Database 'energy' does not exist"):
            await server.storage().test_connection()

    @pytest.mark.asyncio
    async def test_connection_succeeds_when_database_exists(self) -> None:
        server = _InfluxV1Server(_series(["name"], [["_internal"], ["energy"]]))

        await server.storage().test_connection()

        assert server.requests[0].url.params["q"] == "SHOW DATABASES"


# ---------------------------------------------------------------------------
# InfluxDB 2.x
# ---------------------------------------------------------------------------


class TestInfluxV2Storage:
    """InfluxDB 2.x backend over a mocked influxdb_client."""

    @pytest.mark.asyncio
    async def test_write_uses_bucket_org_and_second_precision(self) -> None:
        storage, client = _v2_storage()

        await storage.write_points([_point(60), _point(120)])

        write = client.write_api.return_value.write
        write.assert_called_once()
        kwargs = write.call_args.kwargs
        assert kwargs["bucket"] == "energy"
        assert kwargs["org"] == "home"
        assert len(kwargs["record"]) == 2
        assert kwargs["record"][0].to_line_protocol().endswith(" 60")

    @pytest.mark.asyncio
    async def test_write_without_fields_is_noop(self) -> None:
        storage, client = _v2_storage()
        point = StoragePoint(measurement="m", fields={}, tags={}, timestamp=1)

        await storage.write_points([point])

        client.write_api.return_value.write.assert_not_called()

    @pytest.mark.asyncio
    async def test_write_exception_becomes_storage_error(self) -> None:
        storage, client = _v2_storage()
        client.write_api.return_value.write.side_effect = RuntimeError("401 unauthorized")

        with pytest.raises(StorageError, match="401 unauthorized"):
            await storage.write_points([_point()])

    @pytest.mark.asyncio
    async def test_query_flattens_records(self) -> None:
        storage, _ = _v2_storage(tables=[_table({"a": 1}, {"a": 2}), _table({"a": 3})])

        rows = await storage.query("from(bucket: \"energy\")")

        assert rows == [{"a": 1}, {"a": 2}, {"a": 3}]

    @pytest.mark.asyncio
    async def test_last_timestamp_reads_time_column(self) -> None:
        stamp = datetime(2024, 1, 1, tzinfo=UTC)
        storage, client = _v2_storage(tables=[_table({"_time": stamp, "_value": 7.0})])

        result = await storage.get_last_timestamp("shelly_em", "house")

        assert result == int(stamp.timestamp())
        query = client.query_api.return_value.query.call_args.kwargs["query"]
        assert 'from(bucket: "energy")' in query
        assert "range(start: -61d)" in query
        assert 'r["_measurement"] == "shelly_em"' in query
        assert 'r["device_name"] == "house"' in query
        assert 'r["_field"] == "total_act_energy"' in query
        assert "last()" in query

    @pytest.mark.asyncio
    async def test_last_timestamp_none_without_data(self) -> None:
        storage, _ = _v2_storage()

        assert await storage.get_last_timestamp("shelly_em", "house") is None

    @pytest.mark.asyncio
    async def test_connection_requires_bucket(self) -> None:
        storage, _ = _v2_storage()

        with pytest.raises(StorageError, match="Bucket 'energy' does not exist"):
            await storage.test_connection()

    @pytest.mark.asyncio
    async def test_connection_succeeds_when_bucket_listed(self) -> None:
        storage, _ = _v2_storage(tables=[_table({"name": "energy"})])

        await storage.test_connection()

    @pytest.mark.asyncio
    async def test_close_closes_write_api_and_client(self) -> None:
        storage, client = _v2_storage()

        await storage.close()

        client.write_api.return_value.close.assert_called_once()
        client.close.assert_called_once()


class TestCreateStorage:
    def test_v1_config_builds_v1_backend(self) -> None:
        assert isinstance(create_storage(_v1_config()), InfluxV1Storage)

    def test_v2_config_builds_v2_backend(self) -> None:
        storage = create_storage(_v2_config())

        assert isinstance(storage, InfluxV2Storage)
