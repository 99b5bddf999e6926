"""
Shared test fixtures for the history sync tests.

Provides:
- Environment isolation for AppSettings (APP_ENV, CONFIG_DIR, LOG_LEVEL).
- FakeShellyDevice: an httpx.MockTransport-backed EMData endpoint serving
  canned pages keyed by the requested ``ts`` cursor.
- FakeStorage: an in-memory StorageBackend with injectable failures.

CHANGELOG:
- 2026-03-03: Replace edge env fixtures with device/storage fakes (STORY-107)
- 2026-02-14: Initial creation (STORY-001)

TODO:
- None
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any

import httpx
import pytest
from emsync.src.errors import StorageError
from emsync.src.models import DeviceEndpoint, StoragePoint
from emsync.src.shelly import ShellyClient

# All AppSettings environment variable names, used for cleanup.
_ALL_ENV_VARS = ("APP_ENV", "CONFIG_DIR", "LOG_LEVEL")

THREE_PHASE_KEYS = [
    "a_total_act_energy",
    "a_total_act_ret_energy",
    "b_total_act_energy",
    "b_total_act_ret_energy",
    "c_total_act_energy",
    "c_total_act_ret_energy",
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: str) -> None:
    """Remove settings env vars and isolate from .env files before each test."""
    for var in _ALL_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


# ---------------------------------------------------------------------------
# Page builders
# ---------------------------------------------------------------------------


def make_page(
    ts: int,
    values: list[list[float | None]],
    *,
    period: int = 60,
    next_record_ts: int | None = None,
    keys: list[str] | None = None,
) -> dict[str, Any]:
    """Build an EMData.GetData JSON body with a single bucket."""
    page: dict[str, Any] = {
        "keys": THREE_PHASE_KEYS if keys is None else keys,
        "data": [{"ts": ts, "period": period, "values": values}] if values else [],
    }
    if next_record_ts is not None:
        page["next_record_ts"] = next_record_ts
    return page


def phase_values(n: int, start: float = 1.0) -> list[list[float]]:
    """Return *n* rows of six increasing three-phase counter values."""
    return [
        [start + i, 0.1 + i, start + 10 + i, 0.2 + i, start + 20 + i, 0.3 + i]
        for i in range(n)
    ]


# ---------------------------------------------------------------------------
# Fake device
# ---------------------------------------------------------------------------


class FakeShellyDevice:
    """Serves canned EMData pages over httpx.MockTransport.

    Args:
        pages: Mapping of requested ``ts`` cursor to JSON body.
        status_ok: Whether Shelly.GetStatus answers 200.
    """

    def __init__(
        self,
        pages: dict[int, dict[str, Any]] | None = None,
        *,
        status_ok: bool = True,
    ) -> None:
        self.pages = pages or {}
        self.status_ok = status_ok
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/rpc/Shelly.GetStatus":
            if not self.status_ok:
                return httpx.Response(503, text="unavailable")
            return httpx.Response(200, json={"status": "ok"})
        if request.url.path == "/rpc/EMData.GetData":
            ts = int(request.url.params["ts"])
            if ts in self.pages:
                return httpx.Response(200, json=self.pages[ts])
            return httpx.Response(400, text=f"No data available for timestamp {ts}")
        return httpx.Response(404, text="Not Found")

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def requested_ts(self) -> list[int]:
        """Cursors requested from the history endpoint, in order."""
        return [
            int(r.url.params["ts"])
            for r in self.requests
            if r.url.path == "/rpc/EMData.GetData"
        ]


# ---------------------------------------------------------------------------
# Fake storage
# ---------------------------------------------------------------------------


class FakeStorage:
    """In-memory StorageBackend.

    Attributes:
        points: Every point written, in write order.
        fail_on_write: 1-based write call number that raises StorageError.
        watermark_error: Exception raised by get_last_timestamp when set.
    """

    def __init__(self) -> None:
        self.points: list[StoragePoint] = []
        self.write_calls = 0
        self.fail_on_write: int | None = None
        self.watermark_error: Exception | None = None
        self.connection_errors = 0
        self.connection_attempts = 0
        self.close_error: Exception | None = None
        self.closed = False

    async def query(self, query: str) -> list[dict[str, Any]]:
        return []

    async def write_points(self, points: Sequence[StoragePoint]) -> None:
        self.write_calls += 1
        if self.fail_on_write == self.write_calls:
            raise StorageError("simulated write failure")
        self.points.extend(points)

    async def get_last_timestamp(
        self, measurement: str, device_name: str
    ) -> int | None:
        if self.watermark_error is not None:
            raise self.watermark_error
        stamps = [
            p.timestamp
            for p in self.points
            if p.measurement == measurement and p.tags.get("device_name") == device_name
        ]
        return max(stamps) if stamps else None

    async def test_connection(self) -> None:
        self.connection_attempts += 1
        if self.connection_attempts <= self.connection_errors:
            raise StorageError("connection refused")

    async def close(self) -> None:
        if self.close_error is not None:
            raise self.close_error
        self.closed = True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def device() -> DeviceEndpoint:
    """A device endpoint with a device_name tag and no credentials."""
    return DeviceEndpoint(
        host="192.168.1.50",
        tags={"device_name": "house", "location": "basement"},
    )


@pytest.fixture()
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture()
def make_client(
    device: DeviceEndpoint,
) -> Callable[..., ShellyClient]:
    """Factory building a ShellyClient wired to a FakeShellyDevice."""

    def _make(
        fake: FakeShellyDevice,
        endpoint: DeviceEndpoint | None = None,
    ) -> ShellyClient:
        return ShellyClient(
            endpoint or device,
            transport=fake.transport(),
            inter_page_delay_s=0,
        )

    return _make
