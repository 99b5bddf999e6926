"""
Async HTTP client for Shelly energy meters (EMData history RPC).

Fetches stored energy history from a Shelly EM / Pro 3EM device through the
``EMData.GetData`` RPC. The device returns history in pages; each page may
carry a ``next_record_ts`` cursor pointing at the next page. Two access
modes share one cursor walk:

- get_history(from_ts, to_ts): fetch every page and return all rows.
- iter_history_pages(from_ts, to_ts): async generator yielding each page's
  rows as soon as it is decoded, so the caller can persist incrementally.

The walk stops when the cursor is absent or non-positive, or when it
exceeds the optional upper bound. A short delay is awaited between page
requests so the meter is not overloaded.

Errors:
- Non-2xx status, network failures and malformed bodies raise TransportError.
- Task cancellation aborts an in-flight request (asyncio.CancelledError).

API docs: https://shelly-api-docs.shelly.cloud/gen2/ComponentsAndServices/EMData

CHANGELOG:
- 2026-03-09: Log raw cursors so bogus values cannot break debug logging
- 2026-03-05: Stop the walk when the device repeats a cursor
- 2026-03-02: Replace Modbus poller with EMData history client (STORY-103)
- 2026-02-14: Initial creation (STORY-003)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

import httpx

from emsync.src.decoder import decode_page
from emsync.src.errors import TransportError
from emsync.src.models import RawPageResponse

if TYPE_CHECKING:
    from emsync.src.models import DeviceEndpoint, HistoryRow

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

REQUEST_TIMEOUT_S: float = 15.0
"""Timeout per history request in seconds."""

INTER_PAGE_DELAY_S: float = 0.3
"""Delay between consecutive page requests to avoid overloading the device."""

MAX_ERROR_BODY_CHARS: int = 500
"""Response body excerpt length carried by TransportError."""

HISTORY_PATH = "/rpc/EMData.GetData"
STATUS_PATH = "/rpc/Shelly.GetStatus"


class ShellyClient:
    """History client for a single Shelly energy meter.

    Holds one ``httpx.AsyncClient`` for the lifetime of the device task.
    Basic authentication is attached when both username and password are
    configured on the endpoint.

    Args:
        device: The configured device endpoint.
        timeout_s: Per-request timeout in seconds.
        inter_page_delay_s: Seconds to wait between page requests.
            Set to 0 to skip delays.
        transport: Optional httpx transport (used by tests).

    Usage::

        async with ShellyClient(device) as client:
            async for rows in client.iter_history_pages(from_ts):
                ...
    """

    def __init__(
        self,
        device: DeviceEndpoint,
        *,
        timeout_s: float = REQUEST_TIMEOUT_S,
        inter_page_delay_s: float = INTER_PAGE_DELAY_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._device = device
        self._inter_page_delay_s = inter_page_delay_s
        auth = None
        if device.username and device.password:
            auth = httpx.BasicAuth(device.username, device.password)
        self._client = httpx.AsyncClient(
            base_url=f"http://{device.host}",
            timeout=timeout_s,
            auth=auth,
            headers={"Accept": "application/json"},
            transport=transport,
        )
        logger.debug("Initialized Shelly client for host %s", device.host)

    @property
    def device(self) -> DeviceEndpoint:
        """The endpoint this client talks to."""
        return self._device

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()

    async def __aenter__(self) -> ShellyClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Page Fetcher
    # ------------------------------------------------------------------

    async def fetch_page(
        self,
        from_ts: int,
        to_ts: int | None = None,
    ) -> RawPageResponse:
        """Fetch a single history page starting at *from_ts*.

        Args:
            from_ts: Start cursor (unix seconds).
            to_ts: Optional end bound (unix seconds).

        Returns:
            The validated page.

        Raises:
            TransportError: On network failure, non-2xx status, or a body
                that does not match the EMData response shape.
        """
        params = {"id": "0", "ts": str(from_ts)}
        if to_ts is not None:
            params["end_ts"] = str(to_ts)

        logger.debug(
            "Fetching history page from ts=%d (host=%s, end_ts=%s)",
            from_ts,
            self._device.host,
            to_ts if to_ts is not None else "now",
        )

        try:
            response = await self._client.get(HISTORY_PATH, params=params)
        except httpx.HTTPError as exc:
            raise TransportError(
                f"History request to {self._device.host} failed: {exc!r}"
            ) from exc

        if not response.is_success:
            raise TransportError(
                f"Failed to fetch history from {self._device.host}",
                status_code=response.status_code,
                body=response.text[:MAX_ERROR_BODY_CHARS],
            )

        try:
            return RawPageResponse.model_validate(response.json())
        except ValueError as exc:
            raise TransportError(
                f"Malformed history response from {self._device.host}",
                status_code=response.status_code,
                body=response.text[:MAX_ERROR_BODY_CHARS],
            ) from exc

    # ------------------------------------------------------------------
    # History Assembler
    # ------------------------------------------------------------------

    async def _walk_pages(
        self,
        from_ts: int,
        to_ts: int | None = None,
    ) -> AsyncIterator[RawPageResponse]:
        """Yield raw pages following the device cursor.

        Terminates when the cursor is absent or non-positive, exceeds
        *to_ts*, or does not advance.
        """
        cursor = from_ts
        while True:
            response = await self.fetch_page(cursor, to_ts)
            yield response

            next_ts = response.next_record_ts
            if next_ts is None or next_ts <= 0:
                return
            if to_ts is not None and next_ts > to_ts:
                logger.debug(
                    "Next cursor %d is past the upper bound %d, stopping",
                    next_ts,
                    to_ts,
                )
                return
            if next_ts <= cursor:
                logger.warning(
                    "Device %s returned a non-advancing cursor %d (current %d), stopping",
                    self._device.host,
                    next_ts,
                    cursor,
                )
                return

            cursor = next_ts
            if self._inter_page_delay_s > 0:
                await asyncio.sleep(self._inter_page_delay_s)

    async def get_history(
        self,
        from_ts: int,
        to_ts: int | None = None,
    ) -> list[HistoryRow]:
        """Fetch all history from *from_ts* and return every decoded row.

        Args:
            from_ts: Start cursor (unix seconds).
            to_ts: Optional upper bound for the cursor walk.

        Returns:
            All rows across all pages, in device order.
        """
        history: list[HistoryRow] = []
        async for response in self._walk_pages(from_ts, to_ts):
            history.extend(decode_page(response))
        logger.debug("Fetched %d records from %s", len(history), self._device.host)
        return history

    async def iter_history_pages(
        self,
        from_ts: int,
        to_ts: int | None = None,
    ) -> AsyncIterator[list[HistoryRow]]:
        """Yield the decoded rows of each non-empty page as it arrives.

        Args:
            from_ts: Start cursor (unix seconds).
            to_ts: Optional upper bound for the cursor walk.

        Yields:
            Non-empty lists of rows, one list per device page.
        """
        async for response in self._walk_pages(from_ts, to_ts):
            rows = decode_page(response)
            if rows:
                yield rows

    # ------------------------------------------------------------------
    # Status probe
    # ------------------------------------------------------------------

    async def test_connection(self) -> bool:
        """Probe the device with ``Shelly.GetStatus``.

        Returns:
            True when the device answered with a 2xx status, False on any
            HTTP error or network failure. Never raises TransportError.
        """
        try:
            response = await self._client.post(
                STATUS_PATH,
                json={"id": 1, "method": "Shelly.GetStatus"},
            )
        except httpx.HTTPError as exc:
            logger.debug("Connection test to %s failed: %r", self._device.host, exc)
            return False
        logger.debug(
            "Connection test to %s returned HTTP %d",
            self._device.host,
            response.status_code,
        )
        return response.is_success
