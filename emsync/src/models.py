"""
Pydantic models shared across the history sync pipeline.

Defines the wire-level shape of an ``EMData.GetData`` response
(RawPageResponse), the decoded per-sample HistoryRow, the StoragePoint handed
to InfluxDB, and the immutable DeviceEndpoint describing one configured meter.

CHANGELOG:
- 2026-03-09: iso_ts falls back to the raw value for out-of-range timestamps
- 2026-03-04: Accept "k=v,k2=v2" strings for device tags
- 2026-03-02: Replace SungrowSample with history/page/point models (STORY-102)
- 2026-02-14: Initial creation (STORY-004)

TODO:
- None
"""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_MEASUREMENT = "shelly_em"
"""Measurement name used when a device does not override it."""


class DeviceEndpoint(BaseModel):
    """One configured metering device.

    Attributes:
        host: Device address (host or host:port), without scheme.
        username: Optional HTTP basic auth user.
        password: Optional HTTP basic auth password. Requires ``username``.
        tags: Tag set applied to every point written for this device.
            ``device_name`` is used to scope the resume watermark.
        measurement: Optional measurement name override.
    """

    model_config = ConfigDict(frozen=True)

    host: str = Field(min_length=1)
    username: str | None = None
    password: str | None = None
    tags: dict[str, str] = Field(default_factory=dict)
    measurement: str | None = None

    @field_validator("tags", mode="before")
    @classmethod
    def _parse_tag_string(cls, v: object) -> object:
        """Allow tags given as a ``key=value`` string; stringify mapping values."""
        if v is None:
            return {}
        if isinstance(v, str):
            tags: dict[str, str] = {}
            for pair in v.split(","):
                key, _, value = pair.partition("=")
                if key.strip() and value.strip():
                    tags[key.strip()] = value.strip()
            return tags
        if isinstance(v, dict):
            return {str(key): str(value) for key, value in v.items()}
        return v

    @model_validator(mode="after")
    def _password_requires_username(self) -> DeviceEndpoint:
        if self.password and not self.username:
            raise ValueError(
                f"username is required when password is set (host={self.host})"
            )
        return self

    @property
    def measurement_name(self) -> str:
        """Measurement this device's points are written to."""
        return self.measurement or DEFAULT_MEASUREMENT

    @property
    def device_name(self) -> str:
        """Value of the ``device_name`` tag, falling back to the host."""
        return self.tags.get("device_name", self.host)


class DataBucket(BaseModel):
    """One time bucket of an EMData page: ``values[i]`` is sampled at ``ts + i * period``."""

    ts: int
    period: int = Field(gt=0)
    values: list[list[float | None]]


class RawPageResponse(BaseModel):
    """Decoded JSON body of a single ``EMData.GetData`` call.

    Attributes:
        keys: Field names, positionally matching each row of ``values``.
        data: Time buckets contained in this page.
        next_record_ts: Cursor for the next page, absent on the last page.
    """

    keys: list[str] = Field(default_factory=list)
    data: list[DataBucket]
    next_record_ts: int | None = None


class HistoryRow(BaseModel):
    """A single decoded sample interval.

    Attributes:
        timestamp: Unix timestamp in seconds.
        fields: Field name to numeric value, including computed phase totals.
    """

    timestamp: int
    fields: dict[str, float]


class StoragePoint(BaseModel):
    """The unit of persistence: one InfluxDB point per HistoryRow."""

    measurement: str
    fields: dict[str, float]
    tags: dict[str, str] = Field(default_factory=dict)
    timestamp: int


def iso_ts(timestamp: int) -> str:
    """Format a unix timestamp (seconds) as an ISO-8601 UTC string.

    Values outside the datetime range (e.g. a millisecond timestamp) are
    returned as the raw integer instead of raising.
    """
    try:
        return datetime.fromtimestamp(timestamp, tz=UTC).isoformat()
    except (ValueError, OverflowError, OSError):
        return str(timestamp)
