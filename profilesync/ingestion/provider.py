"""Provider-facing types shared by the client and the fetcher."""

from datetime import datetime, timedelta
from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field, field_validator, model_validator

from profilesync.models.records import ensure_utc

QueryKind = Literal["events", "profiles"]


class TimeRange(BaseModel):
    """Half-open UTC interval ``[start, end)``."""

    start: datetime = Field(default=..., description="Inclusive start")
    end: datetime = Field(default=..., description="Exclusive end")

    @field_validator("start", "end")
    @classmethod
    def validate_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @model_validator(mode="after")
    def validate_order(self) -> "TimeRange":
        if self.end < self.start:
            raise ValueError(f"time range ends before it starts: {self.start} > {self.end}")
        return self

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def contains(self, moment: datetime) -> bool:
        return self.start <= ensure_utc(moment) < self.end


class ProviderPage(BaseModel):
    """One page of provider output.

    ``next_token`` is None on the last page. ``rate_limited`` marks a page the
    provider truncated because of throttling.
    """

    records: list[dict[str, Any]] = Field(default_factory=list, description="Raw provider records")
    next_token: str | None = Field(default=None, description="Continuation token")
    rate_limited: bool = Field(default=False, description="Provider throttled this page")


class ProviderClient(Protocol):
    """Upstream analytics provider."""

    def query(
        self,
        kind: QueryKind,
        time_range: TimeRange | None,
        pagination_token: str | None = None,
    ) -> ProviderPage:
        """Return one page of ``kind`` records for ``time_range``."""
        ...
