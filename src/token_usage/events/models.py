"""Data models for raw usage events and token counters."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, computed_field


class DimensionType(str, Enum):
    """Entity a usage event is attributed to."""

    ACCESS_KEY = "access_key"
    USER = "user"


class UsageTotals(BaseModel):
    """Additive token and request counters.

    Shared shape of every aggregate answer: raw scans, buckets, trend points
    and system totals all report these five counters. ``total_tokens`` is
    always derived from the four token counters and never stored.
    """

    total_input_tokens: int = Field(default=0, ge=0, description="Input tokens")
    total_cache_creation_input_tokens: int = Field(
        default=0, ge=0, description="Cache creation input tokens"
    )
    total_cache_read_input_tokens: int = Field(
        default=0, ge=0, description="Cache read input tokens"
    )
    total_output_tokens: int = Field(default=0, ge=0, description="Output tokens")
    total_requests: int = Field(default=0, ge=0, description="Number of requests")

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_tokens(self) -> int:
        """Sum of the four token counters."""
        return (
            self.total_input_tokens
            + self.total_cache_creation_input_tokens
            + self.total_cache_read_input_tokens
            + self.total_output_tokens
        )

    @property
    def average_tokens_per_request(self) -> float:
        """Average tokens per request, 0.0 when there were no requests."""
        if self.total_requests == 0:
            return 0.0
        return self.total_tokens / self.total_requests

    def __add__(self, other: "UsageTotals") -> "UsageTotals":
        if not isinstance(other, UsageTotals):
            return NotImplemented
        return UsageTotals(
            total_input_tokens=self.total_input_tokens + other.total_input_tokens,
            total_cache_creation_input_tokens=(
                self.total_cache_creation_input_tokens + other.total_cache_creation_input_tokens
            ),
            total_cache_read_input_tokens=(
                self.total_cache_read_input_tokens + other.total_cache_read_input_tokens
            ),
            total_output_tokens=self.total_output_tokens + other.total_output_tokens,
            total_requests=self.total_requests + other.total_requests,
        )

    def counters(self) -> dict[str, int]:
        """The five stored counters, without derived values."""
        return self.model_dump(
            include={
                "total_input_tokens",
                "total_cache_creation_input_tokens",
                "total_cache_read_input_tokens",
                "total_output_tokens",
                "total_requests",
            }
        )


class UsageEvent(BaseModel):
    """A single immutable usage event attributed to one dimension."""

    model_config = ConfigDict(frozen=True)

    dimension_type: DimensionType = Field(..., description="Dimension the event belongs to")
    dimension_id: str = Field(..., max_length=64, description="Access key ID or user ID")
    input_tokens: int = Field(default=0, ge=0, description="Input tokens")
    cache_creation_input_tokens: int = Field(
        default=0, ge=0, description="Cache creation input tokens"
    )
    cache_read_input_tokens: int = Field(default=0, ge=0, description="Cache read input tokens")
    output_tokens: int = Field(default=0, ge=0, description="Output tokens")
    occur_time: datetime = Field(..., description="When the request actually happened (UTC)")
    model: str | None = Field(None, max_length=50, description="Model name")
    feature: str | None = Field(None, max_length=50, description="Feature identifier")
    request_id: str | None = Field(None, max_length=64, description="Request trace ID")
    endpoint: str | None = Field(None, max_length=100, description="API endpoint called")
    stop_reason: str | None = Field(None, max_length=20, description="Stop reason")

    @property
    def total_tokens(self) -> int:
        """Sum of the four token counters."""
        return (
            self.input_tokens
            + self.cache_creation_input_tokens
            + self.cache_read_input_tokens
            + self.output_tokens
        )


class UsageAggregationData(UsageTotals):
    """Summed raw events for one dimension value.

    ``occur_time`` is only set when the events were grouped by their exact
    timestamp rather than by dimension alone.
    """

    dimension_id: str = Field(..., description="Access key ID or user ID")
    occur_time: datetime | None = Field(None, description="Exact timestamp of the group")


class TopConsumerItem(UsageTotals):
    """A dimension value ranked by token consumption."""

    dimension_type: DimensionType = Field(..., description="Dimension type")
    dimension_id: str = Field(..., description="Access key ID or user ID")
    first_usage_time: datetime | None = Field(None, description="Earliest event in range")
    last_usage_time: datetime | None = Field(None, description="Latest event in range")

    @property
    def cache_usage_ratio(self) -> float:
        """Share of all input tokens that were cache creation or cache reads."""
        cache_tokens = self.total_cache_creation_input_tokens + self.total_cache_read_input_tokens
        all_input = self.total_input_tokens + cache_tokens
        return cache_tokens / all_input if all_input > 0 else 0.0


class UsageEventRecord(UsageEvent):
    """A stored usage event, as returned by detail queries."""

    id: int = Field(..., description="Event row ID")
