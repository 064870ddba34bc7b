"""Data models for pre-aggregated usage buckets and batch results."""

from datetime import datetime
from enum import Enum
from typing import NamedTuple

from pydantic import BaseModel, Field

from token_usage.events.models import DimensionType, UsageTotals


class PeriodType(str, Enum):
    """Time granularity of a bucket."""

    HOUR = "hour"
    DAY = "day"
    MONTH = "month"


class BucketKey(NamedTuple):
    """Composite identity of a bucket."""

    dimension_type: DimensionType
    dimension_id: str
    period_type: PeriodType
    period_start: datetime


class AggregateBucket(UsageTotals):
    """Pre-computed usage totals for one dimension value and one period."""

    id: int = Field(..., description="Row ID")
    dimension_type: DimensionType = Field(..., description="Dimension type")
    dimension_id: str = Field(..., description="Access key ID or user ID")
    period_type: PeriodType = Field(..., description="Bucket granularity")
    period_start: datetime = Field(..., description="First second of the period")
    period_end: datetime = Field(..., description="Last second of the period")
    last_update_time: datetime = Field(..., description="When the bucket last changed")

    @property
    def key(self) -> BucketKey:
        """Composite identity of this bucket."""
        return BucketKey(self.dimension_type, self.dimension_id, self.period_type, self.period_start)


class UsageTrendDataPoint(UsageTotals):
    """Usage totals for one period of a trend series."""

    period_start: datetime = Field(..., description="First second of the period")
    period_end: datetime = Field(..., description="Last second of the period")

    @property
    def cache_hit_rate(self) -> float:
        """Share of all input tokens served from the cache."""
        all_input = (
            self.total_input_tokens
            + self.total_cache_creation_input_tokens
            + self.total_cache_read_input_tokens
        )
        return self.total_cache_read_input_tokens / all_input if all_input > 0 else 0.0


class AggregationFailedError(Exception):
    """Raised by ``raise_for_status`` when a batch operation did not succeed."""

    def __init__(self, result: "AggregationResult | RebuildResult") -> None:
        self.result = result
        message = "; ".join(result.errors) or "operation failed"
        super().__init__(message)


class AggregationResult(BaseModel):
    """Outcome of an incremental aggregation run."""

    success: bool = Field(..., description="True when the run committed without any error")
    processed_records: int = Field(default=0, description="Summary rows read from raw events")
    updated_buckets: int = Field(default=0, description="Bucket merges performed")
    skipped_records: int = Field(default=0, description="Summary rows skipped as invalid")
    errors: list[str] = Field(default_factory=list, description="Error messages")
    already_aggregated: list[str] = Field(
        default_factory=list,
        description="Parts of the span skipped because earlier runs already merged them",
    )
    from_time: datetime | None = Field(None, description="Requested span start")
    to_time: datetime | None = Field(None, description="Requested span end")

    def raise_for_status(self) -> None:
        """Raise ``AggregationFailedError`` unless the run succeeded."""
        if not self.success:
            raise AggregationFailedError(self)


class RebuildResult(BaseModel):
    """Outcome of rebuilding one dimension value's buckets."""

    success: bool = Field(..., description="Whether the rebuild committed")
    rebuilt_buckets: int = Field(default=0, description="Buckets written")
    deleted_buckets: int = Field(default=0, description="Buckets deleted before rebuilding")
    dimension_type: str = Field(..., description="Requested dimension type")
    dimension_id: str = Field(..., description="Requested dimension ID")
    errors: list[str] = Field(default_factory=list, description="Error messages")

    def raise_for_status(self) -> None:
        """Raise ``AggregationFailedError`` unless the rebuild succeeded."""
        if not self.success:
            raise AggregationFailedError(self)
