"""Data models for usage queries."""

import math
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, computed_field

from token_usage.aggregation.models import PeriodType, UsageTrendDataPoint
from token_usage.events.models import DimensionType, UsageEventRecord, UsageTotals


class UsageQueryFilter(BaseModel):
    """Filter for usage statistics queries."""

    start_date: datetime | None = Field(None, description="Inclusive range start")
    end_date: datetime | None = Field(None, description="Inclusive range end")
    models: list[str] | None = Field(None, description="Only count these models")
    features: list[str] | None = Field(None, description="Only count these features")
    aggregation_period: PeriodType = Field(
        default=PeriodType.DAY, description="Bucket granularity for pre-aggregated reads"
    )

    @property
    def has_date_range(self) -> bool:
        return self.start_date is not None or self.end_date is not None

    @property
    def has_model_filter(self) -> bool:
        return bool(self.models)

    @property
    def has_feature_filter(self) -> bool:
        return bool(self.features)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dictionary for logging and metadata."""
        return {
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "models": self.models,
            "features": self.features,
            "aggregation_period": self.aggregation_period.value,
        }


class UsageStatisticsResult(UsageTotals):
    """Usage totals for one dimension value.

    ``metadata["calculation_method"]`` tells whether the totals came from
    buckets (``pre_aggregated``) or from a raw scan (``real_time``).
    """

    start_date: datetime | None = Field(None, description="Requested range start")
    end_date: datetime | None = Field(None, description="Requested range end")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Query metadata")

    @property
    def calculation_method(self) -> str | None:
        return self.metadata.get("calculation_method")


class UsageTrendQuery(BaseModel):
    """Parameters of a usage trend query."""

    start_date: datetime = Field(..., description="Inclusive range start")
    end_date: datetime = Field(..., description="Inclusive range end")
    dimension_type: DimensionType = Field(
        default=DimensionType.ACCESS_KEY, description="Dimension type"
    )
    dimension_id: str | None = Field(
        None, description="Dimension ID, or None for every value of the dimension type"
    )
    period_type: PeriodType | None = Field(
        default=PeriodType.DAY, description="Bucket granularity (None picks one from the span)"
    )
    limit: int = Field(default=100, ge=1, le=1000, description="Maximum data points")

    @classmethod
    def for_access_key(
        cls,
        access_key_id: str,
        start_date: datetime,
        end_date: datetime,
        period_type: PeriodType | None = PeriodType.DAY,
    ) -> "UsageTrendQuery":
        return cls(
            start_date=start_date,
            end_date=end_date,
            dimension_type=DimensionType.ACCESS_KEY,
            dimension_id=access_key_id,
            period_type=period_type,
        )

    @classmethod
    def for_user(
        cls,
        user_id: str,
        start_date: datetime,
        end_date: datetime,
        period_type: PeriodType | None = PeriodType.DAY,
    ) -> "UsageTrendQuery":
        return cls(
            start_date=start_date,
            end_date=end_date,
            dimension_type=DimensionType.USER,
            dimension_id=user_id,
            period_type=period_type,
        )

    @property
    def day_span(self) -> int:
        """Number of calendar days touched, counting both ends."""
        return (self.end_date - self.start_date).days + 1

    @property
    def is_single_dimension(self) -> bool:
        return self.dimension_id is not None

    def optimal_period_type(self) -> PeriodType:
        """Pick a readable resolution for the span: hours up to a week, days up to 90."""
        day_span = self.day_span
        if day_span <= 7:
            return PeriodType.HOUR
        if day_span <= 90:
            return PeriodType.DAY
        return PeriodType.MONTH

    def resolved_period_type(self) -> PeriodType:
        return self.period_type or self.optimal_period_type()


class UsageTrendResult(BaseModel):
    """A usage trend series with its summary."""

    data_points: list[UsageTrendDataPoint] = Field(default_factory=list, description="Series")
    start_date: datetime = Field(..., description="Requested range start")
    end_date: datetime = Field(..., description="Requested range end")
    period_type: PeriodType = Field(..., description="Granularity of the series")
    summary: dict[str, Any] = Field(default_factory=dict, description="Series summary")


class UsageDetailQuery(BaseModel):
    """Filters and paging of a raw event listing."""

    dimension_type: DimensionType | None = Field(None, description="Dimension type")
    dimension_id: str | None = Field(None, description="Access key ID or user ID")
    start_date: datetime | None = Field(None, description="Inclusive range start")
    end_date: datetime | None = Field(None, description="Inclusive range end")
    models: list[str] | None = Field(None, description="Only these models")
    features: list[str] | None = Field(None, description="Only these features")
    request_id: str | None = Field(None, description="Only events of this request")
    page: int = Field(default=1, ge=1, description="1-based page number")
    limit: int = Field(default=20, ge=1, le=1000, description="Page size")
    order: Literal["asc", "desc"] = Field(default="desc", description="Order by occur_time")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dictionary for logging."""
        return {
            "dimension_type": self.dimension_type.value if self.dimension_type else None,
            "dimension_id": self.dimension_id,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "models": self.models,
            "features": self.features,
            "request_id": self.request_id,
            "page": self.page,
            "limit": self.limit,
            "order": self.order,
        }


class PaginatedUsageDetailResult(BaseModel):
    """One page of raw usage events."""

    items: list[UsageEventRecord] = Field(default_factory=list, description="Events on this page")
    total_count: int = Field(default=0, ge=0, description="Events matching the filters")
    page: int = Field(default=1, ge=1, description="1-based page number")
    limit: int = Field(default=20, ge=1, description="Page size")

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_count / self.limit)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def has_next_page(self) -> bool:
        return self.page < self.total_pages

    @computed_field  # type: ignore[prop-decorator]
    @property
    def has_previous_page(self) -> bool:
        return self.page > 1
