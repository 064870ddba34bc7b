"""Data models for the system overview and data health reports."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, computed_field

from token_usage.aggregation.models import PeriodType, UsageTrendDataPoint
from token_usage.events.models import UsageTotals

DEFAULT_OVERVIEW_DAYS = 30


class HealthStatus(str, Enum):
    """Health bands of the overall data health score."""

    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    CRITICAL = "critical"

    @classmethod
    def from_score(cls, score: int) -> "HealthStatus":
        if score >= 90:
            return cls.EXCELLENT
        if score >= 80:
            return cls.GOOD
        if score >= 70:
            return cls.FAIR
        if score >= 50:
            return cls.POOR
        return cls.CRITICAL


class AdminOverviewFilter(BaseModel):
    """Filter for the system usage overview."""

    start_date: datetime | None = Field(None, description="Inclusive range start")
    end_date: datetime | None = Field(None, description="Inclusive range end")
    aggregation_period: PeriodType = Field(
        default=PeriodType.DAY, description="Bucket granularity for totals and trend data"
    )
    models: list[str] | None = Field(None, description="Only count these models")
    features: list[str] | None = Field(None, description="Only count these features")
    include_trend_data: bool = Field(default=False, description="Attach a trend series")
    include_health_metrics: bool = Field(default=False, description="Attach data health metrics")

    @property
    def has_model_filter(self) -> bool:
        return bool(self.models)

    @property
    def has_feature_filter(self) -> bool:
        return bool(self.features)

    def effective_date_range(self, now: datetime) -> tuple[datetime, datetime]:
        """Requested range; by default the last 30 days up to ``now``."""
        end_date = self.end_date or now
        start_date = self.start_date or end_date - timedelta(days=DEFAULT_OVERVIEW_DAYS)
        return start_date, end_date

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dictionary for logging and metadata."""
        return {
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "aggregation_period": self.aggregation_period.value,
            "models": self.models,
            "features": self.features,
            "include_trend_data": self.include_trend_data,
            "include_health_metrics": self.include_health_metrics,
        }


class DataFreshnessMetric(BaseModel):
    """How far the newest raw event lags behind now."""

    last_data_update: datetime | None = Field(None, description="occur_time of the newest event")
    lag_minutes: int = Field(..., ge=0, description="Minutes since the newest event")
    freshness_score: int = Field(..., ge=0, le=100, description="Score from the lag")
    is_within_sla: bool = Field(..., description="Whether the lag is within the freshness SLA")


class DataConsistencyCheck(BaseModel):
    """Outcome of one consistency check."""

    check_name: str = Field(..., description="Check identifier")
    description: str = Field(..., description="What the check compares")
    passing: bool = Field(..., description="Whether the check passed")
    error_message: str | None = Field(None, description="Why the check failed")
    severity: str = Field(default="medium", description="Impact when failing")


class UsageDataHealthMetrics(BaseModel):
    """Freshness and consistency of raw events and buckets.

    ``overall_health_score`` weighs the freshness score at 40% and the share
    of passing consistency checks at 60%.
    """

    generated_at: datetime = Field(..., description="When the checks ran")
    overall_health_score: int = Field(..., ge=0, le=100, description="Combined score")
    health_status: HealthStatus = Field(..., description="Band of the combined score")
    data_freshness: DataFreshnessMetric = Field(..., description="Raw event freshness")
    consistency_checks: list[DataConsistencyCheck] = Field(
        default_factory=list, description="Bucket and ledger consistency checks"
    )
    metadata: dict[str, Any] = Field(default_factory=dict, description="Check metadata")

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_healthy(self) -> bool:
        return self.health_status in (HealthStatus.EXCELLENT, HealthStatus.GOOD)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def needs_attention(self) -> bool:
        return self.health_status in (HealthStatus.FAIR, HealthStatus.POOR)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_critical(self) -> bool:
        return self.health_status == HealthStatus.CRITICAL

    @property
    def failed_checks(self) -> list[DataConsistencyCheck]:
        return [check for check in self.consistency_checks if not check.passing]


class SystemUsageOverview(UsageTotals):
    """System-wide usage over a date range.

    Token totals are taken from the ACCESS_KEY dimension, so events recorded
    only under a user are not counted; ``active_users_count`` still counts
    every user with events.
    """

    active_access_keys_count: int = Field(default=0, ge=0, description="Access keys with usage")
    active_users_count: int = Field(default=0, ge=0, description="Users with usage")
    start_date: datetime = Field(..., description="Effective range start")
    end_date: datetime = Field(..., description="Effective range end")
    trend_data: list[UsageTrendDataPoint] = Field(
        default_factory=list, description="System-wide trend series"
    )
    health_metrics: UsageDataHealthMetrics | None = Field(None, description="Data health")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Overview metadata")

    @property
    def day_count(self) -> int:
        """Whole days in the range, at least 1."""
        return max((self.end_date - self.start_date).days, 1)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def average_requests_per_day(self) -> float:
        return self.total_requests / self.day_count

    @computed_field  # type: ignore[prop-decorator]
    @property
    def average_tokens_per_day(self) -> float:
        return self.total_tokens / self.day_count

    @computed_field  # type: ignore[prop-decorator]
    @property
    def cache_usage_ratio(self) -> float:
        """Share of all input tokens that were cache creation or cache reads."""
        cache_tokens = self.total_cache_creation_input_tokens + self.total_cache_read_input_tokens
        all_input = self.total_input_tokens + cache_tokens
        return cache_tokens / all_input if all_input > 0 else 0.0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def cache_hit_ratio(self) -> float:
        """Share of cache tokens that were reads rather than writes."""
        cache_tokens = self.total_cache_creation_input_tokens + self.total_cache_read_input_tokens
        return self.total_cache_read_input_tokens / cache_tokens if cache_tokens > 0 else 0.0
