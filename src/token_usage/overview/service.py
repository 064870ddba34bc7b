"""System overview and data health service."""

import logging
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from token_usage.aggregation.ledger import (
    AggregationLedgerRepository,
    get_aggregation_ledger_repository,
)
from token_usage.aggregation.models import PeriodType
from token_usage.aggregation.periods import (
    ONE_SECOND,
    Span,
    as_naive_utc,
    floor_period,
    next_period_start,
    period_windows,
    uncovered_spans,
    utcnow,
)
from token_usage.aggregation.repository import (
    AggregateBucketRepository,
    get_aggregate_bucket_repository,
)
from token_usage.config import get_settings
from token_usage.db import get_session
from token_usage.events import (
    DimensionType,
    UsageEventRepository,
    UsageTotals,
    get_usage_event_repository,
)
from token_usage.overview.models import (
    AdminOverviewFilter,
    DataConsistencyCheck,
    DataFreshnessMetric,
    HealthStatus,
    SystemUsageOverview,
    UsageDataHealthMetrics,
)

logger = logging.getLogger(__name__)

# Lag in minutes reported when there are no raw events at all
NO_DATA_LAG_MINUTES = 9999

# (maximum lag in minutes, score), checked in order
_FRESHNESS_BANDS = ((15, 100), (60, 80), (240, 60), (1440, 40))

TREND_DATA_LIMIT = 100


def freshness_score(lag_minutes: int) -> int:
    """Score the lag of the newest raw event, 100 for under a quarter hour."""
    for max_lag, score in _FRESHNESS_BANDS:
        if lag_minutes <= max_lag:
            return score
    return 20


def _whole_periods(span: Span, period_type: PeriodType) -> Span | None:
    """Largest run of whole periods inside ``span``, None when there is none."""
    start = floor_period(span.start, period_type)
    if start < span.start:
        start = next_period_start(start, period_type)
    end = floor_period(span.end, period_type)
    return Span(start, end) if start < end else None


class UsageOverviewService:
    """Service for system-wide reports.

    This service:
    - Summarizes system usage and active access keys and users
    - Checks raw event freshness
    - Cross-checks buckets against the raw events they were built from
    """

    def __init__(
        self,
        event_repo: UsageEventRepository | None = None,
        bucket_repo: AggregateBucketRepository | None = None,
        ledger_repo: AggregationLedgerRepository | None = None,
        pre_aggregation_threshold_days: int | None = None,
        lookback_days: int | None = None,
        freshness_sla_minutes: int | None = None,
    ) -> None:
        """Initialize the overview service.

        Args:
            event_repo: Raw event repository (uses default if not provided).
            bucket_repo: Bucket repository (uses default if not provided).
            ledger_repo: Aggregated span ledger (uses default if not provided).
            pre_aggregation_threshold_days: Unfiltered ranges longer than
                this many days are summarized from buckets.
            lookback_days: Days of aggregated data the health checks compare.
            freshness_sla_minutes: Maximum lag of fresh raw data.
        """
        settings = get_settings()
        self._events = event_repo or get_usage_event_repository()
        self._buckets = bucket_repo or get_aggregate_bucket_repository()
        self._ledger = ledger_repo or get_aggregation_ledger_repository()
        self._threshold_days = (
            settings.query_pre_aggregation_threshold_days
            if pre_aggregation_threshold_days is None
            else pre_aggregation_threshold_days
        )
        self._lookback_days = lookback_days or settings.health_lookback_days
        self._freshness_sla_minutes = (
            freshness_sla_minutes or settings.health_freshness_sla_minutes
        )

    def should_use_pre_aggregated_data(
        self,
        start_date: datetime,
        end_date: datetime,
        overview_filter: AdminOverviewFilter,
    ) -> bool:
        """Buckets are used for long ranges without model or feature filters."""
        return (
            (end_date - start_date).days > self._threshold_days
            and not overview_filter.has_model_filter
            and not overview_filter.has_feature_filter
        )

    async def get_system_overview(
        self,
        overview_filter: AdminOverviewFilter | None = None,
        now: datetime | None = None,
    ) -> SystemUsageOverview:
        """Summarize system-wide usage over a date range.

        Trend data always come from buckets and ignore model and feature
        filters.

        Args:
            overview_filter: Range, filters and optional sections.
            now: Reference time for the default range (default: current UTC time).

        Returns:
            SystemUsageOverview tagged with the calculation method.
        """
        overview_filter = overview_filter or AdminOverviewFilter()
        now = as_naive_utc(now or utcnow())
        start_date, end_date = (
            as_naive_utc(value) for value in overview_filter.effective_date_range(now)
        )
        period_type = overview_filter.aggregation_period
        use_buckets = self.should_use_pre_aggregated_data(start_date, end_date, overview_filter)

        logger.info(
            "Generating system usage overview: start=%s, end=%s, method=%s",
            start_date.isoformat(),
            end_date.isoformat(),
            "pre_aggregated" if use_buckets else "real_time",
        )

        trend_data = []
        try:
            async with get_session() as session:
                if use_buckets:
                    totals = await self._buckets.get_system_totals(
                        session, start_date, end_date, period_type
                    )
                    active = {
                        dimension_type: await self._buckets.count_dimensions(
                            session, dimension_type, start_date, end_date, period_type
                        )
                        for dimension_type in DimensionType
                    }
                else:
                    totals = await self._events.calculate_statistics(
                        session,
                        DimensionType.ACCESS_KEY,
                        None,
                        start_date,
                        end_date,
                        overview_filter.models,
                        overview_filter.features,
                    )
                    active = {
                        dimension_type: await self._events.count_dimensions(
                            session,
                            dimension_type,
                            start_date,
                            end_date,
                            overview_filter.models,
                            overview_filter.features,
                        )
                        for dimension_type in DimensionType
                    }

                if overview_filter.include_trend_data:
                    trend_data = await self._buckets.find_trend_data(
                        session,
                        DimensionType.ACCESS_KEY,
                        None,
                        period_type,
                        start_date,
                        end_date,
                        limit=TREND_DATA_LIMIT,
                    )
        except Exception as e:
            logger.error(
                "Failed to generate system overview: filter=%s, error=%s",
                overview_filter.to_dict(),
                e,
            )
            raise

        health_metrics = None
        if overview_filter.include_health_metrics:
            health_metrics = await self.get_data_health_metrics(now)

        overview = SystemUsageOverview(
            **totals.counters(),
            active_access_keys_count=active[DimensionType.ACCESS_KEY],
            active_users_count=active[DimensionType.USER],
            start_date=start_date,
            end_date=end_date,
            trend_data=trend_data,
            health_metrics=health_metrics,
            metadata={
                "calculation_method": "pre_aggregated" if use_buckets else "real_time",
                "generated_at": now.isoformat(),
                "filters": overview_filter.to_dict(),
            },
        )

        logger.info(
            "System overview generated: total_tokens=%d, requests=%d, access_keys=%d, users=%d",
            overview.total_tokens,
            overview.total_requests,
            overview.active_access_keys_count,
            overview.active_users_count,
        )
        return overview

    async def get_data_health_metrics(self, now: datetime | None = None) -> UsageDataHealthMetrics:
        """Check raw event freshness and bucket consistency.

        For every dimension type and granularity, the buckets of whole
        periods inside recently aggregated spans are summed and compared with
        the raw events of the same periods. A coverage check reports holes
        between aggregated spans.

        Args:
            now: Reference time (default: current UTC time).

        Returns:
            UsageDataHealthMetrics with a score and its health band.
        """
        now = as_naive_utc(now or utcnow())
        window = Span(now - timedelta(days=self._lookback_days), now)

        logger.info("Generating data health metrics: window=%s", window)

        checks: list[DataConsistencyCheck] = []
        try:
            async with get_session() as session:
                freshness = await self._check_freshness(session, now)
                for dimension_type in DimensionType:
                    spans = [
                        Span(max(span.start, window.start), min(span.end, window.end))
                        for span in await self._ledger.find_spans(
                            session, dimension_type, window.start, window.end
                        )
                    ]
                    spans = [span for span in spans if span.start < span.end]
                    for period_type in PeriodType:
                        check = await self._check_bucket_sums(
                            session, dimension_type, period_type, spans
                        )
                        if check is not None:
                            checks.append(check)
                    if spans:
                        checks.append(self._check_coverage(dimension_type, spans))
        except Exception as e:
            logger.error("Failed to generate data health metrics: %s", e)
            raise

        passing_share = sum(check.passing for check in checks) / len(checks) if checks else 1.0
        score = round(freshness.freshness_score * 0.4 + passing_share * 100 * 0.6)

        metrics = UsageDataHealthMetrics(
            generated_at=now,
            overall_health_score=score,
            health_status=HealthStatus.from_score(score),
            data_freshness=freshness,
            consistency_checks=checks,
            metadata={
                "lookback_days": self._lookback_days,
                "freshness_sla_minutes": self._freshness_sla_minutes,
            },
        )

        logger.info(
            "Data health metrics generated: score=%d, status=%s, failed_checks=%d",
            score,
            metrics.health_status.value,
            len(metrics.failed_checks),
        )
        return metrics

    async def _check_freshness(self, session: AsyncSession, now: datetime) -> DataFreshnessMetric:
        latest = await self._events.get_latest_occur_time(session)
        if latest is None:
            lag_minutes = NO_DATA_LAG_MINUTES
        else:
            lag_minutes = max(int((now - latest).total_seconds() // 60), 0)

        return DataFreshnessMetric(
            last_data_update=latest,
            lag_minutes=lag_minutes,
            freshness_score=freshness_score(lag_minutes),
            is_within_sla=lag_minutes <= self._freshness_sla_minutes,
        )

    async def _check_bucket_sums(
        self,
        session: AsyncSession,
        dimension_type: DimensionType,
        period_type: PeriodType,
        spans: list[Span],
    ) -> DataConsistencyCheck | None:
        """Compare buckets with raw events; None when no whole period was aggregated."""
        raw = UsageTotals()
        buckets = UsageTotals()
        period_count = 0

        for span in spans:
            whole = _whole_periods(span, period_type)
            if whole is None:
                continue
            period_count += len(period_windows(whole.start, whole.end, period_type))
            rows = await self._events.read_events_grouped(
                session, dimension_type, whole.start, whole.end
            )
            raw = sum(rows, raw)
            buckets += await self._buckets.get_system_totals(
                session, whole.start, whole.end - ONE_SECOND, period_type, dimension_type
            )

        if period_count == 0:
            return None

        passing = raw.counters() == buckets.counters()
        error_message = None
        if not passing:
            error_message = (
                f"Buckets hold {buckets.total_tokens} tokens in {buckets.total_requests} requests, "
                f"raw events {raw.total_tokens} tokens in {raw.total_requests} requests"
            )
            logger.warning(
                "Bucket sums differ from raw events: dimension=%s, period=%s, %s",
                dimension_type.value,
                period_type.value,
                error_message,
            )

        return DataConsistencyCheck(
            check_name=f"aggregation_sum_match:{dimension_type.value}:{period_type.value}",
            description=(
                f"{period_type.value} buckets of {dimension_type.value} match raw events "
                f"over {period_count} aggregated periods"
            ),
            passing=passing,
            error_message=error_message,
            severity="high",
        )

    @staticmethod
    def _check_coverage(dimension_type: DimensionType, spans: list[Span]) -> DataConsistencyCheck:
        gaps = uncovered_spans(spans[0].start, spans[-1].end, spans)
        return DataConsistencyCheck(
            check_name=f"aggregation_coverage:{dimension_type.value}",
            description=f"Aggregated spans of {dimension_type.value} leave no raw events behind",
            passing=not gaps,
            error_message=(
                "Not aggregated: " + ", ".join(str(gap) for gap in gaps) if gaps else None
            ),
        )


# Global service instance
_usage_overview_service: UsageOverviewService | None = None


def get_usage_overview_service() -> UsageOverviewService:
    """Get the global usage overview service instance.

    Returns:
        UsageOverviewService instance.
    """
    global _usage_overview_service
    if _usage_overview_service is None:
        _usage_overview_service = UsageOverviewService()
    return _usage_overview_service
