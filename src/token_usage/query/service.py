"""Query service for usage statistics, trends and rankings."""

import logging
from datetime import datetime
from typing import Any

from token_usage.aggregation.models import PeriodType, UsageTrendDataPoint
from token_usage.aggregation.periods import as_naive_utc
from token_usage.aggregation.repository import (
    AggregateBucketRepository,
    get_aggregate_bucket_repository,
)
from token_usage.config import get_settings
from token_usage.db import get_session
from token_usage.events import (
    DimensionType,
    TopConsumerItem,
    UsageEventRepository,
    UsageTotals,
    get_usage_event_repository,
)
from token_usage.query.models import (
    PaginatedUsageDetailResult,
    UsageDetailQuery,
    UsageQueryFilter,
    UsageStatisticsResult,
    UsageTrendQuery,
    UsageTrendResult,
)

logger = logging.getLogger(__name__)


def _naive(value: datetime | None) -> datetime | None:
    return as_naive_utc(value) if value is not None else None


class UsageQueryService:
    """Service for answering usage queries.

    This service:
    - Routes statistics queries to buckets or to a raw event scan
    - Builds trend series from buckets
    - Reports system-wide totals and top consumers
    - Pages through raw events for audits

    Both statistics paths return the same result shape; the path taken is
    recorded in ``metadata["calculation_method"]``.
    """

    def __init__(
        self,
        event_repo: UsageEventRepository | None = None,
        bucket_repo: AggregateBucketRepository | None = None,
        pre_aggregation_threshold_days: int | None = None,
    ) -> None:
        """Initialize the query service.

        Args:
            event_repo: Raw event repository (uses default if not provided).
            bucket_repo: Bucket repository (uses default if not provided).
            pre_aggregation_threshold_days: Spans longer than this many days
                are served from buckets.
        """
        settings = get_settings()
        self._events = event_repo or get_usage_event_repository()
        self._buckets = bucket_repo or get_aggregate_bucket_repository()
        self._threshold_days = (
            settings.query_pre_aggregation_threshold_days
            if pre_aggregation_threshold_days is None
            else pre_aggregation_threshold_days
        )

    def should_use_pre_aggregated_data(self, query_filter: UsageQueryFilter) -> bool:
        """Decide whether a statistics query can be served from buckets.

        Long spans always use buckets; otherwise buckets are used only when
        no model or feature filter is present, since buckets hold no
        per-model or per-feature breakdown.
        """
        if query_filter.start_date is not None and query_filter.end_date is not None:
            if (query_filter.end_date - query_filter.start_date).days > self._threshold_days:
                return True
        return not query_filter.has_model_filter and not query_filter.has_feature_filter

    async def get_usage_statistics(
        self,
        dimension_type: DimensionType,
        dimension_id: str,
        query_filter: UsageQueryFilter | None = None,
    ) -> UsageStatisticsResult:
        """Get usage totals for one access key or user.

        Args:
            dimension_type: Dimension type.
            dimension_id: Dimension ID.
            query_filter: Date range, model and feature filters.

        Returns:
            UsageStatisticsResult tagged with the calculation method.
        """
        query_filter = query_filter or UsageQueryFilter()
        query_filter = query_filter.model_copy(
            update={
                "start_date": _naive(query_filter.start_date),
                "end_date": _naive(query_filter.end_date),
            }
        )
        use_buckets = self.should_use_pre_aggregated_data(query_filter)

        logger.debug(
            "Querying usage statistics: dimension=%s:%s, method=%s, filter=%s",
            dimension_type.value,
            dimension_id,
            "pre_aggregated" if use_buckets else "real_time",
            query_filter.to_dict(),
        )

        try:
            if use_buckets:
                return await self._get_pre_aggregated_stats(
                    dimension_type, dimension_id, query_filter
                )
            return await self._calculate_real_time_stats(dimension_type, dimension_id, query_filter)
        except Exception as e:
            logger.error(
                "Failed to query usage statistics: dimension=%s:%s, error=%s",
                dimension_type.value,
                dimension_id,
                e,
            )
            raise

    async def get_access_key_usage_statistics(
        self,
        access_key_id: str,
        query_filter: UsageQueryFilter | None = None,
    ) -> UsageStatisticsResult:
        """Get usage totals for one access key."""
        return await self.get_usage_statistics(DimensionType.ACCESS_KEY, access_key_id, query_filter)

    async def get_user_usage_statistics(
        self,
        user_id: str,
        query_filter: UsageQueryFilter | None = None,
    ) -> UsageStatisticsResult:
        """Get usage totals for one user."""
        return await self.get_usage_statistics(DimensionType.USER, user_id, query_filter)

    async def get_usage_trends(self, query: UsageTrendQuery) -> UsageTrendResult:
        """Get a per-period usage series from buckets.

        Args:
            query: Trend query; without a dimension ID every value of the
                dimension type is summed per period.

        Returns:
            UsageTrendResult ordered by period start.
        """
        period_type = query.resolved_period_type()
        start_date = as_naive_utc(query.start_date)
        end_date = as_naive_utc(query.end_date)

        logger.debug(
            "Querying usage trends: dimension=%s:%s, period=%s, start=%s, end=%s",
            query.dimension_type.value,
            query.dimension_id or "*",
            period_type.value,
            start_date.isoformat(),
            end_date.isoformat(),
        )

        try:
            async with get_session() as session:
                data_points = await self._buckets.find_trend_data(
                    session,
                    query.dimension_type,
                    query.dimension_id,
                    period_type,
                    start_date,
                    end_date,
                    limit=query.limit,
                )
        except Exception as e:
            logger.error(
                "Failed to query usage trends: dimension=%s:%s, error=%s",
                query.dimension_type.value,
                query.dimension_id or "*",
                e,
            )
            raise

        return UsageTrendResult(
            data_points=data_points,
            start_date=start_date,
            end_date=end_date,
            period_type=period_type,
            summary=self._calculate_trend_summary(data_points),
        )

    async def get_system_totals(
        self,
        start_date: datetime,
        end_date: datetime,
        period_type: PeriodType = PeriodType.DAY,
    ) -> UsageTotals:
        """Get system-wide totals from buckets.

        Sums the ACCESS_KEY buckets only. Events recorded only under a user
        are excluded.

        Args:
            start_date: Only buckets starting at or after this instant.
            end_date: Only buckets ending at or before this instant.
            period_type: Bucket granularity to sum.

        Returns:
            Zero-filled totals.
        """
        try:
            async with get_session() as session:
                return await self._buckets.get_system_totals(
                    session, as_naive_utc(start_date), as_naive_utc(end_date), period_type
                )
        except Exception as e:
            logger.error("Failed to query system totals: %s", e)
            raise

    async def get_top_consumers(
        self,
        dimension_type: DimensionType,
        start_date: datetime,
        end_date: datetime,
        limit: int = 10,
    ) -> list[TopConsumerItem]:
        """Rank access keys or users by tokens consumed.

        Args:
            dimension_type: Dimension type to rank.
            start_date: Inclusive range start.
            end_date: Inclusive range end.
            limit: Maximum number of consumers.

        Returns:
            Consumers ordered by total tokens, highest first.
        """
        logger.debug(
            "Querying top consumers: dimension=%s, start=%s, end=%s, limit=%d",
            dimension_type.value,
            start_date.isoformat(),
            end_date.isoformat(),
            limit,
        )

        try:
            async with get_session() as session:
                return await self._events.find_top_consumers(
                    session,
                    dimension_type,
                    as_naive_utc(start_date),
                    as_naive_utc(end_date),
                    limit=limit,
                )
        except Exception as e:
            logger.error("Failed to query top consumers: dimension=%s, error=%s", dimension_type.value, e)
            raise

    async def get_usage_details(self, query: UsageDetailQuery) -> PaginatedUsageDetailResult:
        """Get one page of raw usage events.

        Args:
            query: Filters, page and page size.

        Returns:
            PaginatedUsageDetailResult with the total match count.
        """
        filters = {
            "dimension_type": query.dimension_type,
            "dimension_id": query.dimension_id,
            "start_date": _naive(query.start_date),
            "end_date": _naive(query.end_date),
            "models": query.models,
            "features": query.features,
            "request_id": query.request_id,
        }
        logger.debug("Querying usage details: query=%s", query.to_dict())

        try:
            async with get_session() as session:
                items = await self._events.find_events(
                    session,
                    offset=query.offset,
                    limit=query.limit,
                    descending=query.order == "desc",
                    **filters,
                )
                total_count = await self._events.count_events(session, **filters)
        except Exception as e:
            logger.error("Failed to query usage details: query=%s, error=%s", query.to_dict(), e)
            raise

        return PaginatedUsageDetailResult(
            items=items,
            total_count=total_count,
            page=query.page,
            limit=query.limit,
        )

    async def _get_pre_aggregated_stats(
        self,
        dimension_type: DimensionType,
        dimension_id: str,
        query_filter: UsageQueryFilter,
    ) -> UsageStatisticsResult:
        async with get_session() as session:
            buckets = await self._buckets.find_by_dimension(
                session,
                dimension_type,
                dimension_id,
                query_filter.aggregation_period,
                query_filter.start_date,
                query_filter.end_date,
            )

        totals = sum(buckets, UsageTotals())

        ignored_filters = []
        if query_filter.has_model_filter:
            ignored_filters.append("models")
        if query_filter.has_feature_filter:
            ignored_filters.append("features")

        return UsageStatisticsResult(
            **totals.counters(),
            start_date=query_filter.start_date,
            end_date=query_filter.end_date,
            metadata={
                "dimension_type": dimension_type.value,
                "dimension_id": dimension_id,
                "calculation_method": "pre_aggregated",
                "data_points": len(buckets),
                "ignored_filters": ignored_filters,
                "filters": query_filter.to_dict(),
            },
        )

    async def _calculate_real_time_stats(
        self,
        dimension_type: DimensionType,
        dimension_id: str,
        query_filter: UsageQueryFilter,
    ) -> UsageStatisticsResult:
        async with get_session() as session:
            totals = await self._events.calculate_statistics(
                session,
                dimension_type,
                dimension_id,
                query_filter.start_date,
                query_filter.end_date,
                query_filter.models,
                query_filter.features,
            )

        return UsageStatisticsResult(
            **totals.counters(),
            start_date=query_filter.start_date,
            end_date=query_filter.end_date,
            metadata={
                "dimension_type": dimension_type.value,
                "dimension_id": dimension_id,
                "calculation_method": "real_time",
                "filters": query_filter.to_dict(),
            },
        )

    @staticmethod
    def _calculate_trend_summary(data_points: list[UsageTrendDataPoint]) -> dict[str, Any]:
        if not data_points:
            return {}

        total_tokens = sum(point.total_tokens for point in data_points)
        total_requests = sum(point.total_requests for point in data_points)
        peak = max(data_points, key=lambda point: point.total_tokens)

        return {
            "total_tokens": total_tokens,
            "total_requests": total_requests,
            "average_tokens_per_period": total_tokens / len(data_points),
            "peak_usage": peak.model_dump(mode="json"),
            "data_point_count": len(data_points),
        }


# Global service instance
_usage_query_service: UsageQueryService | None = None


def get_usage_query_service() -> UsageQueryService:
    """Get the global usage query service instance.

    Returns:
        UsageQueryService instance.
    """
    global _usage_query_service
    if _usage_query_service is None:
        _usage_query_service = UsageQueryService()
    return _usage_query_service
