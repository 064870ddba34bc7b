"""API router for usage query endpoints."""

import logging
from datetime import datetime
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, Query

from token_usage.aggregation.models import PeriodType
from token_usage.events.models import DimensionType, TopConsumerItem, UsageTotals
from token_usage.query.models import (
    PaginatedUsageDetailResult,
    UsageDetailQuery,
    UsageQueryFilter,
    UsageStatisticsResult,
    UsageTrendQuery,
    UsageTrendResult,
)
from token_usage.query.service import UsageQueryService, get_usage_query_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/usage", tags=["usage"])


@router.get(
    "/statistics/{dimension_type}/{dimension_id}",
    response_model=UsageStatisticsResult,
    summary="Get usage statistics",
    description="Get token totals for one access key or user.",
)
async def get_usage_statistics(
    dimension_type: DimensionType,
    dimension_id: str,
    service: Annotated[UsageQueryService, Depends(get_usage_query_service)],
    start: Annotated[datetime | None, Query(description="Inclusive range start")] = None,
    end: Annotated[datetime | None, Query(description="Inclusive range end")] = None,
    models: Annotated[list[str] | None, Query(description="Only count these models")] = None,
    features: Annotated[list[str] | None, Query(description="Only count these features")] = None,
    period: Annotated[
        PeriodType, Query(description="Bucket granularity for pre-aggregated reads")
    ] = PeriodType.DAY,
) -> UsageStatisticsResult:
    """Get usage statistics for one dimension value.

    Args:
        dimension_type: Dimension type.
        dimension_id: Access key ID or user ID.
        service: Query service.
        start: Range start.
        end: Range end.
        models: Model filter.
        features: Feature filter.
        period: Bucket granularity.

    Returns:
        Usage statistics.
    """
    query_filter = UsageQueryFilter(
        start_date=start,
        end_date=end,
        models=models,
        features=features,
        aggregation_period=period,
    )
    return await service.get_usage_statistics(dimension_type, dimension_id, query_filter)


@router.get(
    "/trends",
    response_model=UsageTrendResult,
    summary="Get usage trends",
    description="Get a per-period token series from pre-aggregated buckets.",
)
async def get_usage_trends(
    start: Annotated[datetime, Query(description="Inclusive range start")],
    end: Annotated[datetime, Query(description="Inclusive range end")],
    service: Annotated[UsageQueryService, Depends(get_usage_query_service)],
    dimension_type: Annotated[
        DimensionType, Query(description="Dimension type")
    ] = DimensionType.ACCESS_KEY,
    dimension_id: Annotated[
        str | None, Query(description="Dimension ID (default: all)")
    ] = None,
    period: Annotated[
        PeriodType | None, Query(description="Granularity (default: chosen from the span)")
    ] = None,
    limit: Annotated[int, Query(ge=1, le=1000, description="Maximum data points")] = 100,
) -> UsageTrendResult:
    """Get a usage trend series.

    Returns:
        Trend series with summary.
    """
    query = UsageTrendQuery(
        start_date=start,
        end_date=end,
        dimension_type=dimension_type,
        dimension_id=dimension_id,
        period_type=period,
        limit=limit,
    )
    return await service.get_usage_trends(query)


@router.get(
    "/totals",
    response_model=UsageTotals,
    summary="Get system totals",
    description="Get system-wide token totals from pre-aggregated buckets.",
)
async def get_system_totals(
    start: Annotated[datetime, Query(description="Inclusive range start")],
    end: Annotated[datetime, Query(description="Inclusive range end")],
    service: Annotated[UsageQueryService, Depends(get_usage_query_service)],
    period: Annotated[PeriodType, Query(description="Bucket granularity")] = PeriodType.DAY,
) -> UsageTotals:
    """Get system-wide totals."""
    return await service.get_system_totals(start, end, period)


@router.get(
    "/top/{dimension_type}",
    response_model=list[TopConsumerItem],
    summary="Get top consumers",
    description="Rank access keys or users by tokens consumed.",
)
async def get_top_consumers(
    dimension_type: DimensionType,
    start: Annotated[datetime, Query(description="Inclusive range start")],
    end: Annotated[datetime, Query(description="Inclusive range end")],
    service: Annotated[UsageQueryService, Depends(get_usage_query_service)],
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum consumers")] = 10,
) -> list[TopConsumerItem]:
    """Get the top consumers of a dimension type."""
    return await service.get_top_consumers(dimension_type, start, end, limit)


@router.get(
    "/details",
    response_model=PaginatedUsageDetailResult,
    summary="List usage events",
    description="Page through raw usage events, newest first by default.",
)
async def get_usage_details(
    service: Annotated[UsageQueryService, Depends(get_usage_query_service)],
    dimension_type: Annotated[DimensionType | None, Query(description="Dimension type")] = None,
    dimension_id: Annotated[str | None, Query(description="Access key ID or user ID")] = None,
    start: Annotated[datetime | None, Query(description="Inclusive range start")] = None,
    end: Annotated[datetime | None, Query(description="Inclusive range end")] = None,
    models: Annotated[list[str] | None, Query(description="Only these models")] = None,
    features: Annotated[list[str] | None, Query(description="Only these features")] = None,
    request_id: Annotated[str | None, Query(description="Only events of this request")] = None,
    page: Annotated[int, Query(ge=1, description="1-based page number")] = 1,
    limit: Annotated[int, Query(ge=1, le=1000, description="Page size")] = 20,
    order: Annotated[Literal["asc", "desc"], Query(description="Order by occur_time")] = "desc",
) -> PaginatedUsageDetailResult:
    """Get one page of raw usage events."""
    query = UsageDetailQuery(
        dimension_type=dimension_type,
        dimension_id=dimension_id,
        start_date=start,
        end_date=end,
        models=models,
        features=features,
        request_id=request_id,
        page=page,
        limit=limit,
        order=order,
    )
    return await service.get_usage_details(query)
