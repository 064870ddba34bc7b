"""API router for the system overview and data health endpoints."""

import logging
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query

from token_usage.aggregation.models import PeriodType
from token_usage.overview.models import (
    AdminOverviewFilter,
    SystemUsageOverview,
    UsageDataHealthMetrics,
)
from token_usage.overview.service import UsageOverviewService, get_usage_overview_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/usage/admin", tags=["usage-admin"])


@router.get(
    "/overview",
    response_model=SystemUsageOverview,
    summary="Get system usage overview",
    description="Get system-wide token totals and the number of active access keys and users.",
)
async def get_system_overview(
    service: Annotated[UsageOverviewService, Depends(get_usage_overview_service)],
    start: Annotated[datetime | None, Query(description="Range start (default: 30 days ago)")] = None,
    end: Annotated[datetime | None, Query(description="Range end (default: now)")] = None,
    period: Annotated[PeriodType, Query(description="Bucket granularity")] = PeriodType.DAY,
    models: Annotated[list[str] | None, Query(description="Only count these models")] = None,
    features: Annotated[list[str] | None, Query(description="Only count these features")] = None,
    include_trend_data: Annotated[bool, Query(description="Attach a trend series")] = False,
    include_health_metrics: Annotated[bool, Query(description="Attach data health")] = False,
) -> SystemUsageOverview:
    """Get the system usage overview.

    Args:
        service: Overview service.
        start: Range start.
        end: Range end.
        period: Bucket granularity.
        models: Model filter.
        features: Feature filter.
        include_trend_data: Whether to attach a trend series.
        include_health_metrics: Whether to attach data health metrics.

    Returns:
        System usage overview.
    """
    overview_filter = AdminOverviewFilter(
        start_date=start,
        end_date=end,
        aggregation_period=period,
        models=models,
        features=features,
        include_trend_data=include_trend_data,
        include_health_metrics=include_health_metrics,
    )
    return await service.get_system_overview(overview_filter)


@router.get(
    "/health",
    response_model=UsageDataHealthMetrics,
    summary="Get data health metrics",
    description="Check raw event freshness and compare buckets with raw events.",
)
async def get_data_health(
    service: Annotated[UsageOverviewService, Depends(get_usage_overview_service)],
) -> UsageDataHealthMetrics:
    """Get data health metrics."""
    return await service.get_data_health_metrics()
