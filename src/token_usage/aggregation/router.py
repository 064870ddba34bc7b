"""API router for aggregation admin endpoints."""

import logging
from datetime import datetime, timedelta
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from token_usage.aggregation.models import AggregationResult, PeriodType, RebuildResult
from token_usage.aggregation.periods import floor_period, utcnow
from token_usage.aggregation.scheduler import get_aggregation_scheduler
from token_usage.aggregation.service import AggregationService, get_aggregation_service
from token_usage.events.models import DimensionType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/usage/admin", tags=["usage-admin"])


class AggregateRequest(BaseModel):
    """Manual aggregation request."""

    from_time: datetime | None = Field(None, description="Span start (default: previous hour)")
    to_time: datetime | None = Field(None, description="Span end (default: start of current hour)")


class RebuildRequest(BaseModel):
    """Rebuild request for one dimension value."""

    dimension_type: DimensionType = Field(..., description="Dimension type")
    dimension_id: str = Field(..., description="Access key ID or user ID")
    start_date: datetime = Field(..., description="Inclusive range start")
    end_date: datetime = Field(..., description="Inclusive range end")


class CleanupRequest(BaseModel):
    """Retention sweep request."""

    before: datetime | None = Field(
        None, description="Delete buckets ending before this instant (default: retention policy)"
    )


class CleanupResponse(BaseModel):
    """Retention sweep response."""

    deleted_count: int = Field(..., description="Buckets deleted")


class SchedulerStatus(BaseModel):
    """Scheduler status response."""

    running: bool = Field(..., description="Whether scheduler is running")
    aggregation_interval_seconds: int = Field(..., description="Aggregation interval")
    retention_interval_seconds: int = Field(..., description="Retention sweep interval")
    last_aggregation_run: str | None = Field(None, description="Last aggregation run timestamp")
    last_retention_run: str | None = Field(None, description="Last retention run timestamp")
    aggregation_run_count: int = Field(default=0, description="Total aggregation runs")
    retention_run_count: int = Field(default=0, description="Total retention runs")
    failed_aggregation_count: int = Field(default=0, description="Aggregation runs that failed")
    last_result: dict | None = Field(None, description="Result of the last aggregation run")


@router.post(
    "/aggregate",
    response_model=AggregationResult,
    summary="Trigger incremental aggregation",
    description="Merge raw events of a time span into the hour/day/month buckets.",
)
async def trigger_aggregation(
    request: AggregateRequest,
    service: Annotated[AggregationService, Depends(get_aggregation_service)],
) -> AggregationResult:
    """Trigger an incremental aggregation.

    Args:
        request: Aggregation request.
        service: Aggregation service.

    Returns:
        Aggregation result; check ``success`` for the outcome.
    """
    to_time = request.to_time or floor_period(utcnow(), PeriodType.HOUR)
    from_time = request.from_time or (to_time - timedelta(hours=1))

    return await service.perform_incremental_aggregation(from_time, to_time)


@router.post(
    "/rebuild",
    response_model=RebuildResult,
    summary="Rebuild aggregate data",
    description="Recompute one access key's or user's buckets from raw events.",
)
async def trigger_rebuild(
    request: RebuildRequest,
    service: Annotated[AggregationService, Depends(get_aggregation_service)],
) -> RebuildResult:
    """Rebuild one dimension value's buckets.

    Args:
        request: Rebuild request.
        service: Aggregation service.

    Returns:
        Rebuild result; check ``success`` for the outcome.
    """
    return await service.rebuild_aggregate_data(
        request.dimension_type,
        request.dimension_id,
        request.start_date,
        request.end_date,
    )


@router.post(
    "/cleanup",
    response_model=CleanupResponse,
    summary="Purge expired buckets",
    description="Delete buckets whose period ended before a cutoff.",
)
async def trigger_cleanup(
    request: CleanupRequest,
    service: Annotated[AggregationService, Depends(get_aggregation_service)],
) -> CleanupResponse:
    """Run a retention sweep.

    Args:
        request: Cleanup request.
        service: Aggregation service.

    Returns:
        Number of buckets deleted.
    """
    if request.before is None:
        deleted = await service.cleanup_by_retention()
    else:
        deleted = await service.cleanup_expired_data(request.before)
    return CleanupResponse(deleted_count=deleted)


@router.get(
    "/scheduler",
    response_model=SchedulerStatus,
    summary="Get scheduler status",
    description="Get the status of the aggregation scheduler.",
)
async def get_scheduler_status() -> SchedulerStatus:
    """Get scheduler status.

    Returns:
        Scheduler status.
    """
    try:
        return SchedulerStatus(**get_aggregation_scheduler().get_status())
    except Exception as e:
        logger.error("Failed to get scheduler status: %s", e)
        raise HTTPException(status_code=500, detail=str(e))
