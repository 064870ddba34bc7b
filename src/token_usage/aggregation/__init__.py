"""Pre-aggregated usage buckets.

This module handles:
- Hour/day/month period arithmetic
- Atomic bucket storage and the ledger of aggregated spans
- Incremental aggregation, rebuild and retention sweeps
- Scheduling of the periodic batch jobs
"""

from token_usage.aggregation.models import (
    AggregateBucket,
    AggregationFailedError,
    AggregationResult,
    BucketKey,
    PeriodType,
    RebuildResult,
    UsageTrendDataPoint,
)
from token_usage.aggregation.periods import (
    PeriodWindow,
    Span,
    covering_range,
    floor_period,
    next_period_start,
    period_bounds,
    period_windows,
    uncovered_spans,
)
from token_usage.aggregation.ledger import (
    AggregationLedgerRepository,
    get_aggregation_ledger_repository,
)
from token_usage.aggregation.repository import (
    AggregateBucketRepository,
    get_aggregate_bucket_repository,
)
from token_usage.aggregation.service import (
    AggregationService,
    get_aggregation_service,
)
from token_usage.aggregation.scheduler import (
    AggregationScheduler,
    get_aggregation_scheduler,
    start_aggregation_scheduler,
    stop_aggregation_scheduler,
)
from token_usage.aggregation.router import router as aggregation_router

__all__ = [
    # Models
    "AggregateBucket",
    "AggregationFailedError",
    "AggregationResult",
    "BucketKey",
    "PeriodType",
    "RebuildResult",
    "UsageTrendDataPoint",
    # Periods
    "PeriodWindow",
    "Span",
    "covering_range",
    "floor_period",
    "next_period_start",
    "period_bounds",
    "period_windows",
    "uncovered_spans",
    # Repositories
    "AggregationLedgerRepository",
    "get_aggregation_ledger_repository",
    "AggregateBucketRepository",
    "get_aggregate_bucket_repository",
    # Service
    "AggregationService",
    "get_aggregation_service",
    # Scheduler
    "AggregationScheduler",
    "get_aggregation_scheduler",
    "start_aggregation_scheduler",
    "stop_aggregation_scheduler",
    # Router
    "aggregation_router",
]
