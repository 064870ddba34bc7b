"""Usage queries over raw events and pre-aggregated buckets."""

from token_usage.query.models import (
    PaginatedUsageDetailResult,
    UsageDetailQuery,
    UsageQueryFilter,
    UsageStatisticsResult,
    UsageTrendQuery,
    UsageTrendResult,
)
from token_usage.query.service import (
    UsageQueryService,
    get_usage_query_service,
)
from token_usage.query.router import router as query_router

__all__ = [
    # Models
    "PaginatedUsageDetailResult",
    "UsageDetailQuery",
    "UsageQueryFilter",
    "UsageStatisticsResult",
    "UsageTrendQuery",
    "UsageTrendResult",
    # Service
    "UsageQueryService",
    "get_usage_query_service",
    # Router
    "query_router",
]
