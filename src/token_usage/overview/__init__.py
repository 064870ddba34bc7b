"""System-wide usage overview and data health checks."""

from token_usage.overview.models import (
    AdminOverviewFilter,
    DataConsistencyCheck,
    DataFreshnessMetric,
    HealthStatus,
    SystemUsageOverview,
    UsageDataHealthMetrics,
)
from token_usage.overview.service import (
    UsageOverviewService,
    freshness_score,
    get_usage_overview_service,
)
from token_usage.overview.router import router as overview_router

__all__ = [
    # Models
    "AdminOverviewFilter",
    "DataConsistencyCheck",
    "DataFreshnessMetric",
    "HealthStatus",
    "SystemUsageOverview",
    "UsageDataHealthMetrics",
    # Service
    "UsageOverviewService",
    "freshness_score",
    "get_usage_overview_service",
    # Router
    "overview_router",
]
