"""Raw usage event store.

Events are attributed to either an access key or an end user and are
never modified once written.
"""

from token_usage.events.models import (
    DimensionType,
    TopConsumerItem,
    UsageAggregationData,
    UsageEvent,
    UsageEventRecord,
    UsageTotals,
)
from token_usage.events.repository import (
    UsageEventRepository,
    get_usage_event_repository,
)

__all__ = [
    # Models
    "DimensionType",
    "TopConsumerItem",
    "UsageAggregationData",
    "UsageEvent",
    "UsageEventRecord",
    "UsageTotals",
    # Repository
    "UsageEventRepository",
    "get_usage_event_repository",
]
