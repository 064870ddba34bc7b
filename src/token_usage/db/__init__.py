"""Database module for persistence.

Provides SQLAlchemy async engine, session management, and ORM models
for PostgreSQL (production) or SQLite (development).
"""

from token_usage.db.base import (
    Base,
    close_database,
    get_engine,
    get_session,
    get_session_factory,
    init_database,
)
from token_usage.db.models import (
    AggregatedSpanModel,
    AggregationWatermarkModel,
    UsageBucketModel,
    UsageEventModel,
)

__all__ = [
    # Base and session management
    "Base",
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_database",
    "close_database",
    # Models
    "UsageEventModel",
    "UsageBucketModel",
    "AggregationWatermarkModel",
    "AggregatedSpanModel",
]
