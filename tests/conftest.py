"""Pytest configuration and fixtures."""

import os
from datetime import datetime

import pytest
import pytest_asyncio

# Set test environment variables before importing application modules
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DEBUG"] = "false"
os.environ["AGGREGATION_SCHEDULER_ENABLED"] = "false"
os.environ["AGGREGATION_ENFORCE_WATERMARK"] = "true"
os.environ["OTEL_ENABLED"] = "false"


@pytest.fixture
def test_settings():
    """Provide test settings."""
    from token_usage.config import Settings

    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        debug=False,
        aggregation_scheduler_enabled=False,
        otel_enabled=False,
    )


@pytest_asyncio.fixture
async def db_session():
    """Initialize database for tests.

    Creates all tables and yields, then cleans up after.
    """
    from token_usage.db import close_database, init_database

    await init_database()
    yield
    await close_database()


@pytest.fixture
def make_event():
    """Factory for usage events."""
    from token_usage.events import DimensionType, UsageEvent

    def _make(
        dimension_id: str,
        occur_time: datetime,
        input_tokens: int = 0,
        cache_creation_input_tokens: int = 0,
        cache_read_input_tokens: int = 0,
        output_tokens: int = 0,
        dimension_type: DimensionType = DimensionType.ACCESS_KEY,
        model: str | None = None,
        feature: str | None = None,
    ) -> UsageEvent:
        return UsageEvent(
            dimension_type=dimension_type,
            dimension_id=dimension_id,
            input_tokens=input_tokens,
            cache_creation_input_tokens=cache_creation_input_tokens,
            cache_read_input_tokens=cache_read_input_tokens,
            output_tokens=output_tokens,
            occur_time=occur_time,
            model=model,
            feature=feature,
        )

    return _make


@pytest_asyncio.fixture
async def add_events(db_session):
    """Persist usage events in their own transaction."""
    from token_usage.db import get_session
    from token_usage.events import get_usage_event_repository

    async def _add(*events) -> int:
        async with get_session() as session:
            return await get_usage_event_repository().append(session, events)

    return _add


@pytest.fixture
def bucket_snapshot():
    """Read every bucket as ``{key: counters}`` for state comparisons."""
    from sqlalchemy import select

    from token_usage.db import UsageBucketModel, get_session

    async def _snapshot(dimension_type: str | None = None) -> dict[tuple, tuple]:
        stmt = select(UsageBucketModel)
        if dimension_type is not None:
            stmt = stmt.where(UsageBucketModel.dimension_type == dimension_type)
        async with get_session() as session:
            result = await session.execute(stmt)
            return {
                (m.dimension_type, m.dimension_id, m.period_type, m.period_start): (
                    m.period_end,
                    m.total_input_tokens,
                    m.total_cache_creation_input_tokens,
                    m.total_cache_read_input_tokens,
                    m.total_output_tokens,
                    m.total_requests,
                )
                for m in result.scalars()
            }

    return _snapshot
