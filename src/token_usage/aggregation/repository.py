"""Repository for pre-aggregated usage buckets."""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from token_usage.aggregation.models import (
    AggregateBucket,
    BucketKey,
    PeriodType,
    UsageTrendDataPoint,
)
from token_usage.aggregation.periods import utcnow
from token_usage.db import UsageBucketModel
from token_usage.events.models import DimensionType, UsageTotals

logger = logging.getLogger(__name__)

# Dialects with a native INSERT ... ON CONFLICT
_UPSERT_INSERTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}

_KEY_COLUMNS = ["dimension_type", "dimension_id", "period_type", "period_start"]

_COUNTER_COLUMNS = [
    "total_input_tokens",
    "total_cache_creation_input_tokens",
    "total_cache_read_input_tokens",
    "total_output_tokens",
    "total_requests",
]


def _row_values(key: BucketKey, period_end: datetime, counters: UsageTotals | None) -> dict[str, Any]:
    values: dict[str, Any] = {
        "dimension_type": key.dimension_type.value,
        "dimension_id": key.dimension_id,
        "period_type": key.period_type.value,
        "period_start": key.period_start,
        "period_end": period_end,
        "last_update_time": utcnow(),
    }
    for column in _COUNTER_COLUMNS:
        values[column] = getattr(counters, column) if counters is not None else 0
    return values


class AggregateBucketRepository:
    """Repository for usage buckets keyed by dimension and period.

    Every method runs in the caller's session so that a whole aggregation or
    rebuild commits or rolls back as one unit. Merging into a bucket is a
    single atomic upsert-with-increment on SQLite and PostgreSQL, which keeps
    concurrent writers from losing updates.
    """

    async def find_or_create(
        self,
        session: AsyncSession,
        key: BucketKey,
        period_end: datetime,
    ) -> AggregateBucket:
        """Find a bucket by key, creating an empty one if it does not exist.

        Args:
            session: Active database session.
            key: Bucket identity.
            period_end: Last second of the period, used on creation.

        Returns:
            The existing or newly created bucket.
        """
        insert = self._upsert_insert(session)
        if insert is not None:
            stmt = (
                insert(UsageBucketModel)
                .values(**_row_values(key, period_end, None))
                .on_conflict_do_nothing(index_elements=_KEY_COLUMNS)
            )
            await session.execute(stmt)
            model = await self._get_model(session, key)
        else:
            model = await self._get_model(session, key)
            if model is None:
                model = UsageBucketModel(**_row_values(key, period_end, None))
                session.add(model)
                await session.flush()
                logger.debug("Created bucket %s", key)

        return self._model_to_entity(model)

    async def add_usage(
        self,
        session: AsyncSession,
        key: BucketKey,
        period_end: datetime,
        counters: UsageTotals,
    ) -> None:
        """Add counters into a bucket, creating it on first contribution.

        Args:
            session: Active database session.
            key: Bucket identity.
            period_end: Last second of the period, used on creation.
            counters: Amounts to add.
        """
        insert = self._upsert_insert(session)
        if insert is not None:
            stmt = insert(UsageBucketModel).values(**_row_values(key, period_end, counters))
            increments: dict[str, Any] = {
                column: getattr(UsageBucketModel, column) + getattr(stmt.excluded, column)
                for column in _COUNTER_COLUMNS
            }
            increments["last_update_time"] = stmt.excluded.last_update_time
            await session.execute(
                stmt.on_conflict_do_update(index_elements=_KEY_COLUMNS, set_=increments)
            )
            return

        await self.find_or_create(session, key, period_end)
        values: dict[str, Any] = {
            column: getattr(UsageBucketModel, column) + getattr(counters, column)
            for column in _COUNTER_COLUMNS
        }
        values["last_update_time"] = utcnow()
        await session.execute(
            update(UsageBucketModel)
            .where(*self._key_clauses(key))
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def get(self, session: AsyncSession, key: BucketKey) -> AggregateBucket | None:
        """Get a bucket by key.

        Args:
            session: Active database session.
            key: Bucket identity.

        Returns:
            AggregateBucket if found, None otherwise.
        """
        model = await self._get_model(session, key)
        if model:
            return self._model_to_entity(model)
        return None

    async def delete_range(
        self,
        session: AsyncSession,
        dimension_type: DimensionType,
        dimension_id: str,
        period_type: PeriodType,
        start_date: datetime,
        end_date: datetime,
    ) -> int:
        """Delete one dimension value's buckets lying inside ``[start_date, end_date]``.

        Returns:
            Number of buckets deleted.
        """
        result = await session.execute(
            delete(UsageBucketModel)
            .where(UsageBucketModel.dimension_type == dimension_type.value)
            .where(UsageBucketModel.dimension_id == dimension_id)
            .where(UsageBucketModel.period_type == period_type.value)
            .where(UsageBucketModel.period_start >= start_date)
            .where(UsageBucketModel.period_end <= end_date)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def delete_expired(self, session: AsyncSession, before: datetime) -> int:
        """Delete every bucket whose period ended before ``before``.

        Returns:
            Number of buckets deleted.
        """
        result = await session.execute(
            delete(UsageBucketModel)
            .where(UsageBucketModel.period_end < before)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def find_by_dimension(
        self,
        session: AsyncSession,
        dimension_type: DimensionType,
        dimension_id: str,
        period_type: PeriodType,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> list[AggregateBucket]:
        """Get one dimension value's buckets that lie inside the date range.

        Args:
            session: Active database session.
            dimension_type: Dimension type.
            dimension_id: Dimension ID.
            period_type: Bucket granularity.
            start_date: Only buckets starting at or after this instant.
            end_date: Only buckets ending at or before this instant.

        Returns:
            Buckets ordered by period start.
        """
        stmt = (
            select(UsageBucketModel)
            .where(UsageBucketModel.dimension_type == dimension_type.value)
            .where(UsageBucketModel.dimension_id == dimension_id)
            .where(UsageBucketModel.period_type == period_type.value)
        )
        if start_date is not None:
            stmt = stmt.where(UsageBucketModel.period_start >= start_date)
        if end_date is not None:
            stmt = stmt.where(UsageBucketModel.period_end <= end_date)
        stmt = stmt.order_by(UsageBucketModel.period_start).execution_options(
            populate_existing=True
        )

        result = await session.execute(stmt)
        return [self._model_to_entity(model) for model in result.scalars()]

    async def find_trend_data(
        self,
        session: AsyncSession,
        dimension_type: DimensionType,
        dimension_id: str | None,
        period_type: PeriodType,
        start_date: datetime,
        end_date: datetime,
        limit: int = 100,
    ) -> list[UsageTrendDataPoint]:
        """Get per-period totals for a trend series.

        Args:
            session: Active database session.
            dimension_type: Dimension type.
            dimension_id: Dimension ID, or None to sum every ID of the type.
            period_type: Bucket granularity.
            start_date: Only buckets starting at or after this instant.
            end_date: Only buckets ending at or before this instant.
            limit: Maximum number of data points.

        Returns:
            Data points ordered by period start ascending.
        """
        stmt = (
            select(
                UsageBucketModel.period_start,
                UsageBucketModel.period_end,
                *self._sum_columns(),
            )
            .where(UsageBucketModel.dimension_type == dimension_type.value)
            .where(UsageBucketModel.period_type == period_type.value)
            .where(UsageBucketModel.period_start >= start_date)
            .where(UsageBucketModel.period_end <= end_date)
        )
        if dimension_id is not None:
            stmt = stmt.where(UsageBucketModel.dimension_id == dimension_id)
        stmt = (
            stmt.group_by(UsageBucketModel.period_start, UsageBucketModel.period_end)
            .order_by(UsageBucketModel.period_start)
            .limit(limit)
        )

        result = await session.execute(stmt)
        return [
            UsageTrendDataPoint(
                period_start=row.period_start,
                period_end=row.period_end,
                **self._counters(row),
            )
            for row in result
        ]

    async def get_system_totals(
        self,
        session: AsyncSession,
        start_date: datetime,
        end_date: datetime,
        period_type: PeriodType = PeriodType.DAY,
        dimension_type: DimensionType = DimensionType.ACCESS_KEY,
    ) -> UsageTotals:
        """Sum every bucket of one dimension type inside the date range.

        Only one dimension type is summed because each request is recorded
        under both its access key and its user. Events recorded only under a
        user, with no access key row, are therefore not included in the
        default ACCESS_KEY totals.

        Returns:
            Zero-filled totals.
        """
        stmt = (
            select(*self._sum_columns())
            .where(UsageBucketModel.dimension_type == dimension_type.value)
            .where(UsageBucketModel.period_type == period_type.value)
            .where(UsageBucketModel.period_start >= start_date)
            .where(UsageBucketModel.period_end <= end_date)
        )
        row = (await session.execute(stmt)).one()
        return UsageTotals(**self._counters(row))

    async def count_dimensions(
        self,
        session: AsyncSession,
        dimension_type: DimensionType,
        start_date: datetime,
        end_date: datetime,
        period_type: PeriodType = PeriodType.DAY,
    ) -> int:
        """Count the distinct dimension IDs with requests in buckets inside the range."""
        stmt = (
            select(func.count(func.distinct(UsageBucketModel.dimension_id)))
            .where(UsageBucketModel.dimension_type == dimension_type.value)
            .where(UsageBucketModel.period_type == period_type.value)
            .where(UsageBucketModel.period_start >= start_date)
            .where(UsageBucketModel.period_end <= end_date)
            .where(UsageBucketModel.total_requests > 0)
        )
        return int((await session.execute(stmt)).scalar_one())

    @staticmethod
    def _upsert_insert(session: AsyncSession) -> Any:
        return _UPSERT_INSERTS.get(session.get_bind().dialect.name)

    @staticmethod
    def _key_clauses(key: BucketKey) -> list[Any]:
        return [
            UsageBucketModel.dimension_type == key.dimension_type.value,
            UsageBucketModel.dimension_id == key.dimension_id,
            UsageBucketModel.period_type == key.period_type.value,
            UsageBucketModel.period_start == key.period_start,
        ]

    async def _get_model(self, session: AsyncSession, key: BucketKey) -> UsageBucketModel | None:
        result = await session.execute(
            select(UsageBucketModel)
            .where(*self._key_clauses(key))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _sum_columns() -> list[Any]:
        return [
            func.coalesce(func.sum(getattr(UsageBucketModel, column)), 0).label(column)
            for column in _COUNTER_COLUMNS
        ]

    @staticmethod
    def _counters(row: Any) -> dict[str, int]:
        return {column: int(getattr(row, column) or 0) for column in _COUNTER_COLUMNS}

    def _model_to_entity(self, model: UsageBucketModel) -> AggregateBucket:
        """Convert ORM model to Pydantic entity.

        Args:
            model: The ORM model.

        Returns:
            AggregateBucket entity.
        """
        return AggregateBucket(
            id=model.id,
            dimension_type=DimensionType(model.dimension_type),
            dimension_id=model.dimension_id,
            period_type=PeriodType(model.period_type),
            period_start=model.period_start,
            period_end=model.period_end,
            total_input_tokens=model.total_input_tokens,
            total_cache_creation_input_tokens=model.total_cache_creation_input_tokens,
            total_cache_read_input_tokens=model.total_cache_read_input_tokens,
            total_output_tokens=model.total_output_tokens,
            total_requests=model.total_requests,
            last_update_time=model.last_update_time,
        )


# Global repository instance
_bucket_repo: AggregateBucketRepository | None = None


def get_aggregate_bucket_repository() -> AggregateBucketRepository:
    """Get the global aggregate bucket repository instance.

    Returns:
        AggregateBucketRepository instance.
    """
    global _bucket_repo
    if _bucket_repo is None:
        _bucket_repo = AggregateBucketRepository()
    return _bucket_repo
