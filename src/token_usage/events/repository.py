"""Repository for reading (and appending) raw usage events."""

import logging
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from token_usage.db import UsageEventModel
from token_usage.events.models import (
    DimensionType,
    TopConsumerItem,
    UsageAggregationData,
    UsageEvent,
    UsageEventRecord,
    UsageTotals,
)

logger = logging.getLogger(__name__)


def _sum_columns() -> list[Any]:
    """Summed counter columns shared by every grouped read."""
    return [
        func.coalesce(func.sum(UsageEventModel.input_tokens), 0).label("total_input_tokens"),
        func.coalesce(func.sum(UsageEventModel.cache_creation_input_tokens), 0).label(
            "total_cache_creation_input_tokens"
        ),
        func.coalesce(func.sum(UsageEventModel.cache_read_input_tokens), 0).label(
            "total_cache_read_input_tokens"
        ),
        func.coalesce(func.sum(UsageEventModel.output_tokens), 0).label("total_output_tokens"),
        func.count(UsageEventModel.id).label("total_requests"),
    ]


def _counters(row: Any) -> dict[str, int]:
    return {
        "total_input_tokens": int(row.total_input_tokens or 0),
        "total_cache_creation_input_tokens": int(row.total_cache_creation_input_tokens or 0),
        "total_cache_read_input_tokens": int(row.total_cache_read_input_tokens or 0),
        "total_output_tokens": int(row.total_output_tokens or 0),
        "total_requests": int(row.total_requests or 0),
    }


class UsageEventRepository:
    """Repository for raw usage events.

    The event table is append-only: this core only reads it, apart from the
    append helpers used to populate it.
    """

    async def append(self, session: AsyncSession, events: Iterable[UsageEvent]) -> int:
        """Append usage events in the caller's transaction.

        Args:
            session: Active database session.
            events: Events to persist.

        Returns:
            Number of events appended.
        """
        models = [
            UsageEventModel(
                dimension_type=event.dimension_type.value,
                dimension_id=event.dimension_id,
                input_tokens=event.input_tokens,
                cache_creation_input_tokens=event.cache_creation_input_tokens,
                cache_read_input_tokens=event.cache_read_input_tokens,
                output_tokens=event.output_tokens,
                occur_time=event.occur_time,
                model=event.model,
                feature=event.feature,
                request_id=event.request_id,
                endpoint=event.endpoint,
                stop_reason=event.stop_reason,
            )
            for event in events
        ]
        session.add_all(models)
        await session.flush()

        logger.debug("Appended %d usage events", len(models))
        return len(models)

    async def append_one(self, session: AsyncSession, event: UsageEvent) -> None:
        """Append a single usage event."""
        await self.append(session, [event])

    async def read_events_grouped(
        self,
        session: AsyncSession,
        dimension_type: DimensionType,
        from_time: datetime,
        to_time: datetime,
    ) -> list[UsageAggregationData]:
        """Sum events in ``[from_time, to_time)`` per dimension value.

        Args:
            session: Active database session.
            dimension_type: Dimension to group by.
            from_time: Inclusive lower bound on occur_time.
            to_time: Exclusive upper bound on occur_time.

        Returns:
            One summary row per distinct dimension ID, ordered by ID.
        """
        stmt = (
            select(UsageEventModel.dimension_id, *_sum_columns())
            .where(UsageEventModel.dimension_type == dimension_type.value)
            .where(UsageEventModel.occur_time >= from_time)
            .where(UsageEventModel.occur_time < to_time)
            .group_by(UsageEventModel.dimension_id)
            .order_by(UsageEventModel.dimension_id)
        )
        result = await session.execute(stmt)

        return [
            UsageAggregationData(dimension_id=row.dimension_id or "", **_counters(row))
            for row in result
        ]

    async def read_events_grouped_by_time(
        self,
        session: AsyncSession,
        dimension_type: DimensionType,
        dimension_id: str | None,
        from_time: datetime,
        to_time: datetime,
    ) -> list[UsageAggregationData]:
        """Sum events in ``[from_time, to_time)`` per exact timestamp.

        Args:
            session: Active database session.
            dimension_type: Dimension type.
            dimension_id: Dimension ID, or None to group every ID of the type
                separately in one read.
            from_time: Inclusive lower bound on occur_time.
            to_time: Exclusive upper bound on occur_time.

        Returns:
            One summary row per distinct (dimension ID, occur_time), ordered
            by ID and then time.
        """
        stmt = (
            select(UsageEventModel.dimension_id, UsageEventModel.occur_time, *_sum_columns())
            .where(UsageEventModel.dimension_type == dimension_type.value)
            .where(UsageEventModel.occur_time >= from_time)
            .where(UsageEventModel.occur_time < to_time)
            .group_by(UsageEventModel.dimension_id, UsageEventModel.occur_time)
            .order_by(UsageEventModel.dimension_id, UsageEventModel.occur_time)
        )
        if dimension_id is not None:
            stmt = stmt.where(UsageEventModel.dimension_id == dimension_id)
        result = await session.execute(stmt)

        return [
            UsageAggregationData(
                dimension_id=row.dimension_id or "",
                occur_time=row.occur_time,
                **_counters(row),
            )
            for row in result
        ]

    async def calculate_statistics(
        self,
        session: AsyncSession,
        dimension_type: DimensionType,
        dimension_id: str | None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        models: list[str] | None = None,
        features: list[str] | None = None,
    ) -> UsageTotals:
        """Sum one dimension value's events with full filter support.

        Args:
            session: Active database session.
            dimension_type: Dimension type.
            dimension_id: Dimension ID, or None to sum every ID of the type.
            start_date: Inclusive lower bound on occur_time.
            end_date: Inclusive upper bound on occur_time.
            models: Only count events for these models.
            features: Only count events for these features.

        Returns:
            Zero-filled totals.
        """
        stmt = select(*_sum_columns()).where(UsageEventModel.dimension_type == dimension_type.value)
        if dimension_id is not None:
            stmt = stmt.where(UsageEventModel.dimension_id == dimension_id)
        stmt = self._apply_filters(stmt, start_date, end_date, models, features)

        row = (await session.execute(stmt)).one()
        return UsageTotals(**_counters(row))

    async def find_top_consumers(
        self,
        session: AsyncSession,
        dimension_type: DimensionType,
        start_date: datetime,
        end_date: datetime,
        limit: int = 10,
    ) -> list[TopConsumerItem]:
        """Rank dimension values by total tokens consumed in ``[start_date, end_date]``.

        Args:
            session: Active database session.
            dimension_type: Dimension type.
            start_date: Inclusive lower bound on occur_time.
            end_date: Inclusive upper bound on occur_time.
            limit: Maximum number of consumers.

        Returns:
            Consumers ordered by total tokens, highest first.
        """
        total_tokens = func.sum(
            UsageEventModel.input_tokens
            + UsageEventModel.cache_creation_input_tokens
            + UsageEventModel.cache_read_input_tokens
            + UsageEventModel.output_tokens
        ).label("total_tokens")

        stmt = (
            select(
                UsageEventModel.dimension_id,
                *_sum_columns(),
                func.min(UsageEventModel.occur_time).label("first_usage_time"),
                func.max(UsageEventModel.occur_time).label("last_usage_time"),
                total_tokens,
            )
            .where(UsageEventModel.dimension_type == dimension_type.value)
            .where(UsageEventModel.occur_time >= start_date)
            .where(UsageEventModel.occur_time <= end_date)
            .group_by(UsageEventModel.dimension_id)
            .order_by(total_tokens.desc(), UsageEventModel.dimension_id)
            .limit(limit)
        )
        result = await session.execute(stmt)

        return [
            TopConsumerItem(
                dimension_type=dimension_type,
                dimension_id=row.dimension_id,
                first_usage_time=row.first_usage_time,
                last_usage_time=row.last_usage_time,
                **_counters(row),
            )
            for row in result
        ]

    async def find_events(
        self,
        session: AsyncSession,
        dimension_type: DimensionType | None = None,
        dimension_id: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        models: list[str] | None = None,
        features: list[str] | None = None,
        request_id: str | None = None,
        offset: int = 0,
        limit: int = 20,
        descending: bool = True,
    ) -> list[UsageEventRecord]:
        """Get one page of raw events matching the filters.

        Args:
            session: Active database session.
            dimension_type: Only events of this dimension type.
            dimension_id: Only events of this dimension ID.
            start_date: Inclusive lower bound on occur_time.
            end_date: Inclusive upper bound on occur_time.
            models: Only events for these models.
            features: Only events for these features.
            request_id: Only events of this request.
            offset: Rows to skip.
            limit: Maximum rows.
            descending: Newest events first.

        Returns:
            Events ordered by occur_time, ties broken by row ID.
        """
        stmt = self._apply_detail_filters(
            select(UsageEventModel), dimension_type, dimension_id, request_id
        )
        stmt = self._apply_filters(stmt, start_date, end_date, models, features)
        if descending:
            stmt = stmt.order_by(UsageEventModel.occur_time.desc(), UsageEventModel.id.desc())
        else:
            stmt = stmt.order_by(UsageEventModel.occur_time, UsageEventModel.id)
        result = await session.execute(stmt.offset(offset).limit(limit))

        return [self._model_to_entity(model) for model in result.scalars()]

    async def count_events(
        self,
        session: AsyncSession,
        dimension_type: DimensionType | None = None,
        dimension_id: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        models: list[str] | None = None,
        features: list[str] | None = None,
        request_id: str | None = None,
    ) -> int:
        """Count raw events matching the same filters as ``find_events``."""
        stmt = self._apply_detail_filters(
            select(func.count(UsageEventModel.id)), dimension_type, dimension_id, request_id
        )
        stmt = self._apply_filters(stmt, start_date, end_date, models, features)
        return int((await session.execute(stmt)).scalar_one())

    async def count_dimensions(
        self,
        session: AsyncSession,
        dimension_type: DimensionType,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        models: list[str] | None = None,
        features: list[str] | None = None,
    ) -> int:
        """Count the distinct dimension IDs with at least one matching event."""
        stmt = select(func.count(func.distinct(UsageEventModel.dimension_id))).where(
            UsageEventModel.dimension_type == dimension_type.value
        )
        stmt = self._apply_filters(stmt, start_date, end_date, models, features)
        return int((await session.execute(stmt)).scalar_one())

    async def get_latest_occur_time(self, session: AsyncSession) -> datetime | None:
        """Get the occur_time of the newest event, None when there are none."""
        result = await session.execute(select(func.max(UsageEventModel.occur_time)))
        return result.scalar_one()

    @staticmethod
    def _apply_detail_filters(
        stmt: Select,
        dimension_type: DimensionType | None,
        dimension_id: str | None,
        request_id: str | None,
    ) -> Select:
        if dimension_type is not None:
            stmt = stmt.where(UsageEventModel.dimension_type == dimension_type.value)
        if dimension_id is not None:
            stmt = stmt.where(UsageEventModel.dimension_id == dimension_id)
        if request_id is not None:
            stmt = stmt.where(UsageEventModel.request_id == request_id)
        return stmt

    @staticmethod
    def _apply_filters(
        stmt: Select,
        start_date: datetime | None,
        end_date: datetime | None,
        models: list[str] | None,
        features: list[str] | None,
    ) -> Select:
        if start_date is not None:
            stmt = stmt.where(UsageEventModel.occur_time >= start_date)
        if end_date is not None:
            stmt = stmt.where(UsageEventModel.occur_time <= end_date)
        if models:
            stmt = stmt.where(UsageEventModel.model.in_(models))
        if features:
            stmt = stmt.where(UsageEventModel.feature.in_(features))
        return stmt

    @staticmethod
    def _model_to_entity(model: UsageEventModel) -> UsageEventRecord:
        return UsageEventRecord(
            id=model.id,
            dimension_type=DimensionType(model.dimension_type),
            dimension_id=model.dimension_id,
            input_tokens=model.input_tokens,
            cache_creation_input_tokens=model.cache_creation_input_tokens,
            cache_read_input_tokens=model.cache_read_input_tokens,
            output_tokens=model.output_tokens,
            occur_time=model.occur_time,
            model=model.model,
            feature=model.feature,
            request_id=model.request_id,
            endpoint=model.endpoint,
            stop_reason=model.stop_reason,
        )


# Global repository instance
_usage_event_repo: UsageEventRepository | None = None


def get_usage_event_repository() -> UsageEventRepository:
    """Get the global usage event repository instance.

    Returns:
        UsageEventRepository instance.
    """
    global _usage_event_repo
    if _usage_event_repo is None:
        _usage_event_repo = UsageEventRepository()
    return _usage_event_repo
