"""Repository for the ledger of aggregated spans."""

import logging
from datetime import datetime

from sqlalchemy import Select, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from token_usage.aggregation.periods import Span, utcnow
from token_usage.db import AggregatedSpanModel, AggregationWatermarkModel
from token_usage.events.models import DimensionType

logger = logging.getLogger(__name__)

# Dialects with a native INSERT ... ON CONFLICT
_UPSERT_INSERTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


def lock_statement(dimension_type: DimensionType) -> Select:
    """``SELECT ... FOR UPDATE`` of one dimension type's state row."""
    return (
        select(AggregationWatermarkModel)
        .where(AggregationWatermarkModel.dimension_type == dimension_type.value)
        .with_for_update()
        .execution_options(populate_existing=True)
    )


class AggregationLedgerRepository:
    """Repository recording which spans of raw events are already in buckets.

    Every incremental run of a dimension type starts with ``lock``, which
    creates the type's state row if needed and locks it until the run's
    transaction ends, so runs in different processes cannot read the same
    ledger and merge the same events twice. SQLite has no row locks: there
    the initial insert takes the database write lock, which serializes
    writers for the rest of the transaction.
    """

    async def lock(self, session: AsyncSession, dimension_type: DimensionType) -> datetime | None:
        """Lock a dimension type's aggregation state in the caller's transaction.

        Args:
            session: Active database session.
            dimension_type: Dimension type about to be aggregated.

        Returns:
            The current watermark, None when never aggregated.
        """
        values = {
            "dimension_type": dimension_type.value,
            "watermark": None,
            "updated_at": utcnow(),
        }
        insert = _UPSERT_INSERTS.get(session.get_bind().dialect.name)
        if insert is not None:
            await session.execute(
                insert(AggregationWatermarkModel)
                .values(**values)
                .on_conflict_do_nothing(index_elements=["dimension_type"])
            )
        elif await session.get(AggregationWatermarkModel, dimension_type.value) is None:
            session.add(AggregationWatermarkModel(**values))
            await session.flush()

        result = await session.execute(lock_statement(dimension_type))
        return result.scalar_one().watermark

    async def get_watermark(
        self, session: AsyncSession, dimension_type: DimensionType
    ) -> datetime | None:
        """Get the latest aggregated instant of a dimension type."""
        model = await session.get(AggregationWatermarkModel, dimension_type.value)
        return model.watermark if model else None

    async def find_spans(
        self,
        session: AsyncSession,
        dimension_type: DimensionType,
        from_time: datetime,
        to_time: datetime,
    ) -> list[Span]:
        """Get the recorded spans overlapping or touching ``[from_time, to_time)``.

        Returns:
            Spans ordered by start.
        """
        models = await self._find_models(session, dimension_type, from_time, to_time)
        return [Span(model.span_start, model.span_end) for model in models]

    async def record(self, session: AsyncSession, dimension_type: DimensionType, span: Span) -> Span:
        """Record a span as aggregated.

        The span is merged with every recorded span it overlaps or touches,
        and the watermark advances to the merged span's end if that is later.

        Args:
            session: Active database session.
            dimension_type: Dimension type.
            span: Newly aggregated span.

        Returns:
            The merged ledger entry containing ``span``.
        """
        models = await self._find_models(session, dimension_type, span.start, span.end)
        merged = Span(
            min([span.start, *(model.span_start for model in models)]),
            max([span.end, *(model.span_end for model in models)]),
        )
        now = utcnow()

        if models:
            keep, *redundant = models
            keep.span_start, keep.span_end, keep.updated_at = merged.start, merged.end, now
            for model in redundant:
                await session.delete(model)
        else:
            session.add(
                AggregatedSpanModel(
                    dimension_type=dimension_type.value,
                    span_start=merged.start,
                    span_end=merged.end,
                    updated_at=now,
                )
            )

        state = await session.get(AggregationWatermarkModel, dimension_type.value)
        if state is None:
            session.add(
                AggregationWatermarkModel(
                    dimension_type=dimension_type.value, watermark=merged.end, updated_at=now
                )
            )
        elif state.watermark is None or merged.end > state.watermark:
            state.watermark = merged.end
            state.updated_at = now

        await session.flush()
        logger.debug("Recorded %s span %s as aggregated", dimension_type.value, merged)
        return merged

    @staticmethod
    async def _find_models(
        session: AsyncSession,
        dimension_type: DimensionType,
        from_time: datetime,
        to_time: datetime,
    ) -> list[AggregatedSpanModel]:
        result = await session.execute(
            select(AggregatedSpanModel)
            .where(AggregatedSpanModel.dimension_type == dimension_type.value)
            .where(AggregatedSpanModel.span_start <= to_time)
            .where(AggregatedSpanModel.span_end >= from_time)
            .order_by(AggregatedSpanModel.span_start)
        )
        return list(result.scalars())


# Global repository instance
_ledger_repo: AggregationLedgerRepository | None = None


def get_aggregation_ledger_repository() -> AggregationLedgerRepository:
    """Get the global aggregation ledger repository instance.

    Returns:
        AggregationLedgerRepository instance.
    """
    global _ledger_repo
    if _ledger_repo is None:
        _ledger_repo = AggregationLedgerRepository()
    return _ledger_repo
