"""Rollup service: incremental aggregation, rebuild and retention."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from opentelemetry import trace
from sqlalchemy.ext.asyncio import AsyncSession

from token_usage.aggregation.models import (
    AggregationResult,
    BucketKey,
    PeriodType,
    RebuildResult,
)
from token_usage.aggregation.ledger import (
    AggregationLedgerRepository,
    get_aggregation_ledger_repository,
)
from token_usage.aggregation.periods import (
    Span,
    as_naive_utc,
    covering_range,
    floor_period,
    period_bounds,
    uncovered_spans,
    utcnow,
)
from token_usage.aggregation.repository import (
    AggregateBucketRepository,
    get_aggregate_bucket_repository,
)
from token_usage.config import get_settings
from token_usage.db import get_session
from token_usage.events import (
    DimensionType,
    UsageAggregationData,
    UsageEventRepository,
    UsageTotals,
    get_usage_event_repository,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass
class _RunProgress:
    """Counters accumulated over one aggregation run."""

    processed: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    already_aggregated: list[str] = field(default_factory=list)


class AggregationService:
    """Folds raw usage events into hour/day/month buckets.

    This service:
    - Incrementally merges new raw events into buckets
    - Rebuilds a dimension value's buckets from raw events
    - Purges buckets whose period has expired

    Aggregation and rebuild each run in a single transaction. Calls made on
    one service instance are serialized. Incremental runs in other processes
    queue on the ledger lock of each dimension type, and bucket merges are
    atomic upserts.
    """

    def __init__(
        self,
        event_repo: UsageEventRepository | None = None,
        bucket_repo: AggregateBucketRepository | None = None,
        ledger_repo: AggregationLedgerRepository | None = None,
        enforce_watermark: bool | None = None,
        retention_days: int | None = None,
    ) -> None:
        """Initialize the aggregation service.

        Args:
            event_repo: Raw event repository (uses default if not provided).
            bucket_repo: Bucket repository (uses default if not provided).
            ledger_repo: Aggregated span ledger (uses default if not provided).
            enforce_watermark: Skip spans already recorded in the ledger
                (defaults to the ``aggregation_enforce_watermark`` setting).
            retention_days: Bucket retention for ``cleanup_by_retention``
                (defaults to the ``aggregation_retention_days`` setting).
        """
        settings = get_settings()
        self._events = event_repo or get_usage_event_repository()
        self._buckets = bucket_repo or get_aggregate_bucket_repository()
        self._ledger = ledger_repo or get_aggregation_ledger_repository()
        self._enforce_watermark = (
            settings.aggregation_enforce_watermark
            if enforce_watermark is None
            else enforce_watermark
        )
        self._retention_days = (
            settings.aggregation_retention_days if retention_days is None else retention_days
        )
        self._lock = asyncio.Lock()

    async def perform_incremental_aggregation(
        self,
        from_time: datetime,
        to_time: datetime,
    ) -> AggregationResult:
        """Merge raw events in ``[from_time, to_time)`` into buckets.

        Both dimension types are aggregated in one transaction. Summary rows
        with an empty dimension ID are reported in ``errors`` and skipped
        without rolling back the rest of the batch; any other failure rolls
        back the whole run.

        With watermark enforcement on, only the parts of the span missing
        from the aggregated span ledger are merged, so spans may be run in any
        order and repeated without double counting. Skipped parts are listed
        in ``already_aggregated``. With enforcement off, callers must not
        aggregate the same span twice.

        Args:
            from_time: Inclusive span start.
            to_time: Exclusive span end.

        Returns:
            AggregationResult with counts and errors.
        """
        from_time = as_naive_utc(from_time)
        to_time = as_naive_utc(to_time)

        if from_time >= to_time:
            error = f"Invalid aggregation window: {from_time.isoformat()} is not before {to_time.isoformat()}"
            logger.error(error)
            return AggregationResult(
                success=False,
                errors=[error],
                from_time=from_time,
                to_time=to_time,
            )

        logger.info(
            "Starting incremental aggregation: from=%s, to=%s",
            from_time.isoformat(),
            to_time.isoformat(),
        )

        progress = _RunProgress()
        async with self._lock:
            with tracer.start_as_current_span("usage.aggregate") as span:
                span.set_attribute("usage.from_time", from_time.isoformat())
                span.set_attribute("usage.to_time", to_time.isoformat())
                try:
                    async with get_session() as session:
                        for dimension_type in DimensionType:
                            await self._aggregate_dimension(
                                session, dimension_type, from_time, to_time, progress
                            )
                except Exception as e:
                    error = f"Aggregation transaction failed: {e}"
                    progress.errors.append(error)
                    span.record_exception(e)
                    logger.exception(
                        "Aggregation transaction failed: from=%s, to=%s",
                        from_time.isoformat(),
                        to_time.isoformat(),
                    )
                    return AggregationResult(
                        success=False,
                        processed_records=progress.processed,
                        skipped_records=progress.skipped,
                        errors=progress.errors,
                        from_time=from_time,
                        to_time=to_time,
                    )

                span.set_attribute("usage.processed_records", progress.processed)
                span.set_attribute("usage.updated_buckets", progress.updated)

        success = not progress.errors
        logger.info(
            "Incremental aggregation completed: success=%s, processed=%d, updated=%d, errors=%d",
            success,
            progress.processed,
            progress.updated,
            len(progress.errors),
        )

        return AggregationResult(
            success=success,
            processed_records=progress.processed,
            updated_buckets=progress.updated,
            skipped_records=progress.skipped,
            errors=progress.errors,
            already_aggregated=progress.already_aggregated,
            from_time=from_time,
            to_time=to_time,
        )

    async def run_pending_aggregation(self, now: datetime | None = None) -> AggregationResult:
        """Aggregate everything between the watermark and the current hour.

        Without a watermark the previous full hour is aggregated.

        Args:
            now: Reference time (default: current UTC time).

        Returns:
            AggregationResult; an empty successful result when nothing is pending.
        """
        to_time = floor_period(as_naive_utc(now or utcnow()), PeriodType.HOUR)
        default_start = to_time - timedelta(hours=1)

        watermarks = await self.get_watermarks()
        from_time = min(watermark or default_start for watermark in watermarks.values())

        if from_time >= to_time:
            logger.debug("No pending aggregation up to %s", to_time.isoformat())
            return AggregationResult(success=True, from_time=from_time, to_time=to_time)

        return await self.perform_incremental_aggregation(from_time, to_time)

    async def rebuild_aggregate_data(
        self,
        dimension_type: DimensionType | str,
        dimension_id: str,
        start_date: datetime,
        end_date: datetime,
    ) -> RebuildResult:
        """Delete and recompute one dimension value's buckets from raw events.

        For each granularity the range is widened to whole periods, every
        bucket inside it is deleted and then rebuilt from the raw events in
        the widened range. Repeating a rebuild therefore always converges to
        the same state.

        Args:
            dimension_type: Dimension type (enum or its string value).
            dimension_id: Dimension ID.
            start_date: Inclusive range start.
            end_date: Inclusive range end.

        Returns:
            RebuildResult with counts and errors.
        """
        requested_type = getattr(dimension_type, "value", dimension_type)

        try:
            dimension = DimensionType(dimension_type)
        except ValueError:
            error = f"Invalid dimension type: {requested_type}"
            logger.error("%s (dimension_id=%s)", error, dimension_id)
            return RebuildResult(
                success=False,
                dimension_type=str(requested_type),
                dimension_id=dimension_id,
                errors=[error],
            )

        start_date = as_naive_utc(start_date)
        end_date = as_naive_utc(end_date)
        error = None
        if not dimension_id:
            error = "Dimension ID must not be empty"
        elif start_date > end_date:
            error = f"Invalid rebuild range: {start_date.isoformat()} is after {end_date.isoformat()}"
        if error:
            logger.error("%s (dimension_type=%s)", error, dimension.value)
            return RebuildResult(
                success=False,
                dimension_type=dimension.value,
                dimension_id=dimension_id,
                errors=[error],
            )

        logger.info(
            "Starting aggregate data rebuild: dimension=%s:%s, start=%s, end=%s",
            dimension.value,
            dimension_id,
            start_date.isoformat(),
            end_date.isoformat(),
        )

        rebuilt = 0
        deleted = 0
        async with self._lock:
            with tracer.start_as_current_span("usage.rebuild") as span:
                span.set_attribute("usage.dimension_type", dimension.value)
                span.set_attribute("usage.dimension_id", dimension_id)
                try:
                    async with get_session() as session:
                        for period_type in PeriodType:
                            period_deleted, period_rebuilt = await self._rebuild_period(
                                session, dimension, dimension_id, period_type, start_date, end_date
                            )
                            deleted += period_deleted
                            rebuilt += period_rebuilt
                except Exception as e:
                    span.record_exception(e)
                    logger.exception(
                        "Rebuild transaction failed: dimension=%s:%s",
                        dimension.value,
                        dimension_id,
                    )
                    return RebuildResult(
                        success=False,
                        dimension_type=dimension.value,
                        dimension_id=dimension_id,
                        errors=[f"Rebuild transaction failed: {e}"],
                    )

                span.set_attribute("usage.rebuilt_buckets", rebuilt)
                span.set_attribute("usage.deleted_buckets", deleted)

        logger.info(
            "Aggregate data rebuild completed: dimension=%s:%s, rebuilt=%d, deleted=%d",
            dimension.value,
            dimension_id,
            rebuilt,
            deleted,
        )

        return RebuildResult(
            success=True,
            rebuilt_buckets=rebuilt,
            deleted_buckets=deleted,
            dimension_type=dimension.value,
            dimension_id=dimension_id,
        )

    async def cleanup_expired_data(self, before: datetime) -> int:
        """Delete every bucket whose period ended before ``before``.

        Best effort: failures are logged and reported as zero deletions.

        Args:
            before: Cutoff instant.

        Returns:
            Number of buckets deleted.
        """
        before = as_naive_utc(before)
        logger.info("Starting expired data cleanup: before=%s", before.isoformat())

        with tracer.start_as_current_span("usage.cleanup") as span:
            try:
                async with get_session() as session:
                    deleted = await self._buckets.delete_expired(session, before)
            except Exception as e:
                span.record_exception(e)
                logger.exception("Failed to cleanup expired data: before=%s", before.isoformat())
                return 0
            span.set_attribute("usage.deleted_buckets", deleted)

        logger.info(
            "Expired data cleanup completed: deleted=%d, before=%s",
            deleted,
            before.isoformat(),
        )
        return deleted

    async def cleanup_by_retention(self, now: datetime | None = None) -> int:
        """Apply the configured retention period.

        Args:
            now: Reference time (default: current UTC time).

        Returns:
            Number of buckets deleted; 0 when retention is disabled.
        """
        if self._retention_days <= 0:
            return 0
        reference = as_naive_utc(now or utcnow())
        return await self.cleanup_expired_data(reference - timedelta(days=self._retention_days))

    async def get_watermarks(self) -> dict[DimensionType, datetime | None]:
        """Get the aggregated watermark of every dimension type.

        Returns:
            Dimension type -> watermark (None when never aggregated).
        """
        async with get_session() as session:
            return {
                dimension_type: await self._ledger.get_watermark(session, dimension_type)
                for dimension_type in DimensionType
            }

    async def _aggregate_dimension(
        self,
        session: AsyncSession,
        dimension_type: DimensionType,
        from_time: datetime,
        to_time: datetime,
        progress: _RunProgress,
    ) -> None:
        """Aggregate one dimension type inside the caller's transaction."""
        requested = Span(from_time, to_time)
        if not self._enforce_watermark:
            await self._merge_span(session, dimension_type, requested, progress)
            return

        await self._ledger.lock(session, dimension_type)
        covered = await self._ledger.find_spans(session, dimension_type, from_time, to_time)

        for span in covered:
            overlap = Span(max(span.start, from_time), min(span.end, to_time))
            if overlap.start < overlap.end:
                progress.already_aggregated.append(f"{dimension_type.value} {overlap}")
                logger.info(
                    "Skipping %s span %s: already aggregated",
                    dimension_type.value,
                    overlap,
                )

        for gap in uncovered_spans(from_time, to_time, covered):
            await self._merge_span(session, dimension_type, gap, progress)

        await self._ledger.record(session, dimension_type, requested)

    async def _merge_span(
        self,
        session: AsyncSession,
        dimension_type: DimensionType,
        span: Span,
        progress: _RunProgress,
    ) -> None:
        """Fold one span's raw events into every bucket period they fall in."""
        groups = await self._events.read_events_grouped_by_time(
            session, dimension_type, None, span.start, span.end
        )

        by_id: dict[str, list[UsageAggregationData]] = {}
        for group in groups:
            by_id.setdefault(group.dimension_id, []).append(group)
        progress.processed += len(by_id)

        if "" in by_id:
            del by_id[""]
            progress.skipped += 1
            progress.errors.append(f"Empty {dimension_type.value} ID encountered in aggregation")
            logger.warning("Empty %s ID in aggregation: span=%s", dimension_type.value, span)

        for period_type in PeriodType:
            folded: dict[tuple[str, datetime], UsageTotals] = {}
            for dimension_id, rows in by_id.items():
                for row in rows:
                    key = (dimension_id, floor_period(row.occur_time, period_type))
                    folded[key] = folded.get(key, UsageTotals()) + row

            for (dimension_id, period_start), counters in folded.items():
                await self._buckets.add_usage(
                    session,
                    BucketKey(dimension_type, dimension_id, period_type, period_start),
                    period_bounds(period_start, period_type).end,
                    counters,
                )
                progress.updated += 1

    async def _rebuild_period(
        self,
        session: AsyncSession,
        dimension_type: DimensionType,
        dimension_id: str,
        period_type: PeriodType,
        start_date: datetime,
        end_date: datetime,
    ) -> tuple[int, int]:
        """Rebuild one granularity; returns (deleted, rebuilt) bucket counts."""
        widened = covering_range(start_date, end_date, period_type)

        deleted = await self._buckets.delete_range(
            session, dimension_type, dimension_id, period_type, widened.start, widened.end
        )

        groups = await self._events.read_events_grouped_by_time(
            session, dimension_type, dimension_id, widened.start, widened.end_exclusive
        )

        folded: dict[datetime, UsageTotals] = {}
        for group in groups:
            period_start = floor_period(group.occur_time, period_type)
            folded[period_start] = folded.get(period_start, UsageTotals()) + group

        for period_start, counters in folded.items():
            key = BucketKey(dimension_type, dimension_id, period_type, period_start)
            await self._buckets.add_usage(
                session, key, period_bounds(period_start, period_type).end, counters
            )

        return deleted, len(folded)


# Global service instance
_aggregation_service: AggregationService | None = None


def get_aggregation_service() -> AggregationService:
    """Get the global aggregation service instance.

    Returns:
        AggregationService instance.
    """
    global _aggregation_service
    if _aggregation_service is None:
        _aggregation_service = AggregationService()
    return _aggregation_service
