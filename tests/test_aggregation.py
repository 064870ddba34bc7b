"""Tests for incremental aggregation, rebuild and retention."""

from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.dialects import postgresql

from token_usage.aggregation import (
    AggregateBucketRepository,
    AggregationFailedError,
    AggregationLedgerRepository,
    AggregationService,
    BucketKey,
    PeriodType,
    Span,
)
from token_usage.aggregation.ledger import lock_statement
from token_usage.db import (
    AggregationWatermarkModel,
    close_database,
    get_session,
    init_database,
)
from token_usage.events import DimensionType

JAN_15 = datetime(2024, 1, 15)
JAN_16 = datetime(2024, 1, 16)
JAN_10 = datetime(2024, 1, 10)
JAN_11 = datetime(2024, 1, 11)
JAN_MONTH = datetime(2024, 1, 1)


@pytest.fixture
def ak_1_events(make_event):
    """Three requests by ak_1 (and u_1) on 2024-01-15."""
    events = []
    for dimension_type, dimension_id in (
        (DimensionType.ACCESS_KEY, "ak_1"),
        (DimensionType.USER, "u_1"),
    ):
        events += [
            make_event(
                dimension_id,
                datetime(2024, 1, 15, 10, 5),
                input_tokens=100,
                output_tokens=50,
                dimension_type=dimension_type,
            ),
            make_event(
                dimension_id,
                datetime(2024, 1, 15, 10, 40),
                input_tokens=150,
                cache_creation_input_tokens=10,
                output_tokens=60,
                dimension_type=dimension_type,
            ),
            make_event(
                dimension_id,
                datetime(2024, 1, 15, 14, 20),
                input_tokens=50,
                cache_read_input_tokens=5,
                output_tokens=40,
                dimension_type=dimension_type,
            ),
        ]
    return events


async def get_bucket(
    dimension_id: str,
    period_type: PeriodType,
    period_start: datetime,
    dimension_type: DimensionType = DimensionType.ACCESS_KEY,
):
    async with get_session() as session:
        return await AggregateBucketRepository().get(
            session, BucketKey(dimension_type, dimension_id, period_type, period_start)
        )


class TestIncrementalAggregation:
    """Tests for perform_incremental_aggregation."""

    @pytest.mark.asyncio
    async def test_day_bucket_totals(self, add_events, ak_1_events):
        await add_events(*ak_1_events)
        service = AggregationService()

        result = await service.perform_incremental_aggregation(JAN_15, JAN_16)

        assert result.success is True
        assert result.errors == []
        # One summary row per dimension type
        assert result.processed_records == 2
        # Two hour buckets, one day and one month bucket per dimension type
        assert result.updated_buckets == 8

        day = await get_bucket("ak_1", PeriodType.DAY, JAN_15)
        assert day.total_input_tokens == 300
        assert day.total_cache_creation_input_tokens == 10
        assert day.total_cache_read_input_tokens == 5
        assert day.total_output_tokens == 150
        assert day.total_requests == 3
        assert day.total_tokens == 465
        assert day.period_end == datetime(2024, 1, 15, 23, 59, 59)

        user_day = await get_bucket("u_1", PeriodType.DAY, JAN_15, DimensionType.USER)
        assert user_day.total_tokens == 465

    @pytest.mark.asyncio
    async def test_each_hour_gets_only_its_events(self, add_events, ak_1_events):
        await add_events(*ak_1_events)

        await AggregationService().perform_incremental_aggregation(JAN_15, JAN_16)

        ten = await get_bucket("ak_1", PeriodType.HOUR, datetime(2024, 1, 15, 10))
        fourteen = await get_bucket("ak_1", PeriodType.HOUR, datetime(2024, 1, 15, 14))
        month = await get_bucket("ak_1", PeriodType.MONTH, datetime(2024, 1, 1))

        assert ten.total_requests == 2
        assert ten.total_tokens == 370
        assert fourteen.total_requests == 1
        assert fourteen.total_tokens == 95
        assert await get_bucket("ak_1", PeriodType.HOUR, datetime(2024, 1, 15, 11)) is None
        assert month.total_tokens == 465

    @pytest.mark.asyncio
    async def test_split_runs_equal_single_run(self, add_events, ak_1_events, bucket_snapshot):
        await add_events(*ak_1_events)
        service = AggregationService()
        await service.perform_incremental_aggregation(JAN_15, datetime(2024, 1, 15, 10, 30))
        await service.perform_incremental_aggregation(datetime(2024, 1, 15, 10, 30), JAN_16)
        split_state = await bucket_snapshot()

        # Start again from an empty database
        await close_database()
        await init_database()
        await add_events(*ak_1_events)
        await AggregationService().perform_incremental_aggregation(JAN_15, JAN_16)

        assert split_state == await bucket_snapshot()

    @pytest.mark.asyncio
    async def test_empty_dimension_id_is_skipped(self, add_events, make_event):
        await add_events(
            make_event("ak_1", datetime(2024, 1, 15, 9), input_tokens=10),
            make_event("", datetime(2024, 1, 15, 9, 30), input_tokens=99),
        )

        result = await AggregationService().perform_incremental_aggregation(JAN_15, JAN_16)

        assert result.success is False
        assert result.skipped_records == 1
        assert result.errors == ["Empty access_key ID encountered in aggregation"]

        # The valid rows were still committed
        day = await get_bucket("ak_1", PeriodType.DAY, JAN_15)
        assert day.total_input_tokens == 10
        assert await get_bucket("", PeriodType.DAY, JAN_15) is None

        with pytest.raises(AggregationFailedError):
            result.raise_for_status()

    @pytest.mark.asyncio
    async def test_failure_rolls_back_everything(self, add_events, ak_1_events, bucket_snapshot):
        await add_events(*ak_1_events)
        bucket_repo = AggregateBucketRepository()
        real_add_usage = bucket_repo.add_usage
        calls = []

        async def fail_on_third_merge(*args, **kwargs):
            calls.append(args)
            if len(calls) == 3:
                raise RuntimeError("disk full")
            await real_add_usage(*args, **kwargs)

        service = AggregationService(bucket_repo=bucket_repo)
        with patch.object(bucket_repo, "add_usage", AsyncMock(side_effect=fail_on_third_merge)):
            result = await service.perform_incremental_aggregation(JAN_15, JAN_16)

        assert result.success is False
        assert result.updated_buckets == 0
        assert result.errors == ["Aggregation transaction failed: disk full"]
        assert await bucket_snapshot() == {}
        assert await service.get_watermarks() == {
            DimensionType.ACCESS_KEY: None,
            DimensionType.USER: None,
        }

    @pytest.mark.asyncio
    async def test_invalid_window(self, db_session):
        result = await AggregationService().perform_incremental_aggregation(JAN_16, JAN_15)

        assert result.success is False
        assert result.errors[0].startswith("Invalid aggregation window")

    @pytest.mark.asyncio
    async def test_empty_window_succeeds(self, db_session):
        result = await AggregationService().perform_incremental_aggregation(JAN_15, JAN_16)

        assert result.success is True
        assert result.processed_records == 0
        assert result.updated_buckets == 0


class TestWatermark:
    """Tests for overlapping span protection."""

    @pytest.mark.asyncio
    async def test_repeated_window_is_not_double_counted(
        self, add_events, ak_1_events, bucket_snapshot
    ):
        await add_events(*ak_1_events)
        service = AggregationService()

        await service.perform_incremental_aggregation(JAN_15, JAN_16)
        first_state = await bucket_snapshot()
        second = await service.perform_incremental_aggregation(JAN_15, JAN_16)

        assert second.success is True
        assert second.updated_buckets == 0
        assert second.already_aggregated == [
            "access_key [2024-01-15T00:00:00, 2024-01-16T00:00:00)",
            "user [2024-01-15T00:00:00, 2024-01-16T00:00:00)",
        ]
        assert await bucket_snapshot() == first_state
        assert (await service.get_watermarks())[DimensionType.ACCESS_KEY] == JAN_16

    @pytest.mark.asyncio
    async def test_overlapping_window_only_merges_the_gap(self, add_events, ak_1_events, make_event):
        await add_events(*ak_1_events, make_event("ak_1", datetime(2024, 1, 16, 2), input_tokens=7))
        service = AggregationService()

        await service.perform_incremental_aggregation(JAN_15, JAN_16)
        await service.perform_incremental_aggregation(
            datetime(2024, 1, 15, 12), datetime(2024, 1, 16, 6)
        )

        assert (await get_bucket("ak_1", PeriodType.DAY, JAN_15)).total_requests == 3
        assert (await get_bucket("ak_1", PeriodType.DAY, JAN_16)).total_input_tokens == 7
        assert (await get_bucket("ak_1", PeriodType.MONTH, datetime(2024, 1, 1))).total_requests == 4

    @pytest.mark.asyncio
    async def test_without_watermark_caller_must_not_overlap(self, add_events, ak_1_events):
        await add_events(*ak_1_events)
        service = AggregationService(enforce_watermark=False)

        await service.perform_incremental_aggregation(JAN_15, JAN_16)
        await service.perform_incremental_aggregation(JAN_15, JAN_16)

        assert (await get_bucket("ak_1", PeriodType.DAY, JAN_15)).total_requests == 6

    @pytest.mark.asyncio
    async def test_run_pending_aggregation(self, add_events, ak_1_events):
        await add_events(*ak_1_events)
        service = AggregationService()

        # No watermark yet: only the previous full hour
        first = await service.run_pending_aggregation(now=datetime(2024, 1, 15, 11, 5))
        assert (first.from_time, first.to_time) == (
            datetime(2024, 1, 15, 10),
            datetime(2024, 1, 15, 11),
        )
        assert (await get_bucket("ak_1", PeriodType.DAY, JAN_15)).total_requests == 2

        # Catch up from the watermark
        second = await service.run_pending_aggregation(now=datetime(2024, 1, 15, 15, 30))
        assert second.from_time == datetime(2024, 1, 15, 11)
        assert (await get_bucket("ak_1", PeriodType.DAY, JAN_15)).total_requests == 3

        # Nothing pending within the same hour
        third = await service.run_pending_aggregation(now=datetime(2024, 1, 15, 15, 45))
        assert third.success is True
        assert third.processed_records == 0


class TestSpanLedger:
    """Tests for out of order and repeated spans."""

    @pytest.fixture
    def scattered_events(self, make_event):
        """ak_1 requests on 2024-01-10, 2024-01-12 and 2024-01-15."""
        return [
            make_event("ak_1", datetime(2024, 1, 10, 9), input_tokens=100),
            make_event("ak_1", datetime(2024, 1, 12, 9), input_tokens=5),
            make_event("ak_1", datetime(2024, 1, 15, 9), input_tokens=200),
        ]

    @pytest.mark.asyncio
    async def test_earlier_window_after_later_window(self, add_events, scattered_events):
        await add_events(*scattered_events)
        service = AggregationService()

        await service.perform_incremental_aggregation(JAN_15, JAN_16)
        earlier = await service.perform_incremental_aggregation(JAN_10, JAN_11)

        assert earlier.success is True
        assert earlier.already_aggregated == []
        month = await get_bucket("ak_1", PeriodType.MONTH, JAN_MONTH)
        assert month.total_input_tokens == 300
        assert month.total_requests == 2
        assert (await get_bucket("ak_1", PeriodType.DAY, JAN_10)).total_input_tokens == 100
        # The watermark never moves backwards
        assert (await service.get_watermarks())[DimensionType.ACCESS_KEY] == JAN_16

    @pytest.mark.asyncio
    async def test_wide_window_fills_only_the_gaps(self, add_events, scattered_events):
        await add_events(*scattered_events)
        service = AggregationService()
        await service.perform_incremental_aggregation(JAN_15, JAN_16)
        await service.perform_incremental_aggregation(JAN_10, JAN_11)

        result = await service.perform_incremental_aggregation(JAN_10, JAN_16)

        assert result.success is True
        assert [s for s in result.already_aggregated if s.startswith("access_key")] == [
            "access_key [2024-01-10T00:00:00, 2024-01-11T00:00:00)",
            "access_key [2024-01-15T00:00:00, 2024-01-16T00:00:00)",
        ]
        # Only the 2024-01-12 event was new: one hour, one day, one month
        assert result.updated_buckets == 3
        month = await get_bucket("ak_1", PeriodType.MONTH, JAN_MONTH)
        assert month.total_input_tokens == 305
        assert month.total_requests == 3

        async with get_session() as session:
            spans = await AggregationLedgerRepository().find_spans(
                session, DimensionType.ACCESS_KEY, JAN_10, JAN_16
            )
        assert spans == [Span(JAN_10, JAN_16)]

    @pytest.mark.asyncio
    async def test_separate_service_instances_share_the_ledger(
        self, add_events, ak_1_events, bucket_snapshot
    ):
        await add_events(*ak_1_events)

        await AggregationService().perform_incremental_aggregation(JAN_15, JAN_16)
        first_state = await bucket_snapshot()
        again = await AggregationService().perform_incremental_aggregation(JAN_15, JAN_16)

        assert again.updated_buckets == 0
        assert await bucket_snapshot() == first_state

    @pytest.mark.asyncio
    async def test_touching_spans_are_merged(self, db_session):
        ledger = AggregationLedgerRepository()

        async with get_session() as session:
            await ledger.record(session, DimensionType.USER, Span(JAN_15, JAN_16))
            merged = await ledger.record(
                session, DimensionType.USER, Span(JAN_16, datetime(2024, 1, 17))
            )

        async with get_session() as session:
            spans = await ledger.find_spans(session, DimensionType.USER, JAN_10, JAN_16)
            watermark = await ledger.get_watermark(session, DimensionType.USER)

        assert merged == Span(JAN_15, datetime(2024, 1, 17))
        assert spans == [merged]
        assert watermark == datetime(2024, 1, 17)

    @pytest.mark.asyncio
    async def test_lock_creates_state_row(self, db_session):
        ledger = AggregationLedgerRepository()

        async with get_session() as session:
            assert await ledger.lock(session, DimensionType.USER) is None
            # Locking again reuses the row
            assert await ledger.lock(session, DimensionType.USER) is None

        async with get_session() as session:
            state = await session.get(AggregationWatermarkModel, "user")
        assert state is not None
        assert state.watermark is None

    def test_lock_statement_selects_for_update(self):
        sql = str(lock_statement(DimensionType.ACCESS_KEY).compile(dialect=postgresql.dialect()))

        assert "FROM aggregation_watermarks" in sql
        assert sql.rstrip().endswith("FOR UPDATE")


class TestRebuild:
    """Tests for rebuild_aggregate_data."""

    @pytest.mark.asyncio
    async def test_rebuild_repairs_and_converges(self, add_events, ak_1_events, bucket_snapshot):
        await add_events(*ak_1_events)
        service = AggregationService()
        await service.perform_incremental_aggregation(JAN_15, JAN_16)
        expected = await bucket_snapshot()

        # Corrupt the ak_1 day bucket by counting it twice
        day = await get_bucket("ak_1", PeriodType.DAY, JAN_15)
        async with get_session() as session:
            await AggregateBucketRepository().add_usage(session, day.key, day.period_end, day)
        assert await bucket_snapshot() != expected

        # A range touching part of one hour still repairs whole periods
        result = await service.rebuild_aggregate_data(
            DimensionType.ACCESS_KEY,
            "ak_1",
            datetime(2024, 1, 15, 10, 10),
            datetime(2024, 1, 15, 10, 30),
        )

        assert result.success is True
        assert result.dimension_type == "access_key"
        assert result.deleted_buckets == 3
        assert result.rebuilt_buckets == 3
        assert await bucket_snapshot() == expected

        again = await service.rebuild_aggregate_data(
            "access_key", "ak_1", datetime(2024, 1, 15, 10, 10), datetime(2024, 1, 15, 10, 30)
        )
        assert again.success is True
        assert await bucket_snapshot() == expected

    @pytest.mark.asyncio
    async def test_rebuild_without_prior_aggregation(self, add_events, ak_1_events):
        await add_events(*ak_1_events)

        result = await AggregationService().rebuild_aggregate_data(
            DimensionType.USER, "u_1", JAN_15, datetime(2024, 1, 15, 23, 59, 59)
        )

        assert result.success is True
        assert result.deleted_buckets == 0
        # Hours 10 and 14, the day and the month
        assert result.rebuilt_buckets == 4
        day = await get_bucket("u_1", PeriodType.DAY, JAN_15, DimensionType.USER)
        assert day.total_tokens == 465
        assert await get_bucket("ak_1", PeriodType.DAY, JAN_15) is None

    @pytest.mark.asyncio
    async def test_invalid_dimension_type(self, db_session):
        result = await AggregationService().rebuild_aggregate_data("team", "t_1", JAN_15, JAN_16)

        assert result.success is False
        assert result.errors == ["Invalid dimension type: team"]
        assert result.dimension_type == "team"

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, db_session):
        service = AggregationService()

        empty_id = await service.rebuild_aggregate_data(DimensionType.USER, "", JAN_15, JAN_16)
        reversed_range = await service.rebuild_aggregate_data(
            DimensionType.USER, "u_1", JAN_16, JAN_15
        )

        assert empty_id.success is False
        assert reversed_range.success is False
        assert reversed_range.errors[0].startswith("Invalid rebuild range")

    @pytest.mark.asyncio
    async def test_rebuild_failure_rolls_back(self, add_events, ak_1_events, bucket_snapshot):
        await add_events(*ak_1_events)
        bucket_repo = AggregateBucketRepository()
        service = AggregationService(bucket_repo=bucket_repo)
        await service.perform_incremental_aggregation(JAN_15, JAN_16)
        before = await bucket_snapshot()

        with patch.object(
            bucket_repo, "add_usage", AsyncMock(side_effect=RuntimeError("lock timeout"))
        ):
            result = await service.rebuild_aggregate_data(
                DimensionType.ACCESS_KEY, "ak_1", JAN_15, JAN_16
            )

        assert result.success is False
        assert result.errors == ["Rebuild transaction failed: lock timeout"]
        assert await bucket_snapshot() == before


class TestRetention:
    """Tests for cleanup_expired_data and cleanup_by_retention."""

    @pytest.mark.asyncio
    async def test_cleanup_expired_data(self, add_events, ak_1_events, bucket_snapshot):
        await add_events(*ak_1_events)
        service = AggregationService()
        await service.perform_incremental_aggregation(JAN_15, JAN_16)

        deleted = await service.cleanup_expired_data(JAN_16)

        # Hour and day buckets ended before the cutoff, month buckets did not
        assert deleted == 6
        remaining = await bucket_snapshot()
        assert {key[2] for key in remaining} == {"month"}
        assert all(counters[0] >= JAN_16 for counters in remaining.values())

    @pytest.mark.asyncio
    async def test_cleanup_by_retention(self, add_events, ak_1_events, bucket_snapshot):
        await add_events(*ak_1_events)
        await AggregationService().perform_incremental_aggregation(JAN_15, JAN_16)

        disabled = AggregationService(retention_days=0)
        assert await disabled.cleanup_by_retention(now=datetime(2030, 1, 1)) == 0

        service = AggregationService(retention_days=30)
        assert await service.cleanup_by_retention(now=datetime(2024, 2, 1)) == 0
        assert await service.cleanup_by_retention(now=datetime(2024, 3, 15)) == 8
        assert await bucket_snapshot() == {}

    @pytest.mark.asyncio
    async def test_cleanup_failure_returns_zero(self, db_session):
        bucket_repo = AggregateBucketRepository()
        service = AggregationService(bucket_repo=bucket_repo)

        with patch.object(
            bucket_repo, "delete_expired", AsyncMock(side_effect=RuntimeError("db gone"))
        ):
            assert await service.cleanup_expired_data(JAN_16) == 0
