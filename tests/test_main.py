"""Tests for the command line entry point, engine options and tracer setup."""

import json
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.pool import StaticPool

from token_usage import main as cli
from token_usage.aggregation import AggregationResult, RebuildResult
from token_usage.config import Settings
from token_usage.db.base import engine_options
from token_usage.events import DimensionType
from token_usage.telemetry import build_sampler, build_tracer_provider

JAN_15 = datetime(2024, 1, 15)
JAN_16 = datetime(2024, 1, 16)


@pytest.fixture
def service():
    """Aggregation service stand-in with an untouched database."""
    service = MagicMock()
    with (
        patch.object(cli, "get_aggregation_service", return_value=service),
        patch.object(cli, "init_database", AsyncMock()),
        patch.object(cli, "close_database", AsyncMock()) as close_database,
    ):
        service.close_database = close_database
        yield service


class TestParser:
    """Tests for build_parser."""

    def test_serve_is_the_default(self):
        args = cli.build_parser().parse_args([])

        assert args.command == "serve"

    def test_aggregate_span(self):
        args = cli.build_parser().parse_args(
            ["aggregate", "--from", "2024-01-15T00:00:00", "--to", "2024-01-16"]
        )

        assert args.command == "aggregate"
        assert args.from_time == JAN_15
        assert args.to_time == JAN_16

    def test_rebuild_defaults_to_access_keys(self):
        args = cli.build_parser().parse_args(
            ["rebuild", "--dimension-id", "ak_1", "--start", "2024-01-15", "--end", "2024-01-16"]
        )

        assert args.dimension_type == DimensionType.ACCESS_KEY
        assert args.dimension_id == "ak_1"

    def test_rebuild_rejects_unknown_dimension_type(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(
                ["rebuild", "--dimension-type", "team", "--dimension-id", "t", "--start",
                 "2024-01-15", "--end", "2024-01-16"]
            )

    def test_aggregate_needs_both_bounds(self):
        with pytest.raises(SystemExit):
            cli.main(["aggregate", "--from", "2024-01-15"])


class TestRunCommand:
    """Tests for run_command."""

    @pytest.mark.asyncio
    async def test_aggregate_span(self, service, capsys):
        service.perform_incremental_aggregation = AsyncMock(
            return_value=AggregationResult(success=True, processed_records=4, updated_buckets=6)
        )
        args = cli.build_parser().parse_args(
            ["aggregate", "--from", "2024-01-15", "--to", "2024-01-16"]
        )

        assert await cli.run_command(args) is True

        service.perform_incremental_aggregation.assert_awaited_once_with(JAN_15, JAN_16)
        output = json.loads(capsys.readouterr().out)
        assert output["processed_records"] == 4
        assert output["updated_buckets"] == 6
        service.close_database.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_aggregate_pending(self, service):
        service.run_pending_aggregation = AsyncMock(
            return_value=AggregationResult(success=False, errors=["boom"])
        )

        assert await cli.run_command(cli.build_parser().parse_args(["aggregate"])) is False

        service.run_pending_aggregation.assert_awaited_once_with()

    @pytest.mark.asyncio
    async def test_rebuild(self, service, capsys):
        service.rebuild_aggregate_data = AsyncMock(
            return_value=RebuildResult(
                success=True, rebuilt_buckets=3, dimension_type="user", dimension_id="u_1"
            )
        )
        args = cli.build_parser().parse_args(
            ["rebuild", "--dimension-type", "user", "--dimension-id", "u_1",
             "--start", "2024-01-15", "--end", "2024-01-15T23:59:59"]
        )

        assert await cli.run_command(args) is True

        service.rebuild_aggregate_data.assert_awaited_once_with(
            DimensionType.USER, "u_1", JAN_15, datetime(2024, 1, 15, 23, 59, 59)
        )
        assert json.loads(capsys.readouterr().out)["rebuilt_buckets"] == 3

    @pytest.mark.asyncio
    async def test_cleanup_uses_retention_without_cutoff(self, service, capsys):
        service.cleanup_by_retention = AsyncMock(return_value=7)

        assert await cli.run_command(cli.build_parser().parse_args(["cleanup"])) is True

        assert capsys.readouterr().out.strip() == "Deleted 7 expired buckets"

    @pytest.mark.asyncio
    async def test_database_closed_on_error(self, service):
        service.cleanup_expired_data = AsyncMock(side_effect=RuntimeError("db gone"))
        args = cli.build_parser().parse_args(["cleanup", "--before", "2023-01-01"])

        with pytest.raises(RuntimeError, match="db gone"):
            await cli.run_command(args)

        service.close_database.assert_awaited_once()


class TestEngineOptions:
    """Tests for engine_options."""

    def test_sqlite_shares_one_connection(self):
        options = engine_options(Settings(database_url="sqlite+aiosqlite:///:memory:"))

        assert options["poolclass"] is StaticPool
        assert "pool_size" not in options

    def test_postgresql_pool(self):
        options = engine_options(
            Settings(
                database_url="postgresql+asyncpg://usage:secret@db/usage",
                database_pool_size=3,
                database_pool_max_overflow=2,
            )
        )

        assert options["pool_size"] == 3
        assert options["max_overflow"] == 2
        assert "poolclass" not in options


class TestTracing:
    """Tests for the tracer provider builders."""

    def test_tracer_provider_resource(self):
        provider = build_tracer_provider(
            Settings(otel_exporter_type="console", otel_service_name="usage-test")
        )
        try:
            assert provider.resource.attributes["service.name"] == "usage-test"
            assert provider.resource.attributes["deployment.environment"] == "production"
        finally:
            provider.shutdown()

    @pytest.mark.parametrize(
        ("name", "description"),
        [
            ("always_on", "AlwaysOnSampler"),
            ("always_off", "AlwaysOffSampler"),
            ("parentbased_always_on", "ParentBased{root:AlwaysOnSampler"),
        ],
    )
    def test_sampler_names(self, name, description):
        assert build_sampler(name, 1.0).get_description().startswith(description)
