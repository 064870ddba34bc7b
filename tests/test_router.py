"""Tests for the HTTP API."""

from datetime import datetime

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from token_usage.api.app import create_app
from token_usage.events import DimensionType
from token_usage.overview import HealthStatus


@pytest_asyncio.fixture
async def client(db_session):
    """HTTP client bound to the application."""
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest_asyncio.fixture
async def seeded(add_events, make_event):
    """Raw events for ak_1/u_1 on 2024-01-15 (not yet aggregated)."""
    for dimension_type, dimension_id in (
        (DimensionType.ACCESS_KEY, "ak_1"),
        (DimensionType.USER, "u_1"),
    ):
        await add_events(
            make_event(
                dimension_id,
                datetime(2024, 1, 15, 10, 5),
                input_tokens=100,
                output_tokens=50,
                dimension_type=dimension_type,
                model="claude-3-opus",
            ),
            make_event(
                dimension_id,
                datetime(2024, 1, 15, 10, 40),
                input_tokens=150,
                cache_creation_input_tokens=10,
                output_tokens=60,
                dimension_type=dimension_type,
                model="claude-3-opus",
            ),
            make_event(
                dimension_id,
                datetime(2024, 1, 15, 14, 20),
                input_tokens=50,
                cache_read_input_tokens=5,
                output_tokens=40,
                dimension_type=dimension_type,
                model="claude-3-haiku",
            ),
        )


async def aggregate_day(client: AsyncClient) -> dict:
    response = await client.post(
        "/usage/admin/aggregate",
        json={"from_time": "2024-01-15T00:00:00", "to_time": "2024-01-16T00:00:00"},
    )
    assert response.status_code == 200
    return response.json()


class TestHealth:
    """Tests for health endpoints."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_ready(self, client):
        response = await client.get("/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"


class TestAdminEndpoints:
    """Tests for the aggregation admin endpoints."""

    @pytest.mark.asyncio
    async def test_aggregate(self, client, seeded):
        body = await aggregate_day(client)

        assert body["success"] is True
        assert body["processed_records"] == 2
        assert body["updated_buckets"] == 8
        assert body["errors"] == []

    @pytest.mark.asyncio
    async def test_aggregate_invalid_window_reports_failure(self, client):
        response = await client.post(
            "/usage/admin/aggregate",
            json={"from_time": "2024-01-16T00:00:00", "to_time": "2024-01-15T00:00:00"},
        )

        assert response.status_code == 200
        assert response.json()["success"] is False

    @pytest.mark.asyncio
    async def test_rebuild(self, client, seeded):
        await aggregate_day(client)

        response = await client.post(
            "/usage/admin/rebuild",
            json={
                "dimension_type": "access_key",
                "dimension_id": "ak_1",
                "start_date": "2024-01-15T00:00:00",
                "end_date": "2024-01-15T23:59:59",
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["deleted_buckets"] == 4
        assert body["rebuilt_buckets"] == 4

    @pytest.mark.asyncio
    async def test_rebuild_rejects_unknown_dimension(self, client):
        response = await client.post(
            "/usage/admin/rebuild",
            json={
                "dimension_type": "team",
                "dimension_id": "t_1",
                "start_date": "2024-01-15T00:00:00",
                "end_date": "2024-01-15T23:59:59",
            },
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_cleanup(self, client, seeded):
        await aggregate_day(client)

        response = await client.post(
            "/usage/admin/cleanup", json={"before": "2024-01-16T00:00:00"}
        )

        assert response.status_code == 200
        assert response.json() == {"deleted_count": 6}

    @pytest.mark.asyncio
    async def test_scheduler_status(self, client):
        response = await client.get("/usage/admin/scheduler")

        assert response.status_code == 200
        assert response.json()["running"] is False


class TestQueryEndpoints:
    """Tests for the usage query endpoints."""

    @pytest.mark.asyncio
    async def test_statistics_pre_aggregated(self, client, seeded):
        await aggregate_day(client)

        response = await client.get(
            "/usage/statistics/access_key/ak_1",
            params={"start": "2024-01-15T00:00:00", "end": "2024-01-15T23:59:59"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["total_tokens"] == 465
        assert body["total_requests"] == 3
        assert body["metadata"]["calculation_method"] == "pre_aggregated"

    @pytest.mark.asyncio
    async def test_statistics_real_time(self, client, seeded):
        response = await client.get(
            "/usage/statistics/user/u_1",
            params={
                "start": "2024-01-15T00:00:00",
                "end": "2024-01-15T23:59:59",
                "models": ["claude-3-haiku"],
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["total_tokens"] == 95
        assert body["metadata"]["calculation_method"] == "real_time"

    @pytest.mark.asyncio
    async def test_statistics_rejects_unknown_dimension(self, client):
        response = await client.get("/usage/statistics/team/t_1")

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_trends(self, client, seeded):
        await aggregate_day(client)

        response = await client.get(
            "/usage/trends",
            params={
                "start": "2024-01-15T00:00:00",
                "end": "2024-01-15T23:59:59",
                "dimension_type": "user",
                "dimension_id": "u_1",
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["period_type"] == "hour"
        assert len(body["data_points"]) == 2
        assert body["summary"]["total_tokens"] == 465

    @pytest.mark.asyncio
    async def test_totals(self, client, seeded):
        await aggregate_day(client)

        response = await client.get(
            "/usage/totals",
            params={"start": "2024-01-01T00:00:00", "end": "2024-01-31T23:59:59"},
        )

        assert response.status_code == 200
        assert response.json()["total_tokens"] == 465

    @pytest.mark.asyncio
    async def test_top_consumers(self, client, seeded):
        response = await client.get(
            "/usage/top/access_key",
            params={"start": "2024-01-15T00:00:00", "end": "2024-01-15T23:59:59"},
        )

        assert response.status_code == 200
        body = response.json()
        assert [item["dimension_id"] for item in body] == ["ak_1"]
        assert body[0]["total_tokens"] == 465

    @pytest.mark.asyncio
    async def test_details(self, client, seeded):
        response = await client.get(
            "/usage/details",
            params={"dimension_type": "access_key", "limit": 2, "order": "asc"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["total_count"] == 3
        assert body["total_pages"] == 2
        assert body["has_next_page"] is True
        assert [item["occur_time"] for item in body["items"]] == [
            "2024-01-15T10:05:00",
            "2024-01-15T10:40:00",
        ]

    @pytest.mark.asyncio
    async def test_details_rejects_oversized_page(self, client):
        response = await client.get("/usage/details", params={"limit": 1001})

        assert response.status_code == 422


class TestOverviewEndpoints:
    """Tests for the overview and data health endpoints."""

    @pytest.mark.asyncio
    async def test_overview(self, client, seeded):
        await aggregate_day(client)

        response = await client.get(
            "/usage/admin/overview",
            params={
                "start": "2024-01-01T00:00:00",
                "end": "2024-01-31T23:59:59",
                "include_trend_data": "true",
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["metadata"]["calculation_method"] == "pre_aggregated"
        assert body["total_tokens"] == 465
        assert body["active_access_keys_count"] == 1
        assert body["active_users_count"] == 1
        assert len(body["trend_data"]) == 1
        assert body["health_metrics"] is None

    @pytest.mark.asyncio
    async def test_overview_with_model_filter(self, client, seeded):
        response = await client.get(
            "/usage/admin/overview",
            params={
                "start": "2024-01-15T00:00:00",
                "end": "2024-01-15T23:59:59",
                "models": "claude-3-haiku",
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["metadata"]["calculation_method"] == "real_time"
        assert body["total_tokens"] == 95

    @pytest.mark.asyncio
    async def test_data_health(self, client, seeded):
        await aggregate_day(client)

        response = await client.get("/usage/admin/health")

        assert response.status_code == 200
        body = response.json()
        assert body["health_status"] in {status.value for status in HealthStatus}
        assert body["data_freshness"]["last_data_update"] == "2024-01-15T14:20:00"
        assert "is_healthy" in body
