"""Tests for the hosted REST backend against a mocked transport."""

import json
from datetime import date, datetime, timezone
from decimal import Decimal

import httpx
import pytest

from fineflow_budget.core.errors import NotFoundError, TransientError, ValidationError
from fineflow_budget.domain.budget import EnforcementMode
from fineflow_budget.domain.services.budget_store import CostEntry
from fineflow_budget.infrastructure.hosted_backend import HostedBudgetBackend

BASE_URL = "https://backend.test/rest/v1/"

PROJECT_ROW = {
    "id": "proj_1",
    "name": "Project One",
    "monthly_budget_usd": 500.25,
    "max_cost_per_query_usd": None,
    "budget_enforcement_mode": "auto_downgrade",
    "preferred_baseline_strategy": "cost_aware",
}


class Recorder:
    """Mock transport handler replaying queued responses and keeping requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def _backend(recorder: Recorder, **kwargs) -> HostedBudgetBackend:
    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(recorder))
    return HostedBudgetBackend(client, "service-key", backoff_base_s=0, **kwargs)


# =============================================================================
# Reads
# =============================================================================


class TestReads:
    async def test_budget_row_is_parsed_with_decimals(self):
        recorder = Recorder(httpx.Response(200, json=[PROJECT_ROW]))

        row = await _backend(recorder).get_budget_row("proj_1")

        assert row.monthly_budget_usd == Decimal("500.25")
        assert row.max_cost_per_query_usd is None
        assert row.enforcement_mode == "auto_downgrade"
        request = recorder.requests[0]
        assert request.url.path == "/rest/v1/projects"
        assert request.url.params["id"] == "eq.proj_1"
        assert request.headers["apikey"] == "service-key"
        assert request.headers["authorization"] == "Bearer service-key"

    async def test_empty_result_is_not_found(self):
        with pytest.raises(NotFoundError):
            await _backend(Recorder(httpx.Response(200, json=[]))).get_budget_row("proj_missing")

    async def test_month_spending_uses_rpc(self):
        recorder = Recorder(httpx.Response(200, content=b"12.345", headers={"content-type": "application/json"}))

        total = await _backend(recorder).get_month_spending("proj_1", date(2026, 6, 1), date(2026, 7, 1))

        assert total == Decimal("12.345")
        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/rest/v1/rpc/get_project_month_spending"
        assert json.loads(request.content) == {"p_project_id": "proj_1"}

    async def test_month_spending_null_is_zero(self):
        recorder = Recorder(httpx.Response(200, json=None))

        assert await _backend(recorder).get_month_spending("proj_1", date(2026, 6, 1), date(2026, 7, 1)) == 0

    async def test_decisions_are_filtered_and_parsed(self):
        recorder = Recorder(
            httpx.Response(
                200,
                json=[
                    {
                        "project_id": "proj_1",
                        "decision_type": "downgrade",
                        "reason": "Budget at risk",
                        "created_at": "2026-06-20T12:00:00Z",
                        "tier": "moderate",
                        "original_estimated_cost_usd": 0.5,
                        "adjusted_estimated_cost_usd": 0.2,
                        "quality_impact_percent": -7.5,
                    }
                ],
            )
        )

        records = await _backend(recorder).list_decisions("proj_1", limit=5, decision_type="downgrade")

        assert records[0].created_at == datetime(2026, 6, 20, 12, 0, tzinfo=timezone.utc)
        assert records[0].adjusted_estimated_cost_usd == Decimal("0.2")
        params = recorder.requests[0].url.params
        assert params["decision_type"] == "eq.downgrade"
        assert params["limit"] == "5"
        assert params["order"] == "created_at.desc"


# =============================================================================
# Error mapping and retries
# =============================================================================


class TestErrors:
    async def test_transient_failures_are_retried(self):
        recorder = Recorder(
            httpx.Response(503, text="unavailable"),
            httpx.Response(429, text="slow down"),
            httpx.Response(200, json=[PROJECT_ROW]),
        )

        row = await _backend(recorder).get_budget_row("proj_1")

        assert row.project_id == "proj_1"
        assert len(recorder.requests) == 3

    async def test_retries_are_bounded(self):
        recorder = Recorder(httpx.Response(500, text="boom"))

        with pytest.raises(TransientError) as excinfo:
            await _backend(recorder, max_attempts=2).get_budget_row("proj_1")

        assert excinfo.value.upstream_status == 500
        assert len(recorder.requests) == 2

    async def test_network_errors_are_transient(self):
        recorder = Recorder(httpx.ConnectError("connection refused"))

        with pytest.raises(TransientError):
            await _backend(recorder, max_attempts=1).get_budget_row("proj_1")

    async def test_client_errors_are_not_retried(self):
        recorder = Recorder(httpx.Response(400, text="bad column"))

        with pytest.raises(ValidationError):
            await _backend(recorder).get_budget_row("proj_1")

        assert len(recorder.requests) == 1

    async def test_http_404_is_not_found(self):
        with pytest.raises(NotFoundError):
            await _backend(Recorder(httpx.Response(404))).get_budget_row("proj_1")


# =============================================================================
# Writes
# =============================================================================


class TestWrites:
    async def test_update_settings_maps_columns(self):
        recorder = Recorder(httpx.Response(200, json=[{**PROJECT_ROW, "budget_enforcement_mode": "abort"}]))

        row = await _backend(recorder).update_settings(
            "proj_1",
            {"enforcement_mode": EnforcementMode.ABORT, "max_cost_per_query_usd": Decimal("0.5")},
        )

        assert row.enforcement_mode == "abort"
        request = recorder.requests[0]
        assert request.method == "PATCH"
        assert request.headers["prefer"] == "return=representation"
        assert json.loads(request.content) == {"budget_enforcement_mode": "abort", "max_cost_per_query_usd": 0.5}

    async def test_writes_are_not_retried(self):
        recorder = Recorder(httpx.Response(503))
        entry = CostEntry(
            project_id="proj_1",
            operation_type="evaluation",
            cost_usd=Decimal("1.5"),
            created_at=datetime(2026, 6, 20, 12, 0, tzinfo=timezone.utc),
        )

        with pytest.raises(TransientError):
            await _backend(recorder).record_cost(entry)

        assert len(recorder.requests) == 1

    async def test_record_cost_body(self):
        recorder = Recorder(httpx.Response(201))
        entry = CostEntry(
            project_id="proj_1",
            operation_type="evaluation",
            cost_usd=Decimal("1.5"),
            created_at=datetime(2026, 6, 20, 12, 0, tzinfo=timezone.utc),
            tokens_used=900,
        )

        await _backend(recorder).record_cost(entry)

        body = json.loads(recorder.requests[0].content)
        assert body["cost_usd"] == 1.5
        assert body["tokens_used"] == 900
        assert body["created_at"] == "2026-06-20T12:00:00+00:00"
