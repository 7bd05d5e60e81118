# tests/unit/infrastructure/clients/test_issue_tracker.py
import json

import httpx
import pytest

from domain.errors import NotFoundError, UpstreamError
from domain.models.work_item import Priority
from infrastructure.clients.issue_tracker import DryRunIssueTracker, LinearIssueTracker
from infrastructure.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
)

API_URL = "https://tracker.example.com/graphql"


def tracker_for(handler, breaker=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return LinearIssueTracker("lin-key", API_URL, breaker=breaker, client=client)


class TestLinearIssueTracker:

    @pytest.mark.asyncio
    async def test_get_issue(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["Authorization"]
            seen["variables"] = json.loads(request.content)["variables"]
            return httpx.Response(200, json={"data": {"issue": {
                "id": "issue-1",
                "identifier": "ENG-7",
                "title": "Fix crash",
                "description": "Crashes on save",
                "priority": 2,
                "labels": {"nodes": [{"name": "bug"}, {"name": "backend"}]},
                "assignee": {"name": "Sam"},
            }}})

        work_item = await tracker_for(handler).get_issue("issue-1")

        assert seen == {"auth": "Bearer lin-key", "variables": {"id": "issue-1"}}
        assert work_item.identifier == "ENG-7"
        assert work_item.labels == ("bug", "backend")
        assert work_item.priority_hint == Priority.HIGH
        assert work_item.assignee == "Sam"

    @pytest.mark.asyncio
    async def test_missing_issue(self):
        tracker = tracker_for(lambda request: httpx.Response(200, json={"data": {"issue": None}}))

        with pytest.raises(NotFoundError):
            await tracker.get_issue("gone")

    @pytest.mark.asyncio
    async def test_post_comment(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content)["variables"]["body"])
            return httpx.Response(200, json={"data": {"commentCreate": {"success": True}}})

        await tracker_for(handler).post_comment("issue-1", "Progress 50%")

        assert bodies == ["Progress 50%"]

    @pytest.mark.asyncio
    async def test_rejected_comment_is_permanent(self):
        tracker = tracker_for(lambda request: httpx.Response(
            200, json={"data": {"commentCreate": {"success": False}}}))

        with pytest.raises(UpstreamError) as exc_info:
            await tracker.post_comment("issue-1", "hello")

        assert exc_info.value.transient is False

    @pytest.mark.asyncio
    async def test_graphql_errors_are_permanent(self):
        tracker = tracker_for(lambda request: httpx.Response(
            200, json={"errors": [{"message": "Entity not found: State"}]}))

        with pytest.raises(UpstreamError) as exc_info:
            await tracker.transition_status("issue-1", "state-x")

        assert exc_info.value.transient is False
        assert "Entity not found" in exc_info.value.message

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,transient", [(429, True), (502, True), (401, False)])
    async def test_http_status_classification(self, status, transient):
        tracker = tracker_for(lambda request: httpx.Response(status, text="nope"))

        with pytest.raises(UpstreamError) as exc_info:
            await tracker.post_comment("issue-1", "hello")

        assert exc_info.value.transient is transient
        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    async def test_transport_errors_are_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(UpstreamError) as exc_info:
            await tracker_for(handler).post_comment("issue-1", "hello")

        assert exc_info.value.transient is True

    @pytest.mark.asyncio
    async def test_breaker_opens_on_repeated_outages(self):
        breaker = CircuitBreaker("issue_tracker", CircuitBreakerConfig(failure_threshold=2))
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(503)

        tracker = tracker_for(handler, breaker=breaker)
        for _ in range(2):
            with pytest.raises(UpstreamError):
                await tracker.post_comment("issue-1", "hello")

        with pytest.raises(CircuitOpenError):
            await tracker.post_comment("issue-1", "hello")
        assert len(calls) == 2


class TestDryRunIssueTracker:

    @pytest.mark.asyncio
    async def test_records_traffic(self):
        tracker = DryRunIssueTracker()

        await tracker.post_comment("issue-1", "hello")
        await tracker.transition_status("issue-1", "state-done")

        assert tracker.comments == [("issue-1", "hello")]
        assert tracker.transitions == [("issue-1", "state-done")]
        with pytest.raises(NotFoundError):
            await tracker.get_issue("issue-1")
