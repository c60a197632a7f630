"""Tests for CRMToolClient tool calls."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import httpx
import pytest

from voice_agents.adapters.outbound.crm import CRMToolClient
from voice_agents.adapters.outbound.rpc import RemoteCallClient
from voice_agents.shared.resilience.types import RetryPolicy

CRM_URL = "https://crm.example.com/mcp/"


def tool_response(inner: dict) -> httpx.Response:
    envelope = {
        "jsonrpc": "2.0",
        "id": 1,
        "result": {"content": [{"type": "text", "text": json.dumps(inner)}]},
    }
    return httpx.Response(
        200,
        text=f"event: message\ndata: {json.dumps(envelope)}\n\n",
        headers={"content-type": "text/event-stream"},
    )


class FakeCRM:
    """Answers ``tools/call`` by tool name; records every request."""

    def __init__(self, tools: dict[str, dict]) -> None:
        self.tools = tools
        self.calls: list[tuple[httpx.Request, dict]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.calls.append((request, body))
        name = body["params"]["name"]
        if name not in self.tools:
            return httpx.Response(500)
        return tool_response(self.tools[name])


def make_crm(server: FakeCRM, retry_executor) -> CRMToolClient:
    rpc = RemoteCallClient(
        transport=httpx.MockTransport(server),
        retry_executor=retry_executor,
        retry_policy=RetryPolicy(max_retries=1, base_delay=0.01, jitter=False),
    )
    return CRMToolClient(rpc, api_token="pit-token", location_id="loc-42", endpoint=CRM_URL)


# ═══════════════════════════════════════════════════════════════
#  Tool calls
# ═══════════════════════════════════════════════════════════════
class TestToolCalls:
    @pytest.mark.asyncio
    async def test_call_tool_sends_auth_and_tenant(self, retry_executor) -> None:
        server = FakeCRM({"contacts_get-contacts": {"success": True, "data": {"contacts": []}}})
        crm = make_crm(server, retry_executor)

        await crm.call_tool("contacts_get-contacts", {"query_limit": 5}, session_id="s-1")

        request, body = server.calls[0]
        assert request.headers["authorization"] == "Bearer pit-token"
        assert request.headers["locationid"] == "loc-42"
        assert body["method"] == "tools/call"
        assert body["params"] == {"name": "contacts_get-contacts", "arguments": {"query_limit": 5}}

    @pytest.mark.asyncio
    async def test_get_contacts(self, retry_executor) -> None:
        contacts = [{"id": "c1", "firstName": "Ada"}, {"id": "c2", "firstName": "Lin"}]
        server = FakeCRM({"contacts_get-contacts": {"success": True, "data": {"contacts": contacts}}})
        crm = make_crm(server, retry_executor)

        assert await crm.get_contacts() == contacts

    @pytest.mark.asyncio
    async def test_get_calendar_events_sends_epoch_millis(self, retry_executor) -> None:
        events = [{"id": "e1", "title": "Consultation"}]
        server = FakeCRM(
            {"calendars_get-calendar-events": {"success": True, "data": {"events": events}}}
        )
        crm = make_crm(server, retry_executor)
        start = datetime(2025, 1, 1, tzinfo=timezone.utc)
        end = datetime(2025, 1, 2, tzinfo=timezone.utc)

        result = await crm.get_calendar_events("cal-9", start_time=start, end_time=end)

        assert result == events
        arguments = server.calls[0][1]["params"]["arguments"]
        assert arguments == {
            "query_calendarId": "cal-9",
            "query_startTime": 1735689600000,
            "query_endTime": 1735776000000,
        }

    @pytest.mark.asyncio
    async def test_get_appointment_notes(self, retry_executor) -> None:
        notes = {"notes": [{"body": "call back"}]}
        server = FakeCRM({"calendars_get-appointment-notes": {"success": True, "data": notes}})
        crm = make_crm(server, retry_executor)

        assert await crm.get_appointment_notes("apt-1", limit=5) == notes
        arguments = server.calls[0][1]["params"]["arguments"]
        assert arguments == {"path_appointmentId": "apt-1", "query_limit": 5, "query_offset": 0}


# ═══════════════════════════════════════════════════════════════
#  Health check
# ═══════════════════════════════════════════════════════════════
class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_reachable(self, retry_executor) -> None:
        server = FakeCRM(
            {
                "contacts_get-contacts": {"success": True, "data": {"contacts": [{"id": "c1"}]}},
                "calendars_get-calendar-events": {"success": True, "data": {"events": []}},
            }
        )
        crm = make_crm(server, retry_executor)

        health = await crm.check_health("cal-1")

        assert health == {
            "success": True,
            "message": "CRM endpoint is reachable",
            "data": {"contacts_count": 1, "events_count": 0},
        }

    @pytest.mark.asyncio
    async def test_business_failure_reported_not_raised(self, retry_executor) -> None:
        server = FakeCRM(
            {"contacts_get-contacts": {"success": False, "data": {"message": "Invalid token"}}}
        )
        crm = make_crm(server, retry_executor)

        health = await crm.check_health()

        assert health["success"] is False
        assert health["message"] == "Invalid token"
        assert health["code"] == "REMOTE_CALL_ERROR"

    @pytest.mark.asyncio
    async def test_transport_failure_reported_not_raised(self, retry_executor) -> None:
        crm = make_crm(FakeCRM({}), retry_executor)

        health = await crm.check_health()

        assert health["success"] is False
        assert "HTTP 500" in health["message"]
