"""CRM tool client: named tool calls over the CRM's JSON-RPC endpoint.

Each tool call is a ``tools/call`` request authenticated with a bearer
token and a ``locationId`` tenant header.  Transport retries and circuit
breaking are handled by ``RemoteCallClient``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog

from voice_agents.adapters.outbound.rpc import RemoteCallClient
from voice_agents.domain.exceptions import ResilienceError
from voice_agents.shared.resilience.types import OperationContext

logger = structlog.get_logger(__name__)

DEFAULT_CRM_URL = "https://services.leadconnectorhq.com/mcp/"


class CRMToolClient:
    def __init__(
        self,
        rpc: RemoteCallClient,
        *,
        api_token: str,
        location_id: str,
        endpoint: str = DEFAULT_CRM_URL,
    ) -> None:
        self._rpc = rpc
        self._api_token = api_token
        self._location_id = location_id
        self._endpoint = endpoint

    @property
    def endpoint(self) -> str:
        return self._endpoint

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_token}",
            "locationId": self._location_id,
        }

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        *,
        session_id: str | None = None,
    ) -> Any:
        """Invoke one CRM tool and return its decoded business payload."""
        logger.info("crm_tool_call", tool=name, location_id=self._location_id)
        return await self._rpc.call(
            self._endpoint,
            "tools/call",
            {"name": name, "arguments": arguments or {}},
            self._headers(),
            context=OperationContext(
                f"crm:{name}", tenant_id=self._location_id, session_id=session_id
            ),
        )

    # ── Convenience tools ────────────────────────────────────
    async def get_contacts(self, *, session_id: str | None = None) -> list[dict[str, Any]]:
        result = await self.call_tool("contacts_get-contacts", {}, session_id=session_id)
        return _list_field(result, "contacts")

    async def get_calendar_events(
        self,
        calendar_id: str,
        *,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        session_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """Events of one calendar; bounds are sent as epoch milliseconds."""
        arguments: dict[str, Any] = {"query_calendarId": calendar_id}
        if start_time is not None:
            arguments["query_startTime"] = int(start_time.timestamp() * 1000)
        if end_time is not None:
            arguments["query_endTime"] = int(end_time.timestamp() * 1000)
        result = await self.call_tool(
            "calendars_get-calendar-events", arguments, session_id=session_id
        )
        return _list_field(result, "events")

    async def get_appointment_notes(
        self,
        appointment_id: str,
        *,
        limit: int = 10,
        offset: int = 0,
        session_id: str | None = None,
    ) -> Any:
        return await self.call_tool(
            "calendars_get-appointment-notes",
            {
                "path_appointmentId": appointment_id,
                "query_limit": limit,
                "query_offset": offset,
            },
            session_id=session_id,
        )

    async def check_health(self, calendar_id: str | None = None) -> dict[str, Any]:
        """Probe read access to contacts (and a calendar, when given).

        Never raises for CRM-side failures; the error is reported in the
        returned dict instead.
        """
        try:
            contacts = await self.get_contacts()
            events = (
                await self.get_calendar_events(calendar_id) if calendar_id else []
            )
        except ResilienceError as exc:
            logger.warning("crm_health_check_failed", error=str(exc), code=exc.code)
            return {"success": False, "message": exc.message, "code": exc.code}

        return {
            "success": True,
            "message": "CRM endpoint is reachable",
            "data": {
                "contacts_count": len(contacts),
                "events_count": len(events),
            },
        }

    async def close(self) -> None:
        await self._rpc.close()


def _list_field(result: Any, key: str) -> list[dict[str, Any]]:
    if isinstance(result, dict):
        value = result.get(key)
        if isinstance(value, list):
            return value
    if isinstance(result, list):
        return result
    return []
