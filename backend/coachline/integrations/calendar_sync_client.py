"""Fire-and-forget calendar sync for booking create/update/delete events."""

from __future__ import annotations

from enum import Enum
import logging
from typing import Any, Dict, List

import httpx

from ..core.exceptions import ExternalServiceException

logger = logging.getLogger(__name__)


class CalendarAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class CalendarSyncError(ExternalServiceException):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(
            message,
            service="calendar",
            code="CALENDAR_SYNC_ERROR",
            details={"status_code": status_code},
        )
        self.status_code = status_code


class CalendarSyncClient:
    """Posts ``{booking_id, action}`` to the calendar sync endpoint."""

    def __init__(
        self,
        *,
        endpoint: str,
        timeout: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not endpoint:
            raise ValueError("Calendar sync endpoint must be provided")
        self._endpoint = endpoint
        self._timeout = timeout
        self._transport = transport

    def sync(self, booking_id: str, action: CalendarAction) -> Dict[str, Any]:
        payload = {"bookingId": booking_id, "action": action.value}
        with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
            try:
                response = client.post(self._endpoint, json=payload)
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                logger.warning("Calendar sync %s for %s returned %s", action.value, booking_id, status)
                raise CalendarSyncError(
                    f"Calendar sync responded with status {status}", status_code=status
                ) from exc
            except httpx.RequestError as exc:
                raise CalendarSyncError("Failed to reach calendar sync endpoint") from exc
        return response.json() if response.content else {}


class FakeCalendarSyncClient(CalendarSyncClient):
    def __init__(self, *, fail: bool = False) -> None:
        super().__init__(endpoint="https://calendar.test/sync")
        self.fail = fail
        self.events: List[tuple[str, str]] = []

    def sync(self, booking_id: str, action: CalendarAction) -> Dict[str, Any]:
        self.events.append((booking_id, action.value))
        if self.fail:
            raise CalendarSyncError("Simulated calendar outage", status_code=503)
        return {"success": True, "action": action.value}
