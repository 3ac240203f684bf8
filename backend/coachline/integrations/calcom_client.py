"""Minimal Cal.com API client for mirroring bookings to the scheduling provider."""

from __future__ import annotations

from datetime import datetime
import json
import logging
from typing import Any, Dict, Optional, cast
from uuid import uuid4

import httpx
from pydantic import SecretStr

from ..core.exceptions import ExternalServiceException

logger = logging.getLogger(__name__)


class CalComError(ExternalServiceException):
    """Raised when the Cal.com API responds with an error."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        *,
        error_body: Any | None = None,
    ) -> None:
        super().__init__(
            message,
            service="calcom",
            code="SCHEDULING_PROVIDER_ERROR",
            details={"status_code": status_code},
        )
        self.status_code = status_code
        self.error_body = error_body


def _iso(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


class CalComClient:
    """Thin client for the Cal.com REST API (bearer-token auth)."""

    def __init__(
        self,
        *,
        api_key: str | SecretStr,
        base_url: str = "https://api.cal.com/v2",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        secret_value = api_key.get_secret_value() if isinstance(api_key, SecretStr) else api_key
        if not secret_value:
            raise ValueError("Cal.com API key must be provided")
        self._api_key = secret_value
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def create_booking(
        self,
        *,
        event_type_id: int,
        start: datetime,
        end: datetime,
        attendee_email: str,
        attendee_name: str,
        time_zone: str = "America/New_York",
        metadata: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        """Create a booking (pending payment) and return the provider record."""

        body = {
            "eventTypeId": event_type_id,
            "startTime": _iso(start),
            "endTime": _iso(end),
            "attendees": [{"email": attendee_email, "name": attendee_name, "timeZone": time_zone}],
            "metadata": {k: str(v) for k, v in (metadata or {}).items()},
        }
        return self._unwrap(self.request("POST", "/bookings", json_body=body))

    def confirm_booking(self, external_id: str) -> Dict[str, Any]:
        return self._unwrap(self.request("POST", f"/bookings/{external_id}/confirm"))

    def cancel_booking(self, external_id: str, reason: str | None = None) -> Dict[str, Any]:
        return self._unwrap(
            self.request("DELETE", f"/bookings/{external_id}", json_body={"reason": reason})
        )

    def reschedule_booking(
        self, external_id: str, *, start: datetime, end: datetime
    ) -> Dict[str, Any]:
        body = {"startTime": _iso(start), "endTime": _iso(end)}
        return self._unwrap(self.request("PATCH", f"/bookings/{external_id}", json_body=body))

    @staticmethod
    def _unwrap(payload: Dict[str, Any]) -> Dict[str, Any]:
        booking = payload.get("booking") if isinstance(payload, dict) else None
        return cast(Dict[str, Any], booking if isinstance(booking, dict) else payload)

    def request(
        self,
        method: str,
        path: str,
        *,
        json_body: Dict[str, Any] | None = None,
        params: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        """Perform a raw Cal.com API request and return the parsed JSON payload."""

        url = f"{self._base_url}{path}"
        with httpx.Client(
            timeout=self._timeout,
            transport=self._transport,
            headers={
                "Accept": "application/json",
                "Authorization": f"Bearer {self._api_key}",
            },
        ) as client:
            try:
                response = client.request(method, url, json=json_body, params=params)
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                try:
                    error_payload: Any = exc.response.json()
                except json.JSONDecodeError:
                    error_payload = exc.response.text
                logger.error(
                    "Cal.com API error %s for %s %s: %s",
                    status,
                    method,
                    path,
                    exc.response.text[:500],
                )
                raise CalComError(
                    f"Cal.com API responded with status {status}",
                    status_code=status,
                    error_body=error_payload,
                ) from exc
            except httpx.RequestError as exc:
                logger.error("Cal.com request failure for %s %s: %s", method, path, str(exc))
                raise CalComError("Failed to reach Cal.com API") from exc

        if not response.content:
            return {}
        try:
            return cast(Dict[str, Any], response.json())
        except json.JSONDecodeError as exc:
            logger.error("Invalid JSON from Cal.com for %s %s", method, path)
            raise CalComError("Received malformed JSON from Cal.com") from exc


class FakeCalComClient(CalComClient):
    """In-memory stub that mimics Cal.com for tests and local development."""

    def __init__(self, *, fail: bool = False) -> None:
        super().__init__(api_key="fake-calcom-key")
        self.fail = fail
        self.calls: list[tuple[str, Dict[str, Any]]] = []

    def request(
        self,
        method: str,
        path: str,
        *,
        json_body: Dict[str, Any] | None = None,
        params: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        self.calls.append((f"{method} {path}", dict(json_body or {})))
        if self.fail:
            raise CalComError("Simulated Cal.com outage", status_code=503)
        if method == "POST" and path == "/bookings":
            return {"booking": {"uid": f"cal_fake_{uuid4().hex[:12]}", **(json_body or {})}}
        return {"booking": {"uid": path.split("/")[2], "status": "ok"}}
