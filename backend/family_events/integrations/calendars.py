"""Calendar capability and the Google Calendar adapter.

Provider failures are mapped onto the CalendarError family so callers can
degrade per member:
- 401/403 or a per-calendar "forbidden"/"notFound" error -> CalendarAccessDeniedError
- 429 or a rate-limit reason -> CalendarRateLimitedError
- 5xx and transport errors -> CalendarUnavailableError
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol, runtime_checkable

import httpx
import structlog

from family_events.core.config import CalendarMember
from family_events.core.exceptions import (
    CalendarAccessDeniedError,
    CalendarRateLimitedError,
    CalendarUnavailableError,
)
from family_events.domain.scoring import to_utc_datetime
from family_events.schemas.events import EventRecord

logger = structlog.get_logger(__name__)

_RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"}


@dataclass(frozen=True)
class BusyBlock:
    start: datetime
    end: datetime
    summary: str = ""

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start < end and start < self.end


@runtime_checkable
class CalendarProvider(Protocol):
    async def list_busy(self, member: CalendarMember, start: datetime, end: datetime) -> list[BusyBlock]:
        """Busy blocks on ``member``'s calendar intersecting [start, end)."""
        ...

    async def create_event(self, member: CalendarMember, event: EventRecord) -> str:
        """Add ``event`` to ``member``'s calendar and return the provider id."""
        ...


class GoogleCalendarProvider:
    """Google Calendar v3 over REST with per-member OAuth access tokens."""

    def __init__(
        self,
        base_url: str = "https://www.googleapis.com/calendar/v3",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _headers(self, member: CalendarMember) -> dict[str, str]:
        if not member.access_token:
            raise CalendarAccessDeniedError(f"No calendar credentials for {member.member_id}")
        return {"Authorization": f"Bearer {member.access_token}"}

    async def _post(self, member: CalendarMember, path: str, payload: dict) -> dict:
        headers = self._headers(member)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(f"{self.base_url}{path}", json=payload, headers=headers)
        except httpx.TransportError as exc:
            raise CalendarUnavailableError(f"{type(exc).__name__}: {exc}") from exc

        if response.status_code in (401, 403):
            reasons = _error_reasons(response)
            if reasons & _RATE_LIMIT_REASONS:
                raise CalendarRateLimitedError(f"Rate limited ({response.status_code})")
            raise CalendarAccessDeniedError(f"Access denied ({response.status_code})")
        if response.status_code == 429:
            raise CalendarRateLimitedError("Rate limited (429)")
        if response.status_code >= 500:
            raise CalendarUnavailableError(f"Calendar API returned {response.status_code}")
        if response.status_code >= 400:
            raise CalendarUnavailableError(f"Calendar API rejected request ({response.status_code})")
        return response.json()

    async def list_busy(self, member: CalendarMember, start: datetime, end: datetime) -> list[BusyBlock]:
        data = await self._post(
            member,
            "/freeBusy",
            {
                "timeMin": start.isoformat(),
                "timeMax": end.isoformat(),
                "items": [{"id": member.calendar_id}],
            },
        )
        calendar = data.get("calendars", {}).get(member.calendar_id, {})
        errors = {e.get("reason") for e in calendar.get("errors", [])}
        if errors & {"forbidden", "notFound"}:
            raise CalendarAccessDeniedError(f"Calendar {member.calendar_id} not accessible: {sorted(errors)}")
        if errors:
            raise CalendarUnavailableError(f"Calendar {member.calendar_id} errors: {sorted(errors)}")

        return [
            BusyBlock(start=to_utc_datetime(b["start"]), end=to_utc_datetime(b["end"]))
            for b in calendar.get("busy", [])
        ]

    async def create_event(self, member: CalendarMember, event: EventRecord) -> str:
        end = event.start_time + timedelta(minutes=event.duration_minutes)
        data = await self._post(
            member,
            f"/calendars/{member.calendar_id}/events",
            {
                "summary": event.title,
                "location": event.location.address or event.location.name,
                "description": _calendar_description(event),
                "start": {"dateTime": event.start_time.isoformat()},
                "end": {"dateTime": end.isoformat()},
            },
        )
        logger.info("calendar_event_created", member_id=member.member_id, event_id=event.id)
        return data.get("id", "")


def _error_reasons(response: httpx.Response) -> set[str]:
    try:
        errors = response.json().get("error", {}).get("errors", [])
    except ValueError:
        return set()
    return {e.get("reason", "") for e in errors}


def _calendar_description(event: EventRecord) -> str:
    lines = [event.description] if event.description else []
    if event.confirmation_number:
        lines.append(f"Confirmation: {event.confirmation_number}")
    if event.registration_url:
        lines.append(event.registration_url)
    return "\n".join(lines)
