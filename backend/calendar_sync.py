"""Google Calendar mirroring for dated tasks, using httpx."""
import logging
from datetime import timedelta
from typing import Any, Optional

import httpx

from dates import to_utc
from errors import CalendarAuthError, CalendarError
from models import NewTask, Task

logger = logging.getLogger(__name__)

GCAL_API_BASE = "https://www.googleapis.com/calendar/v3"


def event_payload(task: Task | NewTask, duration_minutes: int = 60) -> dict:
    """Build the calendar event body for a dated Task or NewTask."""
    if task.due_date is None:
        raise ValueError("Only tasks with a due date can be mirrored to the calendar")
    start = to_utc(task.due_date)
    end = start + timedelta(minutes=duration_minutes)
    summary = task.text if task.status != "completed" else f"✓ {task.text}"
    return {
        "summary": summary,
        "description": task.note or "",
        "start": {"dateTime": start.isoformat(), "timeZone": "UTC"},
        "end": {"dateTime": end.isoformat(), "timeZone": "UTC"},
    }


class GoogleCalendarClient:
    """Minimal create/update/delete client for one calendar."""

    def __init__(
        self,
        access_token: str,
        calendar_id: str = "primary",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.calendar_id = calendar_id
        self.headers = {"Authorization": f"Bearer {access_token}"}
        self._transport = transport

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.request(
                    method,
                    f"{GCAL_API_BASE}{path}",
                    headers=self.headers,
                    **kwargs,
                )
        except httpx.HTTPError as e:
            raise CalendarError(f"Calendar request failed: {e}") from e

        if response.status_code in (401, 403):
            raise CalendarAuthError(
                f"Calendar rejected credentials ({response.status_code})", response.status_code
            )
        if response.is_error:
            raise CalendarError(
                f"Calendar returned {response.status_code}: {response.text[:200]}", response.status_code
            )
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    async def create_event(self, payload: dict[str, Any]) -> str:
        """Create an event and return its id."""
        data = await self._request("POST", f"/calendars/{self.calendar_id}/events", json=payload)
        event_id = data.get("id")
        if not event_id:
            raise CalendarError("Calendar did not return an event id")
        return event_id

    async def update_event(self, event_id: str, payload: dict[str, Any]) -> None:
        await self._request("PATCH", f"/calendars/{self.calendar_id}/events/{event_id}", json=payload)

    async def delete_event(self, event_id: str) -> None:
        try:
            await self._request("DELETE", f"/calendars/{self.calendar_id}/events/{event_id}")
        except CalendarError as e:
            # Already gone on the calendar side
            if e.status_code in (404, 410):
                logger.info("Calendar event %s already deleted", event_id)
                return
            raise
