from datetime import datetime
from typing import Optional
from urllib.parse import quote

import httpx

from isp_support.logging_config import get_logger
from isp_support.services.result import Result

logger = get_logger("calendar_service")

CALENDAR_API_URL = "https://www.googleapis.com/calendar/v3/calendars/{calendar_id}/events"


class CalendarService:
    """Google Calendar REST client for technician visits."""

    def __init__(self, calendar_id: Optional[str], access_token: Optional[str], timezone: str, timeout: float = 15.0):
        self.calendar_id = calendar_id
        self.access_token = access_token
        self.timezone = timezone
        self.timeout = timeout

    async def create_event(self, title: str, description: str, start: datetime, end: datetime) -> Result[str]:
        if not (self.calendar_id and self.access_token):
            logger.error("Calendar not configured")
            return Result.failure("La función de calendario no está configurada", "not_configured")

        event = {
            "summary": title,
            "description": description,
            "start": {"dateTime": start.isoformat(), "timeZone": self.timezone},
            "end": {"dateTime": end.isoformat(), "timeZone": self.timezone},
        }
        url = CALENDAR_API_URL.format(calendar_id=quote(self.calendar_id, safe=""))
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    url,
                    json=event,
                    headers={"Authorization": f"Bearer {self.access_token}"},
                )
        except httpx.HTTPError as e:
            logger.error(f"Calendar request error: {e}")
            return Result.failure(str(e), "connection_error")

        if response.status_code != 200:
            logger.error(f"Calendar error {response.status_code}: {response.text[:200]}")
            return Result.failure("No se pudo agendar la visita en el calendario", "http_error")

        event_id = response.json().get("id", "")
        logger.info(f"Calendar event created: {title}", extra={"context": {"event_id": event_id}})
        return Result.success(event_id)
