# appointment_scheduler/services/google_calendar.py
"""
Google Calendar mirror of the appointment store.

The scheduling engine talks to a ``CalendarSynchronizer``; ``GoogleCalendarSync``
implements it with the Google API client, and ``DisabledCalendarSync`` stands in
when the integration is switched off. Every failure, timeouts included, is raised
as ``CalendarSyncError`` so the engine has a single thing to catch.
"""
from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol

from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from appointment_scheduler.core.config import Settings
from appointment_scheduler.core.logging import get_logger
from appointment_scheduler.schemas.appointment import AppointmentRecord, BusySlot
from appointment_scheduler.utils.timeout_protection import OperationTimeout, run_blocking

logger = get_logger(__name__)

CALENDAR_SCOPES = ['https://www.googleapis.com/auth/calendar']
ALREADY_GONE_STATUSES = (404, 410)


class CalendarSyncError(Exception):
    """The calendar provider rejected, failed, or timed out on a request."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class CalendarSynchronizer(Protocol):
    async def create_event(self, record: AppointmentRecord) -> Optional[str]: ...

    async def update_event(self, event_id: str, record: AppointmentRecord) -> None: ...

    async def delete_event(self, event_id: str) -> None: ...

    async def get_busy_slots(self, day: datetime) -> List[BusySlot]: ...


def build_calendar_client(settings: Settings):
    """Build the Google Calendar API client from service-account credentials.

    Returns None when the integration is disabled or not configured.
    """
    if not settings.GOOGLE_CALENDAR_ENABLED:
        logger.info("google_calendar_disabled")
        return None

    if not settings.GOOGLE_SERVICE_ACCOUNT_JSON:
        logger.warning("google_calendar_unconfigured", reason="GOOGLE_SERVICE_ACCOUNT_JSON not set")
        return None

    try:
        credentials_info = json.loads(settings.GOOGLE_SERVICE_ACCOUNT_JSON)
    except json.JSONDecodeError as e:
        logger.error("google_calendar_bad_credentials", error=str(e))
        return None

    credentials = service_account.Credentials.from_service_account_info(
        credentials_info,
        scopes=CALENDAR_SCOPES,
    )
    client = build('calendar', 'v3', credentials=credentials, cache_discovery=False)
    logger.info("google_calendar_initialized", calendar_id=settings.GOOGLE_CALENDAR_ID)
    return client


def build_calendar_sync(settings: Settings) -> "CalendarSynchronizer":
    client = build_calendar_client(settings)
    if client is None:
        return DisabledCalendarSync()
    return GoogleCalendarSync(
        client,
        calendar_id=settings.GOOGLE_CALENDAR_ID,
        time_zone=settings.CALENDAR_TIME_ZONE,
        range_days=settings.CALENDAR_RANGE_DAYS,
        timeout_seconds=settings.CALENDAR_TIMEOUT_SECONDS,
    )


def _event_body(record: AppointmentRecord, time_zone: str) -> Dict[str, Any]:
    title = record.type.label
    description = (
        f"{record.reason or f'{title} appointment'}\n\n"
        f"Patient: {record.full_name}\n"
        f"Email: {record.email or 'Not provided'}\n"
        f"Phone: {record.phone_number or 'Not provided'}"
    )
    # Attendees are left out: inviting them needs domain-wide delegation
    return {
        'summary': f"{title} - {record.full_name}",
        'description': description,
        'start': {
            'dateTime': record.start_at.isoformat(),
            'timeZone': time_zone,
        },
        'end': {
            'dateTime': record.end_at.isoformat(),
            'timeZone': time_zone,
        },
    }


class GoogleCalendarSync:
    """CalendarSynchronizer backed by the Google Calendar v3 API."""

    def __init__(self, client, *, calendar_id: str = "primary", time_zone: str = "UTC",
                 range_days: int = 1, timeout_seconds: float = 10.0):
        self.client = client
        self.calendar_id = calendar_id
        self.time_zone = time_zone
        self.range_days = range_days
        self.timeout_seconds = timeout_seconds

    async def _execute(self, request, operation: str) -> Any:
        try:
            return await run_blocking(
                request.execute,
                timeout_seconds=self.timeout_seconds,
                operation=operation,
            )
        except OperationTimeout as e:
            raise CalendarSyncError(str(e)) from e

    async def create_event(self, record: AppointmentRecord) -> str:
        """Insert an event for the appointment and return its event id."""
        body = _event_body(record, self.time_zone)
        body['reminders'] = {
            'useDefault': False,
            'overrides': [
                {'method': 'email', 'minutes': 24 * 60},  # 1 day before
                {'method': 'popup', 'minutes': 15},       # 15 minutes before
            ],
        }

        try:
            event = await self._execute(
                self.client.events().insert(calendarId=self.calendar_id, body=body),
                "calendar_create",
            )
        except HttpError as e:
            logger.error("calendar_create_failed", appointment_id=str(record.id),
                         status=e.resp.status, error=str(e))
            raise CalendarSyncError(f"Calendar event creation failed (status {e.resp.status})",
                                    status=e.resp.status) from e

        event_id = (event or {}).get('id')
        if not event_id:
            raise CalendarSyncError("Calendar event creation failed: no event ID returned")

        logger.info("calendar_event_created", event_id=event_id, appointment_id=str(record.id))
        return event_id

    async def update_event(self, event_id: str, record: AppointmentRecord) -> None:
        body = _event_body(record, self.time_zone)
        try:
            await self._execute(
                self.client.events().update(calendarId=self.calendar_id, eventId=event_id, body=body),
                "calendar_update",
            )
        except HttpError as e:
            logger.error("calendar_update_failed", event_id=event_id,
                         status=e.resp.status, error=str(e))
            raise CalendarSyncError(f"Calendar event update failed (status {e.resp.status})",
                                    status=e.resp.status) from e

        logger.info("calendar_event_updated", event_id=event_id)

    async def delete_event(self, event_id: str) -> None:
        """Delete an event. An event that is already gone counts as deleted."""
        try:
            await self._execute(
                self.client.events().delete(calendarId=self.calendar_id, eventId=event_id),
                "calendar_delete",
            )
        except HttpError as e:
            if e.resp.status in ALREADY_GONE_STATUSES:
                logger.info("calendar_event_already_deleted", event_id=event_id)
                return
            logger.error("calendar_delete_failed", event_id=event_id,
                         status=e.resp.status, error=str(e))
            raise CalendarSyncError(f"Calendar event deletion failed (status {e.resp.status})",
                                    status=e.resp.status) from e

        logger.info("calendar_event_deleted", event_id=event_id)

    async def get_busy_slots(self, day: datetime) -> List[BusySlot]:
        """Busy intervals from the start of ``day`` (UTC) through the configured range."""
        day = day.astimezone(timezone.utc) if day.tzinfo else day.replace(tzinfo=timezone.utc)
        time_min = day.replace(hour=0, minute=0, second=0, microsecond=0)
        time_max = (time_min + timedelta(days=self.range_days)).replace(hour=23, minute=59, second=59)

        body = {
            'timeMin': time_min.isoformat(),
            'timeMax': time_max.isoformat(),
            'timeZone': self.time_zone,
            'items': [{'id': self.calendar_id}],
        }
        try:
            result = await self._execute(self.client.freebusy().query(body=body), "calendar_freebusy")
        except HttpError as e:
            logger.error("calendar_freebusy_failed", status=e.resp.status, error=str(e))
            raise CalendarSyncError(f"Free/busy request failed (status {e.resp.status})",
                                    status=e.resp.status) from e

        slots: List[BusySlot] = []
        # Response is keyed by calendar id, which may come back as the email rather than "primary"
        for calendar in (result or {}).get('calendars', {}).values():
            for busy in calendar.get('busy', []):
                slots.append(BusySlot(
                    start=datetime.fromisoformat(busy['start'].replace('Z', '+00:00')),
                    end=datetime.fromisoformat(busy['end'].replace('Z', '+00:00')),
                ))
        return slots


class DisabledCalendarSync:
    """Used when Google Calendar is switched off: nothing is mirrored."""

    async def create_event(self, record: AppointmentRecord) -> Optional[str]:
        logger.debug("calendar_disabled_skip", operation="create", appointment_id=str(record.id))
        return None

    async def update_event(self, event_id: str, record: AppointmentRecord) -> None:
        return None

    async def delete_event(self, event_id: str) -> None:
        return None

    async def get_busy_slots(self, day: datetime) -> List[BusySlot]:
        return []
