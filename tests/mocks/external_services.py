#!/usr/bin/env python3
"""
In-memory stand-ins for the external calendar so tests never reach Google.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

from googleapiclient.errors import HttpError

from appointment_scheduler.schemas.appointment import AppointmentRecord, BusySlot
from appointment_scheduler.services.google_calendar import CalendarSyncError


class CalendarMock:
    """CalendarSynchronizer that keeps events in a dict and fails on demand"""

    def __init__(self):
        self.events: Dict[str, AppointmentRecord] = {}
        self.calls: List[tuple] = []
        self.fail_create = False
        self.fail_update = False
        self.fail_delete = False
        self.fail_busy = False
        self._next_id = 1

    async def create_event(self, record: AppointmentRecord) -> Optional[str]:
        self.calls.append(("create", str(record.id)))
        if self.fail_create:
            raise CalendarSyncError("calendar unavailable", status=503)
        event_id = f"evt_{self._next_id}"
        self._next_id += 1
        self.events[event_id] = record
        return event_id

    async def update_event(self, event_id: str, record: AppointmentRecord) -> None:
        self.calls.append(("update", event_id))
        if self.fail_update:
            raise CalendarSyncError("calendar unavailable", status=503)
        self.events[event_id] = record

    async def delete_event(self, event_id: str) -> None:
        self.calls.append(("delete", event_id))
        if self.fail_delete:
            raise CalendarSyncError("calendar unavailable", status=503)
        self.events.pop(event_id, None)

    async def get_busy_slots(self, day: datetime) -> List[BusySlot]:
        if self.fail_busy:
            raise CalendarSyncError("freebusy query timed out")
        window_start = day.replace(hour=0, minute=0, second=0, microsecond=0)
        window_end = window_start + timedelta(days=1)
        return [
            BusySlot(start=r.start_at, end=r.end_at)
            for r in self.events.values()
            if r.start_at < window_end and r.end_at > window_start
        ]


def http_error(status: int, reason: str = "error") -> HttpError:
    """Build a googleapiclient HttpError with the given status"""
    resp = MagicMock()
    resp.status = status
    resp.reason = reason
    return HttpError(resp, b'{"error": {"message": "' + reason.encode() + b'"}}')


def google_client_mock(insert_result: Any = None) -> MagicMock:
    """Mock of the discovery client: each request's execute() returns a canned value"""
    client = MagicMock()
    client.events.return_value.insert.return_value.execute.return_value = (
        insert_result if insert_result is not None else {"id": "google_evt_1"}
    )
    client.events.return_value.update.return_value.execute.return_value = {"id": "google_evt_1"}
    client.events.return_value.delete.return_value.execute.return_value = ""
    client.freebusy.return_value.query.return_value.execute.return_value = {"calendars": {}}
    return client
