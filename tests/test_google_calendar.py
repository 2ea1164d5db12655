#!/usr/bin/env python3
"""
Tests for the Google Calendar synchronizer, with the API client mocked out.
"""

import time
import pytest
from datetime import datetime, timezone
from unittest.mock import patch

from appointment_scheduler.core.business import AppointmentType
from appointment_scheduler.core.config import Settings
from appointment_scheduler.schemas.appointment import AppointmentRecord
from appointment_scheduler.services.google_calendar import (
    CalendarSyncError,
    DisabledCalendarSync,
    GoogleCalendarSync,
    build_calendar_client,
    build_calendar_sync,
)

from mocks.external_services import google_client_mock, http_error

UTC = timezone.utc


@pytest.fixture
def sample_record():
    """Persisted appointment to mirror"""
    return AppointmentRecord(
        id="6f1d0c8e-2b7a-4d8e-9a51-3c0f4e7b2a10",
        first_name="John",
        last_name="Smith",
        email="john.smith@example.com",
        phone_number="+14165551234",
        start_at=datetime(2030, 1, 15, 14, 0, tzinfo=UTC),
        end_at=datetime(2030, 1, 15, 14, 30, tzinfo=UTC),
        type=AppointmentType.FOLLOW_UP,
        reason="Blood test results",
        created_at=datetime(2030, 1, 10, 9, 0, tzinfo=UTC),
    )


@pytest.fixture
def client():
    return google_client_mock()


@pytest.fixture
def calendar_sync(client):
    return GoogleCalendarSync(client, calendar_id="clinic@example.com", time_zone="America/Edmonton")


class TestCalendarClientFactory:
    """Building the client from settings"""

    def test_disabled(self):
        settings = Settings(GOOGLE_CALENDAR_ENABLED=False)

        assert build_calendar_client(settings) is None
        assert isinstance(build_calendar_sync(settings), DisabledCalendarSync)

    def test_missing_credentials(self):
        settings = Settings(GOOGLE_CALENDAR_ENABLED=True, GOOGLE_SERVICE_ACCOUNT_JSON=None)

        assert build_calendar_client(settings) is None

    def test_invalid_json_credentials(self):
        settings = Settings(GOOGLE_CALENDAR_ENABLED=True, GOOGLE_SERVICE_ACCOUNT_JSON="invalid_json")

        assert build_calendar_client(settings) is None

    @patch('appointment_scheduler.services.google_calendar.build')
    @patch('appointment_scheduler.services.google_calendar.service_account.Credentials.from_service_account_info')
    def test_enabled_builds_sync(self, mock_credentials, mock_build):
        settings = Settings(
            GOOGLE_CALENDAR_ENABLED=True,
            GOOGLE_SERVICE_ACCOUNT_JSON='{"type": "service_account"}',
            GOOGLE_CALENDAR_ID="clinic@example.com",
        )

        sync = build_calendar_sync(settings)

        assert isinstance(sync, GoogleCalendarSync)
        assert sync.calendar_id == "clinic@example.com"
        mock_credentials.assert_called_once()
        mock_build.assert_called_once()


class TestGoogleCalendarSync:
    """Event operations against the mocked API"""

    @pytest.mark.asyncio
    async def test_create_event(self, calendar_sync, client, sample_record):
        event_id = await calendar_sync.create_event(sample_record)

        assert event_id == "google_evt_1"
        kwargs = client.events.return_value.insert.call_args.kwargs
        assert kwargs["calendarId"] == "clinic@example.com"
        body = kwargs["body"]
        assert body["summary"] == "Follow up - John Smith"
        assert "Blood test results" in body["description"]
        assert body["start"]["timeZone"] == "America/Edmonton"
        assert body["start"]["dateTime"] == "2030-01-15T14:00:00+00:00"
        assert body["reminders"]["useDefault"] is False
        assert "attendees" not in body

    @pytest.mark.asyncio
    async def test_create_event_without_id_fails(self, client, sample_record):
        client.events.return_value.insert.return_value.execute.return_value = {}
        calendar_sync = GoogleCalendarSync(client)

        with pytest.raises(CalendarSyncError):
            await calendar_sync.create_event(sample_record)

    @pytest.mark.asyncio
    async def test_create_event_http_error(self, calendar_sync, client, sample_record):
        client.events.return_value.insert.return_value.execute.side_effect = http_error(500, "backendError")

        with pytest.raises(CalendarSyncError) as exc_info:
            await calendar_sync.create_event(sample_record)

        assert exc_info.value.status == 500

    @pytest.mark.asyncio
    async def test_create_event_timeout(self, client, sample_record):
        client.events.return_value.insert.return_value.execute.side_effect = lambda: time.sleep(0.5)
        calendar_sync = GoogleCalendarSync(client, timeout_seconds=0.05)

        with pytest.raises(CalendarSyncError) as exc_info:
            await calendar_sync.create_event(sample_record)

        assert "timed out" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_update_event(self, calendar_sync, client, sample_record):
        await calendar_sync.update_event("google_evt_1", sample_record)

        kwargs = client.events.return_value.update.call_args.kwargs
        assert kwargs["eventId"] == "google_evt_1"
        assert kwargs["body"]["end"]["dateTime"] == "2030-01-15T14:30:00+00:00"

    @pytest.mark.asyncio
    async def test_update_event_http_error(self, calendar_sync, client, sample_record):
        client.events.return_value.update.return_value.execute.side_effect = http_error(403, "forbidden")

        with pytest.raises(CalendarSyncError):
            await calendar_sync.update_event("google_evt_1", sample_record)

    @pytest.mark.asyncio
    async def test_delete_event(self, calendar_sync, client):
        await calendar_sync.delete_event("google_evt_1")

        client.events.return_value.delete.assert_called_once_with(
            calendarId="clinic@example.com", eventId="google_evt_1"
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [404, 410])
    async def test_delete_missing_event_succeeds(self, calendar_sync, client, status):
        client.events.return_value.delete.return_value.execute.side_effect = http_error(status, "notFound")

        await calendar_sync.delete_event("google_evt_1")

    @pytest.mark.asyncio
    async def test_delete_event_http_error(self, calendar_sync, client):
        client.events.return_value.delete.return_value.execute.side_effect = http_error(500, "backendError")

        with pytest.raises(CalendarSyncError) as exc_info:
            await calendar_sync.delete_event("google_evt_1")

        assert exc_info.value.status == 500

    @pytest.mark.asyncio
    async def test_get_busy_slots(self, calendar_sync, client):
        client.freebusy.return_value.query.return_value.execute.return_value = {
            "calendars": {
                "clinic@example.com": {
                    "busy": [
                        {"start": "2030-01-15T14:00:00Z", "end": "2030-01-15T14:30:00Z"},
                        {"start": "2030-01-15T16:00:00-07:00", "end": "2030-01-15T17:00:00-07:00"},
                    ]
                }
            }
        }

        slots = await calendar_sync.get_busy_slots(datetime(2030, 1, 15, 10, 0, tzinfo=UTC))

        assert [(s.start, s.end) for s in slots] == [
            (datetime(2030, 1, 15, 14, 0, tzinfo=UTC), datetime(2030, 1, 15, 14, 30, tzinfo=UTC)),
            (datetime(2030, 1, 15, 23, 0, tzinfo=UTC), datetime(2030, 1, 16, 0, 0, tzinfo=UTC)),
        ]
        assert all(not s.is_available for s in slots)

        body = client.freebusy.return_value.query.call_args.kwargs["body"]
        assert body["items"] == [{"id": "clinic@example.com"}]
        assert body["timeMin"] == "2030-01-15T00:00:00+00:00"

    @pytest.mark.asyncio
    async def test_disabled_sync_is_a_no_op(self, sample_record):
        sync = DisabledCalendarSync()

        assert await sync.create_event(sample_record) is None
        assert await sync.get_busy_slots(datetime(2030, 1, 15, tzinfo=UTC)) == []
        await sync.update_event("evt", sample_record)
        await sync.delete_event("evt")
