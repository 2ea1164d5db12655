#!/usr/bin/env python3
"""
Unit tests for request validation, the appointment record and business rules.
"""

import uuid
import pytest
from datetime import datetime, timedelta, timezone

from pydantic import ValidationError

from appointment_scheduler.core.business import (
    AppointmentStatus,
    AppointmentType,
    is_within_lead_time,
    overlaps,
)
from appointment_scheduler.core.errors import (
    ErrorKind,
    cancellation_rejected,
    slot_conflict,
    sync_failure,
)
from appointment_scheduler.schemas.appointment import (
    AppointmentRecord,
    RescheduleRequest,
    ScheduleRequest,
    normalize_contact,
    normalize_phone,
)

UTC = timezone.utc
NOW = datetime(2030, 1, 15, 9, 0, tzinfo=UTC)


def request_payload(**overrides):
    payload = {
        "firstName": "  John ",
        "lastName": "Smith",
        "email": "John.Smith@Example.COM",
        "phoneNumber": "+1 (416) 555-1234",
        "startAt": "2030-01-15T10:00:00-04:00",
        "endAt": "2030-01-15T10:30:00-04:00",
        "type": "consultation",
    }
    payload.update(overrides)
    return payload


@pytest.mark.unit
class TestScheduleRequest:
    """Validation of incoming booking payloads"""

    def test_camel_case_payload_is_normalized(self):
        request = ScheduleRequest.model_validate(request_payload())

        assert request.first_name == "John"
        assert request.email == "john.smith@example.com"
        assert request.phone_number == "+14165551234"
        assert request.start_at == datetime(2030, 1, 15, 14, 0, tzinfo=UTC)
        assert request.type == AppointmentType.CONSULTATION

    def test_contact_is_required(self):
        with pytest.raises(ValidationError):
            ScheduleRequest.model_validate(request_payload(email=None, phoneNumber=None))

    def test_phone_only_is_enough(self):
        request = ScheduleRequest.model_validate(request_payload(email=None))
        assert request.email is None

    def test_end_must_follow_start(self):
        with pytest.raises(ValidationError):
            ScheduleRequest.model_validate(request_payload(endAt="2030-01-15T10:00:00-04:00"))

    def test_unknown_type_is_rejected(self):
        with pytest.raises(ValidationError):
            ScheduleRequest.model_validate(request_payload(type="haircut"))

    def test_naive_times_are_utc(self):
        request = ScheduleRequest.model_validate(
            request_payload(startAt="2030-01-15T14:00:00", endAt="2030-01-15T14:30:00")
        )
        assert request.start_at.tzinfo is not None
        assert request.start_at.hour == 14


@pytest.mark.unit
class TestRescheduleRequest:
    def test_extra_fields_are_dropped(self):
        changes = RescheduleRequest.model_validate({
            "startAt": "2030-01-15T16:00:00Z",
            "status": "cancelled",
            "email": "attacker@example.com",
        })

        assert changes.model_dump(exclude_none=True) == {"start_at": datetime(2030, 1, 15, 16, 0, tzinfo=UTC)}


@pytest.mark.unit
class TestAppointmentRecord:
    """Record construction and state changes"""

    @pytest.fixture
    def record(self):
        request = ScheduleRequest.model_validate(request_payload(notes={"call_id": "call_1"}))
        return AppointmentRecord.from_request(request, now=NOW)

    def test_from_request(self, record):
        assert record.id is None
        assert record.status == AppointmentStatus.SCHEDULED
        assert record.created_at == NOW
        assert record.notes == {"call_id": "call_1"}
        assert record.full_name == "John Smith"
        assert record.is_active

    def test_cancelled_returns_new_record(self, record):
        cancelled = record.cancelled(now=NOW)

        assert cancelled.status == AppointmentStatus.CANCELLED
        assert record.status == AppointmentStatus.SCHEDULED
        assert not cancelled.is_active

    def test_terminal_states_do_not_move(self, record):
        cancelled = record.cancelled(now=NOW)

        assert not cancelled.can_transition_to(AppointmentStatus.SCHEDULED)
        with pytest.raises(ValueError):
            cancelled.cancelled(now=NOW)

    def test_rescheduled_keeps_type_unless_given(self, record):
        moved = record.rescheduled(
            datetime(2030, 1, 16, 9, 0, tzinfo=UTC), datetime(2030, 1, 16, 9, 30, tzinfo=UTC), now=NOW
        )
        retyped = record.rescheduled(moved.start_at, moved.end_at, AppointmentType.THERAPY, now=NOW)

        assert moved.type == AppointmentType.CONSULTATION
        assert retyped.type == AppointmentType.THERAPY
        assert moved.updated_at == NOW

    def test_rescheduled_rejects_inverted_interval(self, record):
        with pytest.raises(ValueError):
            record.rescheduled(record.end_at, record.start_at, now=NOW)

    def test_shares_contact_with(self, record):
        assert record.shares_contact_with("john.smith@example.com", None)
        assert record.shares_contact_with(None, "+14165551234")
        assert not record.shares_contact_with("jane@example.com", "+14165559999")
        assert not record.shares_contact_with(None, None)

    def test_public_view_hides_notes(self, record):
        public = record.model_copy(update={"id": uuid.uuid4()}).to_public()

        assert "notes" not in public.model_dump()
        assert public.first_name == "John"


@pytest.mark.unit
class TestBusinessRules:
    def test_overlap_is_half_open(self):
        t = lambda h, m=0: datetime(2030, 1, 15, h, m, tzinfo=UTC)

        assert overlaps(t(10), t(11), t(10, 30), t(11, 30))
        assert overlaps(t(10), t(11), t(10, 15), t(10, 45))
        assert not overlaps(t(10), t(11), t(11), t(12))
        assert not overlaps(t(11), t(12), t(10), t(11))

    def test_lead_time_boundary(self):
        assert not is_within_lead_time(NOW + timedelta(hours=2), NOW)
        assert is_within_lead_time(NOW + timedelta(hours=1, minutes=59), NOW)
        assert is_within_lead_time(NOW - timedelta(hours=1), NOW)

    def test_type_labels(self):
        assert AppointmentType.FOLLOW_UP.label == "Follow up"
        assert len(AppointmentType) == 12

    def test_normalize_contact(self):
        assert normalize_contact(" Jane@Example.com ") == "jane@example.com"
        assert normalize_contact("416-555-1234") == "+14165551234"
        assert normalize_contact("not a phone") == "not a phone"

    def test_normalize_phone_rejects_garbage(self):
        with pytest.raises(ValueError):
            normalize_phone("12ab")


@pytest.mark.unit
class TestSchedulingErrors:
    def test_error_payload(self):
        error = slot_conflict("Time slot is already booked")

        assert error.to_dict() == {
            "success": False,
            "code": "TIME_SLOT_UNAVAILABLE",
            "message": "Time slot is already booked",
        }

    def test_retryable_kinds(self):
        assert sync_failure("calendar down").retryable
        assert not cancellation_rejected("too late").retryable
        assert cancellation_rejected("too late").kind == ErrorKind.CANCELLATION_REJECTED
