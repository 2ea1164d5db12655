# appointment_scheduler/core/business.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum


class AppointmentType(str, Enum):
    CONSULTATION = "consultation"
    FOLLOW_UP = "follow_up"
    CHECK_UP = "check_up"
    EMERGENCY = "emergency"
    VACCINATION = "vaccination"
    SCREENING = "screening"
    THERAPY = "therapy"
    SURGERY = "surgery"
    DIAGNOSTIC = "diagnostic"
    PREVENTIVE = "preventive"
    SPECIALIST = "specialist"
    ROUTINE = "routine"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").capitalize()


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


# Statuses that occupy their slot: used by conflict checks and active listings alike
ACTIVE_STATUSES = frozenset({AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED})

# from-status -> statuses it may move to
ALLOWED_TRANSITIONS = {
    AppointmentStatus.SCHEDULED: frozenset({
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.COMPLETED,
    }),
    AppointmentStatus.CONFIRMED: frozenset({
        AppointmentStatus.CANCELLED,
        AppointmentStatus.COMPLETED,
    }),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.COMPLETED: frozenset(),
}

CANCELLATION_LEAD_TIME = timedelta(hours=2)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Naive datetimes are taken as UTC; aware ones are converted."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Half-open interval overlap: [a_start, a_end) and [b_start, b_end).

    Intervals that only touch (one ends exactly when the other starts) do not overlap.
    """
    return a_start < b_end and a_end > b_start


def is_within_lead_time(starts_at: datetime, now: datetime,
                        lead_time: timedelta = CANCELLATION_LEAD_TIME) -> bool:
    """True when less than ``lead_time`` remains before ``starts_at``.

    Exactly ``lead_time`` ahead is still outside the cutoff.
    """
    return ensure_utc(starts_at) - ensure_utc(now) < lead_time
