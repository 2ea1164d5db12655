# appointment_scheduler/schemas/appointment.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

import phonenumbers
from phonenumbers import PhoneNumberFormat
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from appointment_scheduler.core.business import (
    ACTIVE_STATUSES,
    ALLOWED_TRANSITIONS,
    AppointmentStatus,
    AppointmentType,
    ensure_utc,
    utcnow,
)


# Region assumed for numbers given without a country code
DEFAULT_PHONE_REGION = "CA"


def normalize_email(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    v = v.strip().lower()
    if not v:
        return None
    local, sep, domain = v.partition("@")
    if not sep or not local or "." not in domain:
        raise ValueError("email must look like name@example.com")
    return v


def normalize_phone(v: Optional[str]) -> Optional[str]:
    # store E.164 so lookups match however the caller formatted the number
    if v is None:
        return None
    v = v.strip()
    if not v:
        return None
    try:
        parsed = phonenumbers.parse(v, DEFAULT_PHONE_REGION)
    except phonenumbers.NumberParseException as e:
        raise ValueError(f"invalid phone number: {e}") from e
    if not phonenumbers.is_possible_number(parsed):
        raise ValueError("phone number has the wrong number of digits")
    return phonenumbers.format_number(parsed, PhoneNumberFormat.E164)


def normalize_contact(value: str) -> str:
    """Normalize a free-form email-or-phone lookup key the way stored contacts are normalized."""
    value = value.strip()
    if "@" in value:
        return value.lower()
    try:
        return normalize_phone(value) or value
    except ValueError:
        return value


class _RequestModel(BaseModel):
    # Accept both snake_case and the camelCase the voice agent sends
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ScheduleRequest(_RequestModel):
    """Incoming payload for booking a new appointment."""
    first_name: str = Field(..., min_length=1, max_length=150)
    last_name: str = Field(..., min_length=1, max_length=150)
    email: Optional[str] = None
    phone_number: Optional[str] = None
    start_at: datetime
    end_at: datetime
    type: AppointmentType
    notes: Dict[str, Any] = Field(default_factory=dict)
    reason: Optional[str] = None

    @field_validator("first_name", "last_name")
    @classmethod
    def _clean_name(cls, v: str) -> str:
        v = " ".join(v.strip().split())
        if not v:
            raise ValueError("name cannot be empty")
        return v

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, v: Optional[str]) -> Optional[str]:
        return normalize_email(v)

    @field_validator("phone_number")
    @classmethod
    def _normalize_phone(cls, v: Optional[str]) -> Optional[str]:
        return normalize_phone(v)

    @field_validator("start_at", "end_at")
    @classmethod
    def _to_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @model_validator(mode="after")
    def _check_invariants(self) -> "ScheduleRequest":
        if self.end_at <= self.start_at:
            raise ValueError("end_at must be after start_at")
        if not (self.email or self.phone_number):
            raise ValueError("Either email or phone number must be provided")
        return self


class RescheduleRequest(_RequestModel):
    """Changes accepted by a reschedule. Anything else in the payload is dropped."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    type: Optional[AppointmentType] = None

    @field_validator("start_at", "end_at")
    @classmethod
    def _to_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else None


class AppointmentRecord(BaseModel):
    """The unit of scheduling, detached from any database session."""
    model_config = ConfigDict(from_attributes=True)

    id: Optional[uuid.UUID] = None
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone_number: Optional[str] = None
    start_at: datetime
    end_at: datetime
    type: AppointmentType
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    notes: Dict[str, Any] = Field(default_factory=dict)
    reason: Optional[str] = None
    calendar_event_id: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @field_validator("start_at", "end_at", "created_at")
    @classmethod
    def _to_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @field_validator("updated_at")
    @classmethod
    def _to_utc_optional(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else None

    # ---------- construction ----------

    @classmethod
    def from_request(cls, request: ScheduleRequest, now: Optional[datetime] = None) -> "AppointmentRecord":
        """A new, not yet persisted record. Status always starts as scheduled."""
        return cls(
            id=None,
            first_name=request.first_name,
            last_name=request.last_name,
            email=request.email,
            phone_number=request.phone_number,
            start_at=request.start_at,
            end_at=request.end_at,
            type=request.type,
            status=AppointmentStatus.SCHEDULED,
            notes=dict(request.notes),
            reason=request.reason,
            calendar_event_id=None,
            created_at=now or utcnow(),
            updated_at=None,
        )

    @classmethod
    def from_persisted(cls, row: Any) -> "AppointmentRecord":
        """Build from an ORM row (or anything exposing the same attributes)."""
        return cls.model_validate(row)

    # ---------- state ----------

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def can_transition_to(self, status: AppointmentStatus) -> bool:
        return status in ALLOWED_TRANSITIONS[self.status]

    def shares_contact_with(self, email: Optional[str], phone_number: Optional[str]) -> bool:
        return bool(
            (email and self.email == email)
            or (phone_number and self.phone_number == phone_number)
        )

    # ---------- mutations (each returns a new record) ----------

    def with_status(self, status: AppointmentStatus, now: Optional[datetime] = None) -> "AppointmentRecord":
        if not self.can_transition_to(status):
            raise ValueError(f"cannot move appointment from {self.status.value} to {status.value}")
        return self.model_copy(update={"status": status, "updated_at": now or utcnow()})

    def cancelled(self, now: Optional[datetime] = None) -> "AppointmentRecord":
        return self.with_status(AppointmentStatus.CANCELLED, now)

    def rescheduled(
        self,
        start_at: datetime,
        end_at: datetime,
        type: Optional[AppointmentType] = None,
        now: Optional[datetime] = None,
    ) -> "AppointmentRecord":
        if end_at <= start_at:
            raise ValueError("end_at must be after start_at")
        return self.model_copy(update={
            "start_at": ensure_utc(start_at),
            "end_at": ensure_utc(end_at),
            "type": type or self.type,
            "updated_at": now or utcnow(),
        })

    def with_calendar_event(self, event_id: str, now: Optional[datetime] = None) -> "AppointmentRecord":
        return self.model_copy(update={"calendar_event_id": event_id, "updated_at": now or utcnow()})

    def to_public(self) -> "AppointmentOut":
        return AppointmentOut.model_validate(self.model_dump(exclude={"notes"}))


class AppointmentOut(BaseModel):
    """Response model: the record without its internal notes payload."""
    id: uuid.UUID
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone_number: Optional[str] = None
    start_at: datetime
    end_at: datetime
    type: AppointmentType
    status: AppointmentStatus
    reason: Optional[str] = None
    calendar_event_id: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class BusySlot(BaseModel):
    start: datetime
    end: datetime
    is_available: bool = False

    @field_validator("start", "end")
    @classmethod
    def _to_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)
