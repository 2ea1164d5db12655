# appointment_scheduler/crud/appointment.py

from __future__ import annotations
import uuid
from datetime import datetime
from typing import List, Optional, Sequence, Union

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from appointment_scheduler.core.business import ACTIVE_STATUSES, AppointmentStatus, utcnow
from appointment_scheduler.core.errors import SchedulingError, constraint_violation, not_found
from appointment_scheduler.core.logging import get_logger
from appointment_scheduler.db.models.appointment import Appointment
from appointment_scheduler.schemas.appointment import AppointmentRecord

logger = get_logger(__name__)

AppointmentId = Union[uuid.UUID, str]

ACTIVE_STATUS_VALUES = sorted(s.value for s in ACTIVE_STATUSES)

# Markers of an integrity error caused by another active appointment holding the slot
SLOT_CONSTRAINT_MARKERS = (
    "uq_appointments_active_slot",
    "appointments_no_active_overlap",
    "unique constraint failed: appointments.start_at",
    "exclusion constraint",
)

# Fields update() is allowed to replace; identity, contact and created_at never move
MUTABLE_FIELDS = ("start_at", "end_at", "type", "notes", "calendar_event_id", "status")

# A reschedule never writes status, so a cancellation committed meanwhile stands
RESCHEDULE_FIELDS = ("start_at", "end_at", "type")


def _parse_id(value: AppointmentId) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _integrity_error(exc: IntegrityError, operation: str) -> SchedulingError:
    text = str(exc.orig).lower()
    slot_taken = any(marker in text for marker in SLOT_CONSTRAINT_MARKERS)
    logger.warning("store_constraint_violation", operation=operation,
                   slot_taken=slot_taken, error=str(exc.orig))
    return constraint_violation(
        f"Appointment violates a storage constraint during {operation}",
        slot_taken=slot_taken,
        operation=operation,
    )


class AppointmentStore:
    """Persistence for appointment records over one async session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, record: AppointmentRecord) -> AppointmentRecord:
        """Insert a new appointment. Status is always stored as scheduled."""
        row = Appointment(
            first_name=record.first_name,
            last_name=record.last_name,
            email=record.email,
            phone_number=record.phone_number,
            start_at=record.start_at,
            end_at=record.end_at,
            type=record.type.value,
            status=AppointmentStatus.SCHEDULED.value,
            notes=dict(record.notes or {}),
            reason=record.reason,
            calendar_event_id=record.calendar_event_id,
            created_at=record.created_at or utcnow(),
            updated_at=None,
        )
        self.db.add(row)

        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise _integrity_error(e, "create") from e

        await self.db.refresh(row)
        return AppointmentRecord.from_persisted(row)

    async def update(
        self,
        appointment_id: AppointmentId,
        record: AppointmentRecord,
        fields: Sequence[str] = MUTABLE_FIELDS,
    ) -> AppointmentRecord:
        """Replace the mutable fields (or the given subset of them) of an existing appointment."""
        key = _parse_id(appointment_id)
        row = await self.db.get(Appointment, key, populate_existing=True) if key else None
        if row is None:
            raise not_found(f"Appointment with ID {appointment_id} not found")

        for field in fields:
            if field not in MUTABLE_FIELDS:
                raise ValueError(f"{field} cannot be updated")
            value = getattr(record, field)
            if field in ("type", "status"):
                value = value.value
            elif field == "notes":
                value = dict(value or {})
            setattr(row, field, value)
        row.updated_at = record.updated_at or utcnow()

        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise _integrity_error(e, "update") from e

        await self.db.refresh(row)
        return AppointmentRecord.from_persisted(row)

    async def delete(self, appointment_id: AppointmentId) -> bool:
        """Remove an appointment; False when there was nothing to remove."""
        key = _parse_id(appointment_id)
        if key is None:
            return False
        result = await self.db.execute(sa.delete(Appointment).where(Appointment.id == key))
        await self.db.commit()
        return (result.rowcount or 0) > 0

    async def find_by_id(self, appointment_id: AppointmentId) -> Optional[AppointmentRecord]:
        key = _parse_id(appointment_id)
        if key is None:
            return None
        row = await self.db.get(Appointment, key, populate_existing=True)
        return AppointmentRecord.from_persisted(row) if row else None

    async def find_conflicting(
        self,
        start_at: datetime,
        end_at: datetime,
        exclude_id: Optional[AppointmentId] = None,
    ) -> List[AppointmentRecord]:
        """Active appointments overlapping [start_at, end_at)."""
        q = sa.select(Appointment).where(
            Appointment.start_at < end_at,
            Appointment.end_at > start_at,
            Appointment.status.in_(ACTIVE_STATUS_VALUES),
        )
        if exclude_id is not None:
            key = _parse_id(exclude_id)
            if key is not None:
                q = q.where(Appointment.id != key)
        res = await self.db.execute(q)
        return [AppointmentRecord.from_persisted(r) for r in res.scalars().all()]

    async def is_available(
        self,
        start_at: datetime,
        end_at: datetime,
        exclude_id: Optional[AppointmentId] = None,
    ) -> bool:
        return not await self.find_conflicting(start_at, end_at, exclude_id)

    async def find_active_by_contact(self, email_or_phone: str) -> List[AppointmentRecord]:
        """Active appointments whose email or phone equals the value, latest start first."""
        q = (
            sa.select(Appointment)
            .where(
                sa.or_(Appointment.email == email_or_phone, Appointment.phone_number == email_or_phone),
                Appointment.status.in_(ACTIVE_STATUS_VALUES),
            )
            .order_by(Appointment.start_at.desc())
        )
        res = await self.db.execute(q)
        return [AppointmentRecord.from_persisted(r) for r in res.scalars().all()]
