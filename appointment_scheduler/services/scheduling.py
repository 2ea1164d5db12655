# appointment_scheduler/services/scheduling.py
"""
Scheduling engine: book, reschedule and cancel appointments while keeping the
appointment store and the external calendar consistent.

The store is the system of record. Booking writes the store first and then the
calendar; if the calendar write fails the store row is deleted again and the
booking fails. Once an appointment exists, later calendar failures (reschedule,
cancel) are logged and the store outcome stands.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, List, Mapping, Optional, Sequence, Tuple, Union

from appointment_scheduler.core.business import (
    CANCELLATION_LEAD_TIME,
    AppointmentStatus,
    ensure_utc,
    is_within_lead_time,
    overlaps,
    utcnow,
)
from appointment_scheduler.core.errors import (
    ErrorKind,
    ErrorSeverity,
    SchedulingError,
    cancellation_rejected,
    log_error,
    not_found,
    slot_conflict,
    sync_failure,
    validation_error,
)
from appointment_scheduler.core.logging import get_logger
from appointment_scheduler.crud.appointment import RESCHEDULE_FIELDS, AppointmentId, AppointmentStore
from appointment_scheduler.schemas.appointment import (
    AppointmentRecord,
    BusySlot,
    RescheduleRequest,
    ScheduleRequest,
    normalize_contact,
)
from appointment_scheduler.services.google_calendar import CalendarSynchronizer
from appointment_scheduler.utils.timeout_protection import OperationTimer

logger = get_logger(__name__)


def _iso(dt: datetime) -> str:
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")


class SchedulingEngine:
    """Orchestrates the appointment store and the calendar synchronizer."""

    def __init__(
        self,
        store: AppointmentStore,
        calendar: CalendarSynchronizer,
        *,
        clock: Callable[[], datetime] = utcnow,
        cancellation_lead_time: timedelta = CANCELLATION_LEAD_TIME,
    ):
        self.store = store
        self.calendar = calendar
        self.clock = clock
        self.cancellation_lead_time = cancellation_lead_time

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_appointment(self, request: ScheduleRequest) -> AppointmentRecord:
        """Book a new appointment and mirror it to the calendar.

        Raises:
            SchedulingError: SLOT_CONFLICT if the interval is taken,
                SYNC_FAILURE if the calendar event could not be created (the
                booking is rolled back), VALIDATION_ERROR on malformed input,
                CONSTRAINT_VIOLATION for other storage rejections.
        """
        with OperationTimer("create_appointment"):
            if request.end_at <= request.start_at:
                raise validation_error("end_at must be after start_at")
            if not (request.email or request.phone_number):
                raise validation_error("Either email or phone number must be provided")

            # 1-2) conflict pre-check; the database constraint remains the real guard
            conflicts = await self.store.find_conflicting(request.start_at, request.end_at)
            if conflicts:
                raise self._conflict_error(
                    conflicts,
                    email=request.email,
                    phone_number=request.phone_number,
                    start_at=request.start_at,
                    end_at=request.end_at,
                    same_contact_message="You already have an appointment scheduled during this time slot",
                    generic_message=(
                        f"Time slot from {_iso(request.start_at)} to {_iso(request.end_at)} is already booked"
                    ),
                )

            # 3) persist first: the id is needed to compensate
            record = AppointmentRecord.from_request(request, now=self.clock())
            try:
                created = await self.store.create(record)
            except SchedulingError as e:
                conflict = self._race_conflict(e, request.start_at, request.end_at)
                if conflict is None:
                    raise
                raise conflict from e

            logger.info("appointment_persisted", appointment_id=str(created.id),
                        start_at=_iso(created.start_at), end_at=_iso(created.end_at))

            # 4) mirror to the calendar, compensating on failure
            try:
                event_id = await self.calendar.create_event(created)
            except Exception as calendar_error:
                await self._compensate_create(created, calendar_error)
                raise sync_failure(
                    f"Failed to create calendar event: {calendar_error}",
                    appointment_id=str(created.id),
                ) from calendar_error

            if not event_id:
                logger.info("appointment_created", appointment_id=str(created.id), calendar_event_id=None)
                return created

            try:
                updated = await self.store.update(
                    created.id, created.with_calendar_event(event_id, now=self.clock())
                )
            except Exception as attach_error:
                await self._discard_calendar_event(event_id, created)
                await self._compensate_create(created, attach_error)
                raise sync_failure(
                    f"Failed to record calendar event: {attach_error}",
                    appointment_id=str(created.id),
                ) from attach_error

            logger.info("appointment_created", appointment_id=str(updated.id), calendar_event_id=event_id)
            return updated

    async def _discard_calendar_event(self, event_id: str, created: AppointmentRecord) -> None:
        try:
            await self.calendar.delete_event(event_id)
        except Exception as e:
            log_error(
                e,
                {
                    "operation": "create_appointment_compensation",
                    "event": "orphaned_calendar_event",
                    "appointment_id": str(created.id),
                    "calendar_event_id": event_id,
                },
                ErrorSeverity.CRITICAL,
            )

    async def _compensate_create(self, created: AppointmentRecord, calendar_error: Exception) -> None:
        logger.warning("calendar_create_failed_rolling_back", appointment_id=str(created.id),
                       error=str(calendar_error))
        try:
            removed = await self.store.delete(created.id)
        except Exception as delete_error:
            # Store keeps a row the calendar never saw; an operator has to reconcile it
            log_error(
                delete_error,
                {
                    "operation": "create_appointment_compensation",
                    "event": "orphaned_appointment",
                    "appointment_id": str(created.id),
                    "calendar_error": str(calendar_error),
                },
                ErrorSeverity.CRITICAL,
            )
            return

        if removed:
            logger.info("appointment_rolled_back", appointment_id=str(created.id))
        else:
            logger.warning("appointment_rollback_noop", appointment_id=str(created.id))

    # ------------------------------------------------------------------
    # Reschedule
    # ------------------------------------------------------------------

    async def reschedule_appointment(
        self,
        appointment_id: AppointmentId,
        changes: Union[RescheduleRequest, Mapping[str, Any]],
    ) -> AppointmentRecord:
        """Move an appointment and/or change its type.

        Only ``start_at``, ``end_at`` and ``type`` are read from ``changes``;
        any other key is ignored.
        """
        if not isinstance(changes, RescheduleRequest):
            changes = RescheduleRequest.model_validate(dict(changes))

        with OperationTimer("reschedule_appointment"):
            existing = await self.store.find_by_id(appointment_id)
            if existing is None:
                raise not_found(f"Appointment with ID {appointment_id} not found")

            if not existing.is_active:
                raise validation_error(
                    f"Cannot reschedule an appointment that is {existing.status.value}"
                )

            new_start = changes.start_at or existing.start_at
            new_end = changes.end_at or existing.end_at
            if new_end <= new_start:
                raise validation_error("end_at must be after start_at")

            interval_changed = (new_start, new_end) != (existing.start_at, existing.end_at)
            if interval_changed:
                conflicts = await self.store.find_conflicting(new_start, new_end, exclude_id=existing.id)
                if conflicts:
                    raise self._conflict_error(
                        conflicts,
                        email=existing.email,
                        phone_number=existing.phone_number,
                        start_at=new_start,
                        end_at=new_end,
                        same_contact_message="You already have another appointment scheduled during this time slot",
                        generic_message="Time slot conflict: The new time slot is already booked.",
                    )

            updated_record = existing.rescheduled(new_start, new_end, changes.type, now=self.clock())
            try:
                updated = await self.store.update(existing.id, updated_record, fields=RESCHEDULE_FIELDS)
            except SchedulingError as e:
                conflict = self._race_conflict(e, new_start, new_end)
                if conflict is None:
                    raise
                raise conflict from e

            logger.info("appointment_rescheduled", appointment_id=str(updated.id),
                        start_at=_iso(updated.start_at), end_at=_iso(updated.end_at),
                        type=updated.type.value)

            if existing.calendar_event_id:
                try:
                    await self.calendar.update_event(existing.calendar_event_id, updated)
                except Exception as calendar_error:
                    # Store stays authoritative; the calendar lags until the next successful sync
                    log_error(
                        calendar_error,
                        {
                            "operation": "reschedule_calendar_update",
                            "appointment_id": str(updated.id),
                            "calendar_event_id": existing.calendar_event_id,
                        },
                        ErrorSeverity.MEDIUM,
                    )

            return updated

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    async def cancel_appointment(self, appointment_id: AppointmentId) -> bool:
        with OperationTimer("cancel_appointment"):
            appointment = await self.store.find_by_id(appointment_id)
            if appointment is None:
                raise not_found(f"Appointment with ID {appointment_id} not found")

            now = self.clock()
            self._validate_can_be_cancelled(appointment, now)

            await self.store.update(appointment.id, appointment.cancelled(now=now))
            logger.info("appointment_cancelled", appointment_id=str(appointment.id))

            if appointment.calendar_event_id:
                try:
                    await self.calendar.delete_event(appointment.calendar_event_id)
                except Exception as calendar_error:
                    log_error(
                        calendar_error,
                        {
                            "operation": "cancel_calendar_delete",
                            "appointment_id": str(appointment.id),
                            "calendar_event_id": appointment.calendar_event_id,
                        },
                        ErrorSeverity.MEDIUM,
                    )

            return True

    def _validate_can_be_cancelled(self, appointment: AppointmentRecord, now: datetime) -> None:
        if appointment.status == AppointmentStatus.CANCELLED:
            raise cancellation_rejected("Appointment is already cancelled")

        if appointment.status == AppointmentStatus.COMPLETED:
            raise cancellation_rejected("Cannot cancel completed appointments")

        if is_within_lead_time(appointment.start_at, now, self.cancellation_lead_time):
            hours_until = (appointment.start_at - now).total_seconds() / 3600
            logger.info("cancellation_blocked", appointment_id=str(appointment.id),
                        start_at=_iso(appointment.start_at), hours_until=round(hours_until, 2))
            lead_hours = self.cancellation_lead_time.total_seconds() / 3600
            raise cancellation_rejected(
                f"Cannot cancel appointments less than {lead_hours:g} hours before start time"
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def find_active_appointments(self, email_or_phone: str) -> List[AppointmentRecord]:
        return await self.store.find_active_by_contact(normalize_contact(email_or_phone))

    async def check_booked_slots(self, at: datetime) -> Tuple[List[BusySlot], bool]:
        """Busy calendar intervals around ``at`` and whether ``at`` itself is free."""
        at = ensure_utc(at)
        try:
            slots = await self.calendar.get_busy_slots(at)
        except Exception as calendar_error:
            raise sync_failure(f"Failed to read calendar availability: {calendar_error}") from calendar_error
        # The instant itself is treated as the shortest interval starting at `at`
        instant_end = at + timedelta(microseconds=1)
        available = not any(overlaps(slot.start, slot.end, at, instant_end) for slot in slots)
        return slots, available

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _conflict_error(
        conflicts: Sequence[AppointmentRecord],
        *,
        email: Optional[str],
        phone_number: Optional[str],
        start_at: datetime,
        end_at: datetime,
        same_contact_message: str,
        generic_message: str,
    ) -> SchedulingError:
        same_contact = any(c.shares_contact_with(email, phone_number) for c in conflicts)
        logger.info("slot_conflict", start_at=_iso(start_at), end_at=_iso(end_at),
                    conflicts=len(conflicts), same_contact=same_contact)
        if same_contact:
            return slot_conflict(
                f"{same_contact_message} from {_iso(start_at)} to {_iso(end_at)}",
                same_contact=True,
            )
        return slot_conflict(generic_message, same_contact=False)

    @staticmethod
    def _race_conflict(error: SchedulingError, start_at: datetime, end_at: datetime) -> Optional[SchedulingError]:
        """A slot constraint tripped by a concurrent booking reads as a plain conflict."""
        if error.kind == ErrorKind.CONSTRAINT_VIOLATION and error.details.get("slot_taken"):
            logger.info("slot_conflict_race", start_at=_iso(start_at), end_at=_iso(end_at))
            return slot_conflict(
                f"Time slot from {_iso(start_at)} to {_iso(end_at)} is already booked",
                same_contact=False,
                race=True,
            )
        return None
