# appointment_scheduler/api/routes/appointments.py

from __future__ import annotations
import uuid
from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from appointment_scheduler.api.deps import get_scheduling_engine
from appointment_scheduler.core.errors import not_found
from appointment_scheduler.schemas.appointment import (
    AppointmentOut,
    BusySlot,
    RescheduleRequest,
    ScheduleRequest,
)
from appointment_scheduler.services.scheduling import SchedulingEngine

router = APIRouter(prefix="/appointments", tags=["appointments"])


class AvailabilityOut(BaseModel):
    booked_slots: List[BusySlot]
    available: bool


class CancelOut(BaseModel):
    success: bool
    message: str


@router.post("", response_model=AppointmentOut, status_code=201)
async def book_appointment(payload: ScheduleRequest, engine: SchedulingEngine = Depends(get_scheduling_engine)):
    appointment = await engine.create_appointment(payload)
    return appointment.to_public()


@router.get("", response_model=List[AppointmentOut])
async def get_active_appointments(
    contact: str = Query(..., min_length=1, description="Email address or phone number"),
    engine: SchedulingEngine = Depends(get_scheduling_engine),
):
    rows = await engine.find_active_appointments(contact)
    return [r.to_public() for r in rows]


@router.get("/availability", response_model=AvailabilityOut)
async def check_availability(
    at: datetime = Query(..., description="ISO8601 instant to check"),
    engine: SchedulingEngine = Depends(get_scheduling_engine),
):
    slots, available = await engine.check_booked_slots(at)
    return AvailabilityOut(booked_slots=slots, available=available)


@router.get("/{appointment_id}", response_model=AppointmentOut)
async def get_appointment(appointment_id: uuid.UUID, engine: SchedulingEngine = Depends(get_scheduling_engine)):
    appointment = await engine.store.find_by_id(appointment_id)
    if appointment is None:
        raise not_found(f"Appointment with ID {appointment_id} not found")
    return appointment.to_public()


@router.patch("/{appointment_id}", response_model=AppointmentOut)
async def reschedule_appointment(
    appointment_id: uuid.UUID,
    payload: RescheduleRequest,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
):
    appointment = await engine.reschedule_appointment(appointment_id, payload)
    return appointment.to_public()


@router.post("/{appointment_id}/cancel", response_model=CancelOut)
async def cancel_appointment(appointment_id: uuid.UUID, engine: SchedulingEngine = Depends(get_scheduling_engine)):
    await engine.cancel_appointment(appointment_id)
    return CancelOut(success=True, message=f"Appointment {appointment_id} cancelled successfully")
