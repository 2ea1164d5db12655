# appointment_scheduler/api/deps.py

from datetime import timedelta

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from appointment_scheduler.crud.appointment import AppointmentStore
from appointment_scheduler.db.session import get_session
from appointment_scheduler.services.scheduling import SchedulingEngine


def get_scheduling_engine(request: Request, db: AsyncSession = Depends(get_session)) -> SchedulingEngine:
    """One engine per request around a fresh store; the calendar client is shared."""
    config = request.app.state.settings
    return SchedulingEngine(
        AppointmentStore(db),
        request.app.state.calendar,
        cancellation_lead_time=timedelta(hours=config.CANCELLATION_LEAD_HOURS),
    )
