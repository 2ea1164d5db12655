# appointment_scheduler/api/routes/tools.py
"""
Tool-call webhook for the voice agent.

The agent posts ``{"name": ..., "call": {...}, "args": {...}}`` and always gets
HTTP 200 back; failures are reported in the body as ``success: false`` with a
machine-readable ``code`` so the agent can read the message to the caller.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, ValidationError

from appointment_scheduler.api.deps import get_scheduling_engine
from appointment_scheduler.core.errors import ErrorKind, SchedulingError, log_error
from appointment_scheduler.core.logging import get_logger
from appointment_scheduler.schemas.appointment import ScheduleRequest
from appointment_scheduler.services.scheduling import SchedulingEngine

logger = get_logger(__name__)

router = APIRouter(prefix="/webhook", tags=["webhook"])


class ToolCall(BaseModel):
    name: str
    call: Dict[str, Any] = Field(default_factory=dict)
    args: Dict[str, Any] = Field(default_factory=dict)


def _failure(code: str, message: str, **extra) -> Dict[str, Any]:
    return {"success": False, "code": code, "message": message, **extra}


def _parse_instant(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class ToolHandlers:
    """Maps agent function names onto scheduling engine operations."""

    def __init__(self, engine: SchedulingEngine):
        self.engine = engine
        self.handlers: Dict[str, Callable[[Dict[str, Any], Dict[str, Any]], Awaitable[Dict[str, Any]]]] = {
            "schedule_appointment": self.schedule_appointment,
            "check_booked_slots": self.check_booked_slots,
            "reschedule_appointment": self.reschedule_appointment,
            "cancel_appointment": self.cancel_appointment,
            "get_active_appointments_by_email_or_phone": self.get_active_appointments,
            "get_current_time": self.get_current_time,
        }

    async def dispatch(self, tool_call: ToolCall) -> Dict[str, Any]:
        handler = self.handlers.get(tool_call.name)
        if handler is None:
            return _failure("UNKNOWN_FUNCTION", f"Unknown function: {tool_call.name}")

        logger.info("tool_call", name=tool_call.name, call_id=tool_call.call.get("call_id"))
        try:
            return await handler(tool_call.call, tool_call.args)
        except SchedulingError as e:
            log_error(e, {"operation": tool_call.name, "endpoint": "/webhook/tools"})
            return e.to_dict()

    async def schedule_appointment(self, call: Dict[str, Any], args: Dict[str, Any]) -> Dict[str, Any]:
        payload = {k: v for k, v in args.items() if k != "notes"}
        # The whole call payload is kept on the appointment for later auditing
        payload["notes"] = call
        try:
            request = ScheduleRequest.model_validate(payload)
        except ValidationError as e:
            return _failure(
                ErrorKind.VALIDATION_ERROR.code,
                "Invalid request data",
                details=e.errors(include_url=False, include_context=False, include_input=False),
            )

        appointment = await self.engine.create_appointment(request)
        contact = request.email or request.phone_number
        return {
            "success": True,
            "message": (
                f"Appointment scheduled for {request.first_name} {request.last_name} ({contact}) "
                f"from {_iso(request.start_at)} to {_iso(request.end_at)}"
            ),
            "appointmentId": str(appointment.id),
        }

    async def check_booked_slots(self, call: Dict[str, Any], args: Dict[str, Any]) -> Dict[str, Any]:
        date_str = args.get("dateStr")
        if not date_str or not isinstance(date_str, str):
            return _failure("INVALID_DATE", "dateStr is required and must be a valid date string")

        at = _parse_instant(date_str)
        if at is None:
            return _failure("INVALID_DATE", f"Invalid date string: {date_str}")

        slots, available = await self.engine.check_booked_slots(at)
        return {
            "success": True,
            "bookedSlots": [
                {"start": _iso(s.start), "end": _iso(s.end), "isAvailable": s.is_available}
                for s in slots
            ],
            "available": available,
        }

    async def reschedule_appointment(self, call: Dict[str, Any], args: Dict[str, Any]) -> Dict[str, Any]:
        appointment_id = args.get("appointmentId")
        if not appointment_id:
            return _failure("MISSING_APPOINTMENT_ID", "appointmentId is required")

        if not args.get("startAt") or not args.get("endAt"):
            return _failure("MISSING_DATES", "startAt and endAt are required")

        start_at = _parse_instant(args.get("startAt"))
        end_at = _parse_instant(args.get("endAt"))
        if start_at is None or end_at is None:
            return _failure("INVALID_DATE", "startAt and endAt must be valid date strings")

        changes: Dict[str, Any] = {"start_at": start_at, "end_at": end_at}
        new_type = args.get("type")
        if new_type:
            changes["type"] = new_type

        try:
            await self.engine.reschedule_appointment(appointment_id, changes)
        except ValidationError as e:
            return _failure(
                ErrorKind.VALIDATION_ERROR.code,
                "Invalid request data",
                details=e.errors(include_url=False, include_context=False, include_input=False),
            )

        message = f"Appointment {appointment_id} rescheduled to {_iso(start_at)} - {_iso(end_at)}"
        if new_type:
            message += f" and changed to {new_type}"
        return {"success": True, "message": message}

    async def cancel_appointment(self, call: Dict[str, Any], args: Dict[str, Any]) -> Dict[str, Any]:
        appointment_id = args.get("appointmentId")
        if not appointment_id:
            return _failure("MISSING_APPOINTMENT_ID", "appointmentId is required")

        await self.engine.cancel_appointment(appointment_id)
        return {"success": True, "message": f"Appointment {appointment_id} cancelled successfully"}

    async def get_active_appointments(self, call: Dict[str, Any], args: Dict[str, Any]) -> Dict[str, Any]:
        email_or_phone = args.get("emailOrPhone")
        if not email_or_phone or not isinstance(email_or_phone, str) or not email_or_phone.strip():
            return _failure("INVALID_INPUT", "emailOrPhone is required and must be a valid string")

        appointments = await self.engine.find_active_appointments(email_or_phone)
        return {
            "success": True,
            "appointments": [a.to_public().model_dump(mode="json") for a in appointments],
            "count": len(appointments),
            "message": f"Found {len(appointments)} active appointment(s) for {email_or_phone}",
        }

    async def get_current_time(self, call: Dict[str, Any], args: Dict[str, Any]) -> Dict[str, Any]:
        now = self.engine.clock()
        readable = now.astimezone(timezone.utc).strftime("%A, %B %d, %Y at %I:%M:%S %p UTC")
        return {
            "success": True,
            "message": f"The current time is {readable}",
            "currentTime": {
                "iso": _iso(now),
                "readable": readable,
                "timestamp": int(now.timestamp() * 1000),
                "timezone": "UTC",
            },
        }


@router.post("/tools")
async def handle_tool_call(tool_call: ToolCall, engine: SchedulingEngine = Depends(get_scheduling_engine)):
    return await ToolHandlers(engine).dispatch(tool_call)
