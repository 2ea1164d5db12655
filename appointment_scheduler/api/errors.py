# appointment_scheduler/api/errors.py

from fastapi import Request
from fastapi.responses import JSONResponse

from appointment_scheduler.core.errors import ErrorKind, SchedulingError, log_error

STATUS_BY_KIND = {
    ErrorKind.SLOT_CONFLICT: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CANCELLATION_REJECTED: 409,
    ErrorKind.SYNC_FAILURE: 502,
    ErrorKind.CONSTRAINT_VIOLATION: 409,
    ErrorKind.VALIDATION_ERROR: 422,
}


async def scheduling_error_handler(request: Request, exc: SchedulingError) -> JSONResponse:
    log_error(exc, {"endpoint": request.url.path, "method": request.method})
    headers = {"Retry-After": "5"} if exc.retryable else None
    return JSONResponse(exc.to_dict(), status_code=STATUS_BY_KIND[exc.kind], headers=headers)
