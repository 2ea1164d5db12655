# appointment_scheduler/utils/timeout_protection.py
"""
Timeout protection for calls into blocking third-party clients.
"""
import asyncio
import time
from typing import Any, Callable

from appointment_scheduler.core.logging import get_logger

logger = get_logger(__name__)


class OperationTimeout(Exception):
    """A protected operation did not finish within its time budget."""

    def __init__(self, operation: str, timeout_seconds: float):
        super().__init__(f"{operation} timed out after {timeout_seconds}s")
        self.operation = operation
        self.timeout_seconds = timeout_seconds


async def run_blocking(func: Callable[..., Any], *args, timeout_seconds: float,
                       operation: str = "operation", **kwargs) -> Any:
    """
    Run a blocking callable in a worker thread with a timeout.

    Args:
        func: The blocking function to execute
        timeout_seconds: Maximum time to wait
        operation: Name used in logs and in the raised OperationTimeout

    Raises:
        OperationTimeout: if the call does not finish in time. The worker thread
            keeps running to completion in the background; its result is dropped.
    """
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(func, *args, **kwargs),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.warning("operation_timeout", operation=operation, timeout_seconds=timeout_seconds)
        raise OperationTimeout(operation, timeout_seconds) from None


class OperationTimer:
    """
    Context manager that logs how long an operation took.

    Usage:
        with OperationTimer("create_appointment"):
            ...
    """

    def __init__(self, operation_name: str, slow_seconds: float = 2.0):
        self.operation_name = operation_name
        self.slow_seconds = slow_seconds
        self.start_time = None

    def __enter__(self):
        self.start_time = time.monotonic()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = self.elapsed()
        if duration > self.slow_seconds:
            logger.warning("slow_operation", operation=self.operation_name,
                           duration=round(duration, 3), failed=exc_type is not None)
        else:
            logger.debug("operation_complete", operation=self.operation_name,
                         duration=round(duration, 3), failed=exc_type is not None)

    def elapsed(self) -> float:
        if not self.start_time:
            return 0.0
        return time.monotonic() - self.start_time
