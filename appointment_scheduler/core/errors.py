"""
Scheduling error taxonomy plus aggregated error logging.

Every failure the engine surfaces is a ``SchedulingError`` carrying one
``ErrorKind``. Callers branch on ``error.kind`` rather than on exception
subclasses, and the transport layer maps kinds to responses from one table.
"""
import hashlib
import time
from collections import defaultdict
from enum import Enum
from typing import Any, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


class ErrorKind(Enum):
    """Caller-visible failure kinds; the value is the machine-readable code."""
    SLOT_CONFLICT = "TIME_SLOT_UNAVAILABLE"
    NOT_FOUND = "NOT_FOUND"
    CANCELLATION_REJECTED = "APPOINTMENT_CANCELLATION_ERROR"
    SYNC_FAILURE = "SYNC_FAILURE"
    CONSTRAINT_VIOLATION = "CONSTRAINT_VIOLATION"
    VALIDATION_ERROR = "VALIDATION_ERROR"

    @property
    def code(self) -> str:
        return self.value


RETRYABLE_KINDS = frozenset({ErrorKind.SYNC_FAILURE, ErrorKind.CONSTRAINT_VIOLATION})


class SchedulingError(Exception):
    """A failure of one of the scheduling operations."""

    def __init__(self, kind: ErrorKind, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = details or {}

    @property
    def code(self) -> str:
        return self.kind.code

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "code": self.code, "message": self.message}

    def __repr__(self) -> str:
        return f"SchedulingError({self.kind.name}, {self.message!r})"


def slot_conflict(message: str, **details) -> SchedulingError:
    return SchedulingError(ErrorKind.SLOT_CONFLICT, message, details=details)


def not_found(message: str) -> SchedulingError:
    return SchedulingError(ErrorKind.NOT_FOUND, message)


def cancellation_rejected(message: str) -> SchedulingError:
    return SchedulingError(ErrorKind.CANCELLATION_REJECTED, message)


def sync_failure(message: str, **details) -> SchedulingError:
    return SchedulingError(ErrorKind.SYNC_FAILURE, message, details=details)


def constraint_violation(message: str, **details) -> SchedulingError:
    return SchedulingError(ErrorKind.CONSTRAINT_VIOLATION, message, details=details)


def validation_error(message: str) -> SchedulingError:
    return SchedulingError(ErrorKind.VALIDATION_ERROR, message)


# --------------------------------------------------------------------------
# Aggregated error logging
# --------------------------------------------------------------------------

class ErrorSeverity(Enum):
    """Error severity levels for smart alerting."""
    LOW = "low"           # not-found, validation, expected business rejections
    MEDIUM = "medium"     # conflicts, calendar failures, timeouts
    HIGH = "high"         # storage constraint failures
    CRITICAL = "critical" # store and calendar left inconsistent


KIND_SEVERITY = {
    ErrorKind.VALIDATION_ERROR: ErrorSeverity.LOW,
    ErrorKind.NOT_FOUND: ErrorSeverity.LOW,
    ErrorKind.CANCELLATION_REJECTED: ErrorSeverity.LOW,
    ErrorKind.SLOT_CONFLICT: ErrorSeverity.MEDIUM,
    ErrorKind.SYNC_FAILURE: ErrorSeverity.MEDIUM,
    ErrorKind.CONSTRAINT_VIOLATION: ErrorSeverity.HIGH,
}


class ErrorPattern:
    """Track error patterns to reduce duplicate logging."""

    def __init__(self, error_type: str, message: str, context: Dict[str, Any]):
        self.error_type = error_type
        self.message = message[:100]  # Truncate for fingerprinting
        self.context = {k: v for k, v in context.items() if k in ['operation', 'endpoint', 'method']}
        self.fingerprint = self._generate_fingerprint()
        self.first_seen = time.time()
        self.last_seen = time.time()
        self.count = 1

    def _generate_fingerprint(self) -> str:
        content = f"{self.error_type}:{self.message}:{self.context.get('operation', '')}"
        return hashlib.md5(content.encode(), usedforsecurity=False).hexdigest()[:8]

    def update(self):
        self.last_seen = time.time()
        self.count += 1


class ErrorAggregator:
    """Aggregate and deduplicate errors so repeated failures don't flood the log."""

    def __init__(self, log_threshold: int = 10, time_window: int = 300):
        self.log_threshold = log_threshold  # Log every Nth occurrence
        self.time_window = time_window      # 5 minutes
        self.patterns: Dict[str, ErrorPattern] = {}

    def _determine_severity(self, error: Exception) -> ErrorSeverity:
        if isinstance(error, SchedulingError):
            return KIND_SEVERITY[error.kind]
        if "timeout" in str(error).lower() or isinstance(error, TimeoutError):
            return ErrorSeverity.MEDIUM
        return ErrorSeverity.HIGH

    def should_log(self, pattern: ErrorPattern, severity: ErrorSeverity) -> bool:
        if severity in (ErrorSeverity.HIGH, ErrorSeverity.CRITICAL):
            return True

        if pattern.count == 1:
            return True

        if severity == ErrorSeverity.MEDIUM and pattern.count % self.log_threshold == 0:
            return True

        if severity == ErrorSeverity.LOW and pattern.count % (self.log_threshold * 5) == 0:
            return True

        return False

    def log_error(self, error: Exception, context: Optional[Dict[str, Any]] = None,
                  severity: Optional[ErrorSeverity] = None) -> str:
        """Log error with deduplication and frequency control; returns its fingerprint."""
        context = context or {}

        if severity is None:
            severity = self._determine_severity(error)

        error_type = error.kind.name if isinstance(error, SchedulingError) else type(error).__name__
        message = str(error)

        pattern = ErrorPattern(error_type, message, context)
        fingerprint = pattern.fingerprint

        if fingerprint in self.patterns:
            self.patterns[fingerprint].update()
            pattern = self.patterns[fingerprint]
        else:
            self.patterns[fingerprint] = pattern

        if self.should_log(pattern, severity):
            log = logger.critical if severity == ErrorSeverity.CRITICAL else logger.error
            log(
                "aggregated_error",
                error_hash=fingerprint,
                error_type=error_type,
                error=message,
                count=pattern.count,
                severity=severity.value,
                **context
            )

        return fingerprint

    def get_error_summary(self) -> Dict[str, Any]:
        """Summary of recent errors for the health endpoint."""
        now = time.time()
        recent = [p for p in self.patterns.values() if now - p.last_seen < self.time_window]

        by_type: Dict[str, int] = defaultdict(int)
        for pattern in recent:
            by_type[pattern.error_type] += pattern.count

        top = sorted(recent, key=lambda p: p.count, reverse=True)[:5]
        return {
            "total_unique_errors": len(recent),
            "total_error_count": sum(p.count for p in recent),
            "by_type": dict(by_type),
            "top_errors": [
                {"fingerprint": p.fingerprint, "type": p.error_type, "message": p.message, "count": p.count}
                for p in top
            ],
        }

    def cleanup_old_patterns(self):
        """Remove old error patterns to prevent memory leaks."""
        cutoff = time.time() - (self.time_window * 10)
        old = [fp for fp, pattern in self.patterns.items() if pattern.last_seen < cutoff]
        for fp in old:
            del self.patterns[fp]
        if old:
            logger.info("error_cleanup", removed_patterns=len(old))


# Global error aggregator instance
error_aggregator = ErrorAggregator()

def log_error(error: Exception, context: Optional[Dict[str, Any]] = None,
              severity: Optional[ErrorSeverity] = None) -> str:
    """Convenience function to log errors through the global aggregator."""
    return error_aggregator.log_error(error, context, severity)

def get_error_summary() -> Dict[str, Any]:
    error_aggregator.cleanup_old_patterns()
    return error_aggregator.get_error_summary()
