"""Custom exception hierarchy for the course generation pipeline."""

from enum import Enum
from typing import Optional, Dict, Any, Iterable


class ErrorCode(str, Enum):
    """Standardized error codes for API responses."""

    # Job errors
    JOB_NOT_FOUND = "JOB_NOT_FOUND"

    # State machine errors
    ILLEGAL_TRANSITION = "ILLEGAL_TRANSITION"
    INVALID_PROGRESS_UPDATE = "INVALID_PROGRESS_UPDATE"

    # Concurrency errors
    CONFLICT = "CONFLICT"

    # Generation errors
    GENERATOR_UNAVAILABLE = "GENERATOR_UNAVAILABLE"
    STAGE_HANDLER_NOT_FOUND = "STAGE_HANDLER_NOT_FOUND"

    # Database errors
    DATABASE_ERROR = "DATABASE_ERROR"

    # Generic errors
    INTERNAL_ERROR = "INTERNAL_ERROR"


class CourseGenException(Exception):
    """
    Base exception for all pipeline errors.

    Provides structured error responses with:
    - Human-readable message
    - Machine-readable error code
    - HTTP status code
    - Optional additional details
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert exception to dictionary for JSON response.

        Returns:
            Dictionary with error, message, and details fields
        """
        return {
            "error": self.error_code.value,
            "message": self.message,
            "details": self.details
        }


class JobNotFoundError(CourseGenException):
    """Pipeline job not found in database."""

    def __init__(self, job_id: str):
        super().__init__(
            f"Job not found: {job_id}",
            ErrorCode.JOB_NOT_FOUND,
            status_code=404,
            details={"job_id": job_id}
        )


class IllegalTransitionError(CourseGenException):
    """
    A stage change that the transition table does not allow.

    ``from_stage`` is the stage persisted at the moment of the check, so
    callers can tell an expected race (already at or past the target)
    from a genuine ordering bug.
    """

    def __init__(self, job_id: str, from_stage: str, to_stage: str, allowed: Iterable[str] = ()):
        self.job_id = job_id
        self.from_stage = from_stage
        self.to_stage = to_stage
        self.allowed = sorted(allowed)
        super().__init__(
            f"Invalid generation status transition: {from_stage} -> {to_stage} (job_id: {job_id})",
            ErrorCode.ILLEGAL_TRANSITION,
            status_code=409,
            details={
                "job_id": job_id,
                "from_stage": from_stage,
                "to_stage": to_stage,
                "allowed": self.allowed,
            }
        )


class InvalidProgressUpdateError(CourseGenException):
    """Step id or raw status outside the accepted range."""

    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else {}
        super().__init__(
            message,
            ErrorCode.INVALID_PROGRESS_UPDATE,
            status_code=400,
            details=details
        )


class ConcurrentUpdateError(CourseGenException):
    """Optimistic lock kept losing to concurrent writers."""

    def __init__(self, job_id: str, attempts: int):
        super().__init__(
            f"Job {job_id} was modified concurrently {attempts} times in a row",
            ErrorCode.CONFLICT,
            status_code=409,
            details={"job_id": job_id, "attempts": attempts}
        )


class GeneratorUnavailableError(CourseGenException):
    """The external generator timed out, failed, or its circuit is open."""

    def __init__(self, model: str, reason: str):
        self.model = model
        self.reason = reason
        super().__init__(
            f"Generator '{model}' unavailable: {reason}",
            ErrorCode.GENERATOR_UNAVAILABLE,
            status_code=503,
            details={"model": model, "reason": reason}
        )


class StageHandlerNotFoundError(CourseGenException):
    """No handler registered for the requested pipeline step."""

    def __init__(self, step_id: int):
        super().__init__(
            f"No stage handler registered for step {step_id}",
            ErrorCode.STAGE_HANDLER_NOT_FOUND,
            status_code=500,
            details={"step_id": step_id}
        )


class DatabaseError(CourseGenException):
    """Database operation failed."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        details = {}
        if original_error:
            details["original_error"] = str(original_error)

        super().__init__(
            message,
            ErrorCode.DATABASE_ERROR,
            status_code=500,
            details=details
        )
