from datetime import datetime, timezone
from typing import Optional


class AutopilotError(Exception):
    """Base error for the scheduler.

    `retriable` is set by the layer raising the error; the retry runner
    consults it instead of matching on message text.
    """

    error_code = "AUTOPILOT_ERROR"

    def __init__(self, message: str, *, retriable: bool = True, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.retriable = retriable
        self.timestamp = datetime.now(timezone.utc)
        if error_code:
            self.error_code = error_code


class ConfigurationError(AutopilotError):
    error_code = "CONFIGURATION_ERROR"

    def __init__(self, message: str = "Service configuration error"):
        super().__init__(message, retriable=False)


class DatabaseError(AutopilotError):
    error_code = "DATABASE_ERROR"

    def __init__(self, message: str = "Database operation failed", original_error: Optional[BaseException] = None):
        super().__init__(message)
        self.original_error = original_error


class ExecutionError(AutopilotError):
    error_code = "EXECUTION_ERROR"


class ExternalServiceError(ExecutionError):
    def __init__(
        self,
        service: str,
        message: str = "External service error",
        status_code: int = 502,
        *,
        retriable: bool = True,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(message, retriable=retriable, error_code=f"{service.upper()}_ERROR")
        self.service = service
        self.status_code = status_code
        self.original_error = original_error


class FacebookAPIError(ExternalServiceError):
    def __init__(
        self,
        message: str = "Facebook API error",
        status_code: Optional[int] = None,
        original_error: Optional[BaseException] = None,
    ):
        if status_code is None:
            status_code = 502
        if "token" in message.lower():
            status_code = 401
        # Auth and permission failures do not go away on their own
        retriable = status_code not in (401, 403)
        super().__init__(
            "Facebook",
            message,
            status_code,
            retriable=retriable,
            original_error=original_error,
        )


class RetryExhaustedError(AutopilotError):
    error_code = "RETRY_EXHAUSTED"

    def __init__(self, label: str, attempts: int, last_error: Optional[BaseException]):
        detail = str(last_error) if last_error is not None else "unknown error"
        super().__init__(f"{label} failed after {attempts} attempts: {detail}")
        self.label = label
        self.attempts = attempts
        self.last_error = last_error


class ScheduledPostError(AutopilotError):
    """Raised by the job processor after recording a failed attempt."""

    error_code = "SCHEDULED_POST_ERROR"

    def __init__(self, message: str, job_id: str, retry_count: int, terminal: bool = False):
        super().__init__(message, retriable=not terminal)
        self.job_id = job_id
        self.retry_count = retry_count
        self.terminal = terminal
