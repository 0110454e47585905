"""
Typed errors raised by the session lifecycle and grading services.

Route handlers never build error responses themselves: the exception handler
registered in main.py renders any ExamHallError using its status_code.
"""
from typing import Optional


class ExamHallError(Exception):
    """Base error carrying a stable code and the HTTP status it maps to."""

    code: str = "UNKNOWN_ERROR"
    status_code: int = 500

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class ValidationError(ExamHallError):
    code = "VALIDATION_ERROR"
    status_code = 400


class AccessDeniedError(ExamHallError):
    code = "ACCESS_DENIED"
    status_code = 403


class ExamWindowClosedError(ExamHallError):
    code = "EXAM_WINDOW_CLOSED"
    status_code = 403


class ExamNotYetOpenError(ExamHallError):
    code = "EXAM_NOT_YET_OPEN"
    status_code = 403


class SessionAlreadyStartedError(ExamHallError):
    code = "SESSION_ALREADY_STARTED"
    status_code = 409


class SessionAlreadyCompletedError(ExamHallError):
    code = "SESSION_ALREADY_COMPLETED"
    status_code = 409


class SessionNotStartedError(ExamHallError):
    code = "SESSION_NOT_STARTED"
    status_code = 409


class UnknownError(ExamHallError):
    """Wraps an underlying storage failure; the original exception is kept in cause."""
    code = "UNKNOWN_ERROR"
    status_code = 500
