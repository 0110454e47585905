"""
Exam status resolution.

Everything in this module is pure: callers pass `now` explicitly and the
functions never touch storage or raise for odd inputs. Durations returned to
callers are integer milliseconds.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from examhall.models.session import SessionStatus
from examhall.schemas import (
    AccessRequirements,
    ExamStatusInfo,
    ExamTiming,
    TimeWarning,
)

MILLISECOND = timedelta(milliseconds=1)

_LONG_UNITS = (
    ("day", 24 * 3600),
    ("hour", 3600),
    ("minute", 60),
    ("second", 1),
)


def as_utc(value: Union[datetime, str, None]) -> Optional[datetime]:
    """Return value as an aware UTC datetime. Naive values are taken to be UTC."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_millis(delta: timedelta) -> int:
    return delta // MILLISECOND


def _status_value(session) -> str:
    status = session.status
    return status.value if isinstance(status, SessionStatus) else str(status)


def session_deadline(exam, session) -> Optional[datetime]:
    """Instant at which the session's time budget runs out, or None if it never started."""
    start = as_utc(session.start_time)
    if start is None:
        return None
    return start + timedelta(minutes=exam.duration)


def resolve_status(exam, session=None, now: Optional[datetime] = None) -> ExamStatusInfo:
    """
    Compute the status a student sees for an exam.

    The exam window is checked first, so an expired exam reports "expired"
    even while a session is still in progress. Inside the window the session
    decides: finished and terminated sessions both report "completed", an
    in-progress session is cut off once its own duration has elapsed.
    """
    now = as_utc(now) or utcnow()
    start_time = as_utc(exam.start_time)
    end_time = as_utc(exam.end_time)

    if now > end_time:
        return ExamStatusInfo(
            status="expired",
            can_join=False,
            can_start=False,
            message="This exam has ended and is no longer available.",
        )

    if now < start_time:
        time_until_start = to_millis(start_time - now)
        return ExamStatusInfo(
            status="upcoming",
            can_join=False,
            can_start=False,
            time_until_start=time_until_start,
            message=f"This exam will start in {format_time_remaining(time_until_start)}.",
        )

    time_until_end = to_millis(end_time - now)

    if session is not None:
        status = _status_value(session)

        if status == SessionStatus.COMPLETED.value:
            return ExamStatusInfo(
                status="completed",
                can_join=False,
                can_start=False,
                message="You have already completed this exam.",
            )

        if status == SessionStatus.TERMINATED.value:
            return ExamStatusInfo(
                status="completed",
                can_join=False,
                can_start=False,
                message="Your exam session was terminated due to violations.",
            )

        if status == SessionStatus.IN_PROGRESS.value:
            deadline = session_deadline(exam, session)
            if deadline is not None:
                if now > deadline:
                    return ExamStatusInfo(
                        status="completed",
                        can_join=False,
                        can_start=False,
                        message="Your exam time has expired.",
                    )

                time_remaining = to_millis(deadline - now)
                return ExamStatusInfo(
                    status="active",
                    can_join=True,
                    can_start=False,
                    time_remaining=time_remaining,
                    time_until_end=time_until_end,
                    message=f"You have {format_time_remaining(time_remaining)} remaining.",
                )

        if status == SessionStatus.NOT_STARTED.value:
            return ExamStatusInfo(
                status="active",
                can_join=True,
                can_start=True,
                time_until_end=time_until_end,
                message="You can start this exam now.",
            )

    # No session yet (or an in-progress record without a start time)
    return ExamStatusInfo(
        status="active",
        can_join=True,
        can_start=True,
        time_until_end=time_until_end,
        message="This exam is available. You can join now.",
    )


def session_time_remaining(exam, session, now: datetime) -> Optional[int]:
    """Milliseconds left in an in-progress session, clamped at zero."""
    if _status_value(session) != SessionStatus.IN_PROGRESS.value:
        return None
    deadline = session_deadline(exam, session)
    if deadline is None:
        return None
    return max(0, to_millis(deadline - as_utc(now)))


def is_session_timed_out(exam, session, now: datetime) -> bool:
    if _status_value(session) != SessionStatus.IN_PROGRESS.value:
        return False
    deadline = session_deadline(exam, session)
    return deadline is not None and as_utc(now) > deadline


def get_exam_timing(exam, now: datetime) -> ExamTiming:
    now = as_utc(now)
    start_time = as_utc(exam.start_time)
    end_time = as_utc(exam.end_time)
    return ExamTiming(
        start_time=start_time,
        end_time=end_time,
        duration=exam.duration,
        is_active=start_time <= now <= end_time,
        has_started=now >= start_time,
        has_ended=now > end_time,
    )


def get_access_requirements(exam) -> AccessRequirements:
    access_type = getattr(exam.access_type, "value", exam.access_type)
    return AccessRequirements(
        requires_invitation=access_type == "invitation",
        requires_code=access_type == "code",
        requires_webcam=bool(exam.require_webcam),
        max_violations=exam.max_violations,
    )


def _plural(value: int, unit: str) -> str:
    return f"{value} {unit}" if value == 1 else f"{value} {unit}s"


def format_time_remaining(milliseconds: int) -> str:
    """
    Human readable duration using the two largest non-zero units.

    >>> format_time_remaining(65000)
    '1 minute and 5 seconds'
    >>> format_time_remaining(90061000)
    '1 day and 1 hour'
    """
    remaining = max(0, int(milliseconds)) // 1000
    parts = []
    for unit, size in _LONG_UNITS:
        value, remaining = divmod(remaining, size)
        if value:
            parts.append(_plural(value, unit))

    if not parts:
        return "0 seconds"
    return " and ".join(parts[:2])


def format_time_remaining_short(milliseconds: int) -> str:
    """Clock style duration: H:MM:SS when there are hours, else M:SS."""
    total_seconds = max(0, int(milliseconds)) // 1000
    hours, rest = divmod(total_seconds, 3600)
    minutes, seconds = divmod(rest, 60)

    if hours > 0:
        return f"{hours}:{minutes:02d}:{seconds:02d}"
    return f"{minutes}:{seconds:02d}"


def format_clock(seconds: int) -> str:
    """Fixed width HH:MM:SS countdown used by the exam timer."""
    if seconds <= 0:
        return "00:00:00"
    hours, rest = divmod(int(seconds), 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def get_time_warning(seconds: int) -> TimeWarning:
    """Warning shown to the student as the session deadline approaches."""
    if seconds <= 0:
        return TimeWarning(
            warning_type="critical",
            message="Time has expired! Exam will be auto-submitted.",
        )
    if seconds <= 60:
        return TimeWarning(warning_type="critical", message="Less than 1 minute remaining!")
    if seconds <= 300:
        return TimeWarning(
            warning_type="warning",
            message="5 minutes remaining. Please review your answers.",
        )
    if seconds <= 600:
        return TimeWarning(warning_type="info", message="10 minutes remaining.")
    return TimeWarning()
