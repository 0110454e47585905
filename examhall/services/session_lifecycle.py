"""
Exam session lifecycle.

    not_started --start--> in_progress --submit/timeout/sweep--> completed
                                       --violation limit-------> terminated

completed and terminated are terminal. Whether an action is allowed is always
re-derived from the stored session and the current time, never from a status
the client reports.
"""
import logging
from datetime import datetime
from typing import Iterable, Optional

from examhall.errors import (
    AccessDeniedError,
    ExamNotYetOpenError,
    ExamWindowClosedError,
    SessionAlreadyCompletedError,
    SessionAlreadyStartedError,
    SessionNotStartedError,
    ValidationError,
)
from examhall.models import AccessType, ExamSession, SessionStatus, ViolationType
from examhall.schemas import ExamStatusInfo, MCQAnswer, TimerInfo, TimeWarning
from examhall.services.exam_status import (
    as_utc,
    get_time_warning,
    is_session_timed_out,
    resolve_status,
    session_time_remaining,
)
from examhall.services.grading import FINISHED_STATUSES, aggregate, grade_mcq

logger = logging.getLogger(__name__)


def _raise_for_window(status: ExamStatusInfo) -> None:
    if status.status == "expired":
        raise ExamWindowClosedError(status.message)
    if status.status == "upcoming":
        raise ExamNotYetOpenError(status.message)


def raise_for_state(session: ExamSession) -> None:
    """Raise the conflict error matching a session that cannot take the requested transition."""
    if session.status in FINISHED_STATUSES:
        if session.status == SessionStatus.TERMINATED:
            raise SessionAlreadyCompletedError("Exam session was terminated")
        raise SessionAlreadyCompletedError("Exam already completed")
    if session.status == SessionStatus.IN_PROGRESS:
        raise SessionAlreadyStartedError("Exam session already started")
    raise SessionNotStartedError("Exam session has not been started")


class SessionLifecycleManager:
    """Owns every status transition of an ExamSession."""

    def __init__(self, store):
        self.store = store

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_exam(self, exam_id: int):
        exam = self.store.get_exam(exam_id)
        if exam is None or not exam.is_published:
            raise AccessDeniedError("Exam not found or not published")
        return exam

    def get_owned_session(self, session_id: int, student_id: str) -> ExamSession:
        session = self.store.get_session(session_id)
        if session is None or session.student_id != student_id:
            raise AccessDeniedError("Session not found or access denied")
        return session

    def _check_access(self, exam, student_id: str, exam_code: Optional[str], now: datetime) -> None:
        if exam.access_type == AccessType.CODE:
            if not exam_code or exam_code != exam.exam_code:
                raise AccessDeniedError("Invalid exam code")
        elif exam.access_type == AccessType.INVITATION:
            if not self.store.has_accepted_invitation(exam.id, student_id, now):
                raise AccessDeniedError("Invitation required, invalid or expired")

    def frozen_score(self, session_id: int) -> float:
        return aggregate(self.store.get_answers(session_id)).total_score

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def join_exam(
        self,
        exam_id: int,
        student_id: str,
        now: datetime,
        exam_code: Optional[str] = None,
    ) -> ExamSession:
        """Return the student's session for the exam, creating a not_started one if needed."""
        exam = self.get_exam(exam_id)
        self._check_access(exam, student_id, exam_code, now)

        session = self.store.find_session(exam_id, student_id)
        if session is not None:
            session = self.expire_if_timed_out(exam, session, now)

        status = resolve_status(exam, session, now)
        _raise_for_window(status)
        if not status.can_join:
            raise_for_state(session)

        if session is None:
            session = self.store.create_session(exam_id, student_id)
            logger.info("Created session %s for student %s on exam %s", session.id, student_id, exam_id)
        return session

    def start_session(self, session_id: int, student_id: str, now: datetime) -> ExamSession:
        session = self.get_owned_session(session_id, student_id)
        exam = self.get_exam(session.exam_id)

        if session.status != SessionStatus.NOT_STARTED:
            raise_for_state(session)

        status = resolve_status(exam, session, now)
        _raise_for_window(status)

        updated = self.store.start_session(session_id, exam.id, as_utc(now))
        if updated is None:
            # Lost the race against another request for the same session
            raise_for_state(self.store.get_session(session_id))

        logger.info("Session %s started at %s", session_id, as_utc(now).isoformat())
        return updated

    def submit_session(self, session_id: int, student_id: str, now: datetime) -> ExamSession:
        session = self.get_owned_session(session_id, student_id)
        if session.status != SessionStatus.IN_PROGRESS:
            raise_for_state(session)

        updated = self._complete(session_id, now)
        if updated is None:
            raise_for_state(self.store.get_session(session_id))
        logger.info("Session %s submitted with score %.2f", session_id, updated.total_score)
        return updated

    def _complete(self, session_id: int, now: datetime) -> Optional[ExamSession]:
        return self.store.transition_session(
            session_id,
            [SessionStatus.IN_PROGRESS],
            {
                "status": SessionStatus.COMPLETED,
                "end_time": as_utc(now),
                "total_score": self.frozen_score(session_id),
            },
        )

    def expire_if_timed_out(self, exam, session: ExamSession, now: datetime) -> ExamSession:
        """Complete an in-progress session whose duration has elapsed; returns the current record."""
        if not is_session_timed_out(exam, session, now):
            return session
        updated = self._complete(session.id, now)
        if updated is None:
            return self.store.get_session(session.id)
        logger.info("Session %s timed out and was auto-completed", session.id)
        return updated

    def terminate_session(self, session_id: int, now: datetime) -> ExamSession:
        """Forcefully end an in-progress session for proctoring violations."""
        updated = self.store.transition_session(
            session_id,
            [SessionStatus.IN_PROGRESS],
            {
                "status": SessionStatus.TERMINATED,
                "end_time": as_utc(now),
                "total_score": self.frozen_score(session_id),
            },
        )
        if updated is None:
            session = self.store.get_session(session_id)
            if session is None:
                raise AccessDeniedError("Session not found or access denied")
            raise_for_state(session)
        logger.warning("Session %s terminated", session_id)
        return updated

    def record_violation(
        self,
        session_id: int,
        violation_type,
        now: datetime,
        details: Optional[dict] = None,
    ) -> ExamSession:
        session = self.store.get_session(session_id)
        if session is None:
            raise AccessDeniedError("Session not found or access denied")

        exam = self.store.get_exam(session.exam_id)
        # A session past its duration is completed, not terminated
        session = self.expire_if_timed_out(exam, session, now)
        if session.status != SessionStatus.IN_PROGRESS:
            raise_for_state(session)

        count = self.store.record_violation(session_id, ViolationType(violation_type), details, now)
        if count is None:
            raise_for_state(self.store.get_session(session_id))

        logger.info(
            "Session %s violation %s (%d/%d)",
            session_id, ViolationType(violation_type).value, count, exam.max_violations,
        )
        if count >= exam.max_violations:
            return self.terminate_session(session_id, now)
        return self.store.get_session(session_id)

    def force_complete(self, session_ids: Iterable[int], now: datetime) -> int:
        """Batch-complete sessions that are still in progress; returns how many changed."""
        scores = {session_id: self.frozen_score(session_id) for session_id in session_ids}
        return self.store.complete_sessions(scores, now)

    # ------------------------------------------------------------------
    # Answers and status
    # ------------------------------------------------------------------

    def submit_answer(
        self,
        session_id: int,
        student_id: str,
        question_id: int,
        now: datetime,
        selected_option: Optional[int] = None,
        answer_text: Optional[str] = None,
    ):
        session = self.get_owned_session(session_id, student_id)
        if session.status != SessionStatus.IN_PROGRESS:
            raise_for_state(session)

        exam = self.get_exam(session.exam_id)
        if is_session_timed_out(exam, session, now):
            self.expire_if_timed_out(exam, session, now)
            raise ExamWindowClosedError("Exam time has expired")
        if as_utc(now) > as_utc(exam.end_time):
            raise ExamWindowClosedError("This exam has ended and is no longer available.")

        record = next(
            (r for r in self.store.get_answers(session_id) if r.question_id == question_id),
            None,
        )
        if record is None:
            raise AccessDeniedError("Question not found or access denied")

        if isinstance(record, MCQAnswer):
            if selected_option is None:
                raise ValidationError("selected_option is required for multiple-choice questions")
            record = grade_mcq(record, selected_option)
        else:
            if answer_text is None:
                raise ValidationError("answer_text is required for this question")
            record = record.model_copy(update={"answer_text": answer_text})

        self.store.save_answers([record])
        return record

    def get_status(self, exam_id: int, student_id: str, now: datetime) -> ExamStatusInfo:
        exam = self.get_exam(exam_id)
        session = self.store.find_session(exam_id, student_id)
        if session is not None:
            session = self.expire_if_timed_out(exam, session, now)
        return resolve_status(exam, session, now)

    def get_timer_info(self, session_id: int, student_id: str, now: datetime) -> TimerInfo:
        session = self.get_owned_session(session_id, student_id)
        exam = self.get_exam(session.exam_id)
        session = self.expire_if_timed_out(exam, session, now)

        remaining_ms = session_time_remaining(exam, session, now)
        remaining_seconds = (remaining_ms or 0) // 1000
        is_expired = session.status != SessionStatus.NOT_STARTED and remaining_seconds <= 0
        warning = TimeWarning()
        if session.status == SessionStatus.IN_PROGRESS:
            warning = get_time_warning(remaining_seconds)

        return TimerInfo(
            session_id=session.id,
            exam_id=session.exam_id,
            student_id=session.student_id,
            start_time=as_utc(session.start_time),
            duration_minutes=exam.duration,
            time_remaining_seconds=remaining_seconds,
            is_expired=is_expired,
            warning=warning,
        )
