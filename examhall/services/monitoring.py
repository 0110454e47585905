"""
Staff-side monitoring of running exams.
"""
import logging
from datetime import datetime
from typing import List

from examhall.errors import ValidationError
from examhall.models import SessionStatus
from examhall.schemas import ExamDurationResponse, ExpiringSession, Grader
from examhall.services.exam_status import session_time_remaining
from examhall.services.permissions import authorize_exam

logger = logging.getLogger(__name__)

MAX_EXTENSION_MINUTES = 120


class ExamMonitor:
    def __init__(self, store):
        self.store = store

    def expiring_sessions(
        self,
        exam_id: int,
        grader: Grader,
        now: datetime,
        warning_minutes: int = 5,
    ) -> List[ExpiringSession]:
        """
        In-progress sessions with time left but no more than warning_minutes of it.

        Sessions already past their deadline are left to the sweeper.
        """
        exam = authorize_exam(self.store.get_exam(exam_id), grader)
        threshold_ms = warning_minutes * 60 * 1000

        expiring = []
        for session in self.store.list_sessions_for_exam(exam_id, [SessionStatus.IN_PROGRESS]):
            remaining_ms = session_time_remaining(exam, session, now)
            if remaining_ms is None or not 0 < remaining_ms <= threshold_ms:
                continue
            expiring.append(ExpiringSession(
                session_id=session.id,
                student_id=session.student_id,
                time_remaining_seconds=remaining_ms // 1000,
            ))
        return expiring

    def extend_exam_time(self, exam_id: int, grader: Grader, additional_minutes: int) -> ExamDurationResponse:
        """Add minutes to the exam's per-attempt duration, which moves every session's deadline."""
        authorize_exam(self.store.get_exam(exam_id), grader)
        if additional_minutes <= 0 or additional_minutes > MAX_EXTENSION_MINUTES:
            raise ValidationError(
                f"Additional time must be between 1 and {MAX_EXTENSION_MINUTES} minutes"
            )

        exam = self.store.extend_exam_duration(exam_id, additional_minutes)
        logger.info(
            "Exam %s duration extended by %d minutes to %d by %s",
            exam_id, additional_minutes, exam.duration, grader.user_id,
        )
        return ExamDurationResponse(exam_id=exam.id, duration=exam.duration)
