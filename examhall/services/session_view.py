"""
What a student sees of their own session while taking the exam.

Question records are stored with the MCQ answer key and marks; everything
built here copies only the question text, options and the student's own
answers, so neither ever reaches a student.
"""
import logging
from datetime import datetime
from typing import Dict, List

from examhall.errors import AccessDeniedError
from examhall.models import QuestionType, SessionStatus
from examhall.schemas import (
    FlagSummary,
    MCQAnswer,
    QuestionFlagResponse,
    QuestionRecord,
    SessionProgress,
    SessionResponse,
    StudentExamInfo,
    StudentQuestion,
    StudentSessionView,
)
from examhall.services.exam_status import session_time_remaining
from examhall.services.session_lifecycle import raise_for_state

logger = logging.getLogger(__name__)


def is_answered(record: QuestionRecord) -> bool:
    if isinstance(record, MCQAnswer):
        return record.selected_option is not None
    return record.answer_text is not None


def _flag_type(flag) -> str:
    return getattr(flag.question_type, "value", flag.question_type)


class StudentSessionService:
    """Read-only session views and question flags for the student who owns the session."""

    def __init__(self, store, lifecycle):
        self.store = store
        self.lifecycle = lifecycle

    def _load(self, session_id: int, student_id: str, now: datetime):
        session = self.lifecycle.get_owned_session(session_id, student_id)
        exam = self.lifecycle.get_exam(session.exam_id)
        session = self.lifecycle.expire_if_timed_out(exam, session, now)
        return exam, session

    def _time_remaining_seconds(self, exam, session, now: datetime) -> int:
        return (session_time_remaining(exam, session, now) or 0) // 1000

    def _flagged_ids(self, session_id: int) -> List[int]:
        return [flag.question_id for flag in self.store.get_flags(session_id)]

    def get_exam_session(self, session_id: int, student_id: str, now: datetime) -> StudentSessionView:
        """The session with its questions, answered and flagged ids and seconds remaining."""
        exam, session = self._load(session_id, student_id, now)

        templates = {q.id: q for q in self.store.get_questions(exam.id)}
        flagged = set(self._flagged_ids(session_id))
        records = self.store.get_answers(session_id)

        questions = []
        for record in records:
            template = templates.get(record.question_id)
            questions.append(StudentQuestion(
                question_id=record.question_id,
                position=record.position,
                type=record.type,
                text=template.text if template is not None else "",
                options=template.options if template is not None and isinstance(record, MCQAnswer) else None,
                max_marks=record.max_marks,
                selected_option=record.selected_option if isinstance(record, MCQAnswer) else None,
                answer_text=None if isinstance(record, MCQAnswer) else record.answer_text,
                is_flagged=record.question_id in flagged,
            ))

        return StudentSessionView(
            session=SessionResponse.model_validate(session),
            exam=StudentExamInfo.model_validate(exam),
            questions=questions,
            answered_questions=[r.question_id for r in records if is_answered(r)],
            flagged_questions=sorted(flagged),
            time_remaining=self._time_remaining_seconds(exam, session, now),
        )

    def get_progress(self, session_id: int, student_id: str, now: datetime) -> SessionProgress:
        exam, session = self._load(session_id, student_id, now)
        records = self.store.get_answers(session_id)
        return SessionProgress(
            total_questions=len(records),
            answered_questions=sum(1 for r in records if is_answered(r)),
            flagged_questions=len(self._flagged_ids(session_id)),
            time_remaining=self._time_remaining_seconds(exam, session, now),
        )

    def flag_question(
        self,
        session_id: int,
        student_id: str,
        question_id: int,
        is_flagged: bool,
        now: datetime,
    ) -> QuestionFlagResponse:
        """Set or clear the flag on a question of a running session."""
        exam, session = self._load(session_id, student_id, now)
        if session.status != SessionStatus.IN_PROGRESS:
            raise_for_state(session)

        record = next(
            (r for r in self.store.get_answers(session_id) if r.question_id == question_id),
            None,
        )
        if record is None:
            raise AccessDeniedError("Question not found or access denied")

        flag = self.store.set_flag(session_id, question_id, QuestionType(record.type), is_flagged, now)
        logger.debug("Session %s question %s flagged=%s", session_id, question_id, is_flagged)
        return QuestionFlagResponse(
            session_id=flag.session_id,
            question_id=flag.question_id,
            question_type=_flag_type(flag),
            is_flagged=flag.is_flagged,
        )

    def get_flag_summary(self, session_id: int, student_id: str) -> FlagSummary:
        self.lifecycle.get_owned_session(session_id, student_id)
        flags = self.store.get_flags(session_id)
        by_type: Dict[str, int] = {"mcq": 0, "saq": 0, "coding": 0}
        for flag in flags:
            by_type[_flag_type(flag)] += 1
        return FlagSummary(
            flagged_questions=[flag.question_id for flag in flags],
            total_flagged=len(flags),
            mcq_flagged=by_type["mcq"],
            saq_flagged=by_type["saq"],
            coding_flagged=by_type["coding"],
        )
