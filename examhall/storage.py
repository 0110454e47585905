"""
Storage port for exam sessions.

Services receive a SessionStore at construction time and never reach for a
global database client. SQLSessionStore is the SQLAlchemy implementation used
by the API; state-changing writes are conditional on the current status so
two racing requests cannot both apply the same transition.
"""
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import TypeAdapter
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from examhall.errors import UnknownError
from examhall.models import (
    Exam,
    ExamSession,
    Invitation,
    InvitationStatus,
    ProctoringEvent,
    Question,
    QuestionFlag,
    SessionAnswer,
    SessionStatus,
)
from examhall.schemas import QuestionRecord
from examhall.services.exam_status import as_utc

logger = logging.getLogger(__name__)

_record_adapter = TypeAdapter(QuestionRecord)


class SessionStore(ABC):
    """Persistence operations the session lifecycle, sweeper and grading need."""

    @abstractmethod
    def get_exam(self, exam_id: int) -> Optional[Exam]:
        pass

    @abstractmethod
    def get_session(self, session_id: int) -> Optional[ExamSession]:
        pass

    @abstractmethod
    def find_session(self, exam_id: int, student_id: str) -> Optional[ExamSession]:
        pass

    @abstractmethod
    def create_session(self, exam_id: int, student_id: str) -> ExamSession:
        """Create a not_started session, or return the one that already exists."""

    @abstractmethod
    def transition_session(
        self,
        session_id: int,
        from_statuses: Sequence[SessionStatus],
        values: dict,
    ) -> Optional[ExamSession]:
        """
        Apply values only if the session's status is one of from_statuses.

        Returns the updated session, or None when the condition did not hold.
        """

    @abstractmethod
    def has_accepted_invitation(self, exam_id: int, student_id: str, now: datetime) -> bool:
        pass

    @abstractmethod
    def start_session(self, session_id: int, exam_id: int, now: datetime) -> Optional[ExamSession]:
        """
        Move a not_started session to in_progress and copy the exam's questions
        into its answer records, all in one transaction.

        Returns None, with nothing written, when the session was not in not_started.
        """

    @abstractmethod
    def get_questions(self, exam_id: int) -> List[Question]:
        pass

    @abstractmethod
    def get_answers(self, session_id: int) -> List[QuestionRecord]:
        pass

    @abstractmethod
    def save_answers(self, records: Iterable[QuestionRecord]) -> None:
        pass

    @abstractmethod
    def record_violation(
        self,
        session_id: int,
        violation_type: str,
        details: Optional[dict],
        now: datetime,
    ) -> Optional[int]:
        """Log a proctoring event and bump the counter of an in-progress session.

        Returns the new violation count, or None if the session is not in progress.
        """

    @abstractmethod
    def list_in_progress_sessions(self) -> List[Tuple[ExamSession, int]]:
        """In-progress sessions that have a start time, paired with their exam's duration."""

    @abstractmethod
    def complete_sessions(self, scores: Dict[int, float], now: datetime) -> int:
        """Mark still in-progress sessions completed in one transaction; returns how many changed."""

    @abstractmethod
    def list_sessions_for_exam(
        self,
        exam_id: int,
        statuses: Optional[Sequence[SessionStatus]] = None,
    ) -> List[ExamSession]:
        pass

    @abstractmethod
    def update_total_score(self, session_id: int, total_score: float) -> ExamSession:
        pass

    @abstractmethod
    def set_flag(
        self,
        session_id: int,
        question_id: int,
        question_type,
        is_flagged: bool,
        now: datetime,
    ) -> QuestionFlag:
        """Create or update the flag of one question in a session."""

    @abstractmethod
    def get_flags(self, session_id: int) -> List[QuestionFlag]:
        """Flags currently set (is_flagged) for the session."""

    @abstractmethod
    def extend_exam_duration(self, exam_id: int, additional_minutes: int) -> Exam:
        pass


def answer_to_record(answer: SessionAnswer) -> QuestionRecord:
    return _record_adapter.validate_python({
        "id": answer.id,
        "question_id": answer.question_id,
        "type": answer.type.value,
        "position": answer.position,
        "max_marks": answer.max_marks,
        "marks_obtained": answer.marks_obtained,
        "selected_option": answer.selected_option,
        "correct_option": answer.correct_option,
        "option_count": answer.option_count,
        "answer_text": answer.answer_text,
        "teacher_feedback": answer.teacher_feedback,
    })


class SQLSessionStore(SessionStore):
    """SessionStore backed by a SQLAlchemy session."""

    def __init__(self, db: Session):
        self.db = db

    @contextmanager
    def _guard(self, action: str):
        try:
            yield
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Storage failure while trying to %s: %s", action, e)
            raise UnknownError(f"Failed to {action}", cause=e) from e

    def get_exam(self, exam_id: int) -> Optional[Exam]:
        with self._guard("fetch exam"):
            return self.db.get(Exam, exam_id)

    def get_session(self, session_id: int) -> Optional[ExamSession]:
        with self._guard("fetch exam session"):
            return self.db.get(ExamSession, session_id)

    def find_session(self, exam_id: int, student_id: str) -> Optional[ExamSession]:
        with self._guard("fetch exam session"):
            return (
                self.db.query(ExamSession)
                .filter(ExamSession.exam_id == exam_id, ExamSession.student_id == student_id)
                .first()
            )

    def create_session(self, exam_id: int, student_id: str) -> ExamSession:
        with self._guard("create exam session"):
            existing = self.find_session(exam_id, student_id)
            if existing is not None:
                return existing
            session = ExamSession(
                exam_id=exam_id,
                student_id=student_id,
                status=SessionStatus.NOT_STARTED,
                violations_count=0,
                total_score=0,
            )
            self.db.add(session)
            try:
                self.db.commit()
            except IntegrityError:
                # A concurrent join inserted the same (exam, student) first
                self.db.rollback()
                return self.find_session(exam_id, student_id)
            self.db.refresh(session)
            return session

    def _reload(self, session_id: int) -> ExamSession:
        session = self.db.get(ExamSession, session_id)
        self.db.refresh(session)
        return session

    def transition_session(
        self,
        session_id: int,
        from_statuses: Sequence[SessionStatus],
        values: dict,
    ) -> Optional[ExamSession]:
        with self._guard("update exam session"):
            updated = self._conditional_update(session_id, from_statuses, values)
            self.db.commit()
            if not updated:
                return None
            return self._reload(session_id)

    def _conditional_update(self, session_id: int, from_statuses: Sequence[SessionStatus], values: dict) -> int:
        values = {
            key: as_utc(value) if isinstance(value, datetime) else value
            for key, value in values.items()
        }
        return (
            self.db.query(ExamSession)
            .filter(ExamSession.id == session_id, ExamSession.status.in_(list(from_statuses)))
            .update(values, synchronize_session=False)
        )

    def has_accepted_invitation(self, exam_id: int, student_id: str, now: datetime) -> bool:
        with self._guard("check invitation"):
            invitation = (
                self.db.query(Invitation)
                .filter(
                    Invitation.exam_id == exam_id,
                    Invitation.student_id == student_id,
                    Invitation.status == InvitationStatus.ACCEPTED,
                )
                .first()
            )
        if invitation is None:
            return False
        expires_at = as_utc(invitation.expires_at)
        return expires_at is None or as_utc(now) <= expires_at

    def start_session(self, session_id: int, exam_id: int, now: datetime) -> Optional[ExamSession]:
        with self._guard("start exam session"):
            updated = self._conditional_update(
                session_id,
                [SessionStatus.NOT_STARTED],
                {"status": SessionStatus.IN_PROGRESS, "start_time": now},
            )
            if not updated:
                self.db.rollback()
                return None
            self._add_answers(session_id, exam_id)
            self.db.commit()
            return self._reload(session_id)

    def _add_answers(self, session_id: int, exam_id: int) -> int:
        """Stage one answer record per exam question; the caller commits."""
        existing = {
            row.question_id
            for row in self.db.query(SessionAnswer.question_id).filter(SessionAnswer.session_id == session_id)
        }
        created = 0
        for question in self.get_questions(exam_id):
            if question.id in existing:
                continue
            self.db.add(SessionAnswer(
                session_id=session_id,
                question_id=question.id,
                type=question.type,
                position=question.position,
                max_marks=question.marks,
                correct_option=question.correct_option,
                option_count=len(question.options) if question.options else None,
            ))
            created += 1
        return created

    def get_questions(self, exam_id: int) -> List[Question]:
        with self._guard("fetch questions"):
            return (
                self.db.query(Question)
                .filter(Question.exam_id == exam_id)
                .order_by(Question.position, Question.id)
                .all()
            )

    def get_answers(self, session_id: int) -> List[QuestionRecord]:
        with self._guard("fetch answers"):
            rows = (
                self.db.query(SessionAnswer)
                .filter(SessionAnswer.session_id == session_id)
                .order_by(SessionAnswer.position, SessionAnswer.id)
                .all()
            )
            return [answer_to_record(row) for row in rows]

    def save_answers(self, records: Iterable[QuestionRecord]) -> None:
        with self._guard("save answers"):
            for record in records:
                row = self.db.get(SessionAnswer, record.id)
                if row is None:
                    continue
                row.marks_obtained = record.marks_obtained
                if record.type == "mcq":
                    row.selected_option = record.selected_option
                else:
                    row.answer_text = record.answer_text
                    row.teacher_feedback = record.teacher_feedback
            self.db.commit()

    def record_violation(
        self,
        session_id: int,
        violation_type: str,
        details: Optional[dict],
        now: datetime,
    ) -> Optional[int]:
        with self._guard("record violation"):
            updated = (
                self.db.query(ExamSession)
                .filter(ExamSession.id == session_id, ExamSession.status == SessionStatus.IN_PROGRESS)
                .update(
                    {ExamSession.violations_count: ExamSession.violations_count + 1},
                    synchronize_session=False,
                )
            )
            if not updated:
                self.db.rollback()
                return None
            self.db.add(ProctoringEvent(
                session_id=session_id,
                violation_type=violation_type,
                details=details,
                created_at=as_utc(now),
            ))
            self.db.commit()
            return (
                self.db.query(ExamSession.violations_count)
                .filter(ExamSession.id == session_id)
                .scalar()
            )

    def list_in_progress_sessions(self) -> List[Tuple[ExamSession, int]]:
        with self._guard("fetch in-progress sessions"):
            rows = (
                self.db.query(ExamSession, Exam.duration)
                .join(Exam, Exam.id == ExamSession.exam_id)
                .filter(
                    ExamSession.status == SessionStatus.IN_PROGRESS,
                    ExamSession.start_time.isnot(None),
                )
                .all()
            )
            return [(session, duration) for session, duration in rows]

    def complete_sessions(self, scores: Dict[int, float], now: datetime) -> int:
        if not scores:
            return 0
        with self._guard("complete expired sessions"):
            completed = 0
            for session_id, total_score in scores.items():
                completed += (
                    self.db.query(ExamSession)
                    .filter(ExamSession.id == session_id, ExamSession.status == SessionStatus.IN_PROGRESS)
                    .update(
                        {
                            ExamSession.status: SessionStatus.COMPLETED,
                            ExamSession.end_time: as_utc(now),
                            ExamSession.total_score: total_score,
                        },
                        synchronize_session=False,
                    )
                )
            self.db.commit()
            return completed

    def list_sessions_for_exam(
        self,
        exam_id: int,
        statuses: Optional[Sequence[SessionStatus]] = None,
    ) -> List[ExamSession]:
        with self._guard("fetch exam sessions"):
            query = self.db.query(ExamSession).filter(ExamSession.exam_id == exam_id)
            if statuses:
                query = query.filter(ExamSession.status.in_(list(statuses)))
            return query.order_by(ExamSession.id).all()

    def update_total_score(self, session_id: int, total_score: float) -> ExamSession:
        with self._guard("update total score"):
            session = self.db.get(ExamSession, session_id)
            session.total_score = total_score
            self.db.commit()
            self.db.refresh(session)
            return session

    def set_flag(
        self,
        session_id: int,
        question_id: int,
        question_type,
        is_flagged: bool,
        now: datetime,
    ) -> QuestionFlag:
        now = as_utc(now)
        with self._guard("flag question"):
            flag = (
                self.db.query(QuestionFlag)
                .filter(QuestionFlag.session_id == session_id, QuestionFlag.question_id == question_id)
                .first()
            )
            if flag is None:
                flag = QuestionFlag(
                    session_id=session_id,
                    question_id=question_id,
                    question_type=question_type,
                    is_flagged=is_flagged,
                    created_at=now,
                    updated_at=now,
                )
                self.db.add(flag)
            else:
                flag.is_flagged = is_flagged
                flag.updated_at = now
            self.db.commit()
            self.db.refresh(flag)
            return flag

    def get_flags(self, session_id: int) -> List[QuestionFlag]:
        with self._guard("fetch question flags"):
            return (
                self.db.query(QuestionFlag)
                .filter(QuestionFlag.session_id == session_id, QuestionFlag.is_flagged.is_(True))
                .order_by(QuestionFlag.question_id)
                .all()
            )

    def extend_exam_duration(self, exam_id: int, additional_minutes: int) -> Exam:
        with self._guard("extend exam time"):
            self.db.query(Exam).filter(Exam.id == exam_id).update(
                {Exam.duration: Exam.duration + additional_minutes},
                synchronize_session=False,
            )
            self.db.commit()
            exam = self.db.get(Exam, exam_id)
            self.db.refresh(exam)
            return exam
