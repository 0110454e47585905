"""
Grading aggregation.

A session's score is the sum of marks over its graded question records. A
record counts as graded once marks inside [0, max_marks] have been assigned
to it, an explicit 0 included. MCQ records are graded when the answer is
submitted; SAQ and coding records wait for a teacher.
"""
import logging
from typing import Dict, Iterable, List, Sequence

from examhall.errors import AccessDeniedError, ValidationError
from examhall.models.session import SessionStatus
from examhall.schemas import (
    ExamGradingStats,
    GradeInput,
    Grader,
    GradingSnapshot,
    MCQAnswer,
    QuestionGradingProgress,
    QuestionRecord,
    SessionGradingResponse,
    SessionResponse,
)
from examhall.services.permissions import authorize_exam

logger = logging.getLogger(__name__)

FINISHED_STATUSES = (SessionStatus.COMPLETED, SessionStatus.TERMINATED)


def is_graded(record: QuestionRecord) -> bool:
    marks = record.marks_obtained
    return marks is not None and 0 <= marks <= record.max_marks


def grade_mcq(record: MCQAnswer, selected_option: int) -> MCQAnswer:
    """Auto-grade a multiple-choice answer by exact match on the option index."""
    if selected_option < 0 or (
        record.option_count is not None and selected_option >= record.option_count
    ):
        raise ValidationError("Invalid option selected")

    is_correct = record.correct_option is not None and selected_option == record.correct_option
    return record.model_copy(update={
        "selected_option": selected_option,
        "marks_obtained": float(record.max_marks) if is_correct else 0.0,
    })


def classify(graded_count: int, question_count: int) -> str:
    if graded_count == question_count:
        return "completed"
    if graded_count == 0:
        return "pending"
    return "partial"


def aggregate(records: Sequence[QuestionRecord]) -> GradingSnapshot:
    """Total score and grading status for one session's question records."""
    graded = [r for r in records if is_graded(r)]
    auto_score = sum(r.marks_obtained for r in graded if isinstance(r, MCQAnswer))
    manual_score = sum(r.marks_obtained for r in graded if not isinstance(r, MCQAnswer))

    return GradingSnapshot(
        total_score=float(auto_score + manual_score),
        grading_status=classify(len(graded), len(records)),
        graded_count=len(graded),
        question_count=len(records),
        auto_graded_score=float(auto_score),
        manual_graded_score=float(manual_score),
    )


def apply_grades(
    records: Sequence[QuestionRecord],
    grades: Dict[int, GradeInput],
) -> List[QuestionRecord]:
    """
    Return records with the teacher's marks applied, keyed by question id.

    Every grade is validated before any is applied. Re-grading an already
    graded record simply overwrites its marks.
    """
    by_question = {r.question_id: r for r in records}

    unknown = sorted(set(grades) - set(by_question))
    if unknown:
        raise ValidationError(f"Unknown question ids for this session: {unknown}")

    for question_id, grade in grades.items():
        max_marks = by_question[question_id].max_marks
        if not 0 <= grade.marks_obtained <= max_marks:
            raise ValidationError(
                f"Marks for question {question_id} must be between 0 and {max_marks}"
            )

    updated = []
    for record in records:
        grade = grades.get(record.question_id)
        if grade is None:
            updated.append(record)
            continue
        changes = {"marks_obtained": grade.marks_obtained}
        # Feedback only applies to manually graded questions
        if not isinstance(record, MCQAnswer):
            changes["teacher_feedback"] = grade.teacher_feedback
        updated.append(record.model_copy(update=changes))
    return updated


def summarize_exam(snapshots: Iterable[GradingSnapshot]) -> ExamGradingStats:
    snapshots = list(snapshots)
    if not snapshots:
        return ExamGradingStats(
            total_responses=0,
            pending_grading=0,
            partial_grading=0,
            completed_grading=0,
            average_score=0,
            total_questions=0,
        )

    scores = [s.total_score for s in snapshots]
    return ExamGradingStats(
        total_responses=len(snapshots),
        pending_grading=sum(1 for s in snapshots if s.grading_status == "pending"),
        partial_grading=sum(1 for s in snapshots if s.grading_status == "partial"),
        completed_grading=sum(1 for s in snapshots if s.grading_status == "completed"),
        average_score=sum(scores) / len(scores),
        highest_score=max(scores),
        lowest_score=min(scores),
        total_questions=snapshots[0].question_count,
    )


class GradingService:
    """Reads and writes grades for finished sessions through a SessionStore."""

    def __init__(self, store):
        self.store = store

    def _finished_session(self, session_id: int, grader: Grader):
        """
        Session the grader may see answers and marks for.

        Answer records carry the MCQ key, so running sessions are never exposed.
        """
        session = self.store.get_session(session_id)
        if session is None:
            raise AccessDeniedError("Session not found or access denied")
        authorize_exam(self.store.get_exam(session.exam_id), grader)
        if session.status not in FINISHED_STATUSES:
            raise ValidationError("Session must be submitted before it can be graded")
        return session

    def get_session_grading(self, session_id: int, grader: Grader) -> SessionGradingResponse:
        session = self._finished_session(session_id, grader)
        answers = self.store.get_answers(session_id)
        return SessionGradingResponse(
            session=SessionResponse.model_validate(session),
            snapshot=aggregate(answers),
            answers=answers,
        )

    def grade_session(
        self,
        session_id: int,
        grades: Dict[int, GradeInput],
        grader: Grader,
    ) -> SessionGradingResponse:
        self._finished_session(session_id, grader)
        answers = apply_grades(self.store.get_answers(session_id), grades)
        self.store.save_answers(answers)

        snapshot = aggregate(answers)
        session = self.store.update_total_score(session_id, snapshot.total_score)
        logger.info(
            "%s graded %d question(s) for session %s: total %.2f, %s",
            grader.user_id, len(grades), session_id, snapshot.total_score, snapshot.grading_status,
        )
        return SessionGradingResponse(
            session=SessionResponse.model_validate(session),
            snapshot=snapshot,
            answers=answers,
        )

    def exam_stats(self, exam_id: int, grader: Grader) -> ExamGradingStats:
        authorize_exam(self.store.get_exam(exam_id), grader)
        sessions = self.store.list_sessions_for_exam(exam_id, FINISHED_STATUSES)
        return summarize_exam(aggregate(self.store.get_answers(s.id)) for s in sessions)

    def questions_needing_grading(self, exam_id: int, grader: Grader) -> List[QuestionGradingProgress]:
        """Per manually graded question: how many students answered it and how many are graded."""
        authorize_exam(self.store.get_exam(exam_id), grader)
        progress: Dict[int, QuestionGradingProgress] = {}
        for session in self.store.list_sessions_for_exam(exam_id, FINISHED_STATUSES):
            for record in self.store.get_answers(session.id):
                if isinstance(record, MCQAnswer):
                    continue
                entry = progress.get(record.question_id)
                if entry is None:
                    entry = QuestionGradingProgress(
                        question_id=record.question_id,
                        position=record.position,
                        type=record.type,
                        student_count=0,
                        graded_count=0,
                    )
                    progress[record.question_id] = entry
                entry.student_count += 1
                if is_graded(record):
                    entry.graded_count += 1

        return sorted(progress.values(), key=lambda p: p.position)
