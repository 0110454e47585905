from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from conftest import at
from examhall.errors import (
    AccessDeniedError,
    ExamNotYetOpenError,
    ExamWindowClosedError,
    SessionAlreadyCompletedError,
    SessionAlreadyStartedError,
    SessionNotStartedError,
    UnknownError,
    ValidationError,
)
from examhall.models import AccessType, Invitation, InvitationStatus, SessionStatus, ViolationType
from examhall.services.exam_status import as_utc
from examhall.services.session_lifecycle import SessionLifecycleManager
from examhall.storage import SQLSessionStore


def answer_for(store, session_id, question_type):
    return next(r for r in store.get_answers(session_id) if r.type == question_type)


# ---------------------------------------------------------------------------
# Joining
# ---------------------------------------------------------------------------

def test_join_creates_not_started_session(make_exam, lifecycle):
    exam = make_exam()
    session = lifecycle.join_exam(exam.id, "student-1", at(10, 5))
    assert session.status == SessionStatus.NOT_STARTED
    assert session.start_time is None


def test_join_twice_returns_the_same_session(make_exam, lifecycle):
    exam = make_exam()
    first = lifecycle.join_exam(exam.id, "student-1", at(10, 5))
    second = lifecycle.join_exam(exam.id, "student-1", at(10, 6))
    assert first.id == second.id


def test_join_before_window(make_exam, lifecycle):
    exam = make_exam()
    with pytest.raises(ExamNotYetOpenError):
        lifecycle.join_exam(exam.id, "student-1", at(9, 59))


def test_join_after_window(make_exam, lifecycle):
    exam = make_exam()
    with pytest.raises(ExamWindowClosedError):
        lifecycle.join_exam(exam.id, "student-1", at(12, 1))


def test_join_unknown_exam(lifecycle):
    with pytest.raises(AccessDeniedError):
        lifecycle.join_exam(404, "student-1", at(10, 5))


def test_join_unpublished_exam(make_exam, lifecycle, db):
    exam = make_exam()
    exam.is_published = False
    db.commit()
    with pytest.raises(AccessDeniedError):
        lifecycle.join_exam(exam.id, "student-1", at(10, 5))


def test_code_access_requires_matching_code(make_exam, lifecycle):
    exam = make_exam(access_type=AccessType.CODE, exam_code="ALG-42")
    with pytest.raises(AccessDeniedError, match="Invalid exam code"):
        lifecycle.join_exam(exam.id, "student-1", at(10, 5), exam_code="nope")
    session = lifecycle.join_exam(exam.id, "student-1", at(10, 5), exam_code="ALG-42")
    assert session.status == SessionStatus.NOT_STARTED


def test_invitation_access(make_exam, lifecycle, db):
    exam = make_exam(access_type=AccessType.INVITATION)
    with pytest.raises(AccessDeniedError):
        lifecycle.join_exam(exam.id, "student-1", at(10, 5))

    db.add(Invitation(exam_id=exam.id, student_id="student-1", status=InvitationStatus.ACCEPTED, expires_at=at(11)))
    db.add(Invitation(exam_id=exam.id, student_id="student-2", status=InvitationStatus.ACCEPTED, expires_at=at(10)))
    db.add(Invitation(exam_id=exam.id, student_id="student-3", status=InvitationStatus.PENDING))
    db.commit()

    assert lifecycle.join_exam(exam.id, "student-1", at(10, 5)).student_id == "student-1"
    with pytest.raises(AccessDeniedError):
        lifecycle.join_exam(exam.id, "student-2", at(10, 5))
    with pytest.raises(AccessDeniedError):
        lifecycle.join_exam(exam.id, "student-3", at(10, 5))


def test_join_after_completion(started_session, lifecycle):
    exam, session = started_session
    lifecycle.submit_session(session.id, "student-1", at(10, 20))
    with pytest.raises(SessionAlreadyCompletedError):
        lifecycle.join_exam(exam.id, "student-1", at(10, 25))


# ---------------------------------------------------------------------------
# Starting
# ---------------------------------------------------------------------------

def test_start_sets_start_time_and_seeds_answers(started_session, store):
    exam, session = started_session
    assert session.status == SessionStatus.IN_PROGRESS
    assert as_utc(session.start_time) == at(10, 10)

    answers = store.get_answers(session.id)
    assert [a.type for a in answers] == ["mcq", "saq", "coding"]
    assert all(a.marks_obtained is None for a in answers)
    assert answers[0].option_count == 3


def test_start_twice_is_rejected(started_session, lifecycle):
    _, session = started_session
    with pytest.raises(SessionAlreadyStartedError):
        lifecycle.start_session(session.id, "student-1", at(10, 11))


def test_start_after_window_closed(make_exam, lifecycle):
    exam = make_exam()
    session = lifecycle.join_exam(exam.id, "student-1", at(11, 50))
    with pytest.raises(ExamWindowClosedError):
        lifecycle.start_session(session.id, "student-1", at(12, 0, 1))


def test_start_someone_elses_session(make_exam, lifecycle):
    exam = make_exam()
    session = lifecycle.join_exam(exam.id, "student-1", at(10, 5))
    with pytest.raises(AccessDeniedError):
        lifecycle.start_session(session.id, "student-2", at(10, 6))


def test_start_race_is_lost_by_second_writer(make_exam, lifecycle, store):
    exam = make_exam()
    session = lifecycle.join_exam(exam.id, "student-1", at(10, 5))
    # Another request already moved the session forward
    store.transition_session(
        session.id, [SessionStatus.NOT_STARTED],
        {"status": SessionStatus.IN_PROGRESS, "start_time": at(10, 6)},
    )
    assert store.transition_session(
        session.id, [SessionStatus.NOT_STARTED],
        {"status": SessionStatus.IN_PROGRESS, "start_time": at(10, 7)},
    ) is None
    assert as_utc(store.get_session(session.id).start_time) == at(10, 6)


# ---------------------------------------------------------------------------
# Answers and submission
# ---------------------------------------------------------------------------

def test_mcq_answer_is_auto_graded(started_session, lifecycle, store):
    _, session = started_session
    question = answer_for(store, session.id, "mcq")
    lifecycle.submit_answer(session.id, "student-1", question.question_id, at(10, 12), selected_option=1)
    assert answer_for(store, session.id, "mcq").marks_obtained == 2

    lifecycle.submit_answer(session.id, "student-1", question.question_id, at(10, 13), selected_option=0)
    assert answer_for(store, session.id, "mcq").marks_obtained == 0


def test_invalid_mcq_option(started_session, lifecycle, store):
    _, session = started_session
    question = answer_for(store, session.id, "mcq")
    with pytest.raises(ValidationError):
        lifecycle.submit_answer(session.id, "student-1", question.question_id, at(10, 12), selected_option=7)


def test_text_answer_is_left_ungraded(started_session, lifecycle, store):
    _, session = started_session
    question = answer_for(store, session.id, "saq")
    lifecycle.submit_answer(session.id, "student-1", question.question_id, at(10, 12), answer_text="Potential method")
    stored = answer_for(store, session.id, "saq")
    assert stored.answer_text == "Potential method"
    assert stored.marks_obtained is None


def test_answer_after_deadline_completes_session(started_session, lifecycle, store):
    _, session = started_session
    question = answer_for(store, session.id, "mcq")
    with pytest.raises(ExamWindowClosedError, match="expired"):
        lifecycle.submit_answer(session.id, "student-1", question.question_id, at(10, 41), selected_option=1)
    assert store.get_session(session.id).status == SessionStatus.COMPLETED


def test_submit_freezes_score(started_session, lifecycle, store):
    _, session = started_session
    question = answer_for(store, session.id, "mcq")
    lifecycle.submit_answer(session.id, "student-1", question.question_id, at(10, 12), selected_option=1)

    submitted = lifecycle.submit_session(session.id, "student-1", at(10, 20))
    assert submitted.status == SessionStatus.COMPLETED
    assert as_utc(submitted.end_time) == at(10, 20)
    assert submitted.total_score == 2


def test_resubmit_is_rejected(started_session, lifecycle):
    _, session = started_session
    lifecycle.submit_session(session.id, "student-1", at(10, 20))
    with pytest.raises(SessionAlreadyCompletedError):
        lifecycle.submit_session(session.id, "student-1", at(10, 21))


def test_submit_before_start(make_exam, lifecycle):
    exam = make_exam()
    session = lifecycle.join_exam(exam.id, "student-1", at(10, 5))
    with pytest.raises(SessionNotStartedError):
        lifecycle.submit_session(session.id, "student-1", at(10, 6))


def test_no_transition_out_of_completed(started_session, lifecycle):
    _, session = started_session
    lifecycle.submit_session(session.id, "student-1", at(10, 20))
    with pytest.raises(SessionAlreadyCompletedError):
        lifecycle.start_session(session.id, "student-1", at(10, 21))
    with pytest.raises(SessionAlreadyCompletedError):
        lifecycle.terminate_session(session.id, at(10, 21))


# ---------------------------------------------------------------------------
# Status checks and timer
# ---------------------------------------------------------------------------

def test_status_check_self_times_out(started_session, lifecycle, store):
    exam, session = started_session
    info = lifecycle.get_status(exam.id, "student-1", at(10, 45))
    assert info.status == "completed"
    stored = store.get_session(session.id)
    assert stored.status == SessionStatus.COMPLETED
    assert as_utc(stored.end_time) == at(10, 45)


def test_status_check_while_running(started_session, lifecycle):
    exam, _ = started_session
    info = lifecycle.get_status(exam.id, "student-1", at(10, 15))
    assert info.status == "active"
    assert info.time_remaining == 1_500_000


def test_timer_info(started_session, lifecycle):
    _, session = started_session
    timer = lifecycle.get_timer_info(session.id, "student-1", at(10, 36))
    assert timer.time_remaining_seconds == 240
    assert timer.is_expired is False
    assert timer.warning.warning_type == "warning"

    timer = lifecycle.get_timer_info(session.id, "student-1", at(10, 50))
    assert timer.is_expired is True
    assert timer.time_remaining_seconds == 0


# ---------------------------------------------------------------------------
# Proctoring
# ---------------------------------------------------------------------------

def test_violations_terminate_at_limit(make_exam, lifecycle):
    exam = make_exam(max_violations=2)
    session = lifecycle.join_exam(exam.id, "student-1", at(10, 5))
    lifecycle.start_session(session.id, "student-1", at(10, 6))

    first = lifecycle.record_violation(session.id, ViolationType.TAB_SWITCH, at(10, 7))
    assert first.status == SessionStatus.IN_PROGRESS
    assert first.violations_count == 1

    second = lifecycle.record_violation(session.id, "no_face_detected", at(10, 8), details={"frames": 12})
    assert second.status == SessionStatus.TERMINATED
    assert as_utc(second.end_time) == at(10, 8)

    info = lifecycle.get_status(exam.id, "student-1", at(10, 9))
    assert info.status == "completed"
    assert "terminated" in info.message


def test_violation_on_finished_session(started_session, lifecycle):
    _, session = started_session
    lifecycle.submit_session(session.id, "student-1", at(10, 20))
    with pytest.raises(SessionAlreadyCompletedError):
        lifecycle.record_violation(session.id, ViolationType.TAB_SWITCH, at(10, 21))


def test_violation_after_deadline_completes_instead_of_terminating(make_exam, lifecycle, store):
    exam = make_exam(max_violations=1)
    session = lifecycle.join_exam(exam.id, "student-1", at(10, 5))
    lifecycle.start_session(session.id, "student-1", at(10, 10))

    with pytest.raises(SessionAlreadyCompletedError, match="completed"):
        lifecycle.record_violation(session.id, ViolationType.TAB_SWITCH, at(10, 45))

    stored = store.get_session(session.id)
    assert stored.status == SessionStatus.COMPLETED
    assert stored.violations_count == 0
    assert as_utc(stored.end_time) == at(10, 45)


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class SeedFailingStore(SQLSessionStore):
    def _add_answers(self, session_id, exam_id):
        raise OperationalError("INSERT INTO session_answers", {}, Exception("disk I/O error"))


def test_failed_seeding_leaves_session_not_started(make_exam, db):
    exam = make_exam()
    store = SeedFailingStore(db)
    lifecycle = SessionLifecycleManager(store)
    session = lifecycle.join_exam(exam.id, "student-1", at(10, 5))

    with pytest.raises(UnknownError, match="start exam session"):
        lifecycle.start_session(session.id, "student-1", at(10, 10))

    db.expire_all()
    stored = store.get_session(session.id)
    assert stored.status == SessionStatus.NOT_STARTED
    assert stored.start_time is None
    assert store.get_answers(session.id) == []


class StaleLookupStore(SQLSessionStore):
    """Misses the existing row on its first lookup, as a concurrent join would."""

    def __init__(self, db):
        super().__init__(db)
        self.lookups = 0

    def find_session(self, exam_id, student_id):
        self.lookups += 1
        if self.lookups == 1:
            return None
        return super().find_session(exam_id, student_id)


def test_concurrent_create_returns_existing_session(make_exam, add_session, db):
    exam = make_exam()
    existing = add_session(exam, "student-1")

    session = StaleLookupStore(db).create_session(exam.id, "student-1")
    assert session.id == existing.id
    assert session.status == SessionStatus.NOT_STARTED


def test_offset_timestamps_are_stored_as_utc(make_exam, lifecycle, store, db):
    plus_two = timezone(timedelta(hours=2))
    exam = make_exam()
    session = lifecycle.join_exam(exam.id, "student-1", at(10, 5))
    lifecycle.start_session(session.id, "student-1", datetime(2024, 1, 1, 12, 10, tzinfo=plus_two))
    lifecycle.submit_session(session.id, "student-1", datetime(2024, 1, 1, 12, 20, tzinfo=plus_two))

    db.expire_all()
    stored = store.get_session(session.id)
    assert as_utc(stored.start_time) == at(10, 10)
    assert as_utc(stored.end_time) == at(10, 20)
