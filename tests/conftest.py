from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from examhall.database import Base
from examhall.models import AccessType, Exam, ExamSession, Question, QuestionType, SessionStatus
from examhall.schemas import Grader
from examhall.services.grading import GradingService
from examhall.services.monitoring import ExamMonitor
from examhall.services.session_lifecycle import SessionLifecycleManager
from examhall.services.session_view import StudentSessionService
from examhall.services.sweeper import ExpiredSessionSweeper
from examhall.storage import SQLSessionStore


def at(hour, minute=0, second=0):
    return datetime(2024, 1, 1, hour, minute, second, tzinfo=timezone.utc)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def store(db):
    return SQLSessionStore(db)


@pytest.fixture
def lifecycle(store):
    return SessionLifecycleManager(store)


@pytest.fixture
def sweeper(store, lifecycle):
    return ExpiredSessionSweeper(store, lifecycle)


@pytest.fixture
def grading(store):
    return GradingService(store)


@pytest.fixture
def student_sessions(store, lifecycle):
    return StudentSessionService(store, lifecycle)


@pytest.fixture
def monitor(store):
    return ExamMonitor(store)


@pytest.fixture
def teacher():
    return Grader(user_id="teacher-1", role="teacher")


@pytest.fixture
def make_exam(db):
    """Insert an exam open 10:00-12:00 with a 30 minute budget and one question of each type."""

    def _make(
        start=at(10),
        end=at(12),
        duration=30,
        access_type=AccessType.OPEN,
        exam_code=None,
        max_violations=3,
        created_by="teacher-1",
        with_questions=True,
    ):
        exam = Exam(
            title="Algorithms midterm",
            start_time=start,
            end_time=end,
            duration=duration,
            access_type=access_type,
            exam_code=exam_code,
            max_violations=max_violations,
            is_published=True,
            created_by=created_by,
        )
        db.add(exam)
        db.commit()

        if with_questions:
            db.add_all([
                Question(
                    exam_id=exam.id,
                    type=QuestionType.MCQ,
                    text="Which traversal visits the root first?",
                    options=["in-order", "pre-order", "post-order"],
                    correct_option=1,
                    marks=2,
                    position=1,
                ),
                Question(
                    exam_id=exam.id,
                    type=QuestionType.SAQ,
                    text="Explain amortized analysis.",
                    marks=5,
                    position=2,
                ),
                Question(
                    exam_id=exam.id,
                    type=QuestionType.CODING,
                    text="Implement binary search.",
                    marks=10,
                    position=3,
                ),
            ])
            db.commit()
        db.refresh(exam)
        return exam

    return _make


@pytest.fixture
def add_session(db):
    """Insert a session directly, bypassing the lifecycle checks."""

    def _add(exam, student_id="student-1", status=SessionStatus.NOT_STARTED, start_time=None):
        session = ExamSession(
            exam_id=exam.id,
            student_id=student_id,
            status=status,
            start_time=start_time,
            violations_count=0,
            total_score=0,
        )
        db.add(session)
        db.commit()
        db.refresh(session)
        return session

    return _add


@pytest.fixture
def started_session(make_exam, lifecycle):
    """A session started at 10:10 on the default exam."""
    exam = make_exam()
    session = lifecycle.join_exam(exam.id, "student-1", at(10, 5))
    session = lifecycle.start_session(session.id, "student-1", at(10, 10))
    return exam, session