from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, ForeignKey, JSON, Float, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from examhall.database import Base
from examhall.models.exam import QuestionType
import enum


class SessionStatus(str, enum.Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    TERMINATED = "terminated"


class ViolationType(str, enum.Enum):
    TAB_SWITCH = "tab_switch"
    WEBCAM_LOST = "webcam_lost"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    MULTIPLE_FACES = "multiple_faces"
    NO_FACE_DETECTED = "no_face_detected"


class ExamSession(Base):
    """One student's attempt at one exam"""
    __tablename__ = "exam_sessions"
    __table_args__ = (
        UniqueConstraint("exam_id", "student_id", name="uq_session_exam_student"),
    )

    id = Column(Integer, primary_key=True, index=True)
    exam_id = Column(Integer, ForeignKey("exams.id"), nullable=False, index=True)
    student_id = Column(String, nullable=False, index=True)
    start_time = Column(DateTime(timezone=True), nullable=True)
    end_time = Column(DateTime(timezone=True), nullable=True)
    status = Column(SQLEnum(SessionStatus), nullable=False, default=SessionStatus.NOT_STARTED, index=True)
    violations_count = Column(Integer, nullable=False, default=0)
    total_score = Column(Float, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    exam = relationship("Exam", back_populates="sessions")
    answers = relationship("SessionAnswer", back_populates="session", cascade="all, delete-orphan")
    proctoring_events = relationship("ProctoringEvent", back_populates="session", cascade="all, delete-orphan")
    flags = relationship("QuestionFlag", back_populates="session", cascade="all, delete-orphan")


class SessionAnswer(Base):
    """Per-session copy of a question carrying the student's answer and its marks"""
    __tablename__ = "session_answers"
    __table_args__ = (
        UniqueConstraint("session_id", "question_id", name="uq_answer_session_question"),
    )

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("exam_sessions.id"), nullable=False, index=True)
    question_id = Column(Integer, ForeignKey("questions.id"), nullable=False)
    type = Column(SQLEnum(QuestionType), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    max_marks = Column(Integer, nullable=False)
    selected_option = Column(Integer, nullable=True)
    correct_option = Column(Integer, nullable=True)
    option_count = Column(Integer, nullable=True)
    answer_text = Column(Text, nullable=True)
    marks_obtained = Column(Float, nullable=True)  # None until graded
    teacher_feedback = Column(Text, nullable=True)

    # Relationships
    session = relationship("ExamSession", back_populates="answers")


class ProctoringEvent(Base):
    """Violation reported by the proctoring collaborator"""
    __tablename__ = "proctoring_events"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("exam_sessions.id"), nullable=False, index=True)
    violation_type = Column(SQLEnum(ViolationType), nullable=False)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    # Relationships
    session = relationship("ExamSession", back_populates="proctoring_events")


class QuestionFlag(Base):
    """Student's marker on a question they want to revisit before submitting"""
    __tablename__ = "question_flags"
    __table_args__ = (
        UniqueConstraint("session_id", "question_id", name="uq_flag_session_question"),
    )

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("exam_sessions.id"), nullable=False, index=True)
    question_id = Column(Integer, ForeignKey("questions.id"), nullable=False)
    question_type = Column(SQLEnum(QuestionType), nullable=False)
    is_flagged = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    # Relationships
    session = relationship("ExamSession", back_populates="flags")
