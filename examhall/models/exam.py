from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, ForeignKey, JSON, Enum as SQLEnum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from examhall.database import Base
import enum


class AccessType(str, enum.Enum):
    OPEN = "open"
    CODE = "code"
    INVITATION = "invitation"


class QuestionType(str, enum.Enum):
    MCQ = "mcq"
    SAQ = "saq"
    CODING = "coding"


class InvitationStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REVOKED = "revoked"


class Exam(Base):
    """Scheduled assessment, authored and published outside this service"""
    __tablename__ = "exams"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    duration = Column(Integer, nullable=False)  # Minutes per attempt
    access_type = Column(SQLEnum(AccessType), nullable=False, default=AccessType.OPEN)
    exam_code = Column(String, nullable=True)
    require_webcam = Column(Boolean, nullable=False, default=False)
    max_violations = Column(Integer, nullable=False, default=3)
    is_published = Column(Boolean, nullable=False, default=True)
    created_by = Column(String, nullable=True, index=True)  # Teacher who owns the exam
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    questions = relationship("Question", back_populates="exam", order_by="Question.position")
    sessions = relationship("ExamSession", back_populates="exam")


class Question(Base):
    """Question template; each started session gets its own SessionAnswer copy"""
    __tablename__ = "questions"

    id = Column(Integer, primary_key=True, index=True)
    exam_id = Column(Integer, ForeignKey("exams.id"), nullable=False, index=True)
    type = Column(SQLEnum(QuestionType), nullable=False)
    text = Column(Text, nullable=False)
    options = Column(JSON, nullable=True)  # MCQ only: ["...", "...", ...]
    correct_option = Column(Integer, nullable=True)  # MCQ only, 0-based
    marks = Column(Integer, nullable=False, default=1)
    position = Column(Integer, nullable=False, default=0)

    # Relationships
    exam = relationship("Exam", back_populates="questions")


class Invitation(Base):
    """Enrollment record for invitation-only exams"""
    __tablename__ = "invitations"

    id = Column(Integer, primary_key=True, index=True)
    exam_id = Column(Integer, ForeignKey("exams.id"), nullable=False, index=True)
    student_id = Column(String, nullable=False, index=True)
    status = Column(SQLEnum(InvitationStatus), nullable=False, default=InvitationStatus.PENDING)
    expires_at = Column(DateTime(timezone=True), nullable=True)
