"""
Models package initialization
Import all models here to ensure they are registered with SQLAlchemy
"""

from examhall.models.exam import Exam, AccessType, Question, QuestionType, Invitation, InvitationStatus
from examhall.models.session import ExamSession, SessionStatus, SessionAnswer, ProctoringEvent, ViolationType, QuestionFlag

__all__ = [
    "Exam",
    "AccessType",
    "Question",
    "QuestionType",
    "Invitation",
    "InvitationStatus",
    "ExamSession",
    "SessionStatus",
    "SessionAnswer",
    "ProctoringEvent",
    "ViolationType",
    "QuestionFlag",
]
