"""
Staff authorization for exam-level operations.
"""
from examhall.errors import AccessDeniedError
from examhall.schemas import Grader


def authorize_exam(exam, grader: Grader):
    """Return the exam if the grader may manage it: admins any exam, teachers only their own."""
    if exam is None:
        raise AccessDeniedError("Exam not found or access denied")
    if grader.role == "admin":
        return exam
    if exam.created_by is None or exam.created_by != grader.user_id:
        raise AccessDeniedError("You can only manage your own exams")
    return exam
