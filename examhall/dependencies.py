"""
FastAPI dependencies wiring request-scoped services to the database session.

Caller identity comes from headers set by the authenticating proxy in front of
the API: X-User-Id names the user and X-User-Role their role.
"""
from datetime import datetime

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from examhall.database import get_db
from examhall.errors import AccessDeniedError
from examhall.schemas import Grader
from examhall.services.exam_status import utcnow
from examhall.services.grading import GradingService
from examhall.services.monitoring import ExamMonitor
from examhall.services.session_lifecycle import SessionLifecycleManager
from examhall.services.session_view import StudentSessionService
from examhall.services.sweeper import ExpiredSessionSweeper
from examhall.storage import SQLSessionStore

GRADER_ROLES = ("teacher", "admin")


def get_now() -> datetime:
    """Request clock; overridden in tests to pin the current time."""
    return utcnow()


def get_student_id(x_user_id: str = Header(..., alias="X-User-Id")) -> str:
    return x_user_id


def get_grader(
    x_user_id: str = Header(..., alias="X-User-Id"),
    x_user_role: str = Header("student", alias="X-User-Role"),
) -> Grader:
    """Staff caller; students and unknown roles are refused."""
    if x_user_role not in GRADER_ROLES:
        raise AccessDeniedError("Teacher or admin role required")
    return Grader(user_id=x_user_id, role=x_user_role)


def get_admin(grader: Grader = Depends(get_grader)) -> Grader:
    if grader.role != "admin":
        raise AccessDeniedError("Admin role required")
    return grader


def get_store(db: Session = Depends(get_db)) -> SQLSessionStore:
    return SQLSessionStore(db)


def get_lifecycle(store: SQLSessionStore = Depends(get_store)) -> SessionLifecycleManager:
    return SessionLifecycleManager(store)


def get_student_sessions(
    store: SQLSessionStore = Depends(get_store),
    lifecycle: SessionLifecycleManager = Depends(get_lifecycle),
) -> StudentSessionService:
    return StudentSessionService(store, lifecycle)


def get_grading(store: SQLSessionStore = Depends(get_store)) -> GradingService:
    return GradingService(store)


def get_monitor(store: SQLSessionStore = Depends(get_store)) -> ExamMonitor:
    return ExamMonitor(store)


def get_sweeper(
    store: SQLSessionStore = Depends(get_store),
    lifecycle: SessionLifecycleManager = Depends(get_lifecycle),
) -> ExpiredSessionSweeper:
    return ExpiredSessionSweeper(store, lifecycle)
