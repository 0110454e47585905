from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends, Query

from examhall.dependencies import get_admin, get_grader, get_grading, get_monitor, get_now, get_sweeper
from examhall.schemas import (
    ExamDurationResponse,
    ExamGradingStats,
    ExpiringSession,
    ExtendTimeRequest,
    GradeSessionRequest,
    Grader,
    QuestionGradingProgress,
    SessionGradingResponse,
    SweepResponse,
)
from examhall.services.grading import GradingService
from examhall.services.monitoring import ExamMonitor
from examhall.services.sweeper import ExpiredSessionSweeper

router = APIRouter(tags=["Grading"])


@router.get("/grading/sessions/{session_id}", response_model=SessionGradingResponse)
def get_session_grading(
    session_id: int,
    grader: Grader = Depends(get_grader),
    grading: GradingService = Depends(get_grading),
):
    """Answers, marks and answer keys of a submitted session, for the exam's teacher."""
    return grading.get_session_grading(session_id, grader)


@router.put("/grading/sessions/{session_id}", response_model=SessionGradingResponse)
def grade_session(
    session_id: int,
    request: GradeSessionRequest,
    grader: Grader = Depends(get_grader),
    grading: GradingService = Depends(get_grading),
):
    """
    Assign marks to questions of a submitted session.
    Marks can be changed any number of times; the session total is recomputed each time.
    """
    return grading.grade_session(session_id, request.grades, grader)


@router.get("/grading/exams/{exam_id}/stats", response_model=ExamGradingStats)
def get_exam_stats(
    exam_id: int,
    grader: Grader = Depends(get_grader),
    grading: GradingService = Depends(get_grading),
):
    return grading.exam_stats(exam_id, grader)


@router.get("/grading/exams/{exam_id}/pending", response_model=List[QuestionGradingProgress])
def get_questions_needing_grading(
    exam_id: int,
    grader: Grader = Depends(get_grader),
    grading: GradingService = Depends(get_grading),
):
    return grading.questions_needing_grading(exam_id, grader)


@router.get("/grading/exams/{exam_id}/expiring", response_model=List[ExpiringSession])
def get_expiring_sessions(
    exam_id: int,
    warning_minutes: int = Query(5, ge=1),
    grader: Grader = Depends(get_grader),
    now: datetime = Depends(get_now),
    monitor: ExamMonitor = Depends(get_monitor),
):
    """Running sessions with at most warning_minutes left."""
    return monitor.expiring_sessions(exam_id, grader, now, warning_minutes)


@router.post("/grading/exams/{exam_id}/extend-time", response_model=ExamDurationResponse)
def extend_exam_time(
    exam_id: int,
    request: ExtendTimeRequest,
    grader: Grader = Depends(get_grader),
    monitor: ExamMonitor = Depends(get_monitor),
):
    return monitor.extend_exam_time(exam_id, grader, request.additional_minutes)


@router.post("/maintenance/sweep", response_model=SweepResponse)
def sweep_expired_sessions(
    admin: Grader = Depends(get_admin),
    now: datetime = Depends(get_now),
    sweeper: ExpiredSessionSweeper = Depends(get_sweeper),
):
    """Run the expired-session sweep on demand."""
    return SweepResponse(completed=sweeper.sweep(now))
