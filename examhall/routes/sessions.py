from datetime import datetime

from fastapi import APIRouter, Depends

from examhall.dependencies import get_lifecycle, get_now, get_student_id, get_student_sessions
from examhall.schemas import (
    ExamStatusInfo,
    FlagQuestionRequest,
    FlagSummary,
    JoinExamRequest,
    QuestionFlagResponse,
    SessionProgress,
    SessionResponse,
    StudentSessionView,
    SubmitAnswerRequest,
    TimerInfo,
    ViolationRequest,
)
from examhall.services.session_lifecycle import SessionLifecycleManager
from examhall.services.session_view import StudentSessionService

router = APIRouter(tags=["Sessions"])


@router.get("/exams/{exam_id}/status", response_model=ExamStatusInfo, response_model_exclude_none=True)
def get_exam_status(
    exam_id: int,
    student_id: str = Depends(get_student_id),
    now: datetime = Depends(get_now),
    lifecycle: SessionLifecycleManager = Depends(get_lifecycle),
):
    """
    Status of an exam for the calling student.
    An in-progress session past its duration is completed before the status is computed.
    """
    return lifecycle.get_status(exam_id, student_id, now)


@router.post("/exams/{exam_id}/join", response_model=SessionResponse)
def join_exam(
    exam_id: int,
    request: JoinExamRequest,
    student_id: str = Depends(get_student_id),
    now: datetime = Depends(get_now),
    lifecycle: SessionLifecycleManager = Depends(get_lifecycle),
):
    session = lifecycle.join_exam(exam_id, student_id, now, exam_code=request.exam_code)
    return SessionResponse.model_validate(session)


@router.post("/sessions/{session_id}/start", response_model=SessionResponse)
def start_session(
    session_id: int,
    student_id: str = Depends(get_student_id),
    now: datetime = Depends(get_now),
    lifecycle: SessionLifecycleManager = Depends(get_lifecycle),
):
    session = lifecycle.start_session(session_id, student_id, now)
    return SessionResponse.model_validate(session)


@router.post("/sessions/{session_id}/answers")
def submit_answer(
    session_id: int,
    request: SubmitAnswerRequest,
    student_id: str = Depends(get_student_id),
    now: datetime = Depends(get_now),
    lifecycle: SessionLifecycleManager = Depends(get_lifecycle),
):
    record = lifecycle.submit_answer(
        session_id,
        student_id,
        request.question_id,
        now,
        selected_option=request.selected_option,
        answer_text=request.answer_text,
    )
    # Students never see the answer key or their marks while the exam is running
    return {"success": True, "question_id": record.question_id}


@router.post("/sessions/{session_id}/submit", response_model=SessionResponse)
def submit_session(
    session_id: int,
    student_id: str = Depends(get_student_id),
    now: datetime = Depends(get_now),
    lifecycle: SessionLifecycleManager = Depends(get_lifecycle),
):
    session = lifecycle.submit_session(session_id, student_id, now)
    return SessionResponse.model_validate(session)


@router.post("/sessions/{session_id}/violations", response_model=SessionResponse)
def record_violation(
    session_id: int,
    request: ViolationRequest,
    now: datetime = Depends(get_now),
    lifecycle: SessionLifecycleManager = Depends(get_lifecycle),
):
    """Called by the proctoring collaborator; terminates the session at the exam's violation limit."""
    session = lifecycle.record_violation(session_id, request.violation_type, now, details=request.details)
    return SessionResponse.model_validate(session)


@router.get("/sessions/{session_id}/timer", response_model=TimerInfo)
def get_timer(
    session_id: int,
    student_id: str = Depends(get_student_id),
    now: datetime = Depends(get_now),
    lifecycle: SessionLifecycleManager = Depends(get_lifecycle),
):
    return lifecycle.get_timer_info(session_id, student_id, now)


@router.get("/sessions/{session_id}", response_model=StudentSessionView)
def get_exam_session(
    session_id: int,
    student_id: str = Depends(get_student_id),
    now: datetime = Depends(get_now),
    sessions: StudentSessionService = Depends(get_student_sessions),
):
    """The student's session with its questions; answer keys and marks are left out."""
    return sessions.get_exam_session(session_id, student_id, now)


@router.get("/sessions/{session_id}/progress", response_model=SessionProgress)
def get_progress(
    session_id: int,
    student_id: str = Depends(get_student_id),
    now: datetime = Depends(get_now),
    sessions: StudentSessionService = Depends(get_student_sessions),
):
    return sessions.get_progress(session_id, student_id, now)


@router.put("/sessions/{session_id}/flags/{question_id}", response_model=QuestionFlagResponse)
def flag_question(
    session_id: int,
    question_id: int,
    request: FlagQuestionRequest,
    student_id: str = Depends(get_student_id),
    now: datetime = Depends(get_now),
    sessions: StudentSessionService = Depends(get_student_sessions),
):
    return sessions.flag_question(session_id, student_id, question_id, request.is_flagged, now)


@router.get("/sessions/{session_id}/flags", response_model=FlagSummary)
def get_flags(
    session_id: int,
    student_id: str = Depends(get_student_id),
    sessions: StudentSessionService = Depends(get_student_sessions),
):
    return sessions.get_flag_summary(session_id, student_id)
