from pydantic import BaseModel, Field
from typing import Annotated, Optional, List, Dict, Union, Literal, Any
from datetime import datetime
from examhall.models.session import SessionStatus, ViolationType


# =============================================================================
# Scheduling records (input to the status resolver)
# =============================================================================

class ExamSchedule(BaseModel):
    """Scheduling fields of an exam. ISO-8601 strings are accepted."""
    start_time: datetime
    end_time: datetime
    duration: int  # Minutes per attempt

    class Config:
        from_attributes = True


class SessionState(BaseModel):
    """Timing fields of a student's session."""
    status: SessionStatus
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    class Config:
        from_attributes = True


ExamStatus = Literal["upcoming", "active", "completed", "expired"]


class ExamStatusInfo(BaseModel):
    """Status descriptor gating join/start/submit actions. Durations in milliseconds."""
    status: ExamStatus
    can_join: bool
    can_start: bool
    time_until_start: Optional[int] = None
    time_until_end: Optional[int] = None
    time_remaining: Optional[int] = None
    message: str


class ExamTiming(BaseModel):
    start_time: datetime
    end_time: datetime
    duration: int
    is_active: bool
    has_started: bool
    has_ended: bool


class AccessRequirements(BaseModel):
    requires_invitation: bool
    requires_code: bool
    requires_webcam: bool
    max_violations: int


class TimeWarning(BaseModel):
    warning_type: Optional[Literal["critical", "warning", "info"]] = None
    message: Optional[str] = None


# =============================================================================
# Question records (one per question per session)
# =============================================================================

class AnswerRecordBase(BaseModel):
    id: int
    question_id: int
    position: int = 0
    max_marks: int
    marks_obtained: Optional[float] = None


class MCQAnswer(AnswerRecordBase):
    """Multiple-choice answer, graded automatically on submission."""
    type: Literal["mcq"] = "mcq"
    selected_option: Optional[int] = None
    correct_option: Optional[int] = None
    option_count: Optional[int] = None


class SAQAnswer(AnswerRecordBase):
    """Short-answer response, graded manually."""
    type: Literal["saq"] = "saq"
    answer_text: Optional[str] = None
    teacher_feedback: Optional[str] = None


class CodingAnswer(AnswerRecordBase):
    """Coding submission, graded manually."""
    type: Literal["coding"] = "coding"
    answer_text: Optional[str] = None
    teacher_feedback: Optional[str] = None


QuestionRecord = Annotated[
    Union[MCQAnswer, SAQAnswer, CodingAnswer],
    Field(discriminator="type"),
]


# =============================================================================
# Grading
# =============================================================================

GradingStatus = Literal["pending", "partial", "completed"]


class GradingSnapshot(BaseModel):
    total_score: float
    grading_status: GradingStatus
    graded_count: int
    question_count: int
    auto_graded_score: float
    manual_graded_score: float


class GradeInput(BaseModel):
    """Marks assigned by a teacher to one question."""
    marks_obtained: float
    teacher_feedback: Optional[str] = None


class GradeSessionRequest(BaseModel):
    grades: Dict[int, GradeInput]  # question_id -> grade


class ExamGradingStats(BaseModel):
    total_responses: int
    pending_grading: int
    partial_grading: int
    completed_grading: int
    average_score: float
    highest_score: Optional[float] = None
    lowest_score: Optional[float] = None
    total_questions: int


class QuestionGradingProgress(BaseModel):
    question_id: int
    position: int
    type: str
    student_count: int
    graded_count: int


# =============================================================================
# Sessions
# =============================================================================

class SessionResponse(BaseModel):
    id: int
    exam_id: int
    student_id: str
    status: SessionStatus
    start_time: Optional[datetime]
    end_time: Optional[datetime]
    violations_count: int
    total_score: float

    class Config:
        from_attributes = True


class SessionGradingResponse(BaseModel):
    session: SessionResponse
    snapshot: GradingSnapshot
    answers: List[QuestionRecord]


class JoinExamRequest(BaseModel):
    """Request to join an exam; exam_code is required for code-access exams."""
    exam_code: Optional[str] = None


class SubmitAnswerRequest(BaseModel):
    """Submit a single answer. MCQ uses selected_option, SAQ/coding use answer_text."""
    question_id: int
    selected_option: Optional[int] = None
    answer_text: Optional[str] = None


class ViolationRequest(BaseModel):
    violation_type: ViolationType
    details: Optional[Dict[str, Any]] = None


class TimerInfo(BaseModel):
    session_id: int
    exam_id: int
    student_id: str
    start_time: Optional[datetime]
    duration_minutes: int
    time_remaining_seconds: int
    is_expired: bool
    warning: TimeWarning


class SweepResponse(BaseModel):
    completed: int


# =============================================================================
# Callers
# =============================================================================

GraderRole = Literal["teacher", "admin"]


class Grader(BaseModel):
    """Staff member acting on an exam. Teachers act on their own exams, admins on any."""
    user_id: str
    role: GraderRole


# =============================================================================
# Student view of a running session (answer keys and marks never included)
# =============================================================================

class StudentQuestion(BaseModel):
    question_id: int
    position: int
    type: str
    text: str
    options: Optional[List[str]] = None
    max_marks: int
    selected_option: Optional[int] = None
    answer_text: Optional[str] = None
    is_flagged: bool = False


class StudentExamInfo(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    duration: int
    end_time: datetime
    require_webcam: bool

    class Config:
        from_attributes = True


class StudentSessionView(BaseModel):
    session: SessionResponse
    exam: StudentExamInfo
    questions: List[StudentQuestion]
    answered_questions: List[int]
    flagged_questions: List[int]
    time_remaining: int  # Seconds


class SessionProgress(BaseModel):
    total_questions: int
    answered_questions: int
    flagged_questions: int
    time_remaining: int  # Seconds


# =============================================================================
# Question flags
# =============================================================================

class FlagQuestionRequest(BaseModel):
    is_flagged: bool = True


class QuestionFlagResponse(BaseModel):
    session_id: int
    question_id: int
    question_type: str
    is_flagged: bool


class FlagSummary(BaseModel):
    flagged_questions: List[int]
    total_flagged: int
    mcq_flagged: int
    saq_flagged: int
    coding_flagged: int


# =============================================================================
# Exam monitoring
# =============================================================================

class ExpiringSession(BaseModel):
    session_id: int
    student_id: str
    time_remaining_seconds: int


class ExtendTimeRequest(BaseModel):
    additional_minutes: int


class ExamDurationResponse(BaseModel):
    exam_id: int
    duration: int
