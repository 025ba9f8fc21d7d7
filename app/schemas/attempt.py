"""
Pydantic schemas for quiz attempts and submissions
"""
from pydantic import BaseModel, Field
from typing import Any, Dict, Optional
from datetime import datetime

from app.schemas.quiz import StudentQuizView
from app.schemas.result import ResultResponse


class AttemptStartResponse(BaseModel):
    """Response for starting (or resuming into) an attempt"""
    session_id: str
    attempt_number: int
    start_time: datetime
    expires_at: datetime
    time_remaining: int  # seconds
    resumed: bool
    answers: Dict[str, Any]
    quiz: StudentQuizView


class AttemptResumeResponse(BaseModel):
    session_id: str
    start_time: datetime
    expires_at: datetime
    time_remaining: int
    answers: Dict[str, Any]


class ProgressSaveRequest(BaseModel):
    """Answers to merge into the live attempt, keyed by question id or 'questionId:blankNumber'"""
    session_id: str
    answers: Dict[str, Any]


class ProgressSaveResponse(BaseModel):
    message: str
    saved_keys: int
    last_activity: datetime


class QuizSubmission(BaseModel):
    """Schema for quiz submission"""
    answers: Dict[str, Any] = Field(default_factory=dict)
    time_spent: int = Field(0, ge=0, description="Time spent in seconds")


class SubmissionResponse(BaseModel):
    message: str
    status: str  # submitted | already-submitted
    result: Optional[ResultResponse] = None


class CompletionResponse(BaseModel):
    completed: bool


class InProgressResponse(BaseModel):
    in_progress: bool
