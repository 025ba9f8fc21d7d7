"""
Pydantic schemas for graded results
"""
from pydantic import BaseModel, Field
from typing import Any, List, Optional
from uuid import UUID
from datetime import datetime


class QuestionResult(BaseModel):
    """Grading details for one unit (a question, or one cloze blank)"""
    question_id: str
    question_type: str
    blank_number: Optional[int] = None
    question_text: str = ""
    selected_answer: Any = None
    correct_answer: Any = None
    explanation: Optional[str] = None
    points: float
    earned_points: Optional[float] = None
    is_correct: Optional[bool] = None
    manual_review_required: bool = False
    feedback: str = ""


class ResultResponse(BaseModel):
    id: UUID
    quiz_id: UUID
    student_id: UUID
    session_id: Optional[str] = None
    question_results: List[QuestionResult]
    score: Optional[float] = None
    total_points: float
    percentage: Optional[float] = None
    status: str
    auto_graded: bool
    auto_submitted: bool = False
    attempt_number: int
    start_time: Optional[datetime] = None
    submitted_at: datetime
    time_spent: Optional[int] = 0

    class Config:
        from_attributes = True


class ResultSummary(BaseModel):
    id: UUID
    quiz_id: UUID
    student_id: UUID
    score: Optional[float] = None
    total_points: float
    percentage: Optional[float] = None
    status: str
    attempt_number: int
    submitted_at: datetime
    time_spent: Optional[int] = 0

    class Config:
        from_attributes = True


class TeacherResultRow(ResultSummary):
    """Result row across every class a teacher runs quizzes for"""
    quiz_title: str
    class_id: UUID
    subject_name: Optional[str] = None


class ProgressPoint(BaseModel):
    """One submission on a student's score timeline"""
    result_id: UUID
    quiz_id: UUID
    quiz_title: str
    subject_name: str
    date: datetime
    score: Optional[float] = None
    total_points: float
    percentage: Optional[float] = None


class SubjectAverage(BaseModel):
    subject: str
    average_percentage: Optional[float] = None
    total_quizzes: int
    total_attempts: int


class GradeQuestionRequest(BaseModel):
    """Manual grade for an essay or short-answer question"""
    question_id: str
    earned_points: float = Field(..., allow_inf_nan=False)
    feedback: Optional[str] = None


class GradeQuestionResponse(BaseModel):
    message: str
    question_id: str
    earned_points: float
    feedback: str
    score: Optional[float] = None
    total_points: float
    percentage: Optional[float] = None
    status: str
