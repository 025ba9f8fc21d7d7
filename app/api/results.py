"""
Quiz result and manual grading API endpoints
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from uuid import UUID
import logging
from app.api.deps import get_current_caller, get_grading_service
from app.database import get_db
from app.schemas.caller import Caller
from app.schemas.result import (
    GradeQuestionRequest,
    GradeQuestionResponse,
    ProgressPoint,
    ResultResponse,
    ResultSummary,
    SubjectAverage,
    TeacherResultRow,
)
from app.services.grading_service import GradingService


router = APIRouter(prefix="/api/quizzes", tags=["results"])
logger = logging.getLogger(__name__)


@router.get("/results/student/{student_id}", response_model=List[ResultResponse])
async def list_student_results(
    student_id: UUID,
    quiz_id: Optional[UUID] = Query(None, description="Only results of this quiz"),
    caller: Caller = Depends(get_current_caller),
    service: GradingService = Depends(get_grading_service),
    db: Session = Depends(get_db),
):
    """All results of one student; students may only read their own"""
    return service.list_results_for_student(db, caller, student_id, quiz_id)


@router.get("/results/student/{student_id}/progress", response_model=List[ProgressPoint])
async def student_progress(
    student_id: UUID,
    caller: Caller = Depends(get_current_caller),
    service: GradingService = Depends(get_grading_service),
    db: Session = Depends(get_db),
):
    """Score timeline of one student, oldest submission first"""
    return service.student_progress(db, caller, student_id)


@router.get("/results/teacher", response_model=List[TeacherResultRow])
async def list_teacher_results(
    caller: Caller = Depends(get_current_caller),
    service: GradingService = Depends(get_grading_service),
    db: Session = Depends(get_db),
):
    """Results across every class the caller set quizzes for"""
    return service.list_results_for_teacher(db, caller)


@router.get("/results/school/{school_id}/subjects", response_model=List[SubjectAverage])
async def subject_averages(
    school_id: UUID,
    caller: Caller = Depends(get_current_caller),
    service: GradingService = Depends(get_grading_service),
    db: Session = Depends(get_db),
):
    return service.average_scores_per_subject(db, caller, school_id)


@router.get("/results/{result_id}", response_model=ResultResponse)
async def get_result(
    result_id: UUID,
    caller: Caller = Depends(get_current_caller),
    service: GradingService = Depends(get_grading_service),
    db: Session = Depends(get_db),
):
    return service.get_result(db, caller, result_id)


@router.put("/results/{result_id}/grade-question", response_model=GradeQuestionResponse)
async def grade_question(
    result_id: UUID,
    request: GradeQuestionRequest,
    background_tasks: BackgroundTasks,
    caller: Caller = Depends(get_current_caller),
    service: GradingService = Depends(get_grading_service),
    db: Session = Depends(get_db),
):
    """
    Grade an essay or short-answer question

    - Points are clamped to the question's maximum and rounded
    - Score and percentage are recomputed over the whole result
    - The student is notified
    """
    return service.grade_question(
        db, caller, result_id,
        request.question_id,
        request.earned_points,
        request.feedback,
        background_tasks,
    )


@router.get("/{quiz_id}/results", response_model=List[ResultSummary])
async def list_quiz_results(
    quiz_id: UUID,
    caller: Caller = Depends(get_current_caller),
    service: GradingService = Depends(get_grading_service),
    db: Session = Depends(get_db),
):
    """Results of one quiz; students only see their own row"""
    return service.list_results_for_quiz(db, caller, quiz_id)
