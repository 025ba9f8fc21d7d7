"""
Quiz attempt API endpoints (students)
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from uuid import UUID
import logging
from app.api.deps import get_attempt_service, get_current_caller
from app.database import get_db
from app.schemas.attempt import (
    AttemptResumeResponse,
    AttemptStartResponse,
    CompletionResponse,
    InProgressResponse,
    ProgressSaveRequest,
    ProgressSaveResponse,
    QuizSubmission,
    SubmissionResponse,
)
from app.schemas.caller import Caller
from app.services.attempt_service import AttemptService


router = APIRouter(prefix="/api/quizzes", tags=["attempts"])
logger = logging.getLogger(__name__)


@router.get("/{quiz_id}/completion", response_model=CompletionResponse)
async def check_completion(
    quiz_id: UUID,
    caller: Caller = Depends(get_current_caller),
    service: AttemptService = Depends(get_attempt_service),
    db: Session = Depends(get_db),
):
    return service.check_completion(db, caller, quiz_id)


@router.get("/{quiz_id}/progress", response_model=InProgressResponse)
async def check_in_progress(
    quiz_id: UUID,
    caller: Caller = Depends(get_current_caller),
    service: AttemptService = Depends(get_attempt_service),
    db: Session = Depends(get_db),
):
    return service.check_in_progress(db, caller, quiz_id)


@router.post("/{quiz_id}/start", response_model=AttemptStartResponse)
async def start_quiz(
    quiz_id: UUID,
    caller: Caller = Depends(get_current_caller),
    service: AttemptService = Depends(get_attempt_service),
    db: Session = Depends(get_db),
):
    """
    Start a timed attempt

    - Returns the live attempt unchanged if one exists (`resumed: true`)
    - Rejected once the quiz has a result for this student
    - Questions and options are shuffled per student, deterministically
    """
    return service.start_attempt(db, caller, quiz_id)


@router.get("/{quiz_id}/resume", response_model=AttemptResumeResponse)
async def resume_quiz(
    quiz_id: UUID,
    caller: Caller = Depends(get_current_caller),
    service: AttemptService = Depends(get_attempt_service),
    db: Session = Depends(get_db),
):
    return service.resume_attempt(db, caller, quiz_id)


@router.post("/{quiz_id}/save", response_model=ProgressSaveResponse)
async def save_progress(
    quiz_id: UUID,
    request: ProgressSaveRequest,
    caller: Caller = Depends(get_current_caller),
    service: AttemptService = Depends(get_attempt_service),
    db: Session = Depends(get_db),
):
    """Autosave answers into the live attempt"""
    return service.save_progress(db, caller, quiz_id, request.session_id, request.answers)


@router.post("/{quiz_id}/submit", response_model=SubmissionResponse)
async def submit_quiz(
    quiz_id: UUID,
    submission: QuizSubmission,
    caller: Caller = Depends(get_current_caller),
    service: AttemptService = Depends(get_attempt_service),
    db: Session = Depends(get_db),
):
    """
    Submit and grade a quiz

    Grading strategy:
    - Multiple choice / true-false / cloze blanks: exact match
    - Essay / short answer: left for manual review
    """
    return service.submit_attempt(
        db, caller, quiz_id,
        answers=submission.answers,
        auto_submit=False,
        time_spent=submission.time_spent,
    )


@router.post("/{quiz_id}/auto-submit", response_model=SubmissionResponse)
async def auto_submit_quiz(
    quiz_id: UUID,
    submission: QuizSubmission,
    caller: Caller = Depends(get_current_caller),
    service: AttemptService = Depends(get_attempt_service),
    db: Session = Depends(get_db),
):
    """Timer-triggered submission; a no-op if the quiz was already submitted"""
    return service.submit_attempt(
        db, caller, quiz_id,
        answers=submission.answers,
        auto_submit=True,
        time_spent=submission.time_spent,
    )
