"""
Quiz catalog API endpoints
"""

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session
from typing import List, Union
from uuid import UUID
import logging
from app.api.deps import get_current_caller, get_quiz_service
from app.database import get_db
from app.schemas.caller import Caller
from app.schemas.quiz import (
    QuizCreate,
    QuizPublishRequest,
    QuizResponse,
    QuizUpdate,
    SchoolQuizListItem,
    StudentQuizListItem,
    StudentQuizView,
    TeacherQuizListItem,
)
from app.services.quiz_service import QuizService


router = APIRouter(prefix="/api/quizzes", tags=["quizzes"])
logger = logging.getLogger(__name__)


@router.post("", response_model=QuizResponse, status_code=201)
async def create_quiz(
    payload: QuizCreate,
    caller: Caller = Depends(get_current_caller),
    service: QuizService = Depends(get_quiz_service),
    db: Session = Depends(get_db),
):
    """
    Create a quiz (teachers and admins)

    - Exactly one of `questions` or `sections`
    - Objective questions default to 1 point
    - Created unpublished
    """
    return service.create_quiz(db, caller, payload)


@router.get("/school/{school_id}", response_model=List[SchoolQuizListItem])
async def list_school_quizzes(
    school_id: UUID,
    caller: Caller = Depends(get_current_caller),
    service: QuizService = Depends(get_quiz_service),
    db: Session = Depends(get_db),
):
    """List every quiz of a school (teachers and admins)"""
    return service.list_quizzes_for_school(db, caller, school_id)


@router.get(
    "/class/{class_id}",
    response_model=List[Union[TeacherQuizListItem, StudentQuizListItem]],
)
async def list_class_quizzes(
    class_id: UUID,
    caller: Caller = Depends(get_current_caller),
    service: QuizService = Depends(get_quiz_service),
    db: Session = Depends(get_db),
):
    """
    List quizzes of a class

    Students get published quizzes with their own completion status;
    teachers get submission counts and averages.
    """
    return service.list_quizzes_for_class(db, caller, class_id)


@router.get("/{quiz_id}", response_model=Union[QuizResponse, StudentQuizView])
async def get_quiz(
    quiz_id: UUID,
    caller: Caller = Depends(get_current_caller),
    service: QuizService = Depends(get_quiz_service),
    db: Session = Depends(get_db),
):
    """
    Get a quiz

    Teachers receive the full definition; students receive a randomized view
    without correct answers.
    """
    return service.get_quiz_definition(db, caller, quiz_id)


@router.put("/{quiz_id}", response_model=QuizResponse)
async def update_quiz(
    quiz_id: UUID,
    payload: QuizUpdate,
    caller: Caller = Depends(get_current_caller),
    service: QuizService = Depends(get_quiz_service),
    db: Session = Depends(get_db),
):
    return service.update_quiz(db, caller, quiz_id, payload)


@router.patch("/{quiz_id}/publish", response_model=QuizResponse)
async def publish_quiz(
    quiz_id: UUID,
    request: QuizPublishRequest,
    background_tasks: BackgroundTasks,
    caller: Caller = Depends(get_current_caller),
    service: QuizService = Depends(get_quiz_service),
    db: Session = Depends(get_db),
):
    """Publish or unpublish; publishing notifies the class"""
    return service.publish_quiz(db, caller, quiz_id, request.publish, background_tasks)


@router.post("/{quiz_id}/archive", response_model=QuizResponse)
async def archive_quiz(
    quiz_id: UUID,
    caller: Caller = Depends(get_current_caller),
    service: QuizService = Depends(get_quiz_service),
    db: Session = Depends(get_db),
):
    return service.archive_quiz(db, caller, quiz_id)


@router.delete("/{quiz_id}", status_code=204)
async def delete_quiz(
    quiz_id: UUID,
    caller: Caller = Depends(get_current_caller),
    service: QuizService = Depends(get_quiz_service),
    db: Session = Depends(get_db),
):
    """Delete a quiz with all of its attempts and results"""
    service.delete_quiz(db, caller, quiz_id)
