"""
Shared FastAPI dependencies: caller identity and service wiring
"""
from functools import lru_cache
from uuid import UUID

from fastapi import Depends, Header

from app.config import settings
from app.schemas.caller import Caller, Role
from app.services.attempt_service import AttemptService
from app.services.grading_service import GradingService
from app.services.notification_service import LoggingNotifier, NotificationService
from app.services.quiz_service import QuizService
from app.services.randomization_service import RandomizationService
from app.utils.cache import CacheService


def get_current_caller(
    x_user_id: UUID = Header(..., description="Authenticated user id"),
    x_user_role: Role = Header(..., description="teacher | admin | student | parent"),
    x_school_id: UUID = Header(..., description="School of the authenticated user"),
) -> Caller:
    """Caller identity as forwarded by the authentication gateway"""
    return Caller(user_id=x_user_id, role=x_user_role, school_id=x_school_id)


@lru_cache()
def get_cache_service() -> CacheService:
    return CacheService.from_settings(settings)


@lru_cache()
def get_notification_service() -> NotificationService:
    return NotificationService(LoggingNotifier())


def get_grading_service(
    cache: CacheService = Depends(get_cache_service),
    notifications: NotificationService = Depends(get_notification_service),
) -> GradingService:
    return GradingService(cache, notifications)


def get_quiz_service(
    cache: CacheService = Depends(get_cache_service),
    notifications: NotificationService = Depends(get_notification_service),
    grading: GradingService = Depends(get_grading_service),
) -> QuizService:
    return QuizService(cache, notifications, grading, RandomizationService())


def get_attempt_service(
    cache: CacheService = Depends(get_cache_service),
    quizzes: QuizService = Depends(get_quiz_service),
    grading: GradingService = Depends(get_grading_service),
) -> AttemptService:
    return AttemptService(cache, quizzes, grading)
