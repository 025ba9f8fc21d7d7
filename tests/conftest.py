"""
Shared fixtures: in-memory SQLite store, memory cache, recording notifier
"""
import os

# Settings are read at import time, so the environment must be set first
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["CACHE_BACKEND"] = "memory"
os.environ["LOG_LEVEL"] = "WARNING"

import uuid

import pytest

from app.database import Base, SessionLocal, engine
from app.schemas.caller import Caller
from app.schemas.quiz import QuizCreate
from app.services.attempt_service import AttemptService
from app.services.grading_service import GradingService
from app.services.notification_service import NotificationService, Notifier
from app.services.quiz_service import QuizService
from app.services.randomization_service import RandomizationService
from app.utils.cache import CacheService, MemoryCacheBackend

from tests.factories import objective_questions


class RecordingNotifier(Notifier):
    """Keeps every delivered notification for assertions"""

    def __init__(self):
        self.sent = []

    def notify(self, recipient_ids, title, body, payload):
        self.sent.append({
            "recipient_ids": recipient_ids,
            "title": title,
            "body": body,
            "payload": payload,
        })


# =============================================================================
# STORE AND SERVICES
# =============================================================================


@pytest.fixture
def db_session():
    """Fresh schema per test"""
    import app.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def cache():
    return CacheService(MemoryCacheBackend())


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def notifications(notifier):
    return NotificationService(notifier)


@pytest.fixture
def grading(cache, notifications):
    return GradingService(cache, notifications)


@pytest.fixture
def randomization():
    return RandomizationService()


@pytest.fixture
def quiz_service(cache, notifications, grading, randomization):
    return QuizService(cache, notifications, grading, randomization)


@pytest.fixture
def attempt_service(cache, quiz_service, grading):
    return AttemptService(cache, quiz_service, grading)


# =============================================================================
# CALLERS
# =============================================================================


@pytest.fixture
def school_id():
    return uuid.uuid4()


@pytest.fixture
def class_id():
    return uuid.uuid4()


@pytest.fixture
def teacher(school_id):
    return Caller(user_id=uuid.uuid4(), role="teacher", school_id=school_id)


@pytest.fixture
def student(school_id):
    return Caller(user_id=uuid.uuid4(), role="student", school_id=school_id)


@pytest.fixture
def other_student(school_id):
    return Caller(user_id=uuid.uuid4(), role="student", school_id=school_id)


# =============================================================================
# QUIZ FACTORIES
# =============================================================================


@pytest.fixture
def make_quiz(db_session, quiz_service, teacher, class_id):
    """Create (and by default publish) a quiz, returning its QuizResponse"""

    def _make(questions=None, publish=True, **fields):
        payload = {
            "title": "Unit test quiz",
            "class_id": class_id,
            "subject_name": "Science",
        }
        if "sections" not in fields:
            payload["questions"] = questions if questions is not None else objective_questions()
        payload.update(fields)

        quiz = quiz_service.create_quiz(db_session, teacher, QuizCreate(**payload))
        if publish:
            quiz = quiz_service.publish_quiz(db_session, teacher, quiz.id, True)
        return quiz

    return _make
