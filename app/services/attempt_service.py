"""
Attempt lifecycle service
Start / resume / autosave / submit of timed quiz attempts
"""
import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.exceptions import (
    ConflictError,
    ExpiredError,
    NotFoundError,
    PermissionDeniedError,
)
from app.models import Quiz, QuizAttempt, QuizResult
from app.models.quiz_attempt import ATTEMPT_EXPIRED, ATTEMPT_IN_PROGRESS, ATTEMPT_SUBMITTED
from app.schemas.attempt import (
    AttemptResumeResponse,
    AttemptStartResponse,
    CompletionResponse,
    InProgressResponse,
    ProgressSaveResponse,
    SubmissionResponse,
)
from app.schemas.caller import Caller
from app.schemas.quiz import load_question_set
from app.services.grading_service import GradingService
from app.services.quiz_service import QuizService
from app.utils.cache import CacheKeys, CacheService
from app.utils.store import store_operation
from app.utils.timeutils import seconds_until, utcnow

logger = logging.getLogger(__name__)


class AttemptService:
    """
    Service for student quiz attempts

    Lifecycle: in-progress -> submitted, or in-progress -> expired once the
    time limit has passed. Expiry is detected lazily, whenever an attempt is
    touched after its expires_at. A Result row exists for a (quiz, student)
    exactly when that student has finished the quiz.
    """

    def __init__(self, cache: CacheService, quizzes: QuizService, grading: GradingService):
        self.cache = cache
        self.quizzes = quizzes
        self.grading = grading

    # ------------------------------------------------------------------
    # Start / resume
    # ------------------------------------------------------------------

    @store_operation
    def start_attempt(self, db: Session, caller: Caller, quiz_id: UUID) -> AttemptStartResponse:
        """
        Start a new attempt, or return the student's live one

        Args:
            db: Database session
            caller: Authenticated student
            quiz_id: Quiz to attempt

        Returns:
            AttemptStartResponse with the randomized quiz view; resumed is true
            when an existing in-progress attempt was returned
        """
        self._require_student(caller)
        quiz = self.quizzes.get_open_quiz(db, caller, quiz_id)
        student_id = caller.user_id
        now = utcnow()

        if quiz.due_date and now > quiz.due_date:
            raise ExpiredError(
                "Quiz is past its due date",
                detail={"due_date": quiz.due_date.isoformat()}
            )

        if self._find_result(db, quiz_id, student_id):
            raise ConflictError("You have already completed this quiz")

        active = self._find_active_attempt(db, quiz_id, student_id)
        if active is not None:
            if not active.is_expired(now):
                logger.info(f"Resuming attempt {active.session_id} for student {student_id}")
                return self._start_response(quiz, active, resumed=True)
            self._expire(db, active)

        # Only attempts that produced a Result count towards max_attempts
        prior_results = db.query(QuizResult).filter(
            QuizResult.quiz_id == quiz_id,
            QuizResult.student_id == student_id
        ).count()
        if prior_results >= quiz.max_attempts:
            raise ConflictError(
                "Maximum number of attempts reached",
                detail={"max_attempts": quiz.max_attempts}
            )

        prior_attempts = db.query(QuizAttempt).filter(
            QuizAttempt.quiz_id == quiz_id,
            QuizAttempt.student_id == student_id
        ).count()

        time_limit = quiz.time_limit or settings.DEFAULT_TIME_LIMIT_MINUTES
        attempt = QuizAttempt(
            quiz_id=quiz_id,
            student_id=student_id,
            school_id=caller.school_id,
            session_id=uuid.uuid4().hex,
            attempt_number=prior_attempts + 1,
            start_time=now,
            expires_at=now + timedelta(minutes=time_limit),
            last_activity=now,
            status=ATTEMPT_IN_PROGRESS,
            answers={},
        )

        try:
            db.add(attempt)
            db.commit()
            db.refresh(attempt)
        except IntegrityError:
            # Lost the race against a concurrent start: use the winner's attempt
            db.rollback()
            existing = self._find_active_attempt(db, quiz_id, student_id)
            if existing is None:
                raise ConflictError("Could not start the quiz, please retry")
            logger.warning(
                f"Concurrent start for quiz {quiz_id} / student {student_id}; "
                f"resuming {existing.session_id}"
            )
            return self._start_response(quiz, existing, resumed=True)
        except Exception:
            db.rollback()
            raise

        logger.info(
            f"Attempt {attempt.attempt_number} started for quiz {quiz_id} "
            f"by student {student_id}, expires {attempt.expires_at.isoformat()}"
        )
        self._invalidate_attempt_state(quiz, student_id)
        return self._start_response(quiz, attempt, resumed=False)

    @store_operation
    def resume_attempt(self, db: Session, caller: Caller, quiz_id: UUID) -> AttemptResumeResponse:
        """Session id, remaining time and saved answers of the live attempt"""
        self._require_student(caller)
        student_id = caller.user_id
        cache_key = CacheKeys.resume(quiz_id, student_id)

        cached = self.cache.get(cache_key)
        if cached is not None:
            response = AttemptResumeResponse(**cached)
            response.time_remaining = seconds_until(response.expires_at)
            if response.time_remaining > 0:
                return response

        try:
            attempt = self._find_active_attempt(db, quiz_id, student_id, lock=True)
            if attempt is None or attempt.school_id != caller.school_id:
                raise NotFoundError("No quiz in progress")

            now = utcnow()
            if attempt.is_expired(now):
                self._expire(db, attempt)
                raise ExpiredError("Quiz time has expired")

            attempt.last_activity = now
            db.commit()
            db.refresh(attempt)
        except Exception:
            db.rollback()
            raise

        response = AttemptResumeResponse(
            session_id=attempt.session_id,
            start_time=attempt.start_time,
            expires_at=attempt.expires_at,
            time_remaining=seconds_until(attempt.expires_at),
            answers=dict(attempt.answers or {}),
        )
        self.cache.set(
            cache_key,
            response.model_dump(mode="json"),
            min(settings.CACHE_TTL_RESUME, response.time_remaining)
        )
        return response

    # ------------------------------------------------------------------
    # Autosave
    # ------------------------------------------------------------------

    @store_operation
    def save_progress(
        self,
        db: Session,
        caller: Caller,
        quiz_id: UUID,
        session_id: str,
        answers: Dict[str, Any]
    ) -> ProgressSaveResponse:
        """
        Merge answers into the live attempt

        The attempt row is locked for the read-merge-write so concurrent saves
        never drop each other's keys; for the same key the last write wins.
        """
        self._require_student(caller)

        try:
            attempt = db.query(QuizAttempt).filter(
                QuizAttempt.session_id == session_id,
                QuizAttempt.quiz_id == quiz_id,
                QuizAttempt.student_id == caller.user_id
            ).with_for_update().first()

            if attempt is None:
                raise NotFoundError("Attempt not found")
            if attempt.status == ATTEMPT_SUBMITTED:
                raise ConflictError("Quiz has already been submitted")
            if attempt.status == ATTEMPT_EXPIRED:
                raise ExpiredError("Quiz time has expired")

            now = utcnow()
            if attempt.is_expired(now):
                self._expire(db, attempt)
                raise ExpiredError("Quiz time has expired")

            merged = dict(attempt.answers or {})
            merged.update(answers)
            attempt.answers = merged
            attempt.last_activity = now
            db.commit()
        except Exception:
            db.rollback()
            raise

        logger.info(f"Progress saved for attempt {session_id}: {len(answers)} answer(s)")
        self.cache.delete(CacheKeys.resume(quiz_id, caller.user_id))

        return ProgressSaveResponse(
            message="Progress saved",
            saved_keys=len(answers),
            last_activity=now,
        )

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    @store_operation
    def submit_attempt(
        self,
        db: Session,
        caller: Caller,
        quiz_id: UUID,
        answers: Optional[Dict[str, Any]] = None,
        auto_submit: bool = False,
        time_spent: int = 0
    ) -> SubmissionResponse:
        """
        Grade and finalize the student's attempt

        Auto-submission (timer ran out on the client) of an already finished
        quiz is a silent no-op and is accepted even after expiry; a manual
        submission in either situation is rejected. Answers sent with an
        auto-submit more than AUTO_SUBMIT_GRACE_SECONDS past expiry are
        dropped and only the autosaved answers are graded.

        Args:
            db: Database session
            caller: Authenticated student
            quiz_id: Quiz being submitted
            answers: Final answers, merged over the autosaved ones
            auto_submit: True when the client timer triggered the submission
            time_spent: Seconds reported by the client (0 = derive from start)

        Returns:
            SubmissionResponse with the graded result
        """
        self._require_student(caller)
        student_id = caller.user_id

        quiz = db.get(Quiz, quiz_id)
        if not quiz or quiz.school_id != caller.school_id:
            raise NotFoundError("Quiz not found")

        if self._find_result(db, quiz_id, student_id):
            return self._already_submitted(quiz_id, student_id, auto_submit)

        try:
            attempt = db.query(QuizAttempt).filter(
                QuizAttempt.quiz_id == quiz_id,
                QuizAttempt.student_id == student_id,
                QuizAttempt.status.in_([ATTEMPT_IN_PROGRESS, ATTEMPT_EXPIRED])
            ).order_by(QuizAttempt.attempt_number.desc()).with_for_update().first()

            if attempt is None:
                raise NotFoundError("No quiz attempt to submit")

            now = utcnow()
            expired = attempt.status == ATTEMPT_EXPIRED or attempt.is_expired(now)
            if expired and not auto_submit:
                self._expire(db, attempt)
                raise ExpiredError("Quiz time has expired")

            final_answers = dict(attempt.answers or {})
            grace_ends = attempt.expires_at + timedelta(seconds=settings.AUTO_SUBMIT_GRACE_SECONDS)
            if expired and answers and now > grace_ends:
                logger.warning(
                    f"Late auto-submit for attempt {attempt.session_id}: "
                    f"grading autosaved answers only, {len(answers)} ignored"
                )
            else:
                final_answers.update(answers or {})

            question_set = load_question_set(quiz.question_set)
            question_results, summary = self.grading.grade_submission(question_set, final_answers)

            if not time_spent:
                time_spent = max(int((now - attempt.start_time).total_seconds()), 0)

            result = QuizResult(
                quiz_id=quiz_id,
                student_id=student_id,
                school_id=caller.school_id,
                session_id=attempt.session_id,
                question_results=[item.model_dump(mode="json") for item in question_results],
                score=summary["score"],
                total_points=summary["total_points"],
                percentage=summary["percentage"],
                status=summary["status"],
                auto_graded=summary["auto_graded"],
                auto_submitted=auto_submit,
                attempt_number=attempt.attempt_number,
                start_time=attempt.start_time,
                submitted_at=now,
                time_spent=time_spent,
            )

            attempt.answers = final_answers
            attempt.status = ATTEMPT_SUBMITTED
            attempt.completed_at = now
            attempt.last_activity = now

            db.add(result)
            db.commit()
            db.refresh(result)
        except IntegrityError:
            # A concurrent submission stored its Result first
            db.rollback()
            logger.warning(f"Concurrent submission for quiz {quiz_id} / student {student_id}")
            return self._already_submitted(quiz_id, student_id, auto_submit)
        except Exception:
            db.rollback()
            raise

        logger.info(
            f"Quiz {quiz_id} submitted by student {student_id} "
            f"({'auto' if auto_submit else 'manual'}): "
            f"score={result.score}/{result.total_points}, status={result.status}"
        )

        self._invalidate_attempt_state(quiz, student_id)
        self.grading.invalidate_result_views(
            caller.school_id, [(result.id, student_id)], quiz_id=quiz_id
        )

        return SubmissionResponse(
            message="Quiz submitted successfully",
            status="submitted",
            result=self.grading.present_result(caller, result, quiz),
        )

    # ------------------------------------------------------------------
    # Status checks
    # ------------------------------------------------------------------

    @store_operation
    def check_completion(self, db: Session, caller: Caller, quiz_id: UUID) -> CompletionResponse:
        cache_key = CacheKeys.completion(quiz_id, caller.user_id)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return CompletionResponse(**cached)

        response = CompletionResponse(
            completed=self._find_result(db, quiz_id, caller.user_id) is not None
        )
        self.cache.set(cache_key, response.model_dump(), settings.CACHE_TTL_COMPLETION)
        return response

    @store_operation
    def check_in_progress(self, db: Session, caller: Caller, quiz_id: UUID) -> InProgressResponse:
        """Only a live (non-expired) in-progress attempt counts"""
        cache_key = CacheKeys.in_progress(quiz_id, caller.user_id)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return InProgressResponse(**cached)

        attempt = self._find_active_attempt(db, quiz_id, caller.user_id)
        live = attempt is not None and not attempt.is_expired()
        response = InProgressResponse(in_progress=live)

        ttl = settings.CACHE_TTL_IN_PROGRESS
        if live:
            # Never report a live attempt past its own expiry
            ttl = min(ttl, seconds_until(attempt.expires_at))
        self.cache.set(cache_key, response.model_dump(), ttl)
        return response

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _find_active_attempt(
        self,
        db: Session,
        quiz_id: UUID,
        student_id: UUID,
        lock: bool = False
    ) -> Optional[QuizAttempt]:
        query = db.query(QuizAttempt).filter(
            QuizAttempt.quiz_id == quiz_id,
            QuizAttempt.student_id == student_id,
            QuizAttempt.status == ATTEMPT_IN_PROGRESS
        )
        if lock:
            query = query.with_for_update()
        return query.first()

    def _find_result(self, db: Session, quiz_id: UUID, student_id: UUID) -> Optional[QuizResult]:
        return db.query(QuizResult).filter(
            QuizResult.quiz_id == quiz_id,
            QuizResult.student_id == student_id
        ).first()

    def _expire(self, db: Session, attempt: QuizAttempt) -> None:
        """Persist the lazily detected expiry of an attempt"""
        if attempt.status != ATTEMPT_EXPIRED:
            attempt.status = ATTEMPT_EXPIRED
            db.commit()
            logger.info(f"Attempt {attempt.session_id} marked expired")
        self.cache.invalidate(keys=CacheKeys.attempt_scope(attempt.quiz_id, attempt.student_id))

    def _already_submitted(self, quiz_id: UUID, student_id: UUID, auto_submit: bool) -> SubmissionResponse:
        if not auto_submit:
            raise ConflictError("Quiz has already been submitted")
        logger.info(f"Auto-submit ignored, quiz {quiz_id} already submitted by {student_id}")
        return SubmissionResponse(
            message="Quiz already submitted",
            status="already-submitted",
            result=None,
        )

    def _start_response(self, quiz: Quiz, attempt: QuizAttempt, resumed: bool) -> AttemptStartResponse:
        return AttemptStartResponse(
            session_id=attempt.session_id,
            attempt_number=attempt.attempt_number,
            start_time=attempt.start_time,
            expires_at=attempt.expires_at,
            time_remaining=seconds_until(attempt.expires_at),
            resumed=resumed,
            answers=dict(attempt.answers or {}),
            quiz=self.quizzes.student_view(quiz, attempt.student_id),
        )

    def _invalidate_attempt_state(self, quiz: Quiz, student_id: UUID) -> None:
        self.cache.invalidate(
            keys=CacheKeys.attempt_scope(quiz.id, student_id),
            prefixes=[CacheKeys.class_quizzes_prefix(quiz.class_id)],
        )

    @staticmethod
    def _require_student(caller: Caller) -> None:
        if not caller.is_student:
            raise PermissionDeniedError("Only students can take quizzes")
