"""
Tests for the attempt lifecycle: start, resume, autosave, submit
"""
import uuid
from datetime import timedelta

import pytest

from app.exceptions import ConflictError, ExpiredError, NotFoundError, PermissionDeniedError
from app.models import QuizAttempt, QuizResult
from app.models.quiz_attempt import ATTEMPT_EXPIRED, ATTEMPT_IN_PROGRESS, ATTEMPT_SUBMITTED
from app.utils.cache import CacheKeys
from app.utils.timeutils import utcnow


def expire_attempt(db_session, session_id, seconds_ago=1):
    attempt = db_session.query(QuizAttempt).filter(QuizAttempt.session_id == session_id).one()
    attempt.expires_at = utcnow() - timedelta(seconds=seconds_ago)
    db_session.commit()
    return attempt


class TestStartAttempt:
    """Attempt creation and get-or-create semantics"""

    def test_start_creates_attempt(self, db_session, attempt_service, student, make_quiz):
        quiz = make_quiz(time_limit=15)
        started = attempt_service.start_attempt(db_session, student, quiz.id)

        assert started.resumed is False
        assert started.attempt_number == 1
        assert started.answers == {}
        assert 14 * 60 <= started.time_remaining <= 15 * 60
        assert started.expires_at - started.start_time == timedelta(minutes=15)
        assert started.quiz.id == quiz.id
        assert started.quiz.total_points == 4

    def test_default_time_limit_is_sixty_minutes(self, db_session, attempt_service, student, make_quiz):
        quiz = make_quiz()
        started = attempt_service.start_attempt(db_session, student, quiz.id)

        assert started.expires_at - started.start_time == timedelta(minutes=60)

    def test_second_start_resumes(self, db_session, attempt_service, student, make_quiz):
        quiz = make_quiz()
        first = attempt_service.start_attempt(db_session, student, quiz.id)
        second = attempt_service.start_attempt(db_session, student, quiz.id)

        assert second.resumed is True
        assert second.session_id == first.session_id
        assert second.quiz.model_dump() == first.quiz.model_dump()
        assert db_session.query(QuizAttempt).count() == 1

    def test_concurrent_start_resolves_to_resume(
        self, db_session, attempt_service, student, make_quiz, monkeypatch
    ):
        """A unique-index violation on insert becomes a resume of the winner"""
        quiz = make_quiz()
        assert quiz.max_attempts == 1
        winner = attempt_service.start_attempt(db_session, student, quiz.id)

        original = attempt_service._find_active_attempt
        calls = []

        def stale_lookup(*args, **kwargs):
            # First lookup misses, as if the winner had not committed yet
            calls.append(1)
            if len(calls) == 1:
                return None
            return original(*args, **kwargs)

        monkeypatch.setattr(attempt_service, "_find_active_attempt", stale_lookup)
        loser = attempt_service.start_attempt(db_session, student, quiz.id)

        assert loser.resumed is True
        assert loser.session_id == winner.session_id
        in_progress = db_session.query(QuizAttempt).filter(
            QuizAttempt.status == ATTEMPT_IN_PROGRESS
        ).count()
        assert in_progress == 1

    def test_existing_result_conflicts_and_creates_nothing(
        self, db_session, attempt_service, student, make_quiz
    ):
        quiz = make_quiz(max_attempts=5)
        attempt_service.start_attempt(db_session, student, quiz.id)
        attempt_service.submit_attempt(db_session, student, quiz.id, answers={"q1": "A"})
        attempts_before = db_session.query(QuizAttempt).count()

        with pytest.raises(ConflictError):
            attempt_service.start_attempt(db_session, student, quiz.id)
        assert db_session.query(QuizAttempt).count() == attempts_before

    def test_window_is_enforced(self, db_session, attempt_service, student, make_quiz):
        now = utcnow()
        future = make_quiz(start_time=now + timedelta(hours=1))
        closed = make_quiz(start_time=now - timedelta(days=2), due_date=now - timedelta(days=1))

        with pytest.raises(ConflictError):
            attempt_service.start_attempt(db_session, student, future.id)
        with pytest.raises(ExpiredError):
            attempt_service.start_attempt(db_session, student, closed.id)

    def test_expired_attempt_does_not_use_up_max_attempts(
        self, db_session, attempt_service, student, make_quiz
    ):
        """Only submitted attempts count; an abandoned one allows a fresh start"""
        quiz = make_quiz()
        first = attempt_service.start_attempt(db_session, student, quiz.id)
        expire_attempt(db_session, first.session_id)

        second = attempt_service.start_attempt(db_session, student, quiz.id)
        assert second.resumed is False
        assert second.session_id != first.session_id
        assert second.attempt_number == 2
        assert db_session.query(QuizAttempt).filter(
            QuizAttempt.session_id == first.session_id
        ).one().status == ATTEMPT_EXPIRED

        response = attempt_service.submit_attempt(db_session, student, quiz.id, answers={"q1": "A"})
        assert response.result.attempt_number == 2
        assert response.result.score == 1

    def test_submitted_results_reach_max_attempts(
        self, db_session, attempt_service, student, make_quiz, monkeypatch
    ):
        quiz = make_quiz(max_attempts=1)
        attempt_service.start_attempt(db_session, student, quiz.id)
        attempt_service.submit_attempt(db_session, student, quiz.id, answers={"q1": "A"})

        # Skip the completed-quiz guard so the limit itself is what rejects
        monkeypatch.setattr(attempt_service, "_find_result", lambda *args, **kwargs: None)
        with pytest.raises(ConflictError) as error:
            attempt_service.start_attempt(db_session, student, quiz.id)
        assert error.value.detail == {"max_attempts": 1}

    def test_unknown_quiz_and_non_students(self, db_session, attempt_service, student, teacher, make_quiz):
        quiz = make_quiz()

        with pytest.raises(NotFoundError):
            attempt_service.start_attempt(db_session, student, uuid.uuid4())
        with pytest.raises(PermissionDeniedError):
            attempt_service.start_attempt(db_session, teacher, quiz.id)


class TestResumeAndSave:

    def test_save_merges_answers(self, db_session, attempt_service, student, make_quiz):
        quiz = make_quiz()
        started = attempt_service.start_attempt(db_session, student, quiz.id)

        attempt_service.save_progress(db_session, student, quiz.id, started.session_id, {"q1": "B"})
        saved = attempt_service.save_progress(
            db_session, student, quiz.id, started.session_id, {"q1": "A", "q3:1": "x"}
        )

        assert saved.saved_keys == 2
        resumed = attempt_service.resume_attempt(db_session, student, quiz.id)
        assert resumed.answers == {"q1": "A", "q3:1": "x"}
        assert resumed.session_id == started.session_id
        assert resumed.time_remaining > 0

    def test_save_invalidates_cached_resume(self, db_session, attempt_service, student, make_quiz, cache):
        quiz = make_quiz()
        started = attempt_service.start_attempt(db_session, student, quiz.id)
        attempt_service.resume_attempt(db_session, student, quiz.id)
        assert cache.get(CacheKeys.resume(quiz.id, student.user_id)) is not None

        attempt_service.save_progress(db_session, student, quiz.id, started.session_id, {"q2": "True"})

        assert cache.get(CacheKeys.resume(quiz.id, student.user_id)) is None
        assert attempt_service.resume_attempt(db_session, student, quiz.id).answers == {"q2": "True"}

    def test_save_never_changes_status(self, db_session, attempt_service, student, make_quiz):
        quiz = make_quiz()
        started = attempt_service.start_attempt(db_session, student, quiz.id)
        attempt_service.save_progress(db_session, student, quiz.id, started.session_id, {"q1": "A"})

        attempt = db_session.query(QuizAttempt).one()
        assert attempt.status == ATTEMPT_IN_PROGRESS

    def test_save_after_expiry(self, db_session, attempt_service, student, make_quiz):
        quiz = make_quiz()
        started = attempt_service.start_attempt(db_session, student, quiz.id)
        expire_attempt(db_session, started.session_id)

        with pytest.raises(ExpiredError):
            attempt_service.save_progress(db_session, student, quiz.id, started.session_id, {"q1": "A"})
        assert db_session.query(QuizAttempt).one().status == ATTEMPT_EXPIRED

    def test_save_unknown_session(self, db_session, attempt_service, student, make_quiz):
        quiz = make_quiz()
        attempt_service.start_attempt(db_session, student, quiz.id)

        with pytest.raises(NotFoundError):
            attempt_service.save_progress(db_session, student, quiz.id, "missing", {"q1": "A"})

    def test_resume_without_attempt(self, db_session, attempt_service, student, make_quiz):
        quiz = make_quiz()

        with pytest.raises(NotFoundError):
            attempt_service.resume_attempt(db_session, student, quiz.id)

    def test_resume_after_expiry(self, db_session, attempt_service, student, make_quiz):
        quiz = make_quiz()
        started = attempt_service.start_attempt(db_session, student, quiz.id)
        expire_attempt(db_session, started.session_id)

        with pytest.raises(ExpiredError):
            attempt_service.resume_attempt(db_session, student, quiz.id)


class TestSubmitAttempt:

    def test_submit_grades_merged_answers(self, db_session, attempt_service, student, make_quiz, cache):
        quiz = make_quiz(show_answers="after-submission")
        started = attempt_service.start_attempt(db_session, student, quiz.id)
        attempt_service.save_progress(
            db_session, student, quiz.id, started.session_id, {"q1": "A", "q3:1": "z"}
        )

        response = attempt_service.submit_attempt(
            db_session, student, quiz.id, answers={"q2": "True", "q3:2": "y"}, time_spent=42
        )

        assert response.status == "submitted"
        assert response.result.score == 3
        assert response.result.total_points == 4
        assert response.result.percentage == 75.0
        assert response.result.auto_graded is True
        assert response.result.time_spent == 42
        assert response.result.question_results[0].correct_answer == "A"

        attempt = db_session.query(QuizAttempt).one()
        assert attempt.status == ATTEMPT_SUBMITTED
        assert attempt.completed_at is not None
        assert attempt_service.check_completion(db_session, student, quiz.id).completed is True
        assert attempt_service.check_in_progress(db_session, student, quiz.id).in_progress is False

    def test_answers_hidden_until_deadline(self, db_session, attempt_service, student, make_quiz):
        quiz = make_quiz(due_date=utcnow() + timedelta(days=1))
        attempt_service.start_attempt(db_session, student, quiz.id)

        response = attempt_service.submit_attempt(db_session, student, quiz.id, answers={"q1": "A"})

        assert all(r.correct_answer is None for r in response.result.question_results)

    def test_second_manual_submit_conflicts(self, db_session, attempt_service, student, make_quiz):
        quiz = make_quiz()
        attempt_service.start_attempt(db_session, student, quiz.id)
        attempt_service.submit_attempt(db_session, student, quiz.id, answers={"q1": "A"})

        with pytest.raises(ConflictError):
            attempt_service.submit_attempt(db_session, student, quiz.id, answers={"q1": "B"})

    def test_auto_submit_after_manual_is_noop(self, db_session, attempt_service, student, make_quiz):
        quiz = make_quiz()
        attempt_service.start_attempt(db_session, student, quiz.id)
        attempt_service.submit_attempt(db_session, student, quiz.id, answers={"q1": "A"})

        response = attempt_service.submit_attempt(
            db_session, student, quiz.id, answers={"q1": "B"}, auto_submit=True
        )

        assert response.status == "already-submitted"
        stored = db_session.query(QuizResult).one()
        assert stored.score == 1
        assert stored.auto_submitted is False

    def test_manual_submit_after_expiry_is_rejected(self, db_session, attempt_service, student, make_quiz):
        quiz = make_quiz()
        started = attempt_service.start_attempt(db_session, student, quiz.id)
        expire_attempt(db_session, started.session_id)

        with pytest.raises(ExpiredError):
            attempt_service.submit_attempt(db_session, student, quiz.id, answers={"q1": "A"})
        assert db_session.query(QuizResult).count() == 0
        assert db_session.query(QuizAttempt).one().status == ATTEMPT_EXPIRED

    def test_auto_submit_after_expiry_is_graded(self, db_session, attempt_service, student, make_quiz):
        quiz = make_quiz()
        started = attempt_service.start_attempt(db_session, student, quiz.id)
        attempt_service.save_progress(db_session, student, quiz.id, started.session_id, {"q1": "A"})
        expire_attempt(db_session, started.session_id)

        response = attempt_service.submit_attempt(db_session, student, quiz.id, auto_submit=True)

        assert response.status == "submitted"
        assert response.result.score == 1
        assert response.result.auto_submitted is True

    def test_auto_submit_within_grace_keeps_final_answers(
        self, db_session, attempt_service, student, make_quiz
    ):
        quiz = make_quiz()
        started = attempt_service.start_attempt(db_session, student, quiz.id)
        attempt_service.save_progress(db_session, student, quiz.id, started.session_id, {"q1": "A"})
        expire_attempt(db_session, started.session_id, seconds_ago=5)

        response = attempt_service.submit_attempt(
            db_session, student, quiz.id, answers={"q2": "True"}, auto_submit=True
        )

        assert response.result.score == 2

    def test_late_auto_submit_grades_autosaved_answers_only(
        self, db_session, attempt_service, student, make_quiz
    ):
        quiz = make_quiz()
        started = attempt_service.start_attempt(db_session, student, quiz.id)
        attempt_service.save_progress(db_session, student, quiz.id, started.session_id, {"q1": "A"})
        expire_attempt(db_session, started.session_id, seconds_ago=3600)

        response = attempt_service.submit_attempt(
            db_session, student, quiz.id,
            answers={"q1": "B", "q2": "True", "q3:1": "x", "q3:2": "y"},
            auto_submit=True,
        )

        assert response.status == "submitted"
        assert response.result.score == 1
        stored = db_session.query(QuizAttempt).one()
        assert stored.answers == {"q1": "A"}
        assert stored.status == ATTEMPT_SUBMITTED

    def test_submit_without_attempt(self, db_session, attempt_service, student, make_quiz):
        quiz = make_quiz()

        with pytest.raises(NotFoundError):
            attempt_service.submit_attempt(db_session, student, quiz.id, answers={})

    def test_concurrent_submit_keeps_single_result(
        self, db_session, attempt_service, student, make_quiz, monkeypatch
    ):
        """A Result stored by a concurrent request wins; nothing is overwritten"""
        quiz = make_quiz()
        started = attempt_service.start_attempt(db_session, student, quiz.id)
        db_session.add(QuizResult(
            quiz_id=quiz.id,
            student_id=student.user_id,
            school_id=student.school_id,
            session_id=started.session_id,
            question_results=[],
            score=0,
            total_points=4,
            percentage=0.0,
        ))
        db_session.commit()
        monkeypatch.setattr(attempt_service, "_find_result", lambda *args, **kwargs: None)

        auto = attempt_service.submit_attempt(
            db_session, student, quiz.id, answers={"q1": "A"}, auto_submit=True
        )
        assert auto.status == "already-submitted"

        with pytest.raises(ConflictError):
            attempt_service.submit_attempt(db_session, student, quiz.id, answers={"q1": "A"})

        assert db_session.query(QuizResult).count() == 1
        assert db_session.query(QuizAttempt).one().status == ATTEMPT_IN_PROGRESS

    def test_failed_grading_rolls_back(self, db_session, attempt_service, student, make_quiz, monkeypatch):
        """No Result is left behind and the attempt stays in progress"""
        quiz = make_quiz()
        attempt_service.start_attempt(db_session, student, quiz.id)

        def broken(*args, **kwargs):
            raise RuntimeError("grader crashed")

        monkeypatch.setattr(attempt_service.grading, "grade_submission", broken)

        with pytest.raises(RuntimeError):
            attempt_service.submit_attempt(db_session, student, quiz.id, answers={"q1": "A"})
        assert db_session.query(QuizResult).count() == 0
        assert db_session.query(QuizAttempt).one().status == ATTEMPT_IN_PROGRESS


class TestStatusChecks:

    def test_in_progress_reflects_live_attempt(self, db_session, attempt_service, student, make_quiz, cache):
        quiz = make_quiz()
        assert attempt_service.check_in_progress(db_session, student, quiz.id).in_progress is False

        attempt_service.start_attempt(db_session, student, quiz.id)

        assert cache.get(CacheKeys.in_progress(quiz.id, student.user_id)) is None
        assert attempt_service.check_in_progress(db_session, student, quiz.id).in_progress is True
        assert attempt_service.check_completion(db_session, student, quiz.id).completed is False

    def test_expired_attempt_is_not_in_progress(self, db_session, attempt_service, student, make_quiz):
        quiz = make_quiz()
        started = attempt_service.start_attempt(db_session, student, quiz.id)
        expire_attempt(db_session, started.session_id)

        assert attempt_service.check_in_progress(db_session, student, quiz.id).in_progress is False
