"""
Quiz grading service
Objective questions and cloze blanks: exact match against the declared answer
Essay / short answer: held for manual review, scored by a teacher
"""
import math
from datetime import datetime
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union
from uuid import UUID

from fastapi import BackgroundTasks
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.config import settings
from app.exceptions import NotFoundError, PermissionDeniedError, ValidationError
from app.models import Quiz, QuizResult
from app.models.quiz_result import RESULT_GRADED, RESULT_NEEDS_REVIEW, RESULT_SUBMITTED
from app.schemas.caller import Caller
from app.schemas.quiz import (
    MANUAL_QUESTION_TYPES,
    QUESTION_CLOZE,
    ClozeQuestion,
    FlatQuestionSet,
    SectionedQuestionSet,
)
from app.schemas.result import (
    GradeQuestionResponse,
    ProgressPoint,
    QuestionResult,
    ResultResponse,
    ResultSummary,
    SubjectAverage,
    TeacherResultRow,
)
from app.services.notification_service import NotificationService
from app.utils.cache import CacheKeys, CacheService
from app.utils.store import store_operation
from app.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

AnyQuestionSet = Union[FlatQuestionSet, SectionedQuestionSet]

UNKNOWN_SUBJECT = "Unknown Subject"


@dataclass
class GradingUnit:
    """One independently scored unit: a whole question, or a single cloze blank"""
    question: Any  # the question (or ClozeBlank) that knows its correct answer
    question_id: str
    question_type: str
    question_text: str
    points: float
    explanation: Optional[str] = None
    blank_number: Optional[int] = None

    @property
    def auto_gradable(self) -> bool:
        return self.question_type not in MANUAL_QUESTION_TYPES

    @property
    def answer_key(self) -> str:
        if self.blank_number is None:
            return self.question_id
        return f"{self.question_id}:{self.blank_number}"


class GradingService:
    """
    Service for grading quiz submissions and manual review

    Strategy:
    - Multiple choice: selected value equals the declared correct option
    - True/false: case-insensitive match of the boolean's string form
    - Cloze: every blank is its own multiple-choice unit
    - Essay / short answer: never auto-graded; earned_points stays null until
      a teacher grades it
    """

    def __init__(self, cache: CacheService, notifications: NotificationService):
        self.cache = cache
        self.notifications = notifications
        self.manual_max = settings.MANUAL_QUESTION_MAX_POINTS

    # ------------------------------------------------------------------
    # Pure grading
    # ------------------------------------------------------------------

    def flatten_units(self, question_set: AnyQuestionSet) -> List[GradingUnit]:
        """
        Flatten a question set into gradable units

        Section children are included in order; a cloze question contributes
        one unit per blank and none for itself.
        """
        units = []
        for question in question_set.iter_questions():
            if isinstance(question, ClozeQuestion):
                for blank in question.blanks:
                    units.append(GradingUnit(
                        question=blank,
                        question_id=question.id,
                        question_type=QUESTION_CLOZE,
                        question_text=question.question_text,
                        points=blank.effective_points(),
                        explanation=question.explanation,
                        blank_number=blank.blank_number,
                    ))
                continue

            units.append(GradingUnit(
                question=question,
                question_id=question.id,
                question_type=question.type,
                question_text=question.question_text,
                points=question.effective_points(self.manual_max),
                explanation=question.explanation,
            ))
        return units

    def total_points(self, question_set: AnyQuestionSet) -> float:
        return sum(unit.points for unit in self.flatten_units(question_set))

    def count_auto_gradable(self, question_set: AnyQuestionSet) -> int:
        return sum(1 for unit in self.flatten_units(question_set) if unit.auto_gradable)

    def grade_submission(
        self,
        question_set: AnyQuestionSet,
        answers: Dict[str, Any]
    ) -> Tuple[List[QuestionResult], Dict[str, Any]]:
        """
        Grade a complete submission

        Args:
            question_set: Parsed question set of the quiz
            answers: Student answers keyed by question id or "questionId:blankNumber"

        Returns:
            Tuple of (per-unit results, aggregate summary)
        """
        question_results = [
            self._grade_unit(unit, self._selected_answer(answers, unit))
            for unit in self.flatten_units(question_set)
        ]
        summary = self.aggregate(question_results)

        logger.info(
            f"Submission graded: score={summary['score']}, "
            f"total={summary['total_points']}, status={summary['status']}"
        )
        return question_results, summary

    def aggregate(self, question_results: List[QuestionResult]) -> Dict[str, Any]:
        """
        Recompute the result totals from scratch

        totalPoints counts every unit once; score counts only graded units.
        Any manual unit still awaiting a grade nulls score and percentage.
        """
        total_points = sum(item.points for item in question_results)
        pending_review = any(
            item.manual_review_required and item.earned_points is None
            for item in question_results
        )
        has_manual = any(item.question_type in MANUAL_QUESTION_TYPES for item in question_results)

        if pending_review:
            return {
                "score": None,
                "total_points": total_points,
                "percentage": None,
                "status": RESULT_NEEDS_REVIEW,
                "auto_graded": False,
            }

        score = sum(item.earned_points for item in question_results if item.earned_points is not None)
        percentage = round(score / total_points * 100, 2) if total_points > 0 else 0.0

        return {
            "score": score,
            "total_points": total_points,
            "percentage": percentage,
            "status": RESULT_GRADED if has_manual else RESULT_SUBMITTED,
            "auto_graded": not has_manual,
        }

    def _selected_answer(self, answers: Dict[str, Any], unit: GradingUnit) -> Any:
        """Look up a unit's answer; cloze blanks also accept {questionId: {blankNumber: value}}"""
        if unit.blank_number is None:
            return answers.get(unit.question_id)

        if unit.answer_key in answers:
            return answers[unit.answer_key]

        nested = answers.get(unit.question_id)
        if isinstance(nested, dict):
            return nested.get(str(unit.blank_number))
        return None

    def _grade_unit(self, unit: GradingUnit, selected: Any) -> QuestionResult:
        if not unit.auto_gradable:
            return QuestionResult(
                question_id=unit.question_id,
                question_type=unit.question_type,
                question_text=unit.question_text,
                selected_answer=selected,
                correct_answer=None,
                explanation=unit.explanation,
                points=unit.points,
                earned_points=None,
                is_correct=None,
                manual_review_required=True,
            )

        is_correct = unit.question.is_correct(selected)
        earned = self._clamp(unit.points if is_correct else 0.0, unit.points)

        return QuestionResult(
            question_id=unit.question_id,
            question_type=unit.question_type,
            blank_number=unit.blank_number,
            question_text=unit.question_text,
            selected_answer=selected,
            correct_answer=unit.question.correct_answer,
            explanation=unit.explanation,
            points=unit.points,
            earned_points=earned,
            is_correct=is_correct,
            manual_review_required=False,
        )

    @staticmethod
    def _clamp(value: float, upper: float) -> float:
        return min(max(value, 0.0), upper)

    # ------------------------------------------------------------------
    # Manual grading
    # ------------------------------------------------------------------

    @store_operation
    def grade_question(
        self,
        db: Session,
        caller: Caller,
        result_id: UUID,
        question_id: str,
        earned_points: float,
        feedback: Optional[str] = None,
        background_tasks: Optional[BackgroundTasks] = None
    ) -> GradeQuestionResponse:
        """
        Assign points to an essay or short-answer question

        The awarded value is clamped into [0, question points] and rounded to a
        whole number; the result totals are then recomputed over every unit.
        """
        if not caller.is_privileged:
            raise PermissionDeniedError("Only teachers can grade questions")

        try:
            result = db.query(QuizResult).filter(
                QuizResult.id == result_id
            ).with_for_update().first()

            if not result or result.school_id != caller.school_id:
                raise NotFoundError("Result not found")

            entries = [QuestionResult(**item) for item in result.question_results]
            matches = [item for item in entries if item.question_id == question_id]
            if not matches:
                raise NotFoundError("Question not found in this result")

            entry = matches[0]
            if entry.question_type not in MANUAL_QUESTION_TYPES:
                raise ValidationError(
                    f"{entry.question_type} questions are auto-graded only",
                    detail={"question_id": question_id, "question_type": entry.question_type}
                )

            awarded = self._clamp(float(math.floor(earned_points + 0.5)), entry.points)
            entry.earned_points = awarded
            if feedback is not None:
                entry.feedback = feedback.strip()
            entry.manual_review_required = False
            if awarded == 0:
                entry.is_correct = False
            elif awarded == entry.points:
                entry.is_correct = True
            else:
                entry.is_correct = None

            summary = self.aggregate(entries)
            result.question_results = [item.model_dump(mode="json") for item in entries]
            result.score = summary["score"]
            result.total_points = summary["total_points"]
            result.percentage = summary["percentage"]
            result.status = summary["status"]
            result.auto_graded = False

            quiz_id, student_id = result.quiz_id, result.student_id
            quiz = db.get(Quiz, quiz_id)
            db.commit()
        except Exception:
            db.rollback()
            raise

        logger.info(
            f"Question {question_id} graded on result {result_id}: "
            f"{awarded}/{entry.points}, status={summary['status']}"
        )

        self.invalidate_result_views(caller.school_id, [(result_id, student_id)], quiz_id=quiz_id)
        if quiz:
            self.cache.delete_by_prefix(CacheKeys.class_quizzes_prefix(quiz.class_id))

        quiz_title = quiz.title if quiz else "Quiz"
        self.notifications.dispatch(
            background_tasks,
            [str(student_id)],
            "Quiz Graded",
            f"{quiz_title}: A question has been graded",
            {"quiz_id": str(quiz_id), "result_id": str(result_id), "type": "quiz-graded"},
        )

        return GradeQuestionResponse(
            message="Question graded successfully",
            question_id=question_id,
            earned_points=awarded,
            feedback=entry.feedback,
            score=summary["score"],
            total_points=summary["total_points"],
            percentage=summary["percentage"],
            status=summary["status"],
        )

    # ------------------------------------------------------------------
    # Result reads
    # ------------------------------------------------------------------

    @store_operation
    def get_result(self, db: Session, caller: Caller, result_id: UUID) -> ResultResponse:
        cache_key = CacheKeys.result(result_id)
        cached = self.cache.get(cache_key)

        if cached is None:
            result = db.query(QuizResult).filter(QuizResult.id == result_id).first()
            if not result:
                raise NotFoundError("Result not found")
            quiz = db.get(Quiz, result.quiz_id)
            cached = self._cache_entry(result, quiz)
            self.cache.set(cache_key, cached, settings.CACHE_TTL_RESULT)

        if cached["school_id"] != str(caller.school_id):
            raise NotFoundError("Result not found")
        if caller.is_student and cached["result"]["student_id"] != str(caller.user_id):
            raise PermissionDeniedError("You can only view your own results")

        return self._view_for(caller, cached)

    @store_operation
    def list_results_for_quiz(self, db: Session, caller: Caller, quiz_id: UUID) -> List[ResultSummary]:
        if not (caller.is_privileged or caller.is_student):
            raise PermissionDeniedError("Not allowed to list quiz results")

        quiz = db.get(Quiz, quiz_id)
        if not quiz or quiz.school_id != caller.school_id:
            raise NotFoundError("Quiz not found in your school")

        cache_key = CacheKeys.quiz_results(quiz_id)
        cached = self.cache.get(cache_key)
        if cached is None:
            results = db.query(QuizResult).filter(
                QuizResult.quiz_id == quiz_id
            ).order_by(QuizResult.submitted_at.desc()).all()
            cached = [ResultSummary.model_validate(r).model_dump(mode="json") for r in results]
            self.cache.set(cache_key, cached, settings.CACHE_TTL_RESULTS)

        summaries = [ResultSummary(**item) for item in cached]
        if caller.is_student:
            summaries = [s for s in summaries if s.student_id == caller.user_id]
        return summaries

    @store_operation
    def list_results_for_student(
        self,
        db: Session,
        caller: Caller,
        student_id: UUID,
        quiz_id: Optional[UUID] = None
    ) -> List[ResultResponse]:
        if caller.is_student and student_id != caller.user_id:
            raise PermissionDeniedError("You can only view your own results")

        cache_key = CacheKeys.student_results(student_id)
        cached = self.cache.get(cache_key)
        if cached is None:
            rows = db.query(QuizResult, Quiz).join(
                Quiz, Quiz.id == QuizResult.quiz_id
            ).filter(
                QuizResult.student_id == student_id
            ).order_by(QuizResult.submitted_at.desc()).all()
            cached = [self._cache_entry(result, quiz) for result, quiz in rows]
            self.cache.set(cache_key, cached, settings.CACHE_TTL_RESULTS)

        entries = [e for e in cached if e["school_id"] == str(caller.school_id)]
        if quiz_id is not None:
            entries = [e for e in entries if e["result"]["quiz_id"] == str(quiz_id)]
        return [self._view_for(caller, entry) for entry in entries]

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    @store_operation
    def list_results_for_teacher(self, db: Session, caller: Caller) -> List[TeacherResultRow]:
        """
        Results of every quiz the caller created, newest first

        Admins get every result of their school.
        """
        if not caller.is_privileged:
            raise PermissionDeniedError("Only teachers can list class results")

        cache_key = CacheKeys.teacher_results(caller.school_id, caller.user_id)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return [TeacherResultRow(**item) for item in cached]

        query = db.query(QuizResult, Quiz).join(
            Quiz, Quiz.id == QuizResult.quiz_id
        ).filter(Quiz.school_id == caller.school_id)
        if caller.role != "admin":
            query = query.filter(Quiz.teacher_id == caller.user_id)

        rows = []
        for result, quiz in query.order_by(QuizResult.submitted_at.desc()).all():
            summary = ResultSummary.model_validate(result).model_dump()
            rows.append(TeacherResultRow(
                **summary,
                quiz_title=quiz.title,
                class_id=quiz.class_id,
                subject_name=quiz.subject_name,
            ))

        self.cache.set(
            cache_key,
            [row.model_dump(mode="json") for row in rows],
            settings.CACHE_TTL_RESULTS
        )
        return rows

    @store_operation
    def student_progress(self, db: Session, caller: Caller, student_id: UUID) -> List[ProgressPoint]:
        """Score timeline of one student in the caller's school, oldest first"""
        if caller.is_student and student_id != caller.user_id:
            raise PermissionDeniedError("You can only view your own progress")

        cache_key = CacheKeys.student_progress(caller.school_id, student_id)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return [ProgressPoint(**item) for item in cached]

        rows = db.query(QuizResult, Quiz).join(
            Quiz, Quiz.id == QuizResult.quiz_id
        ).filter(
            QuizResult.student_id == student_id,
            QuizResult.school_id == caller.school_id
        ).order_by(QuizResult.submitted_at.asc()).all()

        points = [
            ProgressPoint(
                result_id=result.id,
                quiz_id=quiz.id,
                quiz_title=quiz.title,
                subject_name=quiz.subject_name or UNKNOWN_SUBJECT,
                date=result.submitted_at,
                score=result.score,
                total_points=result.total_points,
                percentage=result.percentage,
            )
            for result, quiz in rows
        ]
        self.cache.set(
            cache_key,
            [point.model_dump(mode="json") for point in points],
            settings.CACHE_TTL_PROGRESS
        )
        return points

    @store_operation
    def average_scores_per_subject(self, db: Session, caller: Caller, school_id: UUID) -> List[SubjectAverage]:
        """
        School-wide average percentage per subject

        Results still awaiting manual review have no percentage and are left
        out of the average, but still count as attempts.
        """
        if not caller.is_privileged:
            raise PermissionDeniedError("Only teachers can view subject averages")
        if school_id != caller.school_id:
            raise PermissionDeniedError("You do not have access to this school")

        cache_key = CacheKeys.subject_averages(school_id)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return [SubjectAverage(**item) for item in cached]

        subject = func.coalesce(Quiz.subject_name, UNKNOWN_SUBJECT)
        rows = db.query(
            subject.label("subject"),
            func.avg(QuizResult.percentage).label("average"),
            func.count(func.distinct(QuizResult.quiz_id)).label("quizzes"),
            func.count(QuizResult.id).label("attempts"),
        ).join(
            Quiz, Quiz.id == QuizResult.quiz_id
        ).filter(
            QuizResult.school_id == school_id
        ).group_by(subject).order_by(subject).all()

        averages = [
            SubjectAverage(
                subject=row.subject,
                average_percentage=round(float(row.average), 2) if row.average is not None else None,
                total_quizzes=row.quizzes,
                total_attempts=row.attempts,
            )
            for row in rows
        ]
        self.cache.set(
            cache_key,
            [item.model_dump() for item in averages],
            settings.CACHE_TTL_SUBJECT_AVERAGES
        )
        return averages

    # ------------------------------------------------------------------
    # Cache invalidation
    # ------------------------------------------------------------------

    def result_refs(self, db: Session, quiz_id: UUID) -> List[Tuple[UUID, UUID]]:
        """(result id, student id) of every result of a quiz"""
        return [
            (row.id, row.student_id)
            for row in db.query(QuizResult.id, QuizResult.student_id).filter(QuizResult.quiz_id == quiz_id)
        ]

    def invalidate_result_views(
        self,
        school_id: UUID,
        refs: Iterable[Tuple[UUID, UUID]],
        quiz_id: Optional[UUID] = None
    ) -> None:
        """Drop every cached read built from the given results or their quiz"""
        keys = [CacheKeys.subject_averages(school_id)]
        if quiz_id is not None:
            keys.append(CacheKeys.quiz_results(quiz_id))
        for result_id, student_id in refs:
            keys.extend([
                CacheKeys.result(result_id),
                CacheKeys.student_results(student_id),
                CacheKeys.student_progress(school_id, student_id),
            ])
        self.cache.invalidate(keys=keys, prefixes=[CacheKeys.teacher_results_prefix(school_id)])

    def present_result(self, caller: Caller, result: QuizResult, quiz: Optional[Quiz]) -> ResultResponse:
        """Result as the caller may see it, answers stripped where the quiz policy says so"""
        return self._view_for(caller, self._cache_entry(result, quiz))

    def _cache_entry(self, result: QuizResult, quiz: Optional[Quiz]) -> Dict[str, Any]:
        """Unstripped result plus what is needed to decide answer visibility later"""
        return {
            "school_id": str(result.school_id),
            "show_answers": quiz.show_answers if quiz else "never",
            "due_date": quiz.due_date.isoformat() if quiz and quiz.due_date else None,
            "result": ResultResponse.model_validate(result).model_dump(mode="json"),
        }

    def _view_for(self, caller: Caller, entry: Dict[str, Any]) -> ResultResponse:
        response = ResultResponse(**entry["result"])
        if caller.is_privileged or self._answers_visible(entry):
            return response

        for item in response.question_results:
            item.correct_answer = None
            item.explanation = None
        return response

    @staticmethod
    def _answers_visible(entry: Dict[str, Any]) -> bool:
        policy = entry["show_answers"]
        if policy == "after-submission":
            return True
        if policy == "after-deadline" and entry["due_date"]:
            return utcnow() > datetime.fromisoformat(entry["due_date"])
        return False
