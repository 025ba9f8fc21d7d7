"""
Quiz catalog service
Creation, validation, publishing and role-dependent reads of quiz definitions
"""
import logging
from typing import Any, Dict, List, Optional, Union
from uuid import UUID

from fastapi import BackgroundTasks
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.config import settings
from app.exceptions import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from app.models import Quiz, QuizAttempt, QuizResult
from app.models.quiz_attempt import ATTEMPT_IN_PROGRESS
from app.schemas.caller import Caller
from app.schemas.quiz import (
    ClozeQuestion,
    FlatQuestionSet,
    ManualQuestionBase,
    MultipleChoiceQuestion,
    QuizCreate,
    QuizResponse,
    QuizUpdate,
    SchoolQuizListItem,
    SectionedQuestionSet,
    StudentQuizListItem,
    StudentQuizView,
    TeacherQuizListItem,
    TrueFalseQuestion,
    dump_question_set,
    load_question_set,
)
from app.services.grading_service import GradingService
from app.services.notification_service import NotificationService
from app.services.randomization_service import RandomizationService
from app.utils.cache import CacheKeys, CacheService
from app.utils.store import store_operation
from app.utils.timeutils import as_naive_utc, utcnow

logger = logging.getLogger(__name__)

AnyQuestionSet = Union[FlatQuestionSet, SectionedQuestionSet]

# Fields copied verbatim from create/update payloads onto the row
_SCALAR_FIELDS = (
    "title",
    "subject_name",
    "description",
    "shuffle_questions",
    "shuffle_options",
    "time_limit",
    "max_attempts",
    "show_answers",
)
_DATETIME_FIELDS = ("start_time", "due_date")


class QuizService:
    """
    Service for the quiz catalog

    Teachers and admins author quizzes; students only ever see a published,
    randomized, answer-free view.
    """

    def __init__(
        self,
        cache: CacheService,
        notifications: NotificationService,
        grading: GradingService,
        randomization: RandomizationService
    ):
        self.cache = cache
        self.notifications = notifications
        self.grading = grading
        self.randomization = randomization

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def build_question_set(self, questions, sections) -> AnyQuestionSet:
        """
        Validate a questions/sections payload and return a normalized question set

        Exactly one of questions or sections must be supplied. Objective
        questions without points default to 1; essay-style points stay unset
        and resolve to the manual maximum when graded.
        """
        if (questions is None) == (sections is None):
            raise ValidationError("Provide exactly one of 'questions' or 'sections'")

        if questions is not None:
            question_set = FlatQuestionSet(questions=questions)
        else:
            if not sections:
                raise ValidationError("A sectioned quiz needs at least one section")
            question_set = SectionedQuestionSet(sections=sections)

        all_questions = list(question_set.iter_questions())
        if not all_questions:
            raise ValidationError("A quiz needs at least one question")

        seen_ids = set()
        for question in all_questions:
            if question.id in seen_ids:
                raise ValidationError(
                    "Question ids must be unique within a quiz",
                    detail={"question_id": question.id}
                )
            seen_ids.add(question.id)
            self._validate_question(question)

        return question_set

    def _validate_question(self, question) -> None:
        detail = {"question_id": question.id, "question_type": question.type}

        if question.points is not None and question.points < 0:
            raise ValidationError("Question points cannot be negative", detail=detail)

        if isinstance(question, MultipleChoiceQuestion):
            if question.correct_answer not in question.options:
                raise ValidationError("Correct answer must be one of the options", detail=detail)
            if question.points is None:
                question.points = 1.0

        elif isinstance(question, TrueFalseQuestion):
            if not isinstance(question.correct_answer, bool):
                raise ValidationError("True/false correct answer must be a boolean", detail=detail)
            if question.points is None:
                question.points = 1.0

        elif isinstance(question, ClozeQuestion):
            if not question.blanks:
                raise ValidationError("Cloze question needs at least one blank", detail=detail)
            numbers = [blank.blank_number for blank in question.blanks]
            if len(set(numbers)) != len(numbers):
                raise ValidationError("Cloze blank numbers must be unique", detail=detail)
            for blank in question.blanks:
                blank_detail = {**detail, "blank_number": blank.blank_number}
                if len(blank.options) < 2:
                    raise ValidationError("Each cloze blank needs at least two options", detail=blank_detail)
                if blank.correct_answer not in blank.options:
                    raise ValidationError("Blank answer must be one of its options", detail=blank_detail)
                if blank.points is not None and blank.points < 0:
                    raise ValidationError("Blank points cannot be negative", detail=blank_detail)
                if blank.points is None:
                    blank.points = 1.0

        elif isinstance(question, ManualQuestionBase):
            if question.points is not None and question.points > settings.MANUAL_QUESTION_MAX_POINTS:
                raise ValidationError(
                    f"{question.type} questions are worth at most "
                    f"{settings.MANUAL_QUESTION_MAX_POINTS} points",
                    detail=detail
                )

    def _validate_schedule(self, quiz: Quiz) -> None:
        if quiz.time_limit is not None and quiz.time_limit <= 0:
            raise ValidationError("Time limit must be a positive number of minutes")
        if quiz.max_attempts is None or quiz.max_attempts < 1:
            raise ValidationError("max_attempts must be at least 1")
        if quiz.start_time and quiz.due_date and quiz.start_time >= quiz.due_date:
            raise ValidationError("start_time must be before due_date")

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    @store_operation
    def create_quiz(self, db: Session, caller: Caller, payload: QuizCreate) -> QuizResponse:
        """
        Create an unpublished quiz owned by the calling teacher

        Args:
            db: Database session
            caller: Authenticated caller (teacher or admin)
            payload: Quiz definition

        Returns:
            QuizResponse including the computed total points
        """
        if not caller.is_privileged:
            raise PermissionDeniedError("Only teachers can create quizzes")

        question_set = self.build_question_set(payload.questions, payload.sections)

        quiz = Quiz(
            school_id=caller.school_id,
            class_id=payload.class_id,
            teacher_id=caller.user_id,
            question_set=dump_question_set(question_set),
            is_published=False,
        )
        for field in _SCALAR_FIELDS:
            setattr(quiz, field, getattr(payload, field))
        for field in _DATETIME_FIELDS:
            setattr(quiz, field, as_naive_utc(getattr(payload, field)))
        self._validate_schedule(quiz)

        try:
            db.add(quiz)
            db.commit()
            db.refresh(quiz)
        except Exception:
            db.rollback()
            raise

        logger.info(f"Quiz created: {quiz.id} by teacher {caller.user_id}")
        self._invalidate_quiz(quiz)
        return self._to_response(quiz)

    @store_operation
    def update_quiz(
        self,
        db: Session,
        caller: Caller,
        quiz_id: UUID,
        payload: QuizUpdate
    ) -> QuizResponse:
        """Partial update; archived quizzes are read-only"""
        try:
            quiz = self._get_owned_quiz(db, caller, quiz_id)
            if quiz.is_archived:
                raise ConflictError("Archived quizzes cannot be edited")

            changes = payload.model_dump(exclude_unset=True)
            if "questions" in changes or "sections" in changes:
                question_set = self.build_question_set(payload.questions, payload.sections)
                quiz.question_set = dump_question_set(question_set)
                if quiz.is_published and self.grading.count_auto_gradable(question_set) == 0:
                    raise ConflictError("A published quiz needs at least one auto-gradable question")

            for field in _SCALAR_FIELDS:
                if field in changes:
                    setattr(quiz, field, changes[field])
            for field in _DATETIME_FIELDS:
                if field in changes:
                    setattr(quiz, field, as_naive_utc(changes[field]))
            self._validate_schedule(quiz)

            db.commit()
            db.refresh(quiz)
        except Exception:
            db.rollback()
            raise

        logger.info(f"Quiz updated: {quiz_id} ({', '.join(sorted(changes)) or 'no changes'})")
        self._invalidate_quiz(quiz)
        # cached result views carry the answer policy, due date and title
        self.grading.invalidate_result_views(
            quiz.school_id, self.grading.result_refs(db, quiz_id), quiz_id=quiz_id
        )
        return self._to_response(quiz)

    @store_operation
    def publish_quiz(
        self,
        db: Session,
        caller: Caller,
        quiz_id: UUID,
        publish: bool,
        background_tasks: Optional[BackgroundTasks] = None
    ) -> QuizResponse:
        """
        Publish or unpublish a quiz

        Publishing requires at least one auto-gradable unit across the
        flattened question set and notifies the class.
        """
        try:
            quiz = self._get_owned_quiz(db, caller, quiz_id)
            if quiz.is_archived:
                raise ConflictError("Archived quizzes cannot be published")

            newly_published = publish and not quiz.is_published
            if publish:
                question_set = load_question_set(quiz.question_set)
                if self.grading.count_auto_gradable(question_set) == 0:
                    raise ConflictError(
                        "A quiz needs at least one auto-gradable question before publishing"
                    )
                quiz.is_published = True
                if newly_published:
                    quiz.published_at = utcnow()
            else:
                quiz.is_published = False
                quiz.published_at = None

            db.commit()
            db.refresh(quiz)
        except Exception:
            db.rollback()
            raise

        logger.info(f"Quiz {quiz_id} {'published' if publish else 'unpublished'}")
        self._invalidate_quiz(quiz)

        if newly_published:
            self.notifications.dispatch(
                background_tasks,
                [str(quiz.class_id)],
                "New Quiz Published",
                f"{quiz.subject_name or 'Quiz'}: {quiz.title}",
                {"quiz_id": str(quiz.id), "class_id": str(quiz.class_id), "type": "quiz-published"},
            )

        return self._to_response(quiz)

    @store_operation
    def archive_quiz(self, db: Session, caller: Caller, quiz_id: UUID) -> QuizResponse:
        """Unpublish and archive; results stay readable"""
        try:
            quiz = self._get_owned_quiz(db, caller, quiz_id)
            if not quiz.is_archived:
                quiz.archived_at = utcnow()
            quiz.is_published = False
            db.commit()
            db.refresh(quiz)
        except Exception:
            db.rollback()
            raise

        logger.info(f"Quiz archived: {quiz_id}")
        self._invalidate_quiz(quiz)
        self.grading.invalidate_result_views(
            quiz.school_id, self.grading.result_refs(db, quiz_id), quiz_id=quiz_id
        )
        return self._to_response(quiz)

    @store_operation
    def delete_quiz(self, db: Session, caller: Caller, quiz_id: UUID) -> None:
        """Delete a quiz together with its attempts and results"""
        try:
            quiz = self._get_owned_quiz(db, caller, quiz_id)
            result_refs = self.grading.result_refs(db, quiz_id)
            student_ids = {student_id for _, student_id in result_refs}
            student_ids.update(
                row.student_id
                for row in db.query(QuizAttempt.student_id).filter(QuizAttempt.quiz_id == quiz_id)
            )

            db.query(QuizResult).filter(QuizResult.quiz_id == quiz_id).delete(synchronize_session=False)
            db.query(QuizAttempt).filter(QuizAttempt.quiz_id == quiz_id).delete(synchronize_session=False)
            school_id, class_id = quiz.school_id, quiz.class_id
            db.delete(quiz)
            db.commit()
        except Exception:
            db.rollback()
            raise

        logger.info(f"Quiz deleted: {quiz_id} ({len(student_ids)} student(s) affected)")
        keys = []
        for student_id in student_ids:
            keys.extend(CacheKeys.attempt_scope(quiz_id, student_id))
        self.cache.invalidate(keys=keys)
        self.grading.invalidate_result_views(school_id, result_refs, quiz_id=quiz_id)
        self._invalidate_scope(quiz_id, school_id, class_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @store_operation
    def get_quiz_definition(
        self,
        db: Session,
        caller: Caller,
        quiz_id: UUID
    ) -> Union[QuizResponse, StudentQuizView]:
        """
        Role-dependent quiz read

        Teachers and admins get the full definition (cached per role);
        students get their randomized view, which is never cached.
        """
        if caller.is_privileged:
            cache_key = CacheKeys.quiz(quiz_id, caller.role)
            cached = self.cache.get(cache_key)
            if cached is None:
                quiz = db.get(Quiz, quiz_id)
                if not quiz:
                    raise NotFoundError("Quiz not found")
                cached = self._to_response(quiz).model_dump(mode="json")
                self.cache.set(cache_key, cached, settings.CACHE_TTL_QUIZ)

            if cached["school_id"] != str(caller.school_id):
                raise NotFoundError("Quiz not found")
            return QuizResponse(**cached)

        if not caller.is_student:
            raise PermissionDeniedError("Only teachers and students can open quizzes")

        quiz = self.get_open_quiz(db, caller, quiz_id)
        return self.student_view(quiz, caller.user_id)

    def get_open_quiz(self, db: Session, caller: Caller, quiz_id: UUID) -> Quiz:
        """Quiz a student may currently see: published, not archived, already opened"""
        quiz = db.get(Quiz, quiz_id)
        if not quiz or quiz.school_id != caller.school_id:
            raise NotFoundError("Quiz not found")
        if not quiz.is_published or quiz.is_archived:
            raise ConflictError("Quiz is not available")
        if quiz.start_time and utcnow() < quiz.start_time:
            raise ConflictError(
                "Quiz has not started yet",
                detail={"start_time": quiz.start_time.isoformat()}
            )
        return quiz

    def student_view(self, quiz: Quiz, student_id: UUID) -> StudentQuizView:
        total = self.grading.total_points(load_question_set(quiz.question_set))
        return self.randomization.build_student_view(quiz, student_id, total)

    @store_operation
    def list_quizzes_for_class(
        self,
        db: Session,
        caller: Caller,
        class_id: UUID
    ) -> List[Union[StudentQuizListItem, TeacherQuizListItem]]:
        """
        Quizzes of one class

        Students see published, non-archived quizzes with their own
        completion state; teachers see every quiz with submission stats.
        """
        if not (caller.is_privileged or caller.is_student):
            raise PermissionDeniedError("Not allowed to list class quizzes")

        cache_key = CacheKeys.class_quizzes(class_id, caller.role, caller.user_id)
        cached = self.cache.get(cache_key)
        item_type = TeacherQuizListItem if caller.is_privileged else StudentQuizListItem
        if cached is not None:
            return [item_type(**item) for item in cached]

        query = db.query(Quiz).filter(
            Quiz.class_id == class_id,
            Quiz.school_id == caller.school_id
        )
        if caller.is_student:
            query = query.filter(Quiz.is_published.is_(True), Quiz.archived_at.is_(None))
        quizzes = query.order_by(Quiz.created_at.desc()).all()

        if caller.is_privileged:
            items = self._teacher_rows(db, quizzes)
        else:
            items = self._student_rows(db, quizzes, caller.user_id)

        self.cache.set(
            cache_key,
            [item.model_dump(mode="json") for item in items],
            settings.CACHE_TTL_CLASS_LIST
        )
        return items

    @store_operation
    def list_quizzes_for_school(
        self,
        db: Session,
        caller: Caller,
        school_id: UUID
    ) -> List[SchoolQuizListItem]:
        if not caller.is_privileged:
            raise PermissionDeniedError("Only teachers can list school quizzes")
        if school_id != caller.school_id:
            raise PermissionDeniedError("You can only list quizzes of your own school")

        cache_key = CacheKeys.school_quizzes(school_id)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return [SchoolQuizListItem(**item) for item in cached]

        quizzes = db.query(Quiz).filter(
            Quiz.school_id == school_id
        ).order_by(Quiz.created_at.desc()).all()

        items = [
            SchoolQuizListItem(
                id=quiz.id,
                title=quiz.title,
                class_id=quiz.class_id,
                teacher_id=quiz.teacher_id,
                subject_name=quiz.subject_name,
                total_points=self._total_points(quiz),
                created_at=quiz.created_at,
                due_date=quiz.due_date,
                is_published=quiz.is_published,
            )
            for quiz in quizzes
        ]
        self.cache.set(
            cache_key,
            [item.model_dump(mode="json") for item in items],
            settings.CACHE_TTL_SCHOOL_LIST
        )
        return items

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _student_rows(self, db: Session, quizzes: List[Quiz], student_id: UUID) -> List[StudentQuizListItem]:
        quiz_ids = [quiz.id for quiz in quizzes]
        if not quiz_ids:
            return []

        completed = {
            row.quiz_id
            for row in db.query(QuizResult.quiz_id).filter(
                QuizResult.student_id == student_id,
                QuizResult.quiz_id.in_(quiz_ids)
            )
        }
        in_progress = {
            row.quiz_id
            for row in db.query(QuizAttempt.quiz_id).filter(
                QuizAttempt.student_id == student_id,
                QuizAttempt.quiz_id.in_(quiz_ids),
                QuizAttempt.status == ATTEMPT_IN_PROGRESS,
                QuizAttempt.expires_at > utcnow()
            )
        }

        items = []
        for quiz in quizzes:
            is_completed = quiz.id in completed
            is_in_progress = not is_completed and quiz.id in in_progress
            if is_completed:
                status = "Completed"
            elif is_in_progress:
                status = "In Progress"
            else:
                status = "Available"

            items.append(StudentQuizListItem(
                id=quiz.id,
                title=quiz.title,
                subject_name=quiz.subject_name,
                start_time=quiz.start_time,
                due_date=quiz.due_date,
                time_limit=quiz.time_limit or settings.DEFAULT_TIME_LIMIT_MINUTES,
                total_points=self._total_points(quiz),
                completed=is_completed,
                in_progress=is_in_progress,
                status=status,
            ))
        return items

    def _teacher_rows(self, db: Session, quizzes: List[Quiz]) -> List[TeacherQuizListItem]:
        quiz_ids = [quiz.id for quiz in quizzes]
        if not quiz_ids:
            return []

        result_stats = {
            row.quiz_id: (row.submissions, row.average)
            for row in db.query(
                QuizResult.quiz_id,
                func.count(QuizResult.id).label("submissions"),
                func.avg(QuizResult.score).label("average"),
            ).filter(QuizResult.quiz_id.in_(quiz_ids)).group_by(QuizResult.quiz_id)
        }
        active_counts = {
            row.quiz_id: row.active
            for row in db.query(
                QuizAttempt.quiz_id,
                func.count(QuizAttempt.id).label("active"),
            ).filter(
                QuizAttempt.quiz_id.in_(quiz_ids),
                QuizAttempt.status == ATTEMPT_IN_PROGRESS,
                QuizAttempt.expires_at > utcnow()
            ).group_by(QuizAttempt.quiz_id)
        }

        items = []
        for quiz in quizzes:
            submissions, average = result_stats.get(quiz.id, (0, None))
            items.append(TeacherQuizListItem(
                id=quiz.id,
                title=quiz.title,
                subject_name=quiz.subject_name,
                start_time=quiz.start_time,
                due_date=quiz.due_date,
                is_published=quiz.is_published,
                archived=quiz.is_archived,
                total_points=self._total_points(quiz),
                submission_count=submissions,
                average_score=round(float(average), 2) if average is not None else None,
                in_progress_count=active_counts.get(quiz.id, 0),
            ))
        return items

    def _get_owned_quiz(self, db: Session, caller: Caller, quiz_id: UUID) -> Quiz:
        """Quiz the caller may modify: its teacher, or an admin of the same school"""
        if not caller.is_privileged:
            raise PermissionDeniedError("Only teachers can modify quizzes")

        quiz = db.get(Quiz, quiz_id)
        if not quiz or quiz.school_id != caller.school_id:
            raise NotFoundError("Quiz not found")
        if caller.role != "admin" and quiz.teacher_id != caller.user_id:
            raise PermissionDeniedError("Only the quiz owner can modify this quiz")
        return quiz

    def _total_points(self, quiz: Quiz) -> float:
        return self.grading.total_points(load_question_set(quiz.question_set))

    def _to_response(self, quiz: Quiz) -> QuizResponse:
        data: Dict[str, Any] = {column.name: getattr(quiz, column.name) for column in Quiz.__table__.columns}
        data["total_points"] = self._total_points(quiz)
        return QuizResponse(**data)

    def _invalidate_quiz(self, quiz: Quiz) -> None:
        self._invalidate_scope(quiz.id, quiz.school_id, quiz.class_id)

    def _invalidate_scope(self, quiz_id: UUID, school_id: UUID, class_id: UUID) -> None:
        self.cache.invalidate(
            keys=[CacheKeys.school_quizzes(school_id)],
            prefixes=[CacheKeys.quiz_prefix(quiz_id), CacheKeys.class_quizzes_prefix(class_id)],
        )
