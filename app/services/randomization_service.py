"""
Deterministic per-student randomization of question and option order

Same student + same quiz always yields the same order, so reloading the page
or resuming an attempt never reshuffles what the student sees.
"""
import math
import logging
from typing import Callable, List, Optional, Sequence, TypeVar

from app.config import settings
from app.models import Quiz
from app.schemas.quiz import (
    ClozeQuestion,
    FlatQuestionSet,
    MultipleChoiceQuestion,
    QuestionBase,
    StudentBlank,
    StudentQuestion,
    StudentQuizView,
    StudentSection,
    load_question_set,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RandomizationService:
    """
    Seeded shuffling for student quiz views

    Key layout (base = "<studentId>-<quizId>"):
    - base + "-questions": question order of a flat quiz
    - base + "-section-<n>": question order inside section n (1-based)
    - base + "-options-<questionId>": option order of a multiple-choice question
    - base + "-cloze-<questionId>-<blankNumber>": option order of one cloze blank

    Every collection gets its own key so that one ordering never correlates
    with another.
    """

    def seed_from_key(self, key: str) -> int:
        """Rolling 32-bit fold of the key's character codes (signed result)"""
        seed = 0
        for char in key:
            seed = ((seed << 5) - seed + ord(char)) & 0xFFFFFFFF
        if seed >= 0x80000000:
            seed -= 0x100000000
        return seed

    def seeded_random(self, seed: int) -> Callable[[], float]:
        """Deterministic generator of floats in [0, 1) for a numeric seed"""
        state = math.sin(seed) * 10000

        def draw() -> float:
            nonlocal state
            state = math.sin(state) * 10000
            return state - math.floor(state)

        return draw

    def seeded_shuffle(self, items: Sequence[T], key: str) -> List[T]:
        """Fisher-Yates shuffle driven by the key's generator; input is left untouched"""
        shuffled = list(items)
        draw = self.seeded_random(self.seed_from_key(key))

        for i in range(len(shuffled) - 1, 0, -1):
            j = math.floor(draw() * (i + 1))
            shuffled[i], shuffled[j] = shuffled[j], shuffled[i]

        return shuffled

    def build_student_view(
        self,
        quiz: Quiz,
        student_id,
        total_points: float,
        manual_max: Optional[float] = None
    ) -> StudentQuizView:
        """
        Randomized, answer-free view of a quiz for one student

        Args:
            quiz: Quiz row
            student_id: Student UUID (part of every seed)
            total_points: Quiz total as computed by the grading service
            manual_max: Points ceiling for essay-style questions

        Returns:
            StudentQuizView with either questions or sections populated
        """
        manual_max = manual_max if manual_max is not None else settings.MANUAL_QUESTION_MAX_POINTS
        base = f"{student_id}-{quiz.id}"
        question_set = load_question_set(quiz.question_set)

        view = StudentQuizView(
            id=quiz.id,
            title=quiz.title,
            subject_name=quiz.subject_name,
            description=quiz.description,
            time_limit=quiz.time_limit,
            start_time=quiz.start_time,
            due_date=quiz.due_date,
            shuffle_questions=quiz.shuffle_questions,
            shuffle_options=quiz.shuffle_options,
            total_points=total_points,
        )

        if isinstance(question_set, FlatQuestionSet):
            questions = list(question_set.questions)
            if quiz.shuffle_questions:
                questions = self.seeded_shuffle(questions, f"{base}-questions")
            view.questions = [
                self._student_question(q, quiz.shuffle_options, base, manual_max)
                for q in questions
            ]
            return view

        sections = []
        for number, section in enumerate(question_set.sections, start=1):
            questions = list(section.questions)
            if quiz.shuffle_questions:
                questions = self.seeded_shuffle(questions, f"{base}-section-{number}")
            sections.append(StudentSection(
                name=section.name,
                instruction=section.instruction,
                questions=[
                    self._student_question(q, quiz.shuffle_options, base, manual_max)
                    for q in questions
                ],
            ))
        view.sections = sections
        return view

    def _student_question(
        self,
        question: QuestionBase,
        shuffle_options: bool,
        base: str,
        manual_max: float
    ) -> StudentQuestion:
        """Strip answers from one question and shuffle its options if enabled"""
        item = StudentQuestion(
            id=question.id,
            type=question.type,
            question_text=question.question_text,
            points=question.effective_points(manual_max),
        )

        if isinstance(question, MultipleChoiceQuestion):
            options = list(question.options)
            if shuffle_options:
                options = self.seeded_shuffle(options, f"{base}-options-{question.id}")
            item.options = options

        elif isinstance(question, ClozeQuestion):
            blanks = []
            for blank in question.blanks:
                options = list(blank.options)
                if shuffle_options:
                    options = self.seeded_shuffle(
                        options, f"{base}-cloze-{question.id}-{blank.blank_number}"
                    )
                blanks.append(StudentBlank(
                    blank_number=blank.blank_number,
                    options=options,
                    points=blank.effective_points(),
                ))
            item.blanks = blanks

        return item
