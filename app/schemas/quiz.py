"""
Pydantic schemas for quiz definitions, question variants and student views
"""
from pydantic import BaseModel, Field, TypeAdapter
from typing import Annotated, Any, ClassVar, Iterator, List, Literal, Optional, Union
from datetime import datetime
from uuid import UUID
import uuid


QUESTION_MULTIPLE_CHOICE = "multiple-choice"
QUESTION_TRUE_FALSE = "true-false"
QUESTION_CLOZE = "cloze"
QUESTION_ESSAY = "essay"
QUESTION_SHORT_ANSWER = "short-answer"

MANUAL_QUESTION_TYPES = (QUESTION_ESSAY, QUESTION_SHORT_ANSWER)

ShowAnswersPolicy = Literal["after-submission", "after-deadline", "never"]


def _new_question_id() -> str:
    return uuid.uuid4().hex


class QuestionBase(BaseModel):
    """Fields shared by every question variant"""
    id: str = Field(default_factory=_new_question_id)
    question_text: str = Field(..., min_length=1)
    explanation: Optional[str] = None
    points: Optional[float] = None

    auto_gradable: ClassVar[bool] = True

    def effective_points(self, manual_max: float) -> float:
        """Points this question is worth once defaults are applied"""
        return float(self.points) if self.points is not None else 1.0


class MultipleChoiceQuestion(QuestionBase):
    type: Literal["multiple-choice"] = QUESTION_MULTIPLE_CHOICE
    options: List[str] = Field(default_factory=list)
    correct_answer: Optional[str] = None

    def is_correct(self, selected: Any) -> bool:
        return selected is not None and str(selected) == self.correct_answer


class TrueFalseQuestion(QuestionBase):
    type: Literal["true-false"] = QUESTION_TRUE_FALSE
    # Kept loose so the catalog can report a non-boolean as a validation error
    correct_answer: Any = None

    def is_correct(self, selected: Any) -> bool:
        if selected is None:
            return False
        return str(self.correct_answer).lower() == str(selected).lower()


class ClozeBlank(BaseModel):
    """One blank of a cloze passage, graded like a multiple-choice question"""
    blank_number: int
    options: List[str] = Field(default_factory=list)
    correct_answer: Optional[str] = None
    points: Optional[float] = None

    def is_correct(self, selected: Any) -> bool:
        return selected is not None and str(selected) == self.correct_answer

    def effective_points(self) -> float:
        return float(self.points) if self.points is not None else 1.0


class ClozeQuestion(QuestionBase):
    type: Literal["cloze"] = QUESTION_CLOZE
    blanks: List[ClozeBlank] = Field(default_factory=list)

    def effective_points(self, manual_max: float) -> float:
        # A cloze question is worth the sum of its blanks, never points of its own
        return sum(blank.effective_points() for blank in self.blanks)


class ManualQuestionBase(QuestionBase):
    """Essay-style questions; a grader assigns points up to manual_max"""

    auto_gradable: ClassVar[bool] = False

    def effective_points(self, manual_max: float) -> float:
        if self.points is None:
            return float(manual_max)
        return float(min(self.points, manual_max))


class EssayQuestion(ManualQuestionBase):
    type: Literal["essay"] = QUESTION_ESSAY


class ShortAnswerQuestion(ManualQuestionBase):
    type: Literal["short-answer"] = QUESTION_SHORT_ANSWER


Question = Annotated[
    Union[
        MultipleChoiceQuestion,
        TrueFalseQuestion,
        ClozeQuestion,
        EssayQuestion,
        ShortAnswerQuestion,
    ],
    Field(discriminator="type"),
]


class QuizSection(BaseModel):
    name: Optional[str] = None
    instruction: str = Field(..., min_length=1)
    questions: List[Question] = Field(default_factory=list)


class FlatQuestionSet(BaseModel):
    kind: Literal["flat"] = "flat"
    questions: List[Question]

    def iter_questions(self) -> Iterator[QuestionBase]:
        yield from self.questions


class SectionedQuestionSet(BaseModel):
    kind: Literal["sectioned"] = "sectioned"
    sections: List[QuizSection]

    def iter_questions(self) -> Iterator[QuestionBase]:
        for section in self.sections:
            yield from section.questions


QuestionSet = Annotated[
    Union[FlatQuestionSet, SectionedQuestionSet],
    Field(discriminator="kind"),
]

question_set_adapter = TypeAdapter(QuestionSet)


def load_question_set(document: Any) -> Union[FlatQuestionSet, SectionedQuestionSet]:
    """Parse a stored question_set document"""
    return question_set_adapter.validate_python(document)


def dump_question_set(question_set: Union[FlatQuestionSet, SectionedQuestionSet]) -> dict:
    return question_set.model_dump(mode="json")


class QuizCreate(BaseModel):
    """Request schema for quiz creation; exactly one of questions/sections"""
    title: str = Field(..., min_length=1, max_length=255)
    class_id: UUID
    subject_name: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = None
    questions: Optional[List[Question]] = None
    sections: Optional[List[QuizSection]] = None
    shuffle_questions: bool = False
    shuffle_options: bool = False
    time_limit: Optional[int] = Field(None, description="Time limit in minutes")
    start_time: Optional[datetime] = None
    due_date: Optional[datetime] = None
    max_attempts: int = 1
    show_answers: ShowAnswersPolicy = "after-deadline"


class QuizUpdate(BaseModel):
    """Partial update; supplying questions or sections replaces the question set"""
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    subject_name: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = None
    questions: Optional[List[Question]] = None
    sections: Optional[List[QuizSection]] = None
    shuffle_questions: Optional[bool] = None
    shuffle_options: Optional[bool] = None
    time_limit: Optional[int] = None
    start_time: Optional[datetime] = None
    due_date: Optional[datetime] = None
    max_attempts: Optional[int] = None
    show_answers: Optional[ShowAnswersPolicy] = None


class QuizPublishRequest(BaseModel):
    publish: bool


class QuizResponse(BaseModel):
    """Full quiz definition, correct answers included (privileged view)"""
    id: UUID
    school_id: UUID
    class_id: UUID
    teacher_id: UUID
    title: str
    subject_name: Optional[str] = None
    description: Optional[str] = None
    question_set: QuestionSet
    shuffle_questions: bool
    shuffle_options: bool
    time_limit: Optional[int] = None
    start_time: Optional[datetime] = None
    due_date: Optional[datetime] = None
    max_attempts: int
    show_answers: str
    is_published: bool
    published_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    total_points: float
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class StudentBlank(BaseModel):
    blank_number: int
    options: List[str]
    points: float


class StudentQuestion(BaseModel):
    """A question as shown to a student - no correct answer, no explanation"""
    id: str
    type: str
    question_text: str
    points: float
    options: Optional[List[str]] = None
    blanks: Optional[List[StudentBlank]] = None


class StudentSection(BaseModel):
    name: Optional[str] = None
    instruction: str
    questions: List[StudentQuestion]


class StudentQuizView(BaseModel):
    """Randomized, answer-free view of a quiz for one student"""
    id: UUID
    title: str
    subject_name: Optional[str] = None
    description: Optional[str] = None
    time_limit: Optional[int] = None
    start_time: Optional[datetime] = None
    due_date: Optional[datetime] = None
    shuffle_questions: bool
    shuffle_options: bool
    questions: Optional[List[StudentQuestion]] = None
    sections: Optional[List[StudentSection]] = None
    total_points: float


class StudentQuizListItem(BaseModel):
    id: UUID
    title: str
    subject_name: Optional[str] = None
    start_time: Optional[datetime] = None
    due_date: Optional[datetime] = None
    time_limit: Optional[int] = None
    total_points: float
    completed: bool
    in_progress: bool
    status: str  # Completed | In Progress | Available


class TeacherQuizListItem(BaseModel):
    id: UUID
    title: str
    subject_name: Optional[str] = None
    start_time: Optional[datetime] = None
    due_date: Optional[datetime] = None
    is_published: bool
    archived: bool
    total_points: float
    submission_count: int
    average_score: Optional[float] = None
    in_progress_count: int


class SchoolQuizListItem(BaseModel):
    id: UUID
    title: str
    class_id: UUID
    teacher_id: UUID
    subject_name: Optional[str] = None
    total_points: float
    created_at: datetime
    due_date: Optional[datetime] = None
    is_published: bool
