"""
QuizResult model - the graded outcome of a submitted attempt
"""
from sqlalchemy import Column, String, Integer, Boolean, DateTime, Float, ForeignKey, UniqueConstraint, Index, Uuid
from app.database import Base
from app.models.quiz import JSONDocument
from app.utils.timeutils import utcnow
import uuid


RESULT_SUBMITTED = "submitted"
RESULT_NEEDS_REVIEW = "needs-review"
RESULT_GRADED = "graded"


class QuizResult(Base):
    """
    Quiz results table - exactly one row per (quiz, student)

    question_results is a list of per-unit entries; cloze blanks are stored as
    their own entries with question_type "cloze" and a blank_number.
    """
    __tablename__ = "quiz_results"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    quiz_id = Column(Uuid(as_uuid=True), ForeignKey("quizzes.id", ondelete="CASCADE"), nullable=False)
    student_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    school_id = Column(Uuid(as_uuid=True), nullable=False)
    session_id = Column(String(64))
    question_results = Column(JSONDocument, nullable=False)
    score = Column(Float)  # null while manual review is pending
    total_points = Column(Float, nullable=False)
    percentage = Column(Float)
    status = Column(String(20), default=RESULT_SUBMITTED, nullable=False)
    auto_graded = Column(Boolean, default=True, nullable=False)
    auto_submitted = Column(Boolean, default=False, nullable=False)
    attempt_number = Column(Integer, default=1, nullable=False)
    start_time = Column(DateTime)
    submitted_at = Column(DateTime, default=utcnow, nullable=False)
    time_spent = Column(Integer, default=0)  # seconds

    __table_args__ = (
        UniqueConstraint("quiz_id", "student_id", name="uq_quiz_results_quiz_student"),
        Index("ix_quiz_results_submitted_at", "submitted_at"),
    )

    def __repr__(self):
        return f"<QuizResult(quiz_id={self.quiz_id}, student_id={self.student_id}, status={self.status})>"
