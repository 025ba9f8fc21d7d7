"""
QuizAttempt model - one timed attempt of a student at a quiz
"""
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Index, JSON, Uuid, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.mutable import MutableDict
from app.database import Base
from app.utils.timeutils import utcnow
import uuid


ATTEMPT_IN_PROGRESS = "in-progress"
ATTEMPT_SUBMITTED = "submitted"
ATTEMPT_EXPIRED = "expired"


class QuizAttempt(Base):
    """
    Quiz attempts table - answers accumulate here until submission

    The partial unique index is the only guard against two live attempts for
    the same (quiz, student): attempt creation relies on it, not on locks.
    """
    __tablename__ = "quiz_attempts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    quiz_id = Column(Uuid(as_uuid=True), ForeignKey("quizzes.id", ondelete="CASCADE"), nullable=False)
    student_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    school_id = Column(Uuid(as_uuid=True), nullable=False)
    session_id = Column(String(64), unique=True, nullable=False, index=True)
    attempt_number = Column(Integer, default=1, nullable=False)
    start_time = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    last_activity = Column(DateTime, default=utcnow, nullable=False)
    completed_at = Column(DateTime)
    status = Column(String(20), default=ATTEMPT_IN_PROGRESS, nullable=False)
    # own type instance: as_mutable() tracks every column sharing it
    answers = Column(
        MutableDict.as_mutable(JSON().with_variant(JSONB(), "postgresql")),
        default=dict,
        nullable=False
    )

    __table_args__ = (
        Index(
            "uq_quiz_attempts_active",
            "quiz_id",
            "student_id",
            unique=True,
            postgresql_where=text("status = 'in-progress'"),
            sqlite_where=text("status = 'in-progress'"),
        ),
        Index("ix_quiz_attempts_history", "quiz_id", "student_id", "attempt_number"),
        Index("ix_quiz_attempts_status_expiry", "status", "expires_at"),
    )

    def is_expired(self, now=None) -> bool:
        return self.expires_at <= (now or utcnow())

    def __repr__(self):
        return f"<QuizAttempt(quiz_id={self.quiz_id}, student_id={self.student_id}, status={self.status})>"
