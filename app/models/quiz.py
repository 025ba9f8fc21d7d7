"""
Quiz model - stores quiz definitions
"""
from sqlalchemy import Column, String, Text, Integer, Boolean, DateTime, JSON, Index, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from app.database import Base
from app.utils.timeutils import utcnow
import uuid


JSONDocument = JSON().with_variant(JSONB(), "postgresql")


class Quiz(Base):
    """
    Quizzes table - one row per quiz definition

    question_set holds a tagged document:
    {"kind": "flat", "questions": [...]} or {"kind": "sectioned", "sections": [...]}
    """
    __tablename__ = "quizzes"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    school_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    class_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    teacher_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    subject_name = Column(String(100))
    description = Column(Text)
    question_set = Column(JSONDocument, nullable=False)

    shuffle_questions = Column(Boolean, default=False, nullable=False)
    shuffle_options = Column(Boolean, default=False, nullable=False)
    time_limit = Column(Integer)  # minutes
    start_time = Column(DateTime)
    due_date = Column(DateTime)
    max_attempts = Column(Integer, default=1, nullable=False)
    show_answers = Column(String(20), default="after-deadline", nullable=False)

    is_published = Column(Boolean, default=False, nullable=False)
    published_at = Column(DateTime)
    archived_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_quizzes_school_class", "school_id", "class_id"),
    )

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None

    def __repr__(self):
        return f"<Quiz(id={self.id}, title={self.title}, published={self.is_published})>"
