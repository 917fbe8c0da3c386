"""SQLAlchemy database models for the curriculum, question bank and answer history."""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.db.database import Base


class GradeSubject(Base):
    """A (grade, subject) pairing with optional curriculum notes."""

    __tablename__ = "grade_subjects"
    __table_args__ = (UniqueConstraint("grade_id", "subject_id", name="uq_grade_subject"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    grade_id = Column(Integer, nullable=False, index=True)
    subject_id = Column(Integer, nullable=False, index=True)
    description = Column(Text, nullable=True)  # Curriculum scope notes injected into prompts

    knowledge_points = relationship(
        "KnowledgePoint", back_populates="grade_subject", cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<GradeSubject(id={self.id}, grade_id={self.grade_id}, subject_id={self.subject_id})>"


class KnowledgePoint(Base):
    """Pre-seeded curriculum topic unit scoped to one grade+subject pairing."""

    __tablename__ = "knowledge_points"

    id = Column(Integer, primary_key=True, autoincrement=True)
    grade_subject_id = Column(
        Integer, ForeignKey("grade_subjects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name_cn = Column(String, nullable=True)
    name_en = Column(String, nullable=True)
    unit_name_cn = Column(String, nullable=True)
    unit_name_en = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    difficulty_avg = Column(Float, nullable=True)
    is_active = Column(Boolean, nullable=True, default=True)
    sort_order = Column(Integer, nullable=True)

    grade_subject = relationship("GradeSubject", back_populates="knowledge_points")

    def __repr__(self):
        return f"<KnowledgePoint(id={self.id}, name_en={self.name_en})>"


class Question(Base):
    """Bilingual multiple-choice question, unique by content/options hash."""

    __tablename__ = "questions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    content_cn = Column(Text, nullable=True)
    content_en = Column(Text, nullable=True)
    options = Column(JSON, nullable=True)  # {"zh": [4], "en": [4]}
    content_options_hash = Column(String(64), nullable=True, unique=True, index=True)
    question_metadata = Column(
        "metadata", JSON(none_as_null=True), nullable=True
    )  # Using "metadata" as column name but question_metadata as attribute
    embedding = Column(JSON(none_as_null=True), nullable=True)
    answer_cn = Column(Text, nullable=True)
    answer_en = Column(Text, nullable=True)
    explanation_cn = Column(Text, nullable=True)
    explanation_en = Column(Text, nullable=True)
    knowledge_point_id = Column(
        Integer, ForeignKey("knowledge_points.id", ondelete="SET NULL"), nullable=True, index=True
    )
    grade_id = Column(Integer, nullable=True, index=True)
    subject_id = Column(Integer, nullable=True, index=True)
    created_at = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self):
        return f"<Question(id={self.id}, hash={self.content_options_hash})>"


class History(Base):
    """Append-only record of a student's answer to a question."""

    __tablename__ = "history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    question_id = Column(
        Integer, ForeignKey("questions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    given_answer = Column(Text, nullable=True)
    correct = Column(Boolean, nullable=False, default=False)
    created_at = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self):
        return f"<History(id={self.id}, user_id={self.user_id}, question_id={self.question_id})>"
