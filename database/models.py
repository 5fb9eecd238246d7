"""
SQLAlchemy models for the question bank
Exam → Course → Topic, with reference (previous-year) and generated questions per topic
"""

from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, DateTime, Text, Float, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from database.database import Base


# ==========================================
# STRUCTURE: EXAM, COURSE, TOPIC
# ==========================================

class Exam(Base):
    """An entrance exam (e.g. 'GATE', 'JEE')."""
    __tablename__ = "exams"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), unique=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    courses = relationship("Course", back_populates="exam", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Exam(id={self.id}, name='{self.name}')>"


class Course(Base):
    __tablename__ = "courses"

    id = Column(Integer, primary_key=True, index=True)
    exam_id = Column(Integer, ForeignKey("exams.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    exam = relationship("Exam", back_populates="courses")
    topics = relationship("Topic", back_populates="course", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Course(id={self.id}, name='{self.name}')>"


class Topic(Base):
    """
    A syllabus topic. weightage is the topic's share of the exam in [0, 1]
    and drives per-topic quotas; notes feed the solution prompts.
    """
    __tablename__ = "topics"

    id = Column(Integer, primary_key=True, index=True)
    course_id = Column(Integer, ForeignKey("courses.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    weightage = Column(Float, default=0.0, nullable=False)
    notes = Column(Text, nullable=True)

    course = relationship("Course", back_populates="topics")

    def __repr__(self):
        return f"<Topic(id={self.id}, name='{self.name}', weightage={self.weightage})>"


# ==========================================
# QUESTIONS
# ==========================================

class ReferenceQuestion(Base):
    """
    Previous-year question (PYQ). Used as style/difficulty reference for
    generation; answer and solution may be missing until backfilled.
    """
    __tablename__ = "questions_topic_wise"

    id = Column(Integer, primary_key=True, index=True)
    topic_id = Column(Integer, ForeignKey("topics.id", ondelete="CASCADE"), nullable=False, index=True)
    question_statement = Column(Text, nullable=False)
    question_type = Column(String(20), nullable=False, index=True)
    options = Column(JSON, nullable=True)
    answer = Column(Text, nullable=True)
    solution = Column(Text, nullable=True)
    year = Column(Integer, nullable=True)
    slot = Column(String(50), nullable=True)
    part = Column(String(50), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    topic = relationship("Topic")

    def __repr__(self):
        return f"<ReferenceQuestion(id={self.id}, topic_id={self.topic_id}, year={self.year})>"


class GeneratedQuestion(Base):
    """A model-generated question that passed structural validation."""
    __tablename__ = "new_questions"

    id = Column(Integer, primary_key=True, index=True)
    topic_id = Column(Integer, ForeignKey("topics.id", ondelete="CASCADE"), nullable=False, index=True)
    topic_name = Column(String(255), nullable=True)
    question_statement = Column(Text, nullable=False)
    question_type = Column(String(20), nullable=False, index=True)
    options = Column(JSON, nullable=True)           # 4 strings for MCQ/MSQ, null otherwise
    answer = Column(Text, nullable=True)
    solution = Column(Text, nullable=True)
    slot = Column(String(50), nullable=True)
    part = Column(String(50), nullable=True)

    # Scoring
    correct_marks = Column(Float, default=4, nullable=False)
    incorrect_marks = Column(Float, default=-1, nullable=False)
    skipped_marks = Column(Float, default=0, nullable=False)
    partial_marks = Column(Float, default=0, nullable=False)
    time_minutes = Column(Float, default=3, nullable=False)
    difficulty_level = Column(String(20), default="Medium", nullable=False)
    purpose = Column(String(50), default="practice", nullable=False)

    # Semantic validation verdict
    is_wrong = Column(Boolean, nullable=True)
    validation_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    topic = relationship("Topic")

    def __repr__(self):
        return f"<GeneratedQuestion(id={self.id}, topic_id={self.topic_id}, type='{self.question_type}')>"
