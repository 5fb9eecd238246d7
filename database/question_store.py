"""
Question store: every database operation the generation pipeline needs.

Read failures that only reduce prompt context (counts, reference lists) are
logged and degrade to empty results. Write failures roll back and re-raise so
the caller can skip that one question.
"""

import logging
from typing import Dict, List, Optional, Sequence

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import models
from generation.schemas import TopicInput

log = logging.getLogger("generation.pipeline")

# Reference question fields a solution backfill may write
SOLUTION_FIELDS = ("answer", "solution")


def _blank(column):
    return or_(column.is_(None), func.trim(column) == "")


class QuestionStore:
    def __init__(self, db: Session):
        self.db = db

    # ==========================================
    # STRUCTURE
    # ==========================================

    def get_course(self, course_id: int) -> Optional[models.Course]:
        return self.db.query(models.Course).filter(models.Course.id == course_id).first()

    def list_course_topics(self, course_id: int) -> List[TopicInput]:
        """Topics of a course, highest weightage first."""
        rows = (
            self.db.query(models.Topic)
            .filter(models.Topic.course_id == course_id)
            .order_by(models.Topic.weightage.desc(), models.Topic.id)
            .all()
        )
        return [
            TopicInput(id=t.id, name=t.name, weightage=t.weightage or 0.0, notes=t.notes)
            for t in rows
        ]

    # ==========================================
    # GENERATED QUESTIONS
    # ==========================================

    def count_items(self, topic_id: int, question_type: str) -> int:
        try:
            return (
                self.db.query(func.count(models.GeneratedQuestion.id))
                .filter(
                    models.GeneratedQuestion.topic_id == topic_id,
                    models.GeneratedQuestion.question_type == question_type,
                )
                .scalar()
                or 0
            )
        except SQLAlchemyError as e:
            log.error(f"[GEN] Failed to count questions for topic {topic_id}: {e}")
            self.db.rollback()
            return 0

    def list_generated_items(
        self,
        topic_id: int,
        question_type: str,
        slot: Optional[str] = None,
        part: Optional[str] = None,
    ) -> List[models.GeneratedQuestion]:
        """Generated questions for one configuration, newest first."""
        query = self.db.query(models.GeneratedQuestion).filter(
            models.GeneratedQuestion.topic_id == topic_id,
            models.GeneratedQuestion.question_type == question_type,
        )
        if slot:
            query = query.filter(models.GeneratedQuestion.slot == slot)
        if part:
            query = query.filter(models.GeneratedQuestion.part == part)
        try:
            return query.order_by(
                models.GeneratedQuestion.created_at.desc(), models.GeneratedQuestion.id.desc()
            ).all()
        except SQLAlchemyError as e:
            log.error(f"[GEN] Failed to load existing questions for topic {topic_id}: {e}")
            self.db.rollback()
            return []

    def insert_item(self, record: Dict) -> int:
        question = models.GeneratedQuestion(**record)
        try:
            self.db.add(question)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        self.db.refresh(question)
        return question.id

    def list_generated_for_topics(self, topic_ids: Sequence[int]) -> List[models.GeneratedQuestion]:
        if not topic_ids:
            return []
        return (
            self.db.query(models.GeneratedQuestion)
            .filter(models.GeneratedQuestion.topic_id.in_(list(topic_ids)))
            .order_by(models.GeneratedQuestion.id)
            .all()
        )

    def set_verdict(self, question_id: int, is_wrong: bool, reason: Optional[str] = None) -> None:
        question = self.db.get(models.GeneratedQuestion, question_id)
        if question is None:
            raise LookupError(f"Question {question_id} not found")
        question.is_wrong = is_wrong
        question.validation_reason = reason
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

    def delete_wrong_items(self, topic_ids: Sequence[int], ids: Optional[Sequence[int]] = None) -> int:
        if not topic_ids:
            return 0
        query = self.db.query(models.GeneratedQuestion).filter(
            models.GeneratedQuestion.topic_id.in_(list(topic_ids)),
            models.GeneratedQuestion.is_wrong.is_(True),
        )
        if ids is not None:
            query = query.filter(models.GeneratedQuestion.id.in_(list(ids)))
        try:
            deleted = query.delete(synchronize_session=False)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        return deleted

    # ==========================================
    # REFERENCE QUESTIONS
    # ==========================================

    def count_reference_items(self, topic_id: int) -> int:
        try:
            return (
                self.db.query(func.count(models.ReferenceQuestion.id))
                .filter(models.ReferenceQuestion.topic_id == topic_id)
                .scalar()
                or 0
            )
        except SQLAlchemyError as e:
            log.error(f"[GEN] Failed to count reference questions for topic {topic_id}: {e}")
            self.db.rollback()
            return 0

    def list_reference_items(
        self,
        topic_id: int,
        question_type: str,
        slot: Optional[str] = None,
        part: Optional[str] = None,
    ) -> List[models.ReferenceQuestion]:
        """Reference questions for one configuration, most recent year first."""
        query = self.db.query(models.ReferenceQuestion).filter(
            models.ReferenceQuestion.topic_id == topic_id,
            models.ReferenceQuestion.question_type == question_type,
        )
        if slot:
            query = query.filter(models.ReferenceQuestion.slot == slot)
        if part:
            query = query.filter(models.ReferenceQuestion.part == part)
        try:
            return query.order_by(
                models.ReferenceQuestion.year.desc(), models.ReferenceQuestion.id
            ).all()
        except SQLAlchemyError as e:
            log.error(f"[GEN] Failed to load reference questions for topic {topic_id}: {e}")
            self.db.rollback()
            return []

    def reference_solution_stats(self, topic_ids: Sequence[int]) -> Dict[str, int]:
        rows = (
            self.db.query(models.ReferenceQuestion.answer, models.ReferenceQuestion.solution)
            .filter(models.ReferenceQuestion.topic_id.in_(list(topic_ids)))
            .all()
            if topic_ids else []
        )
        has_answer = [bool(a and a.strip()) for a, _ in rows]
        has_solution = [bool(s and s.strip()) for _, s in rows]
        return {
            "total": len(rows),
            "with_answer": sum(has_answer),
            "with_solution": sum(has_solution),
            "with_both": sum(a and s for a, s in zip(has_answer, has_solution)),
        }

    def query_items_needing_solutions(self, topic_ids: Sequence[int]) -> List[models.ReferenceQuestion]:
        """Reference questions whose answer or solution is null or blank."""
        if not topic_ids:
            return []
        return (
            self.db.query(models.ReferenceQuestion)
            .filter(
                models.ReferenceQuestion.topic_id.in_(list(topic_ids)),
                or_(
                    _blank(models.ReferenceQuestion.answer),
                    _blank(models.ReferenceQuestion.solution),
                ),
            )
            .order_by(models.ReferenceQuestion.id)
            .all()
        )

    def update_item(self, question_id: int, fields: Dict) -> None:
        """Write answer/solution of a reference question; other fields are ignored."""
        question = self.db.get(models.ReferenceQuestion, question_id)
        if question is None:
            raise LookupError(f"Reference question {question_id} not found")
        for name in SOLUTION_FIELDS:
            if name in fields:
                setattr(question, name, fields[name])
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
