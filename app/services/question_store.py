"""Relational store access for questions, knowledge points and answer history."""
import json
import logging
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import case, distinct, exists, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import GradeSubject, History, KnowledgePoint, Question
from app.exceptions import TransientStoreException
from app.models.question_models import HistoryQuestion, KnowledgePointScore, QuestionCandidate
from app.services.metadata_canonicalizer import canonicalize
from app.services.similarity import coerce_embedding

logger = logging.getLogger(__name__)

# Rows scanned when ranking a student's most frequent metadata patterns
FREQUENT_METADATA_SCAN_LIMIT = 500


class QuestionStore:
    """Async data access for the question pool.

    Every failing query rolls the session back and is re-raised as
    TransientStoreException so callers can degrade to a safe default.
    """

    def __init__(self, db: AsyncSession):
        """
        Initialize question store.

        Args:
            db: Async database session
        """
        self.db = db

    async def _transient(self, operation: str, error: Exception) -> None:
        await self.db.rollback()
        logger.warning(f"Store operation '{operation}' failed: {str(error)}")
        raise TransientStoreException(
            f"Store operation '{operation}' failed",
            details={"operation": operation},
        ) from error

    async def query_unused_questions(
        self,
        user_ids: Sequence[int],
        grade_id: int,
        subject_id: int,
        knowledge_point_id: Optional[int] = None,
        limit: int = 10,
    ) -> List[Question]:
        """
        Fetch random questions none of the given accounts has answered.

        Args:
            user_ids: Student account ids (merged history)
            grade_id: Grade id
            subject_id: Subject id
            knowledge_point_id: Optional knowledge point filter
            limit: Maximum rows

        Returns:
            Question rows in random order
        """
        if limit <= 0:
            return []

        answered = exists().where(
            History.question_id == Question.id,
            History.user_id.in_(list(user_ids)),
        )
        stmt = select(Question).where(
            Question.grade_id == grade_id,
            Question.subject_id == subject_id,
            ~answered,
        )
        if knowledge_point_id is not None:
            stmt = stmt.where(Question.knowledge_point_id == knowledge_point_id)
        stmt = stmt.order_by(func.random()).limit(limit)

        try:
            result = await self.db.execute(stmt)
        except SQLAlchemyError as e:
            await self._transient("query_unused_questions", e)
        return list(result.scalars().all())

    def _upsert_values(
        self, question: QuestionCandidate, grade_id: int, subject_id: int
    ) -> Dict[str, Any]:
        return {
            "content_cn": question.content_cn,
            "content_en": question.content_en,
            "options": question.options.model_dump(),
            "content_options_hash": question.content_options_hash,
            "metadata": question.metadata,
            "embedding": question.embedding,
            "answer_cn": question.answer_cn,
            "answer_en": question.answer_en,
            "explanation_cn": question.explanation_cn,
            "explanation_en": question.explanation_en,
            "knowledge_point_id": question.knowledge_point_id,
            "grade_id": grade_id,
            "subject_id": subject_id,
        }

    async def upsert_question_by_hash(
        self, question: QuestionCandidate, grade_id: int, subject_id: int
    ) -> Optional[int]:
        """
        Insert a question, or update the row that already has its hash.

        Uses the dialect's ``INSERT ... ON CONFLICT DO UPDATE ... RETURNING id``.
        Dialects without it get a plain insert; a conflict then yields None.

        Args:
            question: Question to write (hash must be set)
            grade_id: Grade id
            subject_id: Subject id

        Returns:
            Row id, or None if the write did not return one

        Raises:
            TransientStoreException: If the statement fails
        """
        table = Question.__table__
        values = self._upsert_values(question, grade_id, subject_id)
        dialect = self.db.get_bind().dialect.name

        if dialect in ("sqlite", "postgresql"):
            insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
            stmt = insert(table).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c.content_options_hash],
                set_={k: stmt.excluded[k] for k in values if k != "content_options_hash"},
            ).returning(table.c.id)
        else:
            stmt = table.insert().values(**values).returning(table.c.id)

        try:
            result = await self.db.execute(stmt)
            row_id = result.scalar_one_or_none()
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            return None
        except SQLAlchemyError as e:
            await self._transient("upsert_question_by_hash", e)
        return int(row_id) if row_id is not None else None

    async def select_id_by_hash(self, content_options_hash: str) -> Optional[int]:
        try:
            result = await self.db.execute(
                select(Question.id).where(Question.content_options_hash == content_options_hash).limit(1)
            )
        except SQLAlchemyError as e:
            await self._transient("select_id_by_hash", e)
        row_id = result.scalar_one_or_none()
        return int(row_id) if row_id is not None else None

    async def commit_question(
        self, question: QuestionCandidate, grade_id: int, subject_id: int
    ) -> Optional[int]:
        """
        Persist a question and return its id.

        Upsert-by-hash first; if that returns no id (a concurrent writer won,
        or the write failed), look the row up by hash instead.

        Args:
            question: Question to persist (hash must be set)
            grade_id: Grade id
            subject_id: Subject id

        Returns:
            Persisted id, or None when no id could be obtained
        """
        if not question.content_options_hash:
            return None

        row_id: Optional[int] = None
        try:
            row_id = await self.upsert_question_by_hash(question, grade_id, subject_id)
        except TransientStoreException:
            row_id = None

        if row_id is None:
            try:
                row_id = await self.select_id_by_hash(question.content_options_hash)
            except TransientStoreException:
                row_id = None
        return row_id

    async def existing_hashes(self, hashes: Sequence[str]) -> set:
        """Return the subset of ``hashes`` already present in the store."""
        wanted = [h for h in set(hashes) if h]
        if not wanted:
            return set()
        try:
            result = await self.db.execute(
                select(Question.content_options_hash).where(Question.content_options_hash.in_(wanted))
            )
        except SQLAlchemyError as e:
            await self._transient("existing_hashes", e)
        return {h for h in result.scalars().all() if h}

    async def query_knowledge_point_attempt_counts(
        self,
        user_ids: Sequence[int],
        grade_id: int,
        subject_id: int,
        knowledge_point_ids: Sequence[int],
    ) -> Dict[int, int]:
        """
        Count answered questions per knowledge point.

        Args:
            user_ids: Student account ids
            grade_id: Grade id
            subject_id: Subject id
            knowledge_point_ids: Points to count

        Returns:
            Mapping of knowledge point id to attempt count (points with none are absent)
        """
        if not knowledge_point_ids:
            return {}
        stmt = (
            select(Question.knowledge_point_id, func.count())
            .join(History, History.question_id == Question.id)
            .where(
                History.user_id.in_(list(user_ids)),
                Question.grade_id == grade_id,
                Question.subject_id == subject_id,
                Question.knowledge_point_id.in_(list(knowledge_point_ids)),
            )
            .group_by(Question.knowledge_point_id)
        )
        try:
            result = await self.db.execute(stmt)
        except SQLAlchemyError as e:
            await self._transient("query_knowledge_point_attempt_counts", e)
        return {int(kp_id): int(count) for kp_id, count in result.all() if kp_id is not None}

    async def query_knowledge_point_scores(
        self,
        user_ids: Sequence[int],
        grade_id: int,
        subject_id: int,
        knowledge_point_ids: Optional[Sequence[int]] = None,
    ) -> List[KnowledgePointScore]:
        """
        Accuracy per knowledge point over the students' history.

        Args:
            user_ids: Student account ids
            grade_id: Grade id
            subject_id: Subject id
            knowledge_point_ids: Optional restriction

        Returns:
            One score per knowledge point with at least one attempt
        """
        correct_sum = func.sum(case((History.correct.is_(True), 1), else_=0))
        stmt = (
            select(Question.knowledge_point_id, func.count(), correct_sum)
            .join(History, History.question_id == Question.id)
            .where(
                History.user_id.in_(list(user_ids)),
                Question.grade_id == grade_id,
                Question.subject_id == subject_id,
                Question.knowledge_point_id.isnot(None),
            )
            .group_by(Question.knowledge_point_id)
        )
        if knowledge_point_ids:
            stmt = stmt.where(Question.knowledge_point_id.in_(list(knowledge_point_ids)))
        try:
            result = await self.db.execute(stmt)
        except SQLAlchemyError as e:
            await self._transient("query_knowledge_point_scores", e)

        scores = []
        for kp_id, total, correct in result.all():
            total = int(total or 0)
            correct = int(correct or 0)
            percent = round(correct * 100 / total) if total else 0
            scores.append(
                KnowledgePointScore(
                    knowledge_point_id=int(kp_id),
                    total=total,
                    correct=correct,
                    score_percent=percent,
                )
            )
        return scores

    async def query_used_knowledge_points(
        self, user_ids: Sequence[int], grade_id: int, subject_id: int
    ) -> List[int]:
        stmt = (
            select(distinct(Question.knowledge_point_id))
            .join(History, History.question_id == Question.id)
            .where(
                History.user_id.in_(list(user_ids)),
                Question.grade_id == grade_id,
                Question.subject_id == subject_id,
                Question.knowledge_point_id.isnot(None),
            )
        )
        try:
            result = await self.db.execute(stmt)
        except SQLAlchemyError as e:
            await self._transient("query_used_knowledge_points", e)
        return sorted(int(kp_id) for kp_id in result.scalars().all())

    async def query_frequent_history_metadata(
        self,
        user_ids: Sequence[int],
        grade_id: int,
        subject_id: int,
        knowledge_point_id: Optional[int] = None,
        top_n: int = 5,
    ) -> List[Dict[str, Any]]:
        """
        Most frequent canonical metadata among the students' answered questions.

        Grouping happens on the canonical form, so key order and whitespace
        differences in stored metadata count as the same pattern.

        Args:
            user_ids: Student account ids
            grade_id: Grade id
            subject_id: Subject id
            knowledge_point_id: Optional knowledge point filter
            top_n: Number of patterns to return

        Returns:
            Canonical metadata objects, most frequent first
        """
        stmt = (
            select(Question.question_metadata)
            .join(History, History.question_id == Question.id)
            .where(
                History.user_id.in_(list(user_ids)),
                Question.grade_id == grade_id,
                Question.subject_id == subject_id,
                Question.question_metadata.isnot(None),
            )
            .order_by(History.created_at.desc(), History.id.desc())
            .limit(FREQUENT_METADATA_SCAN_LIMIT)
        )
        if knowledge_point_id is not None:
            stmt = stmt.where(Question.knowledge_point_id == knowledge_point_id)
        try:
            result = await self.db.execute(stmt)
        except SQLAlchemyError as e:
            await self._transient("query_frequent_history_metadata", e)

        counts: Counter = Counter()
        canonical: Dict[str, Dict[str, Any]] = {}
        for raw in result.scalars().all():
            normalized = canonicalize(raw)
            if not normalized:
                continue
            key = json.dumps(normalized, sort_keys=True, ensure_ascii=False)
            counts[key] += 1
            canonical.setdefault(key, normalized)
        return [canonical[key] for key, _ in counts.most_common(max(0, top_n))]

    async def recent_question_embeddings(
        self, grade_id: int, subject_id: int, limit: int = 2000
    ) -> List[List[float]]:
        """Embeddings of the most recently created questions for a grade/subject."""
        stmt = (
            select(Question.embedding)
            .where(
                Question.grade_id == grade_id,
                Question.subject_id == subject_id,
                Question.embedding.isnot(None),
            )
            .order_by(Question.created_at.desc(), Question.id.desc())
            .limit(limit)
        )
        try:
            result = await self.db.execute(stmt)
        except SQLAlchemyError as e:
            await self._transient("recent_question_embeddings", e)
        vectors = (coerce_embedding(v) for v in result.scalars().all())
        return [v for v in vectors if v]

    async def history_question_embeddings(
        self, user_ids: Sequence[int], grade_id: int, subject_id: int, limit: int = 200
    ) -> List[HistoryQuestion]:
        """
        Questions the students have answered that carry metadata.

        Args:
            user_ids: Student account ids
            grade_id: Grade id
            subject_id: Subject id
            limit: Maximum distinct questions, newest ids first

        Returns:
            History questions with their stored embedding, if any
        """
        answered = select(History.question_id).where(History.user_id.in_(list(user_ids)))
        stmt = (
            select(Question.id, Question.embedding, Question.question_metadata)
            .where(
                Question.id.in_(answered),
                Question.grade_id == grade_id,
                Question.subject_id == subject_id,
                Question.question_metadata.isnot(None),
            )
            .order_by(Question.id.desc())
            .limit(limit)
        )
        try:
            result = await self.db.execute(stmt)
        except SQLAlchemyError as e:
            await self._transient("history_question_embeddings", e)
        return [
            HistoryQuestion(
                id=int(qid),
                embedding=coerce_embedding(embedding),
                metadata=metadata if isinstance(metadata, dict) else None,
            )
            for qid, embedding, metadata in result.all()
        ]

    async def find_grade_subject(self, grade_id: int, subject_id: int) -> Optional[GradeSubject]:
        try:
            result = await self.db.execute(
                select(GradeSubject).where(
                    GradeSubject.grade_id == grade_id,
                    GradeSubject.subject_id == subject_id,
                )
            )
        except SQLAlchemyError as e:
            await self._transient("find_grade_subject", e)
        return result.scalar_one_or_none()

    async def list_active_knowledge_points(self, grade_subject_id: int) -> List[KnowledgePoint]:
        """Active (or unflagged) knowledge points of a pairing, by sort_order then id."""
        stmt = (
            select(KnowledgePoint)
            .where(
                KnowledgePoint.grade_subject_id == grade_subject_id,
                (KnowledgePoint.is_active.is_(True)) | (KnowledgePoint.is_active.is_(None)),
            )
            .order_by(KnowledgePoint.sort_order.is_(None), KnowledgePoint.sort_order, KnowledgePoint.id)
        )
        try:
            result = await self.db.execute(stmt)
        except SQLAlchemyError as e:
            await self._transient("list_active_knowledge_points", e)
        return list(result.scalars().all())
