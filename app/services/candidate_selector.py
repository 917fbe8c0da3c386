"""DB-first selection of questions the students have not answered yet."""

import logging
from typing import List, Optional, Sequence

from app.db.models import Question
from app.exceptions import TransientStoreException
from app.models.question_models import QuestionCandidate
from app.services.fingerprint import (
    compute_content_options_hash,
    extract_bilingual_options,
    unique_by_hash,
)
from app.services.question_store import QuestionStore
from app.utils.text_cleaning import coerce_text

logger = logging.getLogger(__name__)

MAX_OVERFETCH = 250
EXTRA_ROUNDS = 2
PER_POINT_INITIAL = 3
PER_POINT_RETRY = 2


def overfetch_size(n: int) -> int:
    """Rows to request for a batch of ``n``, absorbing hash collisions."""
    return min(MAX_OVERFETCH, max(n * 5, n + 5))


class CandidateSelector:
    """Select unused stored questions for a batch."""

    def __init__(self, store: QuestionStore):
        """
        Initialize candidate selector.

        Args:
            store: Question store
        """
        self.store = store

    @staticmethod
    def to_candidate(
        row: Question,
        knowledge_point_id: Optional[int] = None,
        allowed_knowledge_point_ids: Optional[set] = None,
        fallback_knowledge_point_id: Optional[int] = None,
    ) -> QuestionCandidate:
        """
        Map a stored row to a candidate.

        A missing hash is computed from the row's content; the knowledge point
        is forced to ``knowledge_point_id`` when given, and remapped to the
        fallback when it lies outside the allowed set.
        """
        options = extract_bilingual_options(row.options)
        content_en = coerce_text(row.content_en)
        options_data = options.model_dump() if options else {"zh": [], "en": []}
        content_options_hash = row.content_options_hash or compute_content_options_hash(
            content_en, options_data["en"]
        )

        kp_id = knowledge_point_id if knowledge_point_id is not None else row.knowledge_point_id
        if kp_id is None or (allowed_knowledge_point_ids and kp_id not in allowed_knowledge_point_ids):
            kp_id = fallback_knowledge_point_id

        return QuestionCandidate(
            id=row.id,
            content_cn=coerce_text(row.content_cn),
            content_en=content_en,
            options=options_data,
            content_options_hash=content_options_hash,
            metadata=row.question_metadata if isinstance(row.question_metadata, dict) else None,
            answer_cn=coerce_text(row.answer_cn),
            answer_en=coerce_text(row.answer_en),
            explanation_cn=coerce_text(row.explanation_cn),
            explanation_en=coerce_text(row.explanation_en),
            knowledge_point_id=kp_id,
        )

    async def select_unused(
        self,
        user_ids: Sequence[int],
        grade_id: int,
        subject_id: int,
        limit: int,
        knowledge_point_id: Optional[int] = None,
        preferred_knowledge_point_ids: Optional[Sequence[int]] = None,
        allowed_knowledge_point_ids: Optional[set] = None,
        fallback_knowledge_point_id: Optional[int] = None,
    ) -> List[QuestionCandidate]:
        """
        Fetch up to ``limit`` unique questions none of the students has answered.

        Over-fetches to absorb duplicate hashes and retries twice (random
        order) before reporting a shortfall. A failing store query stops
        selection with whatever was gathered so far.

        Args:
            user_ids: Student account ids (merged history)
            grade_id: Grade id
            subject_id: Subject id
            limit: Batch size
            knowledge_point_id: Restrict to one knowledge point
            preferred_knowledge_point_ids: Points to draw from, a few rows each
            allowed_knowledge_point_ids: Points a returned question may carry
            fallback_knowledge_point_id: Point assigned when a row's point is not allowed

        Returns:
            Unique candidates (by hash), at most ``limit``
        """
        n = max(0, int(limit))
        if not n:
            return []

        overfetch = overfetch_size(n)
        preferred = [int(kp) for kp in (preferred_knowledge_point_ids or [])]
        rows: List[Question] = []

        async def fetch(rounds: int) -> None:
            if knowledge_point_id is not None:
                rows.extend(
                    await self.store.query_unused_questions(
                        user_ids, grade_id, subject_id, knowledge_point_id, overfetch
                    )
                )
            elif preferred:
                per_point = PER_POINT_INITIAL if rounds == 0 else PER_POINT_RETRY
                for kp in preferred:
                    if len(rows) >= overfetch * (rounds + 1):
                        break
                    rows.extend(
                        await self.store.query_unused_questions(
                            user_ids, grade_id, subject_id, kp, per_point
                        )
                    )
            else:
                rows.extend(
                    await self.store.query_unused_questions(
                        user_ids, grade_id, subject_id, None, overfetch
                    )
                )

        def unique() -> List[QuestionCandidate]:
            candidates = [
                self.to_candidate(
                    row,
                    knowledge_point_id,
                    allowed_knowledge_point_ids,
                    fallback_knowledge_point_id,
                )
                for row in rows
            ]
            return unique_by_hash(candidates)[:n]

        try:
            await fetch(0)
            selected = unique()
            rounds = 0
            while len(selected) < n and rounds < EXTRA_ROUNDS:
                rounds += 1
                await fetch(rounds)
                selected = unique()
        except TransientStoreException as e:
            logger.warning(f"Unused question lookup failed: {e.message}")

        selected = unique()
        if len(selected) < n:
            null_hash = sum(1 for row in rows if not row.content_options_hash)
            logger.info(
                f"DB-first selection short: fetched={len(rows)} unique={len(selected)} "
                f"need={n} null_hash={null_hash} kp_filter={knowledge_point_id} "
                f"preferred_kps={len(preferred)}"
            )
        return selected
