"""Knowledge point assignment plans for generated question batches."""

import logging
import math
import random
from typing import Iterable, List, Optional, Sequence

from app.exceptions import TransientStoreException
from app.models.question_models import KnowledgePointScore
from app.services.question_store import QuestionStore

logger = logging.getLogger(__name__)


def distinct_ids(knowledge_point_ids: Iterable) -> List[int]:
    """Distinct integer ids in first-seen order; anything not an int is dropped."""
    seen = set()
    out: List[int] = []
    for raw in knowledge_point_ids:
        if isinstance(raw, bool):
            continue
        try:
            number = float(raw)
        except (TypeError, ValueError):
            continue
        if not number.is_integer():
            continue
        kp_id = int(number)
        if kp_id not in seen:
            seen.add(kp_id)
            out.append(kp_id)
    return out


def repeat_pool_size(point_count: int) -> int:
    """Size of the low-attempt prefix (lowest third, at least 3) that extra plan slots are drawn from."""
    return min(point_count, max(3, math.ceil(point_count / 3)))


class KnowledgePointPlanner:
    """Build per-question knowledge point plans biased toward under-practised points."""

    def __init__(self, store: Optional[QuestionStore] = None, rng: Optional[random.Random] = None):
        """
        Initialize planner.

        Args:
            store: Question store for attempt history (plans are shuffled without one)
            rng: Random source, for reproducible plans
        """
        self.store = store
        self.rng = rng or random.Random()

    async def _order(
        self,
        ids: List[int],
        user_ids: Sequence[int],
        grade_id: Optional[int],
        subject_id: Optional[int],
    ) -> List[int]:
        ordered = list(ids)
        if self.store is None or grade_id is None or subject_id is None or not user_ids:
            self.rng.shuffle(ordered)
            return ordered

        try:
            counts = await self.store.query_knowledge_point_attempt_counts(
                user_ids, grade_id, subject_id, ids
            )
        except TransientStoreException:
            self.rng.shuffle(ordered)
            return ordered

        tie_break = {kp_id: self.rng.random() for kp_id in ordered}
        ordered.sort(key=lambda kp_id: (counts.get(kp_id, 0), tie_break[kp_id]))
        return ordered

    async def plan(
        self,
        knowledge_point_ids: Iterable,
        desired_count: int,
        user_ids: Sequence[int] = (),
        grade_id: Optional[int] = None,
        subject_id: Optional[int] = None,
    ) -> List[int]:
        """
        Assign a knowledge point to each of ``desired_count`` questions.

        Points with fewer historical attempts come first (random tie-break),
        or a uniform shuffle when no history is available. When more slots
        than points are needed every point is used once and the rest are
        sampled with replacement from the least-practised third.

        Args:
            knowledge_point_ids: Allowed knowledge point ids
            desired_count: Plan length
            user_ids: Student account ids
            grade_id: Grade id
            subject_id: Subject id

        Returns:
            Knowledge point ids, ``len == desired_count`` (empty if there are no ids)
        """
        ids = distinct_ids(knowledge_point_ids)
        m = max(0, int(desired_count or 0))
        if not ids or not m:
            return []

        ordered = await self._order(ids, user_ids, grade_id, subject_id)
        if m <= len(ordered):
            return ordered[:m]

        plan = list(ordered)
        pool = ordered[: repeat_pool_size(len(ordered))]
        while len(plan) < m:
            plan.append(self.rng.choice(pool))
        return plan

    def select_focus_points(self, scores: Sequence[KnowledgePointScore], count: int) -> List[int]:
        """
        Pick the weakest knowledge points to prefer when selecting stored questions.

        Args:
            scores: Per-point accuracy from history
            count: Maximum number of points

        Returns:
            Ids ordered by ascending score, then ascending attempts, random tie-break
        """
        if not scores or count <= 0:
            return []
        tie_break = [self.rng.random() for _ in scores]
        ranked = sorted(
            zip(scores, tie_break),
            key=lambda pair: (pair[0].score_percent, pair[0].total, pair[1]),
        )
        focus = distinct_ids(score.knowledge_point_id for score, _ in ranked)
        return focus[: min(count, len(focus))]
