"""Similarity checks: local cosine over resident vectors and remote index lookups."""

import logging
import math
from typing import Any, Dict, Iterable, List, Optional, Sequence

from app.exceptions import VectorIndexException
from app.models.vector_models import OracleResult
from app.services.vector_index import VectorIndexService

logger = logging.getLogger(__name__)

METADATA_KIND = "question_metadata"


def cosine_similarity(a: Any, b: Any) -> float:
    """
    Cosine similarity of two equal-length numeric vectors.

    Args:
        a: First vector
        b: Second vector

    Returns:
        Similarity in [-1, 1], or -1 when the vectors are not comparable
        (shape mismatch, non-finite values, zero norm)
    """
    if not isinstance(a, (list, tuple)) or not isinstance(b, (list, tuple)):
        return -1.0
    if not a or len(a) != len(b):
        return -1.0

    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        if isinstance(x, bool) or isinstance(y, bool):
            return -1.0
        try:
            fx = float(x)
            fy = float(y)
        except (TypeError, ValueError):
            return -1.0
        if not math.isfinite(fx) or not math.isfinite(fy):
            return -1.0
        dot += fx * fy
        norm_a += fx * fx
        norm_b += fy * fy

    if norm_a == 0.0 or norm_b == 0.0:
        return -1.0
    result = dot / (math.sqrt(norm_a) * math.sqrt(norm_b))
    return result if math.isfinite(result) else -1.0


def coerce_embedding(value: Any) -> Optional[List[float]]:
    """Return ``value`` as a list of finite floats, or None if it is not a usable vector."""
    if not isinstance(value, (list, tuple)) or not value:
        return None
    out: List[float] = []
    for x in value:
        if isinstance(x, bool):
            return None
        try:
            fx = float(x)
        except (TypeError, ValueError):
            return None
        if not math.isfinite(fx):
            return None
        out.append(fx)
    return out


def best_cosine(vector: Sequence[float], others: Iterable[Sequence[float]]) -> float:
    """Highest cosine similarity between ``vector`` and any of ``others`` (-1 if none)."""
    best = -1.0
    for other in others:
        score = cosine_similarity(vector, other)
        if score > best:
            best = score
    return best


class SimilarityOracle:
    """Both similarity strategies behind one threshold rule: too similar iff score >= threshold."""

    def __init__(self, vector_index: VectorIndexService):
        """
        Initialize similarity oracle.

        Args:
            vector_index: Vector index used for remote lookups
        """
        self.vector_index = vector_index

    @staticmethod
    def metadata_filter(
        grade_id: Optional[int],
        subject_id: Optional[int],
        knowledge_point_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        return {
            "kind": METADATA_KIND,
            "grade_id": grade_id,
            "subject_id": subject_id,
            "knowledge_point_id": knowledge_point_id,
        }

    async def query(
        self,
        vector: Optional[Sequence[float]],
        top_k: int,
        filters: Optional[Dict[str, Any]] = None,
    ) -> OracleResult:
        """
        Query the vector index, reporting unavailability instead of raising.

        Args:
            vector: Query vector
            top_k: Number of neighbours
            filters: Equality filter

        Returns:
            OracleResult; ``available`` is False when the index failed
        """
        if not vector:
            return OracleResult(matches=[])
        try:
            matches = await self.vector_index.query_by_vector(vector, top_k, filters)
        except VectorIndexException as e:
            logger.warning(f"Vector index unavailable, treating as no match: {e.message}")
            return OracleResult.unavailable(e.message)
        return OracleResult(matches=matches)

    @staticmethod
    def is_too_similar(score: Optional[float], threshold: float) -> bool:
        return score is not None and score >= threshold
