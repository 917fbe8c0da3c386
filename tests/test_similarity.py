"""Unit tests for similarity checks."""
import math
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.exceptions import VectorIndexException
from app.models.vector_models import VectorMatch
from app.services.similarity import (
    METADATA_KIND,
    SimilarityOracle,
    best_cosine,
    coerce_embedding,
    cosine_similarity,
)


def test_cosine_identical_and_orthogonal():
    """Test basic cosine values."""
    assert cosine_similarity([1, 2, 3], [1, 2, 3]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
    assert cosine_similarity([1, 0], [-1, 0]) == pytest.approx(-1.0)


@pytest.mark.parametrize(
    "a,b",
    [
        ([1, 2], [1, 2, 3]),
        ([], []),
        ([0, 0], [1, 1]),
        ([1, math.inf], [1, 1]),
        ([1, math.nan], [1, 1]),
        ([True, 1], [1, 1]),
        (["x", 1], [1, 1]),
        (None, [1]),
    ],
)
def test_cosine_not_comparable(a, b):
    """Test that invalid vector pairs score -1."""
    assert cosine_similarity(a, b) == -1.0


def test_coerce_embedding():
    """Test vector coercion."""
    assert coerce_embedding([1, "2.5", 3.0]) == [1.0, 2.5, 3.0]
    assert coerce_embedding([]) is None
    assert coerce_embedding([1, math.nan]) is None
    assert coerce_embedding("1,2") is None
    assert coerce_embedding([False]) is None


def test_best_cosine():
    """Test the maximum over a set of vectors."""
    assert best_cosine([1, 0], [[0, 1], [1, 1], [1, 0]]) == pytest.approx(1.0)
    assert best_cosine([1, 0], []) == -1.0


def test_metadata_filter():
    """Test the filter used for metadata vectors."""
    assert SimilarityOracle.metadata_filter(3, 1) == {
        "kind": METADATA_KIND,
        "grade_id": 3,
        "subject_id": 1,
        "knowledge_point_id": None,
    }


def test_threshold_is_inclusive():
    """Test that a score equal to the threshold counts as too similar."""
    assert SimilarityOracle.is_too_similar(0.9, 0.9) is True
    assert SimilarityOracle.is_too_similar(0.8999, 0.9) is False
    assert SimilarityOracle.is_too_similar(None, 0.9) is False


class TestOracleQuery:
    """Tests for remote index lookups."""

    async def test_returns_matches(self):
        """Test that matches are passed through."""
        index = MagicMock()
        index.query_by_vector = AsyncMock(
            return_value=[VectorMatch(id="qmeta:1", score=0.95, metadata={"question_id": 1})]
        )
        oracle = SimilarityOracle(index)

        result = await oracle.query([0.1, 0.2], 3, {"kind": METADATA_KIND})

        assert result.available is True
        assert result.best_score == pytest.approx(0.95)
        index.query_by_vector.assert_awaited_once_with([0.1, 0.2], 3, {"kind": METADATA_KIND})

    async def test_unavailable_index(self):
        """Test that index failures become an unavailable, empty result."""
        index = MagicMock()
        index.query_by_vector = AsyncMock(side_effect=VectorIndexException("down"))
        oracle = SimilarityOracle(index)

        result = await oracle.query([0.1, 0.2], 3)

        assert result.available is False
        assert result.matches == []
        assert result.best_score is None

    async def test_empty_vector_skips_index(self):
        """Test that no query is made without a vector."""
        index = MagicMock()
        index.query_by_vector = AsyncMock()
        oracle = SimilarityOracle(index)

        result = await oracle.query([], 3)

        assert result.matches == []
        index.query_by_vector.assert_not_called()
