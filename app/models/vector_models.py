"""Pydantic models for vector index records and similarity lookups."""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class VectorMatch(BaseModel):
    """A nearest-neighbour match returned by the vector index."""

    id: str = Field(..., description="Vector record id")
    score: float = Field(..., description="Provider similarity score (higher is closer)")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Attached metadata")

    model_config = {
        "json_schema_extra": {
            "example": {
                "id": "qmeta:42",
                "score": 0.93,
                "metadata": {"kind": "question_metadata", "question_id": 42},
            }
        }
    }

    @property
    def question_id(self) -> Optional[int]:
        raw = self.metadata.get("question_id")
        try:
            return int(raw) if raw is not None else None
        except (TypeError, ValueError):
            return None


class VectorRecord(BaseModel):
    """A vector to upsert into the index."""

    id: str = Field(..., min_length=1)
    values: List[float] = Field(..., min_length=1)
    metadata: Optional[Dict[str, Any]] = None


class OracleResult(BaseModel):
    """Outcome of a remote similarity lookup.

    ``available`` is False when the index could not be consulted; callers
    treat that as "no match".
    """

    matches: List[VectorMatch] = Field(default_factory=list)
    available: bool = True
    error: Optional[str] = None

    @property
    def best_score(self) -> Optional[float]:
        if not self.matches:
            return None
        return max(m.score for m in self.matches)

    @classmethod
    def unavailable(cls, error: str) -> "OracleResult":
        return cls(matches=[], available=False, error=error)
