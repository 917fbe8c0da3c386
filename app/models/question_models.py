"""Pydantic models for questions, knowledge points and dedupe policy."""
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class BilingualOptions(BaseModel):
    """Answer choices in both languages, index-aligned."""

    zh: List[str] = Field(default_factory=list, description="Chinese options")
    en: List[str] = Field(default_factory=list, description="English options")


class KnowledgePointInfo(BaseModel):
    """Knowledge point as shown to the LLM and used for planning."""

    id: int
    name_cn: Optional[str] = None
    name_en: Optional[str] = None
    unit_name_cn: Optional[str] = None
    unit_name_en: Optional[str] = None
    description: Optional[str] = None
    difficulty_avg: Optional[float] = None
    sort_order: Optional[int] = None

    model_config = {"from_attributes": True}


class QuestionCandidate(BaseModel):
    """A question on its way through selection, generation and commit.

    ``id`` is only set for rows that already exist in the store.
    """

    id: Optional[int] = None
    type: Literal["mcq"] = "mcq"
    content_cn: str = ""
    content_en: str = ""
    options: BilingualOptions = Field(default_factory=BilingualOptions)
    content_options_hash: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    embedding: Optional[List[float]] = None
    answer_cn: str = ""
    answer_en: str = ""
    explanation_cn: str = ""
    explanation_en: str = ""
    knowledge_point_id: Optional[int] = None


class AssembledQuestion(BaseModel):
    """A question handed to the caller; always carries a persisted id."""

    id: int = Field(..., description="Persisted question id")
    type: Literal["mcq"] = "mcq"
    content_cn: str
    content_en: str
    options: BilingualOptions
    content_options_hash: str
    metadata: Optional[Dict[str, Any]] = None
    answer_cn: str
    answer_en: str
    explanation_cn: str
    explanation_en: str
    knowledge_point_id: Optional[int] = None

    @classmethod
    def from_candidate(cls, candidate: QuestionCandidate, question_id: int) -> "AssembledQuestion":
        data = candidate.model_dump(exclude={"id", "embedding"})
        return cls(id=question_id, **data)


class DedupeConfig(BaseModel):
    """Similarity dedupe settings for one invocation; relaxed by copying."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    threshold: float = Field(default=0.9, ge=0.0, lt=1.0)
    top_k: int = Field(default=3, ge=1, le=10)

    def relaxed(self, threshold: float) -> "DedupeConfig":
        """Return a copy using ``threshold``, never stricter than this one."""
        return self.model_copy(update={"threshold": max(self.threshold, threshold)})


class FillAttemptPolicy(BaseModel):
    """Gate switches and thresholds for one fill attempt."""

    model_config = ConfigDict(frozen=True)

    attempt: int
    enable_metadata: bool
    enable_semantic: bool
    metadata_threshold: float
    semantic_threshold: float
    generation_threshold: float


class KnowledgePointScore(BaseModel):
    """Per-knowledge-point accuracy over a student's history."""

    knowledge_point_id: int
    total: int = 0
    correct: int = 0
    score_percent: int = 0


class HistoryQuestion(BaseModel):
    """A question the student has already answered, as used by history dedupe."""

    id: int
    embedding: Optional[List[float]] = None
    metadata: Optional[Dict[str, Any]] = None


class Lesson(BaseModel):
    """Lesson header returned with a question batch."""

    title: str = ""
    explanation: str = ""
    images: List[str] = Field(default_factory=list)


class PromptContext(BaseModel):
    """Everything generation needs to build prompts for one request."""

    lang: Literal["zh", "en"] = "zh"
    student_profile: Dict[str, Any] = Field(default_factory=dict)
    knowledge_points: List[KnowledgePointInfo] = Field(default_factory=list)
    max_tokens: int = Field(default=5000, ge=1)

    @property
    def allowed_knowledge_point_ids(self) -> set:
        return {kp.id for kp in self.knowledge_points}

    @property
    def fallback_knowledge_point_id(self) -> Optional[int]:
        return self.knowledge_points[0].id if self.knowledge_points else None


class GenerationResult(BaseModel):
    """Validated, ranked and deduplicated candidates from one LLM call."""

    accepted: List[QuestionCandidate] = Field(default_factory=list)
    lesson: Optional[Lesson] = None
    requested: int = 0


class AssemblyResult(BaseModel):
    """A complete question batch."""

    questions: List[AssembledQuestion]
    lesson: Optional[Lesson] = None
    from_store: int = 0
    generated: int = 0
