"""In-memory fakes and builders shared by the test modules."""
import json
import math
import re
from typing import Any, Dict, List, Optional

from app.db.models import History, Question
from app.exceptions import VectorIndexException
from app.models.vector_models import VectorMatch, VectorRecord
from app.services.fingerprint import compute_content_options_hash

GRADE_ID = 3
SUBJECT_ID = 1
STUDENT_ID = 17
CONTEXTS = [
    "apples", "trains", "coins", "birds", "books", "pencils", "boats", "cookies",
    "marbles", "stamps", "shells", "kites", "buttons", "flowers", "candles",
    "chairs", "cards", "balloons", "rocks", "leaves", "stars", "hats", "cups",
]


class FakeVectorIndex:
    """In-memory stand-in for VectorIndexService.

    Each ``key=value`` segment of a text becomes one dimension, so identical
    texts have cosine 1 and texts sharing k of n segments have cosine k/n.
    """

    DIM = 512

    def __init__(self):
        self.vocabulary: Dict[str, int] = {}
        self.records: Dict[str, VectorRecord] = {}
        self.embed_calls: List[tuple] = []
        self.query_calls: List[tuple] = []
        self.fail_embed = False
        self.fail_query = False
        self.fail_upsert = False

    def vector_for(self, text: str) -> List[float]:
        vector = [0.0] * self.DIM
        for segment in re.split(r"\s*\|+\s*", text.strip()):
            if not segment:
                continue
            index = self.vocabulary.setdefault(segment, len(self.vocabulary) % self.DIM)
            vector[index] += 1.0
        return vector

    async def embed(self, texts, mode="passage"):
        if mode not in ("query", "passage"):
            raise ValueError(mode)
        self.embed_calls.append((list(texts), mode))
        if self.fail_embed:
            raise VectorIndexException("embedding backend down")
        return [self.vector_for(t) for t in texts]

    async def query_by_vector(self, vector, top_k=3, filters=None):
        self.query_calls.append((list(vector), top_k, dict(filters or {})))
        if self.fail_query:
            raise VectorIndexException("index unreachable")
        wanted = {k: v for k, v in (filters or {}).items() if v is not None}
        matches = []
        for record in self.records.values():
            metadata = record.metadata or {}
            if any(metadata.get(k) != v for k, v in wanted.items()):
                continue
            matches.append(
                VectorMatch(id=record.id, score=_cosine(vector, record.values), metadata=metadata)
            )
        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:top_k]

    async def upsert_vectors(self, records):
        if self.fail_upsert:
            raise VectorIndexException("upsert rejected")
        for record in records:
            self.records[record.id] = record
        return len(records)

    def seed(self, record_id: str, text: str, metadata: Dict[str, Any]) -> None:
        self.records[record_id] = VectorRecord(
            id=record_id, values=self.vector_for(text), metadata=metadata
        )


def _cosine(a, b):
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    return dot / (na * nb) if na and nb else 0.0


def make_llm_question(
    index: int,
    knowledge_point_id: Optional[int] = 1,
    metadata: Optional[Dict[str, Any]] = None,
    **overrides,
) -> Dict[str, Any]:
    """A structurally valid LLM question; ``index`` makes content and metadata unique."""
    a, b = 10 + index, 3 + index
    answer = str(a + b)
    options_en = [answer, str(a + b + 1), str(a + b - 1), str(a + b + 2)]
    question = {
        "id": f"q{index}",
        "type": "mcq",
        "content_cn": f"{a} 加 {b} 等于多少？",
        "content_en": f"What is {a} plus {b}?",
        "options": {"zh": list(options_en), "en": list(options_en)},
        "answer_cn": answer,
        "answer_en": answer,
        "explanation_cn": f"{a}+{b}={answer}",
        "explanation_en": f"{a}+{b}={answer}",
        "knowledge_point_id": knowledge_point_id,
        "metadata": metadata
        if metadata is not None
        else {"type": "addition", "nums": [a, b], "context": CONTEXTS[index % len(CONTEXTS)]},
    }
    question.update(overrides)
    return question


def llm_payload(questions: List[Dict[str, Any]], title: str = "Addition") -> str:
    return json.dumps(
        {"lesson": {"title": title, "explanation": "Adding numbers", "images": []}, "questions": questions},
        ensure_ascii=False,
    )


async def add_question(
    db_session,
    index: int,
    knowledge_point_id: Optional[int],
    metadata: Optional[Dict[str, Any]] = None,
    embedding: Optional[List[float]] = None,
    with_hash: bool = True,
    grade_id: int = GRADE_ID,
    subject_id: int = SUBJECT_ID,
) -> Question:
    raw = make_llm_question(index, knowledge_point_id, metadata)
    row = Question(
        content_cn=raw["content_cn"],
        content_en=raw["content_en"],
        options=raw["options"],
        content_options_hash=compute_content_options_hash(raw["content_en"], raw["options"]["en"])
        if with_hash
        else None,
        question_metadata=raw["metadata"],
        embedding=embedding,
        answer_cn=raw["answer_cn"],
        answer_en=raw["answer_en"],
        explanation_cn=raw["explanation_cn"],
        explanation_en=raw["explanation_en"],
        knowledge_point_id=knowledge_point_id,
        grade_id=grade_id,
        subject_id=subject_id,
    )
    db_session.add(row)
    await db_session.commit()
    return row


async def answer(db_session, user_id: int, question: Question, correct: bool = True) -> History:
    record = History(
        user_id=user_id,
        question_id=question.id,
        given_answer=question.answer_en,
        correct=correct,
    )
    db_session.add(record)
    await db_session.commit()
    return record

