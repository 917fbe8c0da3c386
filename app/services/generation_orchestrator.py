"""Generation of new candidate questions for a batch shortfall."""

import json
import logging
import math
from typing import Any, Dict, List, Optional, Sequence, Tuple

from app.exceptions import GenerationException, TransientStoreException, VectorIndexException
from app.models.question_models import (
    DedupeConfig,
    GenerationResult,
    Lesson,
    PromptContext,
    QuestionCandidate,
)
from app.prompts import diagnostic_prompts, render_template
from app.services.fingerprint import (
    compute_content_options_hash,
    ensure_content_options_hash,
    extract_bilingual_options,
    unique_by_hash,
)
from app.services.knowledge_point_planner import KnowledgePointPlanner
from app.services.llm_client import LLMClient
from app.services.metadata_canonicalizer import canonicalize, to_embedding_text
from app.services.question_store import QuestionStore
from app.services.similarity import SimilarityOracle, best_cosine, coerce_embedding
from app.services.vector_index import VectorIndexService
from app.utils.grade_guidance import get_grade_guidance, parse_grade_level
from app.utils.json_parsing import safe_parse_json_object
from app.utils.text_cleaning import coerce_text

logger = logging.getLogger(__name__)

MAX_GENERATION_SIZE = 20
GENERATION_BONUS = 5
AVOID_GENERATION_BONUS = 10
AVOID_PATTERN_COUNT = 5
HISTORY_SCAN_LIMIT = 200
OPTION_COUNT = 4


def generation_size(missing: int, has_avoid_list: bool) -> int:
    """Number of questions to request for a shortfall of ``missing``."""
    shortfall = max(1, min(MAX_GENERATION_SIZE, int(missing)))
    return shortfall + (AVOID_GENERATION_BONUS if has_avoid_list else GENERATION_BONUS)


def validate_candidate(raw: Any) -> Optional[QuestionCandidate]:
    """
    Structural gate for one LLM question.

    Requires some content, exactly four options per language and string
    answers that appear verbatim (after trimming) among their options.

    Args:
        raw: One element of the ``questions`` array

    Returns:
        Candidate with its hash computed, or None if it fails the gate
    """
    if not isinstance(raw, dict):
        return None
    if not coerce_text(raw.get("content_en")) and not coerce_text(raw.get("content_cn")):
        return None

    options = extract_bilingual_options(raw.get("options"))
    if options is None:
        return None
    if len(options.en) != OPTION_COUNT or len(options.zh) != OPTION_COUNT:
        return None

    answer_en = raw.get("answer_en")
    answer_cn = raw.get("answer_cn")
    if not isinstance(answer_en, str) or not isinstance(answer_cn, str):
        return None
    if answer_en.strip() not in options.en or answer_cn.strip() not in options.zh:
        return None

    knowledge_point_id = raw.get("knowledge_point_id")
    try:
        knowledge_point_id = int(knowledge_point_id) if knowledge_point_id is not None else None
    except (TypeError, ValueError):
        knowledge_point_id = None

    content_en = coerce_text(raw.get("content_en"))
    return QuestionCandidate(
        content_cn=coerce_text(raw.get("content_cn")),
        content_en=content_en,
        options=options,
        content_options_hash=compute_content_options_hash(content_en, options.en),
        metadata=canonicalize(raw.get("metadata")),
        answer_cn=answer_cn.strip(),
        answer_en=answer_en.strip(),
        explanation_cn=coerce_text(raw.get("explanation_cn")),
        explanation_en=coerce_text(raw.get("explanation_en")),
        knowledge_point_id=knowledge_point_id,
    )


def parse_lesson(raw: Any) -> Optional[Lesson]:
    """Lesson header from LLM output, tolerating missing or mistyped fields."""
    if not isinstance(raw, dict):
        return None
    images = raw.get("images")
    return Lesson(
        title=coerce_text(raw.get("title")),
        explanation=coerce_text(raw.get("explanation")),
        images=[str(i) for i in images if i] if isinstance(images, list) else [],
    )


def assign_knowledge_point(
    planned: Optional[int],
    claimed: Optional[int],
    allowed: set,
    requested: Optional[int] = None,
    fallback: Optional[int] = None,
) -> Optional[int]:
    """
    Resolve a generated question's knowledge point.

    Order: planned id (if allowed), explicit requested id, the provider's
    own claim (if allowed), then the fallback. An empty allowed set allows
    everything.
    """
    if planned is not None and (not allowed or planned in allowed):
        return planned
    if requested is not None:
        return requested
    if claimed is not None and (not allowed or claimed in allowed):
        return claimed
    return fallback


class GenerationOrchestrator:
    """Ask the LLM for a surplus of questions and keep the valid, novel ones."""

    def __init__(
        self,
        llm_client: LLMClient,
        store: QuestionStore,
        vector_index: VectorIndexService,
        planner: Optional[KnowledgePointPlanner] = None,
        avoid_threshold: float = 0.9,
    ):
        """
        Initialize generation orchestrator.

        Args:
            llm_client: LLM client
            store: Question store
            vector_index: Vector index for embeddings and history lookups
            planner: Knowledge point planner (one backed by ``store`` when omitted)
            avoid_threshold: Max similarity to the avoid-list for preferred candidates
        """
        self.llm_client = llm_client
        self.store = store
        self.vector_index = vector_index
        self.oracle = SimilarityOracle(vector_index)
        self.planner = planner or KnowledgePointPlanner(store)
        self.avoid_threshold = avoid_threshold

    async def _avoid_list(
        self,
        user_ids: Sequence[int],
        grade_id: int,
        subject_id: int,
        knowledge_point_id: Optional[int],
    ) -> List[Dict[str, Any]]:
        try:
            return await self.store.query_frequent_history_metadata(
                user_ids, grade_id, subject_id, knowledge_point_id, top_n=AVOID_PATTERN_COUNT
            )
        except TransientStoreException:
            return []

    def _build_prompts(
        self,
        context: PromptContext,
        ask_n: int,
        plan: List[int],
        avoid: List[Dict[str, Any]],
    ) -> Tuple[str, str]:
        profile = context.student_profile
        guidance = get_grade_guidance(
            context.lang,
            profile,
            grade_level=parse_grade_level(profile.get("grade_code")),
        )
        templates = diagnostic_prompts(context.lang)
        user_prompt = render_template(
            templates["user"],
            {
                "student_profile": json.dumps(profile, ensure_ascii=False),
                "num_questions": ask_n,
                "retrieval_snippets": "[]",
                "knowledge_points": json.dumps(
                    [kp.model_dump() for kp in context.knowledge_points], ensure_ascii=False
                ),
                "knowledge_point_ids_plan": json.dumps(plan),
                "avoid_metadata": json.dumps(avoid[:AVOID_PATTERN_COUNT], ensure_ascii=False),
                "grade_guidance": guidance,
            },
        )
        return templates["system"], user_prompt

    async def rank_by_avoid_list(
        self,
        candidates: List[QuestionCandidate],
        avoid: List[Dict[str, Any]],
        missing: int,
    ) -> List[QuestionCandidate]:
        """
        Order candidates farthest-first from the avoid-list patterns.

        Candidates under the avoid threshold are preferred only when there are
        at least ``missing`` of them; otherwise the full ranking is kept.
        Candidates without metadata text go last. Embedding failures keep the
        original order.
        """
        avoid_texts = [t for t in (to_embedding_text(m) for m in avoid) if t]
        texts = [to_embedding_text(c.metadata) for c in candidates]
        with_text = [(c, t) for c, t in zip(candidates, texts) if t]
        without_text = [c for c, t in zip(candidates, texts) if not t]
        if not avoid_texts or not with_text:
            return candidates

        try:
            avoid_vectors = await self.vector_index.embed(avoid_texts, mode="query")
            vectors = await self.vector_index.embed([t for _, t in with_text], mode="query")
        except VectorIndexException as e:
            logger.warning(f"Avoid-list ranking skipped: {e.message}")
            return candidates
        if len(avoid_vectors) != len(avoid_texts) or len(vectors) != len(with_text):
            return candidates

        scored = []
        for (candidate, _), vector in zip(with_text, vectors):
            max_sim = best_cosine(vector, avoid_vectors)
            if not math.isfinite(max_sim) or max_sim < 0:
                max_sim = 1.0
            scored.append((max_sim, candidate))
        scored.sort(key=lambda pair: pair[0])

        filtered = [pair for pair in scored if pair[0] < self.avoid_threshold]
        ranked = filtered if len(filtered) >= missing else scored
        return [candidate for _, candidate in ranked] + without_text

    async def _embed_missing(self, candidates: List[QuestionCandidate]) -> None:
        targets = []
        texts = []
        for candidate in candidates:
            if coerce_embedding(candidate.embedding):
                continue
            text = to_embedding_text(candidate.metadata)
            if text:
                targets.append(candidate)
                texts.append(text)
        if not texts:
            return
        try:
            vectors = await self.vector_index.embed(texts, mode="passage")
        except VectorIndexException as e:
            logger.warning(f"Candidate embedding skipped: {e.message}")
            return
        if len(vectors) != len(texts):
            return
        for candidate, vector in zip(targets, vectors):
            candidate.embedding = vector

    @staticmethod
    def _dedupe_in_batch(
        candidates: List[QuestionCandidate], threshold: float
    ) -> List[QuestionCandidate]:
        kept: List[QuestionCandidate] = []
        kept_vectors: List[List[float]] = []
        for candidate in candidates:
            vector = coerce_embedding(candidate.embedding)
            if vector is None:
                kept.append(candidate)
                continue
            if best_cosine(vector, kept_vectors) >= threshold:
                logger.debug(f"In-batch duplicate dropped: {candidate.content_options_hash}")
                continue
            kept.append(candidate)
            kept_vectors.append(vector)
        return kept

    async def _dedupe_against_history(
        self,
        candidates: List[QuestionCandidate],
        user_ids: Sequence[int],
        grade_id: int,
        subject_id: int,
        config: DedupeConfig,
    ) -> List[QuestionCandidate]:
        if not candidates or not user_ids:
            return candidates
        try:
            history = await self.store.history_question_embeddings(
                user_ids, grade_id, subject_id, limit=HISTORY_SCAN_LIMIT
            )
        except TransientStoreException:
            return candidates

        vectors = [h.embedding for h in history if h.embedding]
        texts = [t for t in (to_embedding_text(h.metadata) for h in history if not h.embedding) if t]
        if texts:
            try:
                embedded = await self.vector_index.embed(texts, mode="query")
                if len(embedded) == len(texts):
                    vectors.extend(embedded)
            except VectorIndexException as e:
                logger.warning(f"History embedding skipped: {e.message}")
        if not vectors:
            return candidates

        filters = SimilarityOracle.metadata_filter(grade_id, subject_id)
        avoid_ids = set()
        for vector in vectors:
            result = await self.oracle.query(vector, config.top_k, filters)
            for match in result.matches:
                if match.question_id is not None and match.score >= config.threshold:
                    avoid_ids.add(match.question_id)
        if not avoid_ids:
            return candidates

        kept = []
        for candidate in candidates:
            vector = coerce_embedding(candidate.embedding)
            if vector is None:
                kept.append(candidate)
                continue
            result = await self.oracle.query(vector, config.top_k, filters)
            hit = any(
                match.question_id in avoid_ids and match.score >= config.threshold
                for match in result.matches
            )
            if hit:
                logger.debug(f"History duplicate dropped: {candidate.content_options_hash}")
                continue
            kept.append(candidate)
        return kept

    async def dedupe_before_insert(
        self,
        candidates: List[QuestionCandidate],
        user_ids: Sequence[int],
        grade_id: int,
        subject_id: int,
        config: DedupeConfig,
    ) -> List[QuestionCandidate]:
        """
        Run the pre-insert dedupe layers.

        1. Unique content hash.
        2. Passage-mode metadata embeddings for candidates lacking one.
        3. In-batch cosine against already kept candidates.
        4. Nearest-neighbour overlap with the students' answered questions.

        Layers 3 and 4 are skipped when ``config`` is disabled. Every layer
        fails open.
        """
        layer1 = unique_by_hash(ensure_content_options_hash(c) for c in candidates)
        await self._embed_missing(layer1)
        if not config.enabled:
            return layer1
        layer3 = self._dedupe_in_batch(layer1, config.threshold)
        return await self._dedupe_against_history(layer3, user_ids, grade_id, subject_id, config)

    async def generate(
        self,
        missing: int,
        context: PromptContext,
        user_ids: Sequence[int],
        grade_id: int,
        subject_id: int,
        dedupe_config: DedupeConfig,
        knowledge_point_id: Optional[int] = None,
        avoid_knowledge_point_id: Optional[int] = None,
    ) -> GenerationResult:
        """
        Generate candidates for a shortfall of ``missing`` questions.

        Args:
            missing: Shortfall (clamped to 1..20)
            context: Prompt context (language, profile, knowledge points)
            user_ids: Student account ids
            grade_id: Grade id
            subject_id: Subject id
            dedupe_config: Dedupe settings for this call
            knowledge_point_id: Explicitly requested knowledge point
            avoid_knowledge_point_id: Scope the avoid-list to one knowledge point

        Returns:
            GenerationResult with accepted candidates, best first

        Raises:
            ConfigurationException: If the LLM is not configured
            GenerationException: If the LLM fails or returns no parseable questions
        """
        shortfall = max(1, min(MAX_GENERATION_SIZE, int(missing)))
        avoid = await self._avoid_list(user_ids, grade_id, subject_id, avoid_knowledge_point_id)
        ask_n = generation_size(shortfall, bool(avoid))

        allowed = context.allowed_knowledge_point_ids
        fallback = context.fallback_knowledge_point_id
        plan = await self.planner.plan(
            [kp.id for kp in context.knowledge_points], ask_n, user_ids, grade_id, subject_id
        )
        if not plan and fallback is not None:
            plan = [fallback] * ask_n

        logger.info(f"Generating questions: missing={shortfall} ask={ask_n} avoid={len(avoid)}")
        system_prompt, user_prompt = self._build_prompts(context, ask_n, plan, avoid)
        raw = await self.llm_client.complete_json(system_prompt, user_prompt, context.max_tokens)

        parsed = safe_parse_json_object(raw)
        if not parsed or not isinstance(parsed.get("questions"), list):
            raise GenerationException("Failed to parse generated JSON")

        batch_hashes = set()
        candidates: List[QuestionCandidate] = []
        for index, raw_question in enumerate(parsed["questions"]):
            candidate = validate_candidate(raw_question)
            if candidate is None or candidate.content_options_hash in batch_hashes:
                continue
            batch_hashes.add(candidate.content_options_hash)
            planned = plan[index] if index < len(plan) else None
            candidate.knowledge_point_id = assign_knowledge_point(
                planned, candidate.knowledge_point_id, allowed, knowledge_point_id, fallback
            )
            candidates.append(candidate)

        try:
            in_store = await self.store.existing_hashes(list(batch_hashes))
        except TransientStoreException:
            in_store = set()
        accepted = [c for c in candidates if c.content_options_hash not in in_store]
        logger.debug(
            f"Generation gate: returned={len(parsed['questions'])} valid={len(candidates)} "
            f"novel={len(accepted)}"
        )

        if avoid and accepted:
            accepted = await self.rank_by_avoid_list(accepted, avoid, shortfall)

        accepted = await self.dedupe_before_insert(
            accepted, user_ids, grade_id, subject_id, dedupe_config
        )

        return GenerationResult(
            accepted=accepted,
            lesson=parse_lesson(parsed.get("lesson")),
            requested=ask_n,
        )
