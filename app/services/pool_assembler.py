"""Top-level assembly of a question batch: store first, then generate and commit."""

import logging
from typing import List, Optional, Sequence

from app.config import Settings, settings as default_settings
from app.exceptions import (
    GenerationException,
    QuotaException,
    TransientStoreException,
    VectorIndexException,
)
from app.models.question_models import (
    AssembledQuestion,
    AssemblyResult,
    DedupeConfig,
    FillAttemptPolicy,
    Lesson,
    PromptContext,
    QuestionCandidate,
)
from app.models.vector_models import VectorRecord
from app.services.candidate_selector import CandidateSelector
from app.services.generation_orchestrator import GenerationOrchestrator
from app.services.knowledge_point_planner import KnowledgePointPlanner
from app.services.llm_client import LLMClient
from app.services.metadata_canonicalizer import build_dedupe_embedding_text
from app.services.question_store import QuestionStore
from app.services.similarity import METADATA_KIND, SimilarityOracle, best_cosine, coerce_embedding
from app.services.vector_index import VectorIndexService

logger = logging.getLogger(__name__)

MAX_FILL_ATTEMPTS = 4
METADATA_GATE_ATTEMPTS = 2
SEMANTIC_GATE_ATTEMPTS = 1
METADATA_STEP = 0.04
SEMANTIC_STEP = 0.03
METADATA_FLOOR = 0.9
SEMANTIC_FLOOR = 0.92
THRESHOLD_CAP = 0.999
METADATA_GATE_TOP_K = 3
RECENT_EMBEDDINGS_LIMIT = 2000


def clamp_threshold(value: float) -> float:
    return max(0.0, min(THRESHOLD_CAP, float(value)))


def build_fill_attempt_schedule(
    max_attempts: int,
    metadata_threshold: float = METADATA_FLOOR,
    semantic_threshold: float = SEMANTIC_FLOOR,
    generation_threshold: float = METADATA_FLOOR,
    semantic_enabled: bool = False,
) -> List[FillAttemptPolicy]:
    """
    Gate switches and thresholds for each fill attempt.

    The metadata gate runs on the first two attempts and the semantic gate
    on the first only (and only when enabled). Thresholds start at the
    configured base (never below 0.9 / 0.92) and step up by 0.04 / 0.03
    per attempt, capped below 1. Regeneration uses the base dedupe
    threshold on the first attempt and the relaxed metadata curve after it.

    Args:
        max_attempts: Number of attempts (clamped to 1..4)
        metadata_threshold: Base metadata gate threshold
        semantic_threshold: Base semantic gate threshold
        generation_threshold: Base dedupe threshold for generation
        semantic_enabled: Whether the semantic gate is on at all

    Returns:
        One policy per attempt, in order
    """
    attempts = max(1, min(MAX_FILL_ATTEMPTS, int(max_attempts)))
    schedule = []
    for step in range(attempts):
        relaxed_generation = clamp_threshold(
            max(generation_threshold, METADATA_FLOOR) + step * METADATA_STEP
        )
        schedule.append(
            FillAttemptPolicy(
                attempt=step,
                enable_metadata=step < METADATA_GATE_ATTEMPTS,
                enable_semantic=semantic_enabled and step < SEMANTIC_GATE_ATTEMPTS,
                metadata_threshold=clamp_threshold(
                    max(metadata_threshold, METADATA_FLOOR) + step * METADATA_STEP
                ),
                semantic_threshold=clamp_threshold(
                    max(semantic_threshold, SEMANTIC_FLOOR) + step * SEMANTIC_STEP
                ),
                generation_threshold=(
                    clamp_threshold(generation_threshold) if step == 0 else relaxed_generation
                ),
            )
        )
    return schedule


class PoolAssembler:
    """Fill a batch from the store, then from generation with relaxing dedupe."""

    def __init__(
        self,
        store: QuestionStore,
        selector: CandidateSelector,
        orchestrator: GenerationOrchestrator,
        vector_index: VectorIndexService,
        dedupe_config: DedupeConfig,
        schedule: List[FillAttemptPolicy],
        semantic_enabled: bool = False,
    ):
        """
        Initialize pool assembler.

        Args:
            store: Question store
            selector: Stored-question selector
            orchestrator: Generation orchestrator
            vector_index: Vector index for metadata gate and vector upserts
            dedupe_config: Base dedupe settings
            schedule: Fill attempt policies
            semantic_enabled: Whether the semantic gate is on at all
        """
        self.store = store
        self.selector = selector
        self.orchestrator = orchestrator
        self.vector_index = vector_index
        self.oracle = SimilarityOracle(vector_index)
        self.dedupe_config = dedupe_config
        self.schedule = schedule
        self.semantic_enabled = semantic_enabled

    @classmethod
    def create(
        cls,
        store: QuestionStore,
        vector_index: VectorIndexService,
        llm_client: LLMClient,
        app_settings: Optional[Settings] = None,
        planner: Optional[KnowledgePointPlanner] = None,
    ) -> "PoolAssembler":
        """Build an assembler and its collaborators from settings."""
        cfg = app_settings or default_settings
        dedupe_config = DedupeConfig(
            enabled=cfg.question_dedupe_enabled,
            threshold=cfg.similarity_threshold(cfg.question_dedupe_threshold, 0.9),
            top_k=cfg.question_dedupe_top_k,
        )
        schedule = build_fill_attempt_schedule(
            cfg.fill_attempts,
            metadata_threshold=cfg.similarity_threshold(cfg.metadata_dedupe_threshold, 0.9),
            semantic_threshold=cfg.similarity_threshold(cfg.semantic_dedupe_threshold, 0.92),
            generation_threshold=dedupe_config.threshold,
            semantic_enabled=cfg.semantic_dedupe_enabled,
        )
        orchestrator = GenerationOrchestrator(
            llm_client,
            store,
            vector_index,
            planner=planner or KnowledgePointPlanner(store),
            avoid_threshold=cfg.similarity_threshold(cfg.avoid_metadata_threshold, 0.9),
        )
        return cls(
            store,
            CandidateSelector(store),
            orchestrator,
            vector_index,
            dedupe_config,
            schedule,
            semantic_enabled=cfg.semantic_dedupe_enabled,
        )

    async def _existing_embeddings(self, grade_id: int, subject_id: int) -> List[List[float]]:
        if not self.semantic_enabled:
            return []
        try:
            return await self.store.recent_question_embeddings(
                grade_id, subject_id, limit=RECENT_EMBEDDINGS_LIMIT
            )
        except TransientStoreException:
            return []

    async def _metadata_duplicate(
        self,
        candidate: QuestionCandidate,
        grade_id: int,
        subject_id: int,
        threshold: float,
    ) -> bool:
        text = build_dedupe_embedding_text(candidate, grade_id, subject_id)
        if not text:
            return False
        try:
            vectors = await self.vector_index.embed([text], mode="query")
        except VectorIndexException as e:
            logger.debug(f"Metadata gate embedding failed: {e.message}")
            return False
        if not vectors or not vectors[0]:
            return False

        result = await self.oracle.query(
            vectors[0],
            METADATA_GATE_TOP_K,
            {"kind": METADATA_KIND, "grade_id": grade_id, "subject_id": subject_id},
        )
        best = result.best_score
        if SimilarityOracle.is_too_similar(best, threshold):
            logger.debug(
                f"Metadata gate skip: score={best:.4f} threshold={threshold:.4f} "
                f"hash={candidate.content_options_hash}"
            )
            return True
        return False

    def _semantic_duplicate(
        self,
        candidate: QuestionCandidate,
        existing: List[List[float]],
        threshold: float,
    ) -> bool:
        vector = coerce_embedding(candidate.embedding)
        if vector is None or not existing:
            return False
        best = best_cosine(vector, existing)
        if best >= threshold:
            logger.debug(f"Semantic gate skip: similarity={best:.4f} threshold={threshold:.4f}")
            return True
        return False

    async def _upsert_metadata_vector(
        self, candidate: QuestionCandidate, question_id: int, grade_id: int, subject_id: int
    ) -> None:
        text = build_dedupe_embedding_text(candidate, grade_id, subject_id)
        if not text:
            return
        try:
            vectors = await self.vector_index.embed([text], mode="passage")
            if not vectors or not vectors[0]:
                return
            metadata = {
                "kind": METADATA_KIND,
                "question_id": question_id,
                "grade_id": grade_id,
                "subject_id": subject_id,
                "knowledge_point_id": candidate.knowledge_point_id,
                "content_options_hash": candidate.content_options_hash,
            }
            expression = (candidate.metadata or {}).get("expression")
            if expression:
                metadata["expression"] = str(expression)
            await self.vector_index.upsert_vectors(
                [VectorRecord(id=f"qmeta:{question_id}", values=vectors[0], metadata=metadata)]
            )
        except VectorIndexException as e:
            logger.warning(f"Vector upsert failed for question {question_id}: {e.message}")

    async def _regenerate(
        self,
        need: int,
        policy: FillAttemptPolicy,
        context: PromptContext,
        user_ids: Sequence[int],
        grade_id: int,
        subject_id: int,
        knowledge_point_id: Optional[int],
    ):
        config = self.dedupe_config.relaxed(policy.generation_threshold)
        try:
            return await self.orchestrator.generate(
                need,
                context,
                user_ids,
                grade_id,
                subject_id,
                config,
                knowledge_point_id=knowledge_point_id,
                avoid_knowledge_point_id=knowledge_point_id,
            )
        except GenerationException as e:
            logger.warning(f"Generation failed on attempt {policy.attempt}: {e.message}")
            return None

    async def assemble(
        self,
        n: int,
        grade_id: int,
        subject_id: int,
        user_ids: Sequence[int],
        context: PromptContext,
        knowledge_point_id: Optional[int] = None,
        preferred_knowledge_point_ids: Optional[Sequence[int]] = None,
    ) -> AssemblyResult:
        """
        Assemble ``n`` unique questions, every one with a persisted id.

        Unused stored questions come first. The shortfall is generated and
        passed through the fill attempt schedule: metadata gate, semantic
        gate, then commit (upsert by hash) and a best-effort vector upsert.

        Args:
            n: Batch size
            grade_id: Grade id
            subject_id: Subject id
            user_ids: Student account ids (merged history)
            context: Prompt context for generation
            knowledge_point_id: Restrict the batch to one knowledge point
            preferred_knowledge_point_ids: Points to favour when selecting stored questions

        Returns:
            AssemblyResult with exactly ``n`` questions

        Raises:
            ConfigurationException: If generation is needed but not configured
            QuotaException: If fewer than ``n`` unique questions could be produced
        """
        allowed = context.allowed_knowledge_point_ids
        fallback = context.fallback_knowledge_point_id
        selected = await self.selector.select_unused(
            user_ids,
            grade_id,
            subject_id,
            n,
            knowledge_point_id=knowledge_point_id,
            preferred_knowledge_point_ids=None if knowledge_point_id is not None else preferred_knowledge_point_ids,
            allowed_knowledge_point_ids=allowed,
            fallback_knowledge_point_id=fallback,
        )
        questions = [AssembledQuestion.from_candidate(c, c.id) for c in selected]
        if len(questions) >= n:
            return AssemblyResult(questions=questions[:n], from_store=len(questions[:n]))

        seen_hashes = {q.content_options_hash for q in questions}
        pool: List[QuestionCandidate] = []
        lesson: Optional[Lesson] = None
        existing = await self._existing_embeddings(grade_id, subject_id)
        generated = 0

        for policy in self.schedule:
            remaining = n - len(questions)
            if remaining <= 0:
                break

            open_pool = [c for c in pool if c.content_options_hash not in seen_hashes]
            if len(open_pool) < remaining:
                result = await self._regenerate(
                    remaining, policy, context, user_ids, grade_id, subject_id, knowledge_point_id
                )
                if result is not None:
                    pool.extend(result.accepted)
                    lesson = lesson or result.lesson

            before = len(questions)
            for candidate in pool:
                if len(questions) >= n:
                    break
                if candidate.content_options_hash in seen_hashes:
                    continue
                if policy.enable_metadata and await self._metadata_duplicate(
                    candidate, grade_id, subject_id, policy.metadata_threshold
                ):
                    continue
                if policy.enable_semantic and self._semantic_duplicate(
                    candidate, existing, policy.semantic_threshold
                ):
                    continue

                question_id = await self.store.commit_question(candidate, grade_id, subject_id)
                if question_id is None:
                    logger.warning(f"No id for candidate {candidate.content_options_hash}, dropped")
                    continue

                seen_hashes.add(candidate.content_options_hash)
                vector = coerce_embedding(candidate.embedding)
                if vector is not None:
                    existing.append(vector)
                await self._upsert_metadata_vector(candidate, question_id, grade_id, subject_id)
                questions.append(AssembledQuestion.from_candidate(candidate, question_id))
                generated += 1

            logger.debug(
                f"Fill attempt {policy.attempt}: added={len(questions) - before} "
                f"now={len(questions)} need={n} metadata={policy.enable_metadata} "
                f"semantic={policy.enable_semantic} "
                f"metadata_thr={policy.metadata_threshold:.3f} "
                f"semantic_thr={policy.semantic_threshold:.3f}"
            )

        if len(questions) < n:
            raise QuotaException(requested=n, returned=len(questions))

        return AssemblyResult(
            questions=questions[:n],
            lesson=lesson,
            from_store=len(selected),
            generated=generated,
        )
