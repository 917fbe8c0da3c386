"""Diagnostic batch route endpoint."""
import logging
from functools import lru_cache
from typing import List

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.database import get_db
from app.exceptions import TransientStoreException, ValidationException
from app.middleware import RATE_LIMIT, limiter
from app.models.diagnostic_models import DiagnosticRequest, DiagnosticResponse
from app.models.question_models import KnowledgePointInfo, PromptContext
from app.services.knowledge_point_planner import KnowledgePointPlanner
from app.services.llm_client import LLMClient
from app.services.pool_assembler import PoolAssembler
from app.services.question_store import QuestionStore
from app.services.vector_index import VectorIndexService
from app.utils.grade_guidance import parse_grade_level

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/diagnostic", tags=["diagnostic"])


@lru_cache(maxsize=1)
def get_vector_index() -> VectorIndexService:
    """Process-wide vector index service."""
    return VectorIndexService()


@lru_cache(maxsize=1)
def get_llm_client() -> LLMClient:
    """Process-wide LLM client."""
    return LLMClient()


def get_planner() -> KnowledgePointPlanner:
    """Planner template; the route binds it to the request's store."""
    return KnowledgePointPlanner()


async def _focus_points(
    store: QuestionStore,
    planner: KnowledgePointPlanner,
    payload: DiagnosticRequest,
    knowledge_point_ids: List[int],
    count: int,
) -> List[int]:
    try:
        scores = await store.query_knowledge_point_scores(
            payload.student_user_ids, payload.grade_id, payload.subject_id, knowledge_point_ids
        )
    except TransientStoreException:
        return []
    return planner.select_focus_points(scores, count)


@router.post("", response_model=DiagnosticResponse, status_code=status.HTTP_200_OK)
@limiter.limit(RATE_LIMIT)
async def create_diagnostic(
    request: Request,
    payload: DiagnosticRequest,
    db: AsyncSession = Depends(get_db),
    vector_index: VectorIndexService = Depends(get_vector_index),
    llm_client: LLMClient = Depends(get_llm_client),
    planner: KnowledgePointPlanner = Depends(get_planner),
):
    """
    Assemble a diagnostic batch for one or more student accounts.

    Unused stored questions are returned first; any shortfall is generated,
    deduplicated and committed so every returned question has a persisted id.

    Args:
        request: FastAPI Request object (used by the rate limiter)
        payload: Diagnostic request
        db: Database session
        vector_index: Vector index service
        llm_client: LLM client
        planner: Knowledge point planner

    Returns:
        DiagnosticResponse with the assembled questions

    Raises:
        ValidationException: If the grade/subject pairing or its knowledge points are missing
        QuotaException: If not enough unique questions could be assembled
    """
    n = payload.num_questions or settings.diagnostic_question_count
    store = QuestionStore(db)
    planner = KnowledgePointPlanner(store, rng=planner.rng)

    pairing = await store.find_grade_subject(payload.grade_id, payload.subject_id)
    if pairing is None:
        raise ValidationException(
            "Unknown grade/subject pairing",
            details={"grade_id": payload.grade_id, "subject_id": payload.subject_id},
        )

    knowledge_points = [
        KnowledgePointInfo.model_validate(kp)
        for kp in await store.list_active_knowledge_points(pairing.id)
    ]
    if not knowledge_points:
        raise ValidationException(
            "No knowledge points are seeded for this grade/subject",
            details={"grade_id": payload.grade_id, "subject_id": payload.subject_id},
        )

    focus: List[int] = []
    if payload.knowledge_point_id is not None:
        knowledge_points = [kp for kp in knowledge_points if kp.id == payload.knowledge_point_id]
        if not knowledge_points:
            raise ValidationException(
                "Knowledge point does not belong to this grade/subject",
                details={"knowledge_point_id": payload.knowledge_point_id},
            )
    else:
        focus = await _focus_points(
            store, planner, payload, [kp.id for kp in knowledge_points], n
        )

    profile = {
        "student_user_ids": payload.student_user_ids,
        "grade_id": payload.grade_id,
        "subject_id": payload.subject_id,
        "lang": payload.lang,
        "grade_code": payload.grade_code,
        "grade_level": parse_grade_level(payload.grade_code),
        "subject_code": payload.subject_code,
        "grade_subject_notes": pairing.description,
        "focus_knowledge_points": focus,
    }
    context = PromptContext(
        lang=payload.lang,
        student_profile=profile,
        knowledge_points=knowledge_points,
        max_tokens=settings.generation_max_tokens,
    )

    assembler = PoolAssembler.create(store, vector_index, llm_client, planner=planner)
    result = await assembler.assemble(
        n,
        payload.grade_id,
        payload.subject_id,
        payload.student_user_ids,
        context,
        knowledge_point_id=payload.knowledge_point_id,
        preferred_knowledge_point_ids=focus or None,
    )
    logger.info(
        f"Diagnostic batch for users {payload.student_user_ids}: "
        f"{result.from_store} stored, {result.generated} generated"
    )

    return DiagnosticResponse(
        generated=result.generated > 0,
        lesson=result.lesson,
        questions=result.questions,
        from_store=result.from_store,
        generated_count=result.generated,
    )
