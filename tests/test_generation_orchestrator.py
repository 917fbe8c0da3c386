"""Unit tests for the generation orchestrator."""
import random
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.exceptions import GenerationException
from app.models.question_models import DedupeConfig, KnowledgePointInfo, PromptContext
from app.services.generation_orchestrator import (
    GenerationOrchestrator,
    assign_knowledge_point,
    generation_size,
    parse_lesson,
    validate_candidate,
)
from app.services.knowledge_point_planner import KnowledgePointPlanner
from app.services.metadata_canonicalizer import to_embedding_text
from app.services.question_store import QuestionStore
from tests.fakes import (
    GRADE_ID,
    STUDENT_ID,
    SUBJECT_ID,
    add_question,
    answer,
    llm_payload,
    make_llm_question,
)


@pytest.fixture
def context(curriculum):
    return PromptContext(
        lang="en",
        student_profile={"grade_code": "G3", "grade_subject_notes": "Addition within 100 only."},
        knowledge_points=[KnowledgePointInfo.model_validate(kp) for kp in curriculum["knowledge_points"]],
    )


@pytest.fixture
def orchestrator(db_session, fake_index, mock_llm):
    store = QuestionStore(db_session)
    planner = KnowledgePointPlanner(store, rng=random.Random(11))
    return GenerationOrchestrator(mock_llm, store, fake_index, planner=planner)


@pytest.mark.parametrize(
    "missing,has_avoid,expected",
    [(1, False, 6), (5, False, 10), (0, False, 6), (50, False, 25), (3, True, 13), (20, True, 30)],
)
def test_generation_size(missing, has_avoid, expected):
    """Test the request size for a shortfall."""
    assert generation_size(missing, has_avoid) == expected


class TestValidateCandidate:
    """Tests for the structural gate."""

    def test_valid(self):
        """Test that a complete question passes with hash and canonical metadata."""
        raw = make_llm_question(1, metadata={"context": " apples ", "nums": [11, 4], "type": "addition"})
        candidate = validate_candidate(raw)
        assert candidate is not None
        assert candidate.content_options_hash
        assert candidate.metadata == {"type": "addition", "nums": [11, 4], "context": "apples"}

    def test_answer_not_in_options(self):
        """Test that an answer missing from the options is rejected."""
        assert validate_candidate(make_llm_question(1, answer_en="999")) is None
        assert validate_candidate(make_llm_question(1, answer_cn="999")) is None

    def test_answer_compared_after_trim(self):
        """Test that surrounding whitespace on the answer is tolerated."""
        raw = make_llm_question(1)
        raw["answer_en"] = f"  {raw['answer_en']} "
        assert validate_candidate(raw).answer_en == raw["answer_en"].strip()

    def test_wrong_option_count(self):
        """Test that anything but four options per language is rejected."""
        raw = make_llm_question(1)
        raw["options"]["en"] = raw["options"]["en"][:3]
        assert validate_candidate(raw) is None

    def test_non_string_answer(self):
        """Test that numeric answers are rejected."""
        raw = make_llm_question(1)
        raw["answer_en"] = 14
        assert validate_candidate(raw) is None

    def test_missing_content(self):
        """Test that a question without any content is rejected."""
        assert validate_candidate(make_llm_question(1, content_en="", content_cn=" ")) is None
        assert validate_candidate("not a question") is None


@pytest.mark.parametrize(
    "planned,claimed,allowed,requested,fallback,expected",
    [
        (2, 3, {1, 2, 3}, None, 1, 2),
        (9, 3, {1, 2, 3}, None, 1, 3),
        (9, 3, {1, 2, 3}, 2, 1, 2),
        (None, 8, {1, 2, 3}, None, 1, 1),
        (None, None, set(), None, None, None),
        (7, None, set(), None, None, 7),
    ],
)
def test_assign_knowledge_point(planned, claimed, allowed, requested, fallback, expected):
    """Test knowledge point resolution order."""
    assert assign_knowledge_point(planned, claimed, allowed, requested, fallback) == expected


def test_parse_lesson():
    """Test lesson parsing with mistyped fields."""
    lesson = parse_lesson({"title": " Fractions ", "explanation": None, "images": "x"})
    assert lesson.title == "Fractions"
    assert lesson.explanation == ""
    assert lesson.images == []
    assert parse_lesson(None) is None


class TestGenerate:
    """Tests for GenerationOrchestrator.generate."""

    async def test_requests_surplus_and_accepts_valid(self, orchestrator, context, mock_llm):
        """Test the request size, prompt and accepted candidates."""
        mock_llm.complete_json.return_value = llm_payload([make_llm_question(i) for i in range(7)])

        result = await orchestrator.generate(
            2, context, [STUDENT_ID], GRADE_ID, SUBJECT_ID, DedupeConfig()
        )

        assert result.requested == 7
        assert len(result.accepted) == 7
        assert result.lesson.title == "Addition"
        system_prompt, user_prompt, max_tokens = mock_llm.complete_json.await_args.args
        assert "Generate exactly 7 questions" in user_prompt
        assert "Addition within 100 only." in user_prompt
        assert max_tokens == context.max_tokens
        allowed = context.allowed_knowledge_point_ids
        assert all(c.knowledge_point_id in allowed for c in result.accepted)

    async def test_hash_duplicates_collapse(self, orchestrator, context, mock_llm):
        """Test that questions with equal content and options but different metadata collapse."""
        first = make_llm_question(1)
        second = make_llm_question(1, metadata={"type": "other", "nums": [99], "context": "x"})
        mock_llm.complete_json.return_value = llm_payload([first, second])

        result = await orchestrator.generate(
            1, context, [STUDENT_ID], GRADE_ID, SUBJECT_ID, DedupeConfig()
        )

        assert len(result.accepted) == 1
        assert result.accepted[0].metadata["type"] == "addition"

    async def test_invalid_questions_never_embedded(self, orchestrator, context, mock_llm, fake_index):
        """Test that structurally invalid questions are dropped before any embedding."""
        bad = make_llm_question(2, answer_en="999", metadata={"type": "bad", "nums": [1], "context": None})
        mock_llm.complete_json.return_value = llm_payload([make_llm_question(1), bad])

        result = await orchestrator.generate(
            1, context, [STUDENT_ID], GRADE_ID, SUBJECT_ID, DedupeConfig()
        )

        assert len(result.accepted) == 1
        embedded = [text for texts, _ in fake_index.embed_calls for text in texts]
        assert to_embedding_text(bad["metadata"]) not in embedded

    async def test_plan_overrides_claimed_point(self, db_session, fake_index, mock_llm, context, curriculum):
        """Test that the plan's knowledge point wins over the provider's claim."""
        kp2 = curriculum["knowledge_points"][1].id
        planner = MagicMock()
        planner.plan = AsyncMock(return_value=[kp2] * 6)
        orchestrator = GenerationOrchestrator(
            mock_llm, QuestionStore(db_session), fake_index, planner=planner
        )
        mock_llm.complete_json.return_value = llm_payload(
            [make_llm_question(1, knowledge_point_id=12345), make_llm_question(2, knowledge_point_id=None)]
        )

        result = await orchestrator.generate(
            1, context, [STUDENT_ID], GRADE_ID, SUBJECT_ID, DedupeConfig()
        )

        assert [c.knowledge_point_id for c in result.accepted] == [kp2, kp2]

    async def test_stored_hashes_rejected(self, orchestrator, context, mock_llm, db_session, curriculum):
        """Test that questions already in the store are not accepted again."""
        stored = await add_question(db_session, 1, curriculum["knowledge_points"][0].id)
        mock_llm.complete_json.return_value = llm_payload([make_llm_question(1), make_llm_question(2)])

        result = await orchestrator.generate(
            1, context, [STUDENT_ID], GRADE_ID, SUBJECT_ID, DedupeConfig()
        )

        hashes = [c.content_options_hash for c in result.accepted]
        assert stored.content_options_hash not in hashes
        assert len(hashes) == 1

    async def test_avoid_list_widens_request(self, orchestrator, context, mock_llm, db_session, curriculum):
        """Test that history patterns add to the request and appear in the prompt."""
        q = await add_question(db_session, 1, curriculum["knowledge_points"][0].id)
        await answer(db_session, STUDENT_ID, q)
        mock_llm.complete_json.return_value = llm_payload([make_llm_question(5)])

        result = await orchestrator.generate(
            2, context, [STUDENT_ID], GRADE_ID, SUBJECT_ID, DedupeConfig()
        )

        assert result.requested == 12
        user_prompt = mock_llm.complete_json.await_args.args[1]
        assert '"context": "trains"' in user_prompt

    async def test_unparseable_output(self, orchestrator, context, mock_llm):
        """Test that output without a questions array raises."""
        mock_llm.complete_json.return_value = "Sorry, I cannot help with that."

        with pytest.raises(GenerationException):
            await orchestrator.generate(1, context, [STUDENT_ID], GRADE_ID, SUBJECT_ID, DedupeConfig())

    async def test_fenced_output_is_recovered(self, orchestrator, context, mock_llm):
        """Test that a fenced JSON object is still parsed."""
        mock_llm.complete_json.return_value = "```json\n" + llm_payload([make_llm_question(1)]) + "\n```"

        result = await orchestrator.generate(
            1, context, [STUDENT_ID], GRADE_ID, SUBJECT_ID, DedupeConfig()
        )

        assert len(result.accepted) == 1


class TestAvoidRanking:
    """Tests for rank_by_avoid_list."""

    async def test_far_candidates_preferred(self, orchestrator):
        """Test that candidates matching an avoid pattern drop out when enough others remain."""
        repeat = validate_candidate(make_llm_question(1))
        fresh_a = validate_candidate(make_llm_question(2))
        fresh_b = validate_candidate(make_llm_question(3))

        ranked = await orchestrator.rank_by_avoid_list(
            [repeat, fresh_a, fresh_b], [repeat.metadata], missing=2
        )

        assert ranked == [fresh_a, fresh_b]

    async def test_full_ranking_when_too_few_far(self, orchestrator):
        """Test that the full ranking is kept when the filtered list is too short."""
        repeat = validate_candidate(make_llm_question(1))
        fresh = validate_candidate(make_llm_question(2))

        ranked = await orchestrator.rank_by_avoid_list([repeat, fresh], [repeat.metadata], missing=2)

        assert ranked == [fresh, repeat]

    async def test_candidates_without_metadata_go_last(self, orchestrator):
        """Test that metadata-less candidates are appended after ranked ones."""
        bare = validate_candidate(make_llm_question(1, metadata={}))
        fresh = validate_candidate(make_llm_question(2))
        avoid = [{"type": "subtraction", "nums": [1, 1], "context": "birds"}]

        ranked = await orchestrator.rank_by_avoid_list([bare, fresh], avoid, missing=1)

        assert ranked == [fresh, bare]

    async def test_embedding_failure_keeps_order(self, orchestrator, fake_index):
        """Test that ranking is skipped when embeddings fail."""
        fake_index.fail_embed = True
        candidates = [validate_candidate(make_llm_question(i)) for i in range(3)]

        ranked = await orchestrator.rank_by_avoid_list(candidates, [candidates[0].metadata], 2)

        assert ranked == candidates


class TestDedupeBeforeInsert:
    """Tests for the pre-insert dedupe layers."""

    async def test_embeds_in_passage_mode(self, orchestrator, fake_index):
        """Test that candidates get passage-mode metadata embeddings."""
        candidates = [validate_candidate(make_llm_question(i)) for i in range(2)]

        kept = await orchestrator.dedupe_before_insert(
            candidates, [], GRADE_ID, SUBJECT_ID, DedupeConfig()
        )

        assert all(c.embedding for c in kept)
        assert fake_index.embed_calls[0][1] == "passage"

    async def test_in_batch_duplicates_dropped(self, orchestrator):
        """Test that equal metadata with different wording is caught in-batch."""
        metadata = {"type": "addition", "nums": [4, 5], "context": "apples"}
        a = validate_candidate(make_llm_question(1, metadata=metadata))
        b = validate_candidate(make_llm_question(2, metadata=metadata))
        c = validate_candidate(make_llm_question(3))

        kept = await orchestrator.dedupe_before_insert(
            [a, b, c], [], GRADE_ID, SUBJECT_ID, DedupeConfig()
        )

        assert kept == [a, c]

    async def test_disabled_skips_similarity_layers(self, orchestrator):
        """Test that disabled dedupe keeps only hash uniqueness."""
        metadata = {"type": "addition", "nums": [4, 5], "context": "apples"}
        a = validate_candidate(make_llm_question(1, metadata=metadata))
        b = validate_candidate(make_llm_question(2, metadata=metadata))

        kept = await orchestrator.dedupe_before_insert(
            [a, b, a], [], GRADE_ID, SUBJECT_ID, DedupeConfig(enabled=False)
        )

        assert kept == [a, b]

    async def test_history_overlap_dropped(self, orchestrator, db_session, fake_index, curriculum):
        """Test that candidates near a question the student answered are dropped."""
        metadata = {"type": "addition", "nums": [30, 12], "context": "coins"}
        text = to_embedding_text(metadata)
        seen = await add_question(
            db_session, 1, curriculum["knowledge_points"][0].id,
            metadata=metadata, embedding=fake_index.vector_for(text),
        )
        await answer(db_session, STUDENT_ID, seen)
        fake_index.seed(
            f"qmeta:{seen.id}",
            text,
            {"kind": "question_metadata", "question_id": seen.id, "grade_id": GRADE_ID, "subject_id": SUBJECT_ID},
        )
        repeat = validate_candidate(make_llm_question(2, metadata=metadata))
        fresh = validate_candidate(make_llm_question(3))

        kept = await orchestrator.dedupe_before_insert(
            [repeat, fresh], [STUDENT_ID], GRADE_ID, SUBJECT_ID, DedupeConfig()
        )

        assert kept == [fresh]

    async def test_index_outage_fails_open(self, orchestrator, db_session, fake_index, curriculum):
        """Test that an unreachable index keeps every candidate."""
        seen = await add_question(
            db_session, 1, curriculum["knowledge_points"][0].id, embedding=[1.0, 0.0]
        )
        await answer(db_session, STUDENT_ID, seen)
        fake_index.fail_query = True
        candidates = [validate_candidate(make_llm_question(i)) for i in range(2, 4)]

        kept = await orchestrator.dedupe_before_insert(
            candidates, [STUDENT_ID], GRADE_ID, SUBJECT_ID, DedupeConfig()
        )

        assert kept == candidates
