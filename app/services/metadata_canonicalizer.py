"""Canonical, language-independent rendering of question metadata.

The rendered text is the only input to dedupe embeddings. Question prose is
left out on purpose so paraphrases of the same fact pattern still collide.
"""

import json
import math
from typing import Any, Dict, List, Optional, Union

from app.models.question_models import QuestionCandidate
from app.utils.text_cleaning import coerce_text, normalize_for_embedding

# Preferred rendering order for open-shape metadata
GENERIC_FIELDS = ("domain", "skill", "story_type", "units", "expression", "operands", "result")

Number = Union[int, float]


def _as_number(value: Any) -> Optional[Number]:
    if isinstance(value, bool):
        return int(value)
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return int(number) if number.is_integer() else number


def _render_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        number = _as_number(value)
        return "" if number is None else str(number)
    if isinstance(value, (list, tuple)):
        return ",".join(part for part in (_render_value(v) for v in value) if part)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return str(value).strip()


def _normalize_value(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def canonicalize(metadata: Any) -> Optional[Dict[str, Any]]:
    """
    Normalize raw question metadata.

    The compact quantitative shape ``{type, nums, context}`` is used when
    ``type`` is non-empty and ``nums`` holds at least one finite number;
    anything else becomes a key-sorted dict with trimmed string values.

    Args:
        metadata: Raw metadata object

    Returns:
        Normalized metadata, or None when nothing usable remains
    """
    if not isinstance(metadata, dict):
        return None

    kind = coerce_text(metadata.get("type"))
    raw_nums = metadata.get("nums")
    nums: List[Number] = []
    if isinstance(raw_nums, (list, tuple)):
        nums = [n for n in (_as_number(x) for x in raw_nums) if n is not None]
    if kind and nums:
        context = coerce_text(metadata.get("context")) or None
        return {"type": kind, "nums": nums, "context": context}

    out = {str(k): _normalize_value(v) for k, v in sorted(metadata.items(), key=lambda kv: str(kv[0])) if k}
    return out or None


def is_compact_shape(metadata: Optional[Dict[str, Any]]) -> bool:
    return bool(metadata) and set(metadata) == {"type", "nums", "context"} and isinstance(
        metadata.get("nums"), list
    )


def to_embedding_text(metadata: Any) -> str:
    """
    Render metadata as ``key=value | key=value``.

    Args:
        metadata: Raw or normalized metadata

    Returns:
        Canonical text, empty when there is no usable metadata
    """
    normalized = canonicalize(metadata)
    if not normalized:
        return ""

    if is_compact_shape(normalized):
        parts = [
            f"type={normalized['type']}",
            f"nums={_render_value(normalized['nums'])}",
        ]
        if normalized.get("context"):
            parts.append(f"context={normalized['context']}")
        return normalize_for_embedding(" | ".join(parts))

    keys = [k for k in GENERIC_FIELDS if _render_value(normalized.get(k))]
    if not keys:
        keys = [k for k in normalized if _render_value(normalized[k])]
    parts = [f"{k}={_render_value(normalized[k])}" for k in keys]
    return normalize_for_embedding(" | ".join(parts))


def build_question_embedding_text(question: QuestionCandidate) -> str:
    """Content+options rendering, used only when a question has no metadata text."""
    content = normalize_for_embedding(question.content_en)
    options = " | ".join(o for o in question.options.en if o)
    return normalize_for_embedding(" || ".join(p for p in (content, options) if p))


def build_dedupe_embedding_text(
    question: QuestionCandidate,
    grade_id: Optional[int] = None,
    subject_id: Optional[int] = None,
    knowledge_point_id: Optional[int] = None,
) -> str:
    """
    Build the text embedded for the index-backed metadata dedupe gate.

    Args:
        question: Candidate question
        grade_id: Grade scope
        subject_id: Subject scope
        knowledge_point_id: Knowledge point, defaults to the question's own

    Returns:
        ``grade_id=.. | subject_id=.. | knowledge_point_id=.. | <metadata text>``
    """
    kp_id = knowledge_point_id if knowledge_point_id is not None else question.knowledge_point_id
    parts = []
    if grade_id is not None:
        parts.append(f"grade_id={grade_id}")
    if subject_id is not None:
        parts.append(f"subject_id={subject_id}")
    if kp_id is not None:
        parts.append(f"knowledge_point_id={kp_id}")

    meta_text = to_embedding_text(question.metadata)
    if meta_text:
        parts.append(meta_text)
    else:
        fallback = build_question_embedding_text(question)
        if fallback:
            parts.append(fallback)
    return normalize_for_embedding(" | ".join(parts))
