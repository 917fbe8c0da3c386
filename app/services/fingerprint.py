"""Content fingerprinting for exact-duplicate detection."""

import hashlib
import json
from typing import Any, Iterable, List, Optional

from app.models.question_models import BilingualOptions, QuestionCandidate
from app.utils.text_cleaning import coerce_text, normalize_options

OPTION_KEYS = ("A", "B", "C", "D")


def compute_content_options_hash(content_en: Any, options: Any) -> str:
    """
    Compute the stable digest of a question's primary-language content and options.

    The payload is compact JSON without ASCII escaping so digests match rows
    written by earlier deployments.

    Args:
        content_en: Primary-language (English) question text
        options: Primary-language option list

    Returns:
        Hex SHA-256 digest
    """
    payload = json.dumps(
        {"content_en": coerce_text(content_en), "options": normalize_options(options) or []},
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def extract_bilingual_options(options: Any) -> Optional[BilingualOptions]:
    """
    Normalize the option shapes seen in storage and LLM output.

    Accepted shapes: ``{"zh": [...], "en": [...]}``, a single-language dict
    (mirrored to both languages), ``{"A": {"zh", "en"}, ..., "D": {...}}``,
    or a bare list (treated as both languages).

    Args:
        options: Raw options value

    Returns:
        BilingualOptions, or None if the shape is not recognised
    """
    if isinstance(options, BilingualOptions):
        return options
    if not options:
        return None

    if isinstance(options, dict):
        zh = normalize_options(options.get("zh"))
        en = normalize_options(options.get("en"))
        if zh is not None and en is not None:
            return BilingualOptions(zh=zh, en=en)
        if en is not None:
            return BilingualOptions(zh=en, en=en)
        if zh is not None:
            return BilingualOptions(zh=zh, en=zh)

        # Letter-keyed LLM shape
        zh_letters: List[str] = []
        en_letters: List[str] = []
        for key in OPTION_KEYS:
            value = options.get(key)
            if not isinstance(value, dict):
                return None
            z = coerce_text(value.get("zh"))
            e = coerce_text(value.get("en"))
            if not z or not e:
                return None
            zh_letters.append(z)
            en_letters.append(e)
        return BilingualOptions(zh=zh_letters, en=en_letters)

    as_list = normalize_options(options)
    if as_list is not None:
        return BilingualOptions(zh=as_list, en=list(as_list))
    return None


def ensure_content_options_hash(question: QuestionCandidate) -> QuestionCandidate:
    """Fill in a missing content_options_hash from the question's own fields."""
    if not question.content_options_hash:
        question.content_options_hash = compute_content_options_hash(
            question.content_en, question.options.en
        )
    return question


def unique_by_hash(questions: Iterable[QuestionCandidate]) -> List[QuestionCandidate]:
    """
    Keep the first question per digest, preserving order.

    Args:
        questions: Questions in priority order

    Returns:
        Deduplicated list
    """
    seen = set()
    out: List[QuestionCandidate] = []
    for question in questions:
        digest = question.content_options_hash or compute_content_options_hash(
            question.content_en, question.options.en
        )
        if digest in seen:
            continue
        seen.add(digest)
        out.append(question)
    return out
