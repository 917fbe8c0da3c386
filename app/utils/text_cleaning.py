"""Text normalization utilities for question content and embedding input."""

import re
from typing import Any, List, Optional


def normalize_whitespace(text: Any) -> str:
    """
    Collapse every whitespace run to a single space and trim.

    Args:
        text: Text (or any value) with potentially irregular whitespace

    Returns:
        Single-line text with normalized whitespace
    """
    if text is None:
        return ""
    return re.sub(r"\s+", " ", str(text)).strip()


def normalize_for_embedding(text: Any) -> str:
    """
    Normalize text before it is sent to the embedding model.

    Paraphrases should stay close, so only whitespace is normalized.

    Args:
        text: Raw text

    Returns:
        Normalized text
    """
    return normalize_whitespace(text)


def coerce_text(value: Any) -> str:
    """Coerce a possibly-missing value to a trimmed string."""
    if value is None:
        return ""
    return str(value).strip()


def normalize_options(options: Any) -> Optional[List[str]]:
    """
    Coerce an option list to trimmed strings.

    Args:
        options: Candidate option list

    Returns:
        List of trimmed strings, or None if ``options`` is not a list
    """
    if not isinstance(options, (list, tuple)):
        return None
    return [coerce_text(option) for option in options]
