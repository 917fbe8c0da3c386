"""Best-effort recovery of JSON objects from LLM output."""

import json
import re
from typing import Any, Dict, Optional

_LEADING_FENCE = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_TRAILING_FENCE = re.compile(r"\s*```\s*$")
_OUTERMOST_OBJECT = re.compile(r"\{[\s\S]*\}")


def strip_json_code_fences(text: Any) -> str:
    """
    Remove a leading ```json / ``` fence and a trailing ``` fence.

    Args:
        text: Raw model output

    Returns:
        Text without surrounding markdown code fences
    """
    raw = ("" if text is None else str(text)).strip()
    raw = _LEADING_FENCE.sub("", raw)
    raw = _TRAILING_FENCE.sub("", raw)
    return raw.strip()


def safe_parse_json_object(text: Any) -> Optional[Dict[str, Any]]:
    """
    Parse a JSON object out of model output.

    Tries the whole (fence-stripped) text first, then the outermost
    ``{...}`` span.

    Args:
        text: Raw model output

    Returns:
        Parsed object, or None when nothing parses to a JSON object
    """
    raw = strip_json_code_fences(text)
    if not raw:
        return None

    try:
        parsed = json.loads(raw)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    match = _OUTERMOST_OBJECT.search(raw)
    if match:
        try:
            parsed = json.loads(match.group(0))
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            return None
    return None
