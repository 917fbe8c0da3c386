"""Grade/difficulty guidance injected into generation prompts."""

import re
from typing import Any, Dict, Optional


def parse_grade_level(raw: Any) -> Optional[int]:
    """
    Parse a loose grade code into a numeric level.

    ``KG`` is level 0, ``G3`` is 3, otherwise the first integer found.

    Args:
        raw: Grade code or display name

    Returns:
        Grade level, or None if no level can be recovered
    """
    text = ("" if raw is None else str(raw)).strip()
    if not text:
        return None
    if text.upper() == "KG":
        return 0
    match = re.fullmatch(r"G(\d+)", text, flags=re.IGNORECASE)
    if match:
        return int(match.group(1))
    match = re.search(r"(\d+)", text)
    if match:
        return int(match.group(1))
    return None


def get_grade_guidance(
    lang: str,
    student_profile: Optional[Dict[str, Any]] = None,
    grade_level: Optional[int] = None,
    grade_code: Optional[str] = None,
    subject_code: Optional[str] = None,
) -> str:
    """
    Build the guidance sentence for the prompt.

    Curriculum notes configured on the grade/subject pairing are used
    verbatim; otherwise a short scope reminder is produced.

    Args:
        lang: "zh" or "en"
        student_profile: Profile dict, may carry grade_subject_notes and codes
        grade_level: Parsed grade level
        grade_code: Grade code such as "G3"
        subject_code: Subject code such as "math"

    Returns:
        Guidance text
    """
    profile = student_profile or {}
    notes = str(profile.get("grade_subject_notes") or "").strip()
    if notes:
        return notes

    sc = subject_code if subject_code is not None else profile.get("subject_code")
    sc = str(sc) if sc is not None else ""
    gc = grade_code if grade_code is not None else profile.get("grade_code")
    gc = str(gc) if gc is not None else ""
    level = grade_level if grade_level is not None else profile.get("grade_level")

    if lang != "en":
        if gc:
            grade_hint = f"（{gc}）"
        elif isinstance(level, int):
            grade_hint = f"（G{level}）"
        else:
            grade_hint = ""
        subject_hint = f"（{sc}）" if sc else ""
        return (
            f"请严格围绕 knowledge_points 出题，并匹配该年级{grade_hint}与学科{subject_hint}"
            "的常见范围与难度；不要超纲。"
        )

    grade_hint = gc or (f"G{level}" if isinstance(level, int) else "")
    return (
        "Stay strictly within the provided knowledge_points and match the typical "
        f"scope/difficulty for grade {grade_hint or '(unknown)'} and subject "
        f"{sc or '(unknown)'}; do not go beyond scope."
    )
