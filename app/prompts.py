"""Prompt templates for diagnostic question generation."""

from typing import Any, Dict

DIAGNOSTIC_SYSTEM_EN = """You are an assessment designer. Produce ONLY valid, parseable JSON and keep text minimal.

Quality rules (apply internally, do NOT output your working):
- For any arithmetic or factual item, solve it and check the result before writing the options.
- The correct answer must be correct and must appear in the options exactly once.
- Distractors must be wrong but plausible.
- Explanations are a single sentence, never step-by-step.
- Never rely on pictures. Describe shapes and objects through their properties in text."""

DIAGNOSTIC_SYSTEM_ZH = """你是出题与诊断的老师，只输出严格、可解析的 JSON，文字尽量简短。

质量要求（在内部完成计算与自检，不要输出过程）：
- 数学或事实类题目必须先算出答案并复核。
- 正确答案必须正确，并且在选项中只出现一次。
- 干扰项必须错误但合理。
- 解析只写一句话，不写详细步骤。
- 不要依赖图片，图形题请用文字描述其性质。"""

DIAGNOSTIC_USER_EN = """Generate a diagnostic test for this student: {{student_profile}}.
Grade/difficulty guidance (MUST follow): {{grade_guidance}}

Generate exactly {{num_questions}} questions. Every question is a multiple-choice item (type "mcq") with exactly 4 options in each language (options.en and options.zh both have length 4) and exactly one correct answer. Reference snippets: {{retrieval_snippets}}.

Metadata (used for deduplication, must be specific and language-independent):
- Every question has a "metadata" object. Free-text values inside metadata are English only.
- MATH questions use exactly: {"type": "division"|"multiplication"|"addition"|"subtraction"|"fraction"|"geometry"|"other", "nums": number[], "context": string|null}, e.g. {"type":"division","nums":[12,3],"context":"apples"}.
- Vocabulary questions use {"type":"vocabulary","word":"apple","context":"fruit"}; other subjects may use any stable object.
- Avoid questions similar to these frequent metadata patterns of this student: {{avoid_metadata}}.
- When a story template repeats, change the numbers; do not reuse the same type/nums/result.

Knowledge points are pre-seeded, do not invent new ones: {{knowledge_points}}.
Knowledge point plan (length {{num_questions}}): {{knowledge_point_ids_plan}}. Question i (0-based) MUST have knowledge_point_id === knowledge_point_ids_plan[i].

Return strict JSON: {"lesson": {"title","explanation","images":[]}, "questions": [{"id","type":"mcq","content_cn":"string","content_en":"string","options":{"zh":["string","string","string","string"],"en":["string","string","string","string"]},"answer_cn":"string","answer_en":"string","explanation_cn":"string","explanation_en":"string","knowledge_point_id":123,"metadata":{...}}]}. Content, options, answers and explanations are required in both Chinese and English. Return nothing but JSON."""

DIAGNOSTIC_USER_ZH = """为该学生生成诊断测试：{{student_profile}}。
年级/难度要求（必须遵守）：{{grade_guidance}}

严格生成 {{num_questions}} 道题。每题都是 4 选 1 的选择题（type 为 "mcq"，options.en 与 options.zh 长度都为 4），且只有一个正确答案。参考片段：{{retrieval_snippets}}。

metadata（用于去重，必须具体且与语言无关）：
- 每题都要有 metadata 对象，其中自由文本只用英文。
- 数学题必须使用：{"type":"division"|"multiplication"|"addition"|"subtraction"|"fraction"|"geometry"|"other","nums":number[],"context":string|null}，例如 {"type":"division","nums":[12,3],"context":"apples"}。
- 词汇题使用 {"type":"vocabulary","word":"apple","context":"fruit"}；其他学科可使用任意稳定对象。
- 避开与该学生高频 metadata 模式相似的题目：{{avoid_metadata}}。
- 情境相似时请更换数字，不要重复相同的 type/nums/结果。

知识点已预先录入，不要自造：{{knowledge_points}}。
知识点分配计划（长度 {{num_questions}}）：{{knowledge_point_ids_plan}}。第 i 题（从 0 开始）必须满足 knowledge_point_id === knowledge_point_ids_plan[i]。

返回严格 JSON：{"lesson": {"title","explanation","images":[]}, "questions": [{"id","type":"mcq","content_cn":"string","content_en":"string","options":{"zh":["string","string","string","string"],"en":["string","string","string","string"]},"answer_cn":"string","answer_en":"string","explanation_cn":"string","explanation_en":"string","knowledge_point_id":123,"metadata":{...}}]}。题干、选项、答案、解析都必须同时提供中英文。只返回 JSON。"""

DIAGNOSTIC_PROMPTS: Dict[str, Dict[str, str]] = {
    "en": {"system": DIAGNOSTIC_SYSTEM_EN, "user": DIAGNOSTIC_USER_EN},
    "zh": {"system": DIAGNOSTIC_SYSTEM_ZH, "user": DIAGNOSTIC_USER_ZH},
}


def render_template(template: str, variables: Dict[str, Any]) -> str:
    """
    Replace every ``{{name}}`` placeholder with its value.

    Args:
        template: Template text
        variables: Placeholder values (converted with ``str``)

    Returns:
        Rendered text
    """
    out = str(template or "")
    for key, value in (variables or {}).items():
        out = out.replace("{{" + key + "}}", str(value))
    return out


def diagnostic_prompts(lang: str) -> Dict[str, str]:
    """Return the system/user templates for ``lang``, defaulting to Chinese."""
    return DIAGNOSTIC_PROMPTS["en" if lang == "en" else "zh"]
