"""Pydantic models for the diagnostic batch endpoint."""
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from app.models.question_models import AssembledQuestion, Lesson


class DiagnosticRequest(BaseModel):
    """Request model for assembling a diagnostic batch."""

    student_user_ids: List[int] = Field(
        ..., min_length=1, description="Student account ids whose history is merged"
    )
    grade_id: int = Field(..., description="Grade id")
    subject_id: int = Field(..., description="Subject id")
    knowledge_point_id: Optional[int] = Field(
        None, description="Restrict the batch to one knowledge point"
    )
    lang: Literal["zh", "en"] = Field(default="zh", description="Prompt language")
    num_questions: Optional[int] = Field(
        default=None, ge=1, le=20, description="Batch size (defaults to the configured count)"
    )
    grade_code: Optional[str] = Field(None, description="Grade code such as G3 or KG")
    subject_code: Optional[str] = Field(None, description="Subject code such as math")

    @field_validator("student_user_ids")
    @classmethod
    def dedupe_user_ids(cls, value: List[int]) -> List[int]:
        return list(dict.fromkeys(value))

    model_config = {
        "json_schema_extra": {
            "example": {
                "student_user_ids": [17],
                "grade_id": 3,
                "subject_id": 1,
                "lang": "en",
                "num_questions": 5,
                "grade_code": "G3",
                "subject_code": "math",
            }
        }
    }


class DiagnosticResponse(BaseModel):
    """Response model for an assembled diagnostic batch."""

    generated: bool = Field(..., description="Whether any question was newly generated")
    lesson: Optional[Lesson] = Field(None, description="Lesson header from generation")
    questions: List[AssembledQuestion] = Field(..., description="Questions with persisted ids")
    from_store: int = Field(0, description="Questions taken from the existing pool")
    generated_count: int = Field(0, description="Questions generated and committed")
