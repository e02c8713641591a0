from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field


class CodeStep(BaseModel):
    """Intermediate step: reasoning plus the Python code to run next."""

    thought: str
    code: str


class TextResponse(BaseModel):
    answer: str


class JsonResponse(BaseModel):
    data: Dict[str, Any] = Field(default_factory=dict)


class ValidationVerdict(BaseModel):
    """Structured output of the AI judge."""

    decision: Literal["approve", "reject", "modify", "feedback"]
    reasoning: str = ""
    modified_code: Optional[str] = None
    feedback_message: Optional[str] = None
    safety_score: int = Field(default=0, ge=0, le=100)
