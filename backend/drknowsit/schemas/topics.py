"""Health-topic analysis schemas."""

import uuid
from typing import Literal

from pydantic import BaseModel, Field

TopicCategory = Literal[
    "musculoskeletal", "dermatological", "gastrointestinal", "cardiovascular",
    "respiratory", "neurological", "genitourinary", "endocrine", "psychiatric",
    "infectious", "environmental", "other",
]

SolutionCategory = Literal[
    "lifestyle", "stress", "sleep", "nutrition", "exercise", "mental_health",
]


class Topic(BaseModel):
    """Health topic for discussion, confidence clamped to the tier band."""

    topic: str
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = "No reasoning provided"
    category: str = "other"


class Solution(BaseModel):
    """Non-medication wellness suggestion."""

    solution: str
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = "No reasoning provided"
    category: str = "lifestyle"


class TopicAnalysisRequest(BaseModel):
    """Request body for health-topic analysis."""

    conversation_id: uuid.UUID | None = None
    patient_id: uuid.UUID
    conversation_context: str = Field(min_length=1)
    conversation_type: Literal["easy_chat", "regular_chat"] = "regular_chat"
    include_solutions: bool = True
    analysis_mode: str | None = None


class TopicAnalysisResponse(BaseModel):
    """Health-topic analysis result."""

    topics: list[Topic] = Field(default_factory=list)
    solutions: list[Solution] | None = None
    testing_recommendations: list[str] | None = None
    cached: bool = False
