"""Diagnosis candidate schemas."""

from datetime import datetime

from pydantic import BaseModel, Field


class DiagnosisCandidate(BaseModel):
    """A named possible health topic to discuss with a doctor.

    Not a medical diagnosis. Uniqueness key within a patient is `name`.
    """

    name: str = Field(min_length=1, description="Diagnosis / health topic text")
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: str = Field(default="")
    updated_at: datetime | None = None


class ExtractionResult(BaseModel):
    """Output of the response extractor."""

    clean_response: str
    extracted_diagnoses: list[DiagnosisCandidate] = Field(default_factory=list)
