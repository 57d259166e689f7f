"""Patient, doctor-note and health-record summary API schemas."""

import uuid
from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field

from drknowsit.schemas.context import NoteType, PriorityLevel
from drknowsit.schemas.diagnosis import DiagnosisCandidate


class PatientResponse(BaseModel):
    """Patient as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    first_name: str
    last_name: str | None = None
    date_of_birth: date | None = None
    gender: str | None = None
    relationship: str | None = None
    is_primary: bool = False
    is_pet: bool = False
    species: str | None = None
    probable_diagnoses: list[DiagnosisCandidate] = Field(default_factory=list)


class DoctorNoteResponse(BaseModel):
    """Doctor note as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    patient_id: uuid.UUID | None = None
    note_type: NoteType
    title: str
    content: str
    is_active: bool
    confidence_score: float | None = None


class DoctorNoteUpdate(BaseModel):
    """Partial update for a doctor note."""

    is_active: bool | None = None
    title: str | None = Field(default=None, min_length=1, max_length=255)
    content: str | None = Field(default=None, min_length=1)


class HealthRecordSummaryResponse(BaseModel):
    """Health record summary as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    health_record_id: uuid.UUID
    summary_text: str
    priority_level: PriorityLevel
    created_at: datetime | None = None


class SummarizeRequest(BaseModel):
    """Options for summarizing a health record."""

    force_regenerate: bool = False


class SummarizeResponse(BaseModel):
    """Summary of a health record and whether it was generated by this call."""

    summary: HealthRecordSummaryResponse
    generated: bool


class MemoryAnalysisRequest(BaseModel):
    """Request body for conversation memory analysis."""

    patient_id: uuid.UUID


class MemoryAnalysisResponse(BaseModel):
    """Doctor notes created from a conversation."""

    memory_updated: bool
    notes: list[DoctorNoteResponse] = Field(default_factory=list)
