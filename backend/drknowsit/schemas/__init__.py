"""Pydantic schemas."""

from drknowsit.schemas.chat import ChatMessage, ChatRequest, ChatResponse, MessageResponse
from drknowsit.schemas.context import (
    AISettingsConfig,
    DoctorNoteItem,
    HealthDataPriorityItem,
    HealthFormItem,
    HealthRecordSummaryItem,
    HistoryMessage,
    NoteType,
    PatientSnapshot,
    PriorityLevel,
    PromptContext,
    SubscriptionTier,
    TierPartitions,
)
from drknowsit.schemas.diagnosis import DiagnosisCandidate, ExtractionResult
from drknowsit.schemas.records import DoctorNoteResponse, DoctorNoteUpdate, PatientResponse
from drknowsit.schemas.topics import (
    Solution,
    Topic,
    TopicAnalysisRequest,
    TopicAnalysisResponse,
)

__all__ = [
    "AISettingsConfig",
    "ChatMessage",
    "ChatRequest",
    "ChatResponse",
    "DiagnosisCandidate",
    "DoctorNoteItem",
    "DoctorNoteResponse",
    "DoctorNoteUpdate",
    "ExtractionResult",
    "HealthDataPriorityItem",
    "HealthFormItem",
    "HealthRecordSummaryItem",
    "HistoryMessage",
    "MessageResponse",
    "NoteType",
    "PatientResponse",
    "PatientSnapshot",
    "PriorityLevel",
    "PromptContext",
    "Solution",
    "SubscriptionTier",
    "TierPartitions",
    "Topic",
    "TopicAnalysisRequest",
    "TopicAnalysisResponse",
]
