"""Prompt-context schemas for the Context Assembler.

These schemas are the explicit parameter object passed into prompt assembly.
Externally-owned state (subscription tier, AI settings) is loaded once per
request and carried here rather than read from globals, so prompt assembly
stays a pure function of its input.
"""

import enum
from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class SubscriptionTier(str, enum.Enum):
    """Billing tier gating context inclusion and confidence ranges."""

    FREE = "free"
    BASIC = "basic"
    PRO = "pro"


class PriorityLevel(str, enum.Enum):
    """Inclusion priority of a health record summary."""

    ALWAYS = "always"
    CONDITIONAL = "conditional"
    NORMAL = "normal"


class NoteType(str, enum.Enum):
    """Doctor note categories."""

    PATTERN = "pattern"
    CONCERN = "concern"
    PREFERENCE = "preference"
    INSIGHT = "insight"


class AISettingsConfig(BaseModel):
    """User AI settings as consumed by prompt assembly."""

    memory_enabled: bool = Field(default=True, description="Use stored conversation memory")
    personalization_level: Literal["low", "medium", "high"] = Field(
        default="medium",
        description="How strongly responses are tailored to the patient",
    )


class HealthDataPriorityItem(BaseModel):
    """Per-datatype priority record, optionally scoped to a tier."""

    data_type: str
    priority_level: PriorityLevel
    subscription_tier: SubscriptionTier | None = Field(
        default=None,
        description="Tier this priority applies to (None = all tiers)",
    )


class HealthRecordSummaryItem(BaseModel):
    """Summary of a health record - the unit of contextual inclusion."""

    title: str
    record_type: str
    summary_text: str
    priority_level: PriorityLevel = PriorityLevel.NORMAL
    created_at: datetime | None = None


class HealthFormItem(BaseModel):
    """Raw health form (record) data shown as a brief excerpt."""

    title: str
    record_type: str
    data: dict[str, Any] | None = None


class DoctorNoteItem(BaseModel):
    """Doctor note as included in the prompt."""

    note_type: NoteType
    title: str
    content: str
    is_active: bool = True
    confidence_score: float | None = None


class PatientSnapshot(BaseModel):
    """Patient identity fields. Only de-identified parts reach the prompt."""

    first_name: str
    last_name: str | None = None
    date_of_birth: date | None = None
    gender: str | None = None
    relationship: str | None = None
    is_primary: bool = False
    is_pet: bool = False
    species: str | None = None


class HistoryMessage(BaseModel):
    """Prior conversation message."""

    type: Literal["user", "ai"]
    content: str
    image_url: str | None = None


class TierPartitions(BaseModel):
    """Health record summaries partitioned by the tier policy."""

    always: list[HealthRecordSummaryItem] = Field(default_factory=list)
    conditional: list[HealthRecordSummaryItem] = Field(default_factory=list)
    normal: list[HealthRecordSummaryItem] = Field(
        default_factory=list,
        description="First normal-priority summaries (capped)",
    )
    normal_omitted: int = Field(default=0, description="Normal summaries cut by the cap")
    include_conditional: bool = False

    def total_count(self) -> int:
        """Return number of summaries that will be shown."""
        return len(self.always) + len(self.conditional) + len(self.normal)

    def is_empty(self) -> bool:
        return self.total_count() == 0 and self.normal_omitted == 0


class PromptContext(BaseModel):
    """Everything the Context Assembler needs for one chat turn."""

    tier: SubscriptionTier = SubscriptionTier.FREE
    ai_settings: AISettingsConfig = Field(default_factory=AISettingsConfig)
    patient: PatientSnapshot | None = None
    partitions: TierPartitions = Field(default_factory=TierPartitions)
    doctor_notes: list[DoctorNoteItem] = Field(default_factory=list)
    health_forms: list[HealthFormItem] = Field(default_factory=list)
    history: list[HistoryMessage] = Field(default_factory=list)
    message: str = ""
    image_url: str | None = None
