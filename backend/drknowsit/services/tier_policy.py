"""Tier Policy Resolver.

Maps a subscription tier and the account's per-datatype priority records to
an inclusion policy for health record summaries, and holds the other
tier-dependent rules used across the chat pipeline: confidence bands for
AI-generated topics, the basic-tier record allow-list and doctor-note caps.

Everything here is a pure function of its arguments. Absent data yields
empty partitions, never an error.
"""

import logging
from collections.abc import Iterable, Sequence
from typing import TypeVar

from drknowsit.schemas.context import (
    DoctorNoteItem,
    HealthDataPriorityItem,
    HealthRecordSummaryItem,
    NoteType,
    PriorityLevel,
    SubscriptionTier,
    TierPartitions,
)

logger = logging.getLogger(__name__)

# Normal-priority summaries shown before the "+N more" marker
NORMAL_SUMMARY_CAP = 3

# Confidence band (low, high) applied to AI-generated topics per tier
TIER_CONFIDENCE_BANDS: dict[SubscriptionTier, tuple[float, float]] = {
    SubscriptionTier.FREE: (0.10, 0.40),
    SubscriptionTier.BASIC: (0.20, 0.60),
    SubscriptionTier.PRO: (0.30, 0.80),
}

# Active doctor notes included per note type
DOCTOR_NOTE_CAPS: dict[NoteType, int] = {
    NoteType.PATTERN: 3,
    NoteType.CONCERN: 3,
    NoteType.PREFERENCE: 2,
    NoteType.INSIGHT: 3,
}

# Record types -> priority assigned when a summary is generated
_ALWAYS_RECORD_TYPES = frozenset({
    "demographics", "vitals", "family_history",
    "medications", "allergies", "recent_trauma",
})
_CONDITIONAL_RECORD_TYPES = frozenset({"dna", "detailed_forms", "lifestyle"})

# Record types visible to the basic tier
BASIC_HUMAN_RECORD_TYPES = frozenset({
    "general_health_notes",
    "personal_demographics",
    "medical_history",
    "vital_signs_current",
    "patient_observations",
})
BASIC_PET_RECORD_TYPES = frozenset({
    "pet_general_notes",
    "pet_basic_info",
    "pet_current_health",
    "pet_health_observations",
    "pet_veterinary_history",
    "pet_behavior_lifestyle",
    "pet_diet_nutrition",
    "pet_emergency_contacts",
})

T = TypeVar("T")


def coerce_tier(value: str | SubscriptionTier | None) -> SubscriptionTier:
    """Parse a stored tier string, defaulting to free for unknown values."""
    if isinstance(value, SubscriptionTier):
        return value
    try:
        return SubscriptionTier((value or "free").lower())
    except ValueError:
        logger.warning("Unknown subscription tier %r, treating as free", value)
        return SubscriptionTier.FREE


def priorities_for_tier(
    tier: SubscriptionTier,
    priorities: Iterable[HealthDataPriorityItem],
) -> list[HealthDataPriorityItem]:
    """Return priority records applicable to a tier (unscoped ones apply to all)."""
    return [
        p for p in priorities
        if p.subscription_tier is None or p.subscription_tier == tier
    ]


def resolve_tier_policy(
    tier: SubscriptionTier,
    priorities: Iterable[HealthDataPriorityItem],
    summaries: Sequence[HealthRecordSummaryItem],
) -> TierPartitions:
    """Partition health record summaries by inclusion policy.

    Args:
        tier: Caller's subscription tier
        priorities: Per-datatype priority records (optionally tier-scoped)
        summaries: Available summaries, most recent first

    Returns:
        TierPartitions with always / conditional / capped normal summaries
    """
    applicable = priorities_for_tier(tier, priorities)
    has_conditional_priority = any(
        p.priority_level == PriorityLevel.CONDITIONAL for p in applicable
    )
    include_conditional = tier == SubscriptionTier.PRO or (
        tier == SubscriptionTier.BASIC and has_conditional_priority
    )

    always = [s for s in summaries if s.priority_level == PriorityLevel.ALWAYS]
    conditional = (
        [s for s in summaries if s.priority_level == PriorityLevel.CONDITIONAL]
        if include_conditional
        else []
    )
    normal_all = [s for s in summaries if s.priority_level == PriorityLevel.NORMAL]

    return TierPartitions(
        always=always,
        conditional=conditional,
        normal=normal_all[:NORMAL_SUMMARY_CAP],
        normal_omitted=max(0, len(normal_all) - NORMAL_SUMMARY_CAP),
        include_conditional=include_conditional,
    )


def clamp_confidence(tier: SubscriptionTier, value: float) -> float:
    """Clamp a confidence score into the tier's band."""
    low, high = TIER_CONFIDENCE_BANDS[tier]
    return min(high, max(low, value))


def priority_for_record_type(record_type: str) -> PriorityLevel:
    """Priority level assigned to a summary of the given record type."""
    if record_type in _ALWAYS_RECORD_TYPES:
        return PriorityLevel.ALWAYS
    if record_type in _CONDITIONAL_RECORD_TYPES:
        return PriorityLevel.CONDITIONAL
    return PriorityLevel.NORMAL


def allowed_record_types(tier: SubscriptionTier, is_pet: bool) -> frozenset[str] | None:
    """Record types visible to a tier, or None when unrestricted."""
    if tier != SubscriptionTier.BASIC:
        return None
    return BASIC_PET_RECORD_TYPES if is_pet else BASIC_HUMAN_RECORD_TYPES


def filter_records_for_tier(records: Sequence[T], tier: SubscriptionTier, is_pet: bool) -> list[T]:
    """Drop records the tier may not see. Records need a `record_type` attribute."""
    allowed = allowed_record_types(tier, is_pet)
    if allowed is None:
        return list(records)
    filtered = [r for r in records if getattr(r, "record_type", None) in allowed]
    logger.info(
        "Filtered health records for %s tier: %d/%d",
        tier.value, len(filtered), len(records),
    )
    return filtered


def select_doctor_notes(notes: Iterable[DoctorNoteItem]) -> list[DoctorNoteItem]:
    """Active notes only, capped per note type, grouped in type order."""
    selected: list[DoctorNoteItem] = []
    active = [n for n in notes if n.is_active]
    for note_type, cap in DOCTOR_NOTE_CAPS.items():
        selected.extend([n for n in active if n.note_type == note_type][:cap])
    return selected
