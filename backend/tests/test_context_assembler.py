"""Tests for the context assembler (system prompt construction)."""

from datetime import date, datetime, timezone

import pytest

from drknowsit.schemas.context import (
    AISettingsConfig,
    DoctorNoteItem,
    HealthFormItem,
    HealthRecordSummaryItem,
    HistoryMessage,
    NoteType,
    PatientSnapshot,
    PriorityLevel,
    PromptContext,
    SubscriptionTier,
)
from drknowsit.services.context_assembler import (
    CLIENT_HISTORY_LIMIT,
    MEMORY_HISTORY_LIMIT,
    NO_HEALTH_RECORDS_LINE,
    build_system_prompt,
    calculate_age_range,
    detect_pain_body_part,
    select_history,
)
from drknowsit.services.tier_policy import resolve_tier_policy

NOW = datetime(2026, 3, 14, 15, 9, 26, tzinfo=timezone.utc)


@pytest.fixture
def human_patient() -> PatientSnapshot:
    return PatientSnapshot(
        first_name="Jane",
        last_name="Doe",
        date_of_birth=date(1988, 4, 12),
        gender="female",
        relationship="self",
        is_primary=True,
    )


@pytest.fixture
def pet_patient() -> PatientSnapshot:
    return PatientSnapshot(
        first_name="Rex",
        date_of_birth=date(2019, 1, 1),
        gender="male",
        relationship="pet",
        is_pet=True,
        species="dog",
    )


class TestFreeTierEmptyContext:
    """A free-tier user with no records and no doctor notes."""

    def test_contains_no_records_marker_and_no_notes_section(self, human_patient):
        context = PromptContext(
            tier=SubscriptionTier.FREE,
            patient=human_patient,
            message="I feel tired",
        )

        prompt = build_system_prompt(context, now=NOW)

        assert NO_HEALTH_RECORDS_LINE in prompt
        assert "DOCTOR NOTES" not in prompt

    def test_no_patient_still_reports_no_records(self):
        prompt = build_system_prompt(PromptContext(message="Hello"), now=NOW)

        assert "NO PATIENT CONTEXT" in prompt
        assert NO_HEALTH_RECORDS_LINE in prompt
        assert "PATIENT PROFILE" not in prompt


class TestSectionOrdering:
    def test_sections_appear_in_fixed_order(self, human_patient):
        summaries = [
            HealthRecordSummaryItem(
                title="Allergies",
                record_type="allergies",
                summary_text="Penicillin",
                priority_level=PriorityLevel.ALWAYS,
            )
        ]
        context = PromptContext(
            tier=SubscriptionTier.PRO,
            patient=human_patient,
            partitions=resolve_tier_policy(SubscriptionTier.PRO, [], summaries),
            doctor_notes=[
                DoctorNoteItem(note_type=NoteType.CONCERN, title="Migraines", content="Recurring")
            ],
            health_forms=[HealthFormItem(title="Intake", record_type="vitals", data={"bp": "120/80"})],
            history=[HistoryMessage(type="user", content="Hi")],
            message="Hello",
        )

        prompt = build_system_prompt(context, now=NOW)

        markers = [
            "SUBSCRIPTION TIER: pro",
            "CONVERSATION MEMORY (enabled)",
            "DOCTOR NOTES (AI Memory):",
            "PATIENT PROFILE:",
            "HEALTH RECORDS:",
            "HEALTH DATA SUMMARY",
            "CRITICAL COMMUNICATION RULES:",
            "PERSONALIZATION:",
            "OUTPUT FORMAT:",
        ]
        positions = [prompt.index(m) for m in markers]
        assert positions == sorted(positions)

    def test_prompt_is_deterministic(self, human_patient):
        context = PromptContext(patient=human_patient, message="Hello")
        assert build_system_prompt(context, now=NOW) == build_system_prompt(context, now=NOW)


class TestPatientProfile:
    def test_profile_is_deidentified(self, human_patient):
        prompt = build_system_prompt(PromptContext(patient=human_patient, message="Hi"), now=NOW)

        assert "Jane" not in prompt
        assert "1988-04-12" not in prompt
        assert "Age Range: 30-39" in prompt

    def test_pet_profile_and_rules(self, pet_patient):
        prompt = build_system_prompt(PromptContext(patient=pet_patient, message="Hi"), now=NOW)

        assert "Species: dog" in prompt
        assert "pet health assistant" in prompt
        assert "anthropomorphizing" in prompt


class TestHealthRecords:
    def test_omitted_normal_records_marker(self, human_patient):
        summaries = [
            HealthRecordSummaryItem(
                title=f"Note {i}",
                record_type="general_health_notes",
                summary_text="text",
            )
            for i in range(5)
        ]
        context = PromptContext(
            patient=human_patient,
            partitions=resolve_tier_policy(SubscriptionTier.FREE, [], summaries),
            message="Hi",
        )

        prompt = build_system_prompt(context, now=NOW)

        assert "Recent records:" in prompt
        assert "[+2 more records omitted for brevity]" in prompt
        assert NO_HEALTH_RECORDS_LINE not in prompt


class TestMemoryAndPersonalization:
    def test_memory_disabled(self, human_patient):
        context = PromptContext(
            patient=human_patient,
            ai_settings=AISettingsConfig(memory_enabled=False, personalization_level="low"),
            message="Hi",
        )

        prompt = build_system_prompt(context, now=NOW)

        assert "MEMORY SETTING: disabled" in prompt
        assert "CONVERSATION MEMORY: Disabled by user preference" in prompt
        assert "Treat each message independently" in prompt


class TestPainAssessment:
    def test_basic_tier_pain_with_body_part(self, human_patient):
        context = PromptContext(
            tier=SubscriptionTier.BASIC,
            patient=human_patient,
            message="I have a sharp pain in my knee",
        )

        prompt = build_system_prompt(context, now=NOW)

        assert "ENHANCED PAIN ASSESSMENT" in prompt
        assert "where in your knee" in prompt

    def test_free_tier_has_no_pain_assessment(self, human_patient):
        context = PromptContext(
            tier=SubscriptionTier.FREE,
            patient=human_patient,
            message="I have a sharp pain in my knee",
        )

        assert "ENHANCED PAIN ASSESSMENT" not in build_system_prompt(context, now=NOW)

    def test_detect_pain_body_part(self):
        assert detect_pain_body_part("My back hurts") == "back"
        assert detect_pain_body_part("My back is fine") is None
        assert detect_pain_body_part("Everything aches") is None


class TestHelpers:
    @pytest.mark.parametrize(
        "dob,expected",
        [
            (date(2010, 6, 1), "0-17"),
            (date(2000, 3, 14), "18-29"),
            (date(1990, 3, 15), "30-39"),
            (date(1940, 1, 1), "80+"),
        ],
    )
    def test_calculate_age_range(self, dob, expected):
        assert calculate_age_range(dob, today=date(2026, 3, 14)) == expected

    def test_calculate_age_range_unknown(self):
        assert calculate_age_range(None) is None

    def test_select_history_memory_uses_stored(self):
        stored = [HistoryMessage(type="user", content=str(i)) for i in range(15)]
        client = [HistoryMessage(type="user", content="client")]

        history = select_history(True, stored, client)

        assert len(history) == MEMORY_HISTORY_LIMIT
        assert history[-1].content == "14"

    def test_select_history_falls_back_to_client(self):
        client = [HistoryMessage(type="ai", content=str(i)) for i in range(10)]

        assert len(select_history(False, [], client)) == CLIENT_HISTORY_LIMIT
        assert len(select_history(True, None, client)) == CLIENT_HISTORY_LIMIT
