"""Context Assembler: builds the system prompt for one chat turn.

Given a PromptContext (tier, AI settings, patient, tier-partitioned record
summaries, doctor notes, health forms, history and the current message), it
produces a deterministic prompt string with fixed section ordering:

    settings -> memory / doctor notes -> patient profile -> health records
    -> health forms -> core instructions -> personalization -> output format

This module does no I/O. Fresh external state is gathered by
ContextLoader and passed in explicitly.
"""

import json
import logging
from collections.abc import Sequence
from datetime import date, datetime, timezone

from drknowsit.schemas.context import (
    DoctorNoteItem,
    HealthFormItem,
    HealthRecordSummaryItem,
    HistoryMessage,
    NoteType,
    PatientSnapshot,
    PromptContext,
    SubscriptionTier,
    TierPartitions,
)
from drknowsit.services.tier_policy import select_doctor_notes

logger = logging.getLogger(__name__)

# History windows
MEMORY_HISTORY_LIMIT = 10
CLIENT_HISTORY_LIMIT = 6

# Health form excerpts
MAX_HEALTH_FORMS = 5
FORM_EXCERPT_CHARS = 100

# Per-summary text cap inside the health records section
SUMMARY_EXCERPT_CHARS = 300

NO_HEALTH_RECORDS_LINE = "No health records available"

PAIN_KEYWORDS = (
    "pain", "hurt", "ache", "sore", "tender", "throb",
    "sharp", "dull", "burning", "stab",
)
BODY_PARTS = (
    "arm", "leg", "back", "neck", "head", "chest", "stomach", "abdomen",
    "shoulder", "knee", "ankle", "wrist", "elbow", "hip",
)

# (upper bound exclusive, label) age buckets; anything older is "80+"
_AGE_BUCKETS = (
    (18, "0-17"),
    (30, "18-29"),
    (40, "30-39"),
    (50, "40-49"),
    (60, "50-59"),
    (70, "60-69"),
    (80, "70-79"),
)

_NOTE_HEADINGS = {
    NoteType.PATTERN: "Health Patterns:",
    NoteType.CONCERN: "Ongoing Concerns:",
    NoteType.PREFERENCE: "User Preferences:",
    NoteType.INSIGHT: "Key Insights:",
}

HUMAN_RULES = (
    "Don't assume worst case scenario right away - the user may be slightly over-exaggerating symptoms",
    "Consider anxiety, stress, sleep debt, and burnout first when symptoms align (especially in workaholics or poor sleepers)",
    "Always ask questions to increase confidence before leaning toward possibilities",
    "If confidence isn't increasing, shift approach to explore other causes",
    "Keep conversations medically focused unless non-medical relates to mental health or lifestyle",
    "Never diagnose; instead, propose possibilities and uncertainties in plain language",
    "Get easy data first like the user's environment, diet, lifestyle, etc. if it is unknown",
    "Acknowledge emotions before digging deeper into symptoms when the user is distressed",
    "Escalate urgency only if clear red-flag symptoms appear; otherwise remain calm, curious, and supportive",
)

PET_RULES = (
    "Don't assume worst case scenario right away - pet owners may be over-exaggerating symptoms or anthropomorphizing normal pet behaviors",
    "Consider environmental changes, diet changes, stress from new situations, or routine disruptions first when symptoms align",
    "Always ask questions about specific observations to increase confidence before leaning toward possibilities",
    "If confidence isn't increasing, shift approach to explore other causes like breed-specific issues, age-related changes, or environmental factors",
    "Keep conversations focused on observable pet behaviors, physical symptoms, and environmental factors",
    "When examining pet symptoms, look into any potential behavioral patterns, eating/drinking changes, or activity level shifts",
    "If the owner asks for solutions, suggest low-risk environmental or behavioral approaches first, but only as suggestions",
    "Always consider species-specific and breed-specific health predispositions when evaluating symptoms",
    "Never diagnose; instead, propose possibilities and uncertainties in plain language appropriate for pet health",
    "Get easy data first like the pet's environment, diet, routine, recent changes, etc. if it is unknown",
    "Escalate urgency only if clear red-flag symptoms appear (difficulty breathing, seizures, collapse, bloating in large dogs, inability to urinate, etc.); otherwise remain calm, curious, and supportive",
)

CONVERSATION_STYLE = (
    "CONVERSATION STYLE:\n"
    "- 1-3 sentences maximum\n"
    "- Ask ONE simple follow-up question most of the time unless the user is asking a question.\n"
    "- Be conversational, bubbly, intelligent, and natural\n"
    "- No medical jargon unless the user is curious about details\n"
    "- No disclaimers"
)

_PERSONALIZATION_CLAUSES = {
    "low": "Keep responses general; reference the patient's history only when directly relevant.",
    "medium": "Tailor responses to the patient's profile and history where it helps the conversation.",
    "high": "Personalize responses closely to the patient's profile, records and remembered patterns.",
}

OUTPUT_FORMAT_INSTRUCTIONS = (
    "OUTPUT FORMAT:\n"
    "- Write your conversational reply as plain text first.\n"
    "- When the conversation suggests possible health topics to discuss with a doctor, "
    "append ONE JSON object at the very end of your reply, on its own line, in exactly this shape:\n"
    '  {"diagnoses": [{"diagnosis": "<topic name>", "confidence": <0.0-1.0>, '
    '"reasoning": "<short reason>"}]}\n'
    "- Include at most 5 entries. Omit the JSON entirely when there is nothing new to suggest.\n"
    "- Never mention the JSON, and never write a 'Possible diagnoses:' heading in the reply text."
)


def calculate_age_range(date_of_birth: date | None, today: date | None = None) -> str | None:
    """Bucket a birth date into a de-identified age range.

    Args:
        date_of_birth: Patient birth date, or None
        today: Reference date (defaults to today, UTC)

    Returns:
        Age range label such as "30-39" or "80+", or None if unknown
    """
    if date_of_birth is None:
        return None
    today = today or datetime.now(timezone.utc).date()
    age = today.year - date_of_birth.year - (
        (today.month, today.day) < (date_of_birth.month, date_of_birth.day)
    )
    age = max(0, age)
    for upper, label in _AGE_BUCKETS:
        if age < upper:
            return label
    return "80+"


def select_history(
    memory_enabled: bool,
    stored_messages: Sequence[HistoryMessage] | None,
    client_history: Sequence[HistoryMessage],
) -> list[HistoryMessage]:
    """Pick the message history sent with the prompt.

    With memory enabled and an existing conversation (`stored_messages` is not
    None), the last stored messages are used in chronological order. Otherwise
    the tail of the client-supplied history is used.
    """
    if memory_enabled and stored_messages is not None:
        return list(stored_messages)[-MEMORY_HISTORY_LIMIT:]
    return list(client_history)[-CLIENT_HISTORY_LIMIT:]


def detect_pain_body_part(message: str) -> str | None:
    """Return the first body part mentioned alongside a pain keyword."""
    lowered = message.lower()
    if not any(keyword in lowered for keyword in PAIN_KEYWORDS):
        return None
    return next((part for part in BODY_PARTS if part in lowered), None)


def _format_datetime(now: datetime) -> str:
    return now.astimezone(timezone.utc).strftime("%A, %B %d, %Y at %H:%M:%S UTC")


def _settings_section(context: PromptContext, now: datetime) -> str:
    memory = "enabled" if context.ai_settings.memory_enabled else "disabled"
    return (
        f"CURRENT DATE & TIME: {_format_datetime(now)}\n"
        f"SUBSCRIPTION TIER: {context.tier.value}\n"
        f"MEMORY SETTING: {memory}"
    )


def _memory_section(context: PromptContext) -> str | None:
    settings = context.ai_settings
    if not settings.memory_enabled:
        return "CONVERSATION MEMORY: Disabled by user preference"
    if not context.history:
        return None
    return (
        "CONVERSATION MEMORY (enabled):\n"
        "- Previous conversation context available for reference\n"
        f"- Personalization level: {settings.personalization_level}\n"
        f"- {len(context.history)} previous messages in context"
    )


def _doctor_notes_section(notes: Sequence[DoctorNoteItem]) -> str | None:
    selected = select_doctor_notes(notes)
    if not selected:
        return None

    lines = ["DOCTOR NOTES (AI Memory):"]
    for note_type, heading in _NOTE_HEADINGS.items():
        group = [n for n in selected if n.note_type == note_type]
        if not group:
            continue
        lines.append("")
        lines.append(heading)
        lines.extend(f"- {n.title}: {n.content}" for n in group)
    return "\n".join(lines)


def _patient_section(patient: PatientSnapshot, today: date) -> str:
    lines = ["PATIENT PROFILE:"]
    if patient.is_pet:
        lines.append(f"- Species: {patient.species or 'Not specified'}")
    lines.append(f"- Age Range: {calculate_age_range(patient.date_of_birth, today) or 'Not specified'}")
    lines.append(f"- Gender: {patient.gender or 'Not specified'}")
    lines.append(f"- Relationship: {patient.relationship or 'Not specified'}")
    lines.append(f"- Primary User: {'Yes' if patient.is_primary else 'No'}")
    return "\n".join(lines)


def _summary_line(summary: HealthRecordSummaryItem) -> str:
    text = " ".join(summary.summary_text.split())
    if len(text) > SUMMARY_EXCERPT_CHARS:
        text = text[:SUMMARY_EXCERPT_CHARS] + "..."
    return f"- {summary.title} ({summary.record_type}): {text}"


def _health_records_section(partitions: TierPartitions) -> str:
    lines = ["HEALTH RECORDS:"]
    if partitions.is_empty():
        lines.append(NO_HEALTH_RECORDS_LINE)
        return "\n".join(lines)

    if partitions.always:
        lines.append("Essential information:")
        lines.extend(_summary_line(s) for s in partitions.always)
    if partitions.conditional:
        lines.append("Additional priority information:")
        lines.extend(_summary_line(s) for s in partitions.conditional)
    if partitions.normal:
        lines.append("Recent records:")
        lines.extend(_summary_line(s) for s in partitions.normal)
    if partitions.normal_omitted:
        lines.append(f"[+{partitions.normal_omitted} more records omitted for brevity]")
    return "\n".join(lines)


def _health_forms_section(forms: Sequence[HealthFormItem]) -> str | None:
    if not forms:
        return None

    lines = [f"HEALTH DATA SUMMARY: {len(forms)} forms available"]
    for form in forms[:MAX_HEALTH_FORMS]:
        line = f"- {form.title}"
        if form.data:
            data_str = json.dumps(form.data, default=str)
            if len(data_str) > FORM_EXCERPT_CHARS:
                data_str = data_str[:FORM_EXCERPT_CHARS] + "..."
            line += f" ({data_str})"
        lines.append(line)
    if len(forms) > MAX_HEALTH_FORMS:
        lines.append(f"[{len(forms) - MAX_HEALTH_FORMS} more forms available]")
    return "\n".join(lines)


def _pain_assessment_section(context: PromptContext) -> str | None:
    if context.tier not in (SubscriptionTier.BASIC, SubscriptionTier.PRO):
        return None
    body_part = detect_pain_body_part(context.message)
    if body_part is None:
        return None
    return (
        "ENHANCED PAIN ASSESSMENT:\n"
        "If the user mentions pain in a general area, guide them through specific localization:\n"
        f'- Ask for the EXACT location: "Can you describe exactly where in your {body_part} the pain is?"\n'
        '- Suggest diagnostic movements: "Does the pain change when you move in certain ways?"\n'
        '- Ask about sensation type: "Is it a sharp, dull, throbbing, or burning sensation?"\n'
        '- Inquire about patterns: "When is it worst? (morning, evening, during activity, at rest)"\n'
        "- Consider interconnected causes and patterns across body systems"
    )


def _core_instructions(context: PromptContext, is_pet: bool) -> str:
    rules = PET_RULES if is_pet else HUMAN_RULES
    parts = [
        "CRITICAL COMMUNICATION RULES:\n" + "\n".join(f"- {rule}" for rule in rules),
        CONVERSATION_STYLE,
    ]
    pain = _pain_assessment_section(context)
    if pain:
        parts.append(pain)
    if context.image_url:
        parts.append(
            "The user has also shared an image with this message. "
            "Describe what you observe and ask about it."
        )
    return "\n\n".join(parts)


def _personalization_clause(context: PromptContext) -> str:
    settings = context.ai_settings
    clause = _PERSONALIZATION_CLAUSES[settings.personalization_level]
    if settings.memory_enabled:
        memory = "Use the conversation memory to provide personalized responses based on past interactions."
    else:
        memory = "Treat each message independently without referencing past conversations."
    return f"PERSONALIZATION:\n- {clause}\n- {memory}"


def build_system_prompt(context: PromptContext, *, now: datetime | None = None) -> str:
    """Assemble the system prompt for one chat turn.

    Args:
        context: All externally-owned state for this turn
        now: Reference time for the date header and age ranges (defaults to UTC now)

    Returns:
        System prompt string
    """
    now = now or datetime.now(timezone.utc)
    patient = context.patient
    is_pet = bool(patient and patient.is_pet)

    subject = "pet health" if is_pet else "health"
    sections: list[str] = [
        f"You are DrKnowsIt, a conversational AI {subject} assistant. "
        "Keep responses SHORT and natural - like a quick chat with a friend "
        f"who happens to know about {subject}.",
        _settings_section(context, now),
    ]

    memory = _memory_section(context)
    if memory:
        sections.append(memory)
    notes = _doctor_notes_section(context.doctor_notes)
    if notes:
        sections.append(notes)

    if patient is None:
        sections.append(
            "NO PATIENT CONTEXT:\n"
            "No patient is selected for this conversation. "
            f"{NO_HEALTH_RECORDS_LINE}. Give general guidance only and suggest "
            "selecting a patient profile for personalized help."
        )
    else:
        sections.append(_patient_section(patient, now.date()))
        sections.append(_health_records_section(context.partitions))
        forms = _health_forms_section(context.health_forms)
        if forms:
            sections.append(forms)

    sections.append(_core_instructions(context, is_pet))
    sections.append(_personalization_clause(context))
    sections.append(OUTPUT_FORMAT_INSTRUCTIONS)

    prompt = "\n\n".join(sections)
    logger.info(
        "Built system prompt: tier=%s, patient=%s, summaries=%d, notes=%d, chars=%d",
        context.tier.value,
        "yes" if patient else "no",
        context.partitions.total_count(),
        len(select_doctor_notes(context.doctor_notes)),
        len(prompt),
    )
    return prompt
