"""Conversation memory analysis.

Reads the latest turns of a conversation and records what is worth
remembering about the patient as doctor notes (patterns, concerns,
preferences, insights). New notes start active; the user can switch them
off from the doctor-notes API.
"""

import json
import logging
import uuid

import openai
from openai import AsyncOpenAI
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from drknowsit.config import settings
from drknowsit.models import DoctorNote, HealthRecordSummary, MessageType, Patient
from drknowsit.repositories import ConversationRepository
from drknowsit.schemas.context import NoteType, PriorityLevel
from drknowsit.services.context_loader import ContextLoader
from drknowsit.services.dispatcher import UpstreamError

logger = logging.getLogger(__name__)

RECENT_MESSAGE_LIMIT = 10
SUMMARY_LIMIT = 5
MAX_NEW_NOTES = 5
MEMORY_MAX_TOKENS = 1000

HUMAN_MEMORY_RULES = (
    "Note when the user confirms a doctor-diagnosed illness or prior medical history",
    "Note important symptoms the user mentions, even ones they are not focused on",
    "Note unhealthy habits that may be medically relevant (sleep deprivation, heavy workload, substance use)",
    "Note medications and supplements the user is actively taking, and recent changes",
    "Note key negatives (e.g. 'no chest pain', 'no fever') to avoid repeated questioning",
    "Note stated care preferences (e.g. prefers natural approaches first, anxiety about tests)",
    "Note environmental exposures if potentially relevant (water, air, occupation)",
)

PET_MEMORY_RULES = (
    "Note when the owner confirms a veterinarian-diagnosed condition or prior medical history",
    "Note important symptoms the owner mentions, even ones that are not the primary concern",
    "Note diet details, routine changes or behavioral patterns that may be medically relevant",
    "Note medications, supplements and treatments the pet is receiving, and recent changes",
    "Note key negatives (e.g. 'no vomiting', 'eating normally') to avoid repeated questioning",
    "Note stated care preferences (e.g. budget constraints, prefers natural approaches first)",
    "Note species, breed, age, weight and breed-specific health considerations",
)


def build_memory_prompt(
    is_pet: bool,
    transcript: str,
    existing_titles: list[str],
    summaries: list[str],
) -> str:
    rules = PET_MEMORY_RULES if is_pet else HUMAN_MEMORY_RULES
    entity = "pet patient" if is_pet else "patient"
    numbered = "\n".join(f"{i}. {rule}" for i, rule in enumerate(rules, 1))
    existing = "\n".join(f"- {t}" for t in existing_titles) or "None"
    records = "\n".join(f"- {s}" for s in summaries) or "No health records available"
    note_types = ", ".join(t.value for t in NoteType)

    return f"""You are a medical conversation memory analyzer. Extract what a doctor should remember about this {entity}.

MEMORY RULES:
{numbered}

NOTES ALREADY ON FILE (do not repeat):
{existing}

HEALTH RECORD CONTEXT:
{records}

CONVERSATION TO ANALYZE:
{transcript}

Return ONLY a JSON object:
{{"notes": [{{"note_type": "one of: {note_types}", "title": "short label", "content": "what to remember", "confidence": 0.0-1.0}}]}}

Only include NEW information that follows the memory rules. If there is nothing new, return {{"notes": []}}."""


def parse_notes(raw: object) -> list[dict]:
    """Keep well-formed note entries with a known note type."""
    if not isinstance(raw, list):
        return []
    notes = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        title = str(entry.get("title") or "").strip()
        content = str(entry.get("content") or "").strip()
        if not title or not content:
            continue
        try:
            note_type = NoteType(str(entry.get("note_type", "")).lower())
        except ValueError:
            logger.warning("Dropping memory note with unknown type %r", entry.get("note_type"))
            continue
        try:
            confidence = float(entry.get("confidence", 0.5))
        except (TypeError, ValueError):
            confidence = 0.5
        notes.append({
            "note_type": note_type,
            "title": title[:255],
            "content": content,
            "confidence": min(1.0, max(0.0, confidence)),
        })
    return notes


class MemoryAnalyzer:
    """Turns recent conversation turns into doctor notes."""

    def __init__(
        self,
        db: AsyncSession,
        client: AsyncOpenAI | None = None,
        model: str | None = None,
    ):
        """Initialize MemoryAnalyzer.

        Args:
            db: Database session
            client: Optional pre-configured AsyncOpenAI client (for testing).
            model: Model name. Defaults to settings.analysis_model.

        Raises:
            ValueError: If no client provided and OPENAI_API_KEY is not configured.
        """
        self.db = db
        if client is not None:
            self._client = client
        else:
            if not settings.openai_api_key:
                raise ValueError(
                    "OPENAI_API_KEY environment variable is required. "
                    "Set it in your .env file or environment."
                )
            self._client = AsyncOpenAI(api_key=settings.openai_api_key, max_retries=0)
        self._model = model or settings.analysis_model

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.close()

    async def _summaries(self, user_id: str) -> list[str]:
        result = await self.db.execute(
            select(HealthRecordSummary)
            .where(
                HealthRecordSummary.user_id == user_id,
                HealthRecordSummary.priority_level.in_(
                    [PriorityLevel.ALWAYS.value, PriorityLevel.CONDITIONAL.value]
                ),
            )
            .order_by(HealthRecordSummary.created_at.desc())
            .limit(SUMMARY_LIMIT)
        )
        return [f"{s.summary_text} (Priority: {s.priority_level})" for s in result.scalars().all()]

    async def analyze(
        self,
        conversation_id: uuid.UUID,
        patient: Patient,
        user_id: str,
    ) -> list[DoctorNote]:
        """Record new doctor notes from a conversation's latest turns.

        Args:
            conversation_id: Conversation already verified to belong to the caller
            patient: Patient already verified to belong to the caller
            user_id: Authenticated account id

        Returns:
            The notes created (possibly empty).

        Raises:
            UpstreamError: If the model call fails.
            RuntimeError: If the model returns no content or invalid JSON.
        """
        messages = await ConversationRepository(self.db).recent_messages(
            conversation_id, RECENT_MESSAGE_LIMIT
        )
        if not messages:
            logger.info("No messages to analyze for conversation %s", conversation_id)
            return []

        transcript = "\n".join(
            f"{'Patient' if m.type == MessageType.USER else 'AI'}: {m.content}" for m in messages
        )
        existing = await ContextLoader(self.db).load_doctor_notes(user_id, patient.id)
        existing_titles = [n.title for n in existing]
        prompt = build_memory_prompt(
            patient.is_pet, transcript, existing_titles, await self._summaries(user_id)
        )

        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": prompt},
                    {
                        "role": "user",
                        "content": "Analyze this conversation and extract memory notes according to the rules.",
                    },
                ],
                max_completion_tokens=MEMORY_MAX_TOKENS,
                response_format={"type": "json_object"},
            )
        except openai.APIStatusError as e:
            logger.error("Memory analysis API error: status=%d", e.status_code)
            raise UpstreamError(e.status_code, e.response.text if e.response is not None else "") from e
        except openai.APIConnectionError as e:
            logger.error("Memory analysis API unreachable: %s", e)
            raise UpstreamError(502, str(e)) from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise RuntimeError("No response from analysis model")
        try:
            data = json.loads(content)
        except ValueError as e:
            logger.error("Failed to parse memory JSON: %s", e)
            raise RuntimeError("Invalid response format from AI") from e
        if not isinstance(data, dict):
            raise RuntimeError("Invalid response format from AI")

        known = {t.lower() for t in existing_titles}
        notes = []
        for entry in parse_notes(data.get("notes")):
            if entry["title"].lower() in known:
                continue
            known.add(entry["title"].lower())
            notes.append(DoctorNote(
                user_id=user_id,
                patient_id=patient.id,
                note_type=entry["note_type"].value,
                title=entry["title"],
                content=entry["content"],
                is_active=True,
                confidence_score=entry["confidence"],
            ))
            if len(notes) == MAX_NEW_NOTES:
                break

        if notes:
            self.db.add_all(notes)
            await self.db.flush()
        logger.info(
            "Memory analysis for conversation %s created %d notes", conversation_id, len(notes)
        )
        return notes
