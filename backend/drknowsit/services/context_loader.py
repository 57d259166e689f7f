"""Context Loader: gathers the PromptContext for one chat turn.

This is the only part of the chat pipeline that reads storage. It fetches
externally-owned state fresh on every call (subscription, AI settings,
priorities, summaries, doctor notes, history) and hands it to the pure
Context Assembler as one explicit parameter object.
"""

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from drknowsit.models import (
    AISettings,
    DoctorNote,
    HealthDataPriority,
    HealthRecord,
    HealthRecordSummary,
    Patient,
    Subscriber,
)
from drknowsit.repositories import ConversationRepository
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
)
from drknowsit.services.context_assembler import MEMORY_HISTORY_LIMIT, select_history
from drknowsit.services.tier_policy import (
    coerce_tier,
    filter_records_for_tier,
    resolve_tier_policy,
)

logger = logging.getLogger(__name__)

# Active notes fetched before per-type capping
DOCTOR_NOTE_FETCH_LIMIT = 10


@dataclass
class AccountState:
    """Billing and preference state for one account."""

    tier: SubscriptionTier
    subscribed: bool
    ai_settings: AISettingsConfig


class ContextLoader:
    """Loads prompt context from the database for one request."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def load_account(self, user_id: str) -> AccountState:
        """Load subscription tier/status and AI settings (defaults when absent)."""
        subscriber = await self.db.get(Subscriber, user_id)
        ai_row = await self.db.get(AISettings, user_id)

        if ai_row is None:
            ai_settings = AISettingsConfig()
        else:
            level = ai_row.personalization_level
            ai_settings = AISettingsConfig(
                memory_enabled=ai_row.memory_enabled,
                personalization_level=level if level in ("low", "medium", "high") else "medium",
            )

        return AccountState(
            tier=coerce_tier(subscriber.subscription_tier if subscriber else None),
            subscribed=bool(subscriber and subscriber.subscribed),
            ai_settings=ai_settings,
        )

    async def load_priorities(self, user_id: str) -> list[HealthDataPriorityItem]:
        result = await self.db.execute(
            select(HealthDataPriority).where(HealthDataPriority.user_id == user_id)
        )
        priorities = []
        for row in result.scalars().all():
            try:
                priorities.append(HealthDataPriorityItem(
                    data_type=row.data_type,
                    priority_level=PriorityLevel(row.priority_level),
                    subscription_tier=SubscriptionTier(row.subscription_tier) if row.subscription_tier else None,
                ))
            except ValueError:
                logger.warning("Skipping invalid health data priority %s", row.id)
        return priorities

    async def load_health_records(self, user_id: str, patient_id: uuid.UUID) -> list[HealthRecord]:
        """Patient's health records, newest first."""
        result = await self.db.execute(
            select(HealthRecord)
            .where(HealthRecord.user_id == user_id, HealthRecord.patient_id == patient_id)
            .order_by(HealthRecord.created_at.desc())
        )
        return list(result.scalars().all())

    async def load_summaries(
        self,
        user_id: str,
        records: Sequence[HealthRecord],
    ) -> list[HealthRecordSummaryItem]:
        """Summaries of the given records, in the records' order."""
        if not records:
            return []
        result = await self.db.execute(
            select(HealthRecordSummary).where(
                HealthRecordSummary.user_id == user_id,
                HealthRecordSummary.health_record_id.in_([r.id for r in records]),
            )
        )
        by_record = {s.health_record_id: s for s in result.scalars().all()}

        summaries = []
        for record in records:
            summary = by_record.get(record.id)
            if summary is None:
                continue
            try:
                level = PriorityLevel(summary.priority_level)
            except ValueError:
                level = PriorityLevel.NORMAL
            summaries.append(HealthRecordSummaryItem(
                title=record.title,
                record_type=record.record_type,
                summary_text=summary.summary_text,
                priority_level=level,
                created_at=record.created_at,
            ))
        return summaries

    async def load_doctor_notes(self, user_id: str, patient_id: uuid.UUID | None) -> list[DoctorNoteItem]:
        """Active notes for the patient plus account-wide notes, most confident first."""
        query = select(DoctorNote).where(DoctorNote.user_id == user_id, DoctorNote.is_active.is_(True))
        if patient_id is not None:
            query = query.where(or_(DoctorNote.patient_id == patient_id, DoctorNote.patient_id.is_(None)))
        else:
            query = query.where(DoctorNote.patient_id.is_(None))
        query = query.order_by(func.coalesce(DoctorNote.confidence_score, 0).desc()).limit(
            DOCTOR_NOTE_FETCH_LIMIT
        )

        result = await self.db.execute(query)
        notes = []
        for row in result.scalars().all():
            try:
                note_type = NoteType(row.note_type)
            except ValueError:
                logger.warning("Skipping doctor note %s with unknown type %r", row.id, row.note_type)
                continue
            notes.append(DoctorNoteItem(
                note_type=note_type,
                title=row.title,
                content=row.content,
                is_active=row.is_active,
                confidence_score=row.confidence_score,
            ))
        return notes

    async def load_history(
        self,
        memory_enabled: bool,
        conversation_id: uuid.UUID | None,
        client_history: Sequence[HistoryMessage],
    ) -> list[HistoryMessage]:
        """Stored history when memory is on and a conversation exists, else client history."""
        stored: list[HistoryMessage] | None = None
        if memory_enabled and conversation_id is not None:
            messages = await ConversationRepository(self.db).recent_messages(
                conversation_id, MEMORY_HISTORY_LIMIT
            )
            stored = [
                HistoryMessage(type=m.type.value, content=m.content, image_url=m.image_url)
                for m in messages
            ]
        return select_history(memory_enabled, stored, client_history)

    async def build(
        self,
        user_id: str,
        account: AccountState,
        patient: Patient | None,
        message: str,
        conversation_id: uuid.UUID | None = None,
        client_history: Sequence[HistoryMessage] = (),
        image_url: str | None = None,
    ) -> PromptContext:
        """Gather everything the Context Assembler needs.

        Args:
            user_id: Authenticated account id
            account: Subscription and AI settings, from load_account
            patient: Patient already verified to belong to the account, or None
            message: Current user message
            conversation_id: Existing conversation, if any
            client_history: History supplied by the client
            image_url: Image attached to the current message

        Returns:
            PromptContext for build_system_prompt
        """
        history = await self.load_history(
            account.ai_settings.memory_enabled, conversation_id, client_history
        )
        notes = await self.load_doctor_notes(user_id, patient.id if patient else None)

        context = PromptContext(
            tier=account.tier,
            ai_settings=account.ai_settings,
            doctor_notes=notes,
            history=history,
            message=message,
            image_url=image_url,
        )
        if patient is None:
            return context

        records = filter_records_for_tier(
            await self.load_health_records(user_id, patient.id),
            account.tier,
            patient.is_pet,
        )
        summaries = await self.load_summaries(user_id, records)
        priorities = await self.load_priorities(user_id)

        context.patient = PatientSnapshot(
            first_name=patient.first_name,
            last_name=patient.last_name,
            date_of_birth=patient.date_of_birth,
            gender=patient.gender,
            relationship=patient.relationship,
            is_primary=patient.is_primary,
            is_pet=patient.is_pet,
            species=patient.species,
        )
        context.partitions = resolve_tier_policy(account.tier, priorities, summaries)
        context.health_forms = [
            HealthFormItem(title=r.title, record_type=r.record_type, data=r.data) for r in records
        ]
        logger.info(
            "Loaded context for patient %s: records=%d, summaries=%d, notes=%d, history=%d",
            patient.id, len(records), len(summaries), len(notes), len(history),
        )
        return context
