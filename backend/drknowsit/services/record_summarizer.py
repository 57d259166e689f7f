"""Health record summarization.

Summaries, not raw records, are what the chat prompt includes. Each record
gets one summary, tagged with the priority its record type earns so the
tier policy can decide when it is shown.
"""

import json
import logging
import uuid

import openai
from openai import AsyncOpenAI
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from drknowsit.config import settings
from drknowsit.models import HealthRecord, HealthRecordSummary
from drknowsit.services.dispatcher import UpstreamError
from drknowsit.services.tier_policy import priority_for_record_type

logger = logging.getLogger(__name__)

SUMMARY_MAX_TOKENS = 200

SUMMARY_SYSTEM_PROMPT = (
    "You are a medical AI assistant that creates concise, accurate summaries of health records."
)

SUMMARY_INSTRUCTIONS = """Create a concise, medically accurate summary of the following health record.

Focus on:
1. Key medical information and findings
2. Relevant symptoms, conditions, or diagnoses
3. Important dates and measurements
4. Actionable insights for future reference

Keep the summary under 150 words but preserve all critical information."""


def format_record(record: HealthRecord) -> str:
    """Render a record as the text the summary model reads."""
    data = json.dumps(record.data, indent=2, default=str) if record.data else "No structured data"
    lines = [
        f"Title: {record.title}",
        f"Type: {record.record_type}",
        f"Data: {data}",
    ]
    if record.created_at is not None:
        lines.append(f"Created: {record.created_at.isoformat()}")
    return "\n".join(lines)


class RecordSummarizer:
    """Creates and refreshes the summary attached to a health record."""

    def __init__(
        self,
        db: AsyncSession,
        client: AsyncOpenAI | None = None,
        model: str | None = None,
    ):
        """Initialize RecordSummarizer.

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

    async def _generate(self, record: HealthRecord) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": f"{SUMMARY_INSTRUCTIONS}\n\nHealth Record:\n{format_record(record)}",
                    },
                ],
                max_completion_tokens=SUMMARY_MAX_TOKENS,
            )
        except openai.APIStatusError as e:
            logger.error("Summary API error: status=%d", e.status_code)
            raise UpstreamError(e.status_code, e.response.text if e.response is not None else "") from e
        except openai.APIConnectionError as e:
            logger.error("Summary API unreachable: %s", e)
            raise UpstreamError(502, str(e)) from e

        content = response.choices[0].message.content if response.choices else None
        if not content or not content.strip():
            raise RuntimeError("No summary returned by the model")
        return content.strip()

    async def summarize(
        self,
        record_id: uuid.UUID,
        user_id: str,
        force_regenerate: bool = False,
    ) -> tuple[HealthRecordSummary, bool] | None:
        """Return the record's summary, generating it when missing.

        Args:
            record_id: Health record UUID
            user_id: Owning account
            force_regenerate: Replace an existing summary

        Returns:
            (summary, generated) or None if the record is not the caller's.

        Raises:
            UpstreamError: If the model call fails.
            RuntimeError: If the model returns no text.
        """
        record = (
            await self.db.execute(
                select(HealthRecord).where(HealthRecord.id == record_id, HealthRecord.user_id == user_id)
            )
        ).scalar_one_or_none()
        if record is None:
            return None

        summary = (
            await self.db.execute(
                select(HealthRecordSummary).where(HealthRecordSummary.health_record_id == record_id)
            )
        ).scalar_one_or_none()
        if summary is not None and not force_regenerate:
            return summary, False

        text = await self._generate(record)
        priority = priority_for_record_type(record.record_type.lower())
        if summary is None:
            summary = HealthRecordSummary(
                user_id=user_id,
                health_record_id=record.id,
                summary_text=text,
                priority_level=priority.value,
            )
            self.db.add(summary)
        else:
            summary.summary_text = text
            summary.priority_level = priority.value
        await self.db.flush()
        await self.db.refresh(summary)

        logger.info("Summarized health record %s (%s priority)", record_id, priority.value)
        return summary, True
