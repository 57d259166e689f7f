"""Health-topic analysis.

Turns a conversation transcript into a small set of health topics to discuss
with a doctor, plus optional non-medication wellness suggestions. The model
is asked for strict JSON; confidences are clamped into the caller's tier
band before anything is returned or stored.

Results are cached per conversation by a SHA-256 of the analysed text: an
identical free or basic request within CACHE_TTL returns the stored set.
"""

import hashlib
import json
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import openai
from openai import AsyncOpenAI
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from drknowsit.config import settings
from drknowsit.models import ConversationSolution, ConversationTopic, HealthRecord, Patient
from drknowsit.schemas.context import SubscriptionTier
from drknowsit.schemas.topics import Solution, Topic, TopicAnalysisRequest, TopicAnalysisResponse
from drknowsit.services.context_assembler import calculate_age_range
from drknowsit.services.dispatcher import UpstreamError
from drknowsit.services.tier_policy import TIER_CONFIDENCE_BANDS, clamp_confidence

logger = logging.getLogger(__name__)

CACHE_TTL = timedelta(minutes=2)

# Entries below this confidence are discarded before clamping
MIN_CONFIDENCE = 0.1

MAX_TOKENS_WITH_SOLUTIONS = 1500
MAX_TOKENS_TOPICS_ONLY = 800

# Latest records included for pro-tier analysis
PRO_RECORD_LIMIT = 3
RECORD_EXCERPT_CHARS = 200

# analysis_mode that bypasses the content-hash cache
COMPREHENSIVE_MODE = "comprehensive"

TOPIC_CATEGORIES = (
    "musculoskeletal, dermatological, gastrointestinal, cardiovascular, respiratory, "
    "neurological, genitourinary, endocrine, psychiatric, infectious, environmental, other"
)
SOLUTION_CATEGORIES = "lifestyle, stress, sleep, nutrition, exercise, mental_health"


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _cache_allowed(request: TopicAnalysisRequest, tier: SubscriptionTier) -> bool:
    """Stored sets carry no testing recommendations; comprehensive mode always re-runs."""
    if tier == SubscriptionTier.PRO:
        return False
    return request.analysis_mode != COMPREHENSIVE_MODE


def _percent_band(tier: SubscriptionTier) -> str:
    low, high = TIER_CONFIDENCE_BANDS[tier]
    return f"{round(low * 100)}-{round(high * 100)}%"


def build_analysis_prompt(
    tier: SubscriptionTier,
    conversation_type: str,
    include_solutions: bool,
    patient_context: str,
    include_testing: bool,
) -> str:
    """System prompt for topic analysis."""
    solutions_block = ""
    solutions_shape = ""
    if include_solutions:
        solutions_block = (
            f"\n\nSOLUTION CATEGORIES:\n{SOLUTION_CATEGORIES}\n\n"
            "SOLUTION RULES:\n"
            "- NO medications or medical treatments\n"
            "- Focus on lifestyle, behavioral, environmental changes\n"
            "- Must be actionable and specific to conversation issues\n"
            "- Target root causes when possible"
        )
        solutions_shape = (
            ',\n  "solutions": [\n'
            '    {"solution": "Specific actionable solution", "category": "lifestyle", '
            '"confidence": 0.55, "reasoning": "Why this addresses the conversation issues"}\n'
            "  ]"
        )
    testing_shape = ""
    if include_testing:
        testing_shape = ',\n  "testing_recommendations": ["Test worth discussing with a doctor"]'

    return (
        "You are a medical analysis AI that generates health topics and "
        f"{'holistic solutions' if include_solutions else 'recommendations'} "
        "based on conversation context.\n\n"
        f"PATIENT CONTEXT:\n{patient_context or 'Limited context available'}\n\n"
        f"ANALYSIS MODE: {conversation_type.upper()} ({tier.value.upper()} tier)\n\n"
        "CONFIDENCE CALIBRATION (CRITICAL):\n"
        f"- FREE MODE: Use conservative confidence ({_percent_band(SubscriptionTier.FREE)}) due to limited context\n"
        f"- BASIC MODE: Use moderate confidence ({_percent_band(SubscriptionTier.BASIC)}) with basic patient data\n"
        f"- PRO MODE: Use higher confidence ({_percent_band(SubscriptionTier.PRO)}) with full context and history\n\n"
        f"TOPIC CATEGORIES:\n{TOPIC_CATEGORIES}"
        f"{solutions_block}\n\n"
        "Return JSON with this exact structure:\n"
        "{\n"
        '  "topics": [\n'
        '    {"topic": "Specific Health Topic", "confidence": 0.35, '
        '"reasoning": "Evidence-based justification", "category": "musculoskeletal"}\n'
        "  ]"
        f"{solutions_shape}{testing_shape}\n"
        "}\n\n"
        f"Ensure exactly 4 topics and {'3-5 solutions' if include_solutions else 'no solutions'}."
    )


def parse_topics(raw: Any, tier: SubscriptionTier) -> list[Topic]:
    """Keep named topics with confidence >= MIN_CONFIDENCE, clamped to the tier band."""
    topics = []
    for entry in raw if isinstance(raw, list) else []:
        if not isinstance(entry, dict) or not entry.get("topic"):
            continue
        try:
            confidence = float(entry.get("confidence", 0))
        except (TypeError, ValueError):
            continue
        if confidence < MIN_CONFIDENCE:
            continue
        topics.append(Topic(
            topic=str(entry["topic"]),
            confidence=clamp_confidence(tier, confidence),
            reasoning=entry.get("reasoning") or "No reasoning provided",
            category=entry.get("category") or "other",
        ))
    return sorted(topics, key=lambda t: t.confidence, reverse=True)


def parse_solutions(raw: Any, tier: SubscriptionTier) -> list[Solution]:
    """Same filtering and clamping as parse_topics, for solutions."""
    solutions = []
    for entry in raw if isinstance(raw, list) else []:
        if not isinstance(entry, dict) or not entry.get("solution"):
            continue
        try:
            confidence = float(entry.get("confidence", 0))
        except (TypeError, ValueError):
            continue
        if confidence < MIN_CONFIDENCE:
            continue
        solutions.append(Solution(
            solution=str(entry["solution"]),
            confidence=clamp_confidence(tier, confidence),
            reasoning=entry.get("reasoning") or "No reasoning provided",
            category=entry.get("category") or "lifestyle",
        ))
    return sorted(solutions, key=lambda s: s.confidence, reverse=True)


class TopicAnalyzer:
    """Generates, stores and caches health topics for a conversation."""

    def __init__(
        self,
        db: AsyncSession,
        client: AsyncOpenAI | None = None,
        model: str | None = None,
    ):
        """Initialize TopicAnalyzer.

        Args:
            db: Database session
            client: Optional pre-configured AsyncOpenAI client (for testing).
                   If not provided, creates one from settings.
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

    async def _patient_context(self, tier: SubscriptionTier, patient: Patient, user_id: str) -> str:
        """Tier-dependent context: none for free, profile for basic, profile + records for pro."""
        if tier == SubscriptionTier.FREE:
            return "Free Mode User - Limited Context Available"

        lines = [
            f"Age Range: {calculate_age_range(patient.date_of_birth) or 'Unknown'}",
            f"Gender: {patient.gender or 'Not specified'}",
        ]
        if patient.is_pet:
            lines.append(f"Species: {patient.species or 'Not specified'}")

        if tier == SubscriptionTier.PRO:
            result = await self.db.execute(
                select(HealthRecord)
                .where(HealthRecord.patient_id == patient.id, HealthRecord.user_id == user_id)
                .order_by(HealthRecord.created_at.desc())
                .limit(PRO_RECORD_LIMIT)
            )
            records = result.scalars().all()
            if records:
                lines.append("")
                lines.append("HEALTH RECORDS:")
                for record in records:
                    data = json.dumps(record.data, default=str)[:RECORD_EXCERPT_CHARS]
                    lines.append(f"{record.title} ({record.record_type}): {data}")
        return "\n".join(lines)

    async def _cached(
        self,
        conversation_id: uuid.UUID,
        patient_id: uuid.UUID,
        digest: str,
        include_solutions: bool,
        now: datetime,
    ) -> TopicAnalysisResponse | None:
        result = await self.db.execute(
            select(ConversationTopic)
            .where(
                ConversationTopic.conversation_id == conversation_id,
                ConversationTopic.patient_id == patient_id,
            )
            .order_by(ConversationTopic.confidence.desc())
        )
        stored = list(result.scalars().all())
        if not stored:
            return None
        latest = max(_as_utc(t.updated_at) for t in stored)
        if stored[0].content_hash != digest or now - latest >= CACHE_TTL:
            return None

        solutions = None
        if include_solutions:
            sol_result = await self.db.execute(
                select(ConversationSolution)
                .where(ConversationSolution.conversation_id == conversation_id)
                .order_by(ConversationSolution.confidence.desc())
            )
            solutions = [
                Solution(solution=s.solution, confidence=s.confidence, reasoning=s.reasoning, category=s.category)
                for s in sol_result.scalars().all()
            ]
        logger.info("Skipping analysis for conversation %s - content unchanged", conversation_id)
        return TopicAnalysisResponse(
            topics=[
                Topic(topic=t.topic, confidence=t.confidence, reasoning=t.reasoning, category=t.category)
                for t in stored
            ],
            solutions=solutions,
            cached=True,
        )

    async def _store(
        self,
        conversation_id: uuid.UUID,
        patient_id: uuid.UUID,
        user_id: str,
        digest: str,
        topics: list[Topic],
        solutions: list[Solution] | None,
        now: datetime,
    ) -> None:
        """Replace the stored topic (and solution) set for a conversation."""
        await self.db.execute(
            delete(ConversationTopic).where(ConversationTopic.conversation_id == conversation_id)
        )
        self.db.add_all([
            ConversationTopic(
                conversation_id=conversation_id,
                patient_id=patient_id,
                user_id=user_id,
                topic=t.topic,
                confidence=t.confidence,
                reasoning=t.reasoning,
                category=t.category,
                content_hash=digest,
                updated_at=now,
            )
            for t in topics
        ])
        if solutions is not None:
            await self.db.execute(
                delete(ConversationSolution).where(ConversationSolution.conversation_id == conversation_id)
            )
            self.db.add_all([
                ConversationSolution(
                    conversation_id=conversation_id,
                    patient_id=patient_id,
                    user_id=user_id,
                    solution=s.solution,
                    confidence=s.confidence,
                    reasoning=s.reasoning,
                    category=s.category,
                )
                for s in solutions
            ])
        await self.db.flush()

    async def analyze(
        self,
        request: TopicAnalysisRequest,
        tier: SubscriptionTier,
        patient: Patient,
        user_id: str,
        now: datetime | None = None,
    ) -> TopicAnalysisResponse:
        """Analyze a conversation transcript.

        Args:
            request: Analysis request (transcript, options)
            tier: Caller's subscription tier
            patient: Patient already verified to belong to the caller
            user_id: Authenticated account id
            now: Reference time for caching (defaults to UTC now)

        Returns:
            TopicAnalysisResponse with tier-clamped confidences

        Raises:
            UpstreamError: If the model call fails.
            RuntimeError: If the model returns no content or invalid JSON.
        """
        now = now or datetime.now(timezone.utc)
        digest = content_hash(request.conversation_context)

        if request.analysis_mode:
            logger.info("Topic analysis mode: %s", request.analysis_mode)

        if request.conversation_id is not None and _cache_allowed(request, tier):
            cached = await self._cached(
                request.conversation_id, patient.id, digest, request.include_solutions, now
            )
            if cached is not None:
                return cached

        include_testing = tier == SubscriptionTier.PRO
        system_prompt = build_analysis_prompt(
            tier,
            request.conversation_type,
            request.include_solutions,
            await self._patient_context(tier, patient, user_id),
            include_testing,
        )

        t0 = time.perf_counter()
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": f"Analyze: {request.conversation_context}"},
                ],
                max_completion_tokens=(
                    MAX_TOKENS_WITH_SOLUTIONS if request.include_solutions else MAX_TOKENS_TOPICS_ONLY
                ),
                response_format={"type": "json_object"},
            )
        except openai.APIStatusError as e:
            logger.error("Topic analysis API error: status=%d", e.status_code)
            raise UpstreamError(e.status_code, e.response.text if e.response is not None else "") from e
        except openai.APIConnectionError as e:
            logger.error("Topic analysis API unreachable: %s", e)
            raise UpstreamError(502, str(e)) from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise RuntimeError("No response from analysis model")
        try:
            data = json.loads(content)
        except ValueError as e:
            logger.error("Failed to parse analysis JSON: %s", e)
            raise RuntimeError("Invalid response format from AI") from e
        if not isinstance(data, dict):
            raise RuntimeError("Invalid response format from AI")

        topics = parse_topics(data.get("topics"), tier)
        solutions = parse_solutions(data.get("solutions"), tier) if request.include_solutions else None
        testing = None
        if include_testing and isinstance(data.get("testing_recommendations"), list):
            testing = [str(t) for t in data["testing_recommendations"] if t]

        if request.conversation_id is not None and topics:
            await self._store(
                request.conversation_id, patient.id, user_id, digest, topics, solutions, now
            )

        logger.info(
            "Generated %d topics and %d solutions (%s tier) in %.1fs",
            len(topics), len(solutions or []), tier.value, time.perf_counter() - t0,
        )
        return TopicAnalysisResponse(
            topics=topics,
            solutions=solutions,
            testing_recommendations=testing,
            cached=False,
        )
