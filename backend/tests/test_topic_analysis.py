"""Tests for health-topic analysis."""

import json
import uuid
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio

from drknowsit.models import Conversation, Patient
from drknowsit.schemas.context import SubscriptionTier
from drknowsit.schemas.topics import TopicAnalysisRequest, TopicAnalysisResponse
from drknowsit.services.tier_policy import TIER_CONFIDENCE_BANDS
from drknowsit.services.topic_analysis import (
    CACHE_TTL,
    TopicAnalyzer,
    build_analysis_prompt,
    content_hash,
    parse_solutions,
    parse_topics,
)

USER_ID = "topics-user"
NOW = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)

ANALYSIS_PAYLOAD = {
    "topics": [
        {"topic": "Tension headache", "confidence": 0.95, "reasoning": "stress", "category": "neurological"},
        {"topic": "Dehydration", "confidence": 0.25, "reasoning": "low intake", "category": "other"},
        {"topic": "Noise", "confidence": 0.05},
        {"confidence": 0.5},
    ],
    "solutions": [
        {"solution": "Drink 2L of water daily", "confidence": 0.5, "category": "nutrition"},
    ],
    "testing_recommendations": ["Blood pressure check"],
}


def create_mock_openai_client(payload: dict | str | None) -> AsyncMock:
    """Create a mock AsyncOpenAI client returning one JSON completion."""
    mock_client = AsyncMock()
    mock_response = MagicMock()
    if isinstance(payload, dict):
        payload = json.dumps(payload)
    mock_response.choices = [MagicMock(message=MagicMock(content=payload))]
    mock_client.chat.completions.create = AsyncMock(return_value=mock_response)
    return mock_client


@pytest_asyncio.fixture
async def patient(db_session) -> Patient:
    patient = Patient(
        id=uuid.uuid4(),
        user_id=USER_ID,
        first_name="Ana",
        date_of_birth=date(1992, 2, 2),
        gender="female",
        is_pet=False,
        species=None,
        probable_diagnoses=[],
    )
    db_session.add(patient)
    await db_session.flush()
    return patient


@pytest_asyncio.fixture
async def conversation(db_session, patient) -> Conversation:
    conversation = Conversation(id=uuid.uuid4(), user_id=USER_ID, patient_id=patient.id, title="Headaches")
    db_session.add(conversation)
    await db_session.flush()
    return conversation


class TestParsing:
    @pytest.mark.parametrize("tier", list(SubscriptionTier))
    def test_topics_clamped_into_tier_band(self, tier):
        topics = parse_topics(ANALYSIS_PAYLOAD["topics"], tier)

        low, high = TIER_CONFIDENCE_BANDS[tier]
        assert [t.topic for t in topics] == ["Tension headache", "Dehydration"]
        assert all(low <= t.confidence <= high for t in topics)

    def test_topic_defaults(self):
        topics = parse_topics([{"topic": "Stress", "confidence": 0.3}], SubscriptionTier.FREE)

        assert topics[0].reasoning == "No reasoning provided"
        assert topics[0].category == "other"

    def test_non_list_input(self):
        assert parse_topics(None, SubscriptionTier.PRO) == []
        assert parse_solutions({"solution": "x"}, SubscriptionTier.PRO) == []

    def test_solutions_clamped(self):
        solutions = parse_solutions(
            [{"solution": "Walk daily", "confidence": 0.99}], SubscriptionTier.BASIC
        )

        assert solutions[0].confidence == 0.60
        assert solutions[0].category == "lifestyle"


class TestBuildAnalysisPrompt:
    def test_solutions_and_testing_sections(self):
        prompt = build_analysis_prompt(
            SubscriptionTier.PRO, "regular_chat", True, "Age Range: 30-39", include_testing=True
        )

        assert "PRO tier" in prompt
        assert "SOLUTION RULES" in prompt
        assert "testing_recommendations" in prompt
        assert "30-80%" in prompt

    def test_topics_only(self):
        prompt = build_analysis_prompt(
            SubscriptionTier.FREE, "easy_chat", False, "", include_testing=False
        )

        assert "SOLUTION RULES" not in prompt
        assert "Limited context available" in prompt
        assert "testing_recommendations" not in prompt


class TestTopicAnalyzer:
    """Tests for TopicAnalyzer.analyze."""

    def test_init_without_api_key_raises(self):
        with patch("drknowsit.services.topic_analysis.settings") as mock_settings:
            mock_settings.openai_api_key = ""
            with pytest.raises(ValueError, match="OPENAI_API_KEY"):
                TopicAnalyzer(MagicMock())

    @pytest.mark.asyncio
    async def test_analyze_basic_tier(self, db_session, patient, conversation):
        mock_client = create_mock_openai_client(ANALYSIS_PAYLOAD)
        analyzer = TopicAnalyzer(db_session, client=mock_client, model="gpt-4.1")
        request = TopicAnalysisRequest(
            conversation_id=conversation.id,
            patient_id=patient.id,
            conversation_context="User: my head hurts every afternoon",
        )

        result = await analyzer.analyze(request, SubscriptionTier.BASIC, patient, USER_ID, now=NOW)

        assert result.cached is False
        assert [(t.topic, t.confidence) for t in result.topics] == [
            ("Tension headache", 0.60),
            ("Dehydration", 0.25),
        ]
        assert [s.solution for s in result.solutions] == ["Drink 2L of water daily"]
        assert result.testing_recommendations is None

        call_kwargs = mock_client.chat.completions.create.call_args.kwargs
        assert call_kwargs["response_format"] == {"type": "json_object"}
        assert "Age Range: 30-39" in call_kwargs["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_pro_tier_gets_testing_recommendations(self, db_session, patient):
        analyzer = TopicAnalyzer(db_session, client=create_mock_openai_client(ANALYSIS_PAYLOAD))
        request = TopicAnalysisRequest(
            patient_id=patient.id,
            conversation_context="User: tired all the time",
            include_solutions=False,
        )

        result = await analyzer.analyze(request, SubscriptionTier.PRO, patient, USER_ID, now=NOW)

        assert result.testing_recommendations == ["Blood pressure check"]
        assert result.solutions is None

    @pytest.mark.asyncio
    async def test_identical_context_served_from_cache(self, db_session, patient, conversation):
        mock_client = create_mock_openai_client(ANALYSIS_PAYLOAD)
        analyzer = TopicAnalyzer(db_session, client=mock_client)
        request = TopicAnalysisRequest(
            conversation_id=conversation.id,
            patient_id=patient.id,
            conversation_context="User: my head hurts every afternoon",
        )

        await analyzer.analyze(request, SubscriptionTier.FREE, patient, USER_ID, now=NOW)
        cached = await analyzer.analyze(
            request, SubscriptionTier.FREE, patient, USER_ID, now=NOW + timedelta(seconds=30)
        )

        assert cached.cached is True
        assert [t.topic for t in cached.topics] == ["Tension headache", "Dehydration"]
        assert [s.solution for s in cached.solutions] == ["Drink 2L of water daily"]
        mock_client.chat.completions.create.assert_called_once()

    @pytest.mark.asyncio
    async def test_cache_expires(self, db_session, patient, conversation):
        mock_client = create_mock_openai_client(ANALYSIS_PAYLOAD)
        analyzer = TopicAnalyzer(db_session, client=mock_client)
        request = TopicAnalysisRequest(
            conversation_id=conversation.id,
            patient_id=patient.id,
            conversation_context="User: my head hurts every afternoon",
        )

        await analyzer.analyze(request, SubscriptionTier.FREE, patient, USER_ID, now=NOW)
        result = await analyzer.analyze(
            request, SubscriptionTier.FREE, patient, USER_ID, now=NOW + CACHE_TTL
        )

        assert result.cached is False
        assert mock_client.chat.completions.create.call_count == 2

    @pytest.mark.asyncio
    async def test_changed_context_not_cached(self, db_session, patient, conversation):
        mock_client = create_mock_openai_client(ANALYSIS_PAYLOAD)
        analyzer = TopicAnalyzer(db_session, client=mock_client)
        first = TopicAnalysisRequest(
            conversation_id=conversation.id, patient_id=patient.id, conversation_context="one"
        )
        second = first.model_copy(update={"conversation_context": "one two"})

        await analyzer.analyze(first, SubscriptionTier.FREE, patient, USER_ID, now=NOW)
        result = await analyzer.analyze(second, SubscriptionTier.FREE, patient, USER_ID, now=NOW)

        assert result.cached is False
        assert content_hash("one") != content_hash("one two")

    @pytest.mark.asyncio
    async def test_invalid_json_raises(self, db_session, patient):
        analyzer = TopicAnalyzer(db_session, client=create_mock_openai_client("not json"))
        request = TopicAnalysisRequest(patient_id=patient.id, conversation_context="hi")

        with pytest.raises(RuntimeError, match="Invalid response format"):
            await analyzer.analyze(request, SubscriptionTier.FREE, patient, USER_ID, now=NOW)

    @pytest.mark.asyncio
    async def test_empty_content_raises(self, db_session, patient):
        analyzer = TopicAnalyzer(db_session, client=create_mock_openai_client(None))
        request = TopicAnalysisRequest(patient_id=patient.id, conversation_context="hi")

        with pytest.raises(RuntimeError, match="No response"):
            await analyzer.analyze(request, SubscriptionTier.FREE, patient, USER_ID, now=NOW)

    @pytest.mark.asyncio
    async def test_pro_tier_bypasses_cache(self, db_session, patient, conversation):
        mock_client = create_mock_openai_client(ANALYSIS_PAYLOAD)
        analyzer = TopicAnalyzer(db_session, client=mock_client)
        request = TopicAnalysisRequest(
            conversation_id=conversation.id,
            patient_id=patient.id,
            conversation_context="User: tired all the time",
        )

        await analyzer.analyze(request, SubscriptionTier.PRO, patient, USER_ID, now=NOW)
        second = await analyzer.analyze(
            request, SubscriptionTier.PRO, patient, USER_ID, now=NOW + timedelta(seconds=30)
        )

        assert second.cached is False
        assert second.testing_recommendations == ["Blood pressure check"]
        assert mock_client.chat.completions.create.call_count == 2

    @pytest.mark.asyncio
    async def test_comprehensive_mode_bypasses_cache(self, db_session, patient, conversation):
        mock_client = create_mock_openai_client(ANALYSIS_PAYLOAD)
        analyzer = TopicAnalyzer(db_session, client=mock_client)
        request = TopicAnalysisRequest(
            conversation_id=conversation.id,
            patient_id=patient.id,
            conversation_context="User: my head hurts every afternoon",
        )

        await analyzer.analyze(request, SubscriptionTier.BASIC, patient, USER_ID, now=NOW)
        result = await analyzer.analyze(
            request.model_copy(update={"analysis_mode": "comprehensive"}),
            SubscriptionTier.BASIC,
            patient,
            USER_ID,
            now=NOW + timedelta(seconds=30),
        )

        assert result.cached is False
        assert mock_client.chat.completions.create.call_count == 2

    @pytest.mark.asyncio
    async def test_close_closes_client(self):
        mock_client = AsyncMock()
        analyzer = TopicAnalyzer(MagicMock(), client=mock_client)

        await analyzer.close()

        mock_client.close.assert_awaited_once()


class TestAnalyzeRoute:
    """Tests for POST /api/health-topics/analyze."""

    @pytest.mark.asyncio
    async def test_analyzer_closed_after_success(self, client, auth_headers, patient_in_db):
        with patch("drknowsit.routes.topics.TopicAnalyzer") as mock_cls:
            instance = mock_cls.return_value
            instance.analyze = AsyncMock(return_value=TopicAnalysisResponse(topics=[]))
            instance.close = AsyncMock()
            response = await client.post(
                "/api/health-topics/analyze",
                json={"patient_id": str(patient_in_db), "conversation_context": "User: dizzy"},
                headers=auth_headers,
            )

        assert response.status_code == 200
        assert response.json()["cached"] is False
        instance.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_analyzer_closed_after_failure(self, client, auth_headers, patient_in_db):
        with patch("drknowsit.routes.topics.TopicAnalyzer") as mock_cls:
            instance = mock_cls.return_value
            instance.analyze = AsyncMock(side_effect=RuntimeError("Invalid response format from AI"))
            instance.close = AsyncMock()
            response = await client.post(
                "/api/health-topics/analyze",
                json={"patient_id": str(patient_in_db), "conversation_context": "User: dizzy"},
                headers=auth_headers,
            )

        assert response.status_code == 500
        assert response.json() == {"error": "Invalid response format from AI"}
        instance.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_foreign_patient_returns_404(self, client, auth_headers, foreign_patient_in_db):
        with patch("drknowsit.routes.topics.TopicAnalyzer") as mock_cls:
            response = await client.post(
                "/api/health-topics/analyze",
                json={"patient_id": str(foreign_patient_in_db), "conversation_context": "User: dizzy"},
                headers=auth_headers,
            )

        assert response.status_code == 404
        mock_cls.assert_not_called()
