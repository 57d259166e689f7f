"""Health-topic analysis API route."""

import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from drknowsit.auth import verify_bearer_token
from drknowsit.database import get_db
from drknowsit.errors import ApiError
from drknowsit.repositories import ConversationRepository, PatientRepository
from drknowsit.schemas.topics import TopicAnalysisRequest, TopicAnalysisResponse
from drknowsit.services.context_loader import ContextLoader
from drknowsit.services.dispatcher import UpstreamError
from drknowsit.services.topic_analysis import TopicAnalyzer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health-topics", tags=["health-topics"])


@router.post("/analyze", response_model=TopicAnalysisResponse)
async def analyze_health_topics(
    request: TopicAnalysisRequest,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(verify_bearer_token),
) -> TopicAnalysisResponse:
    """Generate health topics (and optional solutions) for a conversation.

    The tier comes from the caller's subscription, never from the request.

    Raises:
        ApiError: 404 if the patient or conversation is not the caller's,
            500 if the analysis model fails.
    """
    patient = await PatientRepository(db).get_for_user(request.patient_id, user_id)
    if patient is None:
        raise ApiError(status.HTTP_404_NOT_FOUND, "Patient not found")

    if request.conversation_id is not None:
        conversation = await ConversationRepository(db).get_for_user(request.conversation_id, user_id)
        if conversation is None:
            raise ApiError(status.HTTP_404_NOT_FOUND, "Conversation not found")

    account = await ContextLoader(db).load_account(user_id)

    try:
        analyzer = TopicAnalyzer(db)
    except ValueError:
        logger.error("Analysis model is not configured")
        raise ApiError(status.HTTP_500_INTERNAL_SERVER_ERROR, "Analysis service is not configured")

    try:
        return await analyzer.analyze(request, account.tier, patient, user_id)
    except UpstreamError as e:
        raise ApiError(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Failed to analyze conversation",
            details=f"upstream status {e.status_code}",
        ) from e
    except RuntimeError as e:
        logger.error("Topic analysis failed: %s", e)
        raise ApiError(status.HTTP_500_INTERNAL_SERVER_ERROR, str(e)) from e
    finally:
        await analyzer.close()
