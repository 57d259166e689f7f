"""Conversation API routes."""

import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from drknowsit.auth import verify_bearer_token
from drknowsit.constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from drknowsit.database import get_db
from drknowsit.repositories import ConversationRepository, PatientRepository
from drknowsit.schemas.chat import MessageResponse
from drknowsit.schemas.records import DoctorNoteResponse, MemoryAnalysisRequest, MemoryAnalysisResponse
from drknowsit.services.context_loader import ContextLoader
from drknowsit.services.dispatcher import UpstreamError
from drknowsit.services.memory_analysis import MemoryAnalyzer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.get("/{conversation_id}/messages", response_model=list[MessageResponse])
async def list_messages(
    conversation_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(verify_bearer_token),
    skip: int = 0,
    limit: int = DEFAULT_PAGE_SIZE,
) -> list[MessageResponse]:
    """List a conversation's messages, oldest first.

    Raises:
        HTTPException: 404 if the conversation is not the caller's.
    """
    repo = ConversationRepository(db)
    conversation = await repo.get_for_user(conversation_id, user_id)
    if conversation is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Conversation not found",
        )

    messages = await repo.list_messages(conversation_id, limit=min(limit, MAX_PAGE_SIZE), offset=skip)
    return [
        MessageResponse(
            id=m.id,
            type=m.type.value,
            content=m.content,
            image_url=m.image_url,
            created_at=m.created_at,
        )
        for m in messages
    ]


@router.post("/{conversation_id}/memory", response_model=MemoryAnalysisResponse)
async def analyze_conversation_memory(
    conversation_id: uuid.UUID,
    request: MemoryAnalysisRequest,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(verify_bearer_token),
) -> MemoryAnalysisResponse:
    """Record doctor notes from the conversation's latest turns.

    Nothing is analysed when the account has memory switched off.

    Raises:
        HTTPException: 404 if the conversation or patient is not the caller's,
            400 if the conversation is about another patient, 500 if the
            analysis model is unavailable or fails.
    """
    conversation = await ConversationRepository(db).get_for_user(conversation_id, user_id)
    if conversation is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Conversation not found",
        )
    patient = await PatientRepository(db).get_for_user(request.patient_id, user_id)
    if patient is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Patient not found",
        )
    if conversation.patient_id is not None and conversation.patient_id != patient.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Conversation is about a different patient",
        )

    account = await ContextLoader(db).load_account(user_id)
    if not account.ai_settings.memory_enabled:
        logger.info("Memory disabled for user %s; skipping analysis", user_id)
        return MemoryAnalysisResponse(memory_updated=False)

    try:
        analyzer = MemoryAnalyzer(db)
    except ValueError:
        logger.error("Analysis model is not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Analysis service is not configured",
        )

    try:
        notes = await analyzer.analyze(conversation_id, patient, user_id)
    except UpstreamError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to analyze conversation memory",
        ) from e
    except RuntimeError as e:
        logger.error("Memory analysis failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e),
        ) from e
    finally:
        await analyzer.close()

    return MemoryAnalysisResponse(
        memory_updated=bool(notes),
        notes=[DoctorNoteResponse.model_validate(n) for n in notes],
    )
