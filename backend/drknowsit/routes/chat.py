"""Chat API route: one chat turn through the context/LLM/extraction pipeline."""

import logging
import uuid
from dataclasses import dataclass

from fastapi import APIRouter, Depends, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from drknowsit.auth import verify_bearer_token
from drknowsit.database import get_db
from drknowsit.errors import ApiError
from drknowsit.models import Conversation, MessageType, Patient
from drknowsit.repositories import ConversationRepository, PatientRepository
from drknowsit.repositories.conversation import title_from_message
from drknowsit.schemas.chat import ChatRequest, ChatResponse
from drknowsit.schemas.context import HistoryMessage
from drknowsit.schemas.diagnosis import DiagnosisCandidate
from drknowsit.services.context_assembler import build_system_prompt
from drknowsit.services.context_loader import ContextLoader
from drknowsit.services.diagnosis_merger import merge_diagnoses, persist_merged_diagnoses
from drknowsit.services.dispatcher import (
    MissingInputError,
    PromptDispatcher,
    UpstreamError,
    user_message_for_status,
)
from drknowsit.services.response_extractor import process_response
from drknowsit.services.token_limiter import (
    TokenLimitExceeded,
    add_tokens,
    estimate_tokens,
    require_tokens,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])

SUBSCRIPTION_REQUIRED = "AI chat requires an active subscription. Please upgrade to continue."


@dataclass
class ChatTarget:
    """Validated conversation and patient for a chat turn."""

    conversation: Conversation | None
    patient: Patient | None
    # Plain ids stay readable after a rollback expires the ORM instances
    conversation_id: uuid.UUID | None = None
    patient_id: uuid.UUID | None = None


async def _validate_target(request: ChatRequest, user_id: str, db: AsyncSession) -> ChatTarget:
    """Check the conversation and patient belong to the caller.

    Raises:
        ApiError: 400 for a foreign or mismatched conversation,
            403 for a patient the caller does not own.
    """
    conversation = None
    if request.conversation_id is not None:
        conversation = await ConversationRepository(db).get_for_user(request.conversation_id, user_id)
        if conversation is None or (
            request.patient_id is not None and conversation.patient_id != request.patient_id
        ):
            logger.warning(
                "Conversation validation failed: conversation=%s patient=%s",
                request.conversation_id, request.patient_id,
            )
            raise ApiError(status.HTTP_400_BAD_REQUEST, "Invalid conversation context")

    patient = None
    if request.patient_id is not None:
        patient = await PatientRepository(db).get_for_user(request.patient_id, user_id)
        if patient is None:
            raise ApiError(status.HTTP_403_FORBIDDEN, "Patient not found or access denied")

    return ChatTarget(
        conversation=conversation,
        patient=patient,
        conversation_id=conversation.id if conversation else None,
        patient_id=patient.id if patient else None,
    )


async def _update_diagnoses(
    db: AsyncSession,
    patient_id: uuid.UUID | None,
    user_id: str,
    extracted: list[DiagnosisCandidate],
) -> list[DiagnosisCandidate] | None:
    """Merge and persist extracted candidates. Failures are logged, never raised."""
    if not extracted:
        return None
    if patient_id is None:
        return merge_diagnoses([], extracted)
    try:
        return await persist_merged_diagnoses(db, patient_id, user_id, extracted)
    except SQLAlchemyError:
        logger.exception("Failed to persist diagnoses for patient %s", patient_id)
        return None


async def _persist_messages(
    db: AsyncSession,
    user_id: str,
    target: ChatTarget,
    request: ChatRequest,
    ai_content: str,
) -> uuid.UUID | None:
    """Save the user and AI messages, creating the conversation if needed.

    Runs in a savepoint; a failure is logged and the turn still succeeds.

    Returns:
        The conversation id, or the requested one if persistence failed.
    """
    try:
        async with db.begin_nested():
            repo = ConversationRepository(db)
            conversation_id = target.conversation_id
            if conversation_id is None:
                conversation = await repo.create(
                    user_id,
                    target.patient_id,
                    title_from_message(request.message),
                )
                conversation_id = conversation.id
            await repo.add_message(conversation_id, MessageType.USER, request.message, request.image_url)
            await repo.add_message(conversation_id, MessageType.AI, ai_content)
            return conversation_id
    except SQLAlchemyError:
        logger.exception("Failed to persist chat messages for user %s", user_id)
        return request.conversation_id


@router.post("", response_model=ChatResponse)
async def chat(
    request: ChatRequest,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(verify_bearer_token),
) -> ChatResponse:
    """Process one chat turn.

    This endpoint:
    1. Validates input, token budget and subscription
    2. Validates the conversation and patient belong to the caller
    3. Loads context and builds the system prompt
    4. Dispatches to the chat model
    5. Extracts diagnosis candidates and cleans the visible text
    6. Merges candidates into the patient's list and persists the messages

    Returns:
        ChatResponse with clean text, usage and the merged candidate list
        (null when this turn produced none).

    Raises:
        ApiError: 400 on missing input or conversation mismatch, 403 when
            unsubscribed or the patient is not the caller's, 429 during the
            token cool-down, 500 on upstream failure.
    """
    if not request.message.strip():
        raise ApiError(status.HTTP_400_BAD_REQUEST, "Message is required")

    try:
        await require_tokens(db, user_id)
    except TokenLimitExceeded as e:
        limit = e.status
        raise ApiError(
            status.HTTP_429_TOO_MANY_REQUESTS,
            str(e),
            extra={
                "timeout_end": int(limit.timeout_end.timestamp() * 1000) if limit.timeout_end else None,
                "retry_after_seconds": limit.retry_after_seconds,
            },
            headers={"Retry-After": str(limit.retry_after_seconds)},
        ) from e

    loader = ContextLoader(db)
    account = await loader.load_account(user_id)
    if not account.subscribed:
        logger.info("Chat access denied for user %s (tier=%s)", user_id, account.tier.value)
        raise ApiError(
            status.HTTP_403_FORBIDDEN,
            SUBSCRIPTION_REQUIRED,
            extra={"code": "subscription_required"},
        )

    target = await _validate_target(request, user_id, db)

    context = await loader.build(
        user_id=user_id,
        account=account,
        patient=target.patient,
        message=request.message,
        conversation_id=target.conversation_id,
        client_history=[
            HistoryMessage(type=m.type, content=m.content, image_url=m.image_url)
            for m in request.conversation_history
        ],
        image_url=request.image_url,
    )
    system_prompt = build_system_prompt(context)

    try:
        dispatcher = PromptDispatcher()
    except ValueError:
        logger.error("Chat model is not configured")
        raise ApiError(status.HTTP_500_INTERNAL_SERVER_ERROR, "AI service is not configured")

    try:
        result = await dispatcher.dispatch(
            system_prompt=system_prompt,
            message=request.message,
            history=context.history,
            image_url=request.image_url,
        )
    except MissingInputError as e:
        raise ApiError(status.HTTP_400_BAD_REQUEST, str(e)) from e
    except UpstreamError as e:
        raise ApiError(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            user_message_for_status(e.status_code),
            details=e.body[:500] or None,
        ) from e
    finally:
        await dispatcher.close()

    processed = process_response(result.text)
    updated = await _update_diagnoses(db, target.patient_id, user_id, processed.extracted_diagnoses)
    conversation_id = await _persist_messages(db, user_id, target, request, processed.clean_response)

    prompt_tokens = result.usage.get("prompt_tokens") or estimate_tokens(request.message)
    completion_tokens = result.usage.get("completion_tokens") or estimate_tokens(processed.clean_response)
    tokens_used = prompt_tokens + completion_tokens
    timeout_triggered = await add_tokens(db, user_id, tokens_used)

    return ChatResponse(
        response=processed.clean_response,
        model=result.model,
        usage=result.usage,
        updated_diagnoses=updated,
        conversation_id=conversation_id,
        tokens_used=tokens_used,
        timeout_triggered=timeout_triggered,
    )
