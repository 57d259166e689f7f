"""Health record API routes."""

import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from drknowsit.auth import verify_bearer_token
from drknowsit.database import get_db
from drknowsit.schemas.records import (
    HealthRecordSummaryResponse,
    SummarizeRequest,
    SummarizeResponse,
)
from drknowsit.services.dispatcher import UpstreamError
from drknowsit.services.record_summarizer import RecordSummarizer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health-records", tags=["health-records"])


@router.post("/{record_id}/summary", response_model=SummarizeResponse)
async def summarize_health_record(
    record_id: uuid.UUID,
    request: SummarizeRequest | None = None,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(verify_bearer_token),
) -> SummarizeResponse:
    """Return a record's summary, generating it if missing or forced.

    Raises:
        HTTPException: 404 if the record is not the caller's, 500 if the
            summary model is unavailable or fails.
    """
    force = request.force_regenerate if request is not None else False

    try:
        summarizer = RecordSummarizer(db)
    except ValueError:
        logger.error("Summary model is not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Summary service is not configured",
        )

    try:
        result = await summarizer.summarize(record_id, user_id, force_regenerate=force)
    except UpstreamError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to summarize health record",
        ) from e
    except RuntimeError as e:
        logger.error("Record summary failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e),
        ) from e
    finally:
        await summarizer.close()

    if result is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Health record not found",
        )
    summary, generated = result
    return SummarizeResponse(
        summary=HealthRecordSummaryResponse.model_validate(summary),
        generated=generated,
    )
