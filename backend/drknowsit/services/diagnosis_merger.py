"""Diagnosis Merger.

Reconciles newly extracted diagnosis candidates with a patient's stored list:
keyed by name, new entries replace existing ones, everything is stamped with
the current time, sorted by confidence (descending) and capped.

Persistence is a read-merge-write guarded by the patient's `version` column.
A concurrent writer makes the UPDATE match zero rows; SQLAlchemy raises
StaleDataError and the whole read-merge-write is retried against fresh state.
"""

import logging
import uuid
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from drknowsit.models import Patient
from drknowsit.schemas.diagnosis import DiagnosisCandidate

logger = logging.getLogger(__name__)

MAX_DIAGNOSES = 5
MAX_PERSIST_ATTEMPTS = 3


def merge_diagnoses(
    existing: Sequence[DiagnosisCandidate],
    new: Sequence[DiagnosisCandidate],
    now: datetime | None = None,
) -> list[DiagnosisCandidate]:
    """Merge new candidates into an existing list.

    Args:
        existing: Currently stored candidates
        new: Candidates extracted this turn
        now: Timestamp stamped on every surviving candidate (defaults to UTC now)

    Returns:
        At most MAX_DIAGNOSES candidates sorted non-increasing by confidence.
        When `new` is empty, `existing` is returned untouched.
    """
    if not new:
        return list(existing)

    now = now or datetime.now(timezone.utc)
    by_name: dict[str, DiagnosisCandidate] = {c.name: c for c in existing}
    for candidate in new:
        # Last write wins, regardless of confidence
        by_name[candidate.name] = candidate

    merged = [c.model_copy(update={"updated_at": now}) for c in by_name.values()]
    # sorted() is stable: equal confidences keep insertion order
    merged = sorted(merged, key=lambda c: c.confidence, reverse=True)
    return merged[:MAX_DIAGNOSES]


def load_candidates(raw: Iterable[Any] | None) -> list[DiagnosisCandidate]:
    """Parse a stored JSON list, skipping malformed entries."""
    candidates: list[DiagnosisCandidate] = []
    for entry in raw or []:
        try:
            candidates.append(DiagnosisCandidate.model_validate(entry))
        except ValidationError:
            logger.warning("Skipping malformed stored diagnosis: %r", entry)
    return candidates


def dump_candidates(candidates: Iterable[DiagnosisCandidate]) -> list[dict[str, Any]]:
    return [c.model_dump(mode="json") for c in candidates]


async def persist_merged_diagnoses(
    db: AsyncSession,
    patient_id: uuid.UUID,
    user_id: str,
    new: Sequence[DiagnosisCandidate],
    now: datetime | None = None,
) -> list[DiagnosisCandidate] | None:
    """Merge `new` into the patient's stored candidates and save them.

    Args:
        db: Database session
        patient_id: Patient UUID
        user_id: Owning account; other accounts' patients are never touched
        new: Candidates extracted this turn
        now: Timestamp for the merge

    Returns:
        The merged list, or None if the patient does not exist for this user.

    Raises:
        StaleDataError: If every attempt lost a concurrent-update race.
    """
    for attempt in range(1, MAX_PERSIST_ATTEMPTS + 1):
        try:
            # Savepoint per attempt; earlier writes in the transaction survive a lost race
            async with db.begin_nested():
                result = await db.execute(
                    select(Patient)
                    .where(Patient.id == patient_id, Patient.user_id == user_id)
                    .execution_options(populate_existing=True)
                )
                patient = result.scalar_one_or_none()
                if patient is None:
                    return None

                merged = merge_diagnoses(load_candidates(patient.probable_diagnoses), new, now=now)
                patient.probable_diagnoses = dump_candidates(merged)
                await db.flush()
        except StaleDataError:
            logger.warning(
                "Concurrent diagnosis update for patient %s (attempt %d/%d)",
                patient_id, attempt, MAX_PERSIST_ATTEMPTS,
            )
            if attempt == MAX_PERSIST_ATTEMPTS:
                raise
            continue

        logger.info("Stored %d diagnosis candidates for patient %s", len(merged), patient_id)
        return merged

    return None
