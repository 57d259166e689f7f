"""Doctor note API routes.

Doctor notes are AI-authored memory entries. Users can review them and
switch individual notes off; only active notes reach the chat prompt.
"""

import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from drknowsit.auth import verify_bearer_token
from drknowsit.database import get_db
from drknowsit.models import DoctorNote
from drknowsit.schemas.records import DoctorNoteResponse, DoctorNoteUpdate

router = APIRouter(prefix="/doctor-notes", tags=["doctor-notes"])


@router.get("", response_model=list[DoctorNoteResponse])
async def list_doctor_notes(
    patient_id: uuid.UUID | None = None,
    active_only: bool = False,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(verify_bearer_token),
) -> list[DoctorNote]:
    """List the caller's doctor notes, optionally for one patient.

    Args:
        patient_id: Restrict to notes about this patient.
        active_only: Only return notes currently included in prompts.
    """
    stmt = select(DoctorNote).where(DoctorNote.user_id == user_id)
    if patient_id is not None:
        stmt = stmt.where(DoctorNote.patient_id == patient_id)
    if active_only:
        stmt = stmt.where(DoctorNote.is_active.is_(True))
    result = await db.execute(stmt.order_by(DoctorNote.created_at.desc()))
    return list(result.scalars().all())


@router.patch("/{note_id}", response_model=DoctorNoteResponse)
async def update_doctor_note(
    note_id: uuid.UUID,
    update: DoctorNoteUpdate,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(verify_bearer_token),
) -> DoctorNote:
    """Toggle or edit a doctor note.

    Raises:
        HTTPException: 404 if the note is not the caller's.
    """
    result = await db.execute(
        select(DoctorNote).where(DoctorNote.id == note_id, DoctorNote.user_id == user_id)
    )
    note = result.scalar_one_or_none()
    if note is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Doctor note not found",
        )

    for field, value in update.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(note, field, value)
    await db.flush()
    return note
