"""Patient API routes."""

import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from drknowsit.auth import verify_bearer_token
from drknowsit.constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from drknowsit.database import get_db
from drknowsit.models import Patient
from drknowsit.repositories import PatientRepository
from drknowsit.schemas.diagnosis import DiagnosisCandidate
from drknowsit.schemas.records import PatientResponse
from drknowsit.services.diagnosis_merger import load_candidates

router = APIRouter(prefix="/patients", tags=["patients"])


def _to_response(patient: Patient) -> PatientResponse:
    return PatientResponse(
        id=patient.id,
        first_name=patient.first_name,
        last_name=patient.last_name,
        date_of_birth=patient.date_of_birth,
        gender=patient.gender,
        relationship=patient.relationship,
        is_primary=patient.is_primary,
        is_pet=patient.is_pet,
        species=patient.species,
        probable_diagnoses=load_candidates(patient.probable_diagnoses),
    )


async def _get_owned_patient(patient_id: uuid.UUID, user_id: str, db: AsyncSession) -> Patient:
    patient = await PatientRepository(db).get_for_user(patient_id, user_id)
    if patient is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Patient not found",
        )
    return patient


@router.get("")
async def list_patients(
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(verify_bearer_token),
    skip: int = 0,
    limit: int = DEFAULT_PAGE_SIZE,
) -> dict:
    """List the caller's patients with pagination.

    Args:
        skip: Number of records to skip (for pagination).
        limit: Maximum number of records to return (max 100).

    Returns:
        Paginated list of patients with metadata.
    """
    limit = min(limit, MAX_PAGE_SIZE)

    total = await db.scalar(
        select(func.count()).select_from(Patient).where(Patient.user_id == user_id)
    )
    patients = await PatientRepository(db).list_for_user(user_id, limit=limit, offset=skip)

    return {
        "items": [_to_response(p).model_dump(mode="json") for p in patients],
        "total": total or 0,
        "skip": skip,
        "limit": limit,
    }


@router.get("/{patient_id}", response_model=PatientResponse)
async def get_patient(
    patient_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(verify_bearer_token),
) -> PatientResponse:
    """Get a single patient owned by the caller.

    Raises:
        HTTPException: 404 if patient not found.
    """
    return _to_response(await _get_owned_patient(patient_id, user_id, db))


@router.get("/{patient_id}/diagnoses", response_model=list[DiagnosisCandidate])
async def get_patient_diagnoses(
    patient_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(verify_bearer_token),
) -> list[DiagnosisCandidate]:
    """Get the patient's capped, confidence-ordered diagnosis candidates."""
    patient = await _get_owned_patient(patient_id, user_id, db)
    return load_candidates(patient.probable_diagnoses)
