"""Patient repository.

Every query filters by the owning account; a patient id belonging to another
account behaves exactly like a missing one.
"""

from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from drknowsit.models import Patient


class PatientRepository:
    """Repository for account-owned patients."""

    def __init__(self, db: AsyncSession):
        """Initialize repository with database session.

        Args:
            db: Async SQLAlchemy session.
        """
        self.db = db

    async def get_for_user(self, patient_id: uuid.UUID, user_id: str) -> Patient | None:
        """Get a patient owned by the given account.

        Args:
            patient_id: Patient UUID.
            user_id: Owning account id.

        Returns:
            Patient if found and owned, None otherwise.
        """
        result = await self.db.execute(
            select(Patient).where(Patient.id == patient_id, Patient.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def list_for_user(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Patient]:
        """List an account's patients, primary profile first.

        Args:
            user_id: Owning account id.
            limit: Maximum results.
            offset: Pagination offset.

        Returns:
            List of patients.
        """
        result = await self.db.execute(
            select(Patient)
            .where(Patient.user_id == user_id)
            .order_by(Patient.is_primary.desc(), Patient.created_at)
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())
