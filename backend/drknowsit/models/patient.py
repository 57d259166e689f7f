"""Patient model.

A patient is a person (or pet) an account chats about. It carries the capped,
confidence-ordered list of diagnosis candidates maintained by the diagnosis
merger.
"""

import uuid
from datetime import date, datetime
from typing import Any

from sqlalchemy import Boolean, Date, DateTime, Integer, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from drknowsit.database import Base, JSONType


class Patient(Base):
    """Patient owned by a single account.

    `version` is an optimistic-lock counter: SQLAlchemy adds it to the WHERE
    clause of every UPDATE and raises StaleDataError when another writer got
    there first.
    """

    __tablename__ = "patients"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    # Identity
    first_name: Mapped[str] = mapped_column(String(255), nullable=False)
    last_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    gender: Mapped[str | None] = mapped_column(String(50), nullable=True)
    relationship: Mapped[str | None] = mapped_column(String(50), nullable=True)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_pet: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    species: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Capped list of diagnosis candidates (see services.diagnosis_merger)
    probable_diagnoses: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Patient(id={self.id}, user_id={self.user_id}, is_pet={self.is_pet})>"
