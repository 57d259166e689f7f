"""Repository layer for data access.

Repositories encapsulate database operations and scope every query to the
owning account.
"""

from drknowsit.repositories.conversation import ConversationRepository
from drknowsit.repositories.patient import PatientRepository

__all__ = ["ConversationRepository", "PatientRepository"]
