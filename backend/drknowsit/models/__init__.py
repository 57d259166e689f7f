"""SQLAlchemy models."""

from drknowsit.models.account import AISettings, Subscriber, UserTokenLimit
from drknowsit.models.auth import AuthSession
from drknowsit.models.conversation import Conversation, Message, MessageType
from drknowsit.models.health import (
    DoctorNote,
    HealthDataPriority,
    HealthRecord,
    HealthRecordSummary,
)
from drknowsit.models.patient import Patient
from drknowsit.models.topics import ConversationSolution, ConversationTopic

__all__ = [
    "AISettings",
    "AuthSession",
    "Conversation",
    "ConversationSolution",
    "ConversationTopic",
    "DoctorNote",
    "HealthDataPriority",
    "HealthRecord",
    "HealthRecordSummary",
    "Message",
    "MessageType",
    "Patient",
    "Subscriber",
    "UserTokenLimit",
]
