"""Stale-response guard for chat requests.

A response is only applied if no newer request has been issued since it was
sent and the user has not moved to a different conversation in the meantime.
"""

import uuid
from dataclasses import dataclass


@dataclass(frozen=True)
class RequestToken:
    """Snapshot taken when a request is sent."""

    seq: int
    conversation_id: uuid.UUID | None


class RequestSequencer:
    """Monotonic request counter plus the active conversation."""

    def __init__(self, conversation_id: uuid.UUID | None = None):
        self._seq = 0
        self.active_conversation_id = conversation_id

    @property
    def current_seq(self) -> int:
        return self._seq

    def issue(self, conversation_id: uuid.UUID | None = None) -> RequestToken:
        """Register a new in-flight request and return its token."""
        self._seq += 1
        return RequestToken(seq=self._seq, conversation_id=conversation_id)

    def switch_conversation(self, conversation_id: uuid.UUID | None) -> None:
        """Move to another conversation; every in-flight request becomes stale."""
        self.active_conversation_id = conversation_id
        self._seq += 1

    def adopt_conversation(self, conversation_id: uuid.UUID) -> None:
        """Record a conversation the server just created for the active chat.

        Unlike switch_conversation this does not invalidate in-flight requests.
        """
        self.active_conversation_id = conversation_id

    def is_stale(self, token: RequestToken) -> bool:
        """Return True if the response for `token` must be discarded.

        A None conversation on either side means one was just created and is
        never treated as a mismatch.
        """
        if token.seq != self._seq:
            return True
        current = self.active_conversation_id
        return (
            current is not None
            and token.conversation_id is not None
            and current != token.conversation_id
        )
