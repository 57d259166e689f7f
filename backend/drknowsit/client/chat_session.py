"""Async chat client for the DrKnowsIt chat endpoint.

Keeps the visible message list for one chat pane and applies the same
user-facing failure behaviour as the web app:

- every response (success or error) is checked against the stale-response
  guard and dropped if the user has moved on;
- a token-limit response locks the session until the server-supplied
  timeout end, without adding an apology bubble;
- any other failure adds a single apology bubble tailored to the error.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

import httpx

from drknowsit.client.request_guard import RequestSequencer
from drknowsit.schemas.chat import MAX_CONVERSATION_HISTORY, ChatResponse

logger = logging.getLogger(__name__)

CHAT_PATH = "/api/chat"
DEFAULT_TIMEOUT = 60.0

RETRY_SUFFIX = " You can try asking your question again."
DEFAULT_APOLOGY = "I apologize, but I encountered an error while processing your request."
CONNECTION_APOLOGY = (
    "I'm having trouble connecting to the server. "
    "Please check your internet connection and try again."
)
RATE_LIMIT_APOLOGY = "I'm receiving too many requests right now. Please wait a moment and try again."
SESSION_APOLOGY = "Your session may have expired. Please try refreshing the page or logging in again."
SUBSCRIPTION_APOLOGY = "AI Chat is a Pro feature. Upgrade to continue."

_SUBSCRIPTION_RE = re.compile(r"\bpro\b|subscription", re.IGNORECASE)


class ChatLockedError(RuntimeError):
    """Raised when sending while the token cool-down is active."""

    def __init__(self, locked_until: datetime | None):
        self.locked_until = locked_until
        super().__init__(f"Chat is locked until {locked_until}")


@dataclass
class ChatRequestError:
    """A failed chat request, as seen by the client."""

    status_code: int | None
    message: str
    body: dict[str, Any] = field(default_factory=dict)


@dataclass
class VisibleMessage:
    """A message bubble in the chat pane."""

    type: Literal["user", "ai"]
    content: str
    image_url: str | None = None
    is_error: bool = False


def classify_error(error: ChatRequestError) -> str:
    """Pick the apology shown for a non-token-limit failure."""
    message = error.message.lower()
    if error.status_code == 403 or _SUBSCRIPTION_RE.search(error.message):
        return SUBSCRIPTION_APOLOGY
    if "network" in message or "timeout" in message:
        return CONNECTION_APOLOGY
    if "rate limit" in message:
        return RATE_LIMIT_APOLOGY
    if error.status_code == 401 or "unauthorized" in message:
        return SESSION_APOLOGY
    return DEFAULT_APOLOGY


def is_token_limit(error: ChatRequestError) -> bool:
    return error.status_code == 429 or "token limit" in error.message.lower()


def _lockout_end(body: dict[str, Any], now: datetime) -> datetime | None:
    """Timeout end from a 429 body: epoch-ms `timeout_end` or `retry_after_seconds`."""
    timeout_end = body.get("timeout_end")
    if isinstance(timeout_end, (int, float)):
        return datetime.fromtimestamp(timeout_end / 1000, tz=timezone.utc)
    retry_after = body.get("retry_after_seconds")
    if isinstance(retry_after, (int, float)):
        return now + timedelta(seconds=retry_after)
    return None


class ChatSession:
    """One chat pane bound to an account, and optionally a patient.

    Example:
        async with ChatSession("https://api.example.com", token) as session:
            reply = await session.send("I have a headache")
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        patient_id: uuid.UUID | None = None,
        conversation_id: uuid.UUID | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._client = http_client or httpx.AsyncClient(base_url=base_url, timeout=DEFAULT_TIMEOUT)
        self._owns_client = http_client is None
        self._headers = {"Authorization": f"Bearer {token}"}
        self.patient_id = patient_id
        self.messages: list[VisibleMessage] = []
        self.locked_until: datetime | None = None
        self.locked = False
        self.last_error: ChatRequestError | None = None
        self._guard = RequestSequencer(conversation_id)

    @property
    def conversation_id(self) -> uuid.UUID | None:
        return self._guard.active_conversation_id

    async def __aenter__(self) -> "ChatSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def switch_conversation(
        self,
        conversation_id: uuid.UUID | None,
        messages: list[VisibleMessage] | None = None,
    ) -> None:
        """Show another conversation; responses still in flight are discarded."""
        self._guard.switch_conversation(conversation_id)
        self.messages = list(messages or [])
        self.last_error = None

    def is_locked(self, now: datetime | None = None) -> bool:
        """Whether the token cool-down is still active (clears it once over)."""
        if not self.locked:
            return False
        now = now or datetime.now(timezone.utc)
        if self.locked_until is not None and now >= self.locked_until:
            self.locked = False
            self.locked_until = None
            return False
        return True

    def _history_payload(self) -> list[dict[str, Any]]:
        history = [m for m in self.messages if not m.is_error][-MAX_CONVERSATION_HISTORY:]
        return [
            {"type": m.type, "content": m.content, "image_url": m.image_url}
            for m in history
        ]

    async def send(
        self,
        message: str,
        image_url: str | None = None,
        now: datetime | None = None,
    ) -> ChatResponse | None:
        """Send one chat turn.

        Returns:
            The server response, or None when the response was stale or the
            request failed (the failure is reflected in `messages`, `locked`
            and `last_error`).

        Raises:
            ChatLockedError: If the token cool-down is active.
        """
        now = now or datetime.now(timezone.utc)
        if self.is_locked(now):
            raise ChatLockedError(self.locked_until)

        payload = {
            "message": message,
            "conversation_history": self._history_payload(),
            "conversation_id": str(self.conversation_id) if self.conversation_id else None,
            "patient_id": str(self.patient_id) if self.patient_id else None,
            "image_url": image_url,
        }
        token = self._guard.issue(self.conversation_id)
        self.messages.append(VisibleMessage(type="user", content=message, image_url=image_url))

        error: ChatRequestError | None = None
        data: dict[str, Any] = {}
        try:
            response = await self._client.post(CHAT_PATH, json=payload, headers=self._headers)
        except httpx.TimeoutException as e:
            error = ChatRequestError(None, f"Request timeout: {e}")
        except httpx.TransportError as e:
            error = ChatRequestError(None, f"Network error: {e}")
        else:
            try:
                data = response.json()
            except ValueError:
                data = {}
            if response.is_error:
                detail = data.get("error") or data.get("detail") or response.reason_phrase
                error = ChatRequestError(response.status_code, str(detail), data)

        if self._guard.is_stale(token):
            logger.info("Dropping stale chat response (seq=%s)", token.seq)
            return None

        if error is not None:
            self._handle_error(error, now)
            return None

        result = ChatResponse.model_validate(data)
        if self.conversation_id is None and result.conversation_id is not None:
            self._guard.adopt_conversation(result.conversation_id)
        self.messages.append(VisibleMessage(type="ai", content=result.response))
        self.last_error = None
        return result

    def _handle_error(self, error: ChatRequestError, now: datetime) -> None:
        self.last_error = error
        if is_token_limit(error):
            self.locked = True
            self.locked_until = _lockout_end(error.body, now)
            logger.info("Chat locked until %s", self.locked_until)
            return

        logger.warning("Chat request failed: status=%s message=%s", error.status_code, error.message)
        self.messages.append(
            VisibleMessage(type="ai", content=classify_error(error) + RETRY_SUFFIX, is_error=True)
        )
