"""Tests for the async chat client."""

import json
import uuid
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from drknowsit.client.chat_session import (
    CONNECTION_APOLOGY,
    DEFAULT_APOLOGY,
    RATE_LIMIT_APOLOGY,
    RETRY_SUFFIX,
    SESSION_APOLOGY,
    SUBSCRIPTION_APOLOGY,
    ChatLockedError,
    ChatRequestError,
    ChatSession,
    VisibleMessage,
    classify_error,
    is_token_limit,
)

NOW = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)
CONVERSATION_ID = uuid.uuid4()


def _ok_body(text: str = "How long has it hurt?", conversation_id: uuid.UUID = CONVERSATION_ID) -> dict:
    return {
        "response": text,
        "model": "grok-4",
        "usage": {},
        "updated_diagnoses": None,
        "conversation_id": str(conversation_id),
        "tokens_used": 12,
        "timeout_triggered": False,
    }


def _session(handler, **kwargs) -> ChatSession:
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        base_url="http://test",
    )
    return ChatSession("http://test", "test-token", http_client=http_client, **kwargs)


class TestSend:
    """Tests for ChatSession.send."""

    @pytest.mark.asyncio
    async def test_success_appends_bubbles_and_adopts_conversation(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=_ok_body())

        session = _session(handler)
        result = await session.send("My head hurts", now=NOW)

        assert result.response == "How long has it hurt?"
        assert session.conversation_id == CONVERSATION_ID
        assert [(m.type, m.content) for m in session.messages] == [
            ("user", "My head hurts"),
            ("ai", "How long has it hurt?"),
        ]
        sent = json.loads(requests[0].content)
        assert sent["message"] == "My head hurts"
        assert sent["conversation_id"] is None
        assert requests[0].headers["authorization"] == "Bearer test-token"

    @pytest.mark.asyncio
    async def test_history_excludes_error_bubbles(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=_ok_body())

        session = _session(handler, conversation_id=CONVERSATION_ID)
        session.messages = [
            VisibleMessage(type="user", content="Hi"),
            VisibleMessage(type="ai", content="Sorry", is_error=True),
        ]
        await session.send("Again", now=NOW)

        sent = json.loads(requests[0].content)
        assert [m["content"] for m in sent["conversation_history"]] == ["Hi"]
        assert sent["conversation_id"] == str(CONVERSATION_ID)

    @pytest.mark.asyncio
    async def test_response_after_switch_is_dropped(self):
        other_conversation = uuid.uuid4()
        session: ChatSession | None = None

        def handler(request: httpx.Request) -> httpx.Response:
            # user switches conversation while the request is in flight
            session.switch_conversation(other_conversation)
            return httpx.Response(200, json=_ok_body())

        session = _session(handler, conversation_id=CONVERSATION_ID)
        result = await session.send("Hello", now=NOW)

        assert result is None
        assert session.messages == []
        assert session.conversation_id == other_conversation

    @pytest.mark.asyncio
    async def test_stale_error_adds_no_bubble(self):
        session: ChatSession | None = None

        def handler(request: httpx.Request) -> httpx.Response:
            session.switch_conversation(None)
            return httpx.Response(500, json={"error": "boom"})

        session = _session(handler, conversation_id=CONVERSATION_ID)

        assert await session.send("Hello", now=NOW) is None
        assert session.messages == []
        assert session.last_error is None


class TestTokenLimit:
    """Tests for the token cool-down lock."""

    @pytest.mark.asyncio
    async def test_429_locks_until_timeout_end(self):
        timeout_end = NOW + timedelta(minutes=30)

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, json={
                "error": "Token limit reached",
                "timeout_end": int(timeout_end.timestamp() * 1000),
                "retry_after_seconds": 1800,
            })

        session = _session(handler)
        assert await session.send("Hello", now=NOW) is None

        assert session.locked is True
        assert session.locked_until == timeout_end
        # no apology bubble for a token limit
        assert [m.type for m in session.messages] == ["user"]

        with pytest.raises(ChatLockedError):
            await session.send("Again", now=NOW + timedelta(minutes=5))

        assert session.is_locked(timeout_end) is False
        assert session.locked_until is None

    @pytest.mark.asyncio
    async def test_retry_after_used_without_timeout_end(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, json={"error": "Token limit reached", "retry_after_seconds": 60})

        session = _session(handler)
        await session.send("Hello", now=NOW)

        assert session.locked_until == NOW + timedelta(seconds=60)

    def test_token_limit_detected_from_message(self):
        assert is_token_limit(ChatRequestError(500, "Token limit exceeded for today")) is True
        assert is_token_limit(ChatRequestError(500, "Internal error")) is False


class TestApologies:
    """Tests for the apology bubble added on failure."""

    @pytest.mark.asyncio
    async def test_subscription_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, json={
                "error": "AI chat requires an active subscription.",
                "code": "subscription_required",
            })

        session = _session(handler)
        await session.send("Hello", now=NOW)

        last = session.messages[-1]
        assert last.is_error is True
        assert last.content == SUBSCRIPTION_APOLOGY + RETRY_SUFFIX
        assert session.last_error.status_code == 403

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        session = _session(handler)
        await session.send("Hello", now=NOW)

        assert session.messages[-1].content == CONNECTION_APOLOGY + RETRY_SUFFIX
        assert session.last_error.status_code is None

    @pytest.mark.asyncio
    async def test_detail_body_used_for_message(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"detail": "Your session has expired. Please sign in again."})

        session = _session(handler)
        await session.send("Hello", now=NOW)

        assert session.last_error.message == "Your session has expired. Please sign in again."
        assert session.messages[-1].content == SESSION_APOLOGY + RETRY_SUFFIX

    @pytest.mark.asyncio
    async def test_one_bubble_per_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, json={"error": "AI service is temporarily unavailable."})

        session = _session(handler)
        await session.send("Hello", now=NOW)

        assert [(m.type, m.is_error) for m in session.messages] == [("user", False), ("ai", True)]
        assert session.messages[-1].content == DEFAULT_APOLOGY + RETRY_SUFFIX

    @pytest.mark.parametrize(
        "error,expected",
        [
            (ChatRequestError(500, "Upgrade to Pro to continue"), SUBSCRIPTION_APOLOGY),
            (ChatRequestError(None, "Request timeout: read timed out"), CONNECTION_APOLOGY),
            (ChatRequestError(500, "Rate limit exceeded"), RATE_LIMIT_APOLOGY),
            (ChatRequestError(500, "Unauthorized"), SESSION_APOLOGY),
            (ChatRequestError(500, "Something else"), DEFAULT_APOLOGY),
        ],
    )
    def test_classify_error(self, error, expected):
        assert classify_error(error) == expected


@pytest.mark.asyncio
async def test_owned_client_closed():
    async with ChatSession("http://test", "test-token") as session:
        assert session.is_locked() is False

    assert session._client.is_closed
