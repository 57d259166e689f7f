"""Prompt Dispatcher: sends the assembled prompt to the chat model.

Talks to an OpenAI-compatible chat-completions endpoint (xAI by default)
through the `openai` SDK. There is no retry: a failure is surfaced to the
caller as a single terminal UpstreamError carrying the upstream status and
body.
"""

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import openai
from openai import AsyncOpenAI

from drknowsit.config import settings
from drknowsit.schemas.context import HistoryMessage

logger = logging.getLogger(__name__)

EMPTY_COMPLETION_FALLBACK = "I'm sorry, I couldn't generate a response."

# Status used when the endpoint could not be reached at all
NETWORK_FAILURE_STATUS = 502

_ROLE_MAP = {"user": "user", "ai": "assistant"}


class MissingInputError(ValueError):
    """A required input (e.g. the user message) is absent."""


class UpstreamError(RuntimeError):
    """The LLM endpoint failed or returned a non-2xx status."""

    def __init__(self, status_code: int, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(f"LLM request failed with status {status_code}: {body[:200]}")


def user_message_for_status(status_code: int) -> str:
    """Plain-language message shown to the user for an upstream failure."""
    if status_code == 401:
        return "Authentication error with AI service. Please contact support."
    if status_code == 429:
        return "AI service is busy. Please wait a moment and try again."
    if status_code == 400:
        return "I had trouble understanding your request. Could you rephrase your question?"
    if status_code >= 500:
        return "AI service is temporarily unavailable. Please try again in a few minutes."
    return (
        "I encountered an error while processing your request. "
        "You can try asking your question again."
    )


@dataclass
class DispatchResult:
    """Raw assistant text plus usage metadata."""

    text: str
    model: str
    usage: dict[str, Any] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return int(self.usage.get("total_tokens") or 0)


def _extract_usage(response: Any) -> dict[str, int]:
    """Extract token usage from a completion, returning empty dict if unavailable."""
    usage = getattr(response, "usage", None)
    if usage is None:
        return {}
    return {
        "prompt_tokens": getattr(usage, "prompt_tokens", 0) or 0,
        "completion_tokens": getattr(usage, "completion_tokens", 0) or 0,
        "total_tokens": getattr(usage, "total_tokens", 0) or 0,
    }


class PromptDispatcher:
    """Chat-completion client for the assistant model.

    Example:
        dispatcher = PromptDispatcher()
        result = await dispatcher.dispatch(
            system_prompt=prompt,
            message="My knee hurts when I walk",
            history=[HistoryMessage(type="ai", content="How can I help?")],
        )
        print(result.text)
    """

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ):
        """Initialize PromptDispatcher.

        Args:
            client: Optional pre-configured AsyncOpenAI client (for testing).
                   If not provided, creates one from settings.
            model: Model name. Defaults to settings.chat_model.
            temperature: Sampling temperature. Defaults to settings.chat_temperature.
            max_tokens: Completion token cap. Defaults to settings.chat_max_tokens.

        Raises:
            ValueError: If no client provided and LLM_API_KEY is not configured.
        """
        if client is not None:
            self._client = client
        else:
            if not settings.llm_api_key or settings.llm_api_key.startswith("CHANGE_ME"):
                raise ValueError(
                    "LLM_API_KEY environment variable is required. "
                    "Set it in your .env file or environment."
                )
            self._client = AsyncOpenAI(
                api_key=settings.llm_api_key,
                base_url=settings.llm_base_url,
                max_retries=0,
            )

        self._model = model or settings.chat_model
        self._temperature = settings.chat_temperature if temperature is None else temperature
        self._max_tokens = max_tokens or settings.chat_max_tokens

    async def close(self) -> None:
        """Close the underlying client connection."""
        await self._client.close()

    @staticmethod
    def _build_messages(
        system_prompt: str,
        message: str,
        history: Sequence[HistoryMessage] | None,
        image_url: str | None,
    ) -> list[dict[str, Any]]:
        """Build the chat-completions message list.

        History entries are role-mapped (user -> user, ai -> assistant); empty
        ones are dropped. With an image the user turn is multi-part content.
        """
        messages: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        for item in history or []:
            if not item.content or not item.content.strip():
                continue
            messages.append({"role": _ROLE_MAP[item.type], "content": item.content})

        if image_url:
            messages.append({
                "role": "user",
                "content": [
                    {"type": "text", "text": message},
                    {"type": "image_url", "image_url": {"url": image_url}},
                ],
            })
        else:
            messages.append({"role": "user", "content": message})
        return messages

    async def dispatch(
        self,
        system_prompt: str,
        message: str,
        history: Sequence[HistoryMessage] | None = None,
        image_url: str | None = None,
    ) -> DispatchResult:
        """Send one chat turn to the model.

        Args:
            system_prompt: Output of the Context Assembler
            message: Current user message
            history: Prior messages, oldest first
            image_url: Optional image attached to the current message

        Returns:
            DispatchResult with raw assistant text, model and usage

        Raises:
            MissingInputError: If message is empty.
            UpstreamError: If the endpoint fails or returns non-2xx.
        """
        if not message or not message.strip():
            raise MissingInputError("Message is required")

        messages = self._build_messages(system_prompt, message, history, image_url)
        t0 = time.perf_counter()
        logger.info(
            "dispatch: model=%s, messages=%d, prompt_chars=%d, image=%s",
            self._model, len(messages), len(system_prompt), "yes" if image_url else "no",
        )

        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=messages,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
                stream=False,
            )
        except openai.APIStatusError as e:
            body = e.response.text if e.response is not None else str(e)
            logger.error("LLM API error: status=%d body=%s", e.status_code, body[:500])
            raise UpstreamError(e.status_code, body) from e
        except openai.APIConnectionError as e:
            logger.error("LLM API unreachable: %s", e)
            raise UpstreamError(NETWORK_FAILURE_STATUS, str(e)) from e

        choice = response.choices[0] if response.choices else None
        text = (choice.message.content if choice is not None else None) or EMPTY_COMPLETION_FALLBACK
        usage = _extract_usage(response)

        logger.info(
            "dispatch complete: %.1fs, usage=%s",
            time.perf_counter() - t0, usage or "unavailable",
        )
        return DispatchResult(text=text, model=getattr(response, "model", None) or self._model, usage=usage)
