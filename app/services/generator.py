"""Response generator for the botany assistant.

Wraps a single call to an OpenAI-compatible chat completions endpoint.
No retries and no rate limiting: one best-effort call per user message.
"""
from typing import Dict, Optional, Sequence
import logging

from openai import OpenAI, OpenAIError

from app.config import settings
from app.core.exceptions import EmptyResponseError, UpstreamGenerationError
from app.core.prompts import SYSTEM_PROMPT

logger = logging.getLogger(__name__)


def build_prompt(history: Sequence[Dict[str, str]]) -> str:
    """
    Build the single-text prompt for the latest turn.

    The instruction preamble is only prepended when the history holds
    exactly one entry (the first turn of a conversation).
    """
    if not history:
        raise ValueError("history must contain at least one message")
    last = history[-1]
    if len(history) == 1:
        return f"{SYSTEM_PROMPT}\n\nUser: {last['content']}"
    return last["content"]


def build_messages(
    history: Sequence[Dict[str, str]], resend_history: bool = True
) -> list[Dict[str, str]]:
    """
    Convert history into chat completion messages.

    Args:
        history: Ordered turns as {"role", "content"} dicts
        resend_history: Send every turn (stateless endpoint) instead of
            only the latest prompt

    Returns:
        List of messages in OpenAI format
    """
    if not resend_history or len(history) <= 1:
        return [{"role": "user", "content": build_prompt(history)}]

    messages = []
    preamble_sent = False
    for turn in history:
        content = turn["content"]
        if turn["role"] == "user" and not preamble_sent:
            content = build_prompt([turn])
            preamble_sent = True
        messages.append({"role": turn["role"], "content": content})
    return messages


class ResponseGenerator:
    """Stateless request/response wrapper around the generation service."""

    def __init__(
        self,
        client: Optional[OpenAI] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        resend_history: Optional[bool] = None,
    ):
        self._client = client
        self.model = model or settings.OPENAI_MODEL
        self.timeout = timeout if timeout is not None else settings.OPENAI_TIMEOUT
        self.resend_history = (
            settings.RESEND_HISTORY if resend_history is None else resend_history
        )

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(
                api_key=settings.OPENAI_API_KEY,
                base_url=settings.OPENAI_BASE_URL,
            )
        return self._client

    def generate(self, history: Sequence[Dict[str, str]]) -> str:
        """
        Generate the assistant reply for the latest turn.

        Args:
            history: Ordered conversation turns, latest last

        Returns:
            Generated reply text

        Raises:
            ValueError: If history is empty
            EmptyResponseError: If the service returned no text
            UpstreamGenerationError: On any transport or service failure
        """
        messages = build_messages(history, self.resend_history)

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                timeout=self.timeout,
            )
        except OpenAIError as e:
            logger.error(f"Generation service error: {str(e)}")
            raise UpstreamGenerationError(str(e)) from e

        choices = getattr(response, "choices", None) or []
        text = choices[0].message.content if choices else None
        if not text or not text.strip():
            logger.warning("Generation service returned an empty response")
            raise EmptyResponseError("Empty response from the model")

        logger.debug(f"Generated reply: model={self.model}, chars={len(text)}")
        return text
