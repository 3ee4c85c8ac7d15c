"""
Nexus - AI assistant.

Answers a prompt in the context of a chat history. The assistant never
raises: a missing key, an upstream failure or an empty completion all
degrade to fixed reply strings, so the caller can always append the result
to the conversation.
"""

import logging
import os
from typing import Iterable, Optional

from openai import AsyncOpenAI

from .constants import (
    ASSISTANT_DEFAULT_MODEL,
    ASSISTANT_EMPTY_REPLY,
    ASSISTANT_ERROR_REPLY,
    ASSISTANT_MISSING_KEY_REPLY,
    SENDER_ME,
)
from .message import Message

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a helpful AI assistant inside a private peer-to-peer chat application. "
    "Provide a concise and helpful response based on the conversation."
)


def render_history(history: Iterable[Message]) -> str:
    """Render non-SYSTEM messages as ``name: content`` lines."""
    lines = []
    for message in history:
        if message.is_system():
            continue
        name = message.sender_name or ("User" if message.sender_id == SENDER_ME else "Peer")
        lines.append(f"{name}: {message.content}")
    return "\n".join(lines)


class ChatAssistant:
    """Chat-completion backed assistant."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = ASSISTANT_DEFAULT_MODEL,
        client: Optional[AsyncOpenAI] = None,
    ):
        """
        Initialize assistant.

        Args:
            api_key: API key; falls back to ``OPENAI_API_KEY``
            model: Chat model name
            client: Preconfigured client (the key check is skipped)
        """
        self.api_key = api_key or os.getenv("OPENAI_API_KEY") or None
        self.model = model or ASSISTANT_DEFAULT_MODEL
        self._client = client

    @property
    def available(self) -> bool:
        return self._client is not None or self.api_key is not None

    def _get_client(self) -> Optional[AsyncOpenAI]:
        if self._client is None and self.api_key:
            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def analyze(self, history: Iterable[Message], prompt: str) -> str:
        """
        Answer ``prompt`` given the conversation so far.

        Returns:
            The model's reply, or a fallback string
        """
        client = self._get_client()
        if client is None:
            logger.warning("AI assistant API key not configured")
            return ASSISTANT_MISSING_KEY_REPLY

        conversation = render_history(history)
        user_content = (
            "Here is the recent conversation history:\n"
            f"---\n{conversation}\n---\n\n"
            f"User's request: {prompt}"
        )

        try:
            response = await client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": user_content},
                ],
            )
        except Exception as e:
            logger.error(f"AI assistant request failed: {e}", exc_info=True)
            return ASSISTANT_ERROR_REPLY

        try:
            text = response.choices[0].message.content
        except (AttributeError, IndexError) as e:
            logger.warning(f"Unexpected completion shape: {e}")
            text = None

        return text.strip() if text and text.strip() else ASSISTANT_EMPTY_REPLY
