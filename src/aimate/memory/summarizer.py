"""Summarizers for trimmed conversation history.

A summarizer is any coroutine function taking the rendered transcript and
returning summary text. ``default_summary`` needs nothing external;
``CompletionSummarizer`` asks a chat-completion model.
"""

import logging
import os
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, Protocol

from groq import APIError, AsyncGroq

from .base import truncate_content
from .errors import ErrorKind, MemoryEngineError

logger = logging.getLogger(__name__)

Summarizer = Callable[[str], Awaitable[str]]

DEFAULT_MODEL = "llama-3.1-70b-versatile"
MAX_TOPICS = 5

SUMMARY_SYSTEM_PROMPT = """You condense conversation history for an assistant's memory.
Write a short Markdown summary of the conversation below: the topics discussed,
decisions made, facts learned about the user or project, and open tasks.
Use bullet points. Do not invent anything that is not in the conversation."""


class CompletionClient(Protocol):
    """Anything that turns a prompt into completion text."""

    async def complete(self, prompt: str, system: str | None = None) -> str: ...


class GroqCompletionClient:
    """CompletionClient over AsyncGroq chat completions."""

    def __init__(self, client: AsyncGroq, model: str = DEFAULT_MODEL) -> None:
        """Initialize the client wrapper.

        Args:
            client: The AsyncGroq client instance to wrap.
            model: The model to use for completions.
        """
        self._client = client
        self._model = model

    async def complete(self, prompt: str, system: str | None = None) -> str:
        messages: list[dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        response = await self._client.chat.completions.create(
            model=self._model,
            messages=messages,
            temperature=0.2,
        )
        return response.choices[0].message.content or ""

    @property
    def model(self) -> str:
        return self._model


class CompletionSummarizer:
    """Summarizes a transcript with a completion model.

    Raises MemoryEngineError when the model call fails or returns nothing,
    which the trimmer reports on its result instead of aborting.
    """

    def __init__(self, client: CompletionClient, max_input_chars: int = 24000) -> None:
        self.client = client
        self.max_input_chars = max_input_chars

    async def __call__(self, transcript: str) -> str:
        if len(transcript) > self.max_input_chars:
            transcript = transcript[-self.max_input_chars:]
        try:
            summary = await self.client.complete(transcript, system=SUMMARY_SYSTEM_PROMPT)
        except APIError as e:
            raise MemoryEngineError(
                "summarizer.complete", ErrorKind.OPERATION_FAILED, cause=e
            ) from e
        summary = summary.strip()
        if not summary:
            raise MemoryEngineError(
                "summarizer.complete", ErrorKind.OPERATION_FAILED, details="empty summary"
            )
        return summary


async def default_summary(transcript: str) -> str:
    """Extractive summary: message count plus the opening of each user turn."""
    lines = transcript.splitlines()
    message_count = sum(1 for line in lines if line.split(":", 1)[0] in ("User", "Assistant"))
    topics = [
        truncate_content(line.split(":", 1)[1].strip(), 80)
        for line in lines
        if line.startswith("User:") and line.split(":", 1)[1].strip()
    ][:MAX_TOPICS]

    parts = [
        "## Conversation summary\n\n",
        f"- {message_count} earlier messages\n",
        f"- Summarized at {datetime.now():%Y-%m-%d %H:%M:%S}\n",
    ]
    if topics:
        parts.append("\n### Topics\n\n")
        parts.extend(f"- {topic}\n" for topic in topics)
    return "".join(parts)


def summarizer_from_env() -> Summarizer:
    """Completion summarizer when ``GROQ_API_KEY`` is set, else the extractive one."""
    api_key = os.getenv("GROQ_API_KEY")
    if not api_key:
        return default_summary
    model = os.getenv("GROQ_MODEL", DEFAULT_MODEL)
    return CompletionSummarizer(GroqCompletionClient(AsyncGroq(api_key=api_key), model=model))
