"""Session trimming: summarize and drop old turns once a session fills up."""

import logging
from dataclasses import dataclass, field
from datetime import datetime

from ..logging import MemoryEventLog
from .config import SessionMemoryConfig, ShortTermConfig
from .errors import MemoryEngineError
from .models import SessionMessage
from .session import ROLE_LABELS, SessionManager
from .short_term import ShortTermMemoryManager
from .summarizer import Summarizer

logger = logging.getLogger(__name__)

TRANSCRIPT_HEADER = "Conversation to summarize:\n\n"


@dataclass
class TrimResult:
    """Outcome of a trim.

    ``error`` is set when the summary could not be created; the messages are
    trimmed regardless.
    """

    trim_time: datetime = field(default_factory=datetime.now)
    before_messages: int = 0
    after_messages: int = 0
    before_tokens: int = 0
    after_tokens: int = 0
    trimmed_messages: int = 0
    summary_created: bool = False
    summary_id: str | None = None
    error: str | None = None


@dataclass
class TrimPreview:
    current_messages: int
    current_tokens: int
    max_tokens: int
    usage_ratio: float
    protected_messages: int
    will_trim: bool
    messages_to_trim: int = 0
    estimated_after_tokens: int = 0


def render_transcript(messages: list[SessionMessage]) -> str:
    parts = [TRANSCRIPT_HEADER]
    for message in messages:
        parts.append(f"{ROLE_LABELS.get(message.role, message.role)}: {message.content}\n\n")
    return "".join(parts)


class SessionTrimmer:
    """Keeps the current session under its high-water mark.

    The last ``protected_rounds`` rounds (a user message and a reply each)
    are never trimmed. Everything before them is summarized into a
    short-term context memory and removed from the session.
    """

    def __init__(
        self,
        session: SessionManager,
        short_term: ShortTermMemoryManager | None,
        session_config: SessionMemoryConfig,
        short_term_config: ShortTermConfig,
        summarizer: Summarizer | None = None,
        events: MemoryEventLog | None = None,
    ) -> None:
        self.session = session
        self.short_term = short_term
        self.session_config = session_config
        self.short_term_config = short_term_config
        self.summarizer = summarizer
        self.events = events

    @property
    def protected_messages(self) -> int:
        return self.session_config.protected_rounds * 2

    async def trim(self) -> TrimResult:
        """Trim the current session if it has reached the trim threshold."""
        if self.session.current is None or not self.session.needs_trimming():
            return self._unchanged()
        return await self._trim(self.protected_messages)

    async def trim_if_needed(self) -> TrimResult | None:
        """Trim when needed; None when the session is below the threshold."""
        if not self.session.needs_trimming():
            return None
        return await self.trim()

    async def force_trim(self, keep_messages: int) -> TrimResult:
        """Trim down to the last ``keep_messages`` messages regardless of usage."""
        if self.session.current is None:
            return self._unchanged()
        return await self._trim(max(keep_messages, 0))

    def _unchanged(self) -> TrimResult:
        current = self.session.current
        count = len(self.session.get_messages())
        tokens = current.token_count if current else 0
        return TrimResult(
            before_messages=count,
            after_messages=count,
            before_tokens=tokens,
            after_tokens=tokens,
        )

    async def _trim(self, keep: int) -> TrimResult:
        session = self.session.current
        messages = self.session.get_messages()
        result = self._unchanged()
        if session is None or len(messages) <= keep:
            return result

        split = len(messages) - keep
        trimmed = messages[:split]

        if self.summarizer is not None:
            await self._summarize(trimmed, result)

        # The summarizer may have yielded; only the summarized prefix goes.
        try:
            kept = self.session.drop_prefix(session.id, split)
        except MemoryEngineError as e:
            logger.warning("Session %s changed during trim: %s", session.id, e)
            result.error = f"session changed during trim: {e}"
            return result
        result.after_messages = len(kept)
        result.after_tokens = sum(m.token_count for m in kept)
        result.trimmed_messages = len(trimmed)

        logger.info(
            "Trimmed %d messages from session %s (%d -> %d tokens)",
            result.trimmed_messages, session.id, result.before_tokens, result.after_tokens,
        )
        if self.events is not None:
            self.events.log_session(
                "session_trimmed",
                session.id,
                trimmed_messages=result.trimmed_messages,
                before_tokens=result.before_tokens,
                after_tokens=result.after_tokens,
                summary_id=result.summary_id,
                error=result.error,
            )
        return result

    async def _summarize(self, messages: list[SessionMessage], result: TrimResult) -> None:
        try:
            summary = await self.summarizer(render_transcript(messages))
        except Exception as e:
            logger.warning("Session summary failed: %s", e)
            result.error = f"summary failed: {e}"
            return

        if not summary.strip():
            result.error = "summary failed: empty summary"
            return
        if self.short_term is None:
            return

        try:
            memory = self.short_term.add_context(
                f"Session summary {datetime.now():%Y-%m-%d %H:%M}",
                summary,
                ttl_days=self.short_term_config.summary_ttl_days,
                source="session_trim",
            )
        except (MemoryEngineError, OSError) as e:
            logger.warning("Failed to store session summary: %s", e)
            result.error = f"summary not stored: {e}"
            return
        result.summary_created = True
        result.summary_id = memory.id

    def estimate_trim_count(self) -> int:
        """Messages a trim would remove right now, ignoring the threshold."""
        if self.session.current is None:
            return 0
        return max(len(self.session.get_messages()) - self.protected_messages, 0)

    def preview(self) -> TrimPreview | None:
        """What a trim would do, without doing it."""
        session = self.session.current
        if session is None:
            return None
        messages = self.session.get_messages()
        current, limit, ratio = self.session.token_usage()
        protected = self.protected_messages
        preview = TrimPreview(
            current_messages=len(messages),
            current_tokens=current,
            max_tokens=limit,
            usage_ratio=ratio,
            protected_messages=protected,
            will_trim=len(messages) > protected and self.session.needs_trimming(),
        )
        if preview.will_trim:
            preview.messages_to_trim = len(messages) - protected
            removed = sum(m.token_count for m in messages[: preview.messages_to_trim])
            preview.estimated_after_tokens = current - removed
        return preview
