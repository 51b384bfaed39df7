"""Session memory: the current conversation transcript."""

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from ..logging import MemoryEventLog
from .config import SessionMemoryConfig
from .errors import ErrorKind, MemoryEngineError
from .filestore import MarkdownFileStore
from .layout import StorageLayout
from .models import MemoryStatus, Session, SessionMessage, estimate_tokens

logger = logging.getLogger(__name__)

ROLE_LABELS = {
    "user": "User",
    "assistant": "Assistant",
    "system": "System",
    "tool": "Tool",
}


@dataclass
class SessionStats:
    """Snapshot of the current session."""

    session_id: str | None = None
    message_count: int = 0
    token_count: int = 0
    max_tokens: int = 0
    usage_ratio: float = 0.0
    created_at: datetime | None = None


class SessionManager:
    """Holds the current session and its messages.

    Exactly one session is current at a time. Every mutation rewrites the
    whole session document. All access goes through a single lock, so the
    foreground flow and the maintenance task can both read safely.
    """

    def __init__(
        self,
        layout: StorageLayout,
        files: MarkdownFileStore,
        config: SessionMemoryConfig,
        events: MemoryEventLog | None = None,
    ) -> None:
        self.layout = layout
        self.files = files
        self.config = config
        self.events = events
        self._lock = threading.RLock()
        self._current: Session | None = None
        self._messages: list[SessionMessage] = []

    @property
    def current(self) -> Session | None:
        with self._lock:
            return self._current

    def _log(self, event: str, session: Session, **extra: Any) -> None:
        if self.events is not None:
            self.events.log_session(event, session.id, path=session.file_path, **extra)

    def _persist(self) -> None:
        if self._current is None:
            raise MemoryEngineError("session.persist", ErrorKind.SESSION_NOT_FOUND)
        self._current.token_count = sum(m.token_count for m in self._messages)
        self._current.message_count = len(self._messages)
        self._current.updated_at = datetime.now()
        self.files.update_session(self._current, self._messages)

    # -- lifecycle --------------------------------------------------------

    def create_session(self, title: str = "") -> Session:
        """Start a new current session, archiving the previous one.

        A failure to archive the previous session is logged and does not
        prevent the new session from being created.
        """
        with self._lock:
            if self._current is not None:
                try:
                    self.archive_current()
                except (MemoryEngineError, OSError) as e:
                    logger.warning("Failed to archive session %s: %s", self._current.id, e)
                    self._current = None
                    self._messages = []

            now = datetime.now()
            session = Session(
                id=str(uuid.uuid4()),
                title=title,
                project_path=str(self.layout.project_path) if self.layout.project_path else None,
                created_at=now,
                updated_at=now,
            )
            self.files.create_session(session, [])
            self._current = session
            self._messages = []
            self._log("session_created", session)
            return session

    def _ensure_session(self) -> Session:
        if self._current is None:
            return self.create_session()
        return self._current

    def archive_current(self) -> Session | None:
        """Mark the current session archived and drop it from memory.

        Returns:
            The archived session, or None if there was no current session.
        """
        with self._lock:
            if self._current is None:
                return None
            session = self._current
            session.status = MemoryStatus.ARCHIVED
            try:
                self._persist()
            finally:
                self._current = None
                self._messages = []
            self._log("session_archived", session)
            return session

    def _session_dirs(self) -> list[Path]:
        return [root / "sessions" for _, root in self.layout.roots()]

    def _find_session_file(self, session_id: str) -> Path:
        fragment = session_id[:8]
        for directory in self._session_dirs():
            for path in self.layout.list_documents(directory):
                if fragment not in path.name:
                    continue
                try:
                    session, _ = self.files.read_session(path)
                except MemoryEngineError as e:
                    logger.debug("Skipping unreadable session %s: %s", path, e)
                    continue
                if session.id == session_id:
                    return path
        raise MemoryEngineError(
            "session.load", ErrorKind.SESSION_NOT_FOUND, details=f"id={session_id}"
        )

    def load_session(self, session_id: str) -> Session:
        """Make a persisted session current without archiving the old one.

        Raises:
            MemoryEngineError: If no session has this id.
        """
        path = self._find_session_file(session_id)
        session, messages = self.files.read_session(path)
        with self._lock:
            self._current = session
            self._messages = messages
        return session

    def restore_session(self, session_id: str) -> Session:
        """Archive the current session and make ``session_id`` current again.

        The restored session becomes active.
        """
        path = self._find_session_file(session_id)
        with self._lock:
            if self._current is not None and self._current.id != session_id:
                self.archive_current()
            session, messages = self.files.read_session(path)
            session.status = MemoryStatus.ACTIVE
            self._current = session
            self._messages = messages
            self._persist()
            return session

    def load_latest(self) -> Session:
        """Resume the most recently modified session, or start a new one."""
        latest: Path | None = None
        latest_mtime = 0.0
        for directory in self._session_dirs():
            for path in self.layout.list_documents(directory):
                mtime = path.stat().st_mtime
                if mtime > latest_mtime:
                    latest, latest_mtime = path, mtime
        if latest is None:
            return self.create_session()

        session, messages = self.files.read_session(latest)
        with self._lock:
            self._current = session
            self._messages = messages
        return session

    def list_sessions(self) -> list[Session]:
        """All readable sessions across active roots, newest first."""
        sessions: list[Session] = []
        for directory in self._session_dirs():
            sessions.extend(self.files.list_sessions(directory))
        sessions.sort(key=lambda s: s.created_at, reverse=True)
        return sessions

    def list_recent_sessions(self, n: int) -> list[Session]:
        return self.list_sessions()[:n]

    def set_title(self, title: str) -> None:
        """Rename the current session.

        Raises:
            MemoryEngineError: If there is no current session.
        """
        with self._lock:
            if self._current is None:
                raise MemoryEngineError("session.set_title", ErrorKind.SESSION_NOT_FOUND)
            self._current.title = title
            self._persist()

    # -- messages ---------------------------------------------------------

    def add_message(
        self, role: str, content: str, token_count: int | None = None
    ) -> SessionMessage:
        """Append a message to the current session, creating one if needed.

        Args:
            role: user, assistant, system or tool.
            content: Message text.
            token_count: Token cost; estimated from ``content`` when None.
        """
        with self._lock:
            self._ensure_session()
            message = SessionMessage(
                sequence=len(self._messages) + 1,
                role=role,
                content=content,
                token_count=estimate_tokens(content) if token_count is None else token_count,
            )
            self._messages.append(message)
            self._persist()
            return message

    def add_tool_message(
        self,
        content: str,
        tool_calls: list[dict[str, Any]] | None = None,
        tool_call_id: str | None = None,
        role: str = "tool",
        token_count: int | None = None,
    ) -> SessionMessage:
        """Append a message carrying tool calls or a tool result."""
        with self._lock:
            self._ensure_session()
            message = SessionMessage(
                sequence=len(self._messages) + 1,
                role=role,
                content=content,
                token_count=estimate_tokens(content) if token_count is None else token_count,
                tool_calls=tool_calls,
                tool_call_id=tool_call_id,
            )
            self._messages.append(message)
            self._persist()
            return message

    def get_messages(self) -> list[SessionMessage]:
        with self._lock:
            return list(self._messages)

    def get_recent_messages(self, n: int) -> list[SessionMessage]:
        with self._lock:
            if n <= 0:
                return []
            return list(self._messages[-n:])

    def replace_messages(self, messages: list[SessionMessage]) -> None:
        """Replace the whole message sequence, renumbering from 1."""
        with self._lock:
            if self._current is None:
                raise MemoryEngineError("session.replace_messages", ErrorKind.SESSION_NOT_FOUND)
            self._messages = [
                SessionMessage(
                    sequence=i,
                    role=m.role,
                    content=m.content,
                    timestamp=m.timestamp,
                    token_count=m.token_count,
                    tool_calls=m.tool_calls,
                    tool_call_id=m.tool_call_id,
                )
                for i, m in enumerate(messages, start=1)
            ]
            self._persist()

    def drop_prefix(self, session_id: str, count: int) -> list[SessionMessage]:
        """Remove the first ``count`` messages of a session, renumbering the rest.

        Messages appended since the caller last read the session are kept.
        Raises ``SESSION_NOT_FOUND`` when ``session_id`` is no longer the
        current session.

        Returns:
            The remaining messages.
        """
        with self._lock:
            if self._current is None or self._current.id != session_id:
                raise MemoryEngineError(
                    "session.drop_prefix", ErrorKind.SESSION_NOT_FOUND, details=session_id
                )
            self.replace_messages(self._messages[max(count, 0):])
            return list(self._messages)

    def clear_messages(self) -> None:
        with self._lock:
            if self._current is None:
                return
            self._messages = []
            self._persist()

    # -- usage ------------------------------------------------------------

    def token_usage(self) -> tuple[int, int, float]:
        """Current tokens, limit and their ratio."""
        with self._lock:
            current = self._current.token_count if self._current else 0
        limit = self.config.max_tokens
        return current, limit, current / limit

    def check_threshold(self) -> list[str]:
        """One warning per configured threshold the session has reached."""
        _, _, ratio = self.token_usage()
        return [
            f"Session context is {ratio:.0%} full (threshold {threshold:.0%}); "
            "consider starting a new session"
            for threshold in sorted(self.config.warning_thresholds)
            if ratio >= threshold
        ]

    def needs_trimming(self) -> bool:
        _, _, ratio = self.token_usage()
        return ratio >= self.config.trim_threshold

    # -- context ----------------------------------------------------------

    def build_context(self, max_tokens: int | None = None) -> str:
        """Render the transcript as Markdown.

        With ``max_tokens``, the oldest messages are left out until the
        rest fits.
        """
        with self._lock:
            messages = list(self._messages)
        if not messages:
            return ""

        heading = "## Current session\n\n"
        entries = [
            f"### {ROLE_LABELS.get(m.role, m.role)}\n{m.content}\n\n" for m in messages
        ]
        if max_tokens is None:
            return heading + "".join(entries)

        body = ""
        for entry in reversed(entries):
            if estimate_tokens(heading + entry + body) > max_tokens:
                break
            body = entry + body
        if not body:
            return ""
        return heading + body

    def build_context_for_llm(self) -> list[dict[str, Any]]:
        """Messages in chat-completion format."""
        with self._lock:
            return [m.to_llm_dict() for m in self._messages]

    def stats(self) -> SessionStats:
        with self._lock:
            session = self._current
            if session is None:
                return SessionStats(max_tokens=self.config.max_tokens)
            return SessionStats(
                session_id=session.id,
                message_count=len(self._messages),
                token_count=session.token_count,
                max_tokens=self.config.max_tokens,
                usage_ratio=session.token_count / self.config.max_tokens,
                created_at=session.created_at,
            )
