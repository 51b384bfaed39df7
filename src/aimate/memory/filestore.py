"""Markdown document store for memories and sessions."""

import logging
import os
import shutil
from datetime import datetime
from pathlib import Path

from . import codec
from .errors import ErrorKind, MemoryEngineError, is_malformed
from .layout import StorageLayout
from .models import Memory, MemoryStatus, Session, SessionMessage

logger = logging.getLogger(__name__)


def _write_atomic(path: Path, text: str) -> None:
    """Replace ``path`` with ``text`` in one step.

    The document is written to a sibling temp file first, so readers never
    see a half-written file.
    """
    tmp = path.with_name(f".{path.name}.tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(text)
    os.replace(tmp, path)


class MarkdownFileStore:
    """CRUD for memory and session documents on disk.

    No locking is done around individual files; concurrent external edits
    are last-writer-wins and surface later as hash drift.
    """

    def __init__(self, layout: StorageLayout) -> None:
        """Initialize the store.

        Args:
            layout: Path builder for documents.
        """
        self.layout = layout

    def _ensure_parent(self, path: Path, op: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise MemoryEngineError(
                op, ErrorKind.OPERATION_FAILED, path=str(path.parent), cause=e
            ) from e

    def _read_text(self, path: Path, op: str) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise MemoryEngineError(op, ErrorKind.FILE_NOT_FOUND, path=str(path), cause=e) from e

    # -- memories ---------------------------------------------------------

    def create_memory(self, memory: Memory) -> Memory:
        """Write a new memory document.

        The target is ``memory.file_path`` if set, otherwise a fresh path
        from the layout. Content is normalized and hashed before writing.

        Args:
            memory: The memory to persist. Updated in place.

        Returns:
            The same memory with ``file_path`` and ``content_hash`` set.

        Raises:
            MemoryEngineError: If the target already exists or its directory
                cannot be created.
        """
        path = Path(memory.file_path) if memory.file_path else self.layout.unique_memory_path(memory)
        if path.exists():
            raise MemoryEngineError("filestore.create", ErrorKind.FILE_EXISTS, path=str(path))

        self._ensure_parent(path, "filestore.create")

        memory.content = codec.normalize_body(memory.content)
        memory.content_hash = codec.compute_hash(memory.content)
        memory.file_path = str(path)
        _write_atomic(path, codec.memory_to_document(memory))
        return memory

    def read_memory(self, path: str | Path) -> Memory:
        """Read and parse a memory document.

        Raises:
            MemoryEngineError: If the file is missing or malformed.
        """
        path = Path(path)
        text = self._read_text(path, "filestore.read")
        return codec.memory_from_document(text, str(path))

    def update_memory(self, memory: Memory, touch: bool = True) -> Memory:
        """Overwrite an existing memory document.

        Args:
            memory: The memory to write. Its hash is recomputed.
            touch: Bump ``updated_at``. Metadata-only writes pass False.

        Raises:
            MemoryEngineError: If the document does not exist.
        """
        path = Path(memory.file_path)
        if not memory.file_path or not path.exists():
            raise MemoryEngineError(
                "filestore.update", ErrorKind.FILE_NOT_FOUND, path=memory.file_path or None
            )

        memory.content = codec.normalize_body(memory.content)
        memory.content_hash = codec.compute_hash(memory.content)
        if touch:
            memory.updated_at = datetime.now()
        _write_atomic(path, codec.memory_to_document(memory))
        return memory

    def record_access(self, memory: Memory) -> Memory:
        """Increment the access counter of a memory and persist it."""
        memory.increment_access()
        return self.update_memory(memory, touch=False)

    def delete_memory(self, path: str | Path) -> None:
        """Remove a memory document.

        Raises:
            MemoryEngineError: If the file does not exist.
        """
        path = Path(path)
        try:
            path.unlink()
        except FileNotFoundError as e:
            raise MemoryEngineError(
                "filestore.delete", ErrorKind.FILE_NOT_FOUND, path=str(path), cause=e
            ) from e

    def move_memory(self, memory: Memory, destination: Path) -> Memory:
        """Move a memory document and update its ``file_path``.

        Raises:
            MemoryEngineError: If the destination already exists.
        """
        if destination.exists():
            raise MemoryEngineError(
                "filestore.move", ErrorKind.FILE_EXISTS, path=str(destination)
            )
        self._ensure_parent(destination, "filestore.move")
        shutil.move(memory.file_path, destination)
        memory.file_path = str(destination)
        return memory

    def archive_memory(self, memory: Memory) -> Memory:
        """Flip a memory to archived and move it into the archive tree.

        The status is written before the move, so an interrupted archive
        leaves an archived document in its original place rather than an
        active one in the archive.
        """
        if not memory.file_path:
            raise MemoryEngineError("filestore.archive", ErrorKind.INVALID_FILE_PATH)

        memory.status = MemoryStatus.ARCHIVED
        self.update_memory(memory)

        destination = self.layout.archive_path(memory)
        if destination.exists():
            destination = destination.with_name(
                f"{destination.stem}_{memory.id[:8]}{destination.suffix}"
            )
        return self.move_memory(memory, destination)

    def list_memories(self, directory: Path, recursive: bool = False) -> list[Memory]:
        """Read every memory document in a directory.

        Unreadable or malformed documents are skipped with a warning.
        """
        memories: list[Memory] = []
        for path in self.layout.list_documents(directory, recursive=recursive):
            try:
                memories.append(self.read_memory(path))
            except MemoryEngineError as e:
                level = logging.WARNING if is_malformed(e) else logging.INFO
                logger.log(level, "Skipping unreadable memory %s: %s", path, e)
            except (OSError, UnicodeDecodeError) as e:
                logger.warning("Skipping unreadable memory %s: %s", path, e)
        return memories

    # -- sessions ---------------------------------------------------------

    def create_session(self, session: Session, messages: list[SessionMessage] | None = None) -> Session:
        """Write a new session document.

        Raises:
            MemoryEngineError: If the target already exists.
        """
        path = Path(session.file_path) if session.file_path else self.layout.session_path(session)
        if path.exists():
            raise MemoryEngineError("filestore.create_session", ErrorKind.FILE_EXISTS, path=str(path))
        self._ensure_parent(path, "filestore.create_session")
        session.file_path = str(path)
        _write_atomic(path, codec.session_to_document(session, messages or []))
        return session

    def update_session(self, session: Session, messages: list[SessionMessage]) -> Session:
        """Rewrite a session document with its full message sequence.

        Raises:
            MemoryEngineError: If the document does not exist.
        """
        path = Path(session.file_path)
        if not session.file_path or not path.exists():
            raise MemoryEngineError(
                "filestore.update_session",
                ErrorKind.SESSION_NOT_FOUND,
                path=session.file_path or None,
            )
        session.message_count = len(messages)
        _write_atomic(path, codec.session_to_document(session, messages))
        return session

    def read_session(self, path: str | Path) -> tuple[Session, list[SessionMessage]]:
        """Read a session document with its messages."""
        path = Path(path)
        text = self._read_text(path, "filestore.read_session")
        return codec.session_from_document(text, str(path))

    def list_sessions(self, directory: Path) -> list[Session]:
        """Read every session under a directory, skipping unreadable ones."""
        sessions: list[Session] = []
        for path in self.layout.list_documents(directory, recursive=True):
            try:
                session, _ = self.read_session(path)
            except (MemoryEngineError, OSError, UnicodeDecodeError) as e:
                logger.warning("Skipping unreadable session %s: %s", path, e)
                continue
            sessions.append(session)
        return sessions
