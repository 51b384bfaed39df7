"""JSONL event logging for the memory engine."""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


@dataclass
class LogEntry:
    """A single structured event."""

    timestamp: str
    event: str
    memory_id: str | None = None
    session_id: str | None = None
    path: str | None = None
    duration_ms: float | None = None
    error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict, excluding None values."""
        data = asdict(self)
        return {k: v for k, v in data.items() if v is not None and v != {} and v != []}


class MemoryEventLog:
    """Writes memory engine events as JSON lines, rotating by size.

    One instance is created by the caller and handed to each component that
    emits events; there is no module-level instance.
    """

    def __init__(
        self,
        log_dir: str | Path,
        filename: str = "events.jsonl",
        max_size_mb: float = 10.0,
    ) -> None:
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.filename = filename
        self.max_size_bytes = int(max_size_mb * 1024 * 1024)

    @property
    def log_path(self) -> Path:
        """Current log file path."""
        return self.log_dir / self.filename

    def _rotate_if_needed(self) -> None:
        """Rotate log file if it exceeds max size."""
        if not self.log_path.exists():
            return

        if self.log_path.stat().st_size >= self.max_size_bytes:
            timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
            rotated_name = f"{self.log_path.stem}_{timestamp}.jsonl"
            self.log_path.rename(self.log_dir / rotated_name)

    def _write(self, entry: LogEntry) -> None:
        self._rotate_if_needed()

        with open(self.log_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry.to_dict(), ensure_ascii=False, default=str) + "\n")

    def log(
        self,
        event: str,
        *,
        memory_id: str | None = None,
        session_id: str | None = None,
        path: str | None = None,
        duration_ms: float | None = None,
        error: str | None = None,
        **extra: Any,
    ) -> None:
        """Log an event."""
        entry = LogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            event=event,
            memory_id=memory_id,
            session_id=session_id,
            path=path,
            duration_ms=duration_ms,
            error=error,
            extra=extra if extra else {},
        )
        self._write(entry)

    def log_memory(self, event: str, memory_id: str, path: str, **extra: Any) -> None:
        """Log a memory lifecycle event (created, updated, archived, ...)."""
        self.log(event, memory_id=memory_id, path=path, **extra)

    def log_session(self, event: str, session_id: str, **extra: Any) -> None:
        """Log a session lifecycle event."""
        self.log(event, session_id=session_id, **extra)

    def log_result(self, event: str, duration_ms: float, errors: list[str], **counts: Any) -> None:
        """Log the outcome of a batch operation (sync, maintenance)."""
        self.log(
            event,
            duration_ms=duration_ms,
            error="; ".join(errors) if errors else None,
            **counts,
        )
