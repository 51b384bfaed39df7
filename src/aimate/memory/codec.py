"""Document codec: YAML frontmatter header plus Markdown body.

Every memory and session lives in one text file::

    ---
    id: ...
    type: short_term
    ---

    body text

The content hash covers the body only, so metadata churn (access counters,
status flips) never registers as drift.
"""

import hashlib
import json
import re
from datetime import date, datetime
from typing import Any

import frontmatter
import yaml
from frontmatter.default_handlers import YAMLHandler

from .errors import ErrorKind, MemoryEngineError
from .models import (
    Memory,
    MemoryCategory,
    MemoryScope,
    MemoryStatus,
    MemoryType,
    Session,
    SessionMessage,
)

CONVERSATION_HEADER = "## Conversation"

_handler = YAMLHandler()

_MESSAGE_HEADER = re.compile(
    r"^### \[(?P<seq>\d+)\] (?P<role>[\w-]+) \((?P<ts>[^)\n]*)\)\n"
    r"<!-- message: (?P<meta>\{.*\}) -->[ \t]*$",
    re.MULTILINE,
)

_STOP_WORDS = frozenset("""
    the a an and or but is are was were be been being have has had do does did
    will would could should may might must shall can need dare to of in for on
    with at by from as into through during before after above below between
    under again further then once here there when where why how all each few
    more most other some such no nor not only own same so than too very just
    also now this that these those it its i me my we our you your he him his
    she her they them their what which who whom
    的 了 是 在 有 和 与 或 等 这 那 就 也 都 要 会 能 可以 我 你 他 她 它 们 我们
    你们 他们 一个 一些 这个 那个 什么 怎么 为什么 如何
""".split())


def compute_hash(content: str) -> str:
    """SHA-256 hex digest of a document body."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def normalize_body(content: str) -> str:
    """Canonical form of a body: no leading blank lines, no trailing whitespace."""
    return content.lstrip("\r\n").rstrip()


def parse_document(text: str, path: str | None = None) -> tuple[dict[str, Any], str]:
    """Split a document into its metadata header and body.

    A document that does not start with a ``---`` line has no header and is
    all body.

    Args:
        text: Raw file content.
        path: File path, used in error messages.

    Returns:
        Tuple of (metadata, normalized body).

    Raises:
        MemoryEngineError: If the header is unterminated or not a YAML mapping.
    """
    if not _handler.detect(text):
        return {}, normalize_body(text)

    try:
        fm, body = _handler.split(text)
    except ValueError as e:
        raise MemoryEngineError(
            "codec.parse",
            ErrorKind.INVALID_FRONTMATTER,
            path=path,
            cause=e,
            details="missing closing delimiter",
        ) from e

    try:
        metadata = _handler.load(fm)
    except yaml.YAMLError as e:
        raise MemoryEngineError(
            "codec.parse", ErrorKind.INVALID_FRONTMATTER, path=path, cause=e
        ) from e

    if metadata is None:
        metadata = {}
    if not isinstance(metadata, dict):
        raise MemoryEngineError(
            "codec.parse",
            ErrorKind.INVALID_FRONTMATTER,
            path=path,
            details="header is not a mapping",
        )

    return metadata, normalize_body(body)


def render_document(metadata: dict[str, Any], body: str) -> str:
    """Render header, delimiter, blank line and body, ending with a newline."""
    post = frontmatter.Post(normalize_body(body), **metadata)
    text = frontmatter.dumps(post, sort_keys=False)
    if not text.endswith("\n"):
        text += "\n"
    return text


def _format_dt(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat(timespec="seconds")


def _parse_dt(value: Any, field_name: str, path: str | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone().replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as e:
            raise MemoryEngineError(
                "codec.parse",
                ErrorKind.INVALID_FRONTMATTER,
                path=path,
                cause=e,
                details=f"bad timestamp in '{field_name}'",
            ) from e
        return _parse_dt(parsed, field_name, path)
    raise MemoryEngineError(
        "codec.parse",
        ErrorKind.INVALID_FRONTMATTER,
        path=path,
        details=f"bad timestamp in '{field_name}'",
    )


def _parse_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [str(value)]


def _require(metadata: dict[str, Any], key: str, path: str | None) -> Any:
    value = metadata.get(key)
    if value is None or value == "":
        raise MemoryEngineError(
            "codec.parse",
            ErrorKind.INVALID_FRONTMATTER,
            path=path,
            details=f"missing '{key}'",
        )
    return value


def _enum(enum_cls: type, value: Any, key: str, path: str | None) -> Any:
    try:
        return enum_cls(str(value))
    except ValueError as e:
        raise MemoryEngineError(
            "codec.parse",
            ErrorKind.INVALID_FRONTMATTER,
            path=path,
            cause=e,
            details=f"bad value for '{key}'",
        ) from e


def memory_to_document(memory: Memory) -> str:
    """Serialize a memory to document text."""
    metadata: dict[str, Any] = {
        "id": memory.id,
        "type": memory.type.value,
        "scope": memory.scope.value,
        "category": memory.category.value,
        "title": memory.title,
        "tags": list(memory.tags),
        "related": list(memory.related),
        "source": memory.source,
        "status": memory.status.value,
        "importance": memory.importance,
        "access_count": memory.access_count,
        "content_hash": memory.content_hash,
        "created_at": _format_dt(memory.created_at),
        "updated_at": _format_dt(memory.updated_at),
        "accessed_at": _format_dt(memory.accessed_at),
    }
    if memory.project_path:
        metadata["project_path"] = memory.project_path
    if memory.expires_at is not None:
        metadata["expires_at"] = _format_dt(memory.expires_at)
    return render_document(metadata, memory.content)


def memory_from_document(text: str, path: str | None = None) -> Memory:
    """Parse document text into a memory.

    The content hash is recomputed from the body rather than trusted from
    the header.

    Raises:
        MemoryEngineError: If the document is malformed.
    """
    metadata, body = parse_document(text, path)
    memory_type = _enum(MemoryType, _require(metadata, "type", path), "type", path)
    now = datetime.now()

    try:
        importance = int(metadata.get("importance", 3))
        access_count = int(metadata.get("access_count", 0))
    except (TypeError, ValueError) as e:
        raise MemoryEngineError(
            "codec.parse", ErrorKind.INVALID_FRONTMATTER, path=path, cause=e
        ) from e

    return Memory(
        id=str(_require(metadata, "id", path)),
        type=memory_type,
        scope=_enum(MemoryScope, metadata.get("scope", "global"), "scope", path),
        category=_enum(MemoryCategory, _require(metadata, "category", path), "category", path),
        title=str(metadata.get("title") or ""),
        content=body,
        tags=_parse_list(metadata.get("tags")),
        related=_parse_list(metadata.get("related")),
        source=str(metadata.get("source") or "user"),
        project_path=metadata.get("project_path") or None,
        status=_enum(MemoryStatus, metadata.get("status", "active"), "status", path),
        importance=max(1, min(5, importance)),
        access_count=max(0, access_count),
        content_hash=compute_hash(body),
        expires_at=_parse_dt(metadata.get("expires_at"), "expires_at", path),
        created_at=_parse_dt(metadata.get("created_at"), "created_at", path) or now,
        updated_at=_parse_dt(metadata.get("updated_at"), "updated_at", path) or now,
        accessed_at=_parse_dt(metadata.get("accessed_at"), "accessed_at", path) or now,
        file_path=path or "",
    )


def render_messages(messages: list[SessionMessage]) -> str:
    """Render session messages as a Markdown conversation body."""
    blocks = [CONVERSATION_HEADER, ""]
    for msg in messages:
        meta: dict[str, Any] = {
            "timestamp": msg.timestamp.isoformat(),
            "token_count": msg.token_count,
        }
        if msg.tool_calls:
            meta["tool_calls"] = msg.tool_calls
        if msg.tool_call_id:
            meta["tool_call_id"] = msg.tool_call_id
        blocks.append(
            f"### [{msg.sequence}] {msg.role} ({msg.timestamp:%Y-%m-%d %H:%M:%S})\n"
            f"<!-- message: {json.dumps(meta, ensure_ascii=False)} -->\n"
            f"\n{msg.content}\n"
        )
    return "\n".join(blocks)


def parse_messages(body: str, path: str | None = None) -> list[SessionMessage]:
    """Rebuild the message sequence from a conversation body.

    Each message starts with a ``### [seq] role (time)`` heading directly
    followed by a ``<!-- message: {...} -->`` line; its content runs until
    the next such heading.
    """
    matches = list(_MESSAGE_HEADER.finditer(body))
    messages: list[SessionMessage] = []

    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(body)
        content = body[match.end():end].strip("\r\n").rstrip()

        try:
            meta = json.loads(match.group("meta"))
        except json.JSONDecodeError as e:
            raise MemoryEngineError(
                "codec.parse_messages",
                ErrorKind.INVALID_FRONTMATTER,
                path=path,
                cause=e,
                details=f"bad metadata for message {match.group('seq')}",
            ) from e

        timestamp = _parse_dt(meta.get("timestamp"), "timestamp", path)
        if timestamp is None:
            timestamp = _parse_dt(match.group("ts").replace(" ", "T"), "timestamp", path)

        messages.append(
            SessionMessage(
                sequence=int(match.group("seq")),
                role=match.group("role"),
                content=content,
                timestamp=timestamp or datetime.now(),
                token_count=int(meta.get("token_count", 0)),
                tool_calls=meta.get("tool_calls"),
                tool_call_id=meta.get("tool_call_id"),
            )
        )

    return messages


def session_to_document(session: Session, messages: list[SessionMessage]) -> str:
    """Serialize a session and its messages to document text."""
    metadata: dict[str, Any] = {
        "id": session.id,
        "type": MemoryType.SESSION.value,
        "title": session.title,
        "status": session.status.value,
        "token_count": session.token_count,
        "message_count": session.message_count,
        "created_at": _format_dt(session.created_at),
        "updated_at": _format_dt(session.updated_at),
    }
    if session.project_path:
        metadata["project_path"] = session.project_path
    return render_document(metadata, render_messages(messages))


def session_from_document(
    text: str, path: str | None = None
) -> tuple[Session, list[SessionMessage]]:
    """Parse document text into a session and its messages."""
    metadata, body = parse_document(text, path)
    messages = parse_messages(body, path)
    now = datetime.now()

    session = Session(
        id=str(_require(metadata, "id", path)),
        title=str(metadata.get("title") or ""),
        project_path=metadata.get("project_path") or None,
        status=_enum(MemoryStatus, metadata.get("status", "active"), "status", path),
        token_count=int(metadata.get("token_count") or sum(m.token_count for m in messages)),
        message_count=len(messages),
        created_at=_parse_dt(metadata.get("created_at"), "created_at", path) or now,
        updated_at=_parse_dt(metadata.get("updated_at"), "updated_at", path) or now,
        file_path=path or "",
    )
    return session, messages


def extract_keywords(text: str, limit: int = 5) -> list[str]:
    """Most frequent non-stop-words of a text, most frequent first.

    Ties keep first-appearance order.
    """
    for mark in "#*`_":
        text = text.replace(mark, "")

    counts: dict[str, int] = {}
    for raw in text.split():
        word = raw.strip(".,;:!?\"'()[]{}，。；：！？、").lower()
        if not word or word in _STOP_WORDS:
            continue
        if len(word) < 2 and word.isascii():
            continue
        counts[word] = counts.get(word, 0) + 1

    ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)
    return [word for word, _ in ranked[:limit]]
