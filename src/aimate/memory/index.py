"""Metadata index: a queryable projection of every memory document.

The index is derived data. Documents on disk are authoritative and the
syncer repairs the index whenever the two disagree.
"""

import logging
import re
import sqlite3
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Protocol

from .errors import ErrorKind, MemoryEngineError
from .models import IndexRow, MemoryCategory, MemoryScope, MemoryStatus, MemoryType

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id, file_path, type, scope, category, title, tags, content_hash, importance, "
    "access_count, token_count, status, project_path, expires_at, created_at, "
    "updated_at, accessed_at"
)

_FTS_TOKEN = re.compile(r"\w+", re.UNICODE)


@dataclass
class IndexStats:
    """Row counts of the metadata index."""

    total_count: int = 0
    core_count: int = 0
    session_count: int = 0
    short_term_count: int = 0
    long_term_count: int = 0
    global_count: int = 0
    project_count: int = 0
    expired_count: int = 0
    archived_count: int = 0

    def merge(self, other: "IndexStats") -> "IndexStats":
        return IndexStats(
            **{k: getattr(self, k) + getattr(other, k) for k in self.__dataclass_fields__}
        )


class IndexStore(Protocol):
    """Interface of a metadata index."""

    fts_enabled: bool

    def add(self, row: IndexRow) -> None: ...
    def update(self, row: IndexRow) -> None: ...
    def upsert(self, row: IndexRow) -> None: ...
    def get(self, memory_id: str) -> IndexRow: ...
    def get_by_path(self, file_path: str) -> IndexRow: ...
    def delete(self, memory_id: str) -> bool: ...
    def delete_by_path(self, file_path: str) -> bool: ...
    def get_recent(self, days: int, memory_type: MemoryType | None = None) -> list[IndexRow]: ...
    def get_expired(self, now: datetime | None = None) -> list[IndexRow]: ...
    def list_by_type(self, memory_type: MemoryType) -> list[IndexRow]: ...
    def list_by_scope(self, scope: MemoryScope) -> list[IndexRow]: ...
    def list_by_category(self, category: MemoryCategory) -> list[IndexRow]: ...
    def search(self, keyword: str, limit: int = 10) -> list[IndexRow]: ...
    def increment_access(self, memory_id: str) -> None: ...
    def stats(self) -> IndexStats: ...
    def get_all(self) -> list[IndexRow]: ...
    def get_orphaned(self, existing_paths: set[str]) -> list[IndexRow]: ...
    def close(self) -> None: ...


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _not_found(op: str, memory_id: str | None = None, path: str | None = None) -> MemoryEngineError:
    return MemoryEngineError(
        op, ErrorKind.INDEX_NOT_FOUND, path=path, details=f"id={memory_id}" if memory_id else None
    )


def _stats_for(rows: list[IndexRow], now: datetime) -> IndexStats:
    stats = IndexStats(total_count=len(rows))
    for row in rows:
        if row.type == MemoryType.CORE:
            stats.core_count += 1
        elif row.type == MemoryType.SESSION:
            stats.session_count += 1
        elif row.type == MemoryType.SHORT_TERM:
            stats.short_term_count += 1
        elif row.type == MemoryType.LONG_TERM:
            stats.long_term_count += 1
        if row.scope == MemoryScope.PROJECT:
            stats.project_count += 1
        else:
            stats.global_count += 1
        if row.is_expired(now):
            stats.expired_count += 1
        if row.status == MemoryStatus.ARCHIVED:
            stats.archived_count += 1
    return stats


class SQLiteIndexStore:
    """Metadata index backed by SQLite, with FTS5 keyword search when available.

    Full-text support is probed once in ``init_db``. If the FTS5 module is
    missing, keyword search uses ``LIKE`` on title and tags for the lifetime
    of the store.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the store with a database path.

        Args:
            db_path: Path to the SQLite database file.
        """
        self.db_path = db_path
        self.fts_enabled = False
        self._conn: sqlite3.Connection | None = None

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the database connection."""
        if self._conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self.db_path)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=5000")
        return self._conn

    def init_db(self) -> None:
        """Create tables and probe for FTS5 support."""
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS memory_index (
                id            TEXT PRIMARY KEY,
                file_path     TEXT UNIQUE NOT NULL,
                type          TEXT NOT NULL,
                scope         TEXT NOT NULL,
                category      TEXT NOT NULL,
                title         TEXT NOT NULL,
                tags          TEXT NOT NULL DEFAULT '',
                content_hash  TEXT NOT NULL,
                importance    INTEGER NOT NULL DEFAULT 3,
                access_count  INTEGER NOT NULL DEFAULT 0,
                token_count   INTEGER NOT NULL DEFAULT 0,
                status        TEXT NOT NULL DEFAULT 'active',
                project_path  TEXT,
                expires_at    TEXT,
                created_at    TEXT NOT NULL,
                updated_at    TEXT NOT NULL,
                accessed_at   TEXT NOT NULL
            )
        """)
        for column in ("type", "scope", "category", "created_at", "updated_at",
                       "expires_at", "access_count", "title", "tags"):
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_memory_{column} ON memory_index({column})"
            )
        conn.commit()
        self.fts_enabled = self._init_fts(conn)

    def _init_fts(self, conn: sqlite3.Connection) -> bool:
        try:
            conn.execute("""
                CREATE VIRTUAL TABLE IF NOT EXISTS memory_fts USING fts5(
                    id, title, tags, content='memory_index', content_rowid='rowid'
                )
            """)
            conn.execute("""
                CREATE TRIGGER IF NOT EXISTS memory_ai AFTER INSERT ON memory_index BEGIN
                    INSERT INTO memory_fts(rowid, id, title, tags)
                    VALUES (NEW.rowid, NEW.id, NEW.title, NEW.tags);
                END
            """)
            conn.execute("""
                CREATE TRIGGER IF NOT EXISTS memory_ad AFTER DELETE ON memory_index BEGIN
                    INSERT INTO memory_fts(memory_fts, rowid, id, title, tags)
                    VALUES ('delete', OLD.rowid, OLD.id, OLD.title, OLD.tags);
                END
            """)
            conn.execute("""
                CREATE TRIGGER IF NOT EXISTS memory_au AFTER UPDATE ON memory_index BEGIN
                    INSERT INTO memory_fts(memory_fts, rowid, id, title, tags)
                    VALUES ('delete', OLD.rowid, OLD.id, OLD.title, OLD.tags);
                    INSERT INTO memory_fts(rowid, id, title, tags)
                    VALUES (NEW.rowid, NEW.id, NEW.title, NEW.tags);
                END
            """)
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            logger.info("FTS5 unavailable for %s, using LIKE search: %s", self.db_path, e)
            return False
        return True

    def _params(self, row: IndexRow) -> tuple:
        return (
            row.id,
            row.file_path,
            row.type.value,
            row.scope.value,
            row.category.value,
            row.title,
            ",".join(row.tags),
            row.content_hash,
            row.importance,
            row.access_count,
            row.token_count,
            row.status.value,
            row.project_path,
            _ts(row.expires_at),
            _ts(row.created_at),
            _ts(row.updated_at),
            _ts(row.accessed_at),
        )

    def add(self, row: IndexRow) -> None:
        """Insert a new row.

        Raises:
            sqlite3.IntegrityError: If the id or file path is already indexed.
        """
        conn = self._get_connection()
        conn.execute(
            f"INSERT INTO memory_index ({_COLUMNS}) VALUES ({', '.join('?' * 17)})",
            self._params(row),
        )
        conn.commit()

    def update(self, row: IndexRow) -> None:
        """Replace every column of an existing row.

        Raises:
            MemoryEngineError: If no row has this id.
        """
        conn = self._get_connection()
        params = self._params(row)
        cursor = conn.execute(
            """
            UPDATE memory_index SET
                file_path = ?, type = ?, scope = ?, category = ?, title = ?, tags = ?,
                content_hash = ?, importance = ?, access_count = ?, token_count = ?,
                status = ?, project_path = ?, expires_at = ?, created_at = ?,
                updated_at = ?, accessed_at = ?
            WHERE id = ?
            """,
            params[1:] + params[:1],
        )
        conn.commit()
        if cursor.rowcount == 0:
            raise _not_found("index.update", row.id)

    def upsert(self, row: IndexRow) -> None:
        """Insert a row or update it in place if the id exists."""
        conn = self._get_connection()
        conn.execute(
            f"""
            INSERT INTO memory_index ({_COLUMNS}) VALUES ({', '.join('?' * 17)})
            ON CONFLICT(id) DO UPDATE SET
                file_path = excluded.file_path, type = excluded.type,
                scope = excluded.scope, category = excluded.category,
                title = excluded.title, tags = excluded.tags,
                content_hash = excluded.content_hash, importance = excluded.importance,
                access_count = excluded.access_count, token_count = excluded.token_count,
                status = excluded.status, project_path = excluded.project_path,
                expires_at = excluded.expires_at, created_at = excluded.created_at,
                updated_at = excluded.updated_at, accessed_at = excluded.accessed_at
            """,
            self._params(row),
        )
        conn.commit()

    def get(self, memory_id: str) -> IndexRow:
        """Get a row by memory id.

        Raises:
            MemoryEngineError: If no row has this id.
        """
        rows = self._query(f"SELECT {_COLUMNS} FROM memory_index WHERE id = ?", (memory_id,))
        if not rows:
            raise _not_found("index.get", memory_id)
        return rows[0]

    def get_by_path(self, file_path: str) -> IndexRow:
        """Get a row by document path.

        Raises:
            MemoryEngineError: If no row has this path.
        """
        rows = self._query(
            f"SELECT {_COLUMNS} FROM memory_index WHERE file_path = ?", (file_path,)
        )
        if not rows:
            raise _not_found("index.get_by_path", path=file_path)
        return rows[0]

    def delete(self, memory_id: str) -> bool:
        conn = self._get_connection()
        cursor = conn.execute("DELETE FROM memory_index WHERE id = ?", (memory_id,))
        conn.commit()
        return cursor.rowcount > 0

    def delete_by_path(self, file_path: str) -> bool:
        conn = self._get_connection()
        cursor = conn.execute("DELETE FROM memory_index WHERE file_path = ?", (file_path,))
        conn.commit()
        return cursor.rowcount > 0

    def get_recent(self, days: int, memory_type: MemoryType | None = None) -> list[IndexRow]:
        """Rows created within the last ``days`` days, newest first."""
        since = _ts(datetime.now() - timedelta(days=days))
        if memory_type is None:
            return self._query(
                f"SELECT {_COLUMNS} FROM memory_index WHERE created_at >= ? "
                "ORDER BY created_at DESC",
                (since,),
            )
        return self._query(
            f"SELECT {_COLUMNS} FROM memory_index WHERE created_at >= ? AND type = ? "
            "ORDER BY created_at DESC",
            (since, memory_type.value),
        )

    def get_expired(self, now: datetime | None = None) -> list[IndexRow]:
        """Rows whose ``expires_at`` is at or before ``now``."""
        return self._query(
            f"SELECT {_COLUMNS} FROM memory_index "
            "WHERE expires_at IS NOT NULL AND expires_at <= ? ORDER BY expires_at ASC",
            (_ts(now or datetime.now()),),
        )

    def list_by_type(self, memory_type: MemoryType) -> list[IndexRow]:
        return self._query(
            f"SELECT {_COLUMNS} FROM memory_index WHERE type = ? ORDER BY updated_at DESC",
            (memory_type.value,),
        )

    def list_by_scope(self, scope: MemoryScope) -> list[IndexRow]:
        return self._query(
            f"SELECT {_COLUMNS} FROM memory_index WHERE scope = ? ORDER BY updated_at DESC",
            (scope.value,),
        )

    def list_by_category(self, category: MemoryCategory) -> list[IndexRow]:
        return self._query(
            f"SELECT {_COLUMNS} FROM memory_index WHERE category = ? ORDER BY updated_at DESC",
            (category.value,),
        )

    def search(self, keyword: str, limit: int = 10) -> list[IndexRow]:
        """Search titles and tags.

        Uses FTS5 prefix matching when enabled. Queries FTS5 cannot handle
        (no word tokens, syntax errors, or CJK text the default tokenizer
        does not split) fall back to a substring match.
        """
        keyword = keyword.strip()
        if not keyword:
            return []

        if self.fts_enabled:
            tokens = _FTS_TOKEN.findall(keyword)
            if tokens:
                expr = " OR ".join(f'"{t}"*' for t in tokens)
                try:
                    rows = self._query(
                        f"SELECT {_COLUMNS} FROM memory_index WHERE rowid IN ("
                        "SELECT rowid FROM memory_fts WHERE memory_fts MATCH ? "
                        "ORDER BY rank LIMIT ?) ORDER BY updated_at DESC",
                        (expr, limit),
                    )
                except sqlite3.OperationalError as e:
                    logger.debug("FTS query %r failed, using LIKE: %s", expr, e)
                    rows = []
                if rows:
                    return rows

        pattern = f"%{keyword}%"
        return self._query(
            f"SELECT {_COLUMNS} FROM memory_index WHERE title LIKE ? OR tags LIKE ? "
            "ORDER BY updated_at DESC LIMIT ?",
            (pattern, pattern, limit),
        )

    def increment_access(self, memory_id: str) -> None:
        """Atomically bump the access counter and access time.

        Raises:
            MemoryEngineError: If no row has this id.
        """
        conn = self._get_connection()
        cursor = conn.execute(
            "UPDATE memory_index SET access_count = access_count + 1, accessed_at = ? "
            "WHERE id = ?",
            (_ts(datetime.now()), memory_id),
        )
        conn.commit()
        if cursor.rowcount == 0:
            raise _not_found("index.increment_access", memory_id)

    def stats(self) -> IndexStats:
        return _stats_for(self.get_all(), datetime.now())

    def get_all(self) -> list[IndexRow]:
        return self._query(f"SELECT {_COLUMNS} FROM memory_index ORDER BY updated_at DESC")

    def get_orphaned(self, existing_paths: set[str]) -> list[IndexRow]:
        """Rows whose document path is not in ``existing_paths``."""
        return [row for row in self.get_all() if row.file_path not in existing_paths]

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _query(self, sql: str, params: tuple = ()) -> list[IndexRow]:
        conn = self._get_connection()
        cursor = conn.execute(sql, params)
        return [self._row_to_index(row) for row in cursor.fetchall()]

    def _row_to_index(self, row: sqlite3.Row) -> IndexRow:
        """Convert a database row to an IndexRow."""
        return IndexRow(
            id=row["id"],
            file_path=row["file_path"],
            type=MemoryType(row["type"]),
            scope=MemoryScope(row["scope"]),
            category=MemoryCategory(row["category"]),
            title=row["title"],
            tags=[t for t in (row["tags"] or "").split(",") if t],
            content_hash=row["content_hash"],
            importance=row["importance"],
            access_count=row["access_count"],
            token_count=row["token_count"],
            status=MemoryStatus(row["status"]),
            project_path=row["project_path"],
            expires_at=_parse_ts(row["expires_at"]),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            accessed_at=_parse_ts(row["accessed_at"]),
        )


class InMemoryIndexStore:
    """Dict-backed index with substring search, for tests and ephemeral use."""

    def __init__(self) -> None:
        self.fts_enabled = False
        self._rows: dict[str, IndexRow] = {}

    def init_db(self) -> None:
        pass

    def add(self, row: IndexRow) -> None:
        if row.id in self._rows:
            raise sqlite3.IntegrityError(f"duplicate id {row.id}")
        if any(r.file_path == row.file_path for r in self._rows.values()):
            raise sqlite3.IntegrityError(f"duplicate file path {row.file_path}")
        self._rows[row.id] = replace(row, tags=list(row.tags))

    def update(self, row: IndexRow) -> None:
        if row.id not in self._rows:
            raise _not_found("index.update", row.id)
        self._rows[row.id] = replace(row, tags=list(row.tags))

    def upsert(self, row: IndexRow) -> None:
        self._rows[row.id] = replace(row, tags=list(row.tags))

    def get(self, memory_id: str) -> IndexRow:
        if memory_id not in self._rows:
            raise _not_found("index.get", memory_id)
        return replace(self._rows[memory_id])

    def get_by_path(self, file_path: str) -> IndexRow:
        for row in self._rows.values():
            if row.file_path == file_path:
                return replace(row)
        raise _not_found("index.get_by_path", path=file_path)

    def delete(self, memory_id: str) -> bool:
        return self._rows.pop(memory_id, None) is not None

    def delete_by_path(self, file_path: str) -> bool:
        for row in list(self._rows.values()):
            if row.file_path == file_path:
                del self._rows[row.id]
                return True
        return False

    def _sorted(self, rows: list[IndexRow], key: str = "updated_at") -> list[IndexRow]:
        return [replace(r) for r in sorted(rows, key=lambda r: getattr(r, key), reverse=True)]

    def get_recent(self, days: int, memory_type: MemoryType | None = None) -> list[IndexRow]:
        since = datetime.now() - timedelta(days=days)
        rows = [
            r for r in self._rows.values()
            if r.created_at >= since and (memory_type is None or r.type == memory_type)
        ]
        return self._sorted(rows, "created_at")

    def get_expired(self, now: datetime | None = None) -> list[IndexRow]:
        now = now or datetime.now()
        rows = [r for r in self._rows.values() if r.is_expired(now)]
        return [replace(r) for r in sorted(rows, key=lambda r: r.expires_at)]

    def list_by_type(self, memory_type: MemoryType) -> list[IndexRow]:
        return self._sorted([r for r in self._rows.values() if r.type == memory_type])

    def list_by_scope(self, scope: MemoryScope) -> list[IndexRow]:
        return self._sorted([r for r in self._rows.values() if r.scope == scope])

    def list_by_category(self, category: MemoryCategory) -> list[IndexRow]:
        return self._sorted([r for r in self._rows.values() if r.category == category])

    def search(self, keyword: str, limit: int = 10) -> list[IndexRow]:
        needle = keyword.strip().lower()
        if not needle:
            return []
        rows = [
            r for r in self._rows.values()
            if needle in r.title.lower() or needle in ",".join(r.tags).lower()
        ]
        return self._sorted(rows)[:limit]

    def increment_access(self, memory_id: str) -> None:
        if memory_id not in self._rows:
            raise _not_found("index.increment_access", memory_id)
        row = self._rows[memory_id]
        row.access_count += 1
        row.accessed_at = datetime.now()

    def stats(self) -> IndexStats:
        return _stats_for(list(self._rows.values()), datetime.now())

    def get_all(self) -> list[IndexRow]:
        return self._sorted(list(self._rows.values()))

    def get_orphaned(self, existing_paths: set[str]) -> list[IndexRow]:
        return [r for r in self.get_all() if r.file_path not in existing_paths]

    def close(self) -> None:
        pass


class LayeredIndexStore:
    """One index per memory root behind a single interface.

    Writes go to the project index for project-scoped rows and to the
    global index otherwise; reads union both.
    """

    def __init__(self, global_store: IndexStore, project_store: IndexStore | None = None) -> None:
        self.global_store = global_store
        self.project_store = project_store

    @property
    def fts_enabled(self) -> bool:
        return self.global_store.fts_enabled

    def attach_project(self, store: IndexStore) -> None:
        """Swap in the index of a newly activated project, closing the old one."""
        if self.project_store is not None:
            self.project_store.close()
        self.project_store = store

    def detach_project(self) -> None:
        if self.project_store is not None:
            self.project_store.close()
            self.project_store = None

    def _stores(self) -> list[IndexStore]:
        if self.project_store is None:
            return [self.global_store]
        return [self.project_store, self.global_store]

    def _route(self, scope: MemoryScope) -> IndexStore:
        if scope == MemoryScope.PROJECT and self.project_store is not None:
            return self.project_store
        return self.global_store

    def _union(self, method: str, *args) -> list[IndexRow]:
        rows: list[IndexRow] = []
        for store in self._stores():
            rows.extend(getattr(store, method)(*args))
        return rows

    def add(self, row: IndexRow) -> None:
        self._route(row.scope).add(row)

    def update(self, row: IndexRow) -> None:
        self._route(row.scope).update(row)

    def upsert(self, row: IndexRow) -> None:
        self._route(row.scope).upsert(row)

    def _first(self, method: str, key: str) -> IndexRow:
        *earlier, last = self._stores()
        for store in earlier:
            try:
                return getattr(store, method)(key)
            except MemoryEngineError as e:
                if not e.is_not_found:
                    raise
        return getattr(last, method)(key)

    def get(self, memory_id: str) -> IndexRow:
        return self._first("get", memory_id)

    def get_by_path(self, file_path: str) -> IndexRow:
        return self._first("get_by_path", file_path)

    def delete(self, memory_id: str) -> bool:
        return any([store.delete(memory_id) for store in self._stores()])

    def delete_by_path(self, file_path: str) -> bool:
        return any([store.delete_by_path(file_path) for store in self._stores()])

    def get_recent(self, days: int, memory_type: MemoryType | None = None) -> list[IndexRow]:
        rows = self._union("get_recent", days, memory_type)
        return sorted(rows, key=lambda r: r.created_at, reverse=True)

    def get_expired(self, now: datetime | None = None) -> list[IndexRow]:
        rows = self._union("get_expired", now)
        return sorted(rows, key=lambda r: r.expires_at)

    def list_by_type(self, memory_type: MemoryType) -> list[IndexRow]:
        return sorted(self._union("list_by_type", memory_type), key=lambda r: r.updated_at, reverse=True)

    def list_by_scope(self, scope: MemoryScope) -> list[IndexRow]:
        return self._route(scope).list_by_scope(scope)

    def list_by_category(self, category: MemoryCategory) -> list[IndexRow]:
        return sorted(
            self._union("list_by_category", category), key=lambda r: r.updated_at, reverse=True
        )

    def search(self, keyword: str, limit: int = 10) -> list[IndexRow]:
        rows = sorted(self._union("search", keyword, limit), key=lambda r: r.updated_at, reverse=True)
        return rows[:limit]

    def increment_access(self, memory_id: str) -> None:
        row = self.get(memory_id)
        self._route(row.scope).increment_access(memory_id)

    def stats(self) -> IndexStats:
        total = IndexStats()
        for store in self._stores():
            total = total.merge(store.stats())
        return total

    def get_all(self) -> list[IndexRow]:
        return sorted(self._union("get_all"), key=lambda r: r.updated_at, reverse=True)

    def get_orphaned(self, existing_paths: set[str]) -> list[IndexRow]:
        return self._union("get_orphaned", existing_paths)

    def close(self) -> None:
        for store in self._stores():
            store.close()
