"""Directory layout of the global and per-project memory trees.

Global root (``~/.aimate/memory`` by default)::

    core/
    sessions/YYYY-MM/
    short_term/{tasks,notes,contexts}/
    long_term/{projects,knowledge,decisions}/
    archive/YYYY-MM/<tier>/

A project root (``<project>/.aimate/memory``) has the same tree minus
``core/``, which is always global.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .config import StorageConfig
from .errors import ErrorKind, MemoryEngineError
from .models import Memory, MemoryCategory, MemoryScope, MemoryType, Session

logger = logging.getLogger(__name__)

DOCUMENT_SUFFIX = ".md"
MAX_TITLE_CHARS = 50

SHORT_TERM_DIRS = {
    MemoryCategory.TASK: "tasks",
    MemoryCategory.NOTE: "notes",
    MemoryCategory.CONTEXT: "contexts",
}

LONG_TERM_DIRS = {
    MemoryCategory.PROJECT: "projects",
    MemoryCategory.KNOWLEDGE: "knowledge",
    MemoryCategory.DECISION: "decisions",
}

_UNSAFE_CHARS = re.compile(r'[/\\:*?"<>| ]')
_REPEATED_UNDERSCORES = re.compile(r"_{2,}")


def sanitize_filename(name: str) -> str:
    """Replace path-unsafe characters and spaces with underscores."""
    name = _UNSAFE_CHARS.sub("_", name)
    name = _REPEATED_UNDERSCORES.sub("_", name)
    return name.strip("_")


@dataclass
class StorageStats:
    """File counts and sizes across roots."""

    global_path: str
    project_path: str | None
    total_files: int = 0
    total_size_bytes: int = 0
    global_files: int = 0
    global_size_bytes: int = 0
    project_files: int = 0
    project_size_bytes: int = 0


class StorageLayout:
    """Computes every path the memory engine reads or writes.

    Holds the global root and, once ``set_project`` has been called, the
    memory root of the active project.
    """

    def __init__(self, config: StorageConfig) -> None:
        """Initialize and create the global directory tree.

        Args:
            config: Storage configuration.
        """
        if config.global_root is None:
            raise ValueError("global_root must be set")
        self.config = config
        self.global_root = Path(config.global_root)
        self.project_path: Path | None = None
        self.project_root: Path | None = None
        self.ensure_global_dirs()

    # -- project handling -------------------------------------------------

    def _contains_global_root(self, path: Path) -> bool:
        """True when ``path`` is the global root or one of its ancestors."""
        global_root = self.global_root.expanduser().resolve()
        path = path.resolve()
        return global_root == path or global_root.is_relative_to(path)

    def detect_project_root(self, path: str | Path) -> Path:
        """Walk up from ``path`` looking for a project marker.

        A marker that holds the global tree (``~/.aimate`` for the default
        root) does not identify a project.

        Args:
            path: Candidate path inside a project.

        Returns:
            The first ancestor (or ``path`` itself) containing a marker, or the
            resolved candidate path when no marker is found before the
            filesystem root.
        """
        candidate = Path(path).expanduser().resolve()
        current = candidate
        while True:
            for marker in self.config.project_markers:
                marker_path = current / marker
                if marker_path.exists() and not self._contains_global_root(marker_path):
                    return current
            if current.parent == current:
                break
            current = current.parent
        return candidate

    def set_project(self, path: str | Path) -> Path | None:
        """Activate the project containing ``path`` and create its tree.

        A project whose memory root would overlap the global tree is not
        activated and any active project is cleared.

        Returns:
            The project's memory root, or None when no project was activated.
        """
        project = self.detect_project_root(path)
        project_root = project / self.config.project_dir_name
        global_root = self.global_root.expanduser().resolve()
        resolved = project_root.resolve()
        if resolved.is_relative_to(global_root) or global_root.is_relative_to(resolved):
            logger.warning(
                "Project memory root %s overlaps global root %s; using global memory only",
                project_root, self.global_root,
            )
            self.clear_project()
            return None
        self.project_path = project
        self.project_root = project_root
        self.ensure_project_dirs()
        logger.debug("Active project %s (memory root %s)", project, self.project_root)
        return self.project_root

    def clear_project(self) -> None:
        self.project_path = None
        self.project_root = None

    @property
    def has_project(self) -> bool:
        return self.project_root is not None

    # -- directory trees --------------------------------------------------

    def _tree(self, root: Path, include_core: bool) -> list[Path]:
        dirs = [root]
        if include_core:
            dirs.append(root / "core")
        dirs.append(root / "sessions")
        dirs.extend(root / "short_term" / d for d in SHORT_TERM_DIRS.values())
        dirs.extend(root / "long_term" / d for d in LONG_TERM_DIRS.values())
        dirs.append(root / "archive")
        return dirs

    def _make_dirs(self, dirs: list[Path]) -> None:
        for d in dirs:
            try:
                d.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise MemoryEngineError(
                    "layout.ensure_dirs", ErrorKind.OPERATION_FAILED, path=str(d), cause=e
                ) from e

    def ensure_global_dirs(self) -> None:
        """Create the global tree if missing."""
        self._make_dirs(self._tree(self.global_root, include_core=True))

    def ensure_project_dirs(self) -> None:
        """Create the active project's tree if missing."""
        if self.project_root is not None:
            self._make_dirs(self._tree(self.project_root, include_core=False))

    def root_for(self, scope: MemoryScope) -> Path:
        """Memory root for a scope.

        Project scope without an active project resolves to the global root.
        """
        if scope == MemoryScope.PROJECT and self.project_root is not None:
            return self.project_root
        return self.global_root

    def roots(self) -> list[tuple[MemoryScope, Path]]:
        """All active roots with their scope."""
        result = [(MemoryScope.GLOBAL, self.global_root)]
        project_root = self.project_root
        if project_root is not None and project_root.resolve() != self.global_root.resolve():
            result.append((MemoryScope.PROJECT, self.project_root))
        return result

    @property
    def core_dir(self) -> Path:
        return self.global_root / "core"

    def sessions_dir(self, scope: MemoryScope | None = None) -> Path:
        """Sessions live in the project tree when a project is active."""
        if scope is None:
            scope = MemoryScope.PROJECT if self.has_project else MemoryScope.GLOBAL
        return self.root_for(scope) / "sessions"

    def short_term_dir(
        self, category: MemoryCategory | None = None, scope: MemoryScope = MemoryScope.GLOBAL
    ) -> Path:
        base = self.root_for(scope) / "short_term"
        if category is None or category not in SHORT_TERM_DIRS:
            return base
        return base / SHORT_TERM_DIRS[category]

    def long_term_dir(
        self, category: MemoryCategory | None = None, scope: MemoryScope = MemoryScope.GLOBAL
    ) -> Path:
        base = self.root_for(scope) / "long_term"
        if category is None or category not in LONG_TERM_DIRS:
            return base
        return base / LONG_TERM_DIRS[category]

    def archive_dir(
        self,
        memory_type: MemoryType,
        scope: MemoryScope = MemoryScope.GLOBAL,
        when: datetime | None = None,
    ) -> Path:
        when = when or datetime.now()
        return self.root_for(scope) / "archive" / when.strftime("%Y-%m") / memory_type.value

    def index_db_path(self, scope: MemoryScope = MemoryScope.GLOBAL) -> Path:
        return self.root_for(scope) / self.config.index_db_name

    def vector_db_path(self, scope: MemoryScope = MemoryScope.GLOBAL) -> Path:
        return self.root_for(scope) / self.config.vector_db_name

    # -- file names -------------------------------------------------------

    def generate_filename(self, memory: Memory) -> str:
        """``<YYYYMMDD>_<category>_<title or id fragment>.md``."""
        title = sanitize_filename(memory.title)[:MAX_TITLE_CHARS].rstrip("_")
        if not title:
            title = memory.id[:8]
        stamp = memory.created_at.strftime("%Y%m%d")
        return f"{stamp}_{memory.category.value}_{title}{DOCUMENT_SUFFIX}"

    def memory_path(self, memory: Memory) -> Path:
        """Target path for a new memory document.

        Core memories use ``core/<category>_<title>.md`` without a date so
        each core entry keeps a stable name.
        """
        if memory.type == MemoryType.CORE:
            title = sanitize_filename(memory.title)[:MAX_TITLE_CHARS].rstrip("_") or memory.id[:8]
            return self.core_dir / f"{memory.category.value}_{title}{DOCUMENT_SUFFIX}"
        if memory.type == MemoryType.SHORT_TERM:
            base = self.short_term_dir(memory.category, memory.scope)
        elif memory.type == MemoryType.LONG_TERM:
            base = self.long_term_dir(memory.category, memory.scope)
        else:
            base = self.sessions_dir(memory.scope)
        return base / self.generate_filename(memory)

    def unique_memory_path(self, memory: Memory) -> Path:
        """Like ``memory_path`` but appends an id fragment on collision."""
        path = self.memory_path(memory)
        if path.exists():
            path = path.with_name(f"{path.stem}_{memory.id[:8]}{DOCUMENT_SUFFIX}")
        return path

    def session_path(self, session: Session) -> Path:
        """``sessions/YYYY-MM/YYYYMMDD_HHMMSS_<id8>.md``."""
        created = session.created_at
        return (
            self.sessions_dir()
            / created.strftime("%Y-%m")
            / f"{created:%Y%m%d_%H%M%S}_{session.id[:8]}{DOCUMENT_SUFFIX}"
        )

    def archive_path(self, memory: Memory, when: datetime | None = None) -> Path:
        """Destination of a memory document when archived."""
        return self.archive_dir(memory.type, memory.scope, when) / Path(memory.file_path).name

    # -- classification of paths -----------------------------------------

    def is_project_path(self, path: str | Path) -> bool:
        if self.project_root is None:
            return False
        return Path(path).resolve().is_relative_to(self.project_root.resolve())

    def is_global_path(self, path: str | Path) -> bool:
        return Path(path).resolve().is_relative_to(self.global_root.resolve())

    def scope_from_path(self, path: str | Path) -> MemoryScope:
        return MemoryScope.PROJECT if self.is_project_path(path) else MemoryScope.GLOBAL

    @staticmethod
    def type_from_path(path: str | Path) -> MemoryType:
        parts = Path(path).parts
        for memory_type in (MemoryType.CORE, MemoryType.SHORT_TERM, MemoryType.LONG_TERM):
            if memory_type.value in parts:
                return memory_type
        if "sessions" in parts:
            return MemoryType.SESSION
        return MemoryType.LONG_TERM

    # -- enumeration ------------------------------------------------------

    @staticmethod
    def list_documents(directory: Path, recursive: bool = True) -> list[Path]:
        """Document files under a directory, sorted; missing directory is empty."""
        if not directory.is_dir():
            return []
        pattern = f"**/*{DOCUMENT_SUFFIX}" if recursive else f"*{DOCUMENT_SUFFIX}"
        return sorted(p for p in directory.glob(pattern) if p.is_file())

    def all_memory_paths(self) -> list[Path]:
        """Every memory document in every active root, archive included.

        Sessions are not memories and are left out.
        """
        paths: list[Path] = []
        for _scope, root in self.roots():
            for sub in ("core", "short_term", "long_term", "archive"):
                paths.extend(self.list_documents(root / sub))
        return paths

    def storage_stats(self) -> StorageStats:
        stats = StorageStats(
            global_path=str(self.global_root),
            project_path=str(self.project_root) if self.project_root else None,
        )
        for path in self.all_memory_paths():
            try:
                size = path.stat().st_size
            except OSError:
                continue
            stats.total_files += 1
            stats.total_size_bytes += size
            if self.is_project_path(path):
                stats.project_files += 1
                stats.project_size_bytes += size
            else:
                stats.global_files += 1
                stats.global_size_bytes += size
        return stats
