"""Structured errors for the memory engine."""

from enum import Enum


class ErrorKind(Enum):
    """Classification of memory engine failures."""

    MEMORY_NOT_FOUND = "memory_not_found"
    SESSION_NOT_FOUND = "session_not_found"
    FILE_NOT_FOUND = "file_not_found"
    INDEX_NOT_FOUND = "index_not_found"
    VECTOR_NOT_FOUND = "vector_not_found"
    CONFIG_NOT_FOUND = "config_not_found"
    INVALID_FILE_PATH = "invalid_file_path"
    FILE_EXISTS = "file_exists"
    INVALID_FRONTMATTER = "invalid_frontmatter"
    INDEX_OUT_OF_SYNC = "index_out_of_sync"
    DIMENSION_MISMATCH = "dimension_mismatch"
    EMBEDDING_FAILED = "embedding_failed"
    INVALID_CONFIG = "invalid_config"
    TOKEN_LIMIT_EXCEEDED = "token_limit_exceeded"
    OPERATION_TIMEOUT = "operation_timeout"
    OPERATION_FAILED = "operation_failed"


_NOT_FOUND_KINDS = frozenset({
    ErrorKind.MEMORY_NOT_FOUND,
    ErrorKind.SESSION_NOT_FOUND,
    ErrorKind.FILE_NOT_FOUND,
    ErrorKind.INDEX_NOT_FOUND,
    ErrorKind.VECTOR_NOT_FOUND,
    ErrorKind.CONFIG_NOT_FOUND,
})


class MemoryEngineError(Exception):
    """Error raised by memory engine operations.

    Attributes:
        op: Name of the failing operation (e.g. ``"filestore.create"``).
        kind: Failure classification.
        path: File path involved, if any.
        cause: Underlying exception, if any.
        details: Free-form extra context.
    """

    def __init__(
        self,
        op: str,
        kind: ErrorKind,
        *,
        path: str | None = None,
        cause: BaseException | None = None,
        details: str | None = None,
    ) -> None:
        self.op = op
        self.kind = kind
        self.path = path
        self.cause = cause
        self.details = details
        super().__init__(self._render())

    def _render(self) -> str:
        head = self.op
        if self.path:
            head = f"{head} {self.path}"
        text = f"{head}: {self.kind.value}"
        if self.details:
            text = f"{text} ({self.details})"
        if self.cause is not None:
            text = f"{text}: {self.cause}"
        return text

    @property
    def is_not_found(self) -> bool:
        """True for any not-found class error."""
        return self.kind in _NOT_FOUND_KINDS


def is_not_found(err: BaseException | None) -> bool:
    """Check whether an exception is a not-found class error.

    Plain ``FileNotFoundError`` counts as well, since file-system reads may
    surface it directly.
    """
    if isinstance(err, MemoryEngineError):
        return err.is_not_found
    return isinstance(err, FileNotFoundError)


def is_malformed(err: BaseException | None) -> bool:
    """Check whether an exception reports a malformed document."""
    return isinstance(err, MemoryEngineError) and err.kind is ErrorKind.INVALID_FRONTMATTER
