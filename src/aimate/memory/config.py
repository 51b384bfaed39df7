"""Memory engine configuration.

Loads configuration from ~/.aimate/memory/config.json and falls back to
defaults for anything missing or invalid.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_GLOBAL_ROOT = Path.home() / ".aimate" / "memory"
DEFAULT_CONFIG_PATH = DEFAULT_GLOBAL_ROOT / "config.json"

DEFAULT_PROJECT_MARKERS = [
    ".git",
    ".aimate",
    "go.mod",
    "package.json",
    "Cargo.toml",
    "pom.xml",
    "pyproject.toml",
]


@dataclass
class StorageConfig:
    """Where documents and index files live.

    Attributes:
        global_root: Root of the global memory tree.
        project_dir_name: Relative path of the memory tree inside a project.
        index_db_name: File name of the metadata index in each root.
        vector_db_name: File name of the vector index in each root.
        project_markers: File or directory names that identify a project root.
    """

    global_root: Path | None = None
    project_dir_name: str = ".aimate/memory"
    index_db_name: str = "index.db"
    vector_db_name: str = "vectors.db"
    project_markers: list[str] = field(default_factory=lambda: list(DEFAULT_PROJECT_MARKERS))

    def __post_init__(self) -> None:
        if self.global_root is None:
            self.global_root = DEFAULT_GLOBAL_ROOT
        self.global_root = Path(self.global_root).expanduser()
        if not self.project_dir_name:
            raise ValueError("project_dir_name must not be empty")


@dataclass
class CoreConfig:
    max_tokens: int = 2000
    refine_threshold: float = 0.9

    def __post_init__(self) -> None:
        if self.max_tokens <= 0:
            raise ValueError("core.max_tokens must be positive")


@dataclass
class SessionMemoryConfig:
    max_tokens: int = 32000
    warning_thresholds: list[float] = field(default_factory=lambda: [0.7, 0.85])
    protected_rounds: int = 3
    archive_retention_days: int = 30
    trim_threshold: float = 0.85

    def __post_init__(self) -> None:
        if self.max_tokens <= 0:
            raise ValueError("session.max_tokens must be positive")
        if self.protected_rounds < 0:
            raise ValueError("session.protected_rounds must not be negative")


@dataclass
class ShortTermConfig:
    default_ttl_days: int = 7
    category_ttl: dict[str, int] = field(
        default_factory=lambda: {"task": 3, "note": 7, "context": 14}
    )
    promote_threshold: int = 5
    max_files: int = 100
    summary_ttl_days: int = 14

    def ttl_for(self, category: str) -> int:
        """TTL in days for a category, falling back to the default."""
        return self.category_ttl.get(category, self.default_ttl_days)


@dataclass
class LongTermConfig:
    compression_similarity: float = 0.85
    inactive_archive_days: int = 90
    max_files: int = 500


@dataclass
class RetrievalConfig:
    vector_top_k: int = 20
    keyword_top_k: int = 10
    final_top_k: int = 5
    min_similarity: float = 0.6
    time_decay_factor: float = 0.95
    timeout_ms: int = 500

    def __post_init__(self) -> None:
        if not 0.0 <= self.min_similarity <= 1.0:
            raise ValueError("retrieval.min_similarity must be between 0 and 1")


@dataclass
class EmbeddingConfig:
    enabled: bool = True
    base_url: str = "https://api.deepseek.com"
    model: str = "deepseek-embed"
    dimension: int = 1536
    batch_size: int = 10
    timeout_sec: float = 30.0
    max_retries: int = 3
    backoff_base: float = 1.0

    def __post_init__(self) -> None:
        if self.dimension <= 0:
            raise ValueError("embedding.dimension must be positive")
        if self.batch_size < 1:
            raise ValueError("embedding.batch_size must be at least 1")


@dataclass
class MaintenanceConfig:
    enabled: bool = True
    interval_minutes: float = 60
    cleanup_expired: bool = True
    sync_index: bool = True

    def __post_init__(self) -> None:
        if self.interval_minutes <= 0:
            raise ValueError("maintenance.interval_minutes must be positive")


@dataclass
class ContextConfig:
    """Total context budget and its split across tiers."""

    total_budget: int = 128000
    core_ratio: float = 0.05
    session_ratio: float = 0.50
    short_term_ratio: float = 0.15
    long_term_ratio: float = 0.20
    reserved_ratio: float = 0.10

    def __post_init__(self) -> None:
        if self.total_budget <= 0:
            raise ValueError("context.total_budget must be positive")
        total = (
            self.core_ratio
            + self.session_ratio
            + self.short_term_ratio
            + self.long_term_ratio
            + self.reserved_ratio
        )
        if not 0.99 <= total <= 1.01:
            raise ValueError(f"context ratios must sum to 1.0, got {total:.2f}")


@dataclass
class MemoryConfig:
    """Configuration for the whole memory engine."""

    storage: StorageConfig = field(default_factory=StorageConfig)
    core: CoreConfig = field(default_factory=CoreConfig)
    session: SessionMemoryConfig = field(default_factory=SessionMemoryConfig)
    short_term: ShortTermConfig = field(default_factory=ShortTermConfig)
    long_term: LongTermConfig = field(default_factory=LongTermConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    maintenance: MaintenanceConfig = field(default_factory=MaintenanceConfig)
    context: ContextConfig = field(default_factory=ContextConfig)

    @classmethod
    def for_root(cls, root: Path) -> "MemoryConfig":
        """Default configuration rooted at a specific directory."""
        return cls(storage=StorageConfig(global_root=root))


_SECTIONS: dict[str, type] = {
    "storage": StorageConfig,
    "core": CoreConfig,
    "session": SessionMemoryConfig,
    "short_term": ShortTermConfig,
    "long_term": LongTermConfig,
    "retrieval": RetrievalConfig,
    "embedding": EmbeddingConfig,
    "maintenance": MaintenanceConfig,
    "context": ContextConfig,
}


def load_config(config_path: Path | None = None) -> MemoryConfig:
    """Load MemoryConfig from a JSON file.

    The file holds one object per section, each section optional:
    ```json
    {
      "storage": {"global_root": "~/.aimate/memory"},
      "retrieval": {"final_top_k": 8},
      "maintenance": {"interval_minutes": 30}
    }
    ```

    Args:
        config_path: Path to config file. Uses DEFAULT_CONFIG_PATH if None.

    Returns:
        MemoryConfig with loaded values, defaults where absent.
    """
    path = config_path or DEFAULT_CONFIG_PATH

    if not path.exists():
        logger.debug("No config file at %s, using defaults", path)
        return apply_env_overrides(MemoryConfig())

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        logger.warning("Invalid JSON in %s: %s. Using defaults.", path, e)
        return apply_env_overrides(MemoryConfig())
    except OSError as e:
        logger.warning("Cannot read %s: %s. Using defaults.", path, e)
        return apply_env_overrides(MemoryConfig())

    return apply_env_overrides(_parse_config(data))


def _parse_config(data: dict[str, Any]) -> MemoryConfig:
    """Parse a config dictionary section by section.

    Unknown keys are ignored. A section that fails validation falls back to
    its defaults with a warning.
    """
    sections: dict[str, Any] = {}
    if not isinstance(data, dict):
        logger.warning("Config root must be an object, using defaults")
        return MemoryConfig()

    for name, section_cls in _SECTIONS.items():
        raw = data.get(name)
        if raw is None:
            continue
        if not isinstance(raw, dict):
            logger.warning("Config section '%s' must be an object, ignoring", name)
            continue
        known = {f.name for f in fields(section_cls)}
        values = {k: v for k, v in raw.items() if k in known}
        if name == "storage" and "global_root" in values:
            values["global_root"] = Path(values["global_root"]).expanduser()
        try:
            sections[name] = section_cls(**values)
        except (TypeError, ValueError) as e:
            logger.warning("Invalid config section '%s': %s. Using defaults.", name, e)

    return MemoryConfig(**sections)


def apply_env_overrides(config: MemoryConfig) -> MemoryConfig:
    """Apply AIMATE_* environment variables on top of a config."""
    root = os.getenv("AIMATE_MEMORY_ROOT")
    if root:
        config.storage.global_root = Path(root).expanduser()

    base_url = os.getenv("AIMATE_EMBEDDING_BASE_URL")
    if base_url:
        config.embedding.base_url = base_url

    model = os.getenv("AIMATE_EMBEDDING_MODEL")
    if model:
        config.embedding.model = model

    return config


def save_config(config: MemoryConfig, config_path: Path | None = None) -> None:
    """Save MemoryConfig to a JSON file.

    Only sections that differ from their defaults are written.

    Args:
        config: The config to save.
        config_path: Path to write to. Uses DEFAULT_CONFIG_PATH if None.
    """
    path = config_path or DEFAULT_CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)

    data: dict[str, Any] = {}
    for name, section_cls in _SECTIONS.items():
        section = asdict(getattr(config, name))
        default = asdict(section_cls())
        changed = {k: v for k, v in section.items() if v != default[k]}
        if changed:
            data[name] = {
                k: str(v) if isinstance(v, Path) else v for k, v in changed.items()
            }

    try:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
    except OSError as e:
        logger.error("Failed to save config to %s: %s", path, e)
        raise
