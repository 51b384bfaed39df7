"""Tests for the memory admin CLI."""

import asyncio
from pathlib import Path

import pytest

from aimate.cli import create_parser, run_memory_cli
from aimate.memory.config import MemoryConfig
from aimate.memory.summarizer import default_summary
from aimate.memory.system import MemorySystem

REDIS_FACT = "Redis is an in-memory store that can be used for caching"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """No embedding or completion endpoints, no host memory root."""
    for name in ("AIMATE_MEMORY_ROOT", "AIMATE_EMBEDDING_API_KEY", "GROQ_API_KEY"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def root(tmp_path: Path) -> Path:
    return tmp_path / "memory"


def cli(root: Path, *args: str) -> int:
    return run_memory_cli(["-c", str(root.parent / "missing.json"), "--root", str(root), *args])


def seed(root: Path, *texts: str) -> list[str]:
    """Store texts through a MemorySystem and return the long-term ids."""

    async def _seed() -> list[str]:
        memory = MemorySystem(
            MemoryConfig.for_root(root), summarizer=default_summary, start_maintenance=False
        )
        async with memory:
            for text in texts:
                await memory.process_user_input(text)
            return [m.id for m in memory.long_term.load_all()]

    return asyncio.run(_seed())


class TestParser:
    """Tests for argument parsing."""

    def test_search_defaults(self):
        args = create_parser().parse_args(["search", "redis"])
        assert args.command == "search"
        assert args.query == "redis"
        assert args.top_k == 10
        assert args.min_score == pytest.approx(0.3)

    def test_global_options(self):
        args = create_parser().parse_args(["--root", "/tmp/mem", "-p", "/src/app", "-v", "stats"])
        assert args.root == Path("/tmp/mem")
        assert args.project == Path("/src/app")
        assert args.verbose

    def test_no_command_prints_help(self, capsys):
        assert run_memory_cli([]) == 0
        assert "aimate-memory" in capsys.readouterr().out


class TestCommands:
    """Tests for each subcommand against a temporary store."""

    def test_stats(self, root, capsys):
        assert cli(root, "stats") == 0
        out = capsys.readouterr().out
        assert "Core tokens" in out
        assert str(root) in out

    def test_core_lists_default_persona(self, root, capsys):
        assert cli(root, "core") == 0
        assert "[persona] Assistant identity" in capsys.readouterr().out

    def test_search(self, root, capsys):
        seed(root, REDIS_FACT)

        assert cli(root, "search", "Redis") == 0

        out = capsys.readouterr().out
        assert "long_term" in out
        assert "Total: 1 result(s)" in out

    def test_search_without_results(self, root, capsys):
        assert cli(root, "search", "kubernetes") == 0
        assert "No memories found." in capsys.readouterr().out

    def test_diagnose_and_sync(self, root, capsys):
        (memory_id,) = seed(root, REDIS_FACT)
        assert cli(root, "diagnose") == 0
        assert "Index is consistent." in capsys.readouterr().out

        for path in (root / "long_term").rglob("*.md"):
            path.unlink()

        assert cli(root, "diagnose") == 1
        assert f"missing file: {memory_id}" in capsys.readouterr().out

        assert cli(root, "sync") == 0
        assert "1 deleted" in capsys.readouterr().out

        assert cli(root, "diagnose") == 0

    def test_reindex(self, root, capsys):
        seed(root, REDIS_FACT)
        assert cli(root, "reindex") == 0
        assert capsys.readouterr().out.startswith("Reindex:")

    def test_maintenance(self, root, capsys):
        assert cli(root, "maintenance") == 0
        out = capsys.readouterr().out
        assert "Expired cleaned:   0" in out
        assert "Embeddings:" not in out

    def test_recent(self, root, capsys):
        assert cli(root, "recent") == 0
        assert "No short-term memories in the last 7 days." in capsys.readouterr().out

        seed(root, "Fix the login bug tomorrow")
        assert cli(root, "recent", "-d", "1") == 0
        assert "[task] Fix the login bug tomorrow" in capsys.readouterr().out

    def test_sessions(self, root, capsys):
        assert cli(root, "sessions") == 0
        assert "No sessions." in capsys.readouterr().out

    def test_first_run_logs_persona_creation(self, root):
        cli(root, "stats")
        assert (root / "logs" / "events.jsonl").exists()
