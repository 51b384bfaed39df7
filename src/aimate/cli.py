"""Admin commands for the memory engine.

Provides one-shot subcommands for statistics, search, diagnosis and
maintenance of the memory store.
"""

import argparse
import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path

from .logging import MemoryEventLog
from .memory.base import truncate_content
from .memory.config import load_config
from .memory.errors import MemoryEngineError
from .memory.retrieval import RetrievalOptions
from .memory.sync import SyncResult
from .memory.system import MemorySystem

Command = Callable[[MemorySystem, argparse.Namespace], Awaitable[int]]


def _print_sync(label: str, result: SyncResult) -> int:
    print(f"{label}: {result.created} created, {result.updated} updated, "
          f"{result.deleted} deleted, {result.skipped} skipped ({result.duration_ms:.0f}ms)")
    for detail in result.error_details:
        print(f"  error: {detail}")
    return 1 if result.errors else 0


async def cmd_stats(memory: MemorySystem, args: argparse.Namespace) -> int:
    """Show counts per tier and index sizes."""
    stats = memory.stats()
    storage = memory.layout.storage_stats()
    print(f"\n{'Core tokens':<24} {stats.core_tokens}")
    print(f"{'Session':<24} {stats.session_messages} messages, {stats.session_tokens} tokens "
          f"({stats.session_usage_ratio:.0%})")
    print(f"{'Short-term':<24} {stats.short_term_count} ({stats.short_term_expired} expired)")
    print(f"{'Long-term':<24} {stats.long_term_count}")
    print(f"{'Indexed':<24} {stats.indexed_count}")
    print(f"{'Vectors':<24} {stats.vector_count}")
    print(f"{'Embedding queue':<24} {stats.offline_queue_size}")
    print(f"{'Files':<24} {storage.total_files} ({storage.total_size_bytes} bytes)")
    print(f"{'Global root':<24} {storage.global_path}")
    if storage.project_path:
        print(f"{'Project root':<24} {storage.project_path}")
    return 0


async def cmd_search(memory: MemorySystem, args: argparse.Namespace) -> int:
    """Search memories for a query."""
    results = await memory.search_detailed(
        args.query,
        RetrievalOptions(top_k=args.top_k, min_similarity=args.min_score, record_access=False),
    )
    if not results:
        print("No memories found.")
        return 0

    print(f"\n{'Score':<7} {'Match':<8} {'Tier':<11} Title")
    print("-" * 80)
    for result in results:
        m = result.memory
        print(f"{result.score:<7.3f} {result.match_type:<8} {m.type.value:<11} {m.title}")
        print(f"        {m.id}  {truncate_content(m.content, 60)}")
    print(f"\nTotal: {len(results)} result(s)")
    return 0


async def cmd_diagnose(memory: MemorySystem, args: argparse.Namespace) -> int:
    """Audit files against the index without changing anything."""
    report = memory.check_consistency()
    print(f"Files: {report.total_files}  Index rows: {report.total_indexes}")
    for path in report.orphaned_files:
        print(f"  not indexed: {path}")
    for memory_id in report.orphaned_indexes:
        print(f"  missing file: {memory_id}")
    for mismatch in report.hash_mismatches:
        print(f"  changed on disk: {mismatch.file_path}")
    for path in report.duplicate_files:
        print(f"  duplicate id: {path}")

    if report.is_consistent:
        print("Index is consistent.")
        return 0
    print("Run 'aimate-memory sync' to repair.")
    return 1


async def cmd_sync(memory: MemorySystem, args: argparse.Namespace) -> int:
    """Repair the index from the files on disk."""
    return _print_sync("Sync", memory.sync_index())


async def cmd_reindex(memory: MemorySystem, args: argparse.Namespace) -> int:
    """Rewrite every index row."""
    return _print_sync("Reindex", memory.reindex())


async def cmd_maintenance(memory: MemorySystem, args: argparse.Namespace) -> int:
    """Run one maintenance pass now."""
    result = memory.run_maintenance()
    print(f"Expired cleaned:   {result.expired_cleaned}")
    print(f"Inactive archived: {result.inactive_archived}")
    print(f"Promoted:          {result.promoted}")
    print(f"Index synced:      {result.index_synced}")
    print(f"Orphans removed:   {result.orphaned_cleaned}")
    if memory.embedding is not None:
        succeeded, failed = await memory.drain_embedding_queue()
        print(f"Embeddings:        {succeeded} retried, {failed} still queued")
    for error in result.errors:
        print(f"  error: {error}")
    return 1 if result.errors else 0


async def cmd_core(memory: MemorySystem, args: argparse.Namespace) -> int:
    """List core memories."""
    memories = memory.core.load_active()
    if not memories:
        print("No core memories.")
        return 0
    for m in memories:
        print(f"[{m.category.value}] {m.title}: {truncate_content(m.content, 70)}")
    print(f"\nTotal: {memory.core.get_total_tokens()} / {memory.config.core.max_tokens} tokens")
    return 0


async def cmd_recent(memory: MemorySystem, args: argparse.Namespace) -> int:
    """List recent short-term memories."""
    memories = memory.short_term.load_recent(args.days)
    if not memories:
        print(f"No short-term memories in the last {args.days} days.")
        return 0
    for m in memories:
        expires = f"expires {m.expires_at:%Y-%m-%d}" if m.expires_at else "no expiry"
        print(f"{m.created_at:%Y-%m-%d} [{m.category.value}] {m.title} ({expires})")
    return 0


async def cmd_sessions(memory: MemorySystem, args: argparse.Namespace) -> int:
    """List sessions, newest first."""
    sessions = memory.list_sessions(args.limit)
    if not sessions:
        print("No sessions.")
        return 0
    for s in sessions:
        title = s.title or "(untitled)"
        print(f"{s.created_at:%Y-%m-%d %H:%M} {s.id[:8]} {s.status.value:<9} "
              f"{s.message_count:>4} msgs {s.token_count:>6} tokens  {title}")
    return 0


COMMANDS: dict[str, Command] = {
    "stats": cmd_stats,
    "search": cmd_search,
    "diagnose": cmd_diagnose,
    "sync": cmd_sync,
    "reindex": cmd_reindex,
    "maintenance": cmd_maintenance,
    "core": cmd_core,
    "recent": cmd_recent,
    "sessions": cmd_sessions,
}


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the memory CLI."""
    parser = argparse.ArgumentParser(
        prog="aimate-memory",
        description="Inspect and maintain the AIMate memory store",
    )
    parser.add_argument("-c", "--config", type=Path, help="Path to config.json")
    parser.add_argument("--root", type=Path, help="Global memory root (overrides config)")
    parser.add_argument("-p", "--project", type=Path, help="Activate the project containing this path")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Sub-command help")

    subparsers.add_parser("stats", help="Show memory statistics")

    search_parser = subparsers.add_parser("search", help="Search memories")
    search_parser.add_argument("query", help="Search query")
    search_parser.add_argument("-k", "--top-k", type=int, default=10, help="Maximum results")
    search_parser.add_argument(
        "--min-score", type=float, default=0.3, help="Minimum score of a result"
    )

    subparsers.add_parser("diagnose", help="Check index consistency")
    subparsers.add_parser("sync", help="Sync the index with files on disk")
    subparsers.add_parser("reindex", help="Rebuild every index row")
    subparsers.add_parser("maintenance", help="Run a maintenance pass")
    subparsers.add_parser("core", help="List core memories")

    recent_parser = subparsers.add_parser("recent", help="List recent short-term memories")
    recent_parser.add_argument("-d", "--days", type=int, default=7, help="Look-back window")

    sessions_parser = subparsers.add_parser("sessions", help="List sessions")
    sessions_parser.add_argument("-n", "--limit", type=int, default=20, help="Maximum sessions")

    return parser


async def _run(args: argparse.Namespace, handler: Command) -> int:
    config = load_config(args.config)
    if args.root is not None:
        config.storage.global_root = args.root.expanduser()
    events = MemoryEventLog(config.storage.global_root / "logs")

    memory = MemorySystem(config, events=events, start_maintenance=False)
    try:
        await memory.initialize(args.project)
        return await handler(memory, args)
    except MemoryEngineError as e:
        print(f"Error: {e}")
        return 1
    finally:
        await memory.close()


def run_memory_cli(argv: list[str] | None = None) -> int:
    """Run the memory CLI with given arguments.

    Args:
        argv: Command-line arguments. Uses sys.argv[1:] if None.

    Returns:
        Exit code (0 for success, non-zero for error).
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    return asyncio.run(_run(args, handler))


if __name__ == "__main__":
    sys.exit(run_memory_cli())
