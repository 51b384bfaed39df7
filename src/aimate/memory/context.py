"""Token-budgeted context assembly across the memory tiers."""

import logging
from dataclasses import dataclass, field

from .base import render_section, truncate_content
from .config import MemoryConfig
from .core import CoreMemoryManager
from .errors import ErrorKind, MemoryEngineError
from .long_term import LongTermMemoryManager
from .models import ContextBudget, Memory, estimate_tokens
from .retrieval import HybridRetriever, RetrievalOptions, render_results
from .session import SessionManager
from .short_term import ShortTermMemoryManager

logger = logging.getLogger(__name__)

RECENT_DAYS = 7
IMPORTANT_LEVEL = 4
RETRIEVAL_TOP_K = 10
RETRIEVAL_MIN_SIMILARITY = 0.5
ENRICH_TOP_K = 3


@dataclass
class BuiltContext:
    """Assembled context and the tokens each part consumed."""

    budget: ContextBudget
    content: str = ""
    total_tokens: int = 0
    core_tokens: int = 0
    session_tokens: int = 0
    short_term_tokens: int = 0
    long_term_tokens: int = 0
    retrieval_tokens: int = 0

    def remaining_budget(self) -> int:
        return self.budget.total - self.total_tokens

    def is_over_budget(self) -> bool:
        return self.total_tokens > self.budget.total


@dataclass
class ContextWarning:
    level: str  # info, warning or critical
    message: str


@dataclass
class ContextStats:
    budget: ContextBudget
    core_used: int = 0
    session_used: int = 0
    session_max: int = 0
    session_ratio: float = 0.0
    short_term_count: int = 0
    long_term_count: int = 0
    warnings: list[ContextWarning] = field(default_factory=list)


def _brief_entry(memory: Memory) -> str:
    return f"- **{memory.title}**: {truncate_content(memory.content, 100)}\n"


class ContextBuilder:
    """Builds the memory part of the model's context.

    Every tier gets a fixed share of ``context.total_budget``. Entries are
    only ever omitted whole, so a section never exceeds its share.
    """

    def __init__(
        self,
        config: MemoryConfig,
        core: CoreMemoryManager | None = None,
        session: SessionManager | None = None,
        short_term: ShortTermMemoryManager | None = None,
        long_term: LongTermMemoryManager | None = None,
        retriever: HybridRetriever | None = None,
    ) -> None:
        self.config = config
        self.core = core
        self.session = session
        self.short_term = short_term
        self.long_term = long_term
        self.retriever = retriever

    def calculate_budget(self) -> ContextBudget:
        """Split the total budget by the configured ratios.

        Each tier share is rounded down; the reserved share takes what is
        left, so the parts always add up to the total.
        """
        ctx = self.config.context
        total = ctx.total_budget
        core = int(total * ctx.core_ratio)
        session = int(total * ctx.session_ratio)
        short_term = int(total * ctx.short_term_ratio)
        long_term = int(total * ctx.long_term_ratio)
        return ContextBudget(
            total=total,
            core=core,
            session=session,
            short_term=short_term,
            long_term=long_term,
            reserved=total - core - session - short_term - long_term,
        )

    def _add_core(self, result: BuiltContext, parts: list[str]) -> None:
        if self.core is None or result.budget.core <= 0:
            return
        text = self.core.build_context(result.budget.core)
        if text:
            parts.append(text)
            result.core_tokens = estimate_tokens(text)

    def build_context_for_new_session(self) -> BuiltContext:
        """Context for the start of a conversation, without a query.

        Core memory, then short-term memories from the last week, then
        long-term memories of importance 4 or more.
        """
        result = BuiltContext(budget=self.calculate_budget())
        parts: list[str] = []
        self._add_core(result, parts)

        if self.short_term is not None:
            text = render_section(
                "Recent memories",
                self.short_term.load_recent(RECENT_DAYS),
                _brief_entry,
                result.budget.short_term,
            )
            if text:
                parts.append(text)
                result.short_term_tokens = estimate_tokens(text)

        if self.long_term is not None:
            important = [m for m in self.long_term.load_active() if m.importance >= IMPORTANT_LEVEL]
            text = render_section(
                "Important knowledge", important, _brief_entry, result.budget.long_term
            )
            if text:
                parts.append(text)
                result.long_term_tokens = estimate_tokens(text)

        result.content = "\n".join(parts)
        result.total_tokens = result.core_tokens + result.short_term_tokens + result.long_term_tokens
        return result

    async def build_context(self, query: str) -> BuiltContext:
        """Context for a user query.

        Core memory, then memories retrieved for ``query`` within the
        combined short- and long-term share, then short-term memory within
        what retrieval left of the short-term share.

        Raises:
            MemoryEngineError: If ``query`` is empty.
        """
        if not query.strip():
            raise MemoryEngineError(
                "context.build", ErrorKind.OPERATION_FAILED, details="query must not be empty"
            )

        result = BuiltContext(budget=self.calculate_budget())
        parts: list[str] = []
        self._add_core(result, parts)

        retrieval_budget = result.budget.long_term + result.budget.short_term
        if self.retriever is not None and retrieval_budget > 0:
            results = await self.retriever.search(
                query,
                RetrievalOptions(top_k=RETRIEVAL_TOP_K, min_similarity=RETRIEVAL_MIN_SIMILARITY),
            )
            text = render_results(results, retrieval_budget)
            if text:
                parts.append(text)
                result.retrieval_tokens = estimate_tokens(text)

        remaining = result.budget.short_term - result.retrieval_tokens // 2
        if self.short_term is not None and remaining > 0:
            text = self.short_term.build_context(remaining)
            if text:
                parts.append(text)
                result.short_term_tokens = estimate_tokens(text)

        result.content = "\n".join(parts)
        result.total_tokens = result.core_tokens + result.retrieval_tokens + result.short_term_tokens
        return result

    def build_system_prompt(self, base_prompt: str) -> str:
        """Append new-session memory context to a base system prompt."""
        built = self.build_context_for_new_session()
        if not built.content:
            return base_prompt
        return f"{base_prompt}\n\n{built.content}"

    async def enrich_query(self, query: str) -> str:
        """Prefix a query with a few related memories, if any are found."""
        if self.retriever is None:
            return query
        memories = await self.retriever.quick_search(query, ENRICH_TOP_K)
        if not memories:
            return query
        lines = [f"User question: {query}", "", "Related background:"]
        lines.extend(f"- {m.title}: {truncate_content(m.content, 100)}" for m in memories)
        return "\n".join(lines) + "\n"

    def check_context_warnings(self) -> list[ContextWarning]:
        """Warnings for a filling session and an oversized core tier.

        Reaching the highest session threshold is critical; any lower
        threshold is a plain warning.
        """
        warnings: list[ContextWarning] = []
        if self.session is not None:
            _, _, ratio = self.session.token_usage()
            thresholds = sorted(self.session.config.warning_thresholds)
            if thresholds and ratio >= thresholds[-1]:
                warnings.append(
                    ContextWarning(
                        "critical",
                        f"Session context is {ratio:.0%} full; start a new session",
                    )
                )
            elif any(ratio >= t for t in thresholds):
                warnings.append(
                    ContextWarning("warning", f"Session context is {ratio:.0%} full")
                )

        if self.core is not None and self.core.is_over_limit():
            warnings.append(
                ContextWarning("warning", "Core memory exceeds its token limit; refine it")
            )
        return warnings

    def stats(self) -> ContextStats:
        stats = ContextStats(budget=self.calculate_budget())
        if self.core is not None:
            stats.core_used = self.core.get_total_tokens()
        if self.session is not None:
            stats.session_used, stats.session_max, stats.session_ratio = self.session.token_usage()
        if self.short_term is not None:
            stats.short_term_count = self.short_term.stats().total
        if self.long_term is not None:
            stats.long_term_count = self.long_term.stats().total
        stats.warnings = self.check_context_warnings()
        return stats
