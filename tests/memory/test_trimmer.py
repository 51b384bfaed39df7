"""Tests for session trimming."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from aimate.memory.config import SessionMemoryConfig
from aimate.memory.errors import ErrorKind, MemoryEngineError
from aimate.memory.models import MemoryCategory
from aimate.memory.session import SessionManager
from aimate.memory.trimmer import TRANSCRIPT_HEADER, SessionTrimmer, render_transcript


@pytest.fixture
def small_session(layout, files) -> SessionManager:
    """Session limited to 100 tokens, protecting the last round."""
    return SessionManager(
        layout, files, SessionMemoryConfig(max_tokens=100, protected_rounds=1, trim_threshold=0.85)
    )


def fill(session: SessionManager, rounds: int, tokens: int = 10) -> None:
    for i in range(rounds):
        session.add_message("user", f"question {i}", token_count=tokens)
        session.add_message("assistant", f"answer {i}", token_count=tokens)


def make_trimmer(session, short_term, config, summarizer=None) -> SessionTrimmer:
    return SessionTrimmer(session, short_term, session.config, config.short_term, summarizer)


class TestTrim:
    """Tests for threshold-driven trimming."""

    @pytest.mark.asyncio
    async def test_trims_and_summarizes(self, small_session, short_term, config):
        fill(small_session, 3, tokens=20)
        summarizer = AsyncMock(return_value="- discussed questions 0 and 1")
        trimmer = make_trimmer(small_session, short_term, config, summarizer)

        result = await trimmer.trim()

        assert result.before_messages == 6
        assert result.after_messages == 2
        assert result.trimmed_messages == 4
        assert result.before_tokens == 120
        assert result.after_tokens == 40
        assert result.summary_created
        assert result.error is None

        kept = small_session.get_messages()
        assert [m.content for m in kept] == ["question 2", "answer 2"]
        assert [m.sequence for m in kept] == [1, 2]
        assert small_session.current.token_count == 40

        transcript = summarizer.await_args.args[0]
        assert transcript.startswith(TRANSCRIPT_HEADER)
        assert "User: question 0" in transcript
        assert "question 2" not in transcript

        summary = short_term.find_by_id(result.summary_id)
        assert summary.category == MemoryCategory.CONTEXT
        assert summary.source == "session_trim"
        assert summary.content == "- discussed questions 0 and 1"

    @pytest.mark.asyncio
    async def test_below_threshold_is_unchanged(self, small_session, short_term, config):
        fill(small_session, 2, tokens=10)
        trimmer = make_trimmer(small_session, short_term, config)

        result = await trimmer.trim()

        assert result.trimmed_messages == 0
        assert result.before_messages == result.after_messages == 4
        assert len(small_session.get_messages()) == 4

    @pytest.mark.asyncio
    async def test_trim_if_needed(self, small_session, short_term, config):
        trimmer = make_trimmer(small_session, short_term, config)
        fill(small_session, 1, tokens=10)
        assert await trimmer.trim_if_needed() is None

        fill(small_session, 3, tokens=15)
        result = await trimmer.trim_if_needed()
        assert result is not None
        assert result.after_messages == 2

    @pytest.mark.asyncio
    async def test_summary_failure_still_trims(self, small_session, short_term, config):
        fill(small_session, 3, tokens=20)
        summarizer = AsyncMock(
            side_effect=MemoryEngineError("summarizer.complete", ErrorKind.OPERATION_FAILED)
        )
        trimmer = make_trimmer(small_session, short_term, config, summarizer)

        result = await trimmer.trim()

        assert result.trimmed_messages == 4
        assert not result.summary_created
        assert result.summary_id is None
        assert result.error.startswith("summary failed:")
        assert short_term.load_all() == []

    @pytest.mark.asyncio
    async def test_empty_summary_is_reported(self, small_session, short_term, config):
        fill(small_session, 3, tokens=20)
        trimmer = make_trimmer(small_session, short_term, config, AsyncMock(return_value="  "))

        result = await trimmer.trim()

        assert result.error == "summary failed: empty summary"
        assert not result.summary_created

    @pytest.mark.asyncio
    async def test_without_summarizer(self, small_session, short_term, config):
        fill(small_session, 3, tokens=20)
        trimmer = make_trimmer(small_session, short_term, config)

        result = await trimmer.trim()

        assert result.trimmed_messages == 4
        assert not result.summary_created
        assert result.error is None

    @pytest.mark.asyncio
    async def test_no_current_session(self, small_session, short_term, config):
        trimmer = make_trimmer(small_session, short_term, config)
        result = await trimmer.trim()
        assert result.before_messages == 0
        assert result.trimmed_messages == 0


class TestForceTrim:
    """Tests for trimming regardless of usage."""

    @pytest.mark.asyncio
    async def test_keeps_requested_messages(self, small_session, short_term, config):
        fill(small_session, 2, tokens=5)
        trimmer = make_trimmer(small_session, short_term, config)

        result = await trimmer.force_trim(1)

        assert result.trimmed_messages == 3
        assert [m.content for m in small_session.get_messages()] == ["answer 1"]

    @pytest.mark.asyncio
    async def test_keep_more_than_present(self, small_session, short_term, config):
        fill(small_session, 1, tokens=5)
        trimmer = make_trimmer(small_session, short_term, config)

        result = await trimmer.force_trim(10)

        assert result.trimmed_messages == 0
        assert len(small_session.get_messages()) == 2

    @pytest.mark.asyncio
    async def test_negative_keep_clears(self, small_session, short_term, config):
        fill(small_session, 1, tokens=5)
        trimmer = make_trimmer(small_session, short_term, config)

        await trimmer.force_trim(-1)

        assert small_session.get_messages() == []
        assert small_session.current.token_count == 0


class TestPreview:
    """Tests for trim previews."""

    def test_no_session(self, small_session, short_term, config):
        assert make_trimmer(small_session, short_term, config).preview() is None

    def test_preview_below_threshold(self, small_session, short_term, config):
        fill(small_session, 2, tokens=10)
        preview = make_trimmer(small_session, short_term, config).preview()

        assert preview.current_messages == 4
        assert preview.current_tokens == 40
        assert preview.max_tokens == 100
        assert preview.usage_ratio == pytest.approx(0.4)
        assert preview.protected_messages == 2
        assert not preview.will_trim
        assert preview.messages_to_trim == 0

    def test_preview_over_threshold(self, small_session, short_term, config):
        fill(small_session, 3, tokens=20)
        trimmer = make_trimmer(small_session, short_term, config)

        preview = trimmer.preview()

        assert preview.will_trim
        assert preview.messages_to_trim == 4
        assert preview.estimated_after_tokens == 40
        assert trimmer.estimate_trim_count() == 4
        assert len(small_session.get_messages()) == 6


class TestConcurrentTrim:
    """Tests for messages that arrive while a summary is being written."""

    @staticmethod
    def blocking_summarizer(started: asyncio.Event, release: asyncio.Event):
        async def summarize(transcript: str) -> str:
            started.set()
            await release.wait()
            return "- earlier rounds"

        return summarize

    @pytest.mark.asyncio
    async def test_message_added_during_summary_is_kept(self, small_session, short_term, config):
        fill(small_session, 3, tokens=20)
        started, release = asyncio.Event(), asyncio.Event()
        trimmer = make_trimmer(
            small_session, short_term, config, self.blocking_summarizer(started, release)
        )

        task = asyncio.create_task(trimmer.trim())
        await started.wait()
        small_session.add_message("user", "arrived during trim", token_count=5)
        release.set()
        result = await task

        kept = small_session.get_messages()
        assert [m.content for m in kept] == ["question 2", "answer 2", "arrived during trim"]
        assert [m.sequence for m in kept] == [1, 2, 3]
        assert result.trimmed_messages == 4
        assert result.after_messages == 3
        assert result.after_tokens == 45
        assert small_session.current.token_count == 45

        reloaded = small_session.load_session(small_session.current.id)
        assert reloaded.message_count == 3

    @pytest.mark.asyncio
    async def test_new_session_during_summary_is_untouched(
        self, small_session, short_term, config
    ):
        fill(small_session, 3, tokens=20)
        started, release = asyncio.Event(), asyncio.Event()
        trimmer = make_trimmer(
            small_session, short_term, config, self.blocking_summarizer(started, release)
        )

        task = asyncio.create_task(trimmer.trim())
        await started.wait()
        small_session.create_session("Fresh")
        small_session.add_message("user", "new topic")
        release.set()
        result = await task

        assert result.trimmed_messages == 0
        assert result.error.startswith("session changed during trim")
        assert [m.content for m in small_session.get_messages()] == ["new topic"]



def test_render_transcript_labels_roles(small_session):
    small_session.add_message("user", "hi")
    small_session.add_message("assistant", "hello")
    text = render_transcript(small_session.get_messages())
    assert text == f"{TRANSCRIPT_HEADER}User: hi\n\nAssistant: hello\n\n"
