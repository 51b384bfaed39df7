"""Tests for the session manager."""

import os
from pathlib import Path

import pytest

from aimate.memory.config import SessionMemoryConfig
from aimate.memory.errors import ErrorKind, MemoryEngineError
from aimate.memory.models import MemoryStatus, estimate_tokens
from aimate.memory.session import SessionManager


class TestLifecycle:
    """Creating, archiving and restoring sessions."""

    def test_create_session(self, session: SessionManager, layout):
        current = session.create_session("Debugging")
        assert session.current is current
        assert current.status == MemoryStatus.ACTIVE
        assert Path(current.file_path).is_relative_to(layout.global_root / "sessions")

    def test_create_archives_previous(self, session: SessionManager, files):
        first = session.create_session("First")
        session.add_message("user", "hello")
        second = session.create_session("Second")

        assert session.current is second
        archived, messages = files.read_session(first.file_path)
        assert archived.status == MemoryStatus.ARCHIVED
        assert [m.content for m in messages] == ["hello"]
        assert session.get_messages() == []

    def test_add_message_starts_session(self, session: SessionManager):
        message = session.add_message("user", "What is a mutex?")
        assert session.current is not None
        assert message.sequence == 1
        assert message.token_count == estimate_tokens("What is a mutex?")

    def test_messages_persist(self, session: SessionManager, files):
        session.create_session()
        session.add_message("user", "hi", token_count=10)
        session.add_message("assistant", "hello", token_count=20)

        stored, messages = files.read_session(session.current.file_path)
        assert stored.token_count == 30
        assert stored.message_count == 2
        assert [(m.sequence, m.role) for m in messages] == [(1, "user"), (2, "assistant")]

    def test_tool_message(self, session: SessionManager):
        session.add_tool_message("", tool_calls=[{"id": "c1"}], role="assistant")
        session.add_tool_message("result", tool_call_id="c1")
        llm = session.build_context_for_llm()
        assert llm[0] == {"role": "assistant", "content": "", "tool_calls": [{"id": "c1"}]}
        assert llm[1] == {"role": "tool", "content": "result", "tool_call_id": "c1"}

    def test_restore_session(self, session: SessionManager, files):
        first = session.create_session("First")
        session.add_message("user", "remember me")
        session.create_session("Second")

        restored = session.restore_session(first.id)

        assert restored.id == first.id
        assert restored.status == MemoryStatus.ACTIVE
        assert [m.content for m in session.get_messages()] == ["remember me"]
        stored, _ = files.read_session(first.file_path)
        assert stored.status == MemoryStatus.ACTIVE

    def test_restore_unknown(self, session: SessionManager):
        with pytest.raises(MemoryEngineError) as excinfo:
            session.restore_session("does-not-exist")
        assert excinfo.value.kind is ErrorKind.SESSION_NOT_FOUND

    def test_load_session(self, session: SessionManager):
        first = session.create_session("First")
        session.add_message("user", "one")
        session.create_session("Second")

        loaded = session.load_session(first.id)
        assert session.current.id == first.id
        assert loaded.status == MemoryStatus.ARCHIVED
        assert len(session.get_messages()) == 1

    def test_load_latest(self, session: SessionManager, layout, files, config):
        first = session.create_session("First")
        second = session.create_session("Second")
        os.utime(first.file_path, (1, 1))

        fresh = SessionManager(layout, files, config.session)
        assert fresh.load_latest().id == second.id

    def test_load_latest_without_sessions(self, session: SessionManager):
        assert session.load_latest().status == MemoryStatus.ACTIVE

    def test_list_sessions_newest_first(self, session: SessionManager):
        first = session.create_session("First")
        second = session.create_session("Second")
        listed = session.list_sessions()
        assert {s.id for s in listed} == {first.id, second.id}
        assert listed[0].created_at >= listed[1].created_at
        assert len(session.list_recent_sessions(1)) == 1

    def test_set_title(self, session: SessionManager, files):
        with pytest.raises(MemoryEngineError):
            session.set_title("Nothing current")
        session.create_session()
        session.set_title("Renamed")
        stored, _ = files.read_session(session.current.file_path)
        assert stored.title == "Renamed"

    def test_sessions_follow_active_project(self, session: SessionManager, layout, project_dir):
        root = layout.set_project(project_dir)
        current = session.create_session()
        assert Path(current.file_path).is_relative_to(root / "sessions")
        assert current.project_path == str(project_dir.resolve())


class TestMessages:
    """Message manipulation."""

    def test_recent_messages(self, session: SessionManager):
        for i in range(5):
            session.add_message("user", f"m{i}")
        assert [m.content for m in session.get_recent_messages(2)] == ["m3", "m4"]
        assert session.get_recent_messages(0) == []

    def test_replace_messages_renumbers(self, session: SessionManager):
        for i in range(4):
            session.add_message("user", f"m{i}", token_count=5)
        tail = session.get_messages()[2:]

        session.replace_messages(tail)

        messages = session.get_messages()
        assert [(m.sequence, m.content) for m in messages] == [(1, "m2"), (2, "m3")]
        assert session.current.token_count == 10

    def test_clear_messages(self, session: SessionManager):
        session.add_message("user", "hi", token_count=3)
        session.clear_messages()
        assert session.get_messages() == []
        assert session.current.token_count == 0


class TestUsage:
    """Token accounting and thresholds."""

    @pytest.fixture
    def small(self, layout, files) -> SessionManager:
        config = SessionMemoryConfig(max_tokens=100, warning_thresholds=[0.7, 0.85], trim_threshold=0.85)
        return SessionManager(layout, files, config)

    def test_token_usage(self, small: SessionManager):
        small.add_message("user", "x", token_count=25)
        assert small.token_usage() == (25, 100, 0.25)

    def test_thresholds(self, small: SessionManager):
        small.add_message("user", "x", token_count=60)
        assert small.check_threshold() == []
        assert not small.needs_trimming()

        small.add_message("user", "x", token_count=15)
        warnings = small.check_threshold()
        assert len(warnings) == 1
        assert "75%" in warnings[0]

        small.add_message("user", "x", token_count=15)
        assert len(small.check_threshold()) == 2
        assert small.needs_trimming()

    def test_stats(self, small: SessionManager):
        assert small.stats().session_id is None
        small.add_message("user", "x", token_count=50)
        stats = small.stats()
        assert stats.message_count == 1
        assert stats.usage_ratio == pytest.approx(0.5)


class TestContext:
    """Rendering the transcript."""

    def test_build_context(self, session: SessionManager):
        session.add_message("user", "hello")
        session.add_message("assistant", "hi")
        assert session.build_context() == (
            "## Current session\n\n### User\nhello\n\n### Assistant\nhi\n\n"
        )

    def test_build_context_drops_oldest(self, session: SessionManager):
        for i in range(6):
            session.add_message("user", f"message {i} " + "x" * 60)
        text = session.build_context(max_tokens=60)
        assert estimate_tokens(text) <= 60
        assert "message 5" in text
        assert "message 0" not in text

    def test_build_context_empty(self, session: SessionManager):
        assert session.build_context() == ""
        session.add_message("user", "y" * 300)
        assert session.build_context(max_tokens=10) == ""
