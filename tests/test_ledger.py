"""Tests for the session ledger and session titles."""
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock

import orjson
import pytest

from chronos_rag.errors import SessionNotFound
from chronos_rag.sessions.ledger import SessionLedger, SourceReference
from chronos_rag.sessions.titles import fallback_title, generate_session_title


class MutableClock:
    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock(now):
    return MutableClock(now)


@pytest.fixture
def ledger(clock):
    return SessionLedger(clock=clock)


def _ref(source_id, title="Closures Explained", start=30.0):
    return SourceReference(source_id=source_id, source_title=title, start_seconds=start)


class TestSessions:
    def test_reuses_session_within_a_day(self, ledger, clock):
        first = ledger.get_or_create_session("student-1", "creator-1")
        ledger.add_message(first.session_id, "user", "hi")
        clock.advance(hours=23)

        assert ledger.get_or_create_session("student-1", "creator-1").session_id == first.session_id

    def test_new_session_after_a_day_of_inactivity(self, ledger, clock):
        first = ledger.get_or_create_session("student-1", "creator-1")
        clock.advance(hours=24)

        second = ledger.get_or_create_session("student-1", "creator-1")

        assert second.session_id != first.session_id
        assert len(ledger) == 2

    def test_sessions_are_per_student_and_creator(self, ledger):
        a = ledger.get_or_create_session("student-1", "creator-1")
        b = ledger.get_or_create_session("student-1", "creator-2")
        c = ledger.get_or_create_session("student-2", "creator-1")

        assert len({a.session_id, b.session_id, c.session_id}) == 3

    def test_archived_sessions_are_not_resumed(self, ledger):
        first = ledger.get_or_create_session("student-1", "creator-1")
        ledger.archive_session(first.session_id)

        assert ledger.get_or_create_session("student-1", "creator-1").session_id != first.session_id

    def test_list_sessions_newest_activity_first(self, ledger, clock):
        old = ledger.create_session("student-1", "creator-1")
        clock.advance(minutes=5)
        new = ledger.create_session("student-1", "creator-1")
        clock.advance(minutes=5)
        ledger.add_message(old.session_id, "user", "still here")
        ledger.archive_session(new.session_id)

        assert [s.session_id for s in ledger.list_sessions("student-1")] == [old.session_id]
        assert [s.session_id for s in ledger.list_sessions("student-1", include_archived=True)] == [
            old.session_id,
            new.session_id,
        ]

    def test_title_and_delete(self, ledger):
        session = ledger.create_session("student-1", "creator-1")
        ledger.set_title(session.session_id, "Python Closures")

        assert ledger.get_session(session.session_id).title == "Python Closures"
        assert ledger.delete_session(session.session_id) is True
        assert ledger.delete_session(session.session_id) is False
        assert ledger.get_session(session.session_id) is None

    def test_unknown_session(self, ledger):
        with pytest.raises(SessionNotFound):
            ledger.add_message("missing", "user", "hello")
        with pytest.raises(KeyError):
            ledger.set_title("missing", "x")


class TestMessages:
    def test_cost_derived_from_tokens(self, ledger):
        session = ledger.create_session("student-1", "creator-1")

        message = ledger.add_message(
            session.session_id, "assistant", "answer",
            input_tokens=1_000_000, output_tokens=0, model="claude-sonnet-4-6",
        )

        assert message.cost_usd == pytest.approx(3.0)

    def test_explicit_cost_wins(self, ledger):
        session = ledger.create_session("student-1", "creator-1")
        message = ledger.add_message(
            session.session_id, "assistant", "answer",
            input_tokens=100, output_tokens=100, model="claude-sonnet-4-6", cost_usd=0.5,
        )
        assert message.cost_usd == 0.5

    def test_recent_turns_oldest_first(self, ledger):
        session = ledger.create_session("student-1", "creator-1")
        for i in range(6):
            ledger.add_message(session.session_id, "user" if i % 2 == 0 else "assistant", f"m{i}")

        turns = ledger.recent_turns(session.session_id, limit=3)

        assert [t.content for t in turns] == ["m3", "m4", "m5"]
        assert turns[0].role == "assistant"
        assert ledger.recent_turns(session.session_id, limit=0) == []

    def test_recent_interactions_feed_affinity(self, ledger, clock):
        session = ledger.create_session("student-1", "creator-1")
        ledger.add_message(session.session_id, "user", "q1", source_refs=[_ref("vid-a")])
        first = ledger.add_message(session.session_id, "assistant", "a1", source_refs=[_ref("vid-a")])
        clock.advance(hours=1)
        ledger.add_message(session.session_id, "assistant", "a2", source_refs=[_ref("vid-b")])
        second = ledger.add_message(session.session_id, "assistant", "a3", source_refs=[_ref("vid-a")])
        other = ledger.create_session("student-2", "creator-1")
        ledger.add_message(other.session_id, "assistant", "x", source_refs=[_ref("vid-a")])

        stamps = ledger.recent_interactions("student-1", "vid-a")

        assert stamps == [second.created_at, first.created_at]
        assert ledger.recent_interactions("student-1", "vid-a", limit=1) == [second.created_at]


class TestAnalytics:
    def test_session_analytics(self, ledger, clock):
        session = ledger.create_session("student-1", "creator-1")
        ledger.add_message(session.session_id, "user", "q1")
        clock.advance(seconds=2)
        ledger.add_message(
            session.session_id, "assistant", "a1",
            source_refs=[_ref("vid-a"), _ref("vid-b", "Decorators")],
            input_tokens=1000, output_tokens=200, cost_usd=0.01,
        )
        clock.advance(minutes=3)
        ledger.add_message(session.session_id, "user", "q2")
        clock.advance(seconds=4)
        ledger.add_message(
            session.session_id, "assistant", "a2",
            source_refs=[_ref("vid-a")], input_tokens=500, output_tokens=100, cost_usd=0.02,
        )

        stats = ledger.session_analytics(session.session_id)

        assert stats.message_count == 4
        assert (stats.user_messages, stats.assistant_messages) == (2, 2)
        assert stats.total_tokens == 1800
        assert stats.total_cost == pytest.approx(0.03)
        assert stats.sources_referenced == 2
        assert stats.avg_response_time_ms == pytest.approx(3000.0)
        assert stats.duration_minutes == pytest.approx(3.1)
        assert stats.most_referenced_sources[0] == {
            "source_id": "vid-a",
            "source_title": "Closures Explained",
            "reference_count": 2,
        }

    def test_empty_session(self, ledger):
        session = ledger.create_session("student-1", "creator-1")
        stats = ledger.session_analytics(session.session_id)

        assert stats.message_count == 0
        assert stats.avg_response_time_ms is None
        assert stats.duration_minutes == 0.0


class TestStudentCost:
    def test_only_recent_sessions_count(self, ledger, clock):
        old = ledger.create_session("student-1", "creator-1")
        ledger.add_message(old.session_id, "assistant", "old", input_tokens=1_000_000, model="claude-sonnet-4-6")
        clock.advance(days=40)

        fresh = ledger.create_session("student-1", "creator-2")
        ledger.add_message(fresh.session_id, "user", "q")
        ledger.add_message(fresh.session_id, "assistant", "a", input_tokens=1000, output_tokens=500,
                           model="claude-haiku-4-5-20251001")
        other = ledger.create_session("student-2", "creator-1")
        ledger.add_message(other.session_id, "user", "not mine")

        summary = ledger.student_cost("student-1", period_days=30)

        assert summary.total_sessions == 1
        assert summary.total_messages == 2
        assert summary.total_tokens == 1500
        assert summary.total_cost == pytest.approx((1000 * 0.8 + 500 * 4.0) / 1_000_000)
        assert summary.daily_avg_cost == pytest.approx(summary.total_cost / 30)


class TestExport:
    @pytest.fixture
    def session(self, ledger, clock):
        session = ledger.create_session("student-1", "creator-1", title="Closures")
        ledger.add_message(session.session_id, "user", "What is a closure?")
        clock.advance(minutes=2)
        ledger.add_message(
            session.session_id, "assistant", "A function that keeps its scope.",
            source_refs=[_ref("vid-a", start=125)],
        )
        return session

    def test_json_export(self, ledger, session):
        exported = ledger.export_session(session.session_id)

        assert exported["session"]["title"] == "Closures"
        assert "messages" not in exported["session"]
        assert [m["role"] for m in exported["messages"]] == ["user", "assistant"]
        assert exported["messages"][1]["source_refs"][0]["source_id"] == "vid-a"
        assert exported["analytics"]["message_count"] == 2
        assert exported["exported_at"] == "2026-10-01T12:02:00+00:00"
        orjson.dumps(exported)

    def test_markdown_export(self, ledger, session):
        markdown = ledger.export_session_markdown(session.session_id)

        assert markdown.startswith("# Closures\n")
        assert "**Created:** 2026-10-01 12:00 UTC" in markdown
        assert "**Messages:** 2" in markdown
        assert "**Duration:** 2 minutes" in markdown
        assert "### You (12:00:00)\n\nWhat is a closure?" in markdown
        assert "### Assistant (12:02:00)" in markdown
        assert "**Video References:**\n- Closures Explained at 2:05" in markdown
        assert markdown.rstrip().endswith("*Exported on 2026-10-01 12:02 UTC*")

    def test_untitled_session(self, ledger):
        session = ledger.create_session("student-1", "creator-1")
        assert ledger.export_session_markdown(session.session_id).startswith("# Chat Session\n")

    def test_unknown_session(self, ledger):
        with pytest.raises(SessionNotFound):
            ledger.export_session("missing")


class TestPersistence:
    def test_save_and_load(self, ledger, clock, tmp_path):
        session = ledger.create_session("student-1", "creator-1", title="Closures")
        ledger.add_message(session.session_id, "assistant", "a1", source_refs=[_ref("vid-a")])
        path = tmp_path / "sessions.json"

        ledger.save(path)
        loaded = SessionLedger.load(path, clock=clock)

        restored = loaded.get_session(session.session_id)
        assert restored.title == "Closures"
        assert restored.messages[0].source_refs[0].source_id == "vid-a"
        assert loaded.recent_interactions("student-1", "vid-a") == [clock.now]

    def test_missing_file_gives_empty_ledger_bound_to_path(self, tmp_path):
        path = tmp_path / "nested" / "sessions.json"
        ledger = SessionLedger.load(path)

        assert len(ledger) == 0
        ledger.create_session("student-1", "creator-1")
        ledger.save()
        assert path.exists()


class TestTitles:
    def _client(self, text):
        client = MagicMock()
        client.messages.create.return_value = SimpleNamespace(content=[SimpleNamespace(text=text)])
        return client

    def test_generated_title_is_unquoted(self, clock):
        title = generate_session_title("What is a closure?", client=self._client('"Understanding Python Closures"\n'))
        assert title == "Understanding Python Closures"

    def test_long_titles_are_capped(self):
        title = generate_session_title("q", client=self._client("word " * 30))
        assert len(title) <= 60

    def test_short_output_falls_back(self, clock):
        assert generate_session_title("q", client=self._client("''"), clock=clock) == "Chat from 2026-10-01"

    def test_api_error_falls_back(self, clock):
        client = MagicMock()
        client.messages.create.side_effect = RuntimeError("rate limited")

        assert generate_session_title("q", client=client, clock=clock) == "Chat from 2026-10-01"

    def test_fallback_format(self, now):
        assert fallback_title(now) == "Chat from 2026-10-01"
