"""Tests for search functionality."""

from datetime import datetime, timedelta

import pytest

from chat_sessions.models import Session
from chat_sessions.search import (
    CONTEXT_RADIUS,
    SearchEngine,
    extract_snippet,
    parse_date_value,
    parse_search_query,
    search_session,
    search_sessions,
    snippet_window,
)


class TestQueryParsing:
    """Tests for search query parsing."""

    def test_simple_query(self):
        """Test parsing a simple query with no modifiers."""
        query, filters = parse_search_query("authentication")
        assert query == "authentication"
        assert filters == {}

    def test_tag_modifier(self):
        """Test parsing tag: modifier."""
        query, filters = parse_search_query("tag:work deadline")
        assert query == "deadline"
        assert filters["tag"] == "work"

    def test_model_modifier(self):
        """Test parsing model: modifier."""
        query, filters = parse_search_query("model:GPT-4 JWT")
        assert query == "JWT"
        assert filters["model"] == "gpt-4"

    def test_branch_modifier(self):
        """Test parsing branch: modifier."""
        _, filters = parse_search_query("branch:yes x")
        assert filters["branch"] is True
        _, filters = parse_search_query("branch:no x")
        assert filters["branch"] is False

    def test_date_modifiers(self):
        """Test parsing date modifiers."""
        query, filters = parse_search_query("after:7d before:1d auth")
        assert query == "auth"
        assert "after" in filters
        assert "before" in filters


class TestDateParsing:
    """Tests for date value parsing."""

    def test_relative_days(self):
        """Test parsing relative day values."""
        result = parse_date_value("7d")
        expected = datetime.now() - timedelta(days=7)
        assert abs((result - expected).total_seconds()) < 60

    def test_relative_hours(self):
        """Test parsing relative hour values."""
        result = parse_date_value("24h")
        expected = datetime.now() - timedelta(hours=24)
        assert abs((result - expected).total_seconds()) < 60

    def test_iso_date(self):
        """Test parsing ISO date format."""
        assert parse_date_value("2024-01-15") == datetime(2024, 1, 15)

    def test_slash_date(self):
        """Test parsing slash-separated dates."""
        assert parse_date_value("2024/01/15") == datetime(2024, 1, 15)

    def test_invalid_date(self):
        """Test invalid values return None."""
        assert parse_date_value("not-a-date") is None


class TestSnippets:
    """Tests for snippet extraction."""

    def test_short_text_returned_whole(self):
        """Test text shorter than the radius has no ellipsis."""
        assert extract_snippet("Hello world", "world") == "Hello world"

    def test_no_match(self):
        """Test a missing query gives an empty snippet."""
        assert extract_snippet("Hello world", "xyz") == ""

    def test_case_insensitive(self):
        """Test the query is located regardless of case."""
        assert extract_snippet("Hello World", "WORLD") == "Hello World"

    def test_truncated_both_sides(self):
        """Test long text gets ellipses and whole words at both ends."""
        words = [f"w{i:03d}" for i in range(60)]
        text = " ".join(words[:30] + ["TARGET"] + words[30:])
        snippet = extract_snippet(text, "target")

        assert snippet.startswith("...")
        assert snippet.endswith("...")
        inner = snippet[3:-3]
        assert "TARGET" in inner
        # every piece is a whole word from the source
        assert all(piece in text.split() for piece in inner.split())
        assert len(inner) <= 2 * CONTEXT_RADIUS + len("TARGET") + 2 * len("w000 ") + 1

    def test_window_extends_one_extra_word(self):
        """Test the end is pushed past the current word plus one more."""
        text = "a" * 10 + " hit " + "bbbb cccc dddd"
        snippet = snippet_window(text, 11, 14, radius=0)
        assert snippet == "...hit bbbb..."

    def test_match_at_start(self):
        """Test no leading ellipsis when the hit is at the start."""
        text = "needle " + "x " * 100
        assert not extract_snippet(text, "needle").startswith("...")


class TestSearchSession:
    """Tests for the linear scan of a single session."""

    @pytest.fixture
    def session(self):
        session = Session(id="s1", name="Database notes", tags=["db", "postgres"])
        session.conversation.system_prompt = "You are a database expert."
        session.conversation.add_message("user", "How do I index a postgres table?")
        session.conversation.add_message("assistant", "Use CREATE INDEX.")
        return session

    def test_no_match_returns_none(self, session):
        """Test sessions without hits produce no result."""
        assert search_session(session, "kubernetes") is None

    def test_empty_query(self, session):
        """Test an empty query never matches."""
        assert search_session(session, "") is None
        assert search_sessions([session], "") == []

    def test_labels(self, session):
        """Test match context labels."""
        result = search_session(session, "index")
        assert [m.context for m in result.matches] == ["Message 1 (user)", "Message 2 (assistant)"]

    def test_all_fields(self, session):
        """Test system prompt, name and tag matches are included in order."""
        result = search_session(session, "database")
        assert [m.type for m in result.matches] == ["system_prompt", "name"]
        result = search_session(session, "postgres")
        assert [m.type for m in result.matches] == ["message", "tag"]
        assert result.matches_of_type("tag")[0].content == "postgres"
        assert result.matches_of_type("tag")[0].position == -1


class TestSearchEngine:
    """Tests for filtering on top of backend search."""

    @pytest.fixture
    def engine(self, memory_backend):
        work = memory_backend.new_session("work chat")
        work.add_tag("work")
        work.conversation.model = "gpt-4"
        work.conversation.add_message("user", "release checklist")
        memory_backend.save_session(work)

        home = memory_backend.new_session("home chat")
        home.conversation.model = "claude-3"
        home.conversation.add_message("user", "release the hounds")
        home.parent_id = work.id
        memory_backend.save_session(home)
        return SearchEngine(memory_backend)

    def test_unfiltered(self, engine):
        """Test plain queries return every match."""
        assert len(engine.search("release")) == 2

    def test_tag_filter(self, engine):
        """Test tag: restricts to tagged sessions."""
        results = engine.search("tag:work release")
        assert [r.session.name for r in results] == ["work chat"]

    def test_model_filter(self, engine):
        """Test model filter is a case-insensitive substring."""
        results = engine.search("release", model="CLAUDE")
        assert [r.session.name for r in results] == ["home chat"]

    def test_branch_filter(self, engine):
        """Test branch: separates branches from roots."""
        assert [r.session.name for r in engine.search("branch:yes release")] == ["home chat"]
        assert [r.session.name for r in engine.search("branch:no release")] == ["work chat"]

    def test_date_filter(self, engine):
        """Test after: with a future cutoff removes everything."""
        future = (datetime.now() + timedelta(days=1)).strftime("%Y-%m-%d")
        assert engine.search(f"after:{future} release") == []

    def test_modifiers_only(self, engine):
        """Test filters alone do not search."""
        assert engine.search("tag:work") == []

    def test_rank(self, engine):
        """Test rank orders by match count."""
        results = engine.rank(engine.search("chat"))
        assert all(r.match_count == 1 for r in results)
