"""Contract tests run against every storage backend."""

import io
import json
import re
import time

import pytest

from chat_sessions.errors import NotFoundError, ValidationError
from chat_sessions.models import Attachment

SESSION_ID_RE = re.compile(r"^\d{8}-\d{6}-\d{6}-[0-9a-f]{8}$")


class TestLifecycle:
    """Tests for create/save/load/list/delete."""

    def test_new_session_not_persisted(self, backend):
        """Test new_session returns a fresh unsaved session."""
        session = backend.new_session("Draft")
        assert SESSION_ID_RE.match(session.id)
        assert session.name == "Draft"
        assert session.messages == []
        with pytest.raises(NotFoundError):
            backend.load_session(session.id)

    def test_new_session_ids_unique(self, backend):
        """Test IDs generated back to back differ."""
        ids = {backend.new_session().id for _ in range(50)}
        assert len(ids) == 50

    def test_round_trip(self, backend):
        """Test a saved session loads back with identical content."""
        session = backend.new_session("Round trip")
        session.conversation.system_prompt = "You are terse."
        session.conversation.model = "gpt-4"
        session.conversation.provider = "openai"
        session.conversation.temperature = 0.3
        session.conversation.add_message("user", "Hello")
        session.conversation.add_message(
            "assistant",
            "Hi there",
            attachments=[Attachment(type="file", name="notes.txt", mime_type="text/plain", size=12)],
        )
        session.conversation.add_message("system", "context note")
        session.add_tag("demo")
        session.add_tag("test")
        session.config = {"stream": True}
        session.metadata = {"origin": "cli"}
        backend.save_session(session)

        loaded = backend.load_session(session.id)
        assert loaded == session
        assert [m.role for m in loaded.messages] == ["user", "assistant", "system"]
        assert loaded.messages[1].attachments[0].name == "notes.txt"

    def test_save_refreshes_updated(self, backend):
        """Test saving moves the updated timestamp forward."""
        session = backend.new_session("x")
        before = session.updated
        time.sleep(0.002)
        backend.save_session(session)
        assert backend.load_session(session.id).updated > before

    def test_save_overwrites(self, backend):
        """Test saving twice keeps only the latest version."""
        session = backend.new_session("v1")
        session.conversation.add_message("user", "one")
        backend.save_session(session)

        session.name = "v2"
        session.conversation.add_message("assistant", "two")
        backend.save_session(session)

        loaded = backend.load_session(session.id)
        assert loaded.name == "v2"
        assert [m.content for m in loaded.messages] == ["one", "two"]
        assert len(backend.list_sessions()) == 1

    def test_load_missing(self, backend):
        """Test loading an unknown ID raises NotFoundError."""
        with pytest.raises(NotFoundError) as excinfo:
            backend.load_session("20200101-000000-000000-deadbeef")
        assert excinfo.value.identifier == "20200101-000000-000000-deadbeef"

    def test_delete(self, backend, make_session):
        """Test deleted sessions disappear and a second delete fails."""
        session = make_session("doomed", messages=[("user", "bye")])
        backend.delete_session(session.id)
        with pytest.raises(NotFoundError):
            backend.load_session(session.id)
        with pytest.raises(NotFoundError):
            backend.delete_session(session.id)

    def test_list_sorted_by_updated(self, backend, make_session):
        """Test listing returns most recently updated first."""
        first = make_session("first", messages=[("user", "a")])
        time.sleep(0.002)
        second = make_session("second")
        time.sleep(0.002)
        backend.save_session(first)

        infos = backend.list_sessions()
        assert [i.id for i in infos] == [first.id, second.id]
        assert infos[0].message_count == 1
        assert infos[1].message_count == 0

    def test_list_empty(self, backend):
        """Test an empty store lists nothing."""
        assert backend.list_sessions() == []

    def test_save_sessions(self, backend):
        """Test save_sessions persists every session."""
        a = backend.new_session("a")
        b = backend.new_session("b")
        backend.save_sessions([a, b])
        assert {i.id for i in backend.list_sessions()} == {a.id, b.id}

    def test_context_manager(self, backend):
        """Test backends can be used in a with block."""
        with backend as b:
            assert b is backend


class TestExport:
    """Tests for export_session."""

    def test_export_json(self, backend, make_session):
        """Test JSON export is the full session document."""
        session = make_session("Export me", messages=[("user", "Hello"), ("assistant", "Hi")])
        sink = io.StringIO()
        backend.export_session(session.id, "json", sink)
        data = json.loads(sink.getvalue())
        assert data["id"] == session.id
        assert data["name"] == "Export me"
        assert [m["content"] for m in data["conversation"]["messages"]] == ["Hello", "Hi"]

    def test_export_markdown(self, backend, make_session):
        """Test Markdown export layout."""
        session = make_session(
            "Notes",
            messages=[("user", "What is 2+2?"), ("assistant", "4")],
            tags=["math"],
            system_prompt="Answer briefly.",
        )
        sink = io.StringIO()
        backend.export_session(session.id, "markdown", sink)
        text = sink.getvalue()
        assert text.startswith("# Session: Notes")
        assert f"**ID:** {session.id}" in text
        assert "**Tags:** math" in text
        assert "## System Prompt\n\nAnswer briefly." in text
        assert text.index("### User") < text.index("What is 2+2?") < text.index("### Assistant")

    def test_export_markdown_attachments(self, backend):
        """Test attachments are listed under their message."""
        session = backend.new_session("files")
        session.conversation.add_message(
            "user", "see attached", attachments=[Attachment(type="image", mime_type="image/png")]
        )
        backend.save_session(session)
        sink = io.StringIO()
        backend.export_session(session.id, "markdown", sink)
        assert "**Attachments:**\n- image_attachment (image/png)" in sink.getvalue()

    def test_export_unknown_format(self, backend, make_session):
        """Test unsupported formats raise ValidationError."""
        session = make_session("x")
        with pytest.raises(ValidationError):
            backend.export_session(session.id, "pdf", io.StringIO())

    def test_export_missing_session(self, backend):
        """Test exporting an unknown session raises NotFoundError."""
        with pytest.raises(NotFoundError):
            backend.export_session("nope", "json", io.StringIO())


class TestBranchQueries:
    """Tests for get_children and get_branch_tree."""

    def test_children_in_order_and_missing_skipped(self, backend, make_session):
        """Test children keep creation order and missing ones are skipped."""
        parent = make_session("parent", messages=[("user", "hi")])
        kids = []
        for name in ("one", "two"):
            child = make_session(name)
            child.parent_id = parent.id
            backend.save_session(child)
            parent.add_child(child.id)
            kids.append(child)
        parent.add_child("20200101-000000-000000-00000000")
        backend.save_session(parent)

        children = backend.get_children(parent.id)
        assert [c.id for c in children] == [k.id for k in kids]

    def test_children_of_missing_session(self, backend):
        """Test get_children on an unknown session raises NotFoundError."""
        with pytest.raises(NotFoundError):
            backend.get_children("nope")

    def test_branch_tree(self, backend, make_session):
        """Test a two-level tree is rebuilt from storage."""
        root = make_session("root")
        child = make_session("child")
        grandchild = make_session("grandchild")
        child.parent_id = root.id
        grandchild.parent_id = child.id
        root.add_child(child.id)
        child.add_child(grandchild.id)
        backend.save_sessions([grandchild, child, root])

        tree = backend.get_branch_tree(root.id)
        assert [(d, n.session.id) for d, n in tree.walk()] == [
            (0, root.id), (1, child.id), (2, grandchild.id),
        ]


class TestSearchContract:
    """Tests for search_sessions semantics shared by all backends."""

    def test_empty_query(self, backend, make_session):
        """Test an empty query returns nothing."""
        make_session("anything", messages=[("user", "text")])
        assert backend.search_sessions("") == []

    def test_completeness(self, backend, make_session):
        """Test every session whose message contains the query is found."""
        hits = [
            make_session("a", messages=[("user", "Deploy the KUBERNETES cluster")]),
            make_session("b", messages=[("assistant", "ok"), ("user", "kubernetes again")]),
        ]
        make_session("c", messages=[("user", "nothing relevant")])

        results = backend.search_sessions("kubernetes")
        assert {r.session_id for r in results} == {s.id for s in hits}

        by_id = {r.session_id: r for r in results}
        match = by_id[hits[1].id].matches[0]
        assert match.type == "message"
        assert match.role == "user"
        assert match.position == 1
        assert match.context == "Message 2 (user)"
        assert match.content == "kubernetes again"

    @pytest.mark.parametrize(
        "content, query",
        [
            ("Ich esse ÄPFEL gern", "äp"),
            ("Ich esse ÄPFEL gern", "äpfel"),
            ("Straße und ÜBER", "über"),
            ("Notes from the Café", "CAFÉ"),
            ("Deploy GoLang services", "gO"),
        ],
    )
    def test_completeness_non_ascii(self, backend, make_session, content, query):
        """Test case folding covers non-ASCII letters and short mixed-case queries."""
        hit = make_session("hit", messages=[("user", content)])
        make_session("miss", messages=[("user", "plain text")])

        results = backend.search_sessions(query)
        assert [r.session_id for r in results] == [hit.id]
        assert results[0].matches[0].type == "message"

    def test_short_query(self, backend, make_session):
        """Test queries shorter than an index token still match."""
        session = make_session("a", messages=[("user", "go is fun")])
        results = backend.search_sessions("go")
        assert [r.session_id for r in results] == [session.id]

    def test_match_order_within_session(self, backend, make_session):
        """Test prompt, message, name and tag matches are grouped per session in order."""
        session = make_session(
            "python notes",
            messages=[("user", "I like python"), ("assistant", "python is nice")],
            tags=["python", "misc"],
            system_prompt="You know python well.",
        )
        results = backend.search_sessions("Python")
        assert len(results) == 1
        result = results[0]
        assert result.session_id == session.id
        assert [m.type for m in result.matches] == [
            "system_prompt", "message", "message", "name", "tag",
        ]
        assert [m.position for m in result.matches_of_type("message")] == [0, 1]
        assert result.match_count == 5

    def test_metadata_only_match(self, backend, make_session):
        """Test a session matching only by tag is returned."""
        session = make_session("unrelated", messages=[("user", "hello")], tags=["release-notes"])
        results = backend.search_sessions("release")
        assert len(results) == 1
        assert results[0].session_id == session.id
        assert results[0].matches[0].type == "tag"

    def test_long_message_snippet(self, backend, make_session):
        """Test long messages produce a truncated snippet around the hit."""
        content = " ".join(["filler"] * 40) + " needle " + " ".join(["padding"] * 40)
        make_session("long", messages=[("user", content)])
        results = backend.search_sessions("needle")
        snippet = results[0].matches[0].content
        assert "needle" in snippet
        assert snippet.startswith("...")
        assert snippet.endswith("...")
        assert len(snippet) < len(content)
