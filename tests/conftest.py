"""Shared fixtures: every backend variant, plus a session factory."""

import pytest

from chat_sessions.backends import create_backend
from chat_sessions.models import Session

BACKEND_VARIANTS = ["filesystem", "sqlite", "sqlite-nofts", "memory"]


def make_backend(kind: str, tmp_path):
    if kind == "filesystem":
        return create_backend("filesystem", {"base_dir": str(tmp_path / "sessions")})
    if kind == "sqlite":
        return create_backend("sqlite", {"path": str(tmp_path / "sessions.db"), "user_id": "tester"})
    if kind == "sqlite-nofts":
        return create_backend(
            "sqlite", {"path": str(tmp_path / "plain.db"), "user_id": "tester", "fts": False}
        )
    return create_backend("memory", {})


@pytest.fixture(params=BACKEND_VARIANTS)
def backend(request, tmp_path):
    b = make_backend(request.param, tmp_path)
    yield b
    b.close()


@pytest.fixture
def memory_backend():
    b = create_backend("memory", {})
    yield b
    b.close()


@pytest.fixture
def make_session(backend):
    """Create, populate and save a session in the parametrized backend."""

    def _make(name="", messages=(), tags=(), system_prompt="", save=True) -> Session:
        session = backend.new_session(name)
        for role, content in messages:
            session.conversation.add_message(role, content)
        for tag in tags:
            session.add_tag(tag)
        session.conversation.system_prompt = system_prompt
        if save:
            backend.save_session(session)
        return session

    return _make
