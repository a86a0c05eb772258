"""Branch creation and branch-tree traversal.

Branch links are stored as IDs on both ends (``parent_id`` on the child,
``child_ids`` on the parent). Trees are rebuilt from storage on every query;
nothing here caches them.
"""

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Callable

from .errors import NotFoundError, SessionStoreError, ValidationError
from .models import BranchTree, Conversation, Session

if TYPE_CHECKING:
    from .backends.base import StorageBackend

logger = logging.getLogger(__name__)

Loader = Callable[[str], Session]


def create_branch(parent: Session, new_id: str, name: str, at_index: int) -> Session:
    """Fork ``parent`` at ``at_index`` into a new, unsaved session.

    The branch gets copies of ``parent.messages[:at_index]`` with fresh
    message IDs plus the parent's tags, config and model settings.
    ``new_id`` is registered in ``parent.child_ids``; saving both sessions
    is up to the caller.
    """
    count = len(parent.messages)
    if not 0 <= at_index <= count:
        raise ValidationError(
            f"Branch point {at_index} out of range (session has {count} messages)",
            field="at_index",
        )

    now = datetime.now()
    source = parent.conversation
    conversation = Conversation(
        id=new_id,
        messages=[m.clone(new_id=True) for m in source.messages[:at_index]],
        system_prompt=source.system_prompt,
        model=source.model,
        provider=source.provider,
        temperature=source.temperature,
        max_tokens=source.max_tokens,
        created=now,
        updated=now,
    )
    branch = Session(
        id=new_id,
        name=name,
        conversation=conversation,
        config=dict(parent.config),
        created=now,
        updated=now,
        tags=list(parent.tags),
        parent_id=parent.id,
        branch_name=name,
        branch_point=at_index,
    )
    parent.add_child(new_id)
    return branch


def build_branch_tree(load: Loader, root_id: str) -> BranchTree:
    """Load ``root_id`` and, recursively, every child that can still be loaded.

    The root must exist (NotFoundError propagates). Missing or unreadable
    children are skipped. A session reachable twice is only expanded once,
    so cycles in stored data cannot cause infinite recursion.
    """
    visited: set[str] = set()

    def build(session: Session) -> BranchTree:
        visited.add(session.id)
        node = BranchTree(session=session.to_info())
        for child_id in session.child_ids:
            if child_id in visited:
                logger.warning(f"Branch cycle: {child_id} already in tree of {root_id}")
                continue
            try:
                child = load(child_id)
            except SessionStoreError as exc:
                logger.warning(f"Skipping child {child_id} of {session.id}: {exc.message}")
                continue
            node.children.append(build(child))
        return node

    return build(load(root_id))


def find_root(load: Loader, session_id: str) -> Session:
    """Follow ``parent_id`` links up to the root session.

    Stops at the last session that can be loaded if a parent is missing.
    """
    session = load(session_id)
    seen = {session.id}
    while session.parent_id and session.parent_id not in seen:
        try:
            parent = load(session.parent_id)
        except NotFoundError:
            logger.warning(f"Parent {session.parent_id} of {session.id} is missing")
            break
        seen.add(parent.id)
        session = parent
    return session


def repair_branch_links(backend: "StorageBackend") -> list[tuple[str, str]]:
    """Re-register children whose parent lost track of them.

    A crash between saving a branch and saving its parent leaves the branch
    pointing at a parent that does not list it. Returns the repaired
    ``(parent_id, child_id)`` pairs.
    """
    sessions = {s.id: s for s in backend.iter_sessions()}
    repaired: list[tuple[str, str]] = []
    dirty: dict[str, Session] = {}

    for session in sessions.values():
        if not session.parent_id:
            continue
        parent = sessions.get(session.parent_id)
        if parent is None:
            logger.warning(f"Branch {session.id} points at missing parent {session.parent_id}")
            continue
        if session.id not in parent.child_ids:
            parent.add_child(session.id)
            dirty[parent.id] = parent
            repaired.append((parent.id, session.id))

    if dirty:
        backend.save_sessions(list(dirty.values()))
        logger.info(f"Repaired {len(repaired)} branch links")
    return repaired
