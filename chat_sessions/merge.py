"""Merging one session's messages into another."""

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from .branching import create_branch
from .errors import ValidationError
from .models import Message, MergeOptions, MergeResult, MergeType, Session
from .utils import generate_session_id

if TYPE_CHECKING:
    from .backends.base import StorageBackend

logger = logging.getLogger(__name__)


def source_tail(source: Session) -> list[Message]:
    """Messages unique to ``source``: past its branch point if it is a branch."""
    if source.is_branch:
        return source.messages[source.branch_point:]
    return list(source.messages)


def plan_merge(target: Session, source: Session, options: MergeOptions) -> tuple[int, list[Message]]:
    """Return ``(keep, appended)``: keep ``target.messages[:keep]`` then append copies.

    Pure; raises ValidationError for an out-of-range rebase point.
    """
    merge_type = MergeType.parse(options.type)
    count = len(target.messages)

    if merge_type is MergeType.CONTINUATION:
        keep, incoming = count, list(source.messages)
    else:
        keep = count if options.merge_point is None else options.merge_point
        if not 0 <= keep <= count:
            raise ValidationError(
                f"Merge point {keep} out of range (target has {count} messages)",
                field="merge_point",
            )
        incoming = source_tail(source)

    return keep, [m.clone(new_id=True) for m in incoming]


def merge_sessions(
    backend: "StorageBackend",
    target_id: str,
    source_id: str,
    options: MergeOptions | None = None,
) -> MergeResult:
    """Merge ``source_id`` into ``target_id`` (or into a new branch of it).

    Arguments are validated before anything is loaded; a missing endpoint
    raises NotFoundError before anything is written.
    """
    options = options or MergeOptions()
    merge_type = MergeType.parse(options.type)
    if target_id == source_id:
        raise ValidationError("Cannot merge a session into itself", field="source_id")

    target = backend.load_session(target_id)
    source = backend.load_session(source_id)

    keep, appended = plan_merge(target, source, options)
    result = MergeResult(target_id=target_id, source_id=source_id, merged_count=len(appended))

    if options.create_branch:
        name = options.branch_name or f"Merge of {source.name or source.id}"
        merged = create_branch(target, generate_session_id(), name, keep)
        merged.conversation.messages.extend(appended)
        merged.metadata.update({
            "merge_source": source_id,
            "merge_target": target_id,
            "merge_type": merge_type.value,
        })
        backend.save_sessions([merged, target])
        result.new_branch_id = merged.id
    else:
        conversation = target.conversation
        conversation.messages = conversation.messages[:keep] + appended
        conversation.updated = datetime.now()
        backend.save_session(target)

    logger.info(
        f"Merged {source_id} into {result.new_branch_id or target_id} "
        f"({merge_type.value}, {result.merged_count} messages)"
    )
    return result
