"""Session export writers (JSON and Markdown)."""

import json
from datetime import datetime
from typing import TextIO

from .models import ExportFormat, Session


def _ts(value: datetime) -> str:
    return value.isoformat(timespec="seconds")


def export_json(session: Session, sink: TextIO) -> None:
    json.dump(session.to_dict(), sink, indent=2, ensure_ascii=False)
    sink.write("\n")


def export_markdown(session: Session, sink: TextIO) -> None:
    conversation = session.conversation
    lines = [
        f"# Session: {session.name}",
        "",
        f"**ID:** {session.id}",
        f"**Created:** {_ts(session.created)}",
        f"**Updated:** {_ts(session.updated)}",
    ]
    if session.tags:
        lines.append(f"**Tags:** {', '.join(session.tags)}")
    if conversation.model:
        lines.append(f"**Model:** {conversation.model}")
    if session.is_branch:
        branch = session.branch_name or session.id
        lines.append(f"**Branch:** {branch} (from {session.parent_id} at message {session.branch_point})")
    if session.child_ids:
        lines.append(f"**Branches:** {', '.join(session.child_ids)}")
    lines.append("")

    if conversation.system_prompt:
        lines += ["## System Prompt", "", conversation.system_prompt, ""]

    lines += ["## Conversation", ""]
    for msg in conversation.messages:
        lines += [f"### {msg.role.capitalize()}", "", f"*{_ts(msg.timestamp)}*", "", msg.content, ""]
        if msg.attachments:
            lines.append("**Attachments:**")
            for att in msg.attachments:
                lines.append(f"- {att.display_name} ({att.mime_type or att.type})")
            lines.append("")

    sink.write("\n".join(lines))


WRITERS = {
    ExportFormat.JSON: export_json,
    ExportFormat.MARKDOWN: export_markdown,
}


def write_session(session: Session, fmt: "str | ExportFormat", sink: TextIO) -> None:
    """Write ``session`` to ``sink``; ValidationError for unknown formats."""
    WRITERS[ExportFormat.parse(fmt)](session, sink)
