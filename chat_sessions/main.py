#!/usr/bin/env python3
"""Chat Sessions - manage stored chat sessions.

Entry point for the CLI application.
"""

import argparse
import logging
import os
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from .config import BACKEND_ENV, DEFAULT_BACKEND, AutoRecoveryConfig, StorageConfig
from .errors import SessionStoreError
from .models import BranchTree, MergeOptions, MergeType

console = Console()
err_console = Console(stderr=True)


def _fmt_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M")


def build_manager(args):
    """Create a StorageManager from global CLI options."""
    from .manager import StorageManager

    backend = args.backend or os.environ.get(BACKEND_ENV, DEFAULT_BACKEND)
    options = {}
    if args.path:
        key = "base_dir" if backend == "filesystem" else "path"
        options[key] = args.path
    return StorageManager(StorageConfig(backend=backend, options=options))


def cmd_list(args):
    """List stored sessions."""
    with build_manager(args) as manager:
        sessions = manager.list_sessions()

    if not sessions:
        console.print("No sessions found.")
        return

    table = Table(title=f"{len(sessions)} sessions")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Msgs", justify="right")
    table.add_column("Updated")
    table.add_column("Tags", style="magenta")
    table.add_column("Branch", style="green")
    for info in sessions:
        branch = f"⑂ {info.branch_name or info.parent_id}" if info.is_branch else ""
        if info.child_count:
            branch = f"{branch} +{info.child_count}".strip()
        table.add_row(
            info.id,
            info.name or "(unnamed)",
            str(info.message_count),
            _fmt_time(info.updated),
            ", ".join(info.tags),
            branch,
        )
    console.print(table)


def cmd_show(args):
    """Show one session with its messages."""
    with build_manager(args) as manager:
        session = manager.load_session(args.session_id)

    console.print(Text(session.name or "(unnamed)", style="bold"))
    console.print(f"ID: {session.id}")
    console.print(f"Created: {_fmt_time(session.created)}  Updated: {_fmt_time(session.updated)}")
    if session.conversation.model:
        console.print(f"Model: {session.conversation.model} ({session.conversation.provider})")
    if session.tags:
        console.print(f"Tags: {', '.join(session.tags)}")
    if session.is_branch:
        console.print(f"Branch of {session.parent_id} at message {session.branch_point}")
    if session.conversation.system_prompt:
        console.print(Text(f"\nSystem: {session.conversation.system_prompt}", style="dim"))

    role_styles = {"user": "bold blue", "assistant": "bold green", "system": "bold yellow"}
    for idx, msg in enumerate(session.messages, 1):
        console.print(Text(f"\n[{idx}] {msg.role}", style=role_styles.get(msg.role, "bold")))
        console.print(msg.content, markup=False)
        for att in msg.attachments:
            console.print(f"  📎 {att.display_name}", markup=False)


def cmd_new(args):
    """Create and save an empty session."""
    with build_manager(args) as manager:
        session = manager.new_session(args.name)
        for tag in args.tag or []:
            session.add_tag(tag)
        if args.system:
            session.conversation.system_prompt = args.system
        manager.save_session(session)
    console.print(session.id)


def cmd_delete(args):
    """Delete a session."""
    with build_manager(args) as manager:
        manager.delete_session(args.session_id)
    console.print(f"Deleted {args.session_id}")


def cmd_search(args):
    """Search sessions from CLI."""
    from .search import SearchEngine, parse_search_query

    with build_manager(args) as manager:
        engine = SearchEngine(manager.backend)
        results = engine.search(args.query, tag=args.tag)

    if not results:
        console.print(f"No matches found for: {args.query}")
        return

    console.print(f"Found {len(results)} sessions:\n")
    clean_query, _ = parse_search_query(args.query)
    terms = [clean_query]
    for result in results[: args.limit]:
        info = result.session
        console.print(Text(f"{info.name or '(unnamed)'}  [{info.id}]", style="bold cyan"))
        for match in result.matches:
            line = Text(f"  {match.context}: ", style="dim")
            snippet = Text(match.content.replace("\n", " "))
            snippet.highlight_words(terms, style="bold yellow", case_sensitive=False)
            line.append_text(snippet)
            console.print(line)
        console.print()


def cmd_export(args):
    """Export a session as JSON or Markdown."""
    with build_manager(args) as manager:
        if args.output:
            with open(args.output, "w", encoding="utf-8") as f:
                manager.export_session(args.session_id, args.format, f)
            err_console.print(f"Exported {args.session_id} to {args.output}")
        else:
            manager.export_session(args.session_id, args.format, sys.stdout)


def _add_tree_nodes(parent: Tree, node: BranchTree, highlight: str):
    for child in node.children:
        branch = parent.add(_tree_label(child, highlight))
        _add_tree_nodes(branch, child, highlight)


def _tree_label(node: BranchTree, highlight: str) -> Text:
    info = node.session
    label = Text(info.branch_name or info.name or "(unnamed)", style="bold" if info.id == highlight else "")
    label.append(f"  {info.id}", style="cyan")
    label.append(f"  {info.message_count} msgs", style="dim")
    return label


def cmd_tree(args):
    """Show the branch tree of a session."""
    with build_manager(args) as manager:
        if args.root:
            tree = manager.get_full_tree(args.session_id)
        else:
            tree = manager.get_branch_tree(args.session_id)

    root = Tree(_tree_label(tree, args.session_id))
    _add_tree_nodes(root, tree, args.session_id)
    console.print(root)


def cmd_branch(args):
    """Fork a session into a new branch."""
    with build_manager(args) as manager:
        parent = manager.load_session(args.session_id)
        branch = manager.create_branch(parent, args.name, args.at)
    console.print(f"Created branch {branch.id} at message {branch.branch_point}")


def cmd_merge(args):
    """Merge a source session into a target session."""
    options = MergeOptions(
        type=args.type,
        create_branch=args.create_branch,
        branch_name=args.branch_name or "",
        merge_point=args.merge_point,
    )
    with build_manager(args) as manager:
        result = manager.merge_sessions(args.target_id, args.source_id, options)

    into = result.new_branch_id or result.target_id
    console.print(f"Merged {result.merged_count} messages from {result.source_id} into {into}")


def cmd_repair(args):
    """Re-register branches missing from their parent's child list."""
    with build_manager(args) as manager:
        repaired = manager.repair_branch_links()
    if not repaired:
        console.print("All branch links are consistent.")
        return
    for parent_id, child_id in repaired:
        console.print(f"Linked {child_id} → {parent_id}")


def cmd_backends(args):
    """List registered storage backends."""
    from .backends import get_available_backends, get_backend_class

    current = args.backend or os.environ.get(BACKEND_ENV, DEFAULT_BACKEND)
    console.print("Available backends:")
    for name in get_available_backends():
        marker = "✓" if name == current else " "
        console.print(f"  {marker} {get_backend_class(name).display_name} ({name})")


def cmd_recover(args):
    """Inspect, restore or clear the crash-recovery snapshot."""
    from .recovery import AutoRecoveryManager

    config = AutoRecoveryConfig()
    if args.recovery_dir:
        config.recovery_directory = Path(args.recovery_dir).expanduser()

    with build_manager(args) as manager:
        recovery = AutoRecoveryManager(config, manager)

        if args.action == "clear":
            recovery.clear_recovery_state()
            console.print("Recovery state cleared.")
            return

        state = recovery.check_recovery()
        if state is None:
            console.print("No recent recovery state.")
            return

        if args.action == "check":
            console.print(f"Session: {state.session_name or '(unnamed)'} [{state.session_id}]")
            console.print(f"Saved: {_fmt_time(state.timestamp)} via {state.storage_backend}")
            backups = recovery.list_backups()
            if backups:
                console.print(f"Backups: {len(backups)}")
            return

        session = recovery.recover_session(state)
        recovery.clear_recovery_state()
        console.print(f"Recovered session {session.id} ({len(session.messages)} messages)")


def main():
    """Main entry point for chat-sessions CLI."""
    parser = argparse.ArgumentParser(
        description="Manage stored chat sessions, branches and recovery snapshots",
        prog="chat-sessions",
    )
    parser.add_argument(
        "--version", "-V",
        action="store_true",
        help="Show version"
    )
    parser.add_argument(
        "--backend", "-b",
        help=f"Storage backend (default: ${BACKEND_ENV} or {DEFAULT_BACKEND})"
    )
    parser.add_argument(
        "--path", "-p",
        help="Session directory (filesystem) or database file (sqlite)"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Debug logging"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("list", help="List sessions")

    show_parser = subparsers.add_parser("show", help="Show a session")
    show_parser.add_argument("session_id")

    new_parser = subparsers.add_parser("new", help="Create a session")
    new_parser.add_argument("name", nargs="?", default="")
    new_parser.add_argument("--tag", "-t", action="append", help="Tag (repeatable)")
    new_parser.add_argument("--system", "-s", help="System prompt")

    delete_parser = subparsers.add_parser("delete", help="Delete a session")
    delete_parser.add_argument("session_id")

    search_parser = subparsers.add_parser("search", help="Search sessions")
    search_parser.add_argument("query", help="Search query (supports tag:, model:, before:, after:)")
    search_parser.add_argument("--tag", "-t", help="Filter to sessions with a tag")
    search_parser.add_argument("--limit", "-l", type=int, default=20, help="Max sessions to show")

    export_parser = subparsers.add_parser("export", help="Export a session")
    export_parser.add_argument("session_id")
    export_parser.add_argument("--format", "-f", choices=["json", "markdown"], default="markdown")
    export_parser.add_argument("--output", "-o", help="Write to file instead of stdout")

    tree_parser = subparsers.add_parser("tree", help="Show branch tree")
    tree_parser.add_argument("session_id")
    tree_parser.add_argument("--root", "-r", action="store_true", help="Start from the root session")

    branch_parser = subparsers.add_parser("branch", help="Create a branch")
    branch_parser.add_argument("session_id")
    branch_parser.add_argument("name")
    branch_parser.add_argument("--at", type=int, help="Branch after this many messages (default: all)")

    merge_parser = subparsers.add_parser("merge", help="Merge two sessions")
    merge_parser.add_argument("target_id")
    merge_parser.add_argument("source_id")
    merge_parser.add_argument(
        "--type", choices=[t.value for t in MergeType], default=MergeType.CONTINUATION.value
    )
    merge_parser.add_argument("--create-branch", action="store_true", help="Merge into a new branch")
    merge_parser.add_argument("--branch-name", help="Name of the merge branch")
    merge_parser.add_argument("--merge-point", type=int, help="Rebase: keep this many target messages")

    subparsers.add_parser("repair", help="Repair branch links")
    subparsers.add_parser("backends", help="List storage backends")

    recover_parser = subparsers.add_parser("recover", help="Manage crash recovery")
    recover_parser.add_argument("action", choices=["check", "restore", "clear"])
    recover_parser.add_argument("--recovery-dir", help="Recovery directory")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.version:
        from . import __version__
        console.print(f"chat-sessions {__version__}")
        return

    commands = {
        "list": cmd_list,
        "show": cmd_show,
        "new": cmd_new,
        "delete": cmd_delete,
        "search": cmd_search,
        "export": cmd_export,
        "tree": cmd_tree,
        "branch": cmd_branch,
        "merge": cmd_merge,
        "repair": cmd_repair,
        "backends": cmd_backends,
        "recover": cmd_recover,
    }

    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return

    try:
        handler(args)
    except SessionStoreError as exc:
        err_console.print(Text.assemble(("Error: ", "red"), str(exc)))
        sys.exit(1)


if __name__ == "__main__":
    main()
