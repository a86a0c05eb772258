"""Search functionality for sessions."""

import logging
import re
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Iterable

from .models import (
    MATCH_MESSAGE,
    MATCH_NAME,
    MATCH_SYSTEM_PROMPT,
    MATCH_TAG,
    SearchMatch,
    SearchResult,
    Session,
)

if TYPE_CHECKING:
    from .backends.base import StorageBackend

logger = logging.getLogger(__name__)

CONTEXT_RADIUS = 50
ELLIPSIS = "..."


def snippet_window(content: str, start: int, end: int, radius: int = CONTEXT_RADIUS) -> str:
    """Cut ``content[start:end]`` plus ``radius`` characters either side.

    The window is widened to whole words: backwards to the start of the word
    it lands in, forwards to the end of the current word plus one more. An
    ellipsis marks each side that was truncated.
    """
    lo = max(0, start - radius)
    hi = min(len(content), end + radius)

    while lo > 0 and content[lo - 1] != " ":
        lo -= 1

    if hi < len(content):
        while hi < len(content) and content[hi] != " ":
            hi += 1
        if hi < len(content):
            hi += 1
            while hi < len(content) and content[hi] != " ":
                hi += 1

    snippet = content[lo:hi]
    if lo > 0:
        snippet = ELLIPSIS + snippet
    if hi < len(content):
        snippet = snippet + ELLIPSIS
    return snippet


def extract_snippet(content: str, query: str, radius: int = CONTEXT_RADIUS) -> str:
    """Snippet around the first case-insensitive occurrence of query, or ''."""
    idx = content.lower().find(query.lower())
    if idx == -1:
        return ""
    return snippet_window(content, idx, idx + len(query), radius)


def message_label(position: int, role: str) -> str:
    return f"Message {position + 1} ({role})"


def match_system_prompt(prompt: str, query: str) -> SearchMatch | None:
    if prompt and query.lower() in prompt.lower():
        return SearchMatch(
            type=MATCH_SYSTEM_PROMPT,
            content=extract_snippet(prompt, query),
            context="System Prompt",
        )
    return None


def match_message(content: str, role: str, position: int, query: str) -> SearchMatch:
    return SearchMatch(
        type=MATCH_MESSAGE,
        role=role,
        content=extract_snippet(content, query),
        context=message_label(position, role),
        position=position,
    )


def match_metadata(name: str, tags: list[str], query: str) -> list[SearchMatch]:
    """Name and tag matches, which are never indexed."""
    query_lower = query.lower()
    matches = []
    if query_lower in name.lower():
        matches.append(SearchMatch(type=MATCH_NAME, content=name, context="Session Name"))
    for tag in tags:
        if query_lower in tag.lower():
            matches.append(SearchMatch(type=MATCH_TAG, content=tag, context="Tag"))
    return matches


def search_session(session: Session, query: str) -> SearchResult | None:
    """Linear case-insensitive scan of one session.

    Matches are ordered system prompt, messages (conversation order), name,
    tags. Returns None when nothing matched.
    """
    if not query:
        return None

    query_lower = query.lower()
    result = SearchResult(session=session.to_info())

    prompt_match = match_system_prompt(session.conversation.system_prompt, query)
    if prompt_match:
        result.add_match(prompt_match)

    for idx, msg in enumerate(session.messages):
        if query_lower in msg.content.lower():
            result.add_match(match_message(msg.content, msg.role, idx, query))

    for match in match_metadata(session.name, session.tags, query):
        result.add_match(match)

    return result if result.has_matches() else None


def search_sessions(sessions: Iterable[Session], query: str) -> list[SearchResult]:
    """Search all sessions and return one result per matching session."""
    if not query:
        return []
    results = []
    for session in sessions:
        result = search_session(session, query)
        if result:
            results.append(result)
    logger.debug(f"Linear search for '{query}' matched {len(results)} sessions")
    return results


def parse_search_query(query: str) -> tuple[str, dict]:
    """Parse search query with modifiers.

    Syntax:
        tag:work                - Sessions carrying a tag
        model:gpt-4             - Sessions using a model (substring)
        branch:yes|no           - Only branches / only root sessions
        before:2024-01-15       - Sessions updated before date
        after:7d                - Sessions updated in the last 7 days

    Returns:
        (clean_query, filters_dict)
    """
    filters = {}

    modifier_pattern = r'(\w+):(\S+)'
    modifiers = re.findall(modifier_pattern, query)

    for key, value in modifiers:
        key = key.lower()
        if key == 'tag':
            filters['tag'] = value
        elif key == 'model':
            filters['model'] = value.lower()
        elif key == 'branch':
            filters['branch'] = value.lower() in ('yes', 'true', '1')
        elif key == 'before':
            filters['before'] = parse_date_value(value)
        elif key == 'after':
            filters['after'] = parse_date_value(value)

    clean_query = re.sub(modifier_pattern, '', query).strip()

    return clean_query, filters


def parse_date_value(value: str) -> datetime | None:
    """Parse a date value (ISO date or relative like '7d', '1h')."""
    relative_match = re.match(r'^(\d+)([dhwm])$', value.lower())
    if relative_match:
        amount = int(relative_match.group(1))
        unit = relative_match.group(2)
        now = datetime.now()

        if unit == 'h':
            return now - timedelta(hours=amount)
        elif unit == 'd':
            return now - timedelta(days=amount)
        elif unit == 'w':
            return now - timedelta(weeks=amount)
        elif unit == 'm':
            return now - timedelta(days=amount * 30)

    try:
        return datetime.fromisoformat(value)
    except ValueError:
        pass

    for fmt in ['%Y-%m-%d', '%Y/%m/%d']:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue

    return None


class SearchEngine:
    """Backend search plus inline filter modifiers."""

    def __init__(self, backend: "StorageBackend"):
        self.backend = backend

    def search(
        self,
        query: str,
        tag: str | None = None,
        model: str | None = None,
        before: datetime | None = None,
        after: datetime | None = None,
    ) -> list[SearchResult]:
        """Search sessions with optional filters.

        Args:
            query: Search text, may contain modifiers like tag:, model:, after:
            tag: Only sessions carrying this tag
            model: Only sessions whose model contains this text
            before: Only sessions updated before this date
            after: Only sessions updated after this date
        """
        clean_query, parsed_filters = parse_search_query(query)

        # Inline modifiers override explicit parameters
        tag = parsed_filters.get('tag', tag)
        model = parsed_filters.get('model', model)
        before = parsed_filters.get('before', before)
        after = parsed_filters.get('after', after)
        branch = parsed_filters.get('branch')

        # Filters alone don't search
        if not clean_query:
            return []

        results = self.backend.search_sessions(clean_query)

        if tag:
            results = [r for r in results if tag in r.session.tags]
        if model:
            results = [r for r in results if model.lower() in r.session.model.lower()]
        if before:
            results = [r for r in results if r.session.updated < before]
        if after:
            results = [r for r in results if r.session.updated > after]
        if branch is not None:
            results = [r for r in results if r.session.is_branch == branch]

        return results

    def rank(self, results: list[SearchResult]) -> list[SearchResult]:
        """Order results by match count, most matches first (stable)."""
        return sorted(results, key=lambda r: r.match_count, reverse=True)
