"""Session data model shared by every storage backend."""

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterator, Optional

from .errors import ValidationError

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_SYSTEM = "system"
VALID_ROLES = (ROLE_USER, ROLE_ASSISTANT, ROLE_SYSTEM)

DEFAULT_TEMPERATURE = 0.7

MATCH_MESSAGE = "message"
MATCH_SYSTEM_PROMPT = "system_prompt"
MATCH_NAME = "name"
MATCH_TAG = "tag"


class MergeType(str, Enum):
    """Policy used to combine two message histories."""

    CONTINUATION = "continuation"
    REBASE = "rebase"

    @classmethod
    def parse(cls, value: "str | MergeType") -> "MergeType":
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(
                f"Unknown merge type: '{value}' (use continuation or rebase)",
                field="type",
            ) from None


class ExportFormat(str, Enum):
    """Serialization formats supported by export_session."""

    JSON = "json"
    MARKDOWN = "markdown"

    @classmethod
    def parse(cls, value: "str | ExportFormat") -> "ExportFormat":
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(
                f"Unsupported export format: '{value}' (use json or markdown)",
                field="format",
            ) from None


def new_message_id() -> str:
    return str(uuid.uuid4())


def _dt(value: Optional[str]) -> datetime:
    return datetime.fromisoformat(value) if value else datetime.now()


@dataclass
class Attachment:
    """Multimodal content attached to a message."""

    type: str  # image, file, text, audio, video
    name: str = ""
    url: str = ""
    file_path: str = ""
    mime_type: str = ""
    size: int = 0
    content: str = ""  # inline payload for text attachments
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.name or self.file_path or self.url or f"{self.type}_attachment"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "name": self.name,
            "url": self.url,
            "file_path": self.file_path,
            "mime_type": self.mime_type,
            "size": self.size,
            "content": self.content,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Attachment":
        return cls(
            type=data["type"],
            name=data.get("name", ""),
            url=data.get("url", ""),
            file_path=data.get("file_path", ""),
            mime_type=data.get("mime_type", ""),
            size=data.get("size", 0),
            content=data.get("content", ""),
            metadata=data.get("metadata") or {},
        )


@dataclass
class Message:
    """A single message within a conversation."""

    role: str  # user, assistant, system
    content: str
    id: str = field(default_factory=new_message_id)
    timestamp: datetime = field(default_factory=datetime.now)
    attachments: list[Attachment] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.role not in VALID_ROLES:
            raise ValidationError(f"Invalid message role: '{self.role}'", field="role")

    def clone(self, new_id: bool = False) -> "Message":
        """Deep copy, optionally with a fresh message ID."""
        msg = copy.deepcopy(self)
        if new_id:
            msg.id = new_message_id()
        return msg

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "attachments": [a.to_dict() for a in self.attachments],
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(
            id=data["id"],
            role=data["role"],
            content=data.get("content", ""),
            timestamp=_dt(data.get("timestamp")),
            attachments=[Attachment.from_dict(a) for a in data.get("attachments") or []],
            metadata=data.get("metadata") or {},
        )


@dataclass
class Conversation:
    """Ordered message history plus the model settings it was produced with."""

    id: str
    messages: list[Message] = field(default_factory=list)
    system_prompt: str = ""
    model: str = ""
    provider: str = ""
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = 0  # 0 = model default
    created: datetime = field(default_factory=datetime.now)
    updated: datetime = field(default_factory=datetime.now)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def message_count(self) -> int:
        return len(self.messages)

    def add_message(self, role: str, content: str, **kwargs) -> Message:
        message = Message(role=role, content=content, **kwargs)
        self.messages.append(message)
        self.updated = datetime.now()
        return message

    def settings_dict(self) -> dict[str, Any]:
        """Everything except the messages (stored separately by the SQL backend)."""
        return {
            "id": self.id,
            "system_prompt": self.system_prompt,
            "model": self.model,
            "provider": self.provider,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "created": self.created.isoformat(),
            "updated": self.updated.isoformat(),
            "metadata": self.metadata,
        }

    def to_dict(self) -> dict[str, Any]:
        data = self.settings_dict()
        data["messages"] = [m.to_dict() for m in self.messages]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Conversation":
        return cls(
            id=data["id"],
            messages=[Message.from_dict(m) for m in data.get("messages") or []],
            system_prompt=data.get("system_prompt", ""),
            model=data.get("model", ""),
            provider=data.get("provider", ""),
            temperature=data.get("temperature", DEFAULT_TEMPERATURE),
            max_tokens=data.get("max_tokens", 0),
            created=_dt(data.get("created")),
            updated=_dt(data.get("updated")),
            metadata=data.get("metadata") or {},
        )


@dataclass
class SessionInfo:
    """Summary of a session used for listings; never persisted on its own."""

    id: str
    name: str
    created: datetime
    updated: datetime
    message_count: int = 0
    tags: list[str] = field(default_factory=list)
    model: str = ""
    provider: str = ""
    parent_id: str = ""
    branch_name: str = ""
    child_count: int = 0

    @property
    def is_branch(self) -> bool:
        return bool(self.parent_id)


@dataclass
class Session:
    """A persisted conversation aggregate with optional branch metadata."""

    id: str
    name: str = ""
    conversation: Optional[Conversation] = None
    config: dict[str, Any] = field(default_factory=dict)
    created: datetime = field(default_factory=datetime.now)
    updated: datetime = field(default_factory=datetime.now)
    tags: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    # Branching
    parent_id: str = ""
    child_ids: list[str] = field(default_factory=list)
    branch_name: str = ""
    branch_point: int = 0

    def __post_init__(self):
        if self.conversation is None:
            self.conversation = Conversation(id=self.id)

    @property
    def messages(self) -> list[Message]:
        return self.conversation.messages

    @property
    def is_branch(self) -> bool:
        return bool(self.parent_id)

    @property
    def has_branches(self) -> bool:
        return bool(self.child_ids)

    def touch(self) -> None:
        self.updated = datetime.now()

    def add_tag(self, tag: str) -> None:
        if tag not in self.tags:
            self.tags.append(tag)
            self.touch()

    def remove_tag(self, tag: str) -> None:
        if tag in self.tags:
            self.tags.remove(tag)
            self.touch()

    def add_child(self, child_id: str) -> None:
        # Append-only: children are never removed once registered.
        if child_id not in self.child_ids:
            self.child_ids.append(child_id)
            self.touch()

    def is_ancestor_of(self, other: "Session") -> bool:
        """Direct parent check; deeper ancestry needs storage access (see branching.find_root)."""
        return other.parent_id == self.id

    def copy(self) -> "Session":
        return copy.deepcopy(self)

    def to_info(self) -> SessionInfo:
        return SessionInfo(
            id=self.id,
            name=self.name,
            created=self.created,
            updated=self.updated,
            message_count=self.conversation.message_count,
            tags=list(self.tags),
            model=self.conversation.model,
            provider=self.conversation.provider,
            parent_id=self.parent_id,
            branch_name=self.branch_name,
            child_count=len(self.child_ids),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "conversation": self.conversation.to_dict(),
            "config": self.config,
            "created": self.created.isoformat(),
            "updated": self.updated.isoformat(),
            "tags": self.tags,
            "metadata": self.metadata,
            "parent_id": self.parent_id,
            "child_ids": self.child_ids,
            "branch_name": self.branch_name,
            "branch_point": self.branch_point,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        conversation = data.get("conversation")
        return cls(
            id=data["id"],
            name=data.get("name") or "",
            conversation=Conversation.from_dict(conversation) if conversation else None,
            config=data.get("config") or {},
            created=_dt(data.get("created")),
            updated=_dt(data.get("updated")),
            tags=list(dict.fromkeys(data.get("tags") or [])),
            metadata=data.get("metadata") or {},
            parent_id=data.get("parent_id") or "",
            child_ids=list(data.get("child_ids") or []),
            branch_name=data.get("branch_name") or "",
            branch_point=data.get("branch_point", 0),
        )


@dataclass
class SearchMatch:
    """A single hit inside a session."""

    type: str  # message, system_prompt, name, tag
    content: str  # snippet
    context: str = ""  # label, e.g. "Message 3 (user)"
    role: str = ""
    position: int = -1  # message index, -1 when not a message


@dataclass
class SearchResult:
    """All matches for one session."""

    session: SessionInfo
    matches: list[SearchMatch] = field(default_factory=list)

    @property
    def session_id(self) -> str:
        return self.session.id

    @property
    def match_count(self) -> int:
        return len(self.matches)

    def add_match(self, match: SearchMatch) -> None:
        self.matches.append(match)

    def has_matches(self) -> bool:
        return bool(self.matches)

    def matches_of_type(self, match_type: str) -> list[SearchMatch]:
        return [m for m in self.matches if m.type == match_type]


@dataclass
class BranchTree:
    """Recursive view of a session and its branches, built on demand."""

    session: SessionInfo
    children: list["BranchTree"] = field(default_factory=list)

    def walk(self, depth: int = 0) -> Iterator[tuple[int, "BranchTree"]]:
        yield depth, self
        for child in self.children:
            yield from child.walk(depth + 1)

    def find(self, session_id: str) -> Optional["BranchTree"]:
        for _, node in self.walk():
            if node.session.id == session_id:
                return node
        return None

    @property
    def size(self) -> int:
        return sum(1 for _ in self.walk())


@dataclass
class MergeOptions:
    type: "MergeType | str" = MergeType.CONTINUATION
    create_branch: bool = False
    branch_name: str = ""
    merge_point: Optional[int] = None  # rebase: keep target messages[:merge_point]


@dataclass
class MergeResult:
    target_id: str
    source_id: str
    merged_count: int
    new_branch_id: str = ""


@dataclass
class RecoveryState:
    """Snapshot of the active session written by the auto-recovery manager."""

    session_id: str
    session_name: str
    conversation_data: Optional[Session]
    timestamp: datetime
    storage_backend: str
    app_version: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "session_name": self.session_name,
            "conversation_data": self.conversation_data.to_dict() if self.conversation_data else None,
            "timestamp": self.timestamp.isoformat(),
            "app_version": self.app_version,
            "storage_backend": self.storage_backend,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecoveryState":
        payload = data.get("conversation_data")
        return cls(
            session_id=data["session_id"],
            session_name=data.get("session_name", ""),
            conversation_data=Session.from_dict(payload) if payload else None,
            timestamp=datetime.fromisoformat(data["timestamp"]),
            storage_backend=data.get("storage_backend", ""),
            app_version=data.get("app_version", ""),
        )
