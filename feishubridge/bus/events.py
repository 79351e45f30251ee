"""Event types passed between the bridge stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

# Text stand-in for "the bot was @mentioned but the message had no body".
MENTION_SENTINEL = "[feishu:mention]"


class MessageKind(str, Enum):
    TEXT = "text"
    FILE = "file"
    IMAGE = "image"
    EMPTY = "empty"


@dataclass(frozen=True, slots=True)
class AttachmentRef:
    """Pointer to an inbound resource that still has to be downloaded."""

    message_id: str
    resource_key: str
    kind: str  # "file" | "image"
    display_name: str | None = None


@dataclass(frozen=True, slots=True)
class NormalizedMessage:
    """Canonical form of one inbound chat message."""

    chat_id: str
    is_group: bool
    was_mentioned: bool
    kind: MessageKind
    text: str = ""
    attachment: AttachmentRef | None = None
    message_id: str = ""
    message_type: str = ""  # raw Feishu message_type

    @property
    def session_id(self) -> str:
        scope = "group" if self.is_group else "p2p"
        return f"feishu:{scope}:{self.chat_id}"

    @property
    def is_mention_only(self) -> bool:
        """True when the message addresses the bot without a real instruction."""
        t = self.text.strip()
        return t == MENTION_SENTINEL or len(t) <= 2


@dataclass(frozen=True, slots=True)
class AgentRequest:
    session_id: str
    message: str
    timeout: float | None = None


@dataclass(slots=True)
class AgentReply:
    """Normalized agent output: reply text plus local media paths (unverified)."""

    text: str
    media_paths: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class CacheItem:
    """One entry of the per-chat conversation cache."""

    kind: str  # text | file | image
    at: float
    text: str = ""
    name: str = ""
    path: str = ""
