"""Event types shared by the bridge pipeline."""

from feishubridge.bus.events import (
    MENTION_SENTINEL,
    AgentReply,
    AgentRequest,
    AttachmentRef,
    CacheItem,
    MessageKind,
    NormalizedMessage,
)

__all__ = [
    "MENTION_SENTINEL",
    "AgentReply",
    "AgentRequest",
    "AttachmentRef",
    "CacheItem",
    "MessageKind",
    "NormalizedMessage",
]
