"""Normalize decoded Feishu ``im.message.receive_v1`` events.

Supported message types: ``text``, ``post`` (rich text), ``file`` and
``image``. Anything else yields ``None`` and is acked without processing.

Post content JSON comes in more than one envelope::

    {"post": {"zh_cn": {"title": "...", "content": [[...], ...]}}}
    {"zh_cn": {"title": "...", "content": [[...], ...]}}
    {"title": "...", "content": [                # list of paragraphs
        [                                       # paragraph = list of nodes
            {"tag": "text", "text": "Hello "},
            {"tag": "at", "user_id": "@_user_1"},
            {"tag": "img", "image_key": "img_v2_..."},
        ],
    ]}
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from feishubridge.bus.events import (
    MENTION_SENTINEL,
    AttachmentRef,
    MessageKind,
    NormalizedMessage,
)
from feishubridge.errors import MalformedEventError

SUPPORTED_MESSAGE_TYPES = frozenset({"text", "post", "file", "image"})

_IMAGE_KEY_FIELDS = frozenset({"image_key", "img_key", "imageKey", "imgKey"})
_MAX_SCAN_DEPTH = 12
_MAX_SCAN_NODES = 2000


@dataclass(slots=True)
class _ScanBudget:
    visited: int = 0


def _load_content(message: dict[str, Any]) -> dict[str, Any]:
    raw = message.get("content") or "{}"
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as exc:
        raise MalformedEventError(f"message content is not JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise MalformedEventError(f"message content is {type(parsed).__name__}, not an object")
    return parsed


def _post_paragraphs(content: dict[str, Any]) -> list[Any]:
    """Locate the paragraph list regardless of the post envelope variant."""
    for block in (content.get("post"), content):
        if not isinstance(block, dict):
            continue
        if isinstance(block.get("content"), list):
            return block["content"]
        for value in block.values():
            if isinstance(value, dict) and isinstance(value.get("content"), list):
                return value["content"]
    return []


def extract_post_text(content: dict[str, Any]) -> str:
    """Concatenate every text-bearing node of a post in document order."""
    texts: list[str] = []
    for para in _post_paragraphs(content):
        if not isinstance(para, list):
            continue
        for node in para:
            if isinstance(node, dict) and isinstance(node.get("text"), str):
                texts.append(node["text"])
    return "".join(texts).strip()


def _scan_image_keys(node: Any, depth: int, budget: _ScanBudget, found: list[str]) -> None:
    if depth > _MAX_SCAN_DEPTH or budget.visited >= _MAX_SCAN_NODES:
        return
    budget.visited += 1

    if isinstance(node, list):
        for item in node:
            _scan_image_keys(item, depth + 1, budget, found)
    elif isinstance(node, dict):
        for key, value in node.items():
            if key in _IMAGE_KEY_FIELDS and isinstance(value, str):
                if value.strip() and value.strip() not in found:
                    found.append(value.strip())
            else:
                _scan_image_keys(value, depth + 1, budget, found)
    # scalars carry no keys


def extract_post_image_keys(content: dict[str, Any]) -> list[str]:
    """Bounded scan (depth + node count) for embedded image keys in a post."""
    found: list[str] = []
    _scan_image_keys(content, 0, _ScanBudget(), found)
    return found


def was_mentioned(message: dict[str, Any]) -> bool:
    # Feishu only lists mentions that resolve to real accounts, so any
    # mention counts as addressing the bot.
    mentions = message.get("mentions")
    return isinstance(mentions, list) and len(mentions) > 0


def _strip_mention_keys(text: str, message: dict[str, Any]) -> str:
    """Drop ``@_user_N`` placeholders so a bare mention reads as empty."""
    for mention in message.get("mentions") or []:
        key = mention.get("key") if isinstance(mention, dict) else None
        if isinstance(key, str) and key:
            text = text.replace(key, "")
    return text.strip()


def normalize(event: dict[str, Any]) -> NormalizedMessage | None:
    """Extract the canonical message from a decoded event, or ``None``."""
    message = event.get("message")
    if message is None:
        return None
    if not isinstance(message, dict):
        raise MalformedEventError("event.message is not an object")

    chat_id = str(message.get("chat_id") or "")
    msg_type = str(message.get("message_type") or "")
    if not chat_id or msg_type not in SUPPORTED_MESSAGE_TYPES:
        return None

    content = _load_content(message)
    message_id = str(message.get("message_id") or "")
    mentioned = was_mentioned(message)
    text = ""
    attachment: AttachmentRef | None = None

    if msg_type == "text":
        text = _strip_mention_keys(str(content.get("text") or ""), message)
    elif msg_type == "post":
        text = extract_post_text(content)
        image_keys = extract_post_image_keys(content)
        if image_keys:
            attachment = AttachmentRef(message_id, image_keys[0], "image")
    elif msg_type == "file":
        file_key = content.get("file_key")
        if isinstance(file_key, str) and file_key:
            attachment = AttachmentRef(message_id, file_key, "file", content.get("file_name") or None)
    elif msg_type == "image":
        image_key = content.get("image_key")
        if isinstance(image_key, str) and image_key:
            attachment = AttachmentRef(message_id, image_key, "image")

    # Group @mentions can arrive as text/post messages with an empty body.
    if not text and mentioned and msg_type in {"text", "post"}:
        text = MENTION_SENTINEL

    if attachment is not None:
        kind = MessageKind.FILE if attachment.kind == "file" else MessageKind.IMAGE
    elif text:
        kind = MessageKind.TEXT
    else:
        kind = MessageKind.EMPTY

    return NormalizedMessage(
        chat_id=chat_id,
        is_group=message.get("chat_type") == "group",
        was_mentioned=mentioned,
        kind=kind,
        text=text,
        attachment=attachment,
        message_id=message_id,
        message_type=msg_type,
    )


def passes_group_gate(msg: NormalizedMessage, require_mention: bool) -> bool:
    """Unmentioned group messages only pass when they carry an attachment."""
    if not (msg.is_group and require_mention):
        return True
    return msg.was_mentioned or msg.attachment is not None
