"""Recent group-chat messages, summarized for the agent prompt."""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable

from loguru import logger

from feishubridge.bus.events import CacheItem

_SUMMARY_ITEMS = 20
_MAX_TEXT_CHARS = 800


class ConversationCache:
    """Bounded per-chat ring buffer; a no-op unless enabled."""

    def __init__(
        self,
        enabled: bool = False,
        max_items: int = 50,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.enabled = enabled
        self._max_items = max(1, max_items)
        self._clock = clock
        self._items: dict[str, deque[CacheItem]] = {}

    def append(self, chat_id: str, kind: str, text: str = "", name: str = "", path: str = "") -> None:
        if not self.enabled or not chat_id:
            return
        buf = self._items.setdefault(chat_id, deque(maxlen=self._max_items))
        buf.append(
            CacheItem(kind=kind, at=self._clock(), text=text.strip()[:_MAX_TEXT_CHARS], name=name, path=path)
        )

    def items(self, chat_id: str) -> list[CacheItem]:
        return list(self._items.get(chat_id, ()))

    def summarize(self, chat_id: str) -> str:
        """Render the last items as a delimited bullet list ("" when empty)."""
        if not self.enabled:
            return ""
        try:
            lines: list[str] = []
            for it in self.items(chat_id)[-_SUMMARY_ITEMS:]:
                if it.kind == "text":
                    lines.append(f"- [text] {it.text}")
                elif it.kind == "file":
                    lines.append(f"- [file] {it.name or '(unknown)'}")
                elif it.kind == "image":
                    lines.append(f"- [image] {it.name or '(image)'}")
                else:
                    lines.append(f"- [{it.kind or 'item'}]")
        except Exception as exc:
            logger.warning(f"Context summary failed for {chat_id}: {exc}")
            return ""
        if not lines:
            return ""
        return "\n".join(["[group_cache:last_messages]", *lines, "[/group_cache]"])
