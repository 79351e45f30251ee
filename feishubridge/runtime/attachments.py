"""Pair inbound media with a later (or earlier) @mention in the same chat.

Some Feishu clients send an image as its own unmentioned message and the
question about it as a separate @mention. Downloaded media is parked here
per chat for a short TTL and handed to the next mention that asks for it.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Callable
from dataclasses import dataclass

from loguru import logger

from feishubridge.bus.events import NormalizedMessage

_MAX_PENDING_PER_CHAT = 5
_POLL_INTERVAL = 0.25

_ZH_KEYWORDS = re.compile(
    r"(这张|这幅|这图|图片|图里|图中|看图|识图|读图|看一下|帮我看|截图|相片|照片"
    r"|上面的图|刚才的图|刚刚的图|附件|文件|pdf|文档)"
)
_EN_KEYWORDS = re.compile(
    r"(this image|the image|picture|photo|screenshot|see attached|attachment"
    r"|file|pdf|document|read the image|analyze the image|ocr)"
)

DESCRIBE_MEDIA_INSTRUCTION = (
    "用户发来图片/附件并@你，但没有给出具体问题。"
    "请先描述图片内容（含识别到的文字/关键信息），并给出你观察到的要点，"
    "然后问我希望你进一步怎么处理。"
)


@dataclass(frozen=True, slots=True)
class PendingAttachment:
    chat_id: str
    local_path: str
    created_at: float


@dataclass(frozen=True, slots=True)
class AttachDecision:
    by_keywords: bool
    by_pairing: bool
    newest_age: float | None

    @property
    def wants(self) -> bool:
        return self.by_keywords or self.by_pairing


def mentions_media(text: str) -> bool:
    """Whether the user explicitly refers to an image / file."""
    t = (text or "").strip()
    if not t:
        return False
    return bool(_ZH_KEYWORDS.search(t) or _EN_KEYWORDS.search(t.lower()))


class AttachmentCorrelator:
    """Short-lived per-chat memory of downloaded inbound media.

    Entries are consumed exactly once by :meth:`take_all`; anything older
    than the TTL is invisible to both :meth:`take_all` and :meth:`peek`.
    """

    def __init__(
        self,
        ttl_seconds: float = 90.0,
        pair_window_seconds: float = 5.0,
        wait_seconds: float = 1.5,
        poll_interval: float = _POLL_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._pair_window = pair_window_seconds
        self._wait = wait_seconds
        self._poll_interval = poll_interval
        self._clock = clock
        self._pending: dict[str, list[PendingAttachment]] = {}

    def remember(self, chat_id: str, local_path: str) -> None:
        if not chat_id or not local_path:
            return
        items = self._pending.setdefault(chat_id, [])
        items.append(PendingAttachment(chat_id, local_path, self._clock()))
        del items[:-_MAX_PENDING_PER_CHAT]

    def _fresh(self, items: list[PendingAttachment]) -> list[PendingAttachment]:
        now = self._clock()
        return [it for it in items if now - it.created_at <= self._ttl]

    def take_all(self, chat_id: str) -> list[str]:
        items = self._pending.pop(chat_id, [])
        return [it.local_path for it in self._fresh(items)]

    def peek(self, chat_id: str) -> list[PendingAttachment]:
        return self._fresh(self._pending.get(chat_id, []))

    def newest_age(self, chat_id: str) -> float | None:
        items = self.peek(chat_id)
        if not items:
            return None
        return self._clock() - max(it.created_at for it in items)

    def decide(self, msg: NormalizedMessage) -> AttachDecision:
        """Attach on explicit keywords, or on a bare mention right after an upload.

        The pairing rule is best-effort: an unrelated mention that happens to
        follow an upload within the window is paired too.
        """
        age = self.newest_age(msg.chat_id)
        by_pairing = msg.is_mention_only and age is not None and age <= self._pair_window
        return AttachDecision(
            by_keywords=mentions_media(msg.text),
            by_pairing=by_pairing,
            newest_age=age,
        )

    async def claim(self, chat_id: str) -> list[str]:
        """Take pending media, briefly polling to absorb delivery-order jitter."""
        pending = self.take_all(chat_id)
        if pending or self._wait <= 0:
            return pending

        deadline = time.monotonic() + self._wait
        while time.monotonic() < deadline:
            await asyncio.sleep(self._poll_interval)
            pending = self.take_all(chat_id)
            if pending:
                logger.debug(f"Pending media arrived late for {chat_id}: {len(pending)} item(s)")
                break
        return pending
