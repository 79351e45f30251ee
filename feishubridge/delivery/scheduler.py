"""Deliver agent replies to Feishu and keep the user informed meanwhile.

For every job:
- a one-shot hint ("后台处理… 任务ID：…") fires after ``hint_delay`` unless
  something was already sent for the job;
- a repeating progress ping fires every ``ping_interval`` while the job
  body runs (0 disables);
- attachments are resolved, uploaded and sent, then the cleaned reply text.

Timers are cancelled through flags checked when they fire; they never
cancel the job itself. Both are torn down when the job settles.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable, Coroutine
from pathlib import Path
from typing import Any

from loguru import logger

from feishubridge.agent.reply import clean_reply_text
from feishubridge.bus.events import AgentReply
from feishubridge.channels.feishu_api import ChatClient
from feishubridge.errors import DeliveryFailure
from feishubridge.utils.files import (
    BridgePaths,
    is_image_path,
    is_url,
    normalize_to_outputs,
    resolve_local_media_path,
)

HINT_TEXT = "后台处理… 任务ID：{job_id}"
PING_TEXT = "任务 {job_id} 仍在处理中…"
DONE_PREFIX = "已完成（任务ID：{job_id}）：\n"
FAILURE_TEXT = "任务 {job_id} 失败：{error}"
ATTACHMENT_FAILURE_TEXT = (
    "我这边生成了附件，但发送到飞书{where}失败（可能是权限/文件类型限制）。\n文件名：{name}{reason}"
)

_PDF_NAME_RE = re.compile(r"`([^`\n]+\.pdf)`|\b([A-Za-z0-9_\-.]+\.pdf)\b")


class JobDelivery:
    """Send state and feedback timers of one job."""

    def __init__(self, client: ChatClient, chat_id: str, job_id: str, is_group: bool) -> None:
        self.client = client
        self.chat_id = chat_id
        self.job_id = job_id
        self.is_group = is_group
        self.output_sent = False
        self.hint_sent = False
        self._closed = False
        self._hint_handle: asyncio.TimerHandle | None = None
        self._ping_handle: asyncio.TimerHandle | None = None
        self._ping_interval = 0.0
        self._background: set[asyncio.Task[None]] = set()

    # ── sends ──
    # output_sent flips before the await so a timer firing mid-send sees it.

    async def send_text(self, text: str) -> None:
        if not text:
            return
        self.output_sent = True
        try:
            await self.client.send_text(self.chat_id, text)
        except Exception as exc:
            logger.error(f"send_text failed chat={self.chat_id} job={self.job_id}: {exc} preview={text[:200]!r}")
            raise

    async def send_image(self, image_key: str) -> None:
        self.output_sent = True
        await self.client.send_image(self.chat_id, image_key)

    async def send_file(self, file_key: str) -> None:
        self.output_sent = True
        await self.client.send_file(self.chat_id, file_key)

    # ── timers ──

    def start_hint(self, delay: float) -> None:
        if delay > 0:
            self._hint_handle = asyncio.get_running_loop().call_later(delay, self._fire_hint)

    def _fire_hint(self) -> None:
        self._hint_handle = None
        if self._closed or self.hint_sent or self.output_sent:
            return
        self.hint_sent = True
        self._spawn(self.send_text(HINT_TEXT.format(job_id=self.job_id)))

    def start_pings(self, interval: float) -> None:
        if interval > 0 and not self._closed:
            self._ping_interval = interval
            self._ping_handle = asyncio.get_running_loop().call_later(interval, self._fire_ping)

    def _fire_ping(self) -> None:
        self._ping_handle = None
        if self._closed:
            return
        self._spawn(self.send_text(PING_TEXT.format(job_id=self.job_id)))
        self._ping_handle = asyncio.get_running_loop().call_later(self._ping_interval, self._fire_ping)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[None]) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"feedback message failed job={self.job_id}: {task.exception()}")

    def close(self) -> None:
        """Cancel both timers; safe to call more than once."""
        self._closed = True
        if self._hint_handle is not None:
            self._hint_handle.cancel()
            self._hint_handle = None
        if self._ping_handle is not None:
            self._ping_handle.cancel()
            self._ping_handle = None

    @property
    def timers_active(self) -> bool:
        return self._hint_handle is not None or self._ping_handle is not None


def find_mentioned_pdfs(text: str, bases: list[Path]) -> list[str]:
    """Locate a PDF the reply names without announcing it via ``FILE:``."""
    for m in _PDF_NAME_RE.finditer(text or ""):
        name = (m.group(1) or m.group(2) or "").strip()
        if not name:
            continue
        p = Path(name)
        if p.is_absolute():
            if p.exists():
                return [str(p)]
            continue
        for base in bases:
            cand = base / p
            if cand.exists():
                return [str(cand.resolve())]
    return []


class DeliveryScheduler:
    def __init__(
        self,
        client: ChatClient,
        paths: BridgePaths,
        hint_delay: float = 120.0,
        ping_interval: float = 120.0,
        send_hint: bool = True,
    ) -> None:
        self.client = client
        self.paths = paths
        self.hint_delay = hint_delay
        self.ping_interval = ping_interval
        self.send_hint = send_hint

    def open(self, chat_id: str, job_id: str, is_group: bool) -> JobDelivery:
        """Create the job's delivery state and arm the hint timer right away.

        Arming at receipt means a job stuck behind a slow predecessor still
        gets its hint.
        """
        delivery = JobDelivery(self.client, chat_id, job_id, is_group)
        if self.send_hint:
            delivery.start_hint(self.hint_delay)
        return delivery

    async def run(self, delivery: JobDelivery, invoke: Callable[[], Awaitable[AgentReply]]) -> None:
        """Job body: invoke the agent, deliver the reply, report failures."""
        delivery.start_pings(self.ping_interval)
        try:
            reply = await invoke()
            await self.deliver(delivery, reply)
        except Exception as exc:
            logger.error(f"job {delivery.job_id} failed: {exc}")
            try:
                await delivery.send_text(FAILURE_TEXT.format(job_id=delivery.job_id, error=exc))
            except Exception as send_exc:
                logger.error(f"failure notice for job {delivery.job_id} not delivered: {send_exc}")
        finally:
            delivery.close()

    async def deliver(self, delivery: JobDelivery, reply: AgentReply) -> None:
        media = list(reply.media_paths)
        if not media:
            media = find_mentioned_pdfs(reply.text, self.paths.search_bases())

        logger.info(
            f"agent result job={delivery.job_id} media={len(media)} "
            f"paths={media[:5]} preview={reply.text[:200]!r}"
        )

        await self._send_attachments(delivery, media)

        text = clean_reply_text(reply.text)
        if text and delivery.hint_sent:
            text = DONE_PREFIX.format(job_id=delivery.job_id) + text
        if text:
            await delivery.send_text(text)

    async def _send_attachments(self, delivery: JobDelivery, media: list[str]) -> None:
        wanted = 0
        sent = 0
        failures: list[DeliveryFailure] = []

        for raw in media:
            raw = raw.strip()
            if not raw:
                continue
            if is_url(raw):
                logger.info(f"skipping remote media reference: {raw}")
                continue

            wanted += 1
            resolved = resolve_local_media_path(raw, self.paths)
            if resolved is None:
                failures.append(DeliveryFailure(raw, "file not found under workspace roots"))
                logger.error(
                    f"attachment missing: {raw} (cwd={Path.cwd()}, outputs={self.paths.outputs_dir}, "
                    f"downloads={self.paths.download_dir}, root={self.paths.workspace_root})"
                )
                continue

            resolved = normalize_to_outputs(resolved, self.paths)
            try:
                if is_image_path(resolved):
                    await delivery.send_image(await self.client.upload_image(resolved))
                else:
                    await delivery.send_file(await self.client.upload_file(resolved))
                sent += 1
            except Exception as exc:
                logger.error(f"send attachment failed {resolved}: {exc}")
                failures.append(DeliveryFailure(str(resolved), str(exc)))

        if wanted and not sent:
            first = failures[0]
            await delivery.send_text(
                ATTACHMENT_FAILURE_TEXT.format(
                    where="群聊" if delivery.is_group else "会话",
                    name=Path(first.path).name or "(unknown)",
                    reason=f"\n错误：{first.reason}" if first.reason else "",
                )
            )
