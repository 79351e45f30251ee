"""Inbound webhook pipeline.

body → decode → normalize → (context cache, group gating) → ack.
After the ack, in the background: download media → pair pending media →
build the prompt → enqueue a job on the conversation's session chain.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Coroutine
from pathlib import Path
from typing import Any

from loguru import logger

from feishubridge.agent.runner import AgentAdapter, resolve_runner
from feishubridge.bus.events import MENTION_SENTINEL, AttachmentRef, NormalizedMessage
from feishubridge.channels.feishu_api import ChatClient, FeishuClient
from feishubridge.channels.normalizer import normalize, passes_group_gate
from feishubridge.delivery.scheduler import DeliveryScheduler, JobDelivery
from feishubridge.errors import ConfigurationError, DecryptFailure, MalformedEventError
from feishubridge.runtime.attachments import DESCRIBE_MEDIA_INSTRUCTION, AttachmentCorrelator
from feishubridge.runtime.context_cache import ConversationCache
from feishubridge.runtime.session_queue import SessionJobQueue
from feishubridge.settings import BridgeSettings
from feishubridge.utils.crypto import decode_body, normalize_encrypt_key
from feishubridge.utils.files import BridgePaths, is_image_path, save_downloaded_resource

Response = tuple[int, dict[str, Any]]

_NO_EVENT: dict[str, Any] = {"ok": True, "ignored": True, "note": "no event field"}


def _channel_preamble(outputs_dir: Path) -> str:
    # Keeps the agent from hallucinating other channels and tells it how to attach files.
    return "\n".join(
        [
            "[channel:feishu]",
            "You are replying inside a Feishu (Lark) chat.",
            "This chat supports sending images/files. To send an attachment, include lines like:",
            "FILE: <local path>",
            "MEDIA: <local path>",
            f"When generating files (e.g., PDFs), always save them under: {outputs_dir} "
            "and reference them as FILE: outputs/<name>.",
            "Do NOT mention WhatsApp/Telegram or other channels unless the user explicitly asks.",
            "[/channel]",
        ]
    )


class Bridge:
    """Owns the process-scoped state and runs the webhook pipeline."""

    def __init__(
        self,
        settings: BridgeSettings,
        client: ChatClient,
        agent: AgentAdapter | None = None,
        *,
        correlator: AttachmentCorrelator | None = None,
        cache: ConversationCache | None = None,
        queue: SessionJobQueue | None = None,
        delivery: DeliveryScheduler | None = None,
    ) -> None:
        if not settings.echo_mode and agent is None:
            raise ConfigurationError("agent mode (ECHO_MODE=false) requires an assistant runner")

        self.settings = settings
        self.client = client
        self.agent = None if settings.echo_mode else agent
        self.encrypt_key = (
            normalize_encrypt_key(settings.feishu_encrypt_key) if settings.feishu_encrypt_key.strip() else None
        )
        self.paths = BridgePaths(settings.workspace_root, settings.outputs_dir, settings.download_dir)
        self.correlator = correlator or AttachmentCorrelator(
            ttl_seconds=settings.pending_inbound_ttl_seconds,
            pair_window_seconds=settings.implicit_pair_window_seconds,
            wait_seconds=settings.mention_media_wait_seconds,
        )
        self.cache = cache or ConversationCache(
            enabled=settings.group_cache_enabled,
            max_items=settings.group_cache_max_items,
        )
        self.queue = queue if queue is not None else SessionJobQueue()
        self.delivery = delivery or DeliveryScheduler(
            client,
            self.paths,
            hint_delay=settings.processing_hint_delay_seconds,
            ping_interval=settings.progress_ping_seconds,
            send_hint=settings.send_processing_hint,
        )
        self._preamble = _channel_preamble(self.paths.outputs_dir)
        self._tasks: set[asyncio.Task[None]] = set()

    @classmethod
    def from_settings(cls, settings: BridgeSettings) -> "Bridge":
        """Build the production bridge; a missing runner fails here, at startup."""
        client = FeishuClient(
            settings.feishu_app_id,
            settings.feishu_app_secret,
            base_url=settings.feishu_api_base,
            max_download_bytes=settings.max_download_bytes,
        )
        agent = None
        if not settings.echo_mode:
            runner = resolve_runner(settings.assistant_mode, settings.assistant_bin, settings.assistant_entry)
            logger.info(f"Assistant runner: {runner.name} ({runner.mode})")
            agent = AgentAdapter(runner, cwd=settings.workspace_root)
        return cls(settings, client, agent)

    # ── webhook entry ──

    async def handle_body(self, body: Any) -> Response:
        """Route one webhook body and return ``(status, json)`` for the ack."""
        if not isinstance(body, dict):
            return 200, dict(_NO_EVENT)

        header = body.get("header") if isinstance(body.get("header"), dict) else {}
        logger.info(
            f"/feishu/events has_challenge={isinstance(body.get('challenge'), str)} "
            f"has_encrypt={isinstance(body.get('encrypt'), str)} event_type={header.get('event_type')}"
        )

        if isinstance(body.get("encrypt"), str):
            try:
                body = decode_body(body, self.encrypt_key)
            except (DecryptFailure, ConfigurationError) as exc:
                logger.error(f"decrypt failed: {exc}")
                return 400, {"ok": False, "error": f"decrypt failed: {exc}"}
            header = body.get("header") if isinstance(body.get("header"), dict) else {}
            logger.info(
                f"decrypted payload has_challenge={isinstance(body.get('challenge'), str)} "
                f"event_type={header.get('event_type')}"
            )

        if isinstance(body.get("challenge"), str):
            return 200, {"challenge": body["challenge"]}

        expected = self.settings.feishu_verification_token
        token = header.get("token") or body.get("token")
        if expected and token and token != expected:
            return 401, {"ok": False, "error": "verification token mismatch"}

        event = body.get("event")
        if not isinstance(event, dict):
            return 200, dict(_NO_EVENT)

        try:
            msg = normalize(event)
        except MalformedEventError as exc:
            logger.warning(f"ignoring malformed event: {exc}")
            return 200, {"ok": True, "ignored": True, "reason": "malformed event"}
        if msg is None:
            return 200, {"ok": True, "ignored": True, "reason": "unsupported message"}

        logger.info(
            f"event.message chat_type={'group' if msg.is_group else 'p2p'} "
            f"message_type={msg.message_type} mentioned={msg.was_mentioned}"
        )
        self._record_context(msg)

        if not passes_group_gate(msg, self.settings.require_mention_in_group):
            return 200, {"ok": True, "ignored": True, "reason": "not mentioned"}

        self._spawn(self.process(msg))
        return 200, {"ok": True}

    def _record_context(self, msg: NormalizedMessage) -> None:
        if not msg.is_group:
            return
        if msg.text and msg.text != MENTION_SENTINEL:
            self.cache.append(msg.chat_id, "text", text=msg.text)
        if msg.message_type == "post" and msg.attachment is not None:
            self.cache.append(msg.chat_id, "image", name="(embedded image)")

    # ── background processing ──

    async def process(self, msg: NormalizedMessage) -> None:
        agent = self.agent
        if agent is None:
            await self._echo(msg)
            return

        if msg.is_group and self.settings.require_mention_in_group and not msg.was_mentioned:
            # Unmentioned group media: cached for a later mention, no reply.
            saved = await self._download(msg, msg.attachment) if msg.attachment is not None else None
            logger.info(f"cached group media without mention chat={msg.chat_id} saved={saved is not None}")
            return

        # The session slot is taken before the first await so jobs keep arrival
        # order even when an earlier message is still downloading or pairing.
        job_id = str(uuid.uuid4())
        delivery = self.delivery.open(msg.chat_id, job_id, msg.is_group)
        prompt_ready: asyncio.Future[str | None] = asyncio.get_running_loop().create_future()
        self.queue.enqueue(msg.session_id, lambda: self._run_job(agent, msg, delivery, prompt_ready))
        logger.info(f"enqueue job={job_id} session={msg.session_id} group={msg.is_group} kind={msg.kind.value}")

        try:
            prompt_ready.set_result(await self._prepare(msg))
        finally:
            if not prompt_ready.done():
                prompt_ready.set_result(None)

    async def _run_job(
        self,
        agent: AgentAdapter,
        msg: NormalizedMessage,
        delivery: JobDelivery,
        prompt_ready: asyncio.Future[str | None],
    ) -> None:
        prompt = await prompt_ready
        if prompt is None:
            delivery.close()
            return
        timeout = self.settings.hard_timeout_seconds or None
        await self.delivery.run(delivery, lambda: agent.invoke(msg.session_id, prompt, timeout))

    async def _prepare(self, msg: NormalizedMessage) -> str | None:
        """Download media, pair pending media and build the prompt (``None`` = nothing to ask)."""
        inbound: list[str] = []
        forward = msg.text
        ref = msg.attachment
        if ref is not None:
            saved = await self._download(msg, ref)
            if saved is not None:
                inbound.append(str(saved))
            if not forward and ref.kind == "file":
                forward = f"[feishu:file] name={ref.display_name or ''} file_key={ref.resource_key}"
            elif not forward:
                forward = f"[feishu:image] image_key={ref.resource_key}"

        if msg.was_mentioned and not inbound:
            decision = self.correlator.decide(msg)
            if decision.wants:
                pending = await self.correlator.claim(msg.chat_id)
                inbound.extend(pending)
                if pending:
                    logger.info(
                        f"attached pending inbound chat={msg.chat_id} count={len(pending)} "
                        f"keywords={decision.by_keywords} pairing={decision.by_pairing} "
                        f"newest_age={decision.newest_age}"
                    )
                if pending and msg.is_mention_only:
                    forward = DESCRIBE_MEDIA_INSTRUCTION
            elif decision.newest_age is not None:
                logger.info(f"pending inbound retained (not referenced) chat={msg.chat_id}")

        if not forward and not inbound:
            return None
        return self._build_prompt(msg, forward, inbound)

    def _build_prompt(self, msg: NormalizedMessage, forward: str, inbound: list[str]) -> str:
        parts = [self._preamble]
        if msg.is_group:
            ctx = self.cache.summarize(msg.chat_id)
            if ctx:
                parts.append(ctx)
        if forward:
            parts.append(forward)
        if inbound:
            parts.append("\n".join(f"FILE: {p}" for p in inbound))
        return "\n\n".join(parts).strip()

    async def _download(self, msg: NormalizedMessage, ref: AttachmentRef) -> Path | None:
        """Fetch and save inbound media; failures are logged and yield ``None``."""
        if ref.kind == "file":
            name = ref.display_name or f"feishu_file_{ref.resource_key}"
        else:
            name = f"feishu_image_{ref.resource_key}.jpg"
        try:
            data = await self.client.download_resource(ref.message_id, ref.resource_key, ref.kind)
            saved = save_downloaded_resource(data, name, self.paths.download_dir)
        except Exception as exc:
            logger.error(f"download inbound {ref.kind} failed key={ref.resource_key}: {exc}")
            if ref.kind == "image" and msg.was_mentioned:
                try:
                    await self.client.send_text(
                        msg.chat_id,
                        "我收到了图片引用，但从飞书下载图片失败（可能是权限/资源过期/接口限制）。"
                        f"\nimage_key={ref.resource_key}\n错误：{exc}",
                    )
                except Exception as send_exc:
                    logger.error(f"download failure notice not delivered: {send_exc}")
            return None
        logger.info(f"saved inbound {ref.kind}: {saved}")

        self.correlator.remember(msg.chat_id, str(saved))
        if msg.is_group:
            self.cache.append(msg.chat_id, ref.kind, name=ref.display_name or saved.name, path=str(saved))
        return saved

    async def _echo(self, msg: NormalizedMessage) -> None:
        if msg.is_group and self.settings.require_mention_in_group and not msg.was_mentioned:
            return

        prefix = "[群聊]" if msg.is_group else "[私聊]"
        ref = msg.attachment
        if msg.text:
            reply = f"{prefix} 收到：{msg.text}"
        elif ref is not None and ref.kind == "file":
            reply = f"{prefix} 收到文件：{ref.display_name or '(unknown)'} file_key={ref.resource_key}"
        elif ref is not None:
            reply = f"{prefix} 收到图片：image_key={ref.resource_key}"
        else:
            return

        try:
            await self.client.send_text(msg.chat_id, reply)
        except Exception as exc:
            logger.error(f"echo reply failed chat={msg.chat_id}: {exc}")

    # ── debug helpers ──

    async def send_local_file(self, chat_id: str, path: Path) -> None:
        if is_image_path(path):
            await self.client.send_image(chat_id, await self.client.upload_image(path))
        else:
            await self.client.send_file(chat_id, await self.client.upload_file(path))

    # ── task bookkeeping ──

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"background processing failed: {task.exception()!r}")

    async def drain(self) -> None:
        """Wait for in-flight processing and every queued job to settle."""
        while self._tasks or len(self.queue):
            if self._tasks:
                await asyncio.wait(set(self._tasks))
            await self.queue.join()

    async def aclose(self) -> None:
        await self.drain()
        await self.client.aclose()
