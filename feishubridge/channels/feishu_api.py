"""Feishu Open Platform REST client (token, send, upload, download).

Only the handful of IM endpoints the bridge needs; every call either
returns its payload or raises :class:`FeishuAPIError`.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import quote

import httpx
from loguru import logger

from feishubridge.errors import ConfigurationError, DownloadTooLarge, FeishuAPIError
from feishubridge.utils.files import infer_feishu_file_type

# 默认请求超时 (秒)
_TIMEOUT = 30.0
_TOKEN_REFRESH_MARGIN = 30.0
_DEFAULT_TOKEN_TTL = 7200.0


class ChatClient(Protocol):
    """What the pipeline needs from the chat platform."""

    async def send_text(self, chat_id: str, text: str) -> None: ...

    async def send_image(self, chat_id: str, image_key: str) -> None: ...

    async def send_file(self, chat_id: str, file_key: str) -> None: ...

    async def upload_image(self, path: Path) -> str: ...

    async def upload_file(self, path: Path) -> str: ...

    async def download_resource(self, message_id: str, key: str, kind: str) -> bytes: ...

    async def aclose(self) -> None: ...


def _json_or_empty(resp: httpx.Response) -> dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class FeishuClient:
    """Async Feishu IM client on top of ``httpx``.

    The tenant access token is cached process-wide and refreshed lazily
    once it is within 30 seconds of expiry. Two coroutines refreshing at
    the same time is harmless: the last writer wins.
    """

    def __init__(
        self,
        app_id: str,
        app_secret: str,
        base_url: str = "https://open.feishu.cn",
        max_download_bytes: int = 30 * 1024 * 1024,
        http: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._app_id = app_id
        self._app_secret = app_secret
        self._max_download_bytes = max_download_bytes
        self._http = http or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=_TIMEOUT)
        self._clock = clock
        self._token: str | None = None
        self._token_expires_at = 0.0

    async def aclose(self) -> None:
        await self._http.aclose()

    # ── auth ──

    async def tenant_access_token(self) -> str:
        now = self._clock()
        if self._token and now < self._token_expires_at - _TOKEN_REFRESH_MARGIN:
            return self._token

        if not self._app_id or not self._app_secret:
            raise ConfigurationError("Missing FEISHU_APP_ID / FEISHU_APP_SECRET")

        resp = await self._http.post(
            "/open-apis/auth/v3/tenant_access_token/internal",
            json={"app_id": self._app_id, "app_secret": self._app_secret},
        )
        data = _json_or_empty(resp)
        if resp.status_code >= 400 or data.get("code") != 0:
            raise FeishuAPIError("tenant_access_token", resp.status_code, json.dumps(data))

        self._token = str(data["tenant_access_token"])
        ttl = float(data.get("expire") or data.get("expires_in") or _DEFAULT_TOKEN_TTL)
        self._token_expires_at = now + ttl
        logger.debug(f"Refreshed tenant access token (ttl={ttl:.0f}s)")
        return self._token

    async def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {await self.tenant_access_token()}"}

    @staticmethod
    def _check(action: str, resp: httpx.Response) -> dict[str, Any]:
        data = _json_or_empty(resp)
        if resp.status_code >= 400 or data.get("code") != 0:
            raise FeishuAPIError(action, resp.status_code, json.dumps(data, ensure_ascii=False))
        return data

    # ── send ──

    async def _send(self, chat_id: str, msg_type: str, content: dict[str, str]) -> None:
        resp = await self._http.post(
            "/open-apis/im/v1/messages",
            params={"receive_id_type": "chat_id"},
            headers=await self._auth_headers(),
            json={
                "receive_id": chat_id,
                "msg_type": msg_type,
                "content": json.dumps(content, ensure_ascii=False),
            },
        )
        self._check(f"send {msg_type} message", resp)
        logger.debug(f"Sent {msg_type} to {chat_id}")

    async def send_text(self, chat_id: str, text: str) -> None:
        await self._send(chat_id, "text", {"text": text})

    async def send_image(self, chat_id: str, image_key: str) -> None:
        await self._send(chat_id, "image", {"image_key": image_key})

    async def send_file(self, chat_id: str, file_key: str) -> None:
        await self._send(chat_id, "file", {"file_key": file_key})

    # ── upload ──

    async def upload_image(self, path: Path) -> str:
        data = await asyncio.to_thread(path.read_bytes)
        resp = await self._http.post(
            "/open-apis/im/v1/images",
            headers=await self._auth_headers(),
            data={"image_type": "message"},
            files={"image": (path.name, data)},
        )
        body = self._check("upload image", resp)
        image_key = (body.get("data") or {}).get("image_key")
        if not image_key:
            raise FeishuAPIError("upload image", resp.status_code, "missing image_key in response")
        logger.debug(f"Uploaded image: {path.name} → {image_key}")
        return str(image_key)

    async def upload_file(self, path: Path) -> str:
        data = await asyncio.to_thread(path.read_bytes)
        resp = await self._http.post(
            "/open-apis/im/v1/files",
            headers=await self._auth_headers(),
            data={"file_type": infer_feishu_file_type(path.name), "file_name": path.name},
            files={"file": (path.name, data)},
        )
        body = self._check("upload file", resp)
        file_key = (body.get("data") or {}).get("file_key")
        if not file_key:
            raise FeishuAPIError("upload file", resp.status_code, "missing file_key in response")
        logger.debug(f"Uploaded file: {path.name} → {file_key}")
        return str(file_key)

    # ── download ──

    async def download_resource(self, message_id: str, key: str, kind: str) -> bytes:
        """Fetch a message resource; nothing is kept if it exceeds the cap."""
        url = f"/open-apis/im/v1/messages/{quote(message_id, safe='')}/resources/{quote(key, safe='')}"
        limit = self._max_download_bytes
        async with self._http.stream(
            "GET", url, params={"type": kind}, headers=await self._auth_headers()
        ) as resp:
            if resp.status_code >= 400:
                body = (await resp.aread()).decode("utf-8", errors="replace")
                raise FeishuAPIError("download resource", resp.status_code, body)

            declared = int(resp.headers.get("content-length") or 0)
            if declared and declared > limit:
                raise DownloadTooLarge(declared, limit)

            chunks: list[bytes] = []
            total = 0
            async for chunk in resp.aiter_bytes():
                total += len(chunk)
                if total > limit:
                    raise DownloadTooLarge(total, limit)
                chunks.append(chunk)
        return b"".join(chunks)
