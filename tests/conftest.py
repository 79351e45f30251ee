from __future__ import annotations

import base64
import hashlib
import json
import os
from pathlib import Path
from typing import Any

import pytest
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from feishubridge.settings import BridgeSettings

ENCRYPT_KEY = "0123456789abcdef0123456789abcdef"


class FakeChatClient:
    """Records every outbound call instead of talking to Feishu."""

    def __init__(self, downloads: dict[str, bytes] | None = None) -> None:
        self.sent: list[tuple[str, str, str]] = []  # (kind, chat_id, payload)
        self.uploads: list[Path] = []
        self.downloads = downloads or {}
        self.download_calls: list[tuple[str, str, str]] = []
        self.fail_uploads = False
        self.closed = False

    @property
    def texts(self) -> list[str]:
        return [payload for kind, _, payload in self.sent if kind == "text"]

    async def send_text(self, chat_id: str, text: str) -> None:
        self.sent.append(("text", chat_id, text))

    async def send_image(self, chat_id: str, image_key: str) -> None:
        self.sent.append(("image", chat_id, image_key))

    async def send_file(self, chat_id: str, file_key: str) -> None:
        self.sent.append(("file", chat_id, file_key))

    async def upload_image(self, path: Path) -> str:
        if self.fail_uploads:
            raise RuntimeError("upload rejected")
        self.uploads.append(path)
        return f"img_{path.name}"

    async def upload_file(self, path: Path) -> str:
        if self.fail_uploads:
            raise RuntimeError("upload rejected")
        self.uploads.append(path)
        return f"file_{path.name}"

    async def download_resource(self, message_id: str, key: str, kind: str) -> bytes:
        self.download_calls.append((message_id, key, kind))
        if key not in self.downloads:
            raise RuntimeError(f"resource {key} unavailable")
        return self.downloads[key]

    async def aclose(self) -> None:
        self.closed = True


def make_settings(workspace: Path, **overrides: Any) -> BridgeSettings:
    values: dict[str, Any] = {
        "workspace_root": workspace,
        "feishu_app_id": "cli_test",
        "feishu_app_secret": "secret",
        "feishu_verification_token": "",
        "feishu_encrypt_key": "",
        "echo_mode": True,
        "require_mention_in_group": True,
        "mention_media_wait_seconds": 0,
    }
    values.update(overrides)
    settings = BridgeSettings(_env_file=None, **values)
    settings.outputs_dir.mkdir(parents=True, exist_ok=True)
    settings.download_dir.mkdir(parents=True, exist_ok=True)
    return settings


def encrypt_payload(payload: dict[str, Any], key: str = ENCRYPT_KEY, variant: str = "keySha+ivPrefixed") -> str:
    """Encrypt *payload* the way one of the Feishu callback variants does."""
    raw = key.encode("utf-8")
    aes_key = hashlib.sha256(raw).digest() if variant.startswith("keySha") else raw
    prefixed = variant.endswith("ivPrefixed")
    iv = os.urandom(16) if prefixed else aes_key[:16]

    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    plain = padder.update(json.dumps(payload).encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(aes_key), modes.CBC(iv)).encryptor()
    cipher = encryptor.update(plain) + encryptor.finalize()
    return base64.b64encode((iv + cipher) if prefixed else cipher).decode("ascii")


def message_event(
    message_type: str,
    content: dict[str, Any],
    *,
    chat_id: str = "oc_chat",
    chat_type: str = "p2p",
    mentioned: bool = False,
    message_id: str = "om_1",
) -> dict[str, Any]:
    message: dict[str, Any] = {
        "message_id": message_id,
        "chat_id": chat_id,
        "chat_type": chat_type,
        "message_type": message_type,
        "content": json.dumps(content, ensure_ascii=False),
    }
    if mentioned:
        message["mentions"] = [{"key": "@_user_1", "name": "bot", "id": {"open_id": "ou_bot"}}]
    return {"message": message}


def envelope(event: dict[str, Any], token: str = "") -> dict[str, Any]:
    return {
        "schema": "2.0",
        "header": {"event_type": "im.message.receive_v1", "token": token},
        "event": event,
    }


@pytest.fixture
def client() -> FakeChatClient:
    return FakeChatClient()
