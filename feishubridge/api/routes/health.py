"""Health check and debug endpoints."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from loguru import logger
from pydantic import BaseModel

from feishubridge.bridge import Bridge
from feishubridge.errors import BridgeError

router = APIRouter()


class SendFileRequest(BaseModel):
    chat_id: str = ""
    file_path: str = ""


@router.get("/health")
async def health() -> dict[str, bool]:
    return {"ok": True}


@router.get("/debug/env")
async def debug_env(request: Request) -> dict[str, Any]:
    """Presence flags and toggles only; secret values never leave the process."""
    s = request.app.state.bridge.settings
    return {
        "ok": True,
        "has_app_id": bool(s.feishu_app_id),
        "has_app_secret": bool(s.feishu_app_secret),
        "has_verification_token": bool(s.feishu_verification_token),
        "has_encrypt_key": bool(s.feishu_encrypt_key),
        "echo_mode": s.echo_mode,
        "require_mention_in_group": s.require_mention_in_group,
        "assistant_mode": s.assistant_mode,
        "send_processing_hint": s.send_processing_hint,
        "processing_hint_delay_seconds": s.processing_hint_delay_seconds,
        "progress_ping_seconds": s.progress_ping_seconds,
        "hard_timeout_seconds": s.hard_timeout_seconds,
        "group_cache_enabled": s.group_cache_enabled,
        "outputs_dir": str(s.outputs_dir),
        "download_dir": str(s.download_dir),
    }


@router.post("/debug/send-file")
async def debug_send_file(req: SendFileRequest, request: Request) -> dict[str, Any]:
    if not req.chat_id or not req.file_path:
        raise HTTPException(status_code=400, detail="chat_id and file_path are required")
    path = Path(req.file_path).expanduser()
    if not path.is_file():
        raise HTTPException(status_code=404, detail=f"file not found: {req.file_path}")

    bridge: Bridge = request.app.state.bridge
    try:
        await bridge.send_local_file(req.chat_id, path)
    except BridgeError as exc:
        logger.error(f"debug send-file failed: {exc}")
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return {"ok": True, "file": path.name}
