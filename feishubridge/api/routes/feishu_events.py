"""Feishu event subscription webhook.

Feishu retries unacknowledged deliveries, so everything after the ack runs
in the background and errors never turn into 5xx responses.
"""

from __future__ import annotations

import json

from fastapi import APIRouter, Request, Response
from loguru import logger

from feishubridge.bridge import Bridge

router = APIRouter()


@router.get("/feishu/events")
async def feishu_events_probe() -> Response:
    """Console probe; Feishu sometimes GETs the callback URL."""
    return _json(200, {"ok": True})


@router.post("/feishu/events")
async def feishu_events(request: Request) -> Response:
    raw = await request.body()
    try:
        body = json.loads(raw) if raw else None
    except ValueError:
        logger.warning(f"/feishu/events: non-JSON body ({len(raw)} bytes)")
        body = None

    bridge: Bridge = request.app.state.bridge
    status, payload = await bridge.handle_body(body)
    return _json(status, payload)


def _json(status: int, data: dict) -> Response:
    return Response(
        content=json.dumps(data, ensure_ascii=False),
        status_code=status,
        media_type="application/json; charset=utf-8",
    )
