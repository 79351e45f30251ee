"""FastAPI application factory with lifespan for feishu-bridge."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from feishubridge import __version__
from feishubridge.bridge import Bridge
from feishubridge.settings import BridgeSettings, get_settings


def create_app(settings: BridgeSettings | None = None, bridge: Bridge | None = None) -> FastAPI:
    """Build the app; *bridge* is injected by tests, otherwise built at startup."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Startup: build the bridge (fails fast on a missing runner). Shutdown: drain and close."""
        app.state.bridge = bridge or Bridge.from_settings(settings)
        mode = "echo" if settings.echo_mode else "agent"
        logger.info(
            f"feishu-bridge ready mode={mode} require_mention_in_group={settings.require_mention_in_group} "
            f"encrypt={'on' if settings.feishu_encrypt_key else 'off'}"
        )
        yield
        await app.state.bridge.aclose()

    app = FastAPI(
        title="feishu-bridge",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # ── mount routers ──
    from feishubridge.api.routes import feishu_events, health

    app.include_router(health.router)
    app.include_router(feishu_events.router, tags=["feishu"])

    return app
