"""Centralised settings for feishu-bridge, loaded from env / .env."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BridgeSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- HTTP ---
    host: str = "0.0.0.0"
    port: int = 8787

    # --- Feishu app credentials ---
    feishu_app_id: str = ""
    feishu_app_secret: str = ""
    feishu_verification_token: str = ""
    feishu_encrypt_key: str = ""
    feishu_api_base: str = "https://open.feishu.cn"

    # --- routing ---
    require_mention_in_group: bool = True
    echo_mode: bool = True

    # --- agent runner ---
    assistant_mode: str = "auto"  # auto | cli | entry
    assistant_bin: str = ""
    assistant_entry: str = ""
    hard_timeout_seconds: float = 0  # 0 = never kill

    # --- user feedback timing ---
    send_processing_hint: bool = True
    processing_hint_delay_seconds: float = 120
    progress_ping_seconds: float = 120  # 0 disables

    # --- attachment pairing ---
    pending_inbound_ttl_seconds: float = 90
    mention_media_wait_seconds: float = 1.5
    implicit_pair_window_seconds: float = 5

    # --- group context cache ---
    group_cache_enabled: bool = False
    group_cache_max_items: int = 50

    # --- file-system paths ---
    max_download_bytes: int = 30 * 1024 * 1024
    workspace_root: Path = Field(default_factory=Path.cwd)
    outputs_dir: Path | None = None
    download_dir: Path | None = None

    @model_validator(mode="after")
    def _derive_dirs(self) -> "BridgeSettings":
        self.workspace_root = self.workspace_root.expanduser().resolve()
        if self.outputs_dir is None:
            self.outputs_dir = self.workspace_root / "outputs"
        if self.download_dir is None:
            self.download_dir = self.workspace_root / "downloads"
        self.outputs_dir = self.outputs_dir.expanduser().resolve()
        self.download_dir = self.download_dir.expanduser().resolve()
        self.assistant_mode = self.assistant_mode.strip().lower() or "auto"
        return self


@lru_cache
def get_settings() -> BridgeSettings:
    s = BridgeSettings()
    s.outputs_dir.mkdir(parents=True, exist_ok=True)
    s.download_dir.mkdir(parents=True, exist_ok=True)
    return s
