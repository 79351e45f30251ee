"""Filesystem helpers for inbound downloads and agent-generated attachments."""

from __future__ import annotations

import re
import shutil
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from loguru import logger

_IMAGE_SUFFIXES = frozenset({".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp"})
_UNSAFE_NAME_RE = re.compile(r"[\\/\x00-\x1f\x7f]")
_URL_RE = re.compile(r"^https?://", re.IGNORECASE)
_MAX_NAME_LEN = 160


@dataclass(frozen=True, slots=True)
class BridgePaths:
    """Directory roots the bridge reads from and writes to."""

    workspace_root: Path
    outputs_dir: Path
    download_dir: Path

    def search_bases(self) -> list[Path]:
        """Bases for resolving relative agent paths, in priority order."""
        return [Path.cwd(), self.outputs_dir, self.download_dir, self.workspace_root]


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def safe_file_name(name: str | None, fallback: str = "file") -> str:
    """Strip path separators and control characters, cap the length."""
    base = str(name or fallback)
    return _UNSAFE_NAME_RE.sub("_", base)[:_MAX_NAME_LEN] or fallback


def save_downloaded_resource(data: bytes, file_name: str, download_dir: Path) -> Path:
    """Write inbound bytes under *download_dir* with a timestamp prefix."""
    ensure_dir(download_dir)
    ts = datetime.now(UTC).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
    out_path = download_dir / f"{ts}__{safe_file_name(file_name)}"
    out_path.write_bytes(data)
    return out_path


def is_image_path(path: str | Path) -> bool:
    return Path(path).suffix.lower() in _IMAGE_SUFFIXES


def infer_feishu_file_type(name: str | Path) -> str:
    """Map a file name to a Feishu IM ``file_type`` (``stream`` when unknown)."""
    ext = Path(name).suffix.lower()
    if ext == ".pdf":
        return "pdf"
    if ext in {".doc", ".docx"}:
        return "doc"
    if ext in {".xls", ".xlsx", ".csv"}:
        return "xls"
    if ext in {".ppt", ".pptx"}:
        return "ppt"
    if ext == ".mp4":
        return "mp4"
    if ext == ".opus":
        return "opus"
    if ext in {".txt", ".md"}:
        return "txt"
    return "stream"


def is_url(raw: str) -> bool:
    return bool(_URL_RE.match((raw or "").strip()))


def resolve_local_media_path(raw: str, paths: BridgePaths) -> Path | None:
    """Resolve an agent-provided path to an existing local file.

    URLs are not local attachments and resolve to ``None``.
    """
    s = (raw or "").strip()
    if not s or is_url(s):
        return None
    p = Path(s).expanduser()
    if p.is_absolute():
        return p if p.exists() else None
    for base in paths.search_bases():
        cand = (base / p).resolve()
        if cand.exists():
            return cand
    return None


def normalize_to_outputs(path: Path, paths: BridgePaths) -> Path:
    """Move files the agent dropped directly in the workspace root into outputs/."""
    try:
        abs_path = path.resolve()
        outputs = ensure_dir(paths.outputs_dir).resolve()
        if abs_path.is_relative_to(outputs) or abs_path.is_relative_to(paths.download_dir.resolve()):
            return abs_path
        if abs_path.parent != paths.workspace_root.resolve():
            return abs_path

        dest = outputs / abs_path.name
        if dest.exists():
            dest = outputs / f"{abs_path.stem}__{int(time.time() * 1000)}{abs_path.suffix}"
        shutil.move(str(abs_path), str(dest))
        logger.info(f"Moved attachment into outputs: {abs_path.name} → {dest}")
        return dest
    except OSError as exc:
        logger.error(f"normalize_to_outputs failed for {path}: {exc}")
        return path
