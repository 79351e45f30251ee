"""Parse and clean agent output.

Runner CLIs print banners, ANSI colours and tool traces around their JSON
result; this module digs the reply out and keeps internal details (local
paths, shell commands) away from chat users.
"""

from __future__ import annotations

import json
import re
from typing import Any

from feishubridge.bus.events import AgentReply
from feishubridge.errors import AgentMalformedOutput

_ANSI_RE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]")
_MEDIA_LINE_RE = re.compile(r"^(MEDIA|FILE)\s*:\s*(.+)$", re.IGNORECASE)
_MEDIA_PREFIX_RE = re.compile(r"^(MEDIA|FILE)\s*:", re.IGNORECASE)
_EXEC_TRACE_RE = re.compile(r"^(?:\U0001F6E0\uFE0F?\s*)?Exec\s*:", re.IGNORECASE)
_READ_TRACE_RE = re.compile(r"^(?:\U0001F4D6\s*)?Read\s*:", re.IGNORECASE)
_HEREDOC_RE = re.compile(r"<<-?\s*(?:'([^']+)'|\"([^\"]+)\"|([A-Za-z0-9_]+))\s*$")

# payload fields that may carry a local attachment path, in priority order
_MEDIA_PATH_FIELDS = ("mediaPath", "media_path", "path", "filePath", "file_path")
_PREVIEW_CHARS = 800


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


def extract_json_object(raw: str) -> dict[str, Any]:
    """Return the outermost ``{...}`` object in noisy CLI output."""
    cleaned = strip_ansi(raw or "").strip()
    first = cleaned.find("{")
    last = cleaned.rfind("}")
    if first < 0 or last <= first:
        raise AgentMalformedOutput(f"agent produced no JSON. raw={cleaned[:_PREVIEW_CHARS]}")
    blob = cleaned[first : last + 1]
    try:
        data = json.loads(blob)
    except json.JSONDecodeError as exc:
        raise AgentMalformedOutput(f"failed to parse agent JSON: {exc}. raw={blob[:_PREVIEW_CHARS]}") from exc
    if not isinstance(data, dict):
        raise AgentMalformedOutput(f"agent JSON is not an object. raw={blob[:_PREVIEW_CHARS]}")
    return data


def extract_media_paths(text: str) -> list[str]:
    """Paths announced with ``MEDIA: <path>`` / ``FILE: <path>`` lines."""
    out: list[str] = []
    for line in (text or "").splitlines():
        m = _MEDIA_LINE_RE.match(line.strip())
        if m and m.group(2).strip():
            out.append(m.group(2).strip())
    return out


def strip_media_lines(text: str) -> str:
    lines = [ln for ln in (text or "").splitlines() if not _MEDIA_PREFIX_RE.match(ln.strip())]
    return "\n".join(lines).strip()


def strip_tool_traces(text: str) -> str:
    """Drop ``Exec:`` / ``Read:`` trace lines, including heredoc bodies."""
    out: list[str] = []
    heredoc_end: str | None = None
    for line in (text or "").splitlines():
        if heredoc_end is not None:
            if line.strip() == heredoc_end:
                heredoc_end = None
            continue

        trimmed = line.strip()
        if _EXEC_TRACE_RE.match(trimmed):
            m = _HEREDOC_RE.search(trimmed)
            if m:
                heredoc_end = m.group(1) or m.group(2) or m.group(3)
            continue
        if _READ_TRACE_RE.match(trimmed):
            continue
        out.append(line)
    return "\n".join(out).strip()


def clean_reply_text(text: str) -> str:
    return strip_media_lines(strip_tool_traces(text))


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _str_or_empty(value: Any) -> str:
    return value if isinstance(value, str) else ""


def normalize_reply(data: dict[str, Any]) -> AgentReply:
    """Map the known runner output shapes onto :class:`AgentReply`.

    Shapes::

        {"text": "..."} / {"reply": {"text": "..."}} / {"result": {"text": "..."}}
        {"result": {"payloads": [{"text": "...", "mediaPath": "..."}, ...]}}
        {"result": {"payload": {"text": "..."}}}
    """
    result = _as_dict(data.get("result"))
    text = (
        _str_or_empty(_as_dict(data.get("reply")).get("text"))
        or _str_or_empty(data.get("text"))
        or _str_or_empty(result.get("text"))
    )
    media: list[str] = []

    payloads = result.get("payloads", data.get("payloads"))
    if isinstance(payloads, list):
        entries = [p for p in payloads if isinstance(p, dict)]
        if not text:
            text = "\n\n".join(p["text"] for p in entries if _str_or_empty(p.get("text")))
        for p in entries:
            for field in _MEDIA_PATH_FIELDS:
                cand = _str_or_empty(p.get(field)).strip()
                if cand:
                    media.append(cand)
                    break
            url = _str_or_empty(p.get("mediaUrl")).strip()
            if url:
                media.append(url)

    if not text:
        text = _str_or_empty(_as_dict(result.get("payload")).get("text"))

    media.extend(extract_media_paths(text))
    if not text.strip() and not media:
        raise AgentMalformedOutput(f"agent returned no text. raw={json.dumps(data)[:_PREVIEW_CHARS]}")
    return AgentReply(text=text, media_paths=media)
