"""Run the external assistant CLI (OpenClaw / Clawdbot) as a subprocess.

Both CLIs accept ``agent --session-id <id> --message <text> --json`` and
print a JSON result, possibly wrapped in banner/log output.

Runner selection (``assistant_mode``):
- ``auto``: explicit ``assistant_bin``, else the first known binary on PATH,
  else the legacy entry script.
- ``cli``: ``assistant_bin`` or a known binary on PATH.
- ``entry``: ``assistant_entry`` run under an interpreter (Python scripts
  under the current interpreter, anything else under ``node``).
"""

from __future__ import annotations

import asyncio
import os
import shutil
import sys
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from feishubridge.agent.reply import extract_json_object, normalize_reply
from feishubridge.bus.events import AgentReply, AgentRequest
from feishubridge.errors import (
    AgentMalformedOutput,
    AgentNonZeroExit,
    AgentNotFound,
    AgentTimeout,
)

KNOWN_BINARIES = ("openclaw", "clawdbot")


@dataclass(frozen=True, slots=True)
class AgentRunner:
    """A resolved way to launch the assistant."""

    mode: str  # cli | entry
    name: str
    command: str
    base_args: tuple[str, ...] = ()


def command_exists(cmd: str) -> bool:
    if not cmd:
        return False
    return shutil.which(cmd) is not None


def _entry_runner(entry: str) -> AgentRunner:
    path = Path(entry).expanduser()
    if not path.is_file():
        raise AgentNotFound(f"assistant entry script not found: {entry}")
    if path.suffix == ".py":
        command = sys.executable
    else:
        node = shutil.which("node")
        if node is None:
            raise AgentNotFound(f"node is required to run assistant entry {entry}")
        command = node
    return AgentRunner(mode="entry", name=f"{path.stem}(entry)", command=command, base_args=(str(path),))


def resolve_runner(mode: str = "auto", binary: str = "", entry: str = "") -> AgentRunner:
    """Pick the assistant runner; raises :class:`AgentNotFound` when none fits."""
    mode = (mode or "auto").lower()

    if mode == "entry":
        if not entry:
            raise AgentNotFound("ASSISTANT_MODE=entry requires ASSISTANT_ENTRY")
        return _entry_runner(entry)

    if mode == "cli":
        bin_name = binary or next((b for b in KNOWN_BINARIES if command_exists(b)), KNOWN_BINARIES[-1])
        if not command_exists(bin_name):
            raise AgentNotFound(f"ASSISTANT_MODE=cli but command not found: {bin_name}")
        return AgentRunner(mode="cli", name=bin_name, command=bin_name)

    if mode != "auto":
        raise AgentNotFound(f"unknown ASSISTANT_MODE: {mode}")

    if binary:
        if not command_exists(binary):
            raise AgentNotFound(f"ASSISTANT_BIN not found in PATH: {binary}")
        return AgentRunner(mode="cli", name=binary, command=binary)

    for bin_name in KNOWN_BINARIES:
        if command_exists(bin_name):
            return AgentRunner(mode="cli", name=bin_name, command=bin_name)

    if entry:
        return _entry_runner(entry)

    raise AgentNotFound(
        "No assistant runner found. Install openclaw/clawdbot in PATH, "
        "or set ASSISTANT_BIN, or set ASSISTANT_ENTRY."
    )


class AgentAdapter:
    """Invoke the resolved runner once per job and parse its reply."""

    def __init__(self, runner: AgentRunner, cwd: Path | None = None) -> None:
        self.runner = runner
        self._cwd = cwd

    async def invoke(self, session_id: str, message: str, timeout: float | None = None) -> AgentReply:
        return await self.run(AgentRequest(session_id=session_id, message=message, timeout=timeout))

    async def run(self, request: AgentRequest) -> AgentReply:
        runner = self.runner
        args = [
            *runner.base_args,
            "agent",
            "--session-id",
            request.session_id,
            "--message",
            request.message,
            "--json",
        ]
        try:
            proc = await asyncio.create_subprocess_exec(
                runner.command,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self._cwd) if self._cwd else None,
                env=os.environ.copy(),
            )
        except FileNotFoundError as exc:
            raise AgentNotFound(f"{runner.name} not found: {exc}") from exc

        timeout = request.timeout if request.timeout and request.timeout > 0 else None
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise AgentTimeout(f"{runner.name} agent timeout after {timeout:g}s") from None
        except asyncio.CancelledError:
            proc.kill()
            raise

        out = stdout.decode("utf-8", errors="replace") if stdout else ""
        err = stderr.decode("utf-8", errors="replace") if stderr else ""
        if proc.returncode != 0:
            raise AgentNonZeroExit(runner.name, proc.returncode, err)

        try:
            reply = normalize_reply(extract_json_object(out))
        except AgentMalformedOutput as exc:
            raise AgentMalformedOutput(f"{runner.name}: {exc}") from exc

        logger.debug(
            f"{runner.name} replied session={request.session_id} "
            f"chars={len(reply.text)} media={len(reply.media_paths)}"
        )
        return reply
