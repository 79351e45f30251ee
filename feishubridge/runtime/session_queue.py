"""Per-session job chain.

Jobs for the same session run strictly one after another in arrival order;
jobs for different sessions run concurrently. A failed job never stalls the
jobs queued behind it, and a session with nothing left to run holds no
entry in the map.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

from loguru import logger

Job = Callable[[], Awaitable[None]]


class SessionJobQueue:
    def __init__(self) -> None:
        self._tails: dict[str, asyncio.Task[None]] = {}

    def __len__(self) -> int:
        return len(self._tails)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._tails

    def enqueue(self, session_id: str, job: Job) -> asyncio.Task[None]:
        """Schedule *job* after the current tail of *session_id*'s chain.

        The returned task settles with the job's own outcome.
        """
        prev = self._tails.get(session_id)
        task = asyncio.create_task(self._run_after(session_id, prev, job))
        self._tails[session_id] = task
        task.add_done_callback(lambda t: self._settle(session_id, t))
        return task

    async def _run_after(self, session_id: str, prev: asyncio.Task[None] | None, job: Job) -> None:
        if prev is not None and not prev.done():
            # asyncio.wait never raises the predecessor's exception
            await asyncio.wait({prev})

        started = time.monotonic()
        logger.info(f"job start session={session_id}")
        try:
            await job()
        finally:
            logger.info(f"job end session={session_id} took={time.monotonic() - started:.2f}s")

    def _settle(self, session_id: str, task: asyncio.Task[None]) -> None:
        if self._tails.get(session_id) is task:
            del self._tails[session_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"job failed session={session_id}: {exc!r}")

    async def join(self) -> None:
        """Wait until every queued job has settled."""
        while self._tails:
            await asyncio.wait(set(self._tails.values()))
