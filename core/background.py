"""
core/background.py -- Fire-and-forget bookkeeping writes.

Timestamps such as a key's last_used_at or a session's last_seen_at are
refreshed off the caller's path: lookup() returns immediately and the write
happens in a detached asyncio task with its own short deadline. Plain
callables run on a worker thread (asyncio.to_thread). A failure
there is logged and dropped -- it must never fail the request that caused it.

asyncio only keeps weak references to tasks, so the runner holds on to each
task until it finishes.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger("terminalpub.background")


async def _call(work: Callable[[], Any]) -> None:
    # Store calls block, so they run on a worker thread; the deadline then
    # covers them too and the event loop stays free.
    result = await asyncio.to_thread(work)
    if isinstance(result, Awaitable):
        await result


class DetachedRunner:
    def __init__(self, timeout: float = 5.0) -> None:
        self.timeout = timeout
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, work: Callable[[], Any], what: str) -> asyncio.Task:
        """Run work() in a detached task bounded by self.timeout.

        work may be a plain callable (for the synchronous store) or return an
        awaitable.
        """
        task = asyncio.create_task(self._run(work, what))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, work: Callable[[], Any], what: str) -> None:
        try:
            await asyncio.wait_for(_call(work), self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Background %s timed out after %.1fs", what, self.timeout)
        except Exception:  # noqa: BLE001 -- detached work must never propagate
            logger.warning("Background %s failed", what, exc_info=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every in-flight task. Called on shutdown and by tests."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
