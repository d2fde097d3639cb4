"""Fire-and-forget background work and per-entity deadline timers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)
_PENDING_TASKS: set[asyncio.Task[Any]] = set()


def fire_and_forget(
    coro: Coroutine[Any, Any, Any], *, task_name: str | None = None
) -> asyncio.Task[Any] | None:
    """Schedule a coroutine and log unexpected failures.

    Used for post-commit side effects (presentation updates, streaks,
    event listeners) whose failure must never reach the caller.
    """
    try:
        task = asyncio.create_task(coro, name=task_name)
    except RuntimeError:
        # No running loop (e.g. during shutdown); skip best-effort work.
        coro.close()
        return None
    _PENDING_TASKS.add(task)

    def _on_done(done_task: asyncio.Task[Any]) -> None:
        _PENDING_TASKS.discard(done_task)
        try:
            done_task.result()
        except asyncio.CancelledError:
            return
        except Exception:
            logger.exception("Background task failed: %s", task_name or "unnamed task")

    task.add_done_callback(_on_done)
    return task


async def drain_background_tasks(timeout_seconds: float = 1.0) -> None:
    """Wait for in-flight fire-and-forget tasks to finish.

    Primarily used by tests to avoid teardown races where the event loop closes
    before best-effort background work has completed.
    """
    if not _PENDING_TASKS:
        return

    pending = {task for task in _PENDING_TASKS if not task.done()}
    if not pending:
        return

    _, still_pending = await asyncio.wait(pending, timeout=timeout_seconds)
    for task in still_pending:
        task.cancel()

    if still_pending:
        await asyncio.gather(*still_pending, return_exceptions=True)


def _seconds_until(due_at: datetime) -> float:
    if due_at.tzinfo is None:
        due_at = due_at.replace(tzinfo=timezone.utc)
    return (due_at - datetime.now(timezone.utc)).total_seconds()


class ExpiryScheduler:
    """One sleeping task per entity key, fired at a wall-clock deadline.

    Timers live only in this process.  Jobs must be idempotent: a restart
    re-creates them from persisted deadlines, and a job that fires twice
    or late must be harmless.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task[Any]] = {}

    def schedule(
        self,
        key: str,
        due_at: datetime,
        job: Callable[[], Awaitable[Any]],
    ) -> asyncio.Task[Any]:
        self.cancel(key)
        task = asyncio.create_task(self._run(key, due_at, job), name=f"expiry:{key}")
        self._tasks[key] = task
        return task

    async def _run(self, key: str, due_at: datetime, job: Callable[[], Awaitable[Any]]) -> None:
        try:
            # Loop: the event loop clock and the wall clock can disagree by a few ms.
            while (delay := _seconds_until(due_at)) > 0:
                await asyncio.sleep(delay)
            await job()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Expiry job %s failed", key)
        finally:
            if self._tasks.get(key) is asyncio.current_task():
                del self._tasks[key]

    def cancel(self, key: str) -> bool:
        task = self._tasks.pop(key, None)
        if task is None:
            return False
        if task is not asyncio.current_task():
            task.cancel()
        return True

    def pending(self) -> list[str]:
        return sorted(self._tasks)

    def is_scheduled(self, key: str) -> bool:
        return key in self._tasks

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


expiry_scheduler = ExpiryScheduler()
