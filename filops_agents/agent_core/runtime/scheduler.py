"""Keyed periodic task scheduler.

Each key (an agent id, or a monitor name derived from one) owns one
``asyncio.Task`` that calls an async function every ``interval`` seconds.
Cancelling a key sets a stop flag: the next run is skipped but a run already
in progress is left to complete, never interrupted. ``shutdown`` waits for
those cancelled runs as well as the live schedules.

Exceptions raised by the scheduled function are logged and the schedule
continues with the next interval.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

PeriodicFn = Callable[[], Awaitable[None]]


@dataclass
class _Scheduled:
    task: "asyncio.Task[None]"
    stop: asyncio.Event = field(default_factory=asyncio.Event)


class PeriodicScheduler:
    """Run independent periodic coroutines keyed by name."""

    def __init__(self) -> None:
        self._entries: Dict[str, _Scheduled] = {}
        # Cancelled tasks whose last run has not finished yet.
        self._draining: Set["asyncio.Task[None]"] = set()

    def schedule(self, key: str, fn: PeriodicFn, interval: float, *, run_immediately: bool = False) -> None:
        """
        Start calling ``fn`` every ``interval`` seconds under ``key``.

        An existing schedule for ``key`` is cancelled first.

        Args:
            key: Unique schedule key.
            fn: Coroutine function to call.
            interval: Seconds between the end of one run and the start of the next.
            run_immediately: Run once before the first wait.
        """
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.cancel(key)
        stop = asyncio.Event()
        task = asyncio.create_task(self._run(key, fn, interval, stop, run_immediately), name=f"periodic:{key}")
        self._entries[key] = _Scheduled(task=task, stop=stop)

    def cancel(self, key: str) -> bool:
        """Stop the schedule for ``key``; returns False when nothing was scheduled."""
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        entry.stop.set()
        self._drain(entry.task)
        return True

    def is_scheduled(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not entry.task.done()

    def keys(self) -> List[str]:
        return [k for k in self._entries if self.is_scheduled(k)]

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop every schedule and wait for in-flight runs to finish."""
        entries = list(self._entries.values())
        self._entries.clear()
        for entry in entries:
            entry.stop.set()
        tasks = [e.task for e in entries if not e.task.done()]
        tasks.extend(t for t in self._draining if not t.done())
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()

    def _drain(self, task: "asyncio.Task[None]") -> None:
        if task.done():
            return
        self._draining.add(task)
        task.add_done_callback(self._draining.discard)

    async def _run(self, key: str, fn: PeriodicFn, interval: float, stop: asyncio.Event, run_now: bool) -> None:
        if run_now:
            await self._call(key, fn)
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            if stop.is_set():
                break
            await self._call(key, fn)

    async def _call(self, key: str, fn: PeriodicFn) -> None:
        try:
            await fn()
        except Exception:
            logger.exception("Periodic task %s raised", key)
