"""Execution scheduler: a cancelable, re-configurable asyncio timer.

    stopped --start(config)--> active --stop()--> stopped

While active, ``on_execute`` is awaited every ``interval_seconds``.
Ticks never overlap: the next sleep only begins once the previous tick
has settled. A failing tick is reported to ``on_error`` and the schedule
keeps running. ``stop()`` never interrupts a tick that is already running,
and a timer restarted meanwhile waits for that tick before its own.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from dca_agent.observability.logger import get_logger

log = get_logger(__name__)

StatusCallback = Callable[[bool, "float | None"], None]


@dataclass
class SchedulerConfig:
    interval_seconds: float
    on_execute: Callable[[], Awaitable[None]]
    on_error: Callable[[BaseException], None]
    on_status_change: StatusCallback


@dataclass
class SchedulerStatus:
    active: bool
    interval_seconds: float = 0.0
    next_execution_time: float | None = None
    ticks: int = 0


class ExecutionScheduler:
    """One timer per instance; ``start`` while active restarts it."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._config: SchedulerConfig | None = None
        self._active = False
        self._interval = 0.0
        self._next_execution: float | None = None
        self._task: asyncio.Task[None] | None = None
        self._generation = 0
        self._tick_lock = asyncio.Lock()
        self._tick_owner: asyncio.Task[None] | None = None
        self._ticks = 0

    @property
    def is_active(self) -> bool:
        return self._active

    def _in_tick(self) -> bool:
        """True while the current timer task is inside ``on_execute``."""
        return self._tick_owner is not None and self._tick_owner is self._task

    @property
    def status(self) -> SchedulerStatus:
        return SchedulerStatus(
            active=self._active,
            interval_seconds=self._interval if self._active else 0.0,
            next_execution_time=self._next_execution,
            ticks=self._ticks,
        )

    def start(self, config: SchedulerConfig) -> None:
        if config.interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {config.interval_seconds}")
        if self._active:
            self.stop()

        self._config = config
        self._active = True
        self._interval = float(config.interval_seconds)
        self._ticks = 0
        self._spawn()
        log.info("scheduler.started", interval_secs=self._interval)

    def stop(self) -> None:
        """Cancel future ticks. Idempotent."""
        was_active = self._active
        self._active = False
        self._generation += 1
        self._next_execution = None
        if not self._in_tick():
            # A running tick finishes on its own; its loop sees the bumped generation
            if self._task is not None and not self._task.done():
                self._task.cancel()
            self._task = None
        if self._config is not None:
            self._report(False, None)
        if was_active:
            log.info("scheduler.stopped", ticks=self._ticks)

    def update_interval(self, seconds: float) -> None:
        """Reschedule at a new period without leaving the active state."""
        if not self._active:
            return
        if seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {seconds}")
        if seconds == self._interval:
            return
        old = self._interval
        self._interval = float(seconds)
        log.info("scheduler.interval_updated", old_secs=old, new_secs=self._interval)
        if self._in_tick():
            # Picked up when the running tick settles
            return
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._spawn()

    # ── Internals ────────────────────────────────────────────────────

    def _spawn(self) -> None:
        self._generation += 1
        gen = self._generation
        self._next_execution = self._clock() + self._interval
        self._report(True, self._next_execution)
        self._task = asyncio.get_running_loop().create_task(self._run(gen))

    def _current(self, gen: int) -> bool:
        return self._active and gen == self._generation

    async def _run(self, gen: int) -> None:
        while self._current(gen):
            await asyncio.sleep(self._interval)
            if not self._current(gen):
                return
            await self._tick(gen)
            if not self._current(gen):
                return
            self._next_execution = self._clock() + self._interval
            self._report(True, self._next_execution)

    async def _tick(self, gen: int) -> None:
        # A tick left running by an earlier generation must settle first
        async with self._tick_lock:
            if not self._current(gen) or self._config is None:
                return
            self._tick_owner = asyncio.current_task()
            self._ticks += 1
            try:
                await self._run_callback(self._config)
            finally:
                self._tick_owner = None

    async def _run_callback(self, config: SchedulerConfig) -> None:
        try:
            await config.on_execute()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("scheduler.tick_failed", tick=self._ticks, error=str(e))
            try:
                config.on_error(e)
            except Exception as cb_err:
                log.error("scheduler.on_error_failed", error=str(cb_err))

    def _report(self, active: bool, next_execution: float | None) -> None:
        if self._config is None:
            return
        try:
            self._config.on_status_change(active, next_execution)
        except Exception as e:
            log.error("scheduler.status_callback_failed", error=str(e))
