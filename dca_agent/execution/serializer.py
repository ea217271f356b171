"""Operation serializer: single-flight FIFO queue for on-chain operations.

The agent account has one nonce sequence, so two operations submitted
at once race each other. Every on-chain job goes through this queue and
runs alone, in submission order. A failing job only fails its own future.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from dca_agent.observability.logger import get_logger
from dca_agent.observability.metrics import MetricsCollector

log = get_logger(__name__)

Job = Callable[[], Awaitable[Any]]


@dataclass
class OperationJob:
    thunk: Job
    future: asyncio.Future
    label: str = ""


class OperationSerializer:
    """Runs enqueued jobs one at a time, FIFO."""

    def __init__(self, metrics: MetricsCollector | None = None):
        self._queue: deque[OperationJob] = deque()
        self._draining = False
        self._executing = False
        self._drain_task: asyncio.Task[None] | None = None
        self._metrics = metrics or MetricsCollector()

    @property
    def executing(self) -> bool:
        """True only while a job body is running."""
        return self._executing

    @property
    def pending(self) -> int:
        return len(self._queue)

    def enqueue(self, job: Job, label: str = "") -> asyncio.Future:
        """Queue ``job``; the returned future settles with its result or error."""
        loop = asyncio.get_running_loop()
        fut: asyncio.Future = loop.create_future()
        self._queue.append(OperationJob(thunk=job, future=fut, label=label))
        self._metrics.gauge("serializer.pending", len(self._queue))
        if not self._draining:
            self._draining = True
            self._drain_task = loop.create_task(self._drain())
        return fut

    async def _drain(self) -> None:
        try:
            while self._queue:
                job = self._queue.popleft()
                self._metrics.gauge("serializer.pending", len(self._queue))
                if job.future.done():
                    # Cancelled before it started
                    continue
                self._executing = True
                try:
                    with self._metrics.timed("serializer.job_secs"):
                        result = await job.thunk()
                except asyncio.CancelledError:
                    if not job.future.done():
                        job.future.cancel()
                    raise
                except Exception as e:
                    log.warning("serializer.job_failed", label=job.label, error=str(e))
                    self._metrics.incr("serializer.jobs_failed")
                    if not job.future.done():
                        job.future.set_exception(e)
                else:
                    self._metrics.incr("serializer.jobs_ok")
                    if not job.future.done():
                        job.future.set_result(result)
                finally:
                    self._executing = False
        finally:
            self._draining = False

    def close(self) -> int:
        """Cancel every queued job that has not started. Returns how many."""
        cancelled = 0
        while self._queue:
            job = self._queue.popleft()
            if not job.future.done():
                job.future.cancel()
                cancelled += 1
        if cancelled:
            log.info("serializer.closed", cancelled=cancelled)
        return cancelled

    async def abort(self) -> None:
        """Cancel queued jobs and interrupt the one currently running."""
        self.close()
        task = self._drain_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
