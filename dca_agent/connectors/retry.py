"""Retry policy shared by chain-gateway and reasoning-backend calls.

Bounded attempts, exponential backoff and an overall deadline, with a
per-attempt timeout. Only ``RecoverableError`` subclasses are retried;
anything else propagates on the first failure.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

from dca_agent.config import ExecutionConfig, ReasoningConfig
from dca_agent.errors import NetworkTimeout, RecoverableError
from dca_agent.observability.logger import get_logger

log = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    initial_backoff_secs: float = 2.0
    max_backoff_secs: float = 30.0
    deadline_secs: float = 90.0
    attempt_timeout_secs: float = 30.0

    @classmethod
    def for_execution(cls, config: ExecutionConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.max_retries,
            initial_backoff_secs=config.retry_backoff_secs,
            max_backoff_secs=config.max_backoff_secs,
            deadline_secs=config.retry_deadline_secs,
            attempt_timeout_secs=config.call_timeout_secs,
        )

    @classmethod
    def for_reasoning(cls, config: ReasoningConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.max_retries,
            initial_backoff_secs=1.0,
            max_backoff_secs=10.0,
            deadline_secs=config.timeout_secs * max(1, config.max_retries),
            attempt_timeout_secs=config.timeout_secs,
        )

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        op: str,
        timeout_secs: float | None = None,
    ) -> T:
        """Call ``fn`` until it succeeds, a non-recoverable error occurs, or the budget runs out."""
        timeout = timeout_secs if timeout_secs is not None else self.attempt_timeout_secs

        async def _attempt() -> T:
            try:
                return await asyncio.wait_for(fn(), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise NetworkTimeout(f"{op} timed out after {timeout:.1f}s") from e

        def _log_retry(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            log.warning(
                "retry.attempt_failed",
                op=op,
                attempt=state.attempt_number,
                max_attempts=self.max_attempts,
                error=str(exc),
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.max_attempts)) | stop_after_delay(self.deadline_secs),
            wait=wait_exponential(
                multiplier=self.initial_backoff_secs,
                min=self.initial_backoff_secs,
                max=self.max_backoff_secs,
            ),
            retry=retry_if_exception_type(RecoverableError),
            before_sleep=_log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await _attempt()
        raise AssertionError("unreachable")  # pragma: no cover
