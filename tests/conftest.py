"""Shared test fixtures."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure dca_agent is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from dca_agent.config import AgentConfig  # noqa: E402
from dca_agent.connectors.chain_gateway import SimulatedChainGateway  # noqa: E402
from dca_agent.connectors.market_data import StaticMarketData  # noqa: E402
from dca_agent.connectors.retry import RetryPolicy  # noqa: E402
from dca_agent.grants.signer import SimulatedGrantSigner  # noqa: E402
from dca_agent.storage.kv_store import MemoryStore  # noqa: E402

GRANTOR = "0x1111111111111111111111111111111111111111"
GRANTEE = "0x2222222222222222222222222222222222222222"


class FakeClock:
    """Settable wall clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, secs: float) -> None:
        self.now += secs


class ScriptedBackend:
    """Reasoning backend that replays canned replies (or raises them)."""

    def __init__(self, *replies: str | Exception):
        self.replies = list(replies)
        self.prompts: list[str] = []

    async def complete(self, system: str, prompt: str) -> str:
        self.prompts.append(prompt)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


def fast_retry(attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=attempts,
        initial_backoff_secs=0.0,
        max_backoff_secs=0.0,
        deadline_secs=10.0,
        attempt_timeout_secs=2.0,
    )


@pytest.fixture
def config() -> AgentConfig:
    cfg = AgentConfig()
    cfg.accounts.grantor = GRANTOR
    cfg.accounts.grantee = GRANTEE
    cfg.storage.backend = "memory"
    cfg.reasoning.enabled = True
    cfg.schedule.run_immediately = False
    cfg.execution.max_retries = 3
    cfg.execution.retry_backoff_secs = 0.0
    cfg.execution.max_backoff_secs = 0.0
    return cfg


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def gateway() -> SimulatedChainGateway:
    return SimulatedChainGateway()


@pytest.fixture
def signer() -> SimulatedGrantSigner:
    return SimulatedGrantSigner()


@pytest.fixture
def market() -> StaticMarketData:
    return StaticMarketData(balances={"MON": "10", "WMON": "0", "USDC": "0", "CHOG": "0"})
