"""Chain gateway: submits delegated call batches and polls for receipts.

The gateway is an external collaborator. Two implementations:
  - HttpChainGateway: talks JSON to a relay/bundler service over httpx
  - SimulatedChainGateway: in-process stand-in for dry runs and tests

Low-level call-data encoding happens behind the relay; the orchestrator
only hands over (target, selector, args) triples.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from dca_agent.connectors.rate_limiter import RateLimiterRegistry
from dca_agent.errors import (
    ConfigurationError,
    NetworkTimeout,
    OperationInFlight,
    RelayFailure,
)
from dca_agent.grants.models import CapabilityGrant
from dca_agent.observability.logger import get_logger

log = get_logger(__name__)


# ── Data Models ──────────────────────────────────────────────────────

@dataclass
class Call:
    """One contract call executed under a capability grant."""
    target: str
    selector: str
    args: list[Any] = field(default_factory=list)
    value: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "selector": self.selector,
            "args": [str(a) if isinstance(a, int) else a for a in self.args],
            "value": str(self.value),
        }


@dataclass
class Receipt:
    handle: str
    success: bool
    tx_hash: str = ""
    details: dict[str, Any] = field(default_factory=dict)


class ChainGateway(Protocol):
    async def submit_batch(
        self, executor: str, grant: CapabilityGrant | None, calls: list[Call],
    ) -> str: ...

    async def wait_for_receipt(self, handle: str, timeout: float) -> Receipt: ...

    async def get_bytecode(self, address: str) -> bytes | None: ...


# ── HTTP relay client ────────────────────────────────────────────────

class HttpChainGateway:
    """Async client for a relay that redeems grants as sponsored operations."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        rate_limiter: RateLimiterRegistry | None = None,
    ):
        if not base_url:
            raise ConfigurationError("execution.relay_url is required for live execution")
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"Accept": "application/json"},
        )
        self._bucket = (rate_limiter or RateLimiterRegistry()).get("relay")

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        await self._bucket.acquire()
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkTimeout(f"relay {method} {path} timed out") from e
        except httpx.HTTPError as e:
            raise RelayFailure(f"relay {method} {path} failed: {e}") from e
        if resp.status_code == 409:
            body = resp.json() if resp.content else {}
            raise OperationInFlight(
                body.get("error", "conflicting operation in flight"),
                handle=body.get("handle"),
            )
        if resp.status_code >= 400:
            raise RelayFailure(f"relay {method} {path} -> HTTP {resp.status_code}: {resp.text[:200]}")
        return resp.json()

    async def submit_batch(
        self, executor: str, grant: CapabilityGrant | None, calls: list[Call],
    ) -> str:
        payload = {
            "executor": executor,
            "grant": grant.model_dump() if grant else None,
            "calls": [c.to_dict() for c in calls],
        }
        data = await self._request("POST", "/operations", json=payload)
        handle = data.get("handle", "")
        if not handle:
            raise RelayFailure("relay returned no operation handle")
        log.info("gateway.submitted", executor=executor, handle=handle, calls=len(calls))
        return handle

    async def wait_for_receipt(self, handle: str, timeout: float) -> Receipt:
        data = await self._request(
            "GET", f"/operations/{handle}/receipt",
            params={"timeout": timeout},
            timeout=timeout + 5.0,
        )
        return Receipt(
            handle=handle,
            success=bool(data.get("success")),
            tx_hash=data.get("transactionHash", ""),
            details=data,
        )

    async def get_bytecode(self, address: str) -> bytes | None:
        data = await self._request("GET", f"/accounts/{address}/code")
        code = data.get("code") or "0x"
        if code in ("0x", "0x0"):
            return None
        return bytes.fromhex(code[2:])


# ── Simulated gateway ────────────────────────────────────────────────

class SimulatedChainGateway:
    """Records submitted batches and returns successful receipts.

    ``failures`` is a queue of exceptions raised by upcoming
    ``submit_batch`` calls, so tests can script relay behaviour.
    """

    def __init__(self, latency_secs: float = 0.0):
        self.latency_secs = latency_secs
        self.submitted: list[dict[str, Any]] = []
        self.failures: list[Exception] = []
        self.receipt_failures: list[Exception] = []
        self.deployed: set[str] = set()
        self._in_flight = 0
        self.max_in_flight = 0

    async def submit_batch(
        self, executor: str, grant: CapabilityGrant | None, calls: list[Call],
    ) -> str:
        self._in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self._in_flight)
        try:
            if self.latency_secs:
                await asyncio.sleep(self.latency_secs)
            if self.failures:
                raise self.failures.pop(0)
            handle = "0x" + uuid.uuid4().hex
            self.submitted.append({
                "handle": handle,
                "executor": executor,
                "grant": grant,
                "calls": list(calls),
            })
            self.deployed.add(executor.lower())
            log.info("gateway.simulated_submit", executor=executor, handle=handle[:12], calls=len(calls))
            return handle
        finally:
            self._in_flight -= 1

    async def wait_for_receipt(self, handle: str, timeout: float) -> Receipt:
        if self.receipt_failures:
            raise self.receipt_failures.pop(0)
        return Receipt(handle=handle, success=True, tx_hash=handle, details={"simulated": True})

    async def get_bytecode(self, address: str) -> bytes | None:
        return b"\x60\x80" if address.lower() in self.deployed else None
