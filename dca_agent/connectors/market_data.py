"""Balances and market-metrics collaborator.

Two implementations:
  - HttpMarketDataClient: JSON over httpx against an indexer service
  - StaticMarketData: fixed portfolio and metrics for dry runs and tests

Endpoints (HttpMarketDataClient):
  - GET /balances/{address}         -> {"MON": "1.5", "USDC": "20", ...}
  - GET /metrics/today              -> {"txCountToday", "feesTodayNative", "recentLargeTransfers"}
  - GET /metrics/tokens             -> [{"token", "price", "priceChange24h", ...}]
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from dca_agent.config import SimulationConfig
from dca_agent.connectors.rate_limiter import RateLimiterRegistry
from dca_agent.errors import ConfigurationError
from dca_agent.observability.logger import get_logger

log = get_logger(__name__)

_TIMEOUT = httpx.Timeout(15.0, connect=10.0)
_HEADERS = {"Accept": "application/json", "User-Agent": "dca-agent/1.0"}


# ── Data Models ──────────────────────────────────────────────────────

@dataclass
class LargeTransfer:
    """A whale-sized transfer seen in the last 24h."""
    tx_hash: str = ""
    token: str = ""
    amount: float = 0.0
    timestamp: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "token": self.token,
            "amount": self.amount,
            "timestamp": self.timestamp,
        }


@dataclass
class MarketMetrics:
    tx_count_today: int = 0
    fees_today_native: float = 0.0
    recent_large_transfers: list[LargeTransfer] = field(default_factory=list)

    @property
    def whale_count(self) -> int:
        return len(self.recent_large_transfers)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tx_count_today": self.tx_count_today,
            "fees_today_native": self.fees_today_native,
            "recent_large_transfers": [t.to_dict() for t in self.recent_large_transfers],
        }


@dataclass
class TokenMetrics:
    """Per-token market snapshot used by the decision engine."""
    token: str
    price: float = 0.0
    price_change_24h: float = 0.0
    volume_24h: float = 0.0
    volatility: float = 0.0
    momentum: float = 0.0
    liquidity_score: float = 0.0
    trend: str = "sideways"  # bullish | bearish | sideways

    def to_dict(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "price": self.price,
            "price_change_24h": round(self.price_change_24h, 4),
            "volume_24h": round(self.volume_24h, 4),
            "volatility": round(self.volatility, 4),
            "momentum": round(self.momentum, 4),
            "liquidity_score": round(self.liquidity_score, 4),
            "trend": self.trend,
        }


class MarketDataSource(Protocol):
    async def get_balances(self, address: str) -> dict[str, str]: ...

    async def get_market_metrics(self) -> MarketMetrics: ...

    async def get_token_metrics(self) -> list[TokenMetrics]: ...


# ── HTTP client ──────────────────────────────────────────────────────

def _parse_transfer(raw: dict[str, Any]) -> LargeTransfer:
    return LargeTransfer(
        tx_hash=str(raw.get("txHash", raw.get("tx_hash", ""))),
        token=str(raw.get("token", "")),
        amount=float(raw.get("amount", 0) or 0),
        timestamp=float(raw.get("timestamp", 0) or 0),
    )


def _parse_token_metrics(raw: dict[str, Any]) -> TokenMetrics:
    return TokenMetrics(
        token=str(raw.get("token", "")).upper(),
        price=float(raw.get("price", 0) or 0),
        price_change_24h=float(raw.get("priceChange24h", 0) or 0),
        volume_24h=float(raw.get("volume24h", 0) or 0),
        volatility=float(raw.get("volatility", 0) or 0),
        momentum=float(raw.get("momentum", 0) or 0),
        liquidity_score=float(raw.get("liquidityScore", 0) or 0),
        trend=str(raw.get("trend", "sideways")),
    )


class HttpMarketDataClient:
    """Async client for the balances / metrics indexer."""

    def __init__(self, base_url: str, rate_limiter: RateLimiterRegistry | None = None):
        if not base_url:
            raise ConfigurationError("execution.market_data_url is required for live execution")
        self._base = base_url.rstrip("/")
        self._client: httpx.AsyncClient | None = None
        self._bucket = (rate_limiter or RateLimiterRegistry()).get("market_data")

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._base,
                timeout=_TIMEOUT,
                headers=_HEADERS,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=8),
        retry=retry_if_exception_type(httpx.HTTPError),
        reraise=True,
    )
    async def _get_json(self, path: str) -> Any:
        await self._bucket.acquire()
        client = await self._ensure_client()
        resp = await client.get(path)
        resp.raise_for_status()
        return resp.json()

    async def get_balances(self, address: str) -> dict[str, str]:
        data = await self._get_json(f"/balances/{address}")
        balances = {str(k).upper(): str(v) for k, v in (data or {}).items()}
        log.debug("market_data.balances", address=address, tokens=len(balances))
        return balances

    async def get_market_metrics(self) -> MarketMetrics:
        data = await self._get_json("/metrics/today") or {}
        return MarketMetrics(
            tx_count_today=int(data.get("txCountToday", 0) or 0),
            fees_today_native=float(data.get("feesTodayNative", 0) or 0),
            recent_large_transfers=[
                _parse_transfer(t) for t in data.get("recentLargeTransfers", [])
            ],
        )

    async def get_token_metrics(self) -> list[TokenMetrics]:
        data = await self._get_json("/metrics/tokens") or []
        return [_parse_token_metrics(t) for t in data]


# ── Static source ────────────────────────────────────────────────────

class StaticMarketData:
    """In-memory balances and metrics; tests mutate the attributes directly."""

    def __init__(
        self,
        balances: dict[str, str] | None = None,
        metrics: MarketMetrics | None = None,
        token_metrics: list[TokenMetrics] | None = None,
    ):
        self.balances = dict(balances or {})
        self.metrics = metrics or MarketMetrics()
        self.token_metrics = list(token_metrics or [])

    @classmethod
    def from_config(cls, sim: SimulationConfig) -> StaticMarketData:
        return cls(
            balances=sim.balances,
            metrics=MarketMetrics(
                tx_count_today=sim.tx_count_today,
                fees_today_native=sim.fees_today_native,
            ),
        )

    async def get_balances(self, address: str) -> dict[str, str]:
        return dict(self.balances)

    async def get_market_metrics(self) -> MarketMetrics:
        return self.metrics

    async def get_token_metrics(self) -> list[TokenMetrics]:
        return list(self.token_metrics)
