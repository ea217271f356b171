"""Reasoning backend: prompt construction and the OpenAI chat client.

The backend only turns (system, prompt) into raw text. Parsing and
fallback live in the decision engine, so any backend returning the
documented JSON shape can be swapped in.
"""

from __future__ import annotations

from typing import Protocol

import openai
from openai import AsyncOpenAI

from dca_agent.config import ReasoningConfig
from dca_agent.connectors.market_data import MarketMetrics, TokenMetrics
from dca_agent.connectors.rate_limiter import RateLimiterRegistry
from dca_agent.connectors.retry import RetryPolicy
from dca_agent.decision.personality import PersonalityProfile
from dca_agent.errors import NetworkTimeout, RecoverableError
from dca_agent.observability.logger import get_logger

log = get_logger(__name__)


class ReasoningBackend(Protocol):
    async def complete(self, system: str, prompt: str) -> str: ...


_SYSTEM_PROMPT = (
    "You are an autonomous DeFi trading agent making real decisions for a "
    "dollar-cost-averaging bot. Always respond with valid JSON only. {posture}"
)

_DECISION_PROMPT = """
CURRENT PORTFOLIO:
{balance_lines}
- Total Value: {portfolio_value:.4f} {base}

MARKET CONDITIONS:
- Transactions Today: {tx_count} ({market_activity} activity)
- Whale Alerts 24h: {whale_count} ({whale_activity} whale activity)
- Network Fees: {fees:.6f} {base}
{token_block}
RECENT TARGETS (newest first): {recent_targets}

PERSONALITY: {personality}
{posture}

DECISION REQUIRED:
Choose ONE action for the next DCA execution. Consider portfolio balance,
market conditions, and your personality. Avoid buying the same target
repeatedly.

CONSTRAINTS:
- Amount: {min_amount:.4f}-{max_amount:.4f} {base} of value
- Next interval: {min_interval}-{max_interval} seconds
- Target tokens: {allowed}
- Actions: BUY (spend source to get target), SWAP (volatile to volatile),
  HOLD (wait), SELL_TO_MON (convert to native), SELL_TO_USDC (safe haven)

Respond with JSON only:
{{
  "action": {{
    "type": "BUY|SWAP|HOLD|SELL_TO_MON|SELL_TO_USDC",
    "sourceToken": "{base}|{stable}",
    "targetToken": "{allowed_pipe}",
    "fromToken": "token to sell, for SELL_* actions",
    "amount": "0.05",
    "reasoning": "Market analysis and decision rationale"
  }},
  "nextInterval": 300,
  "confidence": 0.8
}}
"""


def _level(value: int, high: int, medium: int) -> str:
    if value > high:
        return "HIGH"
    if value > medium:
        return "MEDIUM"
    return "LOW"


def build_system_prompt(profile: PersonalityProfile) -> str:
    return _SYSTEM_PROMPT.format(posture=profile.posture)


def build_decision_prompt(
    *,
    balances: dict[str, str],
    metrics: MarketMetrics,
    token_metrics: list[TokenMetrics],
    portfolio_value: float,
    profile: PersonalityProfile,
    recent_targets: list[str],
    allowed_targets: list[str],
    base_symbol: str,
    stable_symbol: str,
    min_interval: int,
    max_interval: int,
) -> str:
    balance_lines = "\n".join(f"- {sym}: {amt}" for sym, amt in sorted(balances.items()))
    token_block = ""
    if token_metrics:
        lines = ["", "TOKEN METRICS:"]
        for tm in token_metrics:
            lines.append(
                f"- {tm.token}: Price {tm.price:.6f}, Change 24h: {tm.price_change_24h:.2f}%, "
                f"Volume: {tm.volume_24h:.2f}, Volatility: {tm.volatility:.2f}, "
                f"Momentum: {tm.momentum:.2f}, Liquidity: {tm.liquidity_score:.2f}, Trend: {tm.trend}"
            )
        token_block = "\n".join(lines) + "\n"

    return _DECISION_PROMPT.format(
        balance_lines=balance_lines or "- (empty)",
        portfolio_value=portfolio_value,
        base=base_symbol,
        stable=stable_symbol,
        tx_count=metrics.tx_count_today,
        market_activity=_level(metrics.tx_count_today, 50, 20),
        whale_count=metrics.whale_count,
        whale_activity=_level(metrics.whale_count, 10, 5),
        fees=metrics.fees_today_native,
        token_block=token_block,
        recent_targets=", ".join(recent_targets) or "none",
        personality=profile.name.upper(),
        posture=profile.posture,
        min_amount=portfolio_value * profile.min_trade_pct,
        max_amount=portfolio_value * profile.max_trade_pct,
        min_interval=min_interval,
        max_interval=max_interval,
        allowed=", ".join(allowed_targets),
        allowed_pipe="|".join(allowed_targets),
    )


class OpenAIReasoningBackend:
    """Chat-completions backend with rate limiting and the shared retry policy."""

    def __init__(
        self,
        config: ReasoningConfig,
        rate_limiter: RateLimiterRegistry | None = None,
        retry: RetryPolicy | None = None,
        client: AsyncOpenAI | None = None,
    ):
        self._config = config
        self._limiter = rate_limiter or RateLimiterRegistry()
        self._retry = retry or RetryPolicy.for_reasoning(config)
        self._llm = client or AsyncOpenAI()

    async def complete(self, system: str, prompt: str) -> str:
        return await self._retry.run(
            lambda: self._complete_once(system, prompt),
            op="reasoning.complete",
        )

    async def _complete_once(self, system: str, prompt: str) -> str:
        await self._limiter.get("openai").acquire()
        try:
            resp = await self._llm.chat.completions.create(
                model=self._config.llm_model,
                temperature=self._config.llm_temperature,
                max_tokens=self._config.llm_max_tokens,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
            )
        except openai.APITimeoutError as e:
            raise NetworkTimeout(f"reasoning backend timed out: {e}") from e
        except (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError) as e:
            raise RecoverableError(f"reasoning backend unavailable: {e}") from e

        content = resp.choices[0].message.content if resp.choices else None
        if not content:
            raise RecoverableError("reasoning backend returned no content")
        log.debug("reasoning.response", model=self._config.llm_model, chars=len(content))
        return content
