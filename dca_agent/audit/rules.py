"""Audit rules: fixed, independently evaluated checks on a proposed decision.

Rules:
  1. grant-valid        (critical) capability grant not expired
  2. source-balance     (high)     enough of the spent token is held
  3. trade-size         (medium)   spend <= max_trade_pct of portfolio value
  4. target-allowlist   (high)     bought token is on the allow-list
  5. whale-activity     (medium)   no buying into heavy whale activity
  6. daily-spend        (medium)   rolling 24h spend stays under the cap
  7. market-conditions  (low)      informational, always passes
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from dca_agent.connectors.market_data import MarketMetrics
from dca_agent.decision.actions import BuyAction, Decision, SwapAction, spend_of

SEVERITIES = ("critical", "high", "medium", "low")


@dataclass
class AuditContext:
    """Everything the rules may look at besides the decision itself."""
    balances: dict[str, str]
    metrics: MarketMetrics
    portfolio_value: float
    grant_expired: bool
    max_daily_spend: float
    allowed_targets: list[str]
    max_slippage_bps: int
    spent_today: float = 0.0
    max_trade_pct: float = 5.0
    whale_alert_threshold: int = 10
    low_activity_tx: int = 10
    prices: dict[str, float] = field(default_factory=dict)

    def value_of(self, symbol: str, amount: float) -> float:
        """Native-unit value of ``amount`` of ``symbol``."""
        return amount * self.prices.get(symbol.upper(), 0.0)

    def balance_of(self, symbol: str) -> float:
        try:
            return float(self.balances.get(symbol.upper(), self.balances.get(symbol, "0")) or 0)
        except (TypeError, ValueError):
            return 0.0


@dataclass(frozen=True)
class RuleResult:
    rule_id: str
    rule_name: str
    passed: bool
    severity: str
    message: str
    recommendation: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "passed": self.passed,
            "severity": self.severity,
            "message": self.message,
            "recommendation": self.recommendation,
        }


# (passed, message, recommendation)
Outcome = tuple[bool, str, "str | None"]


@dataclass(frozen=True)
class AuditRule:
    rule_id: str
    name: str
    severity: str
    check: Callable[[Decision, AuditContext], Outcome]

    def evaluate(self, decision: Decision, context: AuditContext) -> RuleResult:
        passed, message, recommendation = self.check(decision, context)
        return RuleResult(
            rule_id=self.rule_id,
            rule_name=self.name,
            passed=passed,
            severity=self.severity,
            message=message,
            recommendation=None if passed else recommendation,
        )


# ── Checks ───────────────────────────────────────────────────────────

def _grant_valid(decision: Decision, ctx: AuditContext) -> Outcome:
    if ctx.grant_expired:
        return False, "Capability grant has expired", "Renew the grant before executing"
    return True, "Capability grant is valid", None


def _source_balance(decision: Decision, ctx: AuditContext) -> Outcome:
    spend = spend_of(decision.action)
    if spend is None:
        return True, "Balance check not applicable", None
    symbol, amount = spend
    available = ctx.balance_of(symbol)
    if available < amount:
        return (
            False,
            f"Insufficient {symbol}: {available:.6f} < {amount:.6f}",
            f"Reduce amount to at most {available:.6f} {symbol}",
        )
    return True, f"{symbol} balance {available:.6f} covers {amount:.6f}", None


def _trade_size(decision: Decision, ctx: AuditContext) -> Outcome:
    spend = spend_of(decision.action)
    if spend is None or ctx.portfolio_value <= 0:
        return True, "Amount check not applicable", None
    symbol, amount = spend
    pct = ctx.value_of(symbol, amount) / ctx.portfolio_value * 100
    if pct > ctx.max_trade_pct:
        return (
            False,
            f"Trade is {pct:.2f}% of portfolio (limit {ctx.max_trade_pct:.2f}%)",
            f"Keep trades under {ctx.max_trade_pct:.2f}% of portfolio value",
        )
    return True, f"Trade is {pct:.2f}% of portfolio", None


def _target_allowlist(decision: Decision, ctx: AuditContext) -> Outcome:
    action = decision.action
    if not isinstance(action, (BuyAction, SwapAction)):
        return True, "Token check not applicable", None
    allowed = {t.upper() for t in ctx.allowed_targets}
    if action.target.upper() not in allowed:
        return (
            False,
            f"{action.target} is not an allow-listed target",
            f"Choose one of: {', '.join(sorted(allowed))}",
        )
    return True, f"{action.target} is allow-listed", None


def _whale_activity(decision: Decision, ctx: AuditContext) -> Outcome:
    whales = ctx.metrics.whale_count
    if isinstance(decision.action, BuyAction) and whales > ctx.whale_alert_threshold:
        return (
            False,
            f"High whale activity detected ({whales} alerts)",
            "Consider waiting or reducing position size during high whale activity",
        )
    return True, f"Whale activity normal ({whales} alerts)", None


def _daily_spend(decision: Decision, ctx: AuditContext) -> Outcome:
    spend = spend_of(decision.action)
    if spend is None:
        return True, "Daily limit check not applicable", None
    symbol, amount = spend
    total = ctx.spent_today + ctx.value_of(symbol, amount)
    if total > ctx.max_daily_spend:
        return (
            False,
            f"Daily spend {total:.4f}/{ctx.max_daily_spend:g} exceeds cap",
            "Reduce amount or wait until spend rolls off",
        )
    return True, f"Daily spend {total:.4f}/{ctx.max_daily_spend:g}", None


def _market_conditions(decision: Decision, ctx: AuditContext) -> Outcome:
    tx = ctx.metrics.tx_count_today
    if isinstance(decision.action, BuyAction) and tx < ctx.low_activity_tx:
        return True, f"Low market activity ({tx} tx today), good for entry", None
    return True, f"Market activity: {tx} transactions today", None


DEFAULT_RULES: list[AuditRule] = [
    AuditRule("grant-valid", "Grant Validity", "critical", _grant_valid),
    AuditRule("source-balance", "Source Balance", "high", _source_balance),
    AuditRule("trade-size", "Trade Size Limit", "medium", _trade_size),
    AuditRule("target-allowlist", "Target Allow-list", "high", _target_allowlist),
    AuditRule("whale-activity", "Whale Activity Risk", "medium", _whale_activity),
    AuditRule("daily-spend", "Daily Spend Limit", "medium", _daily_spend),
    AuditRule("market-conditions", "Market Conditions", "low", _market_conditions),
]
