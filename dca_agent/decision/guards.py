"""Post-processing guards applied to policy-sourced actions.

  - anti-concentration: stop the same target being bought too many times in a row
  - conservative guard: reject targets with weak momentum, high volatility or thin liquidity
  - amount clamp: keep trade size inside the personality's band
"""

from __future__ import annotations

from typing import Any

from dca_agent.config import ConservativeGuardConfig
from dca_agent.connectors.market_data import TokenMetrics
from dca_agent.decision.actions import BuyAction, HoldAction, SwapAction
from dca_agent.decision.personality import PersonalityProfile
from dca_agent.observability.logger import get_logger

log = get_logger(__name__)


def leading_repeats(target: str, recent_targets: list[str]) -> int:
    """How many of the most recent targets (newest first) equal ``target`` in a row."""
    count = 0
    for t in recent_targets:
        if t.upper() != target.upper():
            break
        count += 1
    return count


def apply_anti_concentration(
    action: Any,
    recent_targets: list[str],
    allowed_targets: list[str],
    max_repeat: int,
) -> Any:
    if not isinstance(action, BuyAction):
        return action
    if leading_repeats(action.target, recent_targets) < max_repeat:
        return action

    for alt in allowed_targets:
        alt = alt.upper()
        if alt != action.target.upper() and alt != action.source.upper():
            log.info(
                "guards.anti_concentration",
                repeated=action.target,
                substitute=alt,
                max_repeat=max_repeat,
            )
            return action.model_copy(update={
                "target": alt,
                "reason": f"{action.reason} [diversified from {action.target}]".strip(),
            })
    return action


def _passes(
    symbol: str,
    metrics: dict[str, TokenMetrics],
    thresholds: ConservativeGuardConfig,
    stable_symbol: str,
) -> bool:
    m = metrics.get(symbol.upper())
    if m is None:
        return symbol.upper() == stable_symbol.upper()
    return (
        m.momentum >= thresholds.min_momentum
        and m.volatility <= thresholds.max_volatility
        and m.liquidity_score >= thresholds.min_liquidity_score
    )


def _score(m: TokenMetrics) -> float:
    return m.momentum + m.liquidity_score - m.volatility


def apply_conservative_guard(
    action: Any,
    token_metrics: dict[str, TokenMetrics],
    allowed_targets: list[str],
    thresholds: ConservativeGuardConfig,
    stable_symbol: str,
    prior_target: str | None,
    hold_secs: int,
) -> Any:
    """Keep the target if it clears every threshold, else re-select."""
    if not isinstance(action, (BuyAction, SwapAction)):
        return action
    if _passes(action.target, token_metrics, thresholds, stable_symbol):
        return action

    excluded = {action.target.upper(), action.source.upper()}
    if prior_target:
        excluded.add(prior_target.upper())
    candidates = [
        token_metrics[s.upper()]
        for s in allowed_targets
        if s.upper() not in excluded
        and s.upper() in token_metrics
        and _passes(s, token_metrics, thresholds, stable_symbol)
    ]
    if candidates:
        replacement = max(candidates, key=_score).token.upper()
    else:
        replacement = stable_symbol.upper()

    if replacement in (action.source.upper(), action.target.upper()):
        log.info("guards.conservative_hold", rejected=action.target)
        return HoldAction(
            duration_seconds=hold_secs,
            reason=f"no target clears conservative thresholds (rejected {action.target})",
        )

    log.info("guards.conservative_reselect", rejected=action.target, substitute=replacement)
    return action.model_copy(update={
        "target": replacement,
        "reason": f"{action.reason} [conservative guard replaced {action.target}]".strip(),
    })


def clamp_amount(
    action: Any,
    profile: PersonalityProfile,
    portfolio_value: float,
    source_price: float,
) -> Any:
    """Clamp a trade's amount into [min_pct, max_pct] of portfolio value, in source units."""
    if not isinstance(action, (BuyAction, SwapAction)):
        return action
    if portfolio_value <= 0 or source_price <= 0:
        return action
    lo = profile.min_trade_pct * portfolio_value / source_price
    hi = profile.max_trade_pct * portfolio_value / source_price
    amount = min(hi, max(lo, action.amount))
    if amount != action.amount:
        log.info("guards.amount_clamped", original=action.amount, clamped=amount)
        return action.model_copy(update={"amount": amount})
    return action
