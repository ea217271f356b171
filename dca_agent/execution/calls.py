"""Call planning: turns a decision's action into contract calls.

  - Buy / Swap / SellToStable: approve(router) then swapExactTokensForTokens
  - SellToBase: swap into the wrapped base asset, then withdraw() it
  - Hold: no calls

The native asset is never swapped directly; it is routed through its
wrapped token. Every swap carries a slippage floor and a deadline.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal
from typing import Any

from dca_agent.config import (
    SELECTOR_APPROVE,
    SELECTOR_SWAP,
    SELECTOR_WITHDRAW,
    ExecutionConfig,
    TokenInfo,
    TokensConfig,
)
from dca_agent.connectors.chain_gateway import Call
from dca_agent.decision.actions import (
    BuyAction,
    HoldAction,
    SellToBaseAction,
    SellToStableAction,
    SwapAction,
    describe,
)
from dca_agent.errors import ConfigurationError, GrantScopeMismatch, InsufficientBalance
from dca_agent.grants.models import CapabilityGrant
from dca_agent.observability.logger import get_logger

log = get_logger(__name__)


@dataclass
class CallPlan:
    """Calls for one action, grouped into the operations to submit."""
    spend_symbol: str
    spend_amount: float
    spend_value: float  # native units
    batches: list[list[Call]] = field(default_factory=list)
    description: str = ""

    @property
    def calls(self) -> list[Call]:
        return [c for batch in self.batches for c in batch]

    def to_dict(self) -> dict[str, Any]:
        return {
            "spend_symbol": self.spend_symbol,
            "spend_amount": self.spend_amount,
            "spend_value": self.spend_value,
            "batches": [[c.to_dict() for c in b] for b in self.batches],
            "description": self.description,
        }


def to_units(amount: float, decimals: int) -> int:
    """Human amount to integer base units, rounding down."""
    scaled = Decimal(str(amount)) * (Decimal(10) ** decimals)
    return int(scaled.quantize(Decimal(1), rounding=ROUND_DOWN))


def min_out(amount_in: int, slippage_bps: int) -> int:
    return amount_in * (10_000 - slippage_bps) // 10_000


class CallPlanner:
    """Builds call plans against the configured token registry and router."""

    def __init__(self, tokens: TokensConfig, execution: ExecutionConfig):
        self._tokens = tokens
        self._execution = execution

    def _token(self, symbol: str) -> tuple[str, TokenInfo]:
        info = self._tokens.get(symbol)
        if info is None:
            raise ConfigurationError(f"unknown token {symbol!r}")
        if info.native:
            wrapped = self._tokens.get(self._tokens.wrapped_base_symbol)
            if wrapped is None:
                raise ConfigurationError("wrapped base token is not configured")
            return self._tokens.wrapped_base_symbol.upper(), wrapped
        return symbol.upper(), info

    def _swap(
        self, source: str, target: str, amount: float, recipient: str, now: float,
    ) -> tuple[list[Call], int]:
        src_sym, src = self._token(source)
        tgt_sym, tgt = self._token(target)
        if src.address.lower() == tgt.address.lower():
            raise ConfigurationError(f"{source} and {target} resolve to the same token")
        amount_in = to_units(amount, src.decimals)
        out_min = min_out(amount_in, self._execution.slippage_bps)
        deadline = int(now) + self._execution.swap_deadline_secs
        calls = [
            Call(target=src.address, selector=SELECTOR_APPROVE, args=[self._tokens.router, amount_in]),
            Call(
                target=self._tokens.router,
                selector=SELECTOR_SWAP,
                args=[amount_in, out_min, [src.address, tgt.address], recipient, deadline],
            ),
        ]
        return calls, out_min

    def plan(self, action: Any, recipient: str, now: float) -> CallPlan | None:
        """Call plan for ``action``; None for a Hold."""
        if isinstance(action, HoldAction):
            return None

        if isinstance(action, (BuyAction, SwapAction)):
            spend_symbol, amount = action.source, action.amount
            calls, _ = self._swap(action.source, action.target, amount, recipient, now)
        elif isinstance(action, SellToStableAction):
            spend_symbol, amount = action.from_token, action.amount
            calls, _ = self._swap(
                action.from_token, self._tokens.stable_symbol, amount, recipient, now,
            )
        elif isinstance(action, SellToBaseAction):
            spend_symbol, amount = action.from_token, action.amount
            wrapped_sym = self._tokens.wrapped_base_symbol
            wrapped = self._tokens.get(wrapped_sym)
            if wrapped is None:
                raise ConfigurationError("wrapped base token is not configured")
            if self._token(action.from_token)[0] == wrapped_sym.upper():
                calls = []
                unwrap = to_units(amount, wrapped.decimals)
            else:
                calls, unwrap = self._swap(action.from_token, wrapped_sym, amount, recipient, now)
            calls.append(Call(target=wrapped.address, selector=SELECTOR_WITHDRAW, args=[unwrap]))
        else:
            raise TypeError(f"unsupported action {type(action).__name__}")

        if self._execution.single_call_mode:
            batches = [[c] for c in calls]
        else:
            batches = [calls]
        plan = CallPlan(
            spend_symbol=spend_symbol.upper(),
            spend_amount=amount,
            spend_value=amount * self._tokens.price(spend_symbol),
            batches=batches,
            description=describe(action),
        )
        log.debug("calls.planned", action=plan.description, calls=len(calls), batches=len(batches))
        return plan


def check_scope(plan: CallPlan, grant: CapabilityGrant) -> None:
    """Refuse any call the grant does not cover."""
    for call in plan.calls:
        if not grant.allows(call.target, call.selector):
            raise GrantScopeMismatch(
                f"grant does not allow {call.selector} on {call.target}"
            )


def preflight_balance(plan: CallPlan, balances: dict[str, str]) -> None:
    """Raise InsufficientBalance when the spent token does not cover the plan."""
    raw = balances.get(plan.spend_symbol, balances.get(plan.spend_symbol.lower(), "0"))
    try:
        available = float(raw or 0)
    except (TypeError, ValueError):
        available = 0.0
    if available < plan.spend_amount:
        raise InsufficientBalance(plan.spend_symbol, available, plan.spend_amount)
