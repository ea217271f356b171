"""Decision records and the closed set of actions a decision may carry.

Actions form a tagged union on ``kind``; consumers match on the concrete
class rather than probing optional fields.
"""

from __future__ import annotations

import json
import math
import time
import uuid
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, ValidationError

from dca_agent.errors import DecisionParseError


# ── Actions ──────────────────────────────────────────────────────────

class BuyAction(BaseModel):
    kind: Literal["buy"] = "buy"
    source: str
    target: str
    amount: float = Field(gt=0, allow_inf_nan=False)
    reason: str = ""


class SwapAction(BaseModel):
    kind: Literal["swap"] = "swap"
    source: str
    target: str
    amount: float = Field(gt=0, allow_inf_nan=False)
    reason: str = ""


class HoldAction(BaseModel):
    kind: Literal["hold"] = "hold"
    duration_seconds: int = Field(ge=0)
    reason: str = ""


class SellToBaseAction(BaseModel):
    kind: Literal["sell_to_base"] = "sell_to_base"
    from_token: str
    amount: float = Field(gt=0, allow_inf_nan=False)
    reason: str = ""


class SellToStableAction(BaseModel):
    kind: Literal["sell_to_stable"] = "sell_to_stable"
    from_token: str
    amount: float = Field(gt=0, allow_inf_nan=False)
    reason: str = ""


Action = Annotated[
    Union[BuyAction, SwapAction, HoldAction, SellToBaseAction, SellToStableAction],
    Field(discriminator="kind"),
]

TradeAction = Union[BuyAction, SwapAction]
SellAction = Union[SellToBaseAction, SellToStableAction]


def spend_of(action: Any) -> tuple[str, float] | None:
    """(symbol, amount) the action spends, or None for a Hold."""
    if isinstance(action, (BuyAction, SwapAction)):
        return action.source, action.amount
    if isinstance(action, (SellToBaseAction, SellToStableAction)):
        return action.from_token, action.amount
    return None


def describe(action: Any) -> str:
    if isinstance(action, (BuyAction, SwapAction)):
        return f"{action.kind.upper()} {action.amount:g} {action.source} -> {action.target}"
    if isinstance(action, SellToBaseAction):
        return f"SELL {action.amount:g} {action.from_token} -> base"
    if isinstance(action, SellToStableAction):
        return f"SELL {action.amount:g} {action.from_token} -> stable"
    if isinstance(action, HoldAction):
        return f"HOLD {action.duration_seconds}s"
    return str(action)


# ── Decision ─────────────────────────────────────────────────────────

class Decision(BaseModel):
    id: str = Field(default_factory=lambda: f"dec_{uuid.uuid4().hex[:12]}")
    timestamp: float = Field(default_factory=time.time)
    personality: str = "balanced"
    action: Action
    context_snapshot: dict[str, Any] = Field(default_factory=dict)
    next_interval_seconds: int = 300
    confidence: float = 0.5
    executed: bool = False
    source: Literal["manual", "policy", "fallback"] = "policy"

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump()


# ── Policy response parsing ─────────────────────────────────────────

_TYPE_ALIASES = {
    "BUY": "buy",
    "SWAP": "swap",
    "HOLD": "hold",
    "SELL_TO_MON": "sell_to_base",
    "SELL_TO_BASE": "sell_to_base",
    "SELL_TO_USDC": "sell_to_stable",
    "SELL_TO_STABLE": "sell_to_stable",
}


def _strip_fences(raw_text: str) -> str:
    raw_text = raw_text.strip()
    if raw_text.startswith("```"):
        raw_text = raw_text.split("\n", 1)[1] if "\n" in raw_text else raw_text[3:]
    if raw_text.endswith("```"):
        raw_text = raw_text[:-3]
    return raw_text.strip()


def parse_policy_response(content: str) -> tuple[Any, float, float]:
    """Parse a backend reply into ``(action, next_interval, confidence)``.

    Accepts an optional markdown fence around the JSON. Interval and
    confidence are returned unclamped. Raises ``DecisionParseError`` when
    the reply does not describe exactly one known action.
    """
    try:
        parsed = json.loads(_strip_fences(content or ""))
    except json.JSONDecodeError as e:
        raise DecisionParseError(f"reply is not JSON: {e}") from e
    if not isinstance(parsed, dict) or not isinstance(parsed.get("action"), dict):
        raise DecisionParseError("reply has no action object")

    raw = parsed["action"]
    kind = _TYPE_ALIASES.get(str(raw.get("type", "")).upper())
    if kind is None:
        raise DecisionParseError(f"unknown action type: {raw.get('type')!r}")

    try:
        next_interval = float(parsed.get("nextInterval", 300) or 300)
        confidence = float(parsed.get("confidence", 0.5))
    except (TypeError, ValueError) as e:
        raise DecisionParseError(f"bad interval or confidence: {e}") from e
    if not (math.isfinite(next_interval) and math.isfinite(confidence)):
        raise DecisionParseError("interval and confidence must be finite")

    reason = str(raw.get("reasoning") or raw.get("reason") or "policy decision")
    try:
        if kind in ("buy", "swap"):
            cls = BuyAction if kind == "buy" else SwapAction
            action: Any = cls(
                source=str(raw.get("sourceToken", "MON")).upper(),
                target=str(raw["targetToken"]).upper(),
                amount=float(raw["amount"]),
                reason=reason,
            )
        elif kind == "hold":
            duration = raw.get("duration", parsed.get("nextInterval", 300))
            action = HoldAction(duration_seconds=int(float(duration)), reason=reason)
        else:
            cls = SellToBaseAction if kind == "sell_to_base" else SellToStableAction
            from_token = raw.get("fromToken") or raw.get("targetToken")
            if not from_token:
                raise DecisionParseError("sell action names no token")
            action = cls(
                from_token=str(from_token).upper(),
                amount=float(raw["amount"]),
                reason=reason,
            )
    except KeyError as e:
        raise DecisionParseError(f"action missing field {e}") from e
    except (TypeError, ValueError, OverflowError, ValidationError) as e:
        raise DecisionParseError(f"invalid action fields: {e}") from e
    return action, next_interval, confidence
