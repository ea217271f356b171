"""Decision engine: turns balances and market metrics into one action.

Three paths produce a Decision:
  1. manual   - echo caller parameters as a Buy, confidence 1
  2. policy   - ask the reasoning backend, then apply the guards
  3. fallback - deterministic heuristic when the backend fails

Whatever the path, the interval and confidence are clamped before the
decision is stored. History is most-recent-first and bounded.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable

from pydantic import ValidationError

from dca_agent.config import DecisionConfig, ReasoningConfig, ScheduleConfig, TokensConfig
from dca_agent.connectors.market_data import MarketMetrics, TokenMetrics
from dca_agent.decision.actions import (
    BuyAction,
    Decision,
    HoldAction,
    SellToStableAction,
    SwapAction,
    describe,
    parse_policy_response,
)
from dca_agent.decision.guards import (
    apply_anti_concentration,
    apply_conservative_guard,
    clamp_amount,
)
from dca_agent.decision.personality import PersonalityProfile, get_profile
from dca_agent.decision.reasoning import (
    ReasoningBackend,
    build_decision_prompt,
    build_system_prompt,
)
from dca_agent.observability.logger import get_logger
from dca_agent.observability.metrics import MetricsCollector
from dca_agent.storage.kv_store import KeyValueStore, safe_set

log = get_logger(__name__)

HISTORY_KEY = "decisions:history"


@dataclass
class ManualParams:
    """Fixed DCA parameters supplied by the caller."""
    amount: float
    target: str
    interval_seconds: int
    source: str = ""


def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


class DecisionEngine:
    """Produces, validates and records decisions."""

    def __init__(
        self,
        config: DecisionConfig,
        schedule: ScheduleConfig,
        tokens: TokensConfig,
        backend: ReasoningBackend | None = None,
        reasoning: ReasoningConfig | None = None,
        store: KeyValueStore | None = None,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config
        self._schedule = schedule
        self._tokens = tokens
        self._backend = backend
        self._reasoning_enabled = reasoning.enabled if reasoning else backend is not None
        self._store = store
        self._metrics = metrics or MetricsCollector()
        self._clock = clock
        self._history: list[Decision] = self._load_history()

    # ── Reads ────────────────────────────────────────────────────────

    @property
    def history(self) -> list[Decision]:
        return list(self._history)

    def get(self, decision_id: str) -> Decision | None:
        for d in self._history:
            if d.id == decision_id:
                return d
        return None

    def latest_pending(self) -> Decision | None:
        for d in self._history:
            if not d.executed:
                return d
        return None

    def recent_targets(self) -> list[str]:
        targets = [
            d.action.target
            for d in self._history
            if isinstance(d.action, (BuyAction, SwapAction))
        ]
        return targets[: self._config.recent_targets_window]

    def portfolio_value(self, balances: dict[str, str]) -> float:
        """Total value of the balances in native units."""
        return sum(
            _to_float(amount) * self._tokens.price(symbol)
            for symbol, amount in balances.items()
        )

    # ── Decide ───────────────────────────────────────────────────────

    async def decide(
        self,
        balances: dict[str, str],
        metrics: MarketMetrics,
        personality: str,
        mode: str = "policy",
        *,
        manual: ManualParams | None = None,
        token_metrics: list[TokenMetrics] | None = None,
    ) -> Decision:
        profile = get_profile(personality)
        portfolio_value = self.portfolio_value(balances)
        snapshot = {
            "balances": dict(balances),
            "metrics": metrics.to_dict(),
            "portfolio_value_native": portfolio_value,
        }

        if mode == "manual":
            if manual is None:
                raise ValueError("manual mode requires ManualParams")
            decision = Decision(
                personality=profile.name,
                action=BuyAction(
                    source=(manual.source or self._tokens.base_symbol).upper(),
                    target=manual.target.upper(),
                    amount=manual.amount,
                    reason="manual DCA",
                ),
                next_interval_seconds=int(manual.interval_seconds),
                confidence=1.0,
                source="manual",
            )
        else:
            decision = await self._policy_decision(
                balances, metrics, token_metrics or [], profile, portfolio_value,
            )

        decision.context_snapshot = snapshot
        decision.timestamp = self._clock()
        decision = self._validate(decision)
        self._record(decision)
        self._metrics.incr(f"decision.{decision.source}")
        log.info(
            "decision.made",
            id=decision.id,
            source=decision.source,
            personality=decision.personality,
            action=describe(decision.action),
            next_interval=decision.next_interval_seconds,
            confidence=round(decision.confidence, 3),
        )
        return decision

    async def _policy_decision(
        self,
        balances: dict[str, str],
        metrics: MarketMetrics,
        token_metrics: list[TokenMetrics],
        profile: PersonalityProfile,
        portfolio_value: float,
    ) -> Decision:
        if self._backend is None or not self._reasoning_enabled:
            return self._fallback(balances, metrics, profile, portfolio_value, "reasoning disabled")

        recent = self.recent_targets()
        prompt = build_decision_prompt(
            balances=balances,
            metrics=metrics,
            token_metrics=token_metrics,
            portfolio_value=portfolio_value,
            profile=profile,
            recent_targets=recent,
            allowed_targets=self._config.allowed_targets,
            base_symbol=self._tokens.base_symbol,
            stable_symbol=self._tokens.stable_symbol,
            min_interval=self._schedule.min_interval_secs,
            max_interval=self._schedule.max_interval_secs,
        )
        try:
            content = await self._backend.complete(build_system_prompt(profile), prompt)
            action, next_interval, confidence = parse_policy_response(content)
        except Exception as e:
            log.warning("decision.policy_failed", personality=profile.name, error=str(e))
            self._metrics.incr("decision.policy_failures")
            return self._fallback(balances, metrics, profile, portfolio_value, str(e))

        action = apply_anti_concentration(
            action, recent, self._config.allowed_targets, profile.max_repeat,
        )
        if profile.apply_conservative_guard:
            action = apply_conservative_guard(
                action,
                {tm.token.upper(): tm for tm in token_metrics},
                self._config.allowed_targets,
                self._config.conservative,
                self._tokens.stable_symbol,
                recent[0] if recent else None,
                self._config.fallback_hold_secs,
            )
            if isinstance(action, (BuyAction, SwapAction)):
                action = clamp_amount(
                    action, profile, portfolio_value, self._tokens.price(action.source),
                )

        return Decision(
            personality=profile.name,
            action=action,
            next_interval_seconds=int(next_interval),
            confidence=max(self._config.min_policy_confidence, confidence),
            source="policy",
        )

    def _fallback(
        self,
        balances: dict[str, str],
        metrics: MarketMetrics,
        profile: PersonalityProfile,
        portfolio_value: float,
        cause: str,
    ) -> Decision:
        cfg = self._config
        base = self._tokens.base_symbol
        stable = self._tokens.stable_symbol
        action: Any = None

        if metrics.whale_count > cfg.whale_alert_threshold:
            holding = self._largest_volatile_holding(balances)
            if holding is not None:
                symbol, held = holding
                amount = min(
                    held,
                    cfg.fallback_whale_fraction * portfolio_value / self._tokens.price(symbol),
                )
                if amount > 0:
                    action = SellToStableAction(
                        from_token=symbol,
                        amount=amount,
                        reason=f"high whale activity ({metrics.whale_count}), moving to {stable}",
                    )

        if action is None and portfolio_value > 0:
            native_value = _to_float(balances.get(base)) * self._tokens.price(base)
            share = native_value / portfolio_value
            if share > cfg.native_concentration_threshold:
                action = BuyAction(
                    source=base,
                    target=stable,
                    amount=cfg.fallback_diversify_fraction * portfolio_value / self._tokens.price(base),
                    reason=f"{base} is {share:.0%} of portfolio, diversifying into {stable}",
                )

        if action is None:
            action = HoldAction(
                duration_seconds=cfg.fallback_hold_secs,
                reason="no clear signal, holding",
            )

        log.info("decision.fallback", cause=cause, action=describe(action))
        return Decision(
            personality=profile.name,
            action=action,
            next_interval_seconds=cfg.fallback_hold_secs,
            confidence=cfg.fallback_confidence,
            source="fallback",
        )

    def _largest_volatile_holding(self, balances: dict[str, str]) -> tuple[str, float] | None:
        best: tuple[str, float] | None = None
        best_value = 0.0
        for symbol, amount in balances.items():
            info = self._tokens.get(symbol)
            if info is None or info.native or info.stable:
                continue
            if symbol.upper() == self._tokens.wrapped_base_symbol.upper():
                continue
            held = _to_float(amount)
            value = held * info.native_price
            if held > 0 and value > best_value:
                best, best_value = (symbol.upper(), held), value
        return best

    def _validate(self, decision: Decision) -> Decision:
        lo = self._schedule.min_interval_secs
        hi = self._schedule.max_interval_secs
        decision.next_interval_seconds = int(max(lo, min(hi, decision.next_interval_seconds)))
        decision.confidence = max(0.0, min(1.0, float(decision.confidence)))
        return decision

    # ── State ────────────────────────────────────────────────────────

    def mark_executed(self, decision_id: str) -> bool:
        decision = self.get(decision_id)
        if decision is None or decision.executed:
            return False
        decision.executed = True
        self._persist()
        return True

    def settle_elapsed_holds(self, now: float | None = None) -> int:
        """Mark Hold decisions whose duration has run out as executed."""
        now = self._clock() if now is None else now
        settled = 0
        for d in self._history:
            if d.executed or not isinstance(d.action, HoldAction):
                continue
            if d.timestamp + d.action.duration_seconds <= now:
                d.executed = True
                settled += 1
        if settled:
            self._persist()
        return settled

    def _record(self, decision: Decision) -> None:
        self._history.insert(0, decision)
        del self._history[self._config.history_limit:]
        self._persist()

    def _persist(self) -> None:
        if self._store is not None:
            safe_set(self._store, HISTORY_KEY, [d.model_dump() for d in self._history])

    def _load_history(self) -> list[Decision]:
        if self._store is None:
            return []
        try:
            raw = self._store.get(HISTORY_KEY) or []
        except Exception as e:
            log.warning("decision.history_read_failed", error=str(e))
            return []
        history: list[Decision] = []
        for item in raw:
            try:
                history.append(Decision.model_validate(item))
            except ValidationError as e:
                log.warning("decision.history_entry_dropped", error=str(e))
        return history[: self._config.history_limit]
