"""Audit pipeline: evaluates rules, aggregates them and keeps a hash-chained history.

Status:
  FAIL  any critical or high rule failed
  WARN  any medium rule failed
  PASS  otherwise

risk_score = min(100, 40*critical + 25*high + 15*medium + 5*low) over failed rules.

Each report's checksum covers its content plus the previous report's
checksum, so editing or dropping a stored report breaks the chain.
The pipeline only reports; it never blocks execution itself.
"""

from __future__ import annotations

import hashlib
import json
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable

from dca_agent.audit.rules import DEFAULT_RULES, AuditContext, AuditRule, RuleResult
from dca_agent.decision.actions import Decision
from dca_agent.observability.logger import get_logger
from dca_agent.observability.metrics import MetricsCollector
from dca_agent.storage.kv_store import KeyValueStore, safe_set

log = get_logger(__name__)

HISTORY_KEY = "audits:history"
SPEND_KEY = "audits:spend"

_WEIGHTS = {"critical": 40, "high": 25, "medium": 15, "low": 5}
_DAY_SECS = 24 * 3600


@dataclass(frozen=True)
class AuditReport:
    decision_ref: str
    timestamp: float
    rule_results: tuple[RuleResult, ...]
    overall_status: str  # PASS | WARN | FAIL
    risk_score: int
    action: dict[str, Any] = field(default_factory=dict)
    prev_checksum: str = ""
    checksum: str = ""

    def compute_checksum(self) -> str:
        content = json.dumps({
            "decision_ref": self.decision_ref,
            "timestamp": self.timestamp,
            "rule_results": [r.to_dict() for r in self.rule_results],
            "overall_status": self.overall_status,
            "risk_score": self.risk_score,
            "action": self.action,
            "prev_checksum": self.prev_checksum,
        }, sort_keys=True, default=str)
        return hashlib.sha256(content.encode()).hexdigest()

    def verify_integrity(self) -> bool:
        return self.checksum == self.compute_checksum()

    def failed(self, severity: str | None = None) -> list[RuleResult]:
        return [
            r for r in self.rule_results
            if not r.passed and (severity is None or r.severity == severity)
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision_ref": self.decision_ref,
            "timestamp": self.timestamp,
            "rule_results": [r.to_dict() for r in self.rule_results],
            "overall_status": self.overall_status,
            "risk_score": self.risk_score,
            "action": self.action,
            "prev_checksum": self.prev_checksum,
            "checksum": self.checksum,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> AuditReport:
        return cls(
            decision_ref=raw["decision_ref"],
            timestamp=float(raw["timestamp"]),
            rule_results=tuple(RuleResult(**r) for r in raw.get("rule_results", [])),
            overall_status=raw["overall_status"],
            risk_score=int(raw["risk_score"]),
            action=raw.get("action", {}),
            prev_checksum=raw.get("prev_checksum", ""),
            checksum=raw.get("checksum", ""),
        )


class SpendLedger:
    """Rolling 24h record of executed spend, in native units."""

    def __init__(
        self,
        store: KeyValueStore | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._clock = clock
        self._entries: list[tuple[float, float]] = []
        if store is not None:
            try:
                self._entries = [(float(t), float(v)) for t, v in store.get(SPEND_KEY) or []]
            except (TypeError, ValueError) as e:
                log.warning("audit.spend_ledger_corrupt", error=str(e))

    def record(self, value: float, at: float | None = None) -> None:
        if value <= 0:
            return
        self._entries.append((self._clock() if at is None else at, value))
        self._prune()
        if self._store is not None:
            safe_set(self._store, SPEND_KEY, self._entries)

    def total(self, now: float | None = None) -> float:
        now = self._clock() if now is None else now
        return sum(v for t, v in self._entries if now - t < _DAY_SECS)

    def _prune(self) -> None:
        cutoff = self._clock() - _DAY_SECS
        self._entries = [(t, v) for t, v in self._entries if t > cutoff]


def aggregate(results: list[RuleResult]) -> tuple[str, int]:
    """Overall status and risk score for a set of rule results."""
    fails = {s: 0 for s in _WEIGHTS}
    for r in results:
        if not r.passed:
            fails[r.severity] = fails.get(r.severity, 0) + 1
    if fails["critical"] or fails["high"]:
        status = "FAIL"
    elif fails["medium"]:
        status = "WARN"
    else:
        status = "PASS"
    score = min(100, sum(_WEIGHTS[s] * n for s, n in fails.items() if s in _WEIGHTS))
    return status, score


class AuditPipeline:
    """Runs the rule set and keeps the most recent reports."""

    def __init__(
        self,
        rules: list[AuditRule] | None = None,
        history_limit: int = 50,
        store: KeyValueStore | None = None,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._rules = list(rules or DEFAULT_RULES)
        self._limit = history_limit
        self._store = store
        self._metrics = metrics or MetricsCollector()
        self._clock = clock
        self._history: list[AuditReport] = self._load()

    def audit(self, decision: Decision, context: AuditContext) -> AuditReport:
        results = [self._evaluate(rule, decision, context) for rule in self._rules]
        status, score = aggregate(results)

        prev = self._history[0].checksum if self._history else ""
        report = AuditReport(
            decision_ref=decision.id,
            timestamp=self._clock(),
            rule_results=tuple(results),
            overall_status=status,
            risk_score=score,
            action=decision.action.model_dump(),
            prev_checksum=prev,
        )
        report = replace(report, checksum=report.compute_checksum())

        self._history.insert(0, report)
        del self._history[self._limit:]
        if self._store is not None:
            safe_set(self._store, HISTORY_KEY, [r.to_dict() for r in self._history])

        self._metrics.incr(f"audit.{status.lower()}")
        self._metrics.observe("audit.risk_score", score)
        log.info(
            "audit.completed",
            decision_id=decision.id,
            status=status,
            risk_score=score,
            failed=[r.rule_id for r in results if not r.passed],
        )
        return report

    def _evaluate(self, rule: AuditRule, decision: Decision, context: AuditContext) -> RuleResult:
        try:
            return rule.evaluate(decision, context)
        except Exception as e:
            log.error("audit.rule_error", rule_id=rule.rule_id, error=str(e))
            return RuleResult(
                rule_id=rule.rule_id,
                rule_name=rule.name,
                passed=False,
                severity=rule.severity,
                message=f"Rule raised: {e}",
            )

    # ── Reads ────────────────────────────────────────────────────────

    def history(self) -> list[AuditReport]:
        return list(self._history)

    def stats(self) -> dict[str, Any]:
        total = len(self._history)
        return {
            "total": total,
            "passed": sum(1 for r in self._history if r.overall_status == "PASS"),
            "warned": sum(1 for r in self._history if r.overall_status == "WARN"),
            "failed": sum(1 for r in self._history if r.overall_status == "FAIL"),
            "avg_risk_score": (
                round(sum(r.risk_score for r in self._history) / total, 2) if total else 0.0
            ),
        }

    def verify_chain(self) -> bool:
        """True if every stored report is intact and linked to its predecessor."""
        ordered = list(reversed(self._history))
        for i, report in enumerate(ordered):
            if not report.verify_integrity():
                log.warning("audit.chain_broken", decision_id=report.decision_ref, reason="checksum")
                return False
            if i > 0 and report.prev_checksum != ordered[i - 1].checksum:
                log.warning("audit.chain_broken", decision_id=report.decision_ref, reason="link")
                return False
        return True

    def export_decision_context(self, decision: Decision, context: AuditContext) -> dict[str, Any]:
        """Self-contained snapshot for external validation of a decision."""
        return {
            "decision": {
                "id": decision.id,
                "personality": decision.personality,
                "action": decision.action.model_dump(),
                "confidence": decision.confidence,
                "timestamp": decision.timestamp,
                "source": decision.source,
            },
            "context": {
                "portfolio_value": context.portfolio_value,
                "balances": dict(context.balances),
                "whale_alerts": context.metrics.whale_count,
                "tx_today": context.metrics.tx_count_today,
                "fees_today": context.metrics.fees_today_native,
                "spent_today": context.spent_today,
            },
            "constraints": {
                "max_daily_spend": context.max_daily_spend,
                "allowed_targets": list(context.allowed_targets),
                "max_slippage_bps": context.max_slippage_bps,
                "max_trade_pct": context.max_trade_pct,
            },
        }

    def _load(self) -> list[AuditReport]:
        if self._store is None:
            return []
        reports: list[AuditReport] = []
        try:
            raw = self._store.get(HISTORY_KEY) or []
        except Exception as e:
            log.warning("audit.history_read_failed", error=str(e))
            return []
        for item in raw:
            try:
                reports.append(AuditReport.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                log.warning("audit.history_entry_dropped", error=str(e))
        return reports[: self._limit]
