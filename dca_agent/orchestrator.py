"""Orchestrator: the facade callers use to run delegated DCA.

Each tick:
  1. Settle elapsed holds, honour the optional condition check
  2. Ensure a valid capability grant (refuse if expired)
  3. Fetch balances and market metrics
  4. Decide (manual parameters or policy)
  5. Audit the decision (observability only unless block_on_fail)
  6. Plan calls, check them against the grant, pre-flight the balance
  7. Submit through the operation serializer and wait for receipts
  8. Record spend, update status, adopt the decision's next interval

All collaborators are injected; ``build_orchestrator`` wires the
default set from config.
"""

from __future__ import annotations

import inspect
import os
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Union

from dca_agent.audit.pipeline import AuditPipeline, AuditReport, SpendLedger
from dca_agent.audit.rules import AuditContext
from dca_agent.config import AgentConfig, is_live_execution_enabled
from dca_agent.connectors.chain_gateway import (
    ChainGateway,
    HttpChainGateway,
    Receipt,
    SimulatedChainGateway,
)
from dca_agent.connectors.market_data import (
    HttpMarketDataClient,
    MarketDataSource,
    StaticMarketData,
)
from dca_agent.connectors.rate_limiter import RateLimiterRegistry
from dca_agent.connectors.retry import RetryPolicy
from dca_agent.decision.actions import Decision, SellToBaseAction
from dca_agent.decision.engine import DecisionEngine, ManualParams
from dca_agent.decision.reasoning import OpenAIReasoningBackend, ReasoningBackend
from dca_agent.errors import (
    ConfigurationError,
    GrantExpired,
    OperationInFlight,
    RelayFailure,
)
from dca_agent.execution.calls import CallPlan, CallPlanner, check_scope, preflight_balance
from dca_agent.execution.scheduler import ExecutionScheduler, SchedulerConfig
from dca_agent.execution.serializer import OperationSerializer
from dca_agent.grants.manager import GrantManager
from dca_agent.grants.models import CapabilityGrant
from dca_agent.grants.signer import HttpGrantSigner, SimulatedGrantSigner
from dca_agent.observability.logger import get_logger, tick_context
from dca_agent.observability.metrics import MetricsCollector
from dca_agent.storage.kv_store import KeyValueStore, open_store, safe_set

log = get_logger(__name__)

STATUS_KEY = "status:snapshot"

ConditionCheck = Callable[[], Union[bool, Awaitable[bool]]]


@dataclass
class ScheduleParams:
    mode: str = "policy"  # manual | policy
    interval_seconds: float = 300
    personality: str = "balanced"
    manual: ManualParams | None = None
    condition_check: ConditionCheck | None = None


@dataclass
class OrchestratorStatus:
    active: bool = False
    next_execution_time: float | None = None
    last_operation_handle: str | None = None
    last_error: str | None = None
    last_decision_id: str | None = None
    last_audit_status: str | None = None
    grant_expires_at: float | None = None
    grant_expired: bool = False
    ticks: int = 0
    pending_operations: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "active": self.active,
            "next_execution_time": self.next_execution_time,
            "last_operation_handle": self.last_operation_handle,
            "last_error": self.last_error,
            "last_decision_id": self.last_decision_id,
            "last_audit_status": self.last_audit_status,
            "grant_expires_at": self.grant_expires_at,
            "grant_expired": self.grant_expired,
            "ticks": self.ticks,
            "pending_operations": self.pending_operations,
        }


@dataclass
class TickResult:
    decision: Decision | None = None
    audit: AuditReport | None = None
    handles: list[str] = field(default_factory=list)
    skipped: str = ""


class Orchestrator:
    """Wires grant manager, scheduler, engine, audit and serializer together."""

    def __init__(
        self,
        config: AgentConfig,
        *,
        store: KeyValueStore,
        gateway: ChainGateway,
        market_data: MarketDataSource,
        grants: GrantManager,
        engine: DecisionEngine,
        auditor: AuditPipeline,
        spend_ledger: SpendLedger | None = None,
        serializer: OperationSerializer | None = None,
        scheduler: ExecutionScheduler | None = None,
        planner: CallPlanner | None = None,
        retry: RetryPolicy | None = None,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config
        self._store = store
        self._gateway = gateway
        self._market = market_data
        self._grants = grants
        self._engine = engine
        self._auditor = auditor
        self._metrics = metrics or MetricsCollector()
        self._spend = spend_ledger or SpendLedger(store, clock=clock)
        self._serializer = serializer or OperationSerializer(self._metrics)
        self._scheduler = scheduler or ExecutionScheduler(clock=clock)
        self._planner = planner or CallPlanner(config.tokens, config.execution)
        self._retry = retry or RetryPolicy.for_execution(config.execution)
        self._clock = clock

        self._params: ScheduleParams | None = None
        self._next_execution: float | None = None
        self._last_handle: str | None = None
        self._last_error: str | None = None
        self._last_decision_id: str | None = None
        self._last_audit_status: str | None = None
        self._grant: CapabilityGrant | None = None
        self._disposed = False
        self._restore_status()

    # ── Properties ───────────────────────────────────────────────────

    @property
    def engine(self) -> DecisionEngine:
        return self._engine

    @property
    def auditor(self) -> AuditPipeline:
        return self._auditor

    @property
    def grants(self) -> GrantManager:
        return self._grants

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    def _accounts(self) -> tuple[str, str]:
        grantor = self._config.accounts.grantor
        grantee = self._config.accounts.grantee
        if not grantor or not grantee:
            raise ConfigurationError("accounts.grantor and accounts.grantee must both be set")
        return grantor, grantee

    # ── Schedule ─────────────────────────────────────────────────────

    async def start_schedule(self, params: ScheduleParams) -> None:
        """Validate, ensure a usable grant, then start ticking."""
        self._check_open()
        floor = self._config.schedule.min_interval_secs
        if params.interval_seconds < floor:
            raise ConfigurationError(
                f"interval {params.interval_seconds}s is below the {floor}s minimum"
            )
        if params.mode == "manual" and params.manual is None:
            raise ConfigurationError("manual mode requires manual parameters")
        if params.mode not in ("manual", "policy"):
            raise ConfigurationError(f"unknown schedule mode {params.mode!r}")

        grantor, grantee = self._accounts()
        grant = await self._grants.ensure_grant(grantor, grantee)
        self._grant = grant
        if self._grants.is_expired(grant):
            self._last_error = "capability grant expired"
            self._persist_status()
            raise GrantExpired(grantor, grantee, grant.expires_at)

        self._params = params
        self._scheduler.start(SchedulerConfig(
            interval_seconds=params.interval_seconds,
            on_execute=self._on_execute,
            on_error=self._on_error,
            on_status_change=self._on_status_change,
        ))
        log.info(
            "orchestrator.schedule_started",
            mode=params.mode,
            interval_secs=params.interval_seconds,
            personality=params.personality,
        )
        if self._config.schedule.run_immediately:
            try:
                await self._execute(params)
            except Exception as e:
                self._on_error(e)

    def stop_schedule(self) -> None:
        self._scheduler.stop()
        self._params = None
        log.info("orchestrator.schedule_stopped")

    async def run_once(self, params: ScheduleParams) -> TickResult:
        """Run a single tick outside the schedule. Errors propagate."""
        self._check_open()
        try:
            return await self._execute(params)
        except Exception as e:
            self._record_error(e)
            raise

    # ── Grants / provisioning ───────────────────────────────────────

    async def renew_grant(self) -> CapabilityGrant:
        grantor, grantee = self._accounts()
        grant = await self._grants.renew(grantor, grantee)
        self._grant = grant
        if self._last_error and "expired" in self._last_error:
            self._last_error = None
        self._persist_status()
        return grant

    async def ensure_provisioned(self) -> bool:
        """True if the agent account already has code on-chain.

        An unprovisioned account is deployed by its first operation, so
        this only reports.
        """
        _, grantee = self._accounts()
        code = await self._retry.run(
            lambda: self._gateway.get_bytecode(grantee), op="orchestrator.get_bytecode",
        )
        provisioned = bool(code)
        log.info("orchestrator.provisioning", account=grantee, provisioned=provisioned)
        return provisioned

    async def emergency_exit(self) -> str | None:
        """Stop ticking, drop queued operations, unwrap all wrapped base
        and revoke the grantor's grants.

        Returns the unwrap operation handle, or None when nothing was held.
        Revocation is best-effort and runs even when the unwrap fails.
        """
        self.stop_schedule()
        dropped = self._serializer.close()
        grantor, grantee = self._accounts()
        try:
            balances = await self._market.get_balances(grantor)
            wrapped = self._config.tokens.wrapped_base_symbol.upper()
            try:
                held = float(balances.get(wrapped, "0") or 0)
            except ValueError:
                held = 0.0
            log.warning("orchestrator.emergency_exit", dropped_ops=dropped, wrapped_held=held)
            if held <= 0:
                return None
            return await self._unwrap_all(grantor, grantee, wrapped, held)
        finally:
            revoked = await self._grants.revoke_all(grantor)
            self._grant = None
            self._persist_status()
            log.warning("orchestrator.grants_revoked", owner=grantor, revoked=revoked)

    async def _unwrap_all(self, grantor: str, grantee: str, wrapped: str, held: float) -> str | None:
        grant = await self._usable_grant(grantor, grantee)
        plan = self._planner.plan(
            SellToBaseAction(from_token=wrapped, amount=held, reason="emergency exit"),
            recipient=grantor,
            now=self._clock(),
        )
        if plan is None:
            raise ConfigurationError(f"no unwrap route for {wrapped}")
        check_scope(plan, grant)
        handles = await self._serializer.enqueue(
            lambda: self._submit_plan(grantee, grant, plan), label="emergency_exit",
        )
        self._last_handle = handles[-1] if handles else self._last_handle
        return self._last_handle

    # ── Status ───────────────────────────────────────────────────────

    def get_status(self) -> OrchestratorStatus:
        grant = self._grant
        return OrchestratorStatus(
            active=self._scheduler.is_active,
            next_execution_time=self._next_execution if self._scheduler.is_active else None,
            last_operation_handle=self._last_handle,
            last_error=self._last_error,
            last_decision_id=self._last_decision_id,
            last_audit_status=self._last_audit_status,
            grant_expires_at=grant.expires_at if grant else None,
            grant_expired=self._grants.is_expired(grant) if grant else False,
            ticks=self._scheduler.status.ticks,
            pending_operations=self._serializer.pending,
        )

    async def dispose(self) -> None:
        """Stop timers, abort in-flight work and release connections."""
        if self._disposed:
            return
        self._disposed = True
        self._scheduler.stop()
        await self._serializer.abort()
        for resource in (self._gateway, self._market, self._grants):
            close = getattr(resource, "close", None)
            if close is not None:
                result = close()
                if inspect.isawaitable(result):
                    await result
        store_close = getattr(self._store, "close", None)
        if store_close is not None:
            store_close()
        log.info("orchestrator.disposed")

    # ── Tick ─────────────────────────────────────────────────────────

    async def _on_execute(self) -> None:
        params = self._params
        if params is None:
            return
        await self._execute(params)

    async def _execute(self, params: ScheduleParams) -> TickResult:
        with tick_context(mode=params.mode, personality=params.personality) as tick:
            return await self._execute_tick(params, tick)

    async def _execute_tick(self, params: ScheduleParams, tick: str) -> TickResult:
        grantor, grantee = self._accounts()
        self._engine.settle_elapsed_holds()

        if params.condition_check is not None:
            ok = params.condition_check()
            if inspect.isawaitable(ok):
                ok = await ok
            if not ok:
                log.info("orchestrator.tick_skipped", reason="condition_check")
                self._metrics.incr("orchestrator.ticks_skipped")
                return TickResult(skipped="condition_check")

        grant = await self._usable_grant(grantor, grantee)

        balances = await self._market.get_balances(grantor)
        market = await self._market.get_market_metrics()
        token_metrics = await self._market.get_token_metrics() if params.mode == "policy" else []

        decision = await self._engine.decide(
            balances,
            market,
            params.personality,
            params.mode,
            manual=params.manual,
            token_metrics=token_metrics,
        )
        self._last_decision_id = decision.id

        report = self._auditor.audit(decision, self._audit_context(balances, market, grant))
        self._last_audit_status = report.overall_status
        result = TickResult(decision=decision, audit=report)

        self._adopt_interval(params, decision)

        if self._config.audit.block_on_fail and report.overall_status == "FAIL":
            log.warning("orchestrator.blocked_by_audit", decision_id=decision.id, risk=report.risk_score)
            self._metrics.incr("orchestrator.blocked")
            result.skipped = "audit_failed"
            self._persist_status()
            return result

        plan = self._planner.plan(decision.action, recipient=grantor, now=self._clock())
        if plan is None:
            self._persist_status()
            result.skipped = "hold"
            return result

        check_scope(plan, grant)
        preflight_balance(plan, balances)

        handles = await self._serializer.enqueue(
            lambda: self._submit_plan(grantee, grant, plan, tick), label=decision.id,
        )
        self._engine.mark_executed(decision.id)
        self._spend.record(plan.spend_value)
        self._last_handle = handles[-1]
        self._last_error = None
        self._metrics.incr("orchestrator.executions")
        self._persist_status()
        log.info(
            "orchestrator.executed",
            decision_id=decision.id,
            action=plan.description,
            handle=self._last_handle,
        )
        result.handles = handles
        return result

    async def _usable_grant(self, grantor: str, grantee: str) -> CapabilityGrant:
        grant = await self._grants.ensure_grant(grantor, grantee)
        self._grant = grant
        if self._grants.is_expired(grant):
            raise GrantExpired(grantor, grantee, grant.expires_at)
        return grant

    def _audit_context(self, balances: dict[str, str], market: Any, grant: CapabilityGrant) -> AuditContext:
        audit_cfg = self._config.audit
        tokens = self._config.tokens
        return AuditContext(
            balances=balances,
            metrics=market,
            portfolio_value=self._engine.portfolio_value(balances),
            grant_expired=self._grants.is_expired(grant),
            max_daily_spend=audit_cfg.max_daily_spend,
            allowed_targets=list(self._config.decision.allowed_targets),
            max_slippage_bps=self._config.execution.slippage_bps,
            spent_today=self._spend.total(),
            max_trade_pct=audit_cfg.max_trade_pct,
            whale_alert_threshold=audit_cfg.whale_alert_threshold,
            low_activity_tx=audit_cfg.low_activity_tx,
            prices={sym.upper(): info.native_price for sym, info in tokens.registry.items()},
        )

    def _adopt_interval(self, params: ScheduleParams, decision: Decision) -> None:
        if params.mode != "policy" or not self._scheduler.is_active:
            return
        if decision.next_interval_seconds != self._scheduler.status.interval_seconds:
            self._scheduler.update_interval(decision.next_interval_seconds)

    # ── Submission ───────────────────────────────────────────────────

    async def _submit_plan(
        self, executor: str, grant: CapabilityGrant, plan: CallPlan, tick: str | None = None,
    ) -> list[str]:
        """Submit each batch in order and wait for its receipt.

        Runs on the serializer's drain task, so the tick id is rebound here.
        """
        handles: list[str] = []
        with tick_context(tick):
            for batch in plan.batches:
                handle = await self._retry.run(
                    lambda: self._submit_or_adopt(executor, grant, batch),
                    op="orchestrator.submit",
                )
                receipt = await self._wait_receipt(handle)
                if not receipt.success:
                    raise RelayFailure(f"operation {handle} reverted")
                handles.append(handle)
        return handles

    async def _submit_or_adopt(self, executor: str, grant: CapabilityGrant, batch: list) -> str:
        try:
            return await self._gateway.submit_batch(executor, grant, batch)
        except OperationInFlight as e:
            if not e.handle:
                raise
            # Poll the pending operation rather than submitting a duplicate
            log.info("orchestrator.adopting_in_flight", handle=e.handle)
            self._metrics.incr("orchestrator.in_flight_adopted")
            return e.handle

    async def _wait_receipt(self, handle: str) -> Receipt:
        timeout = self._config.execution.receipt_timeout_secs
        return await self._retry.run(
            lambda: self._gateway.wait_for_receipt(handle, timeout),
            op="orchestrator.receipt",
            timeout_secs=timeout + 5.0,
        )

    # ── Callbacks / persistence ─────────────────────────────────────

    def _on_error(self, error: BaseException) -> None:
        self._record_error(error)

    def _record_error(self, error: BaseException) -> None:
        self._last_error = f"{type(error).__name__}: {error}"
        self._metrics.incr("orchestrator.tick_errors")
        log.error("orchestrator.tick_error", error=self._last_error)
        self._persist_status()

    def _on_status_change(self, active: bool, next_execution: float | None) -> None:
        self._next_execution = next_execution
        log.debug("orchestrator.status", active=active, next_execution=next_execution)

    def _persist_status(self) -> None:
        safe_set(self._store, STATUS_KEY, self.get_status().to_dict())

    def _restore_status(self) -> None:
        try:
            snapshot = self._store.get(STATUS_KEY) or {}
        except Exception as e:
            log.warning("orchestrator.status_read_failed", error=str(e))
            return
        self._last_handle = snapshot.get("last_operation_handle")
        self._last_error = snapshot.get("last_error")
        self._last_decision_id = snapshot.get("last_decision_id")
        self._last_audit_status = snapshot.get("last_audit_status")

    def _check_open(self) -> None:
        if self._disposed:
            raise RuntimeError("orchestrator has been disposed")


# ── Factory ──────────────────────────────────────────────────────────

def build_orchestrator(
    config: AgentConfig,
    *,
    store: KeyValueStore | None = None,
    gateway: ChainGateway | None = None,
    market_data: MarketDataSource | None = None,
    reasoning: ReasoningBackend | None = None,
    clock: Callable[[], float] = time.time,
) -> Orchestrator:
    """Wire the default collaborators from config.

    Live endpoints are used only when ``ENABLE_LIVE_EXECUTION=true`` and
    ``execution.dry_run`` is false; otherwise everything is simulated.
    """
    live = is_live_execution_enabled() and not config.execution.dry_run
    metrics = MetricsCollector()
    store = store or open_store(config.storage)
    retry = RetryPolicy.for_execution(config.execution)
    limiters = RateLimiterRegistry()

    if gateway is None:
        gateway = (
            HttpChainGateway(
                config.execution.relay_url,
                timeout=config.execution.call_timeout_secs,
                rate_limiter=limiters,
            )
            if live else SimulatedChainGateway()
        )
    if market_data is None:
        market_data = (
            HttpMarketDataClient(config.execution.market_data_url, rate_limiter=limiters)
            if live else StaticMarketData.from_config(config.simulation)
        )
    signer = HttpGrantSigner(config.execution.signer_url) if live else SimulatedGrantSigner()

    if reasoning is None and config.reasoning.enabled:
        if os.environ.get("OPENAI_API_KEY"):
            reasoning = OpenAIReasoningBackend(config.reasoning, rate_limiter=limiters)
        else:
            log.warning("orchestrator.no_reasoning_key", detail="policy mode will use the fallback heuristic")

    grants = GrantManager(
        config.grant,
        store,
        signer,
        gateway,
        targets_for=config.grant_targets,
        retry=retry,
        receipt_timeout_secs=config.execution.receipt_timeout_secs,
        clock=clock,
    )
    engine = DecisionEngine(
        config.decision,
        config.schedule,
        config.tokens,
        backend=reasoning,
        reasoning=config.reasoning,
        store=store,
        metrics=metrics,
        clock=clock,
    )
    auditor = AuditPipeline(
        history_limit=config.audit.history_limit,
        store=store,
        metrics=metrics,
        clock=clock,
    )
    log.info("orchestrator.built", live=live, storage=config.storage.backend)
    return Orchestrator(
        config,
        store=store,
        gateway=gateway,
        market_data=market_data,
        grants=grants,
        engine=engine,
        auditor=auditor,
        spend_ledger=SpendLedger(store, clock=clock),
        retry=retry,
        metrics=metrics,
        clock=clock,
    )
