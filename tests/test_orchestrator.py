"""End-to-end tests for the orchestrator facade, using simulated collaborators."""

from __future__ import annotations

import asyncio
import json

import pytest

from conftest import GRANTEE, GRANTOR, ScriptedBackend, fast_retry

from dca_agent.audit.pipeline import AuditPipeline
from dca_agent.config import SELECTOR_APPROVE, SELECTOR_DISABLE, SELECTOR_SWAP, SELECTOR_WITHDRAW
from dca_agent.decision.engine import DecisionEngine, ManualParams
from dca_agent.errors import (
    ConfigurationError,
    GrantExpired,
    InsufficientBalance,
    OperationInFlight,
    RelayFailure,
)
from dca_agent.execution.scheduler import ExecutionScheduler
from dca_agent.grants.manager import GrantManager
from dca_agent.grants.models import grant_key
from dca_agent.grants.signer import SimulatedGrantSigner
from dca_agent.orchestrator import Orchestrator, ScheduleParams, build_orchestrator


def make_orchestrator(config, store, gateway, market, signer, clock, backend=None, **kwargs) -> Orchestrator:
    retry = fast_retry()
    grants = GrantManager(
        config.grant, store, signer, gateway,
        targets_for=config.grant_targets, retry=retry, clock=clock,
    )
    engine = DecisionEngine(
        config.decision, config.schedule, config.tokens,
        backend=backend, reasoning=config.reasoning, store=store, clock=clock,
    )
    auditor = AuditPipeline(store=store, clock=clock)
    return Orchestrator(
        config,
        store=store,
        gateway=gateway,
        market_data=market,
        grants=grants,
        engine=engine,
        auditor=auditor,
        retry=retry,
        clock=clock,
        **kwargs,
    )


def manual(amount: float = 0.2, target: str = "USDC", interval: int = 300) -> ScheduleParams:
    return ScheduleParams(
        mode="manual",
        interval_seconds=interval,
        manual=ManualParams(amount=amount, target=target, interval_seconds=interval),
    )


def policy_reply(type: str = "BUY", target: str = "CHOG", amount: str = "0.2", interval: int = 300) -> str:
    return json.dumps({
        "action": {"type": type, "sourceToken": "MON", "targetToken": target, "amount": amount},
        "nextInterval": interval,
        "confidence": 0.7,
    })


@pytest.fixture
def orch(config, store, gateway, market, signer, clock):
    return make_orchestrator(config, store, gateway, market, signer, clock)


# ─── Single tick ─────────────────────────────────────────────────────

class TestRunOnce:
    @pytest.mark.asyncio
    async def test_manual_tick_submits_approve_then_swap(self, orch, gateway, config) -> None:
        result = await orch.run_once(manual())

        assert result.skipped == ""
        assert len(result.handles) == 2
        calls = [b["calls"][0] for b in gateway.submitted]
        assert [c.selector for c in calls] == [SELECTOR_APPROVE, SELECTOR_SWAP]
        wmon = config.tokens.get("WMON").address
        usdc = config.tokens.get("USDC").address
        assert calls[0].target == wmon
        assert calls[1].target == config.tokens.router
        assert calls[1].args[2] == [wmon, usdc]
        assert calls[1].args[3] == GRANTOR
        assert all(b["executor"] == GRANTEE for b in gateway.submitted)
        assert all(b["grant"] is not None for b in gateway.submitted)

        assert result.decision.executed is True
        assert result.audit.overall_status == "PASS"
        status = orch.get_status()
        assert status.last_operation_handle == result.handles[-1]
        assert status.last_error is None
        assert status.last_decision_id == result.decision.id

    @pytest.mark.asyncio
    async def test_batched_mode_submits_one_operation(self, orch, gateway, config) -> None:
        config.execution.single_call_mode = False
        result = await orch.run_once(manual())
        assert len(gateway.submitted) == 1
        assert len(gateway.submitted[0]["calls"]) == 2
        assert len(result.handles) == 1

    @pytest.mark.asyncio
    async def test_insufficient_balance_refused_before_submit(self, orch, gateway) -> None:
        with pytest.raises(InsufficientBalance):
            await orch.run_once(manual(amount=50))
        assert gateway.submitted == []
        assert orch.get_status().last_error.startswith("InsufficientBalance")

    @pytest.mark.asyncio
    async def test_expired_grant_refuses_until_renewed(self, orch, config, gateway, clock) -> None:
        config.grant.ttl_secs = 100
        await orch.run_once(manual())
        submitted = len(gateway.submitted)

        clock.advance(101)
        with pytest.raises(GrantExpired):
            await orch.run_once(manual())
        assert len(gateway.submitted) == submitted
        status = orch.get_status()
        assert status.grant_expired is True
        assert "GrantExpired" in status.last_error

        grant = await orch.renew_grant()
        assert grant.expires_at == pytest.approx(clock.now + 100)
        assert orch.get_status().last_error is None
        await orch.run_once(manual())
        assert len(gateway.submitted) == submitted + 2

    @pytest.mark.asyncio
    async def test_in_flight_operation_is_adopted(self, orch, gateway) -> None:
        gateway.failures.append(OperationInFlight("busy", handle="0xabc"))
        result = await orch.run_once(manual())
        assert result.handles[0] == "0xabc"
        assert len(gateway.submitted) == 1
        assert orch.metrics.counter("orchestrator.in_flight_adopted") == 1

    @pytest.mark.asyncio
    async def test_in_flight_without_handle_is_retried(self, orch, gateway) -> None:
        gateway.failures.append(OperationInFlight("busy"))
        result = await orch.run_once(manual())
        assert len(result.handles) == 2
        assert len(gateway.submitted) == 2

    @pytest.mark.asyncio
    async def test_relay_failures_exhaust_retries(self, orch, gateway) -> None:
        gateway.failures.extend([RelayFailure("bundler down")] * 3)
        with pytest.raises(RelayFailure):
            await orch.run_once(manual())
        assert gateway.submitted == []
        assert "RelayFailure" in orch.get_status().last_error

    @pytest.mark.asyncio
    async def test_policy_hold_submits_nothing(self, config, store, gateway, market, signer, clock) -> None:
        backend = ScriptedBackend(policy_reply(type="HOLD", interval=600))
        orch = make_orchestrator(config, store, gateway, market, signer, clock, backend)
        result = await orch.run_once(ScheduleParams(mode="policy"))
        assert result.skipped == "hold"
        assert gateway.submitted == []

    @pytest.mark.asyncio
    async def test_block_on_fail_skips_submission(self, config, store, gateway, market, signer, clock) -> None:
        config.audit.block_on_fail = True
        backend = ScriptedBackend(policy_reply(target="PEPE"))
        orch = make_orchestrator(config, store, gateway, market, signer, clock, backend)
        result = await orch.run_once(ScheduleParams(mode="policy"))
        assert result.skipped == "audit_failed"
        assert result.audit.overall_status == "FAIL"
        assert gateway.submitted == []

    @pytest.mark.asyncio
    async def test_false_condition_skips_tick(self, orch, gateway) -> None:
        params = manual()
        params.condition_check = lambda: False
        result = await orch.run_once(params)
        assert result.skipped == "condition_check"
        assert result.decision is None
        assert gateway.submitted == []

    @pytest.mark.asyncio
    async def test_async_condition_check(self, orch, gateway) -> None:
        async def ready() -> bool:
            return True

        params = manual()
        params.condition_check = ready
        result = await orch.run_once(params)
        assert len(result.handles) == 2

    @pytest.mark.asyncio
    async def test_concurrent_ticks_never_overlap_on_chain(self, config, store, market, signer, clock) -> None:
        from dca_agent.connectors.chain_gateway import SimulatedChainGateway

        gateway = SimulatedChainGateway(latency_secs=0.01)
        orch = make_orchestrator(config, store, gateway, market, signer, clock)
        results = await asyncio.gather(orch.run_once(manual()), orch.run_once(manual()))
        assert all(len(r.handles) == 2 for r in results)
        assert gateway.max_in_flight == 1
        assert len(gateway.submitted) == 4

    @pytest.mark.asyncio
    async def test_missing_accounts_is_configuration_error(self, orch, config) -> None:
        config.accounts.grantee = ""
        with pytest.raises(ConfigurationError):
            await orch.run_once(manual())


# ─── Schedule ────────────────────────────────────────────────────────

class TestSchedule:
    @pytest.mark.asyncio
    async def test_interval_below_floor_rejected(self, orch) -> None:
        with pytest.raises(ConfigurationError):
            await orch.start_schedule(manual(interval=30))
        assert orch.get_status().active is False

    @pytest.mark.asyncio
    async def test_invalid_params_rejected(self, orch) -> None:
        with pytest.raises(ConfigurationError):
            await orch.start_schedule(ScheduleParams(mode="manual", interval_seconds=300))
        with pytest.raises(ConfigurationError):
            await orch.start_schedule(ScheduleParams(mode="twap", interval_seconds=300))

    @pytest.mark.asyncio
    async def test_start_and_stop_report_status(self, orch, clock, gateway) -> None:
        await orch.start_schedule(manual(interval=300))
        try:
            status = orch.get_status()
            assert status.active is True
            assert status.next_execution_time == pytest.approx(clock.now + 300)
            assert gateway.submitted == []
        finally:
            orch.stop_schedule()
        status = orch.get_status()
        assert status.active is False
        assert status.next_execution_time is None

    @pytest.mark.asyncio
    async def test_expired_grant_blocks_start(self, orch, config, clock) -> None:
        config.grant.ttl_secs = 10
        await orch.renew_grant()
        clock.advance(11)
        with pytest.raises(GrantExpired):
            await orch.start_schedule(manual())
        assert orch.get_status().active is False

    @pytest.mark.asyncio
    async def test_run_immediately_executes_first_tick(self, orch, config, gateway) -> None:
        config.schedule.run_immediately = True
        await orch.start_schedule(manual())
        try:
            assert len(gateway.submitted) == 2
            assert orch.get_status().active is True
        finally:
            orch.stop_schedule()

    @pytest.mark.asyncio
    async def test_failing_first_tick_keeps_schedule(self, orch, config, market) -> None:
        config.schedule.run_immediately = True
        market.balances = {"MON": "0"}
        await orch.start_schedule(manual())
        try:
            status = orch.get_status()
            assert status.active is True
            assert status.last_error.startswith("InsufficientBalance")
        finally:
            orch.stop_schedule()

    @pytest.mark.asyncio
    async def test_policy_interval_is_adopted(self, config, store, gateway, market, signer, clock) -> None:
        config.schedule.run_immediately = True
        scheduler = ExecutionScheduler(clock=clock)
        backend = ScriptedBackend(policy_reply(interval=900))
        orch = make_orchestrator(
            config, store, gateway, market, signer, clock, backend, scheduler=scheduler,
        )
        await orch.start_schedule(ScheduleParams(mode="policy", interval_seconds=300))
        try:
            assert scheduler.status.interval_seconds == 900
            assert orch.get_status().next_execution_time == pytest.approx(clock.now + 900)
        finally:
            orch.stop_schedule()


# ─── Lifecycle ───────────────────────────────────────────────────────

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_emergency_exit_unwraps_wrapped_base(self, orch, market, gateway, config) -> None:
        market.balances = {"MON": "1", "WMON": "2.5"}
        handle = await orch.emergency_exit()
        assert handle is not None
        call = gateway.submitted[0]["calls"][0]
        assert call.selector == SELECTOR_WITHDRAW
        assert call.target == config.tokens.get("WMON").address
        assert call.args == [2_500_000_000_000_000_000]
        assert orch.get_status().active is False

    @pytest.mark.asyncio
    async def test_emergency_exit_revokes_grants(self, orch, market, gateway, store, config) -> None:
        market.balances = {"MON": "1", "WMON": "2.5"}
        await orch.emergency_exit()
        assert gateway.submitted[-1]["calls"][0].selector == SELECTOR_DISABLE
        assert store.get(grant_key(GRANTOR, GRANTEE)) is None
        assert store.keys("grant:") == []
        assert orch.get_status().grant_expires_at is None

    @pytest.mark.asyncio
    async def test_emergency_exit_revokes_even_when_unwrap_fails(self, orch, market, gateway, store) -> None:
        await orch.run_once(manual())
        market.balances = {"MON": "1", "WMON": "2.5"}
        gateway.failures.extend(RelayFailure("relay down") for _ in range(3))
        with pytest.raises(RelayFailure):
            await orch.emergency_exit()
        assert store.keys("grant:") == []

    @pytest.mark.asyncio
    async def test_emergency_exit_with_nothing_wrapped(self, orch, gateway, store) -> None:
        assert await orch.emergency_exit() is None
        assert gateway.submitted == []
        assert store.keys("grant:") == []

    @pytest.mark.asyncio
    async def test_provisioning_follows_first_operation(self, orch) -> None:
        assert await orch.ensure_provisioned() is False
        await orch.run_once(manual())
        assert await orch.ensure_provisioned() is True

    @pytest.mark.asyncio
    async def test_status_survives_restart(self, config, store, gateway, market, signer, clock) -> None:
        first = make_orchestrator(config, store, gateway, market, signer, clock)
        result = await first.run_once(manual())
        second = make_orchestrator(config, store, gateway, market, signer, clock)
        status = second.get_status()
        assert status.last_operation_handle == result.handles[-1]
        assert status.last_decision_id == result.decision.id
        assert status.active is False

    @pytest.mark.asyncio
    async def test_dispose_is_final(self, orch) -> None:
        await orch.start_schedule(manual())
        await orch.dispose()
        await orch.dispose()
        assert orch.get_status().active is False
        with pytest.raises(RuntimeError):
            await orch.run_once(manual())

    @pytest.mark.asyncio
    async def test_dispose_closes_signer(self, config, store, gateway, market, clock) -> None:
        class ClosingSigner(SimulatedGrantSigner):
            closed = False

            async def close(self) -> None:
                self.closed = True

        signer = ClosingSigner()
        orch = make_orchestrator(config, store, gateway, market, signer, clock)
        await orch.dispose()
        assert signer.closed is True


class TestBuildOrchestrator:
    @pytest.mark.asyncio
    async def test_dry_run_wiring_uses_fallback_policy(self, config, store, clock, monkeypatch) -> None:
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        monkeypatch.delenv("ENABLE_LIVE_EXECUTION", raising=False)
        orch = build_orchestrator(config, store=store, clock=clock)
        result = await orch.run_once(ScheduleParams(mode="policy"))
        assert result.decision.source == "fallback"
        assert result.decision.action.target == "USDC"
        assert len(result.handles) == 2
        await orch.dispose()
