"""CLI entry point for the delegated DCA agent.

Commands:
  dca status                 Show schedule, grant and last-operation status
  dca grant show             Show the cached capability grant
  dca grant renew            Mint a fresh grant, superseding the cached one
  dca grant revoke           Revoke every stored grant from the owner
  dca run-once               Run a single tick (manual or policy)
  dca schedule               Run the schedule in the foreground
  dca decisions              Show recent decisions
  dca audits                 Show recent audit reports
  dca exit                   Emergency exit: stop, unwrap wrapped base, revoke grants

Live execution requires ENABLE_LIVE_EXECUTION=true and execution.dry_run: false.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import json
from typing import Any

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from dca_agent.config import AgentConfig, is_live_execution_enabled, load_config
from dca_agent.decision.actions import describe
from dca_agent.decision.engine import ManualParams
from dca_agent.observability.logger import configure_logging, get_logger
from dca_agent.orchestrator import Orchestrator, ScheduleParams, build_orchestrator

load_dotenv()

console = Console()
log = get_logger(__name__)


def _run(coro: Any) -> Any:
    """Run an async coroutine from sync CLI."""
    return asyncio.run(coro)


def _fmt_ts(ts: float | None) -> str:
    if not ts:
        return "-"
    return dt.datetime.fromtimestamp(ts, tz=dt.timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


async def _with_orchestrator(cfg: AgentConfig, fn: Any) -> Any:
    orch = build_orchestrator(cfg)
    try:
        return await fn(orch)
    finally:
        await orch.dispose()


def _schedule_params(
    mode: str,
    personality: str,
    interval: float,
    amount: float | None,
    target: str | None,
    source: str | None,
) -> ScheduleParams:
    manual = None
    if mode == "manual":
        if amount is None or not target:
            raise click.UsageError("manual mode needs --amount and --target")
        manual = ManualParams(
            amount=amount, target=target, interval_seconds=int(interval), source=source or "",
        )
    return ScheduleParams(
        mode=mode, interval_seconds=interval, personality=personality, manual=manual,
    )


_schedule_options = [
    click.option("--mode", type=click.Choice(["manual", "policy"]), default="policy"),
    click.option("--personality", default=None, help="conservative | balanced | aggressive | contrarian"),
    click.option("--interval", type=float, default=None, help="Seconds between ticks"),
    click.option("--amount", type=float, default=None, help="Manual mode: amount per tick"),
    click.option("--target", default=None, help="Manual mode: token to buy"),
    click.option("--source", default=None, help="Manual mode: token to spend"),
]


def schedule_options(fn: Any) -> Any:
    for opt in reversed(_schedule_options):
        fn = opt(fn)
    return fn


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config.yaml")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """Delegated DCA agent."""
    ctx.ensure_object(dict)
    cfg = load_config(config_path)
    ctx.obj["config"] = cfg
    configure_logging(
        level=cfg.observability.log_level,
        fmt="console",
        log_file=cfg.observability.log_file,
        force=True,
    )


# ─── STATUS ──────────────────────────────────────────────────────────

@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show orchestrator status."""
    cfg: AgentConfig = ctx.obj["config"]

    async def _status(orch: Orchestrator) -> dict[str, Any]:
        grant = orch.grants.get_cached(cfg.accounts.grantor, cfg.accounts.grantee) \
            if cfg.accounts.grantor and cfg.accounts.grantee else None
        st = orch.get_status().to_dict()
        st["grant_cached"] = grant is not None
        if grant is not None:
            st["grant_expires_at"] = grant.expires_at
            st["grant_expired"] = orch.grants.is_expired(grant)
        return st

    st = _run(_with_orchestrator(cfg, _status))
    mode = "LIVE" if is_live_execution_enabled() and not cfg.execution.dry_run else "DRY RUN"

    table = Table(title=f"DCA Agent Status ({mode})")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Grantor", cfg.accounts.grantor or "-")
    table.add_row("Grantee", cfg.accounts.grantee or "-")
    table.add_row("Schedule active", str(st["active"]))
    table.add_row("Grant cached", str(st["grant_cached"]))
    table.add_row("Grant expires", _fmt_ts(st["grant_expires_at"]) if st["grant_expires_at"] else "never")
    table.add_row("Grant expired", str(st["grant_expired"]))
    table.add_row("Last operation", st["last_operation_handle"] or "-")
    table.add_row("Last decision", st["last_decision_id"] or "-")
    table.add_row("Last audit", st["last_audit_status"] or "-")
    table.add_row("Last error", st["last_error"] or "-", style="red" if st["last_error"] else None)
    console.print(table)


# ─── GRANT ───────────────────────────────────────────────────────────

@cli.group()
def grant() -> None:
    """Capability grant management."""


@grant.command("show")
@click.pass_context
def grant_show(ctx: click.Context) -> None:
    """Show the cached grant for the configured account pair."""
    cfg: AgentConfig = ctx.obj["config"]

    async def _show(orch: Orchestrator) -> Any:
        return orch.grants.get_cached(cfg.accounts.grantor, cfg.accounts.grantee)

    g = _run(_with_orchestrator(cfg, _show))
    if g is None:
        console.print("[yellow]No cached grant.[/yellow]")
        return
    console.print_json(json.dumps(g.model_dump(), default=str))


@grant.command("renew")
@click.pass_context
def grant_renew(ctx: click.Context) -> None:
    """Mint and persist a fresh grant."""
    cfg: AgentConfig = ctx.obj["config"]

    async def _renew(orch: Orchestrator) -> Any:
        return await orch.renew_grant()

    g = _run(_with_orchestrator(cfg, _renew))
    console.print(
        f"[green]Grant renewed[/green] {g.grantor} -> {g.grantee}, "
        f"{len(g.targets)} targets, expires {_fmt_ts(g.expires_at) if g.expires_at else 'never'}"
    )


@grant.command("revoke")
@click.confirmation_option(prompt="Revoke every stored grant on-chain?")
@click.pass_context
def grant_revoke(ctx: click.Context) -> None:
    """Revoke all stored grants from the owner account."""
    cfg: AgentConfig = ctx.obj["config"]

    async def _revoke(orch: Orchestrator) -> int:
        return await orch.grants.revoke_all(cfg.accounts.grantor)

    count = _run(_with_orchestrator(cfg, _revoke))
    console.print(f"Revoked {count} grant(s) on-chain.")


# ─── RUN ONCE / SCHEDULE ─────────────────────────────────────────────

@cli.command("run-once")
@schedule_options
@click.pass_context
def run_once(
    ctx: click.Context,
    mode: str,
    personality: str | None,
    interval: float | None,
    amount: float | None,
    target: str | None,
    source: str | None,
) -> None:
    """Run a single decision/execution tick."""
    cfg: AgentConfig = ctx.obj["config"]
    params = _schedule_params(
        mode,
        personality or cfg.decision.default_personality,
        interval or cfg.schedule.default_interval_secs,
        amount, target, source,
    )

    async def _once(orch: Orchestrator) -> Any:
        return await orch.run_once(params)

    result = _run(_with_orchestrator(cfg, _once))
    if result.decision is not None:
        d = result.decision
        console.print(
            f"[bold]{describe(d.action)}[/bold] source={d.source} "
            f"confidence={d.confidence:.2f} next={d.next_interval_seconds}s"
        )
    if result.audit is not None:
        colour = {"PASS": "green", "WARN": "yellow", "FAIL": "red"}[result.audit.overall_status]
        console.print(
            f"Audit: [{colour}]{result.audit.overall_status}[/{colour}] risk={result.audit.risk_score}"
        )
    if result.handles:
        console.print(f"Operations: {', '.join(result.handles)}")
    elif result.skipped:
        console.print(f"No operation submitted ({result.skipped}).")


@cli.command()
@schedule_options
@click.option("--duration", type=float, default=0, help="Stop after N seconds (0 = until Ctrl-C)")
@click.pass_context
def schedule(
    ctx: click.Context,
    mode: str,
    personality: str | None,
    interval: float | None,
    amount: float | None,
    target: str | None,
    source: str | None,
    duration: float,
) -> None:
    """Run the schedule in the foreground."""
    cfg: AgentConfig = ctx.obj["config"]
    params = _schedule_params(
        mode,
        personality or cfg.decision.default_personality,
        interval or cfg.schedule.default_interval_secs,
        amount, target, source,
    )

    async def _loop(orch: Orchestrator) -> None:
        await orch.start_schedule(params)
        console.print(f"[green]Schedule started[/green] ({params.mode}, every {params.interval_seconds:g}s)")
        try:
            if duration > 0:
                await asyncio.sleep(duration)
            else:
                await asyncio.Event().wait()
        finally:
            orch.stop_schedule()

    try:
        _run(_with_orchestrator(cfg, _loop))
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped.[/yellow]")


# ─── HISTORY ─────────────────────────────────────────────────────────

@cli.command()
@click.option("--limit", default=20, help="Number of decisions to show")
@click.pass_context
def decisions(ctx: click.Context, limit: int) -> None:
    """Show recent decisions."""
    cfg: AgentConfig = ctx.obj["config"]

    async def _list(orch: Orchestrator) -> list[Any]:
        return orch.engine.history[:limit]

    rows = _run(_with_orchestrator(cfg, _list))
    table = Table(title=f"Decisions ({len(rows)})")
    table.add_column("Time", style="dim")
    table.add_column("Source", style="cyan")
    table.add_column("Personality")
    table.add_column("Action")
    table.add_column("Conf", justify="right")
    table.add_column("Next", justify="right")
    table.add_column("Executed")
    for d in rows:
        table.add_row(
            _fmt_ts(d.timestamp),
            d.source,
            d.personality,
            describe(d.action),
            f"{d.confidence:.2f}",
            f"{d.next_interval_seconds}s",
            "yes" if d.executed else "no",
        )
    console.print(table)


@cli.command()
@click.option("--limit", default=20, help="Number of reports to show")
@click.option("--verify", is_flag=True, help="Verify the report hash chain")
@click.pass_context
def audits(ctx: click.Context, limit: int, verify: bool) -> None:
    """Show recent audit reports."""
    cfg: AgentConfig = ctx.obj["config"]

    async def _list(orch: Orchestrator) -> tuple[list[Any], dict[str, Any], bool | None]:
        chain_ok = orch.auditor.verify_chain() if verify else None
        return orch.auditor.history()[:limit], orch.auditor.stats(), chain_ok

    rows, stats, chain_ok = _run(_with_orchestrator(cfg, _list))
    table = Table(title="Audit Reports")
    table.add_column("Time", style="dim")
    table.add_column("Decision", max_width=18)
    table.add_column("Status")
    table.add_column("Risk", justify="right")
    table.add_column("Failed rules")
    for r in rows:
        colour = {"PASS": "green", "WARN": "yellow", "FAIL": "red"}[r.overall_status]
        table.add_row(
            _fmt_ts(r.timestamp),
            r.decision_ref,
            f"[{colour}]{r.overall_status}[/{colour}]",
            str(r.risk_score),
            ", ".join(x.rule_id for x in r.failed()) or "-",
        )
    console.print(table)
    console.print(
        f"Total {stats['total']}: {stats['passed']} pass, {stats['warned']} warn, "
        f"{stats['failed']} fail (avg risk {stats['avg_risk_score']})"
    )
    if chain_ok is not None:
        console.print("Chain: [green]intact[/green]" if chain_ok else "Chain: [red]BROKEN[/red]")


# ─── EXIT ────────────────────────────────────────────────────────────

@cli.command("exit")
@click.confirmation_option(prompt="Stop the schedule, unwrap all wrapped base and revoke grants?")
@click.pass_context
def emergency_exit(ctx: click.Context) -> None:
    """Emergency exit."""
    cfg: AgentConfig = ctx.obj["config"]

    async def _exit(orch: Orchestrator) -> str | None:
        return await orch.emergency_exit()

    handle = _run(_with_orchestrator(cfg, _exit))
    if handle:
        console.print(f"[green]Unwrap submitted[/green]: {handle}")
    else:
        console.print("Nothing to unwrap.")
    console.print("Grants revoked.")


if __name__ == "__main__":
    cli()
