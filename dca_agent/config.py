"""Shared configuration loader and Pydantic settings.

Supports:
  - YAML file loading with env var overrides
  - All subsystem configs: accounts, tokens, grant, schedule, decision,
    reasoning, audit, execution, storage, observability, simulation
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


_PROJECT_ROOT = Path(__file__).resolve().parent.parent

SELECTOR_APPROVE = "approve(address,uint256)"
SELECTOR_SWAP = "swapExactTokensForTokens(uint256,uint256,address[],address,uint256)"
SELECTOR_WITHDRAW = "withdraw(uint256)"
SELECTOR_DISABLE = "disableDelegation((address,address,bytes32,(address,bytes,bytes)[],uint256,bytes))"


class TokenInfo(BaseModel):
    address: str
    decimals: int = 18
    native: bool = False
    stable: bool = False
    # Value of one unit expressed in the native asset
    native_price: float = 0.0


def _default_tokens() -> dict[str, TokenInfo]:
    return {
        "MON": TokenInfo(
            address="0x0000000000000000000000000000000000000000",
            decimals=18, native=True, native_price=1.0,
        ),
        "WMON": TokenInfo(
            address="0x760AfE86e5de5fa0Ee542fc7B7B713e1c5425701",
            decimals=18, native_price=1.0,
        ),
        "USDC": TokenInfo(
            address="0xf817257fed379853cDe0fa4F97AB987181B1E5Ea",
            decimals=6, stable=True, native_price=0.1,
        ),
        "CHOG": TokenInfo(
            address="0xE0590015A873bF326bd645c3E1266d4db41C4E6B",
            decimals=18, native_price=0.001,
        ),
        "BEAN": TokenInfo(address="0x268E4E24E0051EC27b3D27A95977E71cE6875a05", native_price=0.01),
        "DAK": TokenInfo(address="0x0F0BDEbF0F83cD1EE3974779Bcb7315f9808c714", native_price=0.05),
        "YAKI": TokenInfo(address="0xfe140e1dCe99Be9F4F15d657CD9b7BF622270C50", native_price=0.01),
        "WBTC": TokenInfo(
            address="0xcf5a6076cfa32686c0Df13aBaDa2b40dec133F1d",
            decimals=8, native_price=3000.0,
        ),
    }


class AccountsConfig(BaseModel):
    """Owner (grantor) and agent (grantee) account addresses."""
    grantor: str = ""
    grantee: str = ""


class TokensConfig(BaseModel):
    base_symbol: str = "MON"
    wrapped_base_symbol: str = "WMON"
    stable_symbol: str = "USDC"
    router: str = "0xfb8e1c3b833f9e67a71c859a132cf783b645e436"
    registry: dict[str, TokenInfo] = Field(default_factory=_default_tokens)

    def get(self, symbol: str) -> TokenInfo | None:
        return self.registry.get(symbol.upper())

    def price(self, symbol: str) -> float:
        info = self.get(symbol)
        return info.native_price if info else 0.0


class GrantConfig(BaseModel):
    """Scope of the capability grant minted for the agent account."""
    scope_kind: str = "functionCall"
    extra_targets: list[str] = Field(default_factory=list)
    selectors: list[str] = Field(default_factory=lambda: [
        SELECTOR_APPROVE, SELECTOR_SWAP, SELECTOR_WITHDRAW,
    ])
    ttl_secs: int | None = None  # None = grant never expires
    delegation_manager: str = "0xdb9B1e94B5b69Df7e401DDbedE43491141047dB3"


class ScheduleConfig(BaseModel):
    min_interval_secs: int = 60
    max_interval_secs: int = 1800
    default_interval_secs: int = 300
    run_immediately: bool = True


class ConservativeGuardConfig(BaseModel):
    min_momentum: float = 0.0
    max_volatility: float = 0.6
    min_liquidity_score: float = 0.3


class DecisionConfig(BaseModel):
    default_personality: str = "balanced"
    history_limit: int = 100
    recent_targets_window: int = 5
    allowed_targets: list[str] = Field(default_factory=lambda: [
        "WMON", "USDC", "CHOG", "BEAN", "DAK", "YAKI", "WBTC",
    ])
    whale_alert_threshold: int = 10
    native_concentration_threshold: float = 0.8
    fallback_whale_fraction: float = 0.02
    fallback_diversify_fraction: float = 0.05
    fallback_hold_secs: int = 600
    fallback_confidence: float = 0.3
    min_policy_confidence: float = 0.4
    conservative: ConservativeGuardConfig = Field(default_factory=ConservativeGuardConfig)


class ReasoningConfig(BaseModel):
    enabled: bool = True
    llm_model: str = "gpt-4o"
    llm_temperature: float = 0.4
    llm_max_tokens: int = 800
    timeout_secs: float = 30.0
    max_retries: int = 2


class AuditConfig(BaseModel):
    max_daily_spend: float = 1.0
    max_trade_pct: float = 5.0
    whale_alert_threshold: int = 10
    low_activity_tx: int = 10
    history_limit: int = 50
    block_on_fail: bool = False


class ExecutionConfig(BaseModel):
    dry_run: bool = True
    relay_url: str = ""
    signer_url: str = ""
    market_data_url: str = ""
    call_timeout_secs: float = 30.0
    receipt_timeout_secs: float = 120.0
    max_retries: int = 3
    retry_backoff_secs: float = 2.0
    max_backoff_secs: float = 30.0
    retry_deadline_secs: float = 90.0
    slippage_bps: int = 300
    swap_deadline_secs: int = 300
    single_call_mode: bool = True


class StorageConfig(BaseModel):
    backend: str = "sqlite"  # sqlite | memory
    sqlite_path: str = "data/agent.db"


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str = "logs/agent.log"


class SimulationConfig(BaseModel):
    """Static portfolio used by the dry-run market data source."""
    balances: dict[str, str] = Field(default_factory=lambda: {
        "MON": "10", "WMON": "0", "USDC": "0", "CHOG": "0",
    })
    tx_count_today: int = 0
    fees_today_native: float = 0.0


class AgentConfig(BaseModel):
    accounts: AccountsConfig = Field(default_factory=AccountsConfig)
    tokens: TokensConfig = Field(default_factory=TokensConfig)
    grant: GrantConfig = Field(default_factory=GrantConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    decision: DecisionConfig = Field(default_factory=DecisionConfig)
    reasoning: ReasoningConfig = Field(default_factory=ReasoningConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    simulation: SimulationConfig = Field(default_factory=SimulationConfig)

    def grant_targets(self, grantor: str) -> list[str]:
        """Targets the agent may call: stable, wrapped base, router, owner account."""
        tokens = self.tokens
        targets = [
            tokens.registry[tokens.stable_symbol].address,
            tokens.registry[tokens.wrapped_base_symbol].address,
            tokens.router,
            grantor,
        ]
        for symbol in self.decision.allowed_targets:
            info = tokens.get(symbol)
            if info is not None:
                targets.append(info.address)
        targets.extend(self.grant.extra_targets)
        seen: set[str] = set()
        ordered: list[str] = []
        for t in targets:
            if t and t.lower() not in seen:
                seen.add(t.lower())
                ordered.append(t)
        return ordered


def load_config(path: str | Path | None = None) -> AgentConfig:
    """Load config from YAML file, falling back to defaults."""
    if path is None:
        path = _PROJECT_ROOT / "config.yaml"
    path = Path(path)
    if path.exists():
        with open(path) as f:
            raw: dict[str, Any] = yaml.safe_load(f) or {}
        cfg = AgentConfig(**raw)
    else:
        cfg = AgentConfig()
    # Env overrides for account addresses
    grantor = os.environ.get("DCA_GRANTOR_ADDRESS")
    grantee = os.environ.get("DCA_GRANTEE_ADDRESS")
    if grantor:
        cfg.accounts.grantor = grantor
    if grantee:
        cfg.accounts.grantee = grantee
    return cfg


def is_live_execution_enabled() -> bool:
    """Check if live on-chain execution is explicitly enabled via env var."""
    return os.environ.get("ENABLE_LIVE_EXECUTION", "").lower() == "true"
