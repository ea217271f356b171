"""Error taxonomy for the orchestrator.

Recoverable errors (``RecoverableError`` subclasses) are retried by the
retry policy and, if still failing, reported through the scheduler's
``on_error`` callback without stopping the schedule. The remaining errors
are user-actionable and surface as explicit status.
"""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for all agent errors."""


class ConfigurationError(OrchestratorError):
    """Required configuration (accounts, endpoints, interval floor) is missing or invalid."""


class GrantExpired(OrchestratorError):
    """The capability grant has expired; execution refused until renewed."""

    def __init__(self, grantor: str, grantee: str, expires_at: float | None):
        self.grantor = grantor
        self.grantee = grantee
        self.expires_at = expires_at
        super().__init__(
            f"Capability grant {grantor} -> {grantee} expired at {expires_at}; renew it"
        )


class GrantScopeMismatch(OrchestratorError):
    """A cached grant does not match the live account pair or required scope."""


class InsufficientBalance(OrchestratorError):
    """Pre-flight balance check refused the operation."""

    def __init__(self, symbol: str, available: float, required: float):
        self.symbol = symbol
        self.available = available
        self.required = required
        super().__init__(
            f"Insufficient {symbol} balance: {available:.6f} < {required:.6f}"
        )


class DecisionParseError(OrchestratorError):
    """The reasoning backend returned something that is not a valid action."""


class RecoverableError(OrchestratorError):
    """Transient failure; retried now or at the next tick."""


class RelayFailure(RecoverableError):
    """The relay / bundler rejected or failed to process an operation."""


class NetworkTimeout(RecoverableError):
    """A gateway or reasoning-backend call exceeded its timeout."""


class OperationInFlight(RecoverableError):
    """Another operation for the executor account is still pending on-chain."""

    def __init__(self, message: str = "operation already in flight", handle: str | None = None):
        self.handle = handle
        super().__init__(message)
