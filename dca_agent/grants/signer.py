"""Grant signers: obtain the grantor's signature over a grant digest.

In dry-run mode the simulated signer produces a deterministic signature.
In live mode the digest is sent to a wallet signing service that prompts
the owner.
"""

from __future__ import annotations

import hashlib
from typing import Any, Protocol

import httpx

from dca_agent.errors import ConfigurationError, NetworkTimeout, RelayFailure
from dca_agent.observability.logger import get_logger

log = get_logger(__name__)


class GrantSigner(Protocol):
    async def sign_grant(self, grantor: str, digest: str, payload: dict[str, Any]) -> str: ...


class SimulatedGrantSigner:
    """Deterministic signer for dry runs and tests."""

    def __init__(self) -> None:
        self.calls = 0
        self.failures: list[Exception] = []

    async def sign_grant(self, grantor: str, digest: str, payload: dict[str, Any]) -> str:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        sig = hashlib.sha256(f"{grantor.lower()}:{digest}".encode()).hexdigest()
        return "0x" + sig


class HttpGrantSigner:
    """Asks a wallet signing service to sign the grant digest."""

    def __init__(self, base_url: str, timeout: float = 120.0):
        if not base_url:
            raise ConfigurationError("execution.signer_url is required for live signing")
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"Accept": "application/json"},
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def sign_grant(self, grantor: str, digest: str, payload: dict[str, Any]) -> str:
        try:
            resp = await self._client.post(
                "/sign/grant",
                json={"account": grantor, "digest": digest, "grant": payload},
            )
            resp.raise_for_status()
        except httpx.TimeoutException as e:
            raise NetworkTimeout(f"signer timed out: {e}") from e
        except httpx.HTTPError as e:
            raise RelayFailure(f"signer request failed: {e}") from e
        signature = resp.json().get("signature", "")
        if not signature:
            raise RelayFailure("signer returned no signature")
        log.info("signer.signed", grantor=grantor, digest=digest[:18])
        return signature
