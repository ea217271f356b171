"""Capability grant manager: mint, cache, validate, renew and revoke grants.

A grant is expensive to mint (the owner signs interactively), so a
signed grant is cached per (grantor, grantee) pair and reused as long as
it still matches the live pair, carries a signature, and has exactly the
configured scope. Anything else is discarded and a fresh grant minted.
Scope is never widened or merged.
"""

from __future__ import annotations

import secrets
import time
from typing import Callable

from pydantic import ValidationError

from dca_agent.config import SELECTOR_DISABLE, GrantConfig
from dca_agent.connectors.chain_gateway import Call, ChainGateway
from dca_agent.connectors.retry import RetryPolicy
from dca_agent.errors import GrantScopeMismatch
from dca_agent.grants.models import CapabilityGrant, grant_key
from dca_agent.grants.signer import GrantSigner
from dca_agent.storage.kv_store import KeyValueStore, safe_set
from dca_agent.storage.migrations import migrate_grant_payload
from dca_agent.observability.logger import get_logger

log = get_logger(__name__)


class GrantManager:
    """Owns the cached grant for each account pair."""

    def __init__(
        self,
        config: GrantConfig,
        store: KeyValueStore,
        signer: GrantSigner,
        gateway: ChainGateway,
        targets_for: Callable[[str], list[str]],
        retry: RetryPolicy | None = None,
        receipt_timeout_secs: float = 120.0,
        sign_timeout_secs: float = 130.0,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config
        self._store = store
        self._signer = signer
        self._gateway = gateway
        self._targets_for = targets_for
        self._retry = retry or RetryPolicy()
        self._receipt_timeout = receipt_timeout_secs
        self._sign_timeout = sign_timeout_secs
        self._clock = clock

    # ── Reads ────────────────────────────────────────────────────────

    def get_cached(self, grantor: str, grantee: str) -> CapabilityGrant | None:
        """Load (and migrate once) the stored grant for a pair, if any."""
        key = grant_key(grantor, grantee)
        try:
            raw = self._store.get(key)
        except Exception as e:
            log.warning("grants.read_failed", key=key, error=str(e))
            return None
        if not raw:
            return None
        try:
            payload, changed = migrate_grant_payload(raw)
            grant = CapabilityGrant(**payload)
        except (ValidationError, TypeError, ValueError) as e:
            log.warning("grants.cache_corrupt", key=key, error=str(e))
            self._drop(key)
            return None
        if changed:
            safe_set(self._store, key, grant.model_dump())
        return grant

    def is_expired(self, grant: CapabilityGrant, now: float | None = None) -> bool:
        return grant.is_expired(self._clock() if now is None else now)

    def required_scope(self, grantor: str) -> tuple[list[str], list[str]]:
        return self._targets_for(grantor), list(self._config.selectors)

    # ── Lifecycle ────────────────────────────────────────────────────

    async def ensure_grant(self, grantor: str, grantee: str) -> CapabilityGrant:
        """Return a reusable cached grant or mint a fresh one."""
        cached = self.get_cached(grantor, grantee)
        if cached is not None:
            try:
                self._validate(cached, grantor, grantee)
                log.debug("grants.cache_hit", grantor=grantor, grantee=grantee)
                return cached
            except GrantScopeMismatch as e:
                log.info("grants.cache_mismatch", grantor=grantor, grantee=grantee, reason=str(e))
                self.invalidate(grantor, grantee)
        return await self._mint(grantor, grantee)

    async def renew(self, grantor: str, grantee: str) -> CapabilityGrant:
        """Mint and persist a new grant, superseding any cached one."""
        self.invalidate(grantor, grantee)
        grant = await self._mint(grantor, grantee)
        log.info("grants.renewed", grantor=grantor, grantee=grantee, expires_at=grant.expires_at)
        return grant

    def invalidate(self, grantor: str, grantee: str) -> None:
        self._drop(grant_key(grantor, grantee))

    async def revoke_all(self, owner: str) -> int:
        """Best-effort on-chain revocation of every stored grant from ``owner``.

        Returns the number of grants revoked on-chain. Failures are logged
        and the local copy is dropped regardless.
        """
        revoked = 0
        prefix = f"grant:{owner.lower()}:"
        try:
            keys = self._store.keys(prefix)
        except Exception as e:
            log.warning("grants.revoke_list_failed", owner=owner, error=str(e))
            return 0

        for key in keys:
            try:
                raw = self._store.get(key)
                if not raw:
                    continue
                payload, _ = migrate_grant_payload(raw)
                grant = CapabilityGrant(**payload)
                call = Call(
                    target=self._config.delegation_manager,
                    selector=SELECTOR_DISABLE,
                    args=[grant.signing_payload(), grant.signature],
                )
                handle = await self._retry.run(
                    lambda: self._gateway.submit_batch(owner, None, [call]),
                    op="grants.revoke_submit",
                )
                receipt = await self._retry.run(
                    lambda: self._gateway.wait_for_receipt(handle, self._receipt_timeout),
                    op="grants.revoke_receipt",
                    timeout_secs=self._receipt_timeout + 5.0,
                )
                if receipt.success:
                    revoked += 1
                    log.info("grants.revoked", owner=owner, grantee=grant.grantee, handle=handle)
                else:
                    log.warning("grants.revoke_reverted", owner=owner, handle=handle)
            except Exception as e:
                log.warning("grants.revoke_failed", owner=owner, key=key, error=str(e))
            finally:
                self._drop(key)
        return revoked

    async def close(self) -> None:
        """Release the signer's connection, if it holds one."""
        close = getattr(self._signer, "close", None)
        if close is not None:
            await close()

    # ── Internals ────────────────────────────────────────────────────

    def _validate(self, grant: CapabilityGrant, grantor: str, grantee: str) -> None:
        if not grant.matches_pair(grantor, grantee):
            raise GrantScopeMismatch("account pair changed")
        if not grant.signature:
            raise GrantScopeMismatch("grant is unsigned")
        targets, selectors = self.required_scope(grantor)
        if not grant.has_scope(targets, selectors):
            raise GrantScopeMismatch("scope differs from configured allow-list")

    async def _mint(self, grantor: str, grantee: str) -> CapabilityGrant:
        targets, selectors = self.required_scope(grantor)
        now = self._clock()
        expires_at = now + self._config.ttl_secs if self._config.ttl_secs else None
        grant = CapabilityGrant(
            grantor=grantor,
            grantee=grantee,
            targets=targets,
            selectors=selectors,
            scope_kind=self._config.scope_kind,
            expires_at=expires_at,
            salt="0x" + secrets.token_hex(8),
            created_at=now,
        )
        digest, payload = grant.digest(), grant.signing_payload()
        # The owner may take a while to approve the prompt
        grant.signature = await self._retry.run(
            lambda: self._signer.sign_grant(grantor, digest, payload),
            op="grants.sign",
            timeout_secs=self._sign_timeout,
        )
        safe_set(self._store, grant_key(grantor, grantee), grant.model_dump())
        log.info(
            "grants.minted",
            grantor=grantor,
            grantee=grantee,
            targets=len(targets),
            selectors=len(selectors),
            expires_at=expires_at,
        )
        return grant

    def _drop(self, key: str) -> None:
        try:
            self._store.remove(key)
        except Exception as e:
            log.warning("grants.remove_failed", key=key, error=str(e))
