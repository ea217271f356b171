"""Tests for the capability grant manager and grant record."""

from __future__ import annotations

import pytest

from conftest import GRANTEE, GRANTOR, fast_retry

from dca_agent.config import SELECTOR_DISABLE
from dca_agent.errors import NetworkTimeout
from dca_agent.grants.manager import GrantManager
from dca_agent.grants.models import CapabilityGrant, grant_key
from dca_agent.grants.signer import SimulatedGrantSigner
from dca_agent.storage.migrations import GRANT_SCHEMA_VERSION


def _manager(config, store, signer, gateway, clock) -> GrantManager:
    return GrantManager(
        config.grant,
        store,
        signer,
        gateway,
        targets_for=config.grant_targets,
        retry=fast_retry(),
        clock=clock,
    )


# ─── Grant record ────────────────────────────────────────────────────

class TestCapabilityGrant:
    def test_no_expiry_is_never_expired(self) -> None:
        g = CapabilityGrant(grantor=GRANTOR, grantee=GRANTEE)
        assert g.is_expired(now=0) is False
        assert g.is_expired(now=10**12) is False

    def test_expired_only_strictly_after_expiry(self) -> None:
        g = CapabilityGrant(grantor=GRANTOR, grantee=GRANTEE, expires_at=1000.0)
        assert g.is_expired(now=999.0) is False
        assert g.is_expired(now=1000.0) is False
        assert g.is_expired(now=1000.5) is True

    def test_scope_equality_ignores_target_case(self) -> None:
        g = CapabilityGrant(
            grantor=GRANTOR, grantee=GRANTEE,
            targets=["0xAbC"], selectors=["approve(address,uint256)"],
        )
        assert g.has_scope(["0xabc"], ["approve(address,uint256)"])
        assert not g.has_scope(["0xabc", "0xdef"], ["approve(address,uint256)"])
        assert g.allows("0xABC", "approve(address,uint256)")
        assert not g.allows("0xABC", "withdraw(uint256)")

    def test_grant_key_is_lowercase(self) -> None:
        assert grant_key("0xAA", "0xBB") == "grant:0xaa:0xbb"


# ─── Manager ─────────────────────────────────────────────────────────

class TestGrantManager:
    @pytest.mark.asyncio
    async def test_ensure_twice_reuses_cached_grant(self, config, store, signer, gateway, clock) -> None:
        mgr = _manager(config, store, signer, gateway, clock)
        g1 = await mgr.ensure_grant(GRANTOR, GRANTEE)
        g2 = await mgr.ensure_grant(GRANTOR, GRANTEE)
        assert g1 == g2
        assert signer.calls == 1
        assert g1.signature

    @pytest.mark.asyncio
    async def test_pair_match_is_case_insensitive(self, config, store, signer, gateway, clock) -> None:
        mgr = _manager(config, store, signer, gateway, clock)
        await mgr.ensure_grant(GRANTOR, GRANTEE)
        await mgr.ensure_grant(GRANTOR.replace("0x", "0X").upper(), GRANTEE.upper())
        assert signer.calls == 1

    @pytest.mark.asyncio
    async def test_minted_scope_matches_configured_allow_list(self, config, store, signer, gateway, clock) -> None:
        mgr = _manager(config, store, signer, gateway, clock)
        g = await mgr.ensure_grant(GRANTOR, GRANTEE)
        assert g.has_scope(config.grant_targets(GRANTOR), config.grant.selectors)
        assert config.tokens.router.lower() in {t.lower() for t in g.targets}

    @pytest.mark.asyncio
    async def test_scope_change_mints_fresh_grant(self, config, store, signer, gateway, clock) -> None:
        mgr = _manager(config, store, signer, gateway, clock)
        g1 = await mgr.ensure_grant(GRANTOR, GRANTEE)
        extra = "0x9999999999999999999999999999999999999999"
        config.grant.extra_targets.append(extra)
        g2 = await mgr.ensure_grant(GRANTOR, GRANTEE)
        assert signer.calls == 2
        assert extra in g2.targets
        assert extra not in g1.targets

    @pytest.mark.asyncio
    async def test_unsigned_cached_grant_is_replaced(self, config, store, signer, gateway, clock) -> None:
        mgr = _manager(config, store, signer, gateway, clock)
        unsigned = CapabilityGrant(
            grantor=GRANTOR, grantee=GRANTEE,
            targets=config.grant_targets(GRANTOR), selectors=list(config.grant.selectors),
        )
        store.set(grant_key(GRANTOR, GRANTEE), unsigned.model_dump())
        g = await mgr.ensure_grant(GRANTOR, GRANTEE)
        assert g.signature
        assert signer.calls == 1

    @pytest.mark.asyncio
    async def test_ttl_sets_expiry(self, config, store, signer, gateway, clock) -> None:
        config.grant.ttl_secs = 100
        mgr = _manager(config, store, signer, gateway, clock)
        g = await mgr.ensure_grant(GRANTOR, GRANTEE)
        assert g.expires_at == pytest.approx(clock.now + 100)
        assert mgr.is_expired(g) is False
        clock.advance(100)
        assert mgr.is_expired(g) is False
        clock.advance(1)
        assert mgr.is_expired(g) is True

    @pytest.mark.asyncio
    async def test_expired_grant_stays_readable(self, config, store, signer, gateway, clock) -> None:
        config.grant.ttl_secs = 10
        mgr = _manager(config, store, signer, gateway, clock)
        await mgr.ensure_grant(GRANTOR, GRANTEE)
        clock.advance(60)
        cached = mgr.get_cached(GRANTOR, GRANTEE)
        assert cached is not None
        assert mgr.is_expired(cached)

    @pytest.mark.asyncio
    async def test_renew_supersedes_without_merging(self, config, store, signer, gateway, clock) -> None:
        mgr = _manager(config, store, signer, gateway, clock)
        old = await mgr.ensure_grant(GRANTOR, GRANTEE)
        new = await mgr.renew(GRANTOR, GRANTEE)
        assert new.salt != old.salt
        assert new.signature != old.signature
        again = await mgr.ensure_grant(GRANTOR, GRANTEE)
        assert again == new
        assert sorted(again.targets) == sorted(old.targets)
        assert signer.calls == 2

    @pytest.mark.asyncio
    async def test_invalidate_forces_mint(self, config, store, signer, gateway, clock) -> None:
        mgr = _manager(config, store, signer, gateway, clock)
        await mgr.ensure_grant(GRANTOR, GRANTEE)
        mgr.invalidate(GRANTOR, GRANTEE)
        assert mgr.get_cached(GRANTOR, GRANTEE) is None
        await mgr.ensure_grant(GRANTOR, GRANTEE)
        assert signer.calls == 2

    @pytest.mark.asyncio
    async def test_transient_signer_failure_is_retried(self, config, store, signer, gateway, clock) -> None:
        mgr = _manager(config, store, signer, gateway, clock)
        signer.failures.append(NetworkTimeout("wallet unreachable"))
        grant = await mgr.ensure_grant(GRANTOR, GRANTEE)
        assert grant.signature
        assert signer.calls == 2
        assert store.get(grant_key(GRANTOR, GRANTEE)) is not None

    @pytest.mark.asyncio
    async def test_rejected_signature_is_not_retried(self, config, store, signer, gateway, clock) -> None:
        mgr = _manager(config, store, signer, gateway, clock)
        signer.failures.append(ValueError("owner declined"))
        with pytest.raises(ValueError):
            await mgr.ensure_grant(GRANTOR, GRANTEE)
        assert signer.calls == 1
        assert store.get(grant_key(GRANTOR, GRANTEE)) is None

    @pytest.mark.asyncio
    async def test_close_releases_signer(self, config, store, gateway, clock) -> None:
        class ClosingSigner(SimulatedGrantSigner):
            closed = False

            async def close(self) -> None:
                self.closed = True

        signer = ClosingSigner()
        mgr = _manager(config, store, signer, gateway, clock)
        await mgr.close()
        assert signer.closed is True

    @pytest.mark.asyncio
    async def test_revoke_all_disables_on_chain_and_drops(self, config, store, signer, gateway, clock) -> None:
        mgr = _manager(config, store, signer, gateway, clock)
        await mgr.ensure_grant(GRANTOR, GRANTEE)
        revoked = await mgr.revoke_all(GRANTOR)
        assert revoked == 1
        assert len(gateway.submitted) == 1
        call = gateway.submitted[0]["calls"][0]
        assert call.selector == SELECTOR_DISABLE
        assert call.target == config.grant.delegation_manager
        assert store.get(grant_key(GRANTOR, GRANTEE)) is None

    @pytest.mark.asyncio
    async def test_revoke_failure_is_logged_and_local_copy_dropped(self, config, store, signer, gateway, clock) -> None:
        mgr = _manager(config, store, signer, gateway, clock)
        await mgr.ensure_grant(GRANTOR, GRANTEE)
        gateway.failures.append(ValueError("relay rejected"))
        revoked = await mgr.revoke_all(GRANTOR)
        assert revoked == 0
        assert store.get(grant_key(GRANTOR, GRANTEE)) is None


# ─── Legacy payloads ─────────────────────────────────────────────────

class TestGrantMigration:
    @pytest.mark.asyncio
    async def test_flat_legacy_shape_is_migrated_once(self, config, store, signer, gateway, clock) -> None:
        key = grant_key(GRANTOR, GRANTEE)
        store.set(key, {
            "from": GRANTOR,
            "to": GRANTEE,
            "scope": {
                "type": "functionCall",
                "targets": config.grant_targets(GRANTOR),
                "selectors": list(config.grant.selectors),
            },
            "signature": "0xfeed",
        })
        mgr = _manager(config, store, signer, gateway, clock)
        g = await mgr.ensure_grant(GRANTOR, GRANTEE)
        assert g.grantor == GRANTOR
        assert g.signature == "0xfeed"
        assert signer.calls == 0
        assert store.get(key)["schema_version"] == GRANT_SCHEMA_VERSION

    @pytest.mark.asyncio
    async def test_nested_legacy_shape_is_migrated(self, config, store, signer, gateway, clock) -> None:
        key = grant_key(GRANTOR, GRANTEE)
        store.set(key, {
            "delegation": {
                "delegator": GRANTOR,
                "delegate": GRANTEE,
                "scope": {
                    "targets": config.grant_targets(GRANTOR),
                    "selectors": list(config.grant.selectors),
                },
            },
            "signature": "0xbeef",
        })
        mgr = _manager(config, store, signer, gateway, clock)
        g = mgr.get_cached(GRANTOR, GRANTEE)
        assert g is not None
        assert g.grantee == GRANTEE
        assert g.signature == "0xbeef"

    def test_corrupt_payload_is_dropped(self, config, store, signer, gateway, clock) -> None:
        key = grant_key(GRANTOR, GRANTEE)
        store.set(key, {"schema_version": GRANT_SCHEMA_VERSION})
        mgr = _manager(config, store, signer, gateway, clock)
        assert mgr.get_cached(GRANTOR, GRANTEE) is None
        assert store.get(key) is None
