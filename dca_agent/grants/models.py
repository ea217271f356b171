"""Capability grant record: a signed, scoped authorization for the agent."""

from __future__ import annotations

import hashlib
import json
import time
from typing import Any

from pydantic import BaseModel, Field

from dca_agent.storage.migrations import GRANT_SCHEMA_VERSION


class CapabilityGrant(BaseModel):
    """Lets ``grantee`` call the (target, selector) allow-list on behalf of ``grantor``."""
    grantor: str
    grantee: str
    targets: list[str] = Field(default_factory=list)
    selectors: list[str] = Field(default_factory=list)
    scope_kind: str = "functionCall"
    expires_at: float | None = None
    signature: str = ""
    salt: str = "0x"
    created_at: float = Field(default_factory=time.time)
    schema_version: int = GRANT_SCHEMA_VERSION

    def is_expired(self, now: float | None = None) -> bool:
        if self.expires_at is None:
            return False
        current = time.time() if now is None else now
        return current > self.expires_at

    def matches_pair(self, grantor: str, grantee: str) -> bool:
        return (
            self.grantor.lower() == grantor.lower()
            and self.grantee.lower() == grantee.lower()
        )

    def has_scope(self, targets: list[str], selectors: list[str]) -> bool:
        """Exact scope equality (case-insensitive targets)."""
        return (
            {t.lower() for t in self.targets} == {t.lower() for t in targets}
            and set(self.selectors) == set(selectors)
        )

    def allows(self, target: str, selector: str) -> bool:
        return (
            target.lower() in {t.lower() for t in self.targets}
            and selector in self.selectors
        )

    def signing_payload(self) -> dict[str, Any]:
        """Fields covered by the grantor's signature."""
        return {
            "grantor": self.grantor.lower(),
            "grantee": self.grantee.lower(),
            "scope": {
                "type": self.scope_kind,
                "targets": sorted(t.lower() for t in self.targets),
                "selectors": sorted(self.selectors),
            },
            "expires_at": self.expires_at,
            "salt": self.salt,
        }

    def digest(self) -> str:
        raw = json.dumps(self.signing_payload(), sort_keys=True)
        return "0x" + hashlib.sha256(raw.encode()).hexdigest()


def grant_key(grantor: str, grantee: str) -> str:
    return f"grant:{grantor.lower()}:{grantee.lower()}"
