"""Schema migrations: SQLite table setup and persisted grant payloads.

Two kinds of versioned upgrades live here:
  - ``run_migrations``: creates/upgrades the SQLite ``kv`` schema
  - ``migrate_grant_payload``: upgrades a stored grant record to the
    canonical schema, run once when a grant is loaded
"""

from __future__ import annotations

import sqlite3
from typing import Any, Callable

from dca_agent.observability.logger import get_logger

log = get_logger(__name__)

SCHEMA_VERSION = 1

_MIGRATIONS: dict[int, list[str]] = {
    1: [
        """
        CREATE TABLE IF NOT EXISTS kv (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_kv_updated ON kv(updated_at);
        """,
    ],
}


def run_migrations(conn: sqlite3.Connection) -> None:
    """Run all pending migrations."""
    conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)")
    conn.commit()

    current = _get_current_version(conn)

    for version in sorted(_MIGRATIONS.keys()):
        if version <= current:
            continue
        log.info("migrations.running", version=version)
        for sql in _MIGRATIONS[version]:
            conn.execute(sql)
        conn.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (version,),
        )
        conn.commit()
        log.info("migrations.applied", version=version)


def _get_current_version(conn: sqlite3.Connection) -> int:
    try:
        row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        return row[0] if row and row[0] else 0
    except sqlite3.Error:
        return 0


# ── Grant payloads ───────────────────────────────────────────────────

GRANT_SCHEMA_VERSION = 2


def _grant_v0_to_v1(raw: dict[str, Any]) -> dict[str, Any]:
    """Flatten the nested ``{"delegation": {...}, "signature": ...}`` shape."""
    nested = raw.get("delegation")
    if isinstance(nested, dict):
        flat = {**nested, **{k: v for k, v in raw.items() if k != "delegation"}}
    else:
        flat = dict(raw)
    flat["schema_version"] = 1
    return flat


def _grant_v1_to_v2(raw: dict[str, Any]) -> dict[str, Any]:
    """Rename legacy identity keys and lift the scope block to top level."""
    scope = raw.get("scope") or {}
    out: dict[str, Any] = {
        "grantor": raw.get("grantor") or raw.get("delegator") or raw.get("from") or "",
        "grantee": raw.get("grantee") or raw.get("delegate") or raw.get("to") or "",
        "targets": list(raw.get("targets") or scope.get("targets") or []),
        "selectors": list(raw.get("selectors") or scope.get("selectors") or []),
        "scope_kind": raw.get("scope_kind") or scope.get("type") or "functionCall",
        "expires_at": raw.get("expires_at", raw.get("expiresAt")),
        "signature": raw.get("signature") or "",
        "salt": str(raw.get("salt") or "0x"),
        "created_at": raw.get("created_at", 0.0),
        "schema_version": 2,
    }
    return out


_GRANT_MIGRATIONS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {
    1: _grant_v0_to_v1,
    2: _grant_v1_to_v2,
}


def migrate_grant_payload(raw: dict[str, Any]) -> tuple[dict[str, Any], bool]:
    """Upgrade a stored grant dict. Returns (payload, changed)."""
    current = int(raw.get("schema_version") or 0)
    if current >= GRANT_SCHEMA_VERSION:
        return raw, False
    payload = dict(raw)
    for version in sorted(_GRANT_MIGRATIONS):
        if version <= current:
            continue
        payload = _GRANT_MIGRATIONS[version](payload)
    log.info("migrations.grant_upgraded", from_version=current, to_version=GRANT_SCHEMA_VERSION)
    return payload, True
