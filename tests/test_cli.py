"""Smoke tests for the click CLI against an in-memory, dry-run configuration."""

from __future__ import annotations

import pytest
import yaml
from click.testing import CliRunner

from conftest import GRANTEE, GRANTOR

from dca_agent.cli import cli


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("ENABLE_LIVE_EXECUTION", raising=False)
    monkeypatch.delenv("DCA_GRANTOR_ADDRESS", raising=False)
    monkeypatch.delenv("DCA_GRANTEE_ADDRESS", raising=False)
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({
        "accounts": {"grantor": GRANTOR, "grantee": GRANTEE},
        "storage": {"backend": "memory"},
        "observability": {"log_file": ""},
        "schedule": {"run_immediately": False},
    }))
    return str(path)


class TestCli:
    def test_run_once_manual(self, config_file) -> None:
        result = CliRunner().invoke(cli, [
            "--config", config_file, "run-once",
            "--mode", "manual", "--amount", "0.2", "--target", "USDC",
        ])
        assert result.exit_code == 0, result.output
        assert "BUY 0.2 MON -> USDC" in result.output
        assert "Operations:" in result.output

    def test_manual_mode_needs_amount(self, config_file) -> None:
        result = CliRunner().invoke(cli, ["--config", config_file, "run-once", "--mode", "manual"])
        assert result.exit_code != 0
        assert "--amount" in result.output

    def test_status(self, config_file) -> None:
        result = CliRunner().invoke(cli, ["--config", config_file, "status"])
        assert result.exit_code == 0, result.output
        assert "DRY RUN" in result.output

    def test_grant_renew(self, config_file) -> None:
        result = CliRunner().invoke(cli, ["--config", config_file, "grant", "renew"])
        assert result.exit_code == 0, result.output
        assert "Grant renewed" in result.output
