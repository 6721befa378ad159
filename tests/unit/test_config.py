"""Tests for DeploySettings and the cluster configuration guard."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from progdeploy.config import DeploySettings
from progdeploy.core.cluster_guard import ClusterConfigError, enforce_cluster_constraints


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """Run each test away from any real .env and PROGDEPLOY_* variables."""
    monkeypatch.chdir(tmp_path)
    for key in list(os.environ):
        if key.startswith("PROGDEPLOY_"):
            monkeypatch.delenv(key)


class TestDeploySettings:
    def test_defaults(self):
        settings = DeploySettings()
        assert settings.cluster == "localnet"
        assert settings.cluster_url == "http://127.0.0.1:8899"
        assert settings.auto_extend is True
        assert settings.log_level == "INFO"

    def test_env_overrides(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("PROGDEPLOY_CLUSTER", "devnet")
        monkeypatch.setenv("PROGDEPLOY_CHUNK_SIZE", "900")
        monkeypatch.setenv("PROGDEPLOY_AUTO_EXTEND", "false")
        monkeypatch.setenv("PROGDEPLOY_BUILD_COMMAND", '["cargo", "build-sbf"]')
        settings = DeploySettings()
        assert settings.cluster_url == "https://api.devnet.solana.com"
        assert settings.chunk_size == 900
        assert settings.auto_extend is False
        assert settings.build_command == ["cargo", "build-sbf"]

    def test_dotenv_file(self, tmp_path: Path):
        (tmp_path / ".env").write_text("PROGDEPLOY_MAX_RETRIES=7\n", encoding="utf-8")
        assert DeploySettings().max_retries == 7

    def test_to_deploy_config(self):
        settings = DeploySettings(
            cluster="https://rpc.example.com",
            authority="Auth",
            max_retries=5,
            retry_base_delay=0.25,
            ledger_path=Path("/tmp/l.db"),
        )
        config = settings.to_deploy_config()
        assert config.cluster_url == "https://rpc.example.com"
        assert config.effective_authority == "Auth"
        assert config.retry.max_retries == 5
        assert config.retry.base_delay_seconds == 0.25
        assert config.ledger_db_path == Path("/tmp/l.db")

    def test_is_mainnet(self):
        assert DeploySettings(cluster="mainnet-beta").is_mainnet
        assert not DeploySettings(cluster="devnet").is_mainnet


class TestClusterGuard:
    def test_non_mainnet_is_unchecked(self):
        enforce_cluster_constraints(DeploySettings(cluster="devnet", debug=True))

    def test_mainnet_passes_with_explicit_authority(self):
        enforce_cluster_constraints(DeploySettings(cluster="mainnet-beta", authority="Auth"))

    def test_mainnet_rejects_debug_and_missing_authority(self):
        settings = DeploySettings(cluster="mainnet-beta", debug=True)
        with pytest.raises(ClusterConfigError) as info:
            enforce_cluster_constraints(settings)
        message = str(info.value)
        assert "debug" in message
        assert "PROGDEPLOY_AUTHORITY" in message

    def test_mainnet_rejects_unbounded_remediation(self):
        settings = DeploySettings(
            cluster="mainnet-beta", authority="Auth", max_size_remediations=20
        )
        with pytest.raises(ClusterConfigError, match="max_size_remediations"):
            enforce_cluster_constraints(settings)
