"""Tests for the operator CLI commands that don't call external services."""

import asyncio
from pathlib import Path

import pytest
from click.testing import CliRunner

from mailfacts.auth.vault import VAULT_KEY_ENV, CredentialVault
from mailfacts.cli import cli
from mailfacts.db.store import DatabaseStore


@pytest.fixture
def workdir(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, set_config_env: None, vault_key: str
) -> Path:
    """Run commands from a temp dir so the default database path lands there."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv(VAULT_KEY_ENV, vault_key)
    return tmp_path


def _store(workdir: Path) -> DatabaseStore:
    return DatabaseStore(workdir / "data" / "mailfacts.db")


def test_validate_config_ok(config_file: Path) -> None:
    result = CliRunner().invoke(cli, ["validate-config", "--config", str(config_file)])

    assert result.exit_code == 0
    assert "schema version 1" in result.output


def test_validate_config_missing(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["validate-config", "-c", str(tmp_path / "nope.yaml")])
    assert result.exit_code == 1


def test_add_user_encrypts_tokens(workdir: Path, vault: CredentialVault) -> None:
    result = CliRunner().invoke(
        cli,
        ["add-user", "--user", "alice", "--email", "alice@example.com"],
        input="1//refresh-token\n",
    )

    assert result.exit_code == 0, result.output
    user = asyncio.run(_store(workdir).get_user("alice"))
    assert user.refresh_token_enc != "1//refresh-token"
    assert vault.decrypt(user.refresh_token_enc) == "1//refresh-token"
    assert user.access_token_enc == ""


def test_add_user_without_vault_key(workdir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(VAULT_KEY_ENV)

    result = CliRunner().invoke(
        cli, ["add-user", "--user", "alice", "--refresh-token", "1//refresh-token"]
    )

    assert result.exit_code == 1
    assert "Vault error" in result.output


def test_unlock_and_requeue(workdir: Path) -> None:
    runner = CliRunner()
    runner.invoke(cli, ["add-user", "--user", "alice", "--refresh-token", "r"])
    asyncio.run(_store(workdir).try_begin_sync("alice"))

    result = runner.invoke(cli, ["unlock", "--user", "alice"])
    assert result.exit_code == 0
    assert "idle again" in result.output
    assert asyncio.run(_store(workdir).get_user("alice")).sync_status == "idle"

    result = runner.invoke(cli, ["unlock", "--user", "alice"])
    assert "nothing to do" in result.output

    result = runner.invoke(cli, ["requeue-failed"])
    assert result.exit_code == 0
    assert "Re-queued 0 message(s)" in result.output


def test_users_lists_sync_state(workdir: Path) -> None:
    runner = CliRunner()
    runner.invoke(cli, ["add-user", "--user", "alice", "--refresh-token", "r"])

    result = runner.invoke(cli, ["users"])

    assert result.exit_code == 0
    assert "alice" in result.output
    assert "never" in result.output
    assert "Asia/Kolkata" in result.output
