"""Tests for login, logout, whoami and token minting."""

from __future__ import annotations

import json
import stat
from pathlib import Path

from cli.app import _decode_claims, app
from pydantic import SecretStr
from typer.testing import CliRunner

from ledger_api.security import TokenConfig, TokenManager

runner = CliRunner()

_SECRET = "cli-test-secret"


def _mint(role: str = "owner", tenant_id: str = "tenant-a") -> str:
    manager = TokenManager(TokenConfig(jwt_secret=SecretStr(_SECRET)))
    return manager.generate_token("owner@tenant-a.example", tenant_id, role=role)


class TestLogin:
    def test_stores_credentials_with_owner_only_mode(self, credentials_file: Path) -> None:
        result = runner.invoke(app, ["login", "--api-url", "https://ledger.test", "--token", _mint()])

        assert result.exit_code == 0
        stored = json.loads(credentials_file.read_text(encoding="utf-8"))
        assert stored["api_url"] == "https://ledger.test"
        assert stored["access_token"].startswith("lfdev.")
        assert stat.S_IMODE(credentials_file.stat().st_mode) == 0o600
        assert "owner@tenant-a.example" in result.output

    def test_rejects_non_ledger_token(self, credentials_file: Path) -> None:
        result = runner.invoke(app, ["login", "--token", "not-a-token"])

        assert result.exit_code == 1
        assert not credentials_file.exists()


class TestLogout:
    def test_removes_credentials(self, credentials_file: Path) -> None:
        runner.invoke(app, ["login", "--token", _mint()])
        result = runner.invoke(app, ["logout"])

        assert result.exit_code == 0
        assert not credentials_file.exists()

    def test_without_credentials(self) -> None:
        result = runner.invoke(app, ["logout"])
        assert result.exit_code == 0
        assert "No stored credentials" in result.output


class TestWhoami:
    def test_not_logged_in(self) -> None:
        result = runner.invoke(app, ["whoami"])
        assert result.exit_code == 1

    def test_reports_claims_as_json(self) -> None:
        runner.invoke(app, ["login", "--api-url", "https://ledger.test", "--token", _mint(role="manager")])

        result = runner.invoke(app, ["--json", "whoami"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["tenant_id"] == "tenant-a"
        assert data["role"] == "manager"
        assert data["api_url"] == "https://ledger.test"


class TestToken:
    def test_requires_secret(self) -> None:
        result = runner.invoke(app, ["token", "--tenant", "tenant-a", "--sub", "ops"])
        assert result.exit_code == 1

    def test_minted_token_validates(self, monkeypatch) -> None:
        monkeypatch.setenv("JWT_SECRET", _SECRET)

        result = runner.invoke(
            app, ["token", "--tenant", "tenant-a", "--sub", "billing-job", "--role", "service", "--service"]
        )

        assert result.exit_code == 0
        claims = TokenManager(TokenConfig(jwt_secret=SecretStr(_SECRET))).validate_token(result.stdout.strip())
        assert claims.tenant_id == "tenant-a"
        assert claims.role == "service"
        assert claims.identity_kind == "service"

    def test_unknown_role_rejected(self, monkeypatch) -> None:
        monkeypatch.setenv("JWT_SECRET", _SECRET)

        result = runner.invoke(app, ["token", "--tenant", "t", "--sub", "s", "--role", "superuser"])

        assert result.exit_code == 1
        assert "Unknown role" in result.output


def test_decode_claims_ignores_garbage() -> None:
    assert _decode_claims("a.b") is None
    assert _decode_claims("lfdev.%%%.sig") is None
