"""Tests for the ``ledger serve`` environment setup."""

from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from cli.app import app
from cli.commands.serve import _build_services_table, _load_dotenv, _setup_local_env
from rich.console import Console
from typer.testing import CliRunner

runner = CliRunner()


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for var in ("API_DATABASE_URL", "API_PORT", "API_SCHEDULER_ENABLED", "API_PLATFORM_ENV", "LOCAL_ONLY"):
        monkeypatch.setenv(var, "")
        monkeypatch.delenv(var)


class TestLocalEnv:
    def test_points_database_at_sqlite(self, tmp_path: Path, monkeypatch) -> None:
        monkeypatch.delenv("JWT_SECRET", raising=False)

        _setup_local_env(tmp_path, 8123, scheduler=False)

        assert os.environ["API_DATABASE_URL"] == f"sqlite+aiosqlite:///{tmp_path / '.ledger' / 'ledger.db'}"
        assert os.environ["API_PORT"] == "8123"
        assert os.environ["API_SCHEDULER_ENABLED"] == "false"
        assert os.environ["JWT_SECRET"]
        assert (tmp_path / ".ledger").is_dir()

    def test_existing_secret_is_kept(self, tmp_path: Path, monkeypatch) -> None:
        monkeypatch.setenv("JWT_SECRET", "mine")
        _setup_local_env(tmp_path, 8000, scheduler=True)

        assert os.environ["JWT_SECRET"] == "mine"
        assert os.environ["API_SCHEDULER_ENABLED"] == "true"


class TestDotenv:
    def test_does_not_override_existing(self, tmp_path: Path, monkeypatch) -> None:
        monkeypatch.setenv("API_PLATFORM_ENV", "staging")
        env_file = tmp_path / ".env"
        env_file.write_text("# comment\nAPI_PLATFORM_ENV=dev\nLOCAL_ONLY='yes'\nnot a pair\n", encoding="utf-8")

        _load_dotenv(env_file)

        assert os.environ["API_PLATFORM_ENV"] == "staging"
        assert os.environ["LOCAL_ONLY"] == "yes"

    def test_missing_file_is_ignored(self, tmp_path: Path) -> None:
        _load_dotenv(tmp_path / "absent.env")


def test_services_table_lists_scheduler(tmp_path: Path) -> None:
    console = Console(record=True, width=120)
    console.print(_build_services_table("127.0.0.1", 8000, True, tmp_path))

    text = console.export_text()
    assert "http://127.0.0.1:8000" in text
    assert "enabled" in text


def test_serve_runs_uvicorn_with_ledger_app(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    server = MagicMock()

    with patch("uvicorn.Server", return_value=server), patch("uvicorn.Config") as config:
        result = runner.invoke(app, ["serve", "--port", "8055"])

    assert result.exit_code == 0
    assert config.call_args.args[0] == "ledger_api.main:app"
    assert config.call_args.kwargs["port"] == 8055
    server.run.assert_called_once()
