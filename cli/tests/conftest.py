"""Shared fixtures for CLI tests.

Every test gets an isolated credentials file and a clean set of ``LEDGER_*``
variables.  ``api`` routes the CLI's HTTP calls to an in-process handler
through :class:`httpx.MockTransport`.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import patch

import httpx
import pytest

_RealClient = httpx.Client


@pytest.fixture(autouse=True)
def credentials_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    # setenv first so teardown restores the variable even when a command sets it directly.
    for var in ("LEDGER_API_TOKEN", "LEDGER_API_URL", "JWT_SECRET"):
        monkeypatch.setenv(var, "")
        monkeypatch.delenv(var)
    cred_file = tmp_path / "home" / ".ledger" / "credentials.json"
    with patch("cli.app._credentials_path", return_value=cred_file):
        yield cred_file


class FakeAPI:
    """Records requests and answers them from registered routes."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._routes: dict[tuple[str, str], Callable[[httpx.Request], httpx.Response]] = {}

    def on(self, method: str, path: str, *, json: Any = None, status_code: int = 200) -> None:
        self._routes[(method.upper(), path)] = lambda _request: httpx.Response(status_code, json=json)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self._routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"detail": "Not Found"})
        return handler(request)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]

    def last_json(self) -> Any:
        return json.loads(self.last.content)


@pytest.fixture()
def api() -> FakeAPI:
    fake = FakeAPI()

    def _client(**kwargs: Any) -> httpx.Client:
        return _RealClient(transport=httpx.MockTransport(fake.handle), **kwargs)

    with patch("httpx.Client", side_effect=_client):
        yield fake
