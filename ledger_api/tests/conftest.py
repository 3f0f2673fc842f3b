"""Shared fixtures for the ledger API test suite.

Requests travel through the real application (middleware, routers and
exception handlers) against an in-memory SQLite database.  Outbound calls
to payment providers and outbox endpoints are answered by a
:class:`ProviderStub` mounted on an ``httpx.MockTransport``.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import time
import uuid
from collections.abc import Callable
from datetime import UTC
from typing import Any

# Set before any ledger_api import so the auth middleware signs with it.
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-ledger-tests")

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from ledger_core.models.payments import ProviderType
from ledger_core.state.tables import Base
from pydantic import SecretStr
from sqlalchemy import JSON, DateTime
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from ledger_api import dependencies
from ledger_api.config import APISettings
from ledger_api.dependencies import get_http_client, get_settings
from ledger_api.main import create_app
from ledger_api.security import CredentialVault
from ledger_api.services.provider_service import ProviderCredentialService

_TEST_SECRET = os.environ["JWT_SECRET"]

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"
PAYSTACK_WEBHOOK_SECRET = "whsec_paystack_test"
VAULT_KEY = "test-vault-key"


# ---------------------------------------------------------------------------
# SQLite compatibility
# ---------------------------------------------------------------------------


def _patch_columns_for_sqlite() -> None:
    class _UTCAwareDateTime(TypeDecorator):
        """Ensures datetimes read from SQLite are UTC-aware."""

        impl = DateTime
        cache_ok = True

        def process_result_value(self, value, dialect):  # type: ignore[override]
            if value is not None and value.tzinfo is None:
                return value.replace(tzinfo=UTC)
            return value

    for table in Base.metadata.tables.values():
        for column in table.columns:
            if isinstance(column.type, JSONB):
                column.type = JSON()
            elif isinstance(column.type, DateTime) and getattr(column.type, "timezone", False):
                column.type = _UTCAwareDateTime()


_patch_columns_for_sqlite()


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


def _make_dev_token(
    tenant_id: str = TENANT,
    sub: str = "owner@example.com",
    role: str | None = "owner",
    *,
    identity_kind: str = "user",
    ttl_seconds: int = 3600,
    issued_at: float | None = None,
) -> str:
    """Build an ``lfdev.`` token signed with the test secret."""
    now = time.time() if issued_at is None else issued_at
    claims = {
        "sub": sub,
        "tenant_id": tenant_id,
        "iss": "platform-fee-ledger",
        "iat": now,
        "exp": now + ttl_seconds,
        "scopes": ["read", "write"],
        "jti": uuid.uuid4().hex,
        "identity_kind": identity_kind,
        "role": role,
    }
    payload = json.dumps(claims).encode()
    encoded = base64.urlsafe_b64encode(payload).decode()
    signature = hmac.new(_TEST_SECRET.encode(), payload, hashlib.sha256).hexdigest()
    return f"lfdev.{encoded}.{signature}"


def auth_headers(role: str | None = "owner", tenant_id: str = TENANT, **kwargs: Any) -> dict[str, str]:
    sub = kwargs.pop("sub", f"{role or 'anon'}@example.com")
    return {"Authorization": f"Bearer {_make_dev_token(tenant_id, sub, role, **kwargs)}"}


_AUTH_HEADERS = auth_headers("owner")


# ---------------------------------------------------------------------------
# Outbound HTTP stub
# ---------------------------------------------------------------------------


class ProviderStub:
    """Answers outbound HTTP calls and records every request.

    Routes are matched on method and path prefix; the most recently
    registered matching route wins.  Unrouted calls get a 404.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._routes: list[tuple[str, str, Callable[[httpx.Request], httpx.Response]]] = []

    def on(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        status_code: int = 200,
        handler: Callable[[httpx.Request], httpx.Response] | None = None,
    ) -> None:
        def _default(request: httpx.Request) -> httpx.Response:
            return httpx.Response(status_code, json=json)

        self._routes.append((method.upper(), path, handler or _default))

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method.upper() and r.url.path.startswith(path)]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for method, path, handler in reversed(self._routes):
            if request.method == method and request.url.path.startswith(path):
                return handler(request)
        return httpx.Response(404, json={"message": "not stubbed"})


# ---------------------------------------------------------------------------
# Settings, database and HTTP fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> APISettings:
    """Return settings suitable for testing (SQLite, stub endpoints)."""
    return APISettings(
        database_url="sqlite+aiosqlite://",
        credential_encryption_key=SecretStr(VAULT_KEY),
        public_base_url="http://test",
        notification_url="https://notify.test/hooks",
        receipt_url="https://receipts.test/hooks",
        outbox_max_attempts=3,
        outbox_base_delay_seconds=1.0,
        scheduler_enabled=False,
    )


@pytest_asyncio.fixture()
async def session_factory(monkeypatch: pytest.MonkeyPatch):
    """In-memory database shared by every session of one test.

    The factory replaces the module-level one in
    :mod:`ledger_api.dependencies`, so the real session dependencies
    (commit on success, rollback on error) run unchanged.
    """
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    monkeypatch.setattr(dependencies, "_session_factory", factory)
    yield factory
    await engine.dispose()


@pytest.fixture()
def provider_stub() -> ProviderStub:
    return ProviderStub()


@pytest_asyncio.fixture()
async def http_client(provider_stub: ProviderStub):
    async with httpx.AsyncClient(transport=httpx.MockTransport(provider_stub)) as client:
        yield client


@pytest.fixture()
def vault() -> CredentialVault:
    return CredentialVault(VAULT_KEY)


# ---------------------------------------------------------------------------
# FastAPI TestClient (async httpx)
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(test_settings: APISettings, session_factory, http_client: httpx.AsyncClient):
    """Create the application with settings and the outbound client overridden."""
    application = create_app()
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_http_client] = lambda: http_client
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncClient:
    """Yield an async httpx client bound to the test app.

    Uses ASGITransport so requests go directly to the ASGI app without
    opening a real TCP socket.  Requests carry an owner token for
    ``tenant-a`` unless the test passes its own headers.
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers=_AUTH_HEADERS) as ac:
        yield ac


@pytest.fixture()
def admin_headers() -> dict[str, str]:
    """Platform administrator acting inside ``tenant-a``."""
    return auth_headers("platform_admin", sub="admin@platform.example")


# ---------------------------------------------------------------------------
# Domain fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def qr_fee_config(client: AsyncClient, admin_headers: dict[str, str]) -> dict[str, Any]:
    """5% guest-paid realtime fee on QR payments and bookings for ``tenant-a``."""
    response = await client.put(
        "/api/v1/fees/config",
        json={
            "fee_type": "percentage",
            "qr_fee": "5",
            "booking_fee": "2.5",
            "payer": "guest",
            "billing_cycle": "realtime",
            "applies_to": ["qr_payments", "bookings"],
        },
        headers=admin_headers,
    )
    assert response.status_code == 200, response.text
    return response.json()


@pytest.fixture()
def headers_for() -> Callable[..., dict[str, str]]:
    """``headers_for(role, tenant_id=..., **token_kwargs)`` builds auth headers."""
    return auth_headers


@pytest.fixture()
def make_token() -> Callable[..., str]:
    return _make_dev_token


@pytest.fixture()
def record_fee(client: AsyncClient):
    """``await record_fee(reference_id, amount)`` records a fee as the tenant owner."""

    async def _record(reference_id: str, amount: str, transaction_class: str = "qr_payments") -> dict[str, Any]:
        response = await client.post(
            "/api/v1/fees/record",
            json={"transaction_class": transaction_class, "reference_id": reference_id, "amount": amount},
        )
        assert response.status_code == 200, response.text
        return response.json()

    return _record


@pytest_asyncio.fixture()
async def paystack_provider(session_factory, vault: CredentialVault, provider_stub: ProviderStub):
    """Active Paystack credentials plus stubbed checkout creation."""
    async with session_factory() as session:
        row = await ProviderCredentialService(session, vault, actor="fixture").upsert(
            ProviderType.PAYSTACK,
            display_name="Paystack",
            api_key="sk_test_paystack",
            webhook_secret=PAYSTACK_WEBHOOK_SECRET,
        )
        await session.commit()

    provider_stub.on(
        "POST",
        "/transaction/initialize",
        json={
            "status": True,
            "data": {"authorization_url": "https://checkout.paystack.test/abc", "access_code": "ac_123"},
        },
    )
    return row


@pytest.fixture()
def paystack_webhook() -> Callable[..., tuple[bytes, dict[str, str]]]:
    """``paystack_webhook(reference, status="success")`` returns a signed body and headers."""

    def _build(reference: str, status: str = "success", amount_minor: int = 5000) -> tuple[bytes, dict[str, str]]:
        body = json.dumps(
            {
                "event": "charge.success",
                "data": {"id": 991, "reference": reference, "status": status, "amount": amount_minor},
            }
        ).encode()
        signature = hmac.new(PAYSTACK_WEBHOOK_SECRET.encode(), body, hashlib.sha512).hexdigest()
        return body, {"x-paystack-signature": signature, "content-type": "application/json"}

    return _build
