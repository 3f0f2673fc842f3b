"""FastAPI dependency injection for sessions, identity, settings and provider access."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

import httpx
from fastapi import Depends, HTTPException, Request
from ledger_core.context import LedgerContext
from ledger_core.state.database import get_engine, set_tenant_context
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ledger_api.config import APISettings, load_api_settings
from ledger_api.middleware.rbac import Role, get_user_role
from ledger_api.security import CredentialVault
from ledger_api.services.provider_client import ProviderGateway

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    Used by components that run outside request handling (the job
    scheduler and outbox worker).
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` **without** tenant RLS context.

    .. warning:: **No Row-Level Security**

       Queries through this session can read and write rows of **any**
       tenant.  It exists for two callers:

       - payment webhooks and redirect callbacks, which arrive without a
         tenant and resolve it from the payment reference before calling
         ``set_tenant_context()`` themselves;
       - health and readiness probes.

    The session commits on clean exit and rolls back on exception.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def get_tenant_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` with the RLS tenant context set.

    The primary session dependency for tenant-scoped endpoints.
    """
    tenant_id = getattr(request.state, "tenant_id", None)
    if tenant_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")

    session = get_session_factory()()
    try:
        await set_tenant_context(session, tenant_id)
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def get_admin_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a cross-tenant session for platform administration.

    Only for endpoints guarded by platform-admin permissions (dispute
    resolution, billing runs, alert rules, provider credentials).
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_tenant_session)]

# WARNING: PublicSessionDep bypasses RLS.  Webhooks and probes only.
PublicSessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# WARNING: AdminSessionDep bypasses RLS.  Platform-admin endpoints only.
AdminSessionDep = Annotated[AsyncSession, Depends(get_admin_session)]

# ---------------------------------------------------------------------------
# Tenant / user identity (populated by AuthenticationMiddleware)
# ---------------------------------------------------------------------------


def get_tenant_id(request: Request) -> str:
    """Extract tenant_id from authenticated request state."""
    tenant_id = getattr(request.state, "tenant_id", None)
    if tenant_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return tenant_id


TenantDep = Annotated[str, Depends(get_tenant_id)]


def get_user_identity(request: Request) -> str:
    """Extract user identity from authenticated request state."""
    return getattr(request.state, "sub", "anonymous")


UserDep = Annotated[str, Depends(get_user_identity)]

RoleDep = Annotated[Role, Depends(get_user_role)]


def get_ledger_context(tenant_id: TenantDep, user: UserDep) -> LedgerContext:
    """Build the per-request :class:`LedgerContext` handed to services."""
    return LedgerContext(tenant_id=tenant_id, actor=user)


ContextDep = Annotated[LedgerContext, Depends(get_ledger_context)]

# ---------------------------------------------------------------------------
# Payment providers
# ---------------------------------------------------------------------------

_http_client: httpx.AsyncClient | None = None


def init_http_client(settings: APISettings) -> httpx.AsyncClient:
    """Create the shared outbound HTTP client (bounded timeouts)."""
    global _http_client  # noqa: PLW0603
    _http_client = httpx.AsyncClient(timeout=httpx.Timeout(settings.provider_timeout_seconds))
    return _http_client


async def dispose_http_client() -> None:
    global _http_client  # noqa: PLW0603
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None


def get_http_client() -> httpx.AsyncClient:
    if _http_client is None:
        raise RuntimeError(
            "HTTP client has not been initialised. Ensure init_http_client() is called during application startup."
        )
    return _http_client


HttpClientDep = Annotated[httpx.AsyncClient, Depends(get_http_client)]


def get_provider_gateway(settings: SettingsDep, http: HttpClientDep) -> ProviderGateway:
    """Build a :class:`ProviderGateway` over the shared HTTP client."""
    return ProviderGateway.from_settings(settings, http)


GatewayDep = Annotated[ProviderGateway, Depends(get_provider_gateway)]


def get_credential_vault(settings: SettingsDep) -> CredentialVault:
    return CredentialVault(settings.credential_encryption_key.get_secret_value())


VaultDep = Annotated[CredentialVault, Depends(get_credential_vault)]
