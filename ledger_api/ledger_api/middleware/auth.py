"""Authentication middleware that extracts and validates bearer tokens.

Extracts ``Authorization: Bearer <token>`` from every request, validates
via :class:`TokenManager`, and populates ``request.state`` with
``tenant_id``, ``sub`` (user identity), ``scopes``, and ``role``.

When the token omits a role claim, ``"viewer"`` (least privilege) is
applied for users and ``"service"`` for service identities.

Endpoints explicitly listed in ``_PUBLIC_PATHS`` bypass authentication.
Payment-provider webhooks are public: they authenticate with the
provider's signature scheme instead of a bearer token.
"""

from __future__ import annotations

import logging
import os
import secrets
from typing import Any

from pydantic import SecretStr
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ledger_api.security import AuthMode, TokenConfig, TokenManager

logger = logging.getLogger(__name__)

# Paths that do not require authentication.
_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/ready",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/favicon.ico",
        "/metrics",
    }
)

# Prefixes that skip auth.
_PUBLIC_PREFIXES: tuple[str, ...] = (
    "/docs",
    "/redoc",
    "/api/v1/webhooks/payments",
)


def _build_token_config() -> TokenConfig:
    """Construct a :class:`TokenConfig` from environment variables.

    - ``AUTH_MODE`` -- ``development`` (default) or ``hmac``.
    - ``JWT_SECRET`` -- signing/verification secret.
    - ``TOKEN_TTL_SECONDS`` -- default token lifetime.
    - ``MAX_TOKEN_TTL_SECONDS`` -- hard cap on token lifetime.
    """
    auth_mode_raw = os.environ.get("AUTH_MODE", "development").lower()
    try:
        auth_mode = AuthMode(auth_mode_raw)
    except ValueError:
        logger.warning("Unknown AUTH_MODE '%s'; falling back to development", auth_mode_raw)
        auth_mode = AuthMode.DEVELOPMENT

    jwt_secret_value = os.environ.get("JWT_SECRET", "")
    if not jwt_secret_value:
        if auth_mode == AuthMode.DEVELOPMENT:
            jwt_secret_value = f"dev-{secrets.token_hex(32)}"
            logger.warning(
                "JWT_SECRET not set; generated random per-process dev secret. "
                "Tokens will not survive process restarts."
            )
        else:
            raise RuntimeError(
                f"JWT_SECRET environment variable must be set when AUTH_MODE={auth_mode.value}. "
                "Refusing to start with an insecure default secret."
            )

    return TokenConfig(
        auth_mode=auth_mode,
        jwt_secret=SecretStr(jwt_secret_value),
        token_ttl_seconds=int(os.environ.get("TOKEN_TTL_SECONDS", "3600")),
        max_token_ttl_seconds=int(os.environ.get("MAX_TOKEN_TTL_SECONDS", "86400")),
    )


def _is_public_path(path: str) -> bool:
    """Return ``True`` if the path should bypass authentication."""
    if path in _PUBLIC_PATHS:
        return True
    return any(path.startswith(prefix) for prefix in _PUBLIC_PREFIXES)


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Starlette middleware that enforces Bearer token authentication.

    On each request the middleware:

    1. Checks whether the path is public (health, docs, webhooks) and skips auth.
    2. Extracts the ``Authorization: Bearer <token>`` header.
    3. Validates the token via :class:`TokenManager`.
    4. Stores ``tenant_id``, ``sub``, ``scopes`` and ``role`` on ``request.state``.
    5. Returns a 401/403 JSON response on failure.
    """

    def __init__(self, app: Any) -> None:
        super().__init__(app)
        config = _build_token_config()
        self._token_manager = TokenManager(config)
        self._auth_mode = config.auth_mode
        logger.info("AuthenticationMiddleware initialised (mode=%s)", config.auth_mode.value)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path

        if _is_public_path(path):
            return await call_next(request)

        auth_header = request.headers.get("authorization")
        if not auth_header:
            return JSONResponse(
                status_code=401,
                content={"detail": "Missing Authorization header"},
            )

        parts = auth_header.split(None, 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return JSONResponse(
                status_code=401,
                content={"detail": "Authorization header must use Bearer scheme"},
            )

        try:
            claims = self._token_manager.validate_token(parts[1])
        except PermissionError as exc:
            error_msg = str(exc)
            # Expired tokens are 403 so clients know to re-authenticate
            # rather than treat the credential as forged.
            if "expired" in error_msg.lower():
                return JSONResponse(
                    status_code=403,
                    content={"detail": "Token has expired"},
                )
            return JSONResponse(
                status_code=401,
                content={"detail": f"Invalid token: {error_msg}"},
            )

        request.state.tenant_id = claims.tenant_id
        request.state.sub = claims.sub
        request.state.scopes = claims.scopes
        request.state.identity_kind = claims.identity_kind

        role_value = claims.role
        if not role_value:
            role_value = "service" if claims.identity_kind == "service" else "viewer"
        request.state.role = role_value

        return await call_next(request)
