"""Bearer token issuing/validation and credential encryption at rest.

Tokens
------
Tokens are HMAC-SHA256 signed and carry their claims inline::

    lfdev.<base64url(json claims)>.<hex hmac-sha256(json claims)>

The signing secret is ``JWT_SECRET``.  There is no refresh flow: callers
mint a new token when the old one expires.

Credentials
-----------
:class:`CredentialVault` wraps :class:`cryptography.fernet.Fernet`.  The
Fernet key is derived from ``API_CREDENTIAL_ENCRYPTION_KEY`` with
PBKDF2-HMAC-SHA256 so any string of key material can be configured.
"""

from __future__ import annotations

import base64
import functools
import hashlib
import hmac
import json
import logging
import time
import uuid
from enum import Enum

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import BaseModel, Field, SecretStr, ValidationError

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "lfdev"


class AuthMode(str, Enum):
    """How the API authenticates bearer tokens.

    ``development`` tolerates a missing ``JWT_SECRET`` by generating a
    per-process secret; ``hmac`` refuses to start without one.
    """

    DEVELOPMENT = "development"
    HMAC = "hmac"


class TokenConfig(BaseModel):
    auth_mode: AuthMode = AuthMode.DEVELOPMENT
    jwt_secret: SecretStr
    token_ttl_seconds: int = Field(default=3600, gt=0)
    max_token_ttl_seconds: int = Field(default=86400, gt=0)
    issuer: str = "platform-fee-ledger"


class TokenClaims(BaseModel):
    """Validated contents of a bearer token."""

    sub: str
    tenant_id: str
    iss: str
    iat: float
    exp: float
    scopes: list[str] = Field(default_factory=list)
    jti: str | None = None
    identity_kind: str = "user"
    role: str | None = None


def _sign(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


class TokenManager:
    """Issue and validate HMAC-signed bearer tokens."""

    def __init__(self, config: TokenConfig) -> None:
        self._config = config
        self._secret = config.jwt_secret.get_secret_value()

    def generate_token(
        self,
        sub: str,
        tenant_id: str,
        *,
        role: str = "viewer",
        scopes: list[str] | None = None,
        identity_kind: str = "user",
        ttl_seconds: int | None = None,
    ) -> str:
        ttl = min(ttl_seconds or self._config.token_ttl_seconds, self._config.max_token_ttl_seconds)
        now = time.time()
        claims = TokenClaims(
            sub=sub,
            tenant_id=tenant_id,
            iss=self._config.issuer,
            iat=now,
            exp=now + ttl,
            scopes=scopes or ["read", "write"],
            jti=uuid.uuid4().hex,
            identity_kind=identity_kind,
            role=role,
        )
        payload = json.dumps(claims.model_dump()).encode()
        encoded = base64.urlsafe_b64encode(payload).decode()
        return f"{TOKEN_PREFIX}.{encoded}.{_sign(payload, self._secret)}"

    def validate_token(self, token: str) -> TokenClaims:
        """Return the claims of *token*.

        Raises
        ------
        PermissionError
            If the token is malformed, the signature does not match, or the
            token has expired.  The message contains ``expired`` for the
            last case so the middleware can tell them apart.
        """
        parts = token.split(".")
        if len(parts) != 3 or parts[0] != TOKEN_PREFIX:
            raise PermissionError("Malformed token")

        try:
            payload = base64.urlsafe_b64decode(parts[1].encode())
        except (ValueError, TypeError) as exc:
            raise PermissionError("Malformed token payload") from exc

        if not hmac.compare_digest(_sign(payload, self._secret), parts[2]):
            raise PermissionError("Signature mismatch")

        try:
            claims = TokenClaims.model_validate(json.loads(payload))
        except (ValueError, ValidationError) as exc:
            raise PermissionError("Invalid token claims") from exc

        if claims.exp - claims.iat > self._config.max_token_ttl_seconds:
            raise PermissionError("Token lifetime exceeds the allowed maximum")
        if claims.exp < time.time():
            raise PermissionError("Token has expired")
        return claims


# ---------------------------------------------------------------------------
# Credential vault
# ---------------------------------------------------------------------------

_VAULT_SALT = b"platform-fee-ledger-credential-vault"
_VAULT_ITERATIONS = 100_000


@functools.lru_cache(maxsize=8)
def _derive_fernet_key(key_material: str) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_VAULT_SALT,
        iterations=_VAULT_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(key_material.encode()))


class CredentialDecryptionError(RuntimeError):
    """Stored ciphertext does not decrypt with the configured key."""


class CredentialVault:
    """Symmetric encryption for provider API keys and webhook secrets."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise ValueError("Credential encryption key must not be empty")
        self._fernet = Fernet(_derive_fernet_key(key_material))

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt *ciphertext*.

        Raises
        ------
        CredentialDecryptionError
            If the ciphertext was produced with a different key or has been
            tampered with.
        """
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as exc:
            raise CredentialDecryptionError("Credential could not be decrypted with the configured key") from exc

    def decrypt_optional(self, ciphertext: str | None) -> str | None:
        if not ciphertext:
            return None
        return self.decrypt(ciphertext)
