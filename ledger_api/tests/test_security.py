"""Tests for token issuing/validation and the credential vault."""

from __future__ import annotations

import base64
import json
import time

import pytest
from pydantic import SecretStr

from ledger_api.security import (
    CredentialDecryptionError,
    CredentialVault,
    TokenConfig,
    TokenManager,
)


@pytest.fixture()
def manager() -> TokenManager:
    return TokenManager(TokenConfig(jwt_secret=SecretStr("unit-secret"), max_token_ttl_seconds=7200))


# ---------------------------------------------------------------------------
# TokenManager
# ---------------------------------------------------------------------------


class TestTokenManager:
    def test_round_trip_claims(self, manager: TokenManager) -> None:
        token = manager.generate_token("ops@example.com", "tenant-a", role="manager")
        claims = manager.validate_token(token)

        assert token.startswith("lfdev.")
        assert claims.sub == "ops@example.com"
        assert claims.tenant_id == "tenant-a"
        assert claims.role == "manager"
        assert claims.identity_kind == "user"
        assert claims.iss == "platform-fee-ledger"

    def test_ttl_is_capped(self, manager: TokenManager) -> None:
        claims = manager.validate_token(manager.generate_token("a", "t", ttl_seconds=10**6))
        assert claims.exp - claims.iat == pytest.approx(7200)

    def test_other_secret_rejected(self, manager: TokenManager) -> None:
        other = TokenManager(TokenConfig(jwt_secret=SecretStr("someone-else")))
        with pytest.raises(PermissionError, match="Signature mismatch"):
            manager.validate_token(other.generate_token("a", "tenant-a"))

    def test_tampered_claims_rejected(self, manager: TokenManager) -> None:
        prefix, payload, signature = manager.generate_token("a", "tenant-a", role="viewer").split(".")
        claims = json.loads(base64.urlsafe_b64decode(payload))
        claims["role"] = "platform_admin"
        forged = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode()

        with pytest.raises(PermissionError, match="Signature mismatch"):
            manager.validate_token(f"{prefix}.{forged}.{signature}")

    @pytest.mark.parametrize("token", ["", "abc", "jwt.a.b", "lfdev.only-two"])
    def test_malformed_tokens(self, manager: TokenManager, token: str) -> None:
        with pytest.raises(PermissionError, match="Malformed"):
            manager.validate_token(token)

    def test_expired_token(self, manager: TokenManager, monkeypatch) -> None:
        token = manager.generate_token("a", "tenant-a", ttl_seconds=60)
        real_time = time.time
        monkeypatch.setattr("ledger_api.security.time.time", lambda: real_time() + 120)

        with pytest.raises(PermissionError, match="expired"):
            manager.validate_token(token)


# ---------------------------------------------------------------------------
# CredentialVault
# ---------------------------------------------------------------------------


class TestCredentialVault:
    def test_encrypt_decrypt(self) -> None:
        vault = CredentialVault("key-material")
        ciphertext = vault.encrypt("sk_live_secret")

        assert "sk_live_secret" not in ciphertext
        assert vault.decrypt(ciphertext) == "sk_live_secret"

    def test_ciphertexts_differ_per_call(self) -> None:
        vault = CredentialVault("key-material")
        assert vault.encrypt("same") != vault.encrypt("same")

    def test_wrong_key_raises(self) -> None:
        ciphertext = CredentialVault("key-one").encrypt("sk_live_secret")
        with pytest.raises(CredentialDecryptionError):
            CredentialVault("key-two").decrypt(ciphertext)

    def test_decrypt_optional(self) -> None:
        vault = CredentialVault("key-material")
        assert vault.decrypt_optional(None) is None
        assert vault.decrypt_optional("") is None
        assert vault.decrypt_optional(vault.encrypt("whsec")) == "whsec"

    def test_empty_key_rejected(self) -> None:
        with pytest.raises(ValueError):
            CredentialVault("")
