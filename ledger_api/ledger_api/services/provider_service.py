"""Platform payment-provider credentials, encrypted at rest with the vault."""

from __future__ import annotations

import logging
from typing import Any

from ledger_core.errors import NotFoundError
from ledger_core.models.payments import ProviderType
from ledger_core.state.repository import PaymentProviderRepository
from ledger_core.state.tables import PaymentProviderTable
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_api.security import CredentialVault
from ledger_api.services.audit_service import AuditAction, AuditService

logger = logging.getLogger(__name__)

PLATFORM_AUDIT_TENANT = "platform"


def provider_to_dict(row: PaymentProviderTable) -> dict[str, Any]:
    """Public view of a provider row.  Secrets are reported as present/absent only."""
    return {
        "id": row.id,
        "provider_type": row.provider_type,
        "display_name": row.display_name,
        "is_active": row.is_active,
        "has_api_key": bool(row.api_key_encrypted),
        "has_webhook_secret": bool(row.webhook_secret_encrypted),
        "updated_at": row.updated_at,
    }


class ProviderCredentialService:
    """Create, rotate and resolve platform provider credentials."""

    def __init__(self, session: AsyncSession, vault: CredentialVault, *, actor: str = "system") -> None:
        self._repo = PaymentProviderRepository(session)
        self._vault = vault
        self._audit = AuditService(session, tenant_id=PLATFORM_AUDIT_TENANT, actor=actor)

    async def list_providers(self) -> list[PaymentProviderTable]:
        return await self._repo.list_all()

    async def upsert(
        self,
        provider: ProviderType,
        *,
        display_name: str,
        api_key: str | None = None,
        webhook_secret: str | None = None,
        is_active: bool = True,
    ) -> PaymentProviderTable:
        """Store credentials for *provider*.  Omitted secrets keep their current value."""
        row = await self._repo.upsert(
            provider.value,
            display_name=display_name,
            api_key_encrypted=self._vault.encrypt(api_key) if api_key else None,
            webhook_secret_encrypted=self._vault.encrypt(webhook_secret) if webhook_secret else None,
            is_active=is_active,
        )
        await self._audit.log(
            AuditAction.PROVIDER_CREDENTIALS_UPDATED,
            entity_type="platform_payment_provider",
            entity_id=row.id,
            provider=provider.value,
            api_key_rotated=api_key is not None,
            webhook_secret_rotated=webhook_secret is not None,
            is_active=is_active,
        )
        logger.info("Provider credentials updated: provider=%s active=%s", provider.value, is_active)
        return row

    async def resolve(self, provider: ProviderType | None = None) -> tuple[ProviderType, str]:
        """Return ``(provider, api_key)`` for the requested or first active provider."""
        row = await self._repo.get_active(provider.value) if provider else await self._repo.first_active()
        if row is None:
            wanted = provider.value if provider else "any"
            raise NotFoundError(f"No active payment provider configured ({wanted})")
        api_key = self._vault.decrypt_optional(row.api_key_encrypted)
        if not api_key:
            raise NotFoundError(f"Payment provider {row.provider_type} has no API key configured")
        return ProviderType(row.provider_type), api_key

    async def webhook_secret(self, provider: ProviderType) -> str | None:
        """Decrypted webhook secret for *provider*, or ``None`` when not configured."""
        row = await self._repo.get_active(provider.value)
        if row is None:
            return None
        return self._vault.decrypt_optional(row.webhook_secret_encrypted)
