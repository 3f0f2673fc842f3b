"""Platform payment provider credentials (API keys and webhook secrets).

Secrets are write-only: they are encrypted with the credential vault on
the way in and never returned.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends
from ledger_core.models.payments import ProviderType

from ledger_api.dependencies import AdminSessionDep, UserDep, VaultDep
from ledger_api.middleware.rbac import Permission, Role, require_permission
from ledger_api.schemas import ProviderCredentialsRequest, encode
from ledger_api.services.provider_service import ProviderCredentialService, provider_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/providers", tags=["providers"])


@router.get("")
async def list_providers(
    session: AdminSessionDep,
    vault: VaultDep,
    user: UserDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_PROVIDERS)),
) -> list[dict[str, Any]]:
    providers = await ProviderCredentialService(session, vault, actor=user).list_providers()
    return encode([provider_to_dict(p) for p in providers])


@router.put("/{provider}")
async def upsert_provider(
    provider: ProviderType,
    body: ProviderCredentialsRequest,
    session: AdminSessionDep,
    vault: VaultDep,
    user: UserDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_PROVIDERS)),
) -> dict[str, Any]:
    """Create or update a provider's credentials; omitted secrets are kept."""
    row = await ProviderCredentialService(session, vault, actor=user).upsert(
        provider,
        display_name=body.display_name,
        api_key=body.api_key,
        webhook_secret=body.webhook_secret,
        is_active=body.is_active,
    )
    return encode(provider_to_dict(row))
