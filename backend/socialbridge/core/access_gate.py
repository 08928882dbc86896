"""Access gate for proxied provider calls

    @router.get("/api/gmail/messages")
    async def messages(access: ProviderAccess = Depends(require_provider_access("gmail"))):
        ...

Each gated request resolves the application user, then that user's credential
for the provider, then a valid access token (refreshing if needed) before the
route body runs.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict

from fastapi import Depends, Request

from socialbridge.core.config import PROVIDER_NAMES
from socialbridge.core.dependencies import get_credential_store, get_refresh_service
from socialbridge.core.errors import NotConnected, UnknownProvider
from socialbridge.core.security import require_auth
from socialbridge.services.credential_store import CredentialStore
from socialbridge.services.refresh_service import CredentialRefreshService

security_logger = logging.getLogger("security")


@dataclass(frozen=True)
class ProviderAccess:
    """What a gated route receives: who is calling and a token that works right now"""
    user_id: int
    provider: str
    access_token: str = field(repr=False)
    account_ids: Dict[str, str] = field(default_factory=dict)


def require_provider_access(provider: str):
    """Build a dependency gating a route on a valid `provider` credential

    Raises (inside the dependency):
        NotAuthenticated: no application session
        NotConnected: user never connected the provider
        RefreshFailed: stored token expired and could not be renewed
    """
    if provider not in PROVIDER_NAMES:
        raise UnknownProvider(provider)

    async def dependency(
        request: Request,
        user_id: int = Depends(require_auth),
        store: CredentialStore = Depends(get_credential_store),
        refresh_service: CredentialRefreshService = Depends(get_refresh_service),
    ) -> ProviderAccess:
        if store.get(user_id, provider) is None:
            raise NotConnected(provider)

        access_token = await refresh_service.ensure_valid(user_id, provider)
        # Re-read after ensure_valid so account ids reflect any write it made
        credential = store.get(user_id, provider)
        access = ProviderAccess(
            user_id=user_id,
            provider=provider,
            access_token=access_token,
            account_ids=dict(credential.account_ids) if credential else {},
        )
        request.state.provider_access = access
        return access

    return dependency
