"""OAuth service - one flow controller for every provider

The controller drives a connect attempt through

    Idle -> Initiated -> AwaitingCallback -> Completed | Failed

The browser leaves for the provider between Initiated and AwaitingCallback, so
the only thing linking the callback to the application user is the state token
held by the registry. The user id written to the credential store always comes
from that state entry, never from whatever session the callback carries.
"""
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from socialbridge.core.errors import (
    InvalidState, MetadataFetchFailed, ProviderDenied, SocialBridgeError, TokenExchangeFailed
)
from socialbridge.core.metrics import oauth_flows_counter
from socialbridge.core.otel import traced
from socialbridge.providers.client import ProviderClient, TokenGrant
from socialbridge.providers.metadata import fetch_account_ids
from socialbridge.providers.registry import get_provider
from socialbridge.services.credential_store import CredentialStore, ProviderCredential
from socialbridge.services.refresh_service import CredentialRefreshService
from socialbridge.services.state_registry import StateRegistry

oauth_logger = logging.getLogger("oauth")


class FlowState(str, enum.Enum):
    IDLE = "idle"
    INITIATED = "initiated"
    AWAITING_CALLBACK = "awaiting_callback"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ConnectionResult:
    """Outcome of a completed connect flow"""
    user_id: int
    provider: str
    state: FlowState
    expires_at: Optional[datetime] = None
    account_ids: Dict[str, str] = field(default_factory=dict)
    metadata_error: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "provider": self.provider,
            "status": "connected" if self.state == FlowState.COMPLETED else self.state.value,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "account_ids": dict(self.account_ids),
            "metadata_error": self.metadata_error,
        }


class OAuthFlowController:
    """Generic login -> callback -> persist flow parameterized by provider descriptors"""

    def __init__(
        self,
        registry: StateRegistry,
        store: CredentialStore,
        providers: Dict[str, ProviderClient],
        refresh_service: Optional[CredentialRefreshService] = None,
    ):
        self.registry = registry
        self.store = store
        self.providers = providers
        # Shared so connect writes and refresh writes for one key never interleave
        self.refresh_service = refresh_service or CredentialRefreshService(store, providers)

    async def start(self, user_id: int, provider_name: str) -> str:
        """Idle -> Initiated: issue a state token and return the consent URL"""
        provider = get_provider(self.providers, provider_name)
        provider.ensure_configured()

        state = await self.registry.issue(user_id, provider.name)
        oauth_flows_counter.labels(provider=provider.name, outcome="initiated").inc()
        oauth_logger.info(f"Starting {provider.name} connect flow for user {user_id}")
        return provider.build_authorization_url(state)

    async def complete(
        self,
        provider_name: str,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> ConnectionResult:
        """AwaitingCallback -> Completed | Failed

        Raises:
            InvalidState: state missing, unknown, expired, already used or minted for another provider
            ProviderDenied: the provider sent back an error parameter
            TokenExchangeFailed: no code, or the code or long-lived exchange failed
        """
        provider = get_provider(self.providers, provider_name)
        try:
            return await self._complete(provider, code, state, error, error_description)
        except SocialBridgeError as e:
            oauth_flows_counter.labels(provider=provider.name, outcome=e.error_code.lower()).inc()
            raise

    async def _complete(self, provider: ProviderClient, code, state, error, error_description) -> ConnectionResult:
        entry = await self.registry.verify_and_consume(state) if state else None
        if entry is None:
            oauth_logger.warning(f"{provider.name} callback rejected: unknown, expired or reused state")
            raise InvalidState()
        if entry.provider and entry.provider != provider.name:
            oauth_logger.warning(
                f"{provider.name} callback rejected: state was issued for {entry.provider} (user {entry.user_id})"
            )
            raise InvalidState()

        user_id = entry.user_id

        if error:
            oauth_logger.info(f"{provider.name} denied authorization for user {user_id}: {error}")
            raise ProviderDenied(provider.name, error, error_description)

        if not code:
            raise TokenExchangeFailed(provider.name, "Authorization code missing from callback", upstream_status=400)

        provider.ensure_configured()
        with traced("oauth.exchange", provider.name, user_id):
            grant = await provider.exchange_code(code)
            if provider.supports_long_lived_exchange:
                grant = await provider.exchange_long_lived(grant)

        # A new grant replaces everything, including a refresh token the grant did not renew
        async with self.refresh_service.credential_lock(user_id, provider.name):
            stored = self.store.upsert(ProviderCredential(
                user_id=user_id,
                provider=provider.name,
                access_token=grant.access_token,
                refresh_token=grant.refresh_token,
                access_token_expires_at=grant.expires_at,
                account_ids={k: str(v) for k, v in grant.extra.items()},
            ))
            self.refresh_service.forget_failure(user_id, provider.name)
        oauth_logger.info(f"{provider.name} connected for user {user_id}")

        account_ids, metadata_error = await self._fetch_metadata(provider, grant, user_id)
        if account_ids:
            async with self.refresh_service.credential_lock(user_id, provider.name):
                stored = self.store.update_account_ids(user_id, provider.name, account_ids) or stored

        oauth_flows_counter.labels(provider=provider.name, outcome="connected").inc()
        return ConnectionResult(
            user_id=user_id,
            provider=provider.name,
            state=FlowState.COMPLETED,
            expires_at=stored.access_token_expires_at,
            account_ids=stored.account_ids,
            metadata_error=metadata_error,
        )

    async def _fetch_metadata(self, provider: ProviderClient, grant: TokenGrant, user_id: int):
        try:
            return await fetch_account_ids(provider, grant), None
        except MetadataFetchFailed as e:
            # Connection stands; account ids can be filled on the next reconnect
            oauth_logger.warning(f"{provider.name} metadata fetch failed for user {user_id}: {e.message}")
            return {}, e.error_code

    async def disconnect(self, user_id: int, provider_name: str) -> bool:
        """Drop the stored credential. Returns False when nothing was connected."""
        provider = get_provider(self.providers, provider_name)
        # Waits out an in-flight refresh so it cannot write the credential back
        async with self.refresh_service.credential_lock(user_id, provider.name):
            removed = self.store.clear(user_id, provider.name)
            self.refresh_service.forget_failure(user_id, provider.name)
        if removed:
            oauth_logger.info(f"{provider.name} disconnected for user {user_id}")
        return removed
