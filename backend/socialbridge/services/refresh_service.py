"""Credential refresh service

Hands out valid access tokens, refreshing them when they are about to expire.
Refreshes for one (user, provider) are single-flight: concurrent callers await
the same in-flight refresh and share its outcome, success or failure. Every
write to a credential (refresh, reconnect, metadata merge) happens under the
key's lock, so a refresh built from an old snapshot can never land on top of a
newer connect.
"""
import asyncio
import hashlib
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable, Dict, Optional, Tuple

from socialbridge.core.config import settings
from socialbridge.core.errors import NotConnected, RefreshFailed, TokenExchangeFailed
from socialbridge.core.metrics import token_refresh_counter
from socialbridge.core.otel import traced
from socialbridge.providers.client import ProviderClient
from socialbridge.providers.registry import get_provider
from socialbridge.services.credential_store import CredentialStore, ProviderCredential, with_new_tokens

refresh_logger = logging.getLogger("refresh")

CredentialKey = Tuple[int, str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RefreshSweepResult:
    refreshed: int = 0
    failed: int = 0
    skipped: int = 0


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class CredentialRefreshService:

    def __init__(
        self,
        store: CredentialStore,
        providers: Dict[str, ProviderClient],
        safety_margin: int = settings.REFRESH_SAFETY_MARGIN_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.providers = providers
        self.safety_margin = safety_margin
        self._clock = clock
        self._locks: Dict[CredentialKey, _KeyLock] = {}
        self._inflight: Dict[CredentialKey, asyncio.Future] = {}
        # Fingerprint of the last refresh token the provider rejected, per key
        self._failed_refresh_tokens: Dict[CredentialKey, str] = {}

    @asynccontextmanager
    async def credential_lock(self, user_id: int, provider: str) -> AsyncIterator[None]:
        """Serialize writes to one (user, provider) credential

        The entry is dropped once nobody holds or waits on it.
        """
        key = (user_id, provider)
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0 and self._locks.get(key) is entry:
                del self._locks[key]

    def forget_failure(self, user_id: int, provider: str) -> None:
        """A new connect or a disconnect makes the last rejected refresh token irrelevant"""
        self._failed_refresh_tokens.pop((user_id, provider), None)

    def _has_failed(self, credential: ProviderCredential) -> bool:
        key = (credential.user_id, credential.provider)
        return self._failed_refresh_tokens.get(key) == self._fingerprint(credential)

    @staticmethod
    def _fingerprint(credential: ProviderCredential) -> str:
        raw = f"{credential.user_id}:{credential.provider}:{credential.refresh_token}"
        return hashlib.sha256(raw.encode()).hexdigest()

    def _is_fresh(self, credential: ProviderCredential) -> bool:
        # No known expiry means the token is treated as valid until the provider says otherwise
        return not credential.expires_within(self.safety_margin, now=self._clock())

    async def ensure_valid(self, user_id: int, provider_name: str) -> str:
        """Return a usable access token for (user, provider)

        Raises:
            NotConnected: nothing stored for this user and provider
            RefreshFailed: the token is expiring and could not be renewed
        """
        provider = get_provider(self.providers, provider_name)
        credential = self.store.get(user_id, provider.name)
        if credential is None:
            raise NotConnected(provider.name)
        if self._is_fresh(credential):
            return credential.access_token

        key = (user_id, provider.name)
        pending = self._inflight.get(key)
        if pending is None:
            pending = asyncio.ensure_future(self._refresh_current(provider, user_id))
            self._inflight[key] = pending
            pending.add_done_callback(lambda done: self._finish_inflight(key, done))
        # A cancelled caller must not cancel the refresh the others are waiting on
        refreshed = await asyncio.shield(pending)
        return refreshed.access_token

    def _finish_inflight(self, key: CredentialKey, done: asyncio.Future) -> None:
        if self._inflight.get(key) is done:
            del self._inflight[key]
        if not done.cancelled():
            # Marks the outcome retrieved even when every waiter was cancelled
            done.exception()

    async def _refresh_current(self, provider: ProviderClient, user_id: int) -> ProviderCredential:
        async with self.credential_lock(user_id, provider.name):
            # A reconnect or an earlier refresh may have landed while we waited
            credential = self.store.get(user_id, provider.name)
            if credential is None:
                raise NotConnected(provider.name)
            if self._is_fresh(credential):
                return credential
            return await self._refresh(provider, credential)

    async def _refresh(self, provider: ProviderClient, credential: ProviderCredential) -> ProviderCredential:
        """Redeem the refresh token and persist the result. Caller holds the key lock."""
        if not provider.supports_refresh or not credential.refresh_token:
            token_refresh_counter.labels(provider=provider.name, outcome="impossible").inc()
            refresh_logger.info(
                f"{provider.name} token for user {credential.user_id} expired and cannot be refreshed"
            )
            raise RefreshFailed(provider.name, "no refresh token available")

        key = (credential.user_id, provider.name)
        try:
            with traced("credential.refresh", provider.name, credential.user_id):
                grant = await provider.refresh(credential.refresh_token)
        except TokenExchangeFailed as e:
            # Credential is left in place; the user reconnects to replace it
            self._failed_refresh_tokens[key] = self._fingerprint(credential)
            token_refresh_counter.labels(provider=provider.name, outcome="failure").inc()
            refresh_logger.warning(f"{provider.name} refresh failed for user {credential.user_id}: {e.message}")
            raise RefreshFailed(provider.name, e.message)

        updated = self.store.upsert(
            with_new_tokens(credential, grant.access_token, grant.expires_at, grant.refresh_token),
            keep_refresh_token=True,
        )
        self._failed_refresh_tokens.pop(key, None)
        token_refresh_counter.labels(provider=provider.name, outcome="success").inc()
        refresh_logger.info(
            f"Refreshed {provider.name} token for user {credential.user_id}, "
            f"rotated_refresh_token={bool(grant.refresh_token)}"
        )
        return updated

    async def refresh_expiring(self, within: Optional[int] = None) -> RefreshSweepResult:
        """Renew every refreshable credential expiring within `within` seconds

        Credentials whose current refresh token already failed are skipped until
        the user reconnects and a new refresh token is stored.
        """
        within = settings.PROACTIVE_REFRESH_WINDOW_SECONDS if within is None else within
        result = RefreshSweepResult()
        for credential in self.store.list_expiring(self._clock() + timedelta(seconds=within)):
            provider = self.providers.get(credential.provider)
            if provider is None or not provider.supports_refresh or self._has_failed(credential):
                result.skipped += 1
                continue

            async with self.credential_lock(credential.user_id, credential.provider):
                current = self.store.get(credential.user_id, credential.provider)
                if (current is None or self._has_failed(current)
                        or not current.expires_within(within, now=self._clock())):
                    result.skipped += 1
                    continue
                try:
                    await self._refresh(provider, current)
                    result.refreshed += 1
                except RefreshFailed:
                    result.failed += 1

        if result.refreshed or result.failed:
            refresh_logger.info(
                f"Proactive refresh: {result.refreshed} refreshed, {result.failed} failed, {result.skipped} skipped"
            )
        return result
