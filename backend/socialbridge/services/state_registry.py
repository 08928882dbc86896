"""OAuth state token registry

Maps an opaque, single-use state token to the application user who started a
connect flow. The in-memory backend suits single-instance deployments; the
Redis backend lets several instances share in-flight flows.
"""
import asyncio
import json
import logging
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from socialbridge.core.config import settings
from socialbridge.core.metrics import state_tokens_evicted_counter

logger = logging.getLogger("oauth")

# 32 random bytes -> 256 bits of entropy
STATE_TOKEN_BYTES = 32


@dataclass(frozen=True)
class StateEntry:
    """Correlation record for one in-flight OAuth flow"""
    user_id: int
    provider: Optional[str]
    created_at: float


class StateRegistry(ABC):
    """Contract shared by every state registry backend"""

    def __init__(self, ttl_seconds: int):
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def new_token() -> str:
        return secrets.token_urlsafe(STATE_TOKEN_BYTES)

    @abstractmethod
    async def issue(self, user_id: int, provider: Optional[str] = None) -> str:
        """Record a new state token for `user_id` and return it"""

    @abstractmethod
    async def verify_and_consume(self, state: str) -> Optional[StateEntry]:
        """Remove and return the entry for `state`

        Returns None when the token was never issued, was already consumed or
        has outlived the TTL. A None result is an expected outcome (forged or
        abandoned callback), not an error.
        """

    @abstractmethod
    async def evict_expired(self) -> int:
        """Drop entries older than the TTL and return how many were removed"""


class InMemoryStateRegistry(StateRegistry):
    """Process-local registry guarded by an asyncio lock"""

    def __init__(self, ttl_seconds: int = settings.STATE_TTL_SECONDS, clock: Callable[[], float] = time.time):
        super().__init__(ttl_seconds)
        self._clock = clock
        self._entries: Dict[str, StateEntry] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def _is_expired(self, entry: StateEntry, now: float) -> bool:
        return now - entry.created_at >= self.ttl_seconds

    def _remove(self, state: str) -> Optional[StateEntry]:
        # Shared by consumption and eviction; removing a missing key is a no-op
        return self._entries.pop(state, None)

    async def issue(self, user_id: int, provider: Optional[str] = None) -> str:
        token = self.new_token()
        async with self._lock:
            self._entries[token] = StateEntry(user_id=user_id, provider=provider, created_at=self._clock())
        return token

    async def verify_and_consume(self, state: str) -> Optional[StateEntry]:
        if not state:
            return None
        async with self._lock:
            entry = self._remove(state)
        if entry is None or self._is_expired(entry, self._clock()):
            return None
        return entry

    async def evict_expired(self) -> int:
        now = self._clock()
        async with self._lock:
            expired = [token for token, entry in self._entries.items() if self._is_expired(entry, now)]
            removed = sum(1 for token in expired if self._remove(token) is not None)
        return removed


class RedisStateRegistry(StateRegistry):
    """Registry shared across instances; Redis TTLs do the eviction"""

    KEY_PREFIX = "oauth_state"

    def __init__(self, client_factory: Callable = None, ttl_seconds: int = settings.STATE_TTL_SECONDS,
                 clock: Callable[[], float] = time.time):
        super().__init__(ttl_seconds)
        if client_factory is None:
            from socialbridge.db.redis import get_async_redis_client
            client_factory = get_async_redis_client
        self._client_factory = client_factory
        self._clock = clock

    def _key(self, state: str) -> str:
        # Prefix with environment to prevent collisions between dev/prod
        return f"{settings.ENVIRONMENT}:{self.KEY_PREFIX}:{state}"

    async def issue(self, user_id: int, provider: Optional[str] = None) -> str:
        token = self.new_token()
        value = json.dumps({"user_id": user_id, "provider": provider, "created_at": self._clock()})
        await self._client_factory().set(self._key(token), value, ex=self.ttl_seconds)
        return token

    async def verify_and_consume(self, state: str) -> Optional[StateEntry]:
        if not state:
            return None
        # GETDEL is atomic: two concurrent callbacks cannot both win
        raw = await self._client_factory().getdel(self._key(state))
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            entry = StateEntry(user_id=int(data["user_id"]), provider=data.get("provider"),
                               created_at=float(data["created_at"]))
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding malformed OAuth state entry")
            return None
        if self._clock() - entry.created_at >= self.ttl_seconds:
            return None
        return entry

    async def evict_expired(self) -> int:
        # Keys carry an EX ttl, Redis already removed them
        return 0


def build_state_registry(backend: str = None) -> StateRegistry:
    """Create the registry selected by STATE_REGISTRY_BACKEND"""
    backend = backend or settings.STATE_REGISTRY_BACKEND
    if backend == "redis":
        return RedisStateRegistry()
    return InMemoryStateRegistry()


async def run_eviction_sweep(registry: StateRegistry) -> int:
    """One eviction pass, counted in metrics"""
    removed = await registry.evict_expired()
    if removed:
        state_tokens_evicted_counter.inc(removed)
        logger.info(f"Evicted {removed} expired OAuth state token(s)")
    return removed
