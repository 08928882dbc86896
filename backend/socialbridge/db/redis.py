"""Redis access: application sessions, rate-limit counters and the shared state registry

Key layout:
    session:<session id>          -> user id (TTL SESSION_TTL_SECONDS, renewed on use)
    user_sessions:<user id>       -> set of that user's session ids
    ratelimit:<std|strict>:<who>  -> request count for the current window
    oauth_state:<token>           -> see services/state_registry.py
"""
import logging
from typing import Optional

import redis
import redis.asyncio as aioredis

from socialbridge.core.config import settings

logger = logging.getLogger(__name__)

# Created on first use so tests can swap in fakeredis before anything connects
_client = None
_async_client = None


def get_redis_client():
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def get_async_redis_client():
    """Async client used by the Redis-backed state registry"""
    global _async_client
    if _async_client is None:
        _async_client = aioredis.from_url(settings.REDIS_URL, decode_responses=True, max_connections=20)
    return _async_client


def _session_key(session_id: str) -> str:
    return f"session:{session_id}"


def _user_sessions_key(user_id: int) -> str:
    return f"user_sessions:{user_id}"


def set_session(session_id: str, user_id: int) -> None:
    client = get_redis_client()
    pipe = client.pipeline()
    pipe.setex(_session_key(session_id), settings.SESSION_TTL_SECONDS, user_id)
    pipe.sadd(_user_sessions_key(user_id), session_id)
    pipe.expire(_user_sessions_key(user_id), settings.SESSION_TTL_SECONDS)
    pipe.execute()


def get_session(session_id: str) -> Optional[int]:
    """User id for a live session. Each lookup pushes the expiry forward."""
    client = get_redis_client()
    key = _session_key(session_id)
    user_id = client.get(key)
    if not user_id:
        return None
    client.expire(key, settings.SESSION_TTL_SECONDS)
    return int(user_id)


def delete_session(session_id: str) -> None:
    client = get_redis_client()
    user_id = client.get(_session_key(session_id))
    client.delete(_session_key(session_id))
    if user_id:
        client.srem(_user_sessions_key(int(user_id)), session_id)


def delete_all_user_sessions(user_id: int) -> int:
    """End every session of a user (account deletion). Returns how many were live."""
    client = get_redis_client()
    session_ids = client.smembers(_user_sessions_key(user_id))
    deleted = client.delete(*[_session_key(s) for s in session_ids]) if session_ids else 0
    client.delete(_user_sessions_key(user_id))
    return int(deleted)


def increment_rate_limit(identifier: str, window: int) -> int:
    """Fixed-window counter; the window starts with the first request"""
    key = f"ratelimit:{identifier}"
    client = get_redis_client()
    count = client.incr(key)
    if count == 1:
        client.expire(key, window)
    return int(count)


def check_rate_limit(identifier: str, strict: bool = False) -> bool:
    """True when the request is allowed. State-changing requests use the strict budget."""
    max_requests = settings.RATE_LIMIT_STRICT_REQUESTS if strict else settings.RATE_LIMIT_REQUESTS
    bucket = "strict" if strict else "std"
    current_count = increment_rate_limit(f"{bucket}:{identifier}", settings.RATE_LIMIT_WINDOW)
    if current_count > max_requests:
        logger.debug(f"Rate limit hit for {bucket}:{identifier} ({current_count}/{max_requests})")
        return False
    return True
