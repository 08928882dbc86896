"""Application identity, rate limiting and access logging"""
import json
import logging
import time
from typing import Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse

from socialbridge.core.config import PROVIDER_NAMES, settings
from socialbridge.core.errors import NotAuthenticated
from socialbridge.db.redis import check_rate_limit, get_session

security_logger = logging.getLogger("security")
api_access_logger = logging.getLogger("api_access")

SESSION_COOKIE = "session_id"
UNLIMITED_PATHS = ("/health", "/metrics")


def get_session_id(request: Request) -> Optional[str]:
    """Session id from the cookie, or from `Authorization: Bearer <session id>`"""
    session_id = request.cookies.get(SESSION_COOKIE)
    if session_id:
        return session_id
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return None


def require_auth(request: Request) -> int:
    """Dependency returning the calling user's id"""
    session_id = get_session_id(request)
    if not session_id:
        raise NotAuthenticated()
    user_id = get_session(session_id)
    if user_id is None:
        raise NotAuthenticated("Session expired. Please log in again.")
    return user_id


def set_auth_cookie(response: Response, session_id: str) -> None:
    response.set_cookie(
        key=SESSION_COOKIE,
        value=session_id,
        max_age=settings.SESSION_TTL_SECONDS,
        httponly=True,
        samesite="lax",
        secure=settings.ENVIRONMENT == "production",
    )


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if forwarded:
        return forwarded
    return request.client.host if request.client else "unknown"


def rate_limit_identity(request: Request, session_id: Optional[str]) -> str:
    return f"session:{session_id}" if session_id else f"ip:{_client_ip(request)}"


def provider_for_path(path: str) -> Optional[str]:
    """Provider named by /api/auth/<provider>/... or /api/<provider>/..., if any"""
    parts = [part for part in path.split("/") if part]
    if len(parts) >= 3 and parts[:2] == ["api", "auth"]:
        candidate = parts[2]
    elif len(parts) >= 2 and parts[0] == "api":
        candidate = parts[1]
    else:
        return None
    return candidate if candidate in PROVIDER_NAMES else None


def is_oauth_callback(path: str) -> bool:
    return path.startswith("/api/auth/") and path.endswith("/callback")


def log_api_access(request: Request, session_id: Optional[str], status_code: int,
                   duration_ms: float = 0.0, error: Optional[str] = None) -> None:
    """One JSON line per request. Only the path is logged: callback query strings carry codes."""
    record = {
        "method": request.method,
        "path": request.url.path,
        "provider": provider_for_path(request.url.path),
        "status_code": status_code,
        "duration_ms": round(duration_ms, 1),
        "session": f"{session_id[:8]}..." if session_id else None,
        "client_ip": _client_ip(request),
        "error": error,
    }
    level = logging.WARNING if error or status_code >= 400 else logging.INFO
    api_access_logger.log(level, json.dumps(record))


async def security_middleware(request: Request, call_next):
    """Rate limiting (provider callbacks and probes exempt) and access logging"""
    started = time.perf_counter()
    session_id = get_session_id(request)
    path = request.url.path

    if not is_oauth_callback(path) and path not in UNLIMITED_PATHS:
        identity = rate_limit_identity(request, session_id)
        strict = request.method in ("POST", "PUT", "PATCH", "DELETE")
        if not check_rate_limit(identity, strict=strict):
            security_logger.warning(f"Rate limit exceeded for {identity} on {request.method} {path}")
            log_api_access(request, session_id, 429, error="rate limited")
            return JSONResponse(
                status_code=429,
                content={"error": "RATE_LIMITED", "message": "Rate limit exceeded. Please try again later."},
                headers={"Retry-After": str(settings.RATE_LIMIT_WINDOW)},
            )

    try:
        response = await call_next(request)
    except Exception as e:
        log_api_access(request, session_id, 500, (time.perf_counter() - started) * 1000, type(e).__name__)
        raise
    log_api_access(request, session_id, response.status_code, (time.perf_counter() - started) * 1000)
    return response
