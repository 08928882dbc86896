"""Logging configuration for the application"""
import logging
from typing import Any, Optional

from socialbridge.core.config import settings

SENSITIVE_KEYS = ("access_token", "refresh_token", "client_secret", "code", "id_token", "fb_exchange_token")


def setup_logging():
    """Configure logging for the application"""
    LOG_LEVEL = settings.LOG_LEVEL.upper()
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True
    )

    # Silence noisy third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def describe_secret(value: Optional[str]) -> str:
    """Loggable description of a secret: presence and length only"""
    if not value:
        return "absent"
    return f"present(len={len(value)})"


def scrub(payload: Any) -> Any:
    """Copy of a provider payload with token-like fields masked"""
    if isinstance(payload, dict):
        return {
            key: (describe_secret(value) if key in SENSITIVE_KEYS and isinstance(value, str) else scrub(value))
            for key, value in payload.items()
        }
    if isinstance(payload, list):
        return [scrub(item) for item in payload]
    return payload


# Export commonly used loggers
oauth_logger = logging.getLogger("oauth")
refresh_logger = logging.getLogger("refresh")
security_logger = logging.getLogger("security")
api_access_logger = logging.getLogger("api_access")
