"""Background renewal of credentials that are about to expire"""
import asyncio
import logging

from socialbridge.core.config import settings
from socialbridge.services.refresh_service import CredentialRefreshService

refresh_logger = logging.getLogger("refresh")


async def credential_refresh_task(
    refresh_service: CredentialRefreshService,
    interval: int = settings.PROACTIVE_REFRESH_INTERVAL_SECONDS,
    window: int = settings.PROACTIVE_REFRESH_WINDOW_SECONDS,
):
    """Refresh credentials expiring within `window` seconds, every `interval` seconds"""
    while True:
        try:
            await asyncio.sleep(interval)
            await refresh_service.refresh_expiring(window)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            refresh_logger.error(f"Proactive refresh sweep failed: {e}", exc_info=True)
