"""Background sweep removing abandoned OAuth state tokens"""
import asyncio
import logging

from socialbridge.core.config import settings
from socialbridge.services.state_registry import StateRegistry, run_eviction_sweep

cleanup_logger = logging.getLogger("cleanup")


async def state_eviction_task(registry: StateRegistry, interval: int = settings.STATE_SWEEP_INTERVAL_SECONDS):
    """Evict expired state tokens every `interval` seconds until cancelled"""
    while True:
        try:
            await asyncio.sleep(interval)
            await run_eviction_sweep(registry)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            cleanup_logger.error(f"State eviction sweep failed: {e}", exc_info=True)
