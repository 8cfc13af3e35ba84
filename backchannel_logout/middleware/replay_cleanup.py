"""Background cleanup of expired logout token identifiers."""

import asyncio
import logging

from backchannel_logout.services.replay import DatabaseReplayCache, InMemoryReplayCache

logger = logging.getLogger(__name__)


async def replay_cleanup_loop(
    replay_cache: InMemoryReplayCache | DatabaseReplayCache, interval_seconds: float = 300
) -> None:
    """Periodically forget identifiers of tokens that have expired."""
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            removed = await replay_cache.cleanup_expired()
            if removed > 0:
                logger.debug(f"Replay cache cleanup: removed {removed} expired entries")
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.warning(f"Replay cache cleanup error: {e}")
