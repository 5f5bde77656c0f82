"""Single internal retry for recoverable workflow errors."""
import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from pitchdesk.core.config import get_settings
from pitchdesk.core.errors import Conflict, UpstreamUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_once(operation: Callable[[], Awaitable[T]], label: str) -> T:
    """
    Run ``operation``; on Conflict or UpstreamUnavailable run it exactly once more.

    ``operation`` must be safe to re-execute from the top (it re-reads state),
    which every workflow entry point is. The second failure propagates.
    """
    try:
        return await operation()
    except Conflict as e:
        logger.warning(f"{label}: conflict ({e.message}), re-reading and retrying once")
    except UpstreamUnavailable as e:
        backoff = get_settings().retry_backoff_seconds
        logger.warning(f"{label}: upstream unavailable ({e.message}), retrying in {backoff}s")
        await asyncio.sleep(backoff)
    return await operation()
