"""Retry helper for transient collaborator failures."""
import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from .exceptions import TransientError

logger = logging.getLogger("legacy_vault.retry")

T = TypeVar("T")


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    retries: int = 2,
    base_delay: float = 1.0,
    label: str = "operation",
) -> T:
    """Run ``operation``, retrying ``TransientError`` with exponential backoff.

    Any other exception propagates at once. Each retry calls ``operation``
    again, so per-attempt state (signatures, sessions) is rebuilt.

    Args:
        operation: Zero-argument coroutine factory.
        retries: Extra attempts after the first one.
        base_delay: Delay before the first retry; doubles each time.
        label: Name used in log messages.
    """
    for attempt in range(retries + 1):
        try:
            return await operation()
        except TransientError as err:
            if attempt == retries:
                raise
            wait_time = base_delay * 2 ** attempt
            logger.warning(
                "%s failed (%s), retrying in %.1fs (%d/%d)",
                label, err.message, wait_time, attempt + 1, retries,
            )
            await asyncio.sleep(wait_time)
    raise RuntimeError(f"{label}: no attempt made (retries={retries})")
